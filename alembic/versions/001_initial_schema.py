"""Initial schema - users, subscriptions, bookings, payments, webhook audit, task queue.

Revision ID: 001
Revises:
Create Date: 2026-10-19
"""
from typing import Sequence, Union
from alembic import op
import sqlalchemy as sa
from sqlalchemy.dialects import postgresql

revision: str = "001"
down_revision: Union[str, None] = None
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None


def upgrade() -> None:
    # Application users
    op.create_table(
        "application_users",
        sa.Column("id", postgresql.UUID(as_uuid=True), primary_key=True),
        sa.Column("email", sa.String(255), nullable=False, unique=True),
        sa.Column("full_name", sa.String(150)),
        sa.Column("profile_picture", sa.String(500)),
        sa.Column("role", sa.String(20), server_default="user"),
        sa.Column("is_active", sa.Boolean, server_default=sa.true()),
        sa.Column("date_joined", sa.DateTime(timezone=True), server_default=sa.func.now()),
    )
    op.create_index("ix_application_users_role", "application_users", ["role"])

    # Cleaning subscriptions
    op.create_table(
        "cleaning_subscriptions",
        sa.Column("id", postgresql.UUID(as_uuid=True), primary_key=True),
        sa.Column("subscriber_id", postgresql.UUID(as_uuid=True), sa.ForeignKey("application_users.id"), nullable=False),
        sa.Column("cleaning_frequency", sa.String(20), server_default="one_time"),
        sa.Column("cleaning_price", sa.Float, nullable=False),
        sa.Column("supplies_charges", sa.Float, server_default="0"),
        sa.Column("discount_amount", sa.Float, server_default="0"),
        sa.Column("address", sa.Text),
        sa.Column("is_active", sa.Boolean, server_default=sa.true()),
        sa.Column("cancelled_at", sa.DateTime(timezone=True)),
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.func.now()),
        sa.Column("updated_at", sa.DateTime(timezone=True), server_default=sa.func.now()),
    )
    op.create_index("ix_cleaning_subscriptions_subscriber_id", "cleaning_subscriptions", ["subscriber_id"])
    op.create_index("ix_cleaning_subscriptions_is_active", "cleaning_subscriptions", ["is_active"])

    # Cleaning bookings
    op.create_table(
        "cleaning_bookings",
        sa.Column("id", postgresql.UUID(as_uuid=True), primary_key=True),
        sa.Column("booking_user_id", postgresql.UUID(as_uuid=True), sa.ForeignKey("application_users.id"), nullable=False),
        sa.Column("subscription_id", postgresql.UUID(as_uuid=True), sa.ForeignKey("cleaning_subscriptions.id"), nullable=True),
        sa.Column("booking_status", sa.String(30), nullable=False, server_default="BookingInitiated"),
        sa.Column("payment_status", sa.String(30), nullable=False, server_default="PaymentPending"),
        sa.Column("cleaning_price", sa.Float, nullable=False),
        sa.Column("supplies_charges", sa.Float, server_default="0"),
        sa.Column("discount_amount", sa.Float, server_default="0"),
        sa.Column("additional_charges", sa.Float, server_default="0"),
        sa.Column("total_amount", sa.Float, nullable=False),
        sa.Column("cleaning_date", sa.DateTime(timezone=True)),
        sa.Column("remarks", sa.Text),
        sa.Column("payment_intent_id", sa.String(100), unique=True),
        sa.Column("is_active", sa.Boolean, nullable=False, server_default=sa.true()),
        sa.Column("version", sa.Integer, nullable=False, server_default="1"),
        sa.Column("created_by", postgresql.UUID(as_uuid=True)),
        sa.Column("updated_by", postgresql.UUID(as_uuid=True)),
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.func.now()),
        sa.Column("updated_at", sa.DateTime(timezone=True), server_default=sa.func.now()),
    )
    op.create_index("ix_cleaning_bookings_booking_user_id", "cleaning_bookings", ["booking_user_id"])
    op.create_index("ix_cleaning_bookings_subscription_id", "cleaning_bookings", ["subscription_id"])
    op.create_index("ix_cleaning_bookings_status_pair", "cleaning_bookings", ["booking_status", "payment_status"])

    # Payment receives - one per booking, one per intent
    op.create_table(
        "payment_receives",
        sa.Column("id", postgresql.UUID(as_uuid=True), primary_key=True),
        sa.Column("booking_id", postgresql.UUID(as_uuid=True), sa.ForeignKey("cleaning_bookings.id"), nullable=False, unique=True),
        sa.Column("payment_intent_id", sa.String(100), nullable=False, unique=True),
        sa.Column("total_paid", sa.Float, nullable=False),
        sa.Column("currency", sa.String(10), server_default="usd"),
        sa.Column("received_at", sa.DateTime(timezone=True), server_default=sa.func.now()),
    )

    # Webhook event audit trail
    op.create_table(
        "webhook_events",
        sa.Column("id", postgresql.UUID(as_uuid=True), primary_key=True),
        sa.Column("received_at", sa.DateTime(timezone=True), nullable=False, server_default=sa.func.now()),
        sa.Column("source", sa.String(50), nullable=False),
        sa.Column("event_id", sa.String(100), nullable=False),
        sa.Column("event_type", sa.String(80), nullable=False),
        sa.Column("payload_hash", sa.String(64), nullable=False),
        sa.Column("raw_payload", postgresql.JSONB, nullable=False),
        sa.Column("payment_intent_id", sa.String(100)),
        sa.Column("booking_id", postgresql.UUID(as_uuid=True)),
        sa.Column("processing_status", sa.String(20), nullable=False, server_default="received"),
        sa.Column("error_message", sa.Text),
        sa.Column("processed_at", sa.DateTime(timezone=True)),
        sa.Column("correlation_id", sa.String(64)),
        sa.UniqueConstraint("source", "event_id", name="uq_webhook_events_source_event_id"),
    )
    op.create_index("ix_webhook_events_source", "webhook_events", ["source"])
    op.create_index("ix_webhook_events_payload_hash", "webhook_events", ["payload_hash"])
    op.create_index("ix_webhook_events_payment_intent_id", "webhook_events", ["payment_intent_id"])
    op.create_index("ix_webhook_events_booking_id", "webhook_events", ["booking_id"])
    op.create_index("ix_webhook_events_correlation_id", "webhook_events", ["correlation_id"])

    # Task queue
    op.create_table(
        "task_queue",
        sa.Column("id", postgresql.UUID(as_uuid=True), primary_key=True),
        sa.Column("task_type", sa.String(50), nullable=False),
        sa.Column("payload", postgresql.JSONB),
        sa.Column("status", sa.String(20), nullable=False, server_default="pending"),
        sa.Column("priority", sa.Integer, server_default="5"),
        sa.Column("correlation_id", sa.String(64)),
        sa.Column("retry_count", sa.Integer, server_default="0"),
        sa.Column("max_retries", sa.Integer, server_default="3"),
        sa.Column("scheduled_at", sa.DateTime(timezone=True), server_default=sa.func.now()),
        sa.Column("started_at", sa.DateTime(timezone=True)),
        sa.Column("completed_at", sa.DateTime(timezone=True)),
        sa.Column("error_message", sa.Text),
        sa.Column("result_data", postgresql.JSONB),
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.func.now()),
    )
    op.create_index("ix_task_queue_processing", "task_queue", ["status", "scheduled_at", "priority"])


def downgrade() -> None:
    op.drop_table("task_queue")
    op.drop_table("webhook_events")
    op.drop_table("payment_receives")
    op.drop_table("cleaning_bookings")
    op.drop_table("cleaning_subscriptions")
    op.drop_table("application_users")
