"""
Webhook event audit trail - every verified payment processor event is recorded
before processing. The (source, event_id) pair is unique, so a redelivered
event is recognised instead of processed twice.
"""
import uuid
from datetime import datetime, timezone
from sqlalchemy import Column, String, DateTime, Text, UniqueConstraint
from sqlalchemy.dialects.postgresql import UUID, JSONB
from cleanbook.database import Base


class WebhookEvent(Base):
    __tablename__ = "webhook_events"

    id = Column(UUID(as_uuid=True), primary_key=True, default=uuid.uuid4)
    received_at = Column(DateTime(timezone=True), default=lambda: datetime.now(timezone.utc), nullable=False)
    source = Column(String(50), nullable=False, index=True)
    event_id = Column(String(100), nullable=False)
    event_type = Column(String(80), nullable=False)
    payload_hash = Column(String(64), nullable=False, index=True)
    raw_payload = Column(JSONB, nullable=False)
    payment_intent_id = Column(String(100), nullable=True, index=True)
    booking_id = Column(UUID(as_uuid=True), nullable=True, index=True)
    processing_status = Column(
        String(20), nullable=False, default="received", server_default="received"
    )  # received, processing, completed, ignored, failed, deferred
    error_message = Column(Text, nullable=True)
    processed_at = Column(DateTime(timezone=True), nullable=True)
    correlation_id = Column(String(64), nullable=True, index=True)

    __table_args__ = (
        UniqueConstraint("source", "event_id", name="uq_webhook_events_source_event_id"),
    )
