"""
CleaningBooking model - one scheduled cleaning with its delivery and payment state.

booking_status and payment_status are orthogonal lifecycles. Both only move
forward, and only services.reconciliation writes them.
"""
import enum
import uuid
from datetime import datetime, timezone
from typing import Optional
from sqlalchemy import String, Text, Boolean, Float, Integer, DateTime, ForeignKey, Index
from sqlalchemy.dialects.postgresql import UUID
from sqlalchemy.orm import Mapped, mapped_column, relationship
from cleanbook.database import Base


class BookingStatus(str, enum.Enum):
    INITIATED = "BookingInitiated"
    SERVED = "BookingServed"
    COMPLETED = "BookingCompleted"
    CANCELLED = "BookingCancelled"


class PaymentStatus(str, enum.Enum):
    PENDING = "PaymentPending"
    COMPLETED = "PaymentCompleted"
    FAILED = "PaymentFailed"


# Delivery states from which no edit, cancellation or payment is accepted
TERMINAL_BOOKING_STATUSES = (BookingStatus.COMPLETED.value, BookingStatus.CANCELLED.value)


class CleaningBooking(Base):
    __tablename__ = "cleaning_bookings"

    id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True), primary_key=True, default=uuid.uuid4
    )
    booking_user_id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True), ForeignKey("application_users.id"), nullable=False
    )
    subscription_id: Mapped[Optional[uuid.UUID]] = mapped_column(
        UUID(as_uuid=True), ForeignKey("cleaning_subscriptions.id"), nullable=True
    )

    # Status
    booking_status: Mapped[str] = mapped_column(
        String(30), default=BookingStatus.INITIATED.value, nullable=False
    )
    payment_status: Mapped[str] = mapped_column(
        String(30), default=PaymentStatus.PENDING.value, nullable=False
    )

    # Pricing - total_amount is always derived, never supplied
    cleaning_price: Mapped[float] = mapped_column(Float, nullable=False)
    supplies_charges: Mapped[float] = mapped_column(Float, default=0.0)
    discount_amount: Mapped[float] = mapped_column(Float, default=0.0)
    additional_charges: Mapped[float] = mapped_column(Float, default=0.0)
    total_amount: Mapped[float] = mapped_column(Float, nullable=False)

    # Scheduling
    cleaning_date: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True))
    remarks: Mapped[Optional[str]] = mapped_column(Text)

    # Payment processor linkage
    payment_intent_id: Mapped[Optional[str]] = mapped_column(String(100), unique=True)

    # Soft delete + optimistic concurrency
    is_active: Mapped[bool] = mapped_column(Boolean, default=True, nullable=False)
    version: Mapped[int] = mapped_column(Integer, default=1, nullable=False)

    # Audit
    created_by: Mapped[Optional[uuid.UUID]] = mapped_column(UUID(as_uuid=True))
    updated_by: Mapped[Optional[uuid.UUID]] = mapped_column(UUID(as_uuid=True))
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=lambda: datetime.now(timezone.utc)
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=lambda: datetime.now(timezone.utc), onupdate=lambda: datetime.now(timezone.utc)
    )

    # Relationships (load explicitly with selectinload in async code)
    booking_user: Mapped["ApplicationUser"] = relationship(lazy="raise")
    payment_receive: Mapped[Optional["PaymentReceive"]] = relationship(
        back_populates="booking", lazy="raise", uselist=False
    )

    __table_args__ = (
        Index("ix_cleaning_bookings_booking_user_id", "booking_user_id"),
        Index("ix_cleaning_bookings_subscription_id", "subscription_id"),
        Index("ix_cleaning_bookings_status_pair", "booking_status", "payment_status"),
    )

    def __repr__(self) -> str:
        return (
            f"<CleaningBooking {self.id} status={self.booking_status} "
            f"payment={self.payment_status} v{self.version}>"
        )
