"""
PaymentReceive model - the amount actually captured for a booking.

One row per booking and per payment intent; the unique constraints are what
keep replayed webhooks from recording a payment twice.
"""
import uuid
from datetime import datetime, timezone
from sqlalchemy import String, Float, DateTime, ForeignKey
from sqlalchemy.dialects.postgresql import UUID
from sqlalchemy.orm import Mapped, mapped_column, relationship
from cleanbook.database import Base


class PaymentReceive(Base):
    __tablename__ = "payment_receives"

    id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True), primary_key=True, default=uuid.uuid4
    )
    booking_id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True), ForeignKey("cleaning_bookings.id"), nullable=False, unique=True
    )
    payment_intent_id: Mapped[str] = mapped_column(String(100), nullable=False, unique=True)
    total_paid: Mapped[float] = mapped_column(Float, nullable=False)
    currency: Mapped[str] = mapped_column(String(10), default="usd")

    received_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=lambda: datetime.now(timezone.utc)
    )

    booking: Mapped["CleaningBooking"] = relationship(back_populates="payment_receive", lazy="raise")

    def __repr__(self) -> str:
        return f"<PaymentReceive {self.payment_intent_id} paid={self.total_paid}>"
