"""
CleaningSubscription model - a purchased cleaning plan that seeds bookings.
"""
import uuid
from datetime import datetime, timezone
from typing import Optional
from sqlalchemy import String, Text, Boolean, Float, DateTime, ForeignKey, Index
from sqlalchemy.dialects.postgresql import UUID
from sqlalchemy.orm import Mapped, mapped_column
from cleanbook.database import Base

CLEANING_FREQUENCIES = ("one_time", "weekly", "biweekly", "monthly")


class CleaningSubscription(Base):
    __tablename__ = "cleaning_subscriptions"

    id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True), primary_key=True, default=uuid.uuid4
    )
    subscriber_id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True), ForeignKey("application_users.id"), nullable=False
    )

    cleaning_frequency: Mapped[str] = mapped_column(
        String(20), default="one_time"
    )  # one_time, weekly, biweekly, monthly
    cleaning_price: Mapped[float] = mapped_column(Float, nullable=False)
    supplies_charges: Mapped[float] = mapped_column(Float, default=0.0)
    discount_amount: Mapped[float] = mapped_column(Float, default=0.0)
    address: Mapped[Optional[str]] = mapped_column(Text)

    is_active: Mapped[bool] = mapped_column(Boolean, default=True)
    cancelled_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True))

    # Timestamps
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=lambda: datetime.now(timezone.utc)
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=lambda: datetime.now(timezone.utc), onupdate=lambda: datetime.now(timezone.utc)
    )

    __table_args__ = (
        Index("ix_cleaning_subscriptions_subscriber_id", "subscriber_id"),
        Index("ix_cleaning_subscriptions_is_active", "is_active"),
    )

    def __repr__(self) -> str:
        return f"<CleaningSubscription {self.cleaning_frequency} active={self.is_active}>"
