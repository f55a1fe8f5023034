"""
Booking request/response schemas.
"""
from datetime import datetime
from typing import Optional
from pydantic import BaseModel, ConfigDict, Field


class BookingUpdate(BaseModel):
    """Edit request. At least one field must be set."""
    model_config = ConfigDict(extra="forbid")

    cleaning_date: Optional[datetime] = None
    remarks: Optional[str] = Field(default=None, max_length=2000)
    additional_charges: Optional[float] = Field(default=None, ge=0)
    mark_as_served: Optional[bool] = None


class UserProjection(BaseModel):
    id: str
    email: str
    full_name: Optional[str] = None
    profile_picture: Optional[str] = None


class PaymentReceiveSummary(BaseModel):
    total_paid: float
    payment_intent_id: str


class BookingDetail(BaseModel):
    id: str
    booking_user_id: str
    subscription_id: Optional[str] = None
    booking_status: str
    payment_status: str
    cleaning_price: float
    supplies_charges: float
    discount_amount: float
    additional_charges: float
    total_amount: float
    cleaning_date: Optional[datetime] = None
    remarks: Optional[str] = None
    is_active: bool
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None
    booking_user: Optional[UserProjection] = None
    payment_receive: Optional[PaymentReceiveSummary] = None


class BookingUserRanking(UserProjection):
    date_joined: Optional[datetime] = None


class TopBookingUser(BaseModel):
    booking_user: BookingUserRanking
    total_booking_count: int


def _is_loaded(obj, attr: str) -> bool:
    from sqlalchemy import inspect
    return attr not in inspect(obj).unloaded


def user_projection(user) -> Optional[UserProjection]:
    if user is None:
        return None
    return UserProjection(
        id=str(user.id),
        email=user.email,
        full_name=user.full_name,
        profile_picture=user.profile_picture,
    )


def booking_detail(booking) -> BookingDetail:
    """Serialize a CleaningBooking, including relations only if already loaded."""
    user = booking.booking_user if _is_loaded(booking, "booking_user") else None
    receive = booking.payment_receive if _is_loaded(booking, "payment_receive") else None
    return BookingDetail(
        id=str(booking.id),
        booking_user_id=str(booking.booking_user_id),
        subscription_id=str(booking.subscription_id) if booking.subscription_id else None,
        booking_status=booking.booking_status,
        payment_status=booking.payment_status,
        cleaning_price=booking.cleaning_price,
        supplies_charges=booking.supplies_charges or 0.0,
        discount_amount=booking.discount_amount or 0.0,
        additional_charges=booking.additional_charges or 0.0,
        total_amount=booking.total_amount,
        cleaning_date=booking.cleaning_date,
        remarks=booking.remarks,
        is_active=booking.is_active,
        created_at=booking.created_at,
        updated_at=booking.updated_at,
        booking_user=user_projection(user),
        payment_receive=(
            PaymentReceiveSummary(
                total_paid=receive.total_paid,
                payment_intent_id=receive.payment_intent_id,
            )
            if receive is not None else None
        ),
    )
