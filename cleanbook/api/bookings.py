"""
Cleaning booking API - paid booking listing, booking edits, and admin reports.

Edits from admins may touch any field of any booking. Customers may only
reschedule or annotate their own bookings.
"""
import logging
import uuid
from typing import Optional
from fastapi import APIRouter, Depends, Query
from sqlalchemy.ext.asyncio import AsyncSession

from cleanbook.api.deps import TokenPayload, get_token_payload, require_admin
from cleanbook.config import get_settings
from cleanbook.database import get_db
from cleanbook.errors import OwnershipError, ValidationError
from cleanbook.schemas.api_responses import PaginatedResponse, SuccessResponse
from cleanbook.schemas.booking import BookingUpdate, booking_detail
from cleanbook.services import reporting
from cleanbook.services.reconciliation import apply_update

logger = logging.getLogger(__name__)
router = APIRouter(prefix="/api/CleaningBooking", tags=["bookings"])

# Fields only an admin may change
ADMIN_ONLY_FIELDS = ("additional_charges", "mark_as_served")


def _parse_uuid(raw: str, label: str) -> uuid.UUID:
    try:
        return uuid.UUID(raw)
    except ValueError:
        raise ValidationError(f"Invalid {label}: {raw}") from None


@router.get("/GetAllPaidBooking", response_model=PaginatedResponse)
async def get_all_paid_booking(
    page: int = Query(1, ge=1),
    page_size: Optional[int] = Query(None, ge=1),
    booking_user_id: Optional[str] = Query(None),
    db: AsyncSession = Depends(get_db),
    token: TokenPayload = Depends(get_token_payload),
):
    """Paid, completed bookings. Customers see their own; admins see all."""
    size = get_settings().page_size(page_size)
    user_filter = _parse_uuid(booking_user_id, "booking_user_id") if booking_user_id else None
    return await reporting.get_paid_bookings(
        db,
        user_id=token.user_id,
        user_role=token.user_role,
        page=page,
        page_size=size,
        booking_user_id=user_filter,
    )


@router.patch("/UpdateBooking/{booking_id}", response_model=SuccessResponse)
async def update_booking(
    booking_id: str,
    patch: BookingUpdate,
    db: AsyncSession = Depends(get_db),
    token: TokenPayload = Depends(get_token_payload),
):
    booking_uuid = _parse_uuid(booking_id, "booking_id")

    owner_id = None
    if not token.is_admin:
        requested = patch.model_dump(exclude_none=True)
        forbidden = [f for f in ADMIN_ONLY_FIELDS if f in requested]
        if forbidden:
            raise OwnershipError(f"Only an admin may change: {', '.join(forbidden)}")
        owner_id = token.user_id

    result = await apply_update(
        db, booking_uuid, patch, actor_id=token.user_id, owner_id=owner_id,
    )
    return SuccessResponse(
        message="Booking updated successfully",
        data=booking_detail(result.booking).model_dump(mode="json"),
    )


@router.get("/GetTopBookingUsers", response_model=SuccessResponse)
async def get_top_booking_users(
    db: AsyncSession = Depends(get_db),
    _admin: TokenPayload = Depends(require_admin),
):
    users = await reporting.get_top_booking_users(db)
    return SuccessResponse(message="Top booking users", data=users)


@router.get("/GetTotalEarnings", response_model=SuccessResponse)
async def get_total_earnings(
    db: AsyncSession = Depends(get_db),
    _admin: TokenPayload = Depends(require_admin),
):
    total = await reporting.get_total_booking_earnings(db)
    return SuccessResponse(message="Total booking earnings", data={"total_earnings": total})
