"""
Reporting service - read-only aggregates over paid, completed bookings.

Only bookings with booking_status=BookingCompleted AND
payment_status=PaymentCompleted are ever counted. Nothing here writes.
"""
import logging
import uuid
from typing import Optional
from sqlalchemy import select, func, and_, desc
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

from cleanbook.errors import UpstreamError
from cleanbook.models.booking import CleaningBooking
from cleanbook.models.user import ApplicationUser, ROLE_ADMIN
from cleanbook.schemas.booking import BookingUserRanking, TopBookingUser, booking_detail
from cleanbook.services import booking_store

logger = logging.getLogger(__name__)

TOP_USERS_LIMIT = 10


async def get_total_booking_earnings(db: AsyncSession) -> float:
    """Sum of total_amount across paid, completed bookings."""
    try:
        result = await db.execute(
            select(func.coalesce(func.sum(CleaningBooking.total_amount), 0.0))
            .where(and_(*booking_store.paid_filter()))
        )
        return float(result.scalar() or 0.0)
    except SQLAlchemyError as e:
        logger.error("Error computing booking earnings: %s", str(e), exc_info=True)
        raise UpstreamError("Could not get booking earnings") from e


async def get_top_booking_users(db: AsyncSession, limit: int = TOP_USERS_LIMIT) -> list[dict]:
    """
    Users with the most paid, completed bookings, highest first.

    Inactive users are left out. Ties keep whatever order the database
    returns them in.
    """
    booking_count = func.count(CleaningBooking.id).label("total_booking_count")
    try:
        result = await db.execute(
            select(
                ApplicationUser.id,
                ApplicationUser.email,
                ApplicationUser.full_name,
                ApplicationUser.profile_picture,
                ApplicationUser.date_joined,
                booking_count,
            )
            .select_from(CleaningBooking)
            .join(ApplicationUser, ApplicationUser.id == CleaningBooking.booking_user_id)
            .where(and_(*booking_store.paid_filter(), ApplicationUser.is_active == True))
            .group_by(
                ApplicationUser.id,
                ApplicationUser.email,
                ApplicationUser.full_name,
                ApplicationUser.profile_picture,
                ApplicationUser.date_joined,
            )
            .order_by(desc(booking_count))
            .limit(limit)
        )
        rows = result.all()
    except SQLAlchemyError as e:
        logger.error("Error fetching top booking users: %s", str(e), exc_info=True)
        raise UpstreamError("Could not get booking users") from e

    return [
        TopBookingUser(
            booking_user=BookingUserRanking(
                id=str(row.id),
                email=row.email,
                full_name=row.full_name,
                profile_picture=row.profile_picture,
                date_joined=row.date_joined,
            ),
            total_booking_count=row.total_booking_count,
        ).model_dump(mode="json")
        for row in rows
    ]


async def get_paid_bookings(
    db: AsyncSession,
    user_id: uuid.UUID,
    user_role: str,
    page: int = 1,
    page_size: int = 10,
    booking_user_id: Optional[uuid.UUID] = None,
) -> dict:
    """
    Paginated paid, completed bookings.

    Customers only ever see their own; admins see all, optionally
    narrowed to one booking_user_id.
    """
    filters = booking_store.paid_filter()
    if user_role != ROLE_ADMIN:
        filters.append(CleaningBooking.booking_user_id == user_id)
    elif booking_user_id is not None:
        filters.append(CleaningBooking.booking_user_id == booking_user_id)

    try:
        total_records = await booking_store.count(db, filters)
        bookings = await booking_store.get_all(
            db, filters,
            limit=page_size,
            skip=(page - 1) * page_size,
            with_user=True,
            with_payment=True,
        )
    except SQLAlchemyError as e:
        logger.error("Error listing paid bookings: %s", str(e), exc_info=True)
        raise UpstreamError("Could not get paid bookings") from e

    return {
        "total_records": total_records,
        "page": page,
        "page_size": page_size,
        "data": [booking_detail(b).model_dump(mode="json") for b in bookings],
    }
