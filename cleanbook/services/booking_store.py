"""
Booking store - query and write primitives over cleaning_bookings.

Everything here is a thin, transaction-agnostic wrapper around the session:
callers own commit/rollback. The one primitive the reconciliation engine
relies on for correctness is conditional_update(), a single
UPDATE ... WHERE <eligibility> AND version = :expected statement.
"""
import logging
import math
import uuid
from typing import Any, Iterable, Optional

from sqlalchemy import select, update, func, and_
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.orm import selectinload

from cleanbook.models.booking import (
    CleaningBooking,
    BookingStatus,
    PaymentStatus,
    TERMINAL_BOOKING_STATUSES,
)

logger = logging.getLogger(__name__)


def compute_total_amount(
    cleaning_price: float,
    additional_charges: float,
    supplies_charges: float,
    discount_amount: float,
) -> float:
    """ceil(cleaning_price + additional_charges + supplies_charges - discount_amount)"""
    return float(math.ceil(
        (cleaning_price or 0) + (additional_charges or 0)
        + (supplies_charges or 0) - (discount_amount or 0)
    ))


def eligible_filter() -> list:
    """Predicate for bookings that may still be mutated: active, not terminal, unpaid."""
    return [
        CleaningBooking.is_active == True,
        CleaningBooking.booking_status.not_in(TERMINAL_BOOKING_STATUSES),
        CleaningBooking.payment_status != PaymentStatus.COMPLETED.value,
    ]


def paid_filter() -> list:
    """Predicate for bookings in both completed terminal states."""
    return [
        CleaningBooking.booking_status == BookingStatus.COMPLETED.value,
        CleaningBooking.payment_status == PaymentStatus.COMPLETED.value,
    ]


def _with_relations(query, with_user: bool, with_payment: bool):
    if with_user:
        query = query.options(selectinload(CleaningBooking.booking_user))
    if with_payment:
        query = query.options(selectinload(CleaningBooking.payment_receive))
    return query


async def count(db: AsyncSession, filters: Iterable) -> int:
    result = await db.execute(
        select(func.count(CleaningBooking.id)).where(*filters)
    )
    return result.scalar() or 0


async def get_all(
    db: AsyncSession,
    filters: Iterable,
    limit: int,
    skip: int = 0,
    with_user: bool = False,
    with_payment: bool = False,
) -> list[CleaningBooking]:
    query = (
        select(CleaningBooking)
        .where(*filters)
        .order_by(CleaningBooking.created_at.desc())
        .offset(skip)
        .limit(limit)
    )
    query = _with_relations(query, with_user, with_payment)
    result = await db.execute(query)
    return list(result.scalars().all())


async def get_one_where(
    db: AsyncSession,
    filters: Iterable,
    with_user: bool = False,
    with_payment: bool = False,
) -> Optional[CleaningBooking]:
    # populate_existing: a conditional UPDATE may have changed the row under
    # an instance already in the identity map
    query = (
        select(CleaningBooking)
        .where(*filters)
        .limit(1)
        .execution_options(populate_existing=True)
    )
    query = _with_relations(query, with_user, with_payment)
    result = await db.execute(query)
    return result.scalar_one_or_none()


async def get_eligible_booking(
    db: AsyncSession,
    booking_id: uuid.UUID,
    owner_id: Optional[uuid.UUID] = None,
    with_user: bool = False,
) -> Optional[CleaningBooking]:
    """Fetch a booking only if it is still mutable (and owned by owner_id, when given)."""
    filters = [CleaningBooking.id == booking_id, *eligible_filter()]
    if owner_id is not None:
        filters.append(CleaningBooking.booking_user_id == owner_id)
    return await get_one_where(db, filters, with_user=with_user)


async def conditional_update(
    db: AsyncSession,
    booking_id: uuid.UUID,
    expected_version: int,
    values: dict[str, Any],
) -> bool:
    """
    Compare-and-swap update.

    Applies `values` only if the row is still eligible AND still at
    `expected_version`, bumping the version in the same statement.
    Returns True if exactly one row changed.
    """
    result = await db.execute(
        update(CleaningBooking)
        .where(
            and_(
                CleaningBooking.id == booking_id,
                CleaningBooking.version == expected_version,
                *eligible_filter(),
            )
        )
        .values(**values, version=CleaningBooking.version + 1)
        .execution_options(synchronize_session=False)
    )
    matched = result.rowcount == 1
    if not matched:
        logger.info(
            "Conditional update missed for booking %s at version %d",
            str(booking_id)[:8], expected_version,
            extra={"booking_id": str(booking_id)},
        )
    return matched


async def update_one_by_id(
    db: AsyncSession,
    booking_id: uuid.UUID,
    values: dict[str, Any],
) -> bool:
    """
    Unconditional update by id. Still bumps the version so any in-flight
    conditional_update against the old snapshot misses.
    """
    result = await db.execute(
        update(CleaningBooking)
        .where(CleaningBooking.id == booking_id)
        .values(**values, version=CleaningBooking.version + 1)
        .execution_options(synchronize_session=False)
    )
    return result.rowcount == 1


async def find_by_payment_intent(
    db: AsyncSession,
    payment_intent_id: str,
) -> Optional[CleaningBooking]:
    return await get_one_where(
        db, [CleaningBooking.payment_intent_id == payment_intent_id]
    )


async def create_booking(
    db: AsyncSession,
    booking_user_id: uuid.UUID,
    cleaning_price: float,
    supplies_charges: float = 0.0,
    discount_amount: float = 0.0,
    cleaning_date=None,
    remarks: Optional[str] = None,
    subscription_id: Optional[uuid.UUID] = None,
    created_by: Optional[uuid.UUID] = None,
) -> CleaningBooking:
    """Insert a new Initiated/Pending booking. Flushes, does not commit."""
    booking = CleaningBooking(
        booking_user_id=booking_user_id,
        subscription_id=subscription_id,
        booking_status=BookingStatus.INITIATED.value,
        payment_status=PaymentStatus.PENDING.value,
        cleaning_price=cleaning_price,
        supplies_charges=supplies_charges,
        discount_amount=discount_amount,
        additional_charges=0.0,
        total_amount=compute_total_amount(cleaning_price, 0.0, supplies_charges, discount_amount),
        cleaning_date=cleaning_date,
        remarks=remarks,
        is_active=True,
        version=1,
        created_by=created_by or booking_user_id,
        updated_by=created_by or booking_user_id,
    )
    db.add(booking)
    await db.flush()
    logger.info(
        "Booking created: %s total=%.2f",
        str(booking.id)[:8], booking.total_amount,
        extra={"booking_id": str(booking.id), "user_id": str(booking_user_id)},
    )
    return booking
