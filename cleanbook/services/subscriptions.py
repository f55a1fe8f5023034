"""
Cleaning subscription service - purchase, lookup and cancellation.

Buying a subscription creates its first booking (Initiated / PaymentPending).
Cancelling first cancels the subscription's still-open bookings through the
reconciliation engine and only then deactivates it; bookings that were
already served or paid are left exactly as they are.
"""
import logging
import uuid
from datetime import datetime, timezone
from typing import Optional

from sqlalchemy import select, update, func, and_
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

from cleanbook.errors import (
    BookingServiceError,
    InvalidTransitionError,
    NotEligibleError,
    OwnershipError,
    UpstreamError,
    ValidationError,
)
from cleanbook.models.booking import CleaningBooking, BookingStatus
from cleanbook.models.subscription import CleaningSubscription
from cleanbook.models.user import ApplicationUser, ROLE_ADMIN
from cleanbook.schemas.booking import booking_detail
from cleanbook.schemas.subscription import SubscriptionCreate, subscription_detail
from cleanbook.services import booking_store
from cleanbook.services.notifications import booking_confirmed, dispatch_notifications
from cleanbook.services.reconciliation import cancel_booking

logger = logging.getLogger(__name__)

# Open bookings fetched per round when a subscription is cancelled
CANCEL_BATCH_SIZE = 100


def _parse_id(raw: str, label: str = "subscription_id") -> uuid.UUID:
    try:
        return uuid.UUID(str(raw))
    except ValueError:
        raise ValidationError(f"Invalid {label}: {raw}") from None


async def _find_or_create_user(db: AsyncSession, email: str, full_name: str) -> ApplicationUser:
    email = email.strip().lower()
    result = await db.execute(
        select(ApplicationUser).where(func.lower(ApplicationUser.email) == email)
    )
    user = result.scalar_one_or_none()
    if user is not None:
        if not user.is_active:
            raise NotEligibleError("User account is not active")
        return user

    user = ApplicationUser(email=email, full_name=full_name)
    db.add(user)
    await db.flush()
    logger.info("User created for subscription: %s", str(user.id)[:8], extra={"user_id": str(user.id)})
    return user


async def add_subscription(db: AsyncSession, payload: SubscriptionCreate) -> dict:
    """Create a subscription and its first booking. Public: no identity required."""
    try:
        user = await _find_or_create_user(db, payload.email, payload.full_name)

        subscription = CleaningSubscription(
            subscriber_id=user.id,
            cleaning_frequency=payload.cleaning_frequency,
            cleaning_price=payload.cleaning_price,
            supplies_charges=payload.supplies_charges,
            discount_amount=payload.discount_amount,
            address=payload.address,
            is_active=True,
        )
        db.add(subscription)
        await db.flush()

        booking = await booking_store.create_booking(
            db,
            booking_user_id=user.id,
            cleaning_price=payload.cleaning_price,
            supplies_charges=payload.supplies_charges,
            discount_amount=payload.discount_amount,
            cleaning_date=payload.cleaning_date,
            remarks=payload.remarks,
            subscription_id=subscription.id,
        )
        await db.commit()
    except BookingServiceError:
        raise
    except SQLAlchemyError as e:
        await db.rollback()
        logger.error("Error adding subscription: %s", str(e), exc_info=True)
        raise UpstreamError("Could not add subscription") from e

    logger.info(
        "Subscription %s added with booking %s",
        str(subscription.id)[:8], str(booking.id)[:8],
        extra={"user_id": str(user.id), "booking_id": str(booking.id)},
    )

    if payload.cleaning_date is not None:
        await dispatch_notifications([
            booking_confirmed(user.email, str(booking.id), payload.cleaning_date)
        ])

    return {
        "subscription": subscription_detail(subscription).model_dump(mode="json"),
        "booking": booking_detail(booking).model_dump(mode="json"),
    }


async def get_user_subscription(db: AsyncSession, user_id: uuid.UUID) -> list[dict]:
    """The caller's active subscriptions, newest first."""
    try:
        result = await db.execute(
            select(CleaningSubscription)
            .where(and_(
                CleaningSubscription.subscriber_id == user_id,
                CleaningSubscription.is_active == True,
            ))
            .order_by(CleaningSubscription.created_at.desc())
        )
        subscriptions = result.scalars().all()
    except SQLAlchemyError as e:
        logger.error("Error fetching subscriptions for %s: %s", user_id, str(e), exc_info=True)
        raise UpstreamError("Could not get subscription") from e
    return [subscription_detail(s).model_dump(mode="json") for s in subscriptions]


async def _open_booking_ids(db: AsyncSession, sub_id: uuid.UUID, after: Optional[uuid.UUID]) -> list[uuid.UUID]:
    """Next batch of Initiated booking ids on the subscription, keyset-paged by id."""
    filters = [
        CleaningBooking.subscription_id == sub_id,
        CleaningBooking.booking_status == BookingStatus.INITIATED.value,
        *booking_store.eligible_filter(),
    ]
    if after is not None:
        filters.append(CleaningBooking.id > after)
    result = await db.execute(
        select(CleaningBooking.id)
        .where(and_(*filters))
        .order_by(CleaningBooking.id)
        .limit(CANCEL_BATCH_SIZE)
    )
    return list(result.scalars().all())


async def _cancel_open_bookings(
    db: AsyncSession, sub_id: uuid.UUID, actor_id: uuid.UUID
) -> tuple[int, list[BookingServiceError]]:
    cancelled = 0
    failures: list[BookingServiceError] = []
    after = None
    while True:
        booking_ids = await _open_booking_ids(db, sub_id, after)
        for booking_id in booking_ids:
            try:
                await cancel_booking(db, booking_id, actor_id=actor_id)
                cancelled += 1
            except (NotEligibleError, InvalidTransitionError) as e:
                # Served or paid in the meantime
                logger.info(
                    "Booking %s left as is on subscription cancel: %s",
                    str(booking_id)[:8], e.message, extra={"booking_id": str(booking_id)},
                )
            except BookingServiceError as e:
                logger.warning(
                    "Booking %s not cancelled with its subscription: %s",
                    str(booking_id)[:8], e.message, extra={"booking_id": str(booking_id)},
                )
                failures.append(e)
        if len(booking_ids) < CANCEL_BATCH_SIZE:
            return cancelled, failures
        after = booking_ids[-1]


async def cancel_subscription(
    db: AsyncSession,
    user_id: uuid.UUID,
    user_role: str,
    subscription_id: str,
) -> dict:
    """
    Cancel a subscription's open bookings, then deactivate it (owner or admin).

    The subscription stays active until every open booking is cancelled, so a
    call that fails part way (409 on a concurrently updated booking, 502 from
    the store) can simply be repeated.

    Returns: {"subscription": {...}, "cancelled_bookings": int}
    """
    sub_id = _parse_id(subscription_id)
    try:
        result = await db.execute(
            select(CleaningSubscription).where(CleaningSubscription.id == sub_id)
        )
        subscription = result.scalar_one_or_none()
        if subscription is None or not subscription.is_active:
            raise NotEligibleError(f"No active subscription found with id: {subscription_id}")
        if user_role != ROLE_ADMIN and subscription.subscriber_id != user_id:
            raise OwnershipError("Subscription does not belong to the current user")

        cancelled, failures = await _cancel_open_bookings(db, sub_id, user_id)
        if failures:
            logger.warning(
                "Subscription %s kept active: %d open booking(s) could not be cancelled",
                str(sub_id)[:8], len(failures), extra={"subscription_id": str(sub_id)},
            )
            raise failures[0]

        cancelled_at = datetime.now(timezone.utc)
        result = await db.execute(
            update(CleaningSubscription)
            .where(and_(
                CleaningSubscription.id == sub_id,
                CleaningSubscription.is_active == True,
            ))
            .values(is_active=False, cancelled_at=cancelled_at, updated_at=cancelled_at)
            .execution_options(synchronize_session=False)
        )
        if result.rowcount != 1:
            raise NotEligibleError(f"No active subscription found with id: {subscription_id}")
        await db.commit()
    except BookingServiceError:
        raise
    except SQLAlchemyError as e:
        await db.rollback()
        logger.error("Error cancelling subscription %s: %s", subscription_id, str(e), exc_info=True)
        raise UpstreamError("Could not cancel subscription") from e

    subscription.is_active = False
    subscription.cancelled_at = cancelled_at
    logger.info(
        "Subscription %s cancelled, %d open booking(s) cancelled",
        str(sub_id)[:8], cancelled, extra={"user_id": str(user_id)},
    )
    return {
        "subscription": subscription_detail(subscription).model_dump(mode="json"),
        "cancelled_bookings": cancelled,
    }


async def list_subscriptions(db: AsyncSession, page: int = 1, page_size: int = 10) -> dict:
    """All subscriptions, newest first (admin)."""
    try:
        total = await db.execute(select(func.count(CleaningSubscription.id)))
        result = await db.execute(
            select(CleaningSubscription)
            .order_by(CleaningSubscription.created_at.desc())
            .offset((page - 1) * page_size)
            .limit(page_size)
        )
        subscriptions = result.scalars().all()
    except SQLAlchemyError as e:
        logger.error("Error listing subscriptions: %s", str(e), exc_info=True)
        raise UpstreamError("Could not get subscriptions") from e

    return {
        "total_records": total.scalar() or 0,
        "page": page,
        "page_size": page_size,
        "data": [subscription_detail(s).model_dump(mode="json") for s in subscriptions],
    }


async def get_subscription(db: AsyncSession, subscription_id: str) -> dict:
    """One subscription by id (admin)."""
    sub_id = _parse_id(subscription_id)
    try:
        result = await db.execute(
            select(CleaningSubscription).where(CleaningSubscription.id == sub_id)
        )
        subscription = result.scalar_one_or_none()
    except SQLAlchemyError as e:
        logger.error("Error fetching subscription %s: %s", subscription_id, str(e), exc_info=True)
        raise UpstreamError("Could not get subscription") from e

    if subscription is None:
        raise NotEligibleError(f"No subscription found with id: {subscription_id}", status_code=404)
    return subscription_detail(subscription).model_dump(mode="json")
