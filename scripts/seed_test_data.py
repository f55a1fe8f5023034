"""
Seed an admin, a customer with an active subscription, and a few bookings
in different states, then print bearer tokens for both users.

Usage:
    python scripts/seed_test_data.py
"""
import asyncio
import logging
from datetime import datetime, timedelta, timezone

from sqlalchemy import select
from sqlalchemy.ext.asyncio import create_async_engine, AsyncSession
from sqlalchemy.orm import sessionmaker

from cleanbook.api.deps import create_access_token
from cleanbook.config import get_settings
from cleanbook.models.booking import BookingStatus, PaymentStatus
from cleanbook.models.payment_receive import PaymentReceive
from cleanbook.models.subscription import CleaningSubscription
from cleanbook.models.user import ApplicationUser, ROLE_ADMIN, ROLE_USER
from cleanbook.services import booking_store

logging.basicConfig(level=logging.INFO)
logger = logging.getLogger(__name__)

ADMIN_EMAIL = "admin@cleanbook.app"
CUSTOMER_EMAIL = "jane.customer@example.com"


async def _get_or_create_user(session, email: str, full_name: str, role: str) -> ApplicationUser:
    result = await session.execute(select(ApplicationUser).where(ApplicationUser.email == email))
    user = result.scalar_one_or_none()
    if user:
        logger.info("User %s already exists (id=%s). Skipping.", email, user.id)
        return user
    user = ApplicationUser(email=email, full_name=full_name, role=role, is_active=True)
    session.add(user)
    await session.commit()
    logger.info("Seeded %s user: %s (id=%s)", role, email, user.id)
    return user


async def seed():
    settings = get_settings()
    engine = create_async_engine(settings.database_url, echo=False)
    async_session = sessionmaker(engine, class_=AsyncSession, expire_on_commit=False)

    async with async_session() as session:
        admin = await _get_or_create_user(session, ADMIN_EMAIL, "CleanBook Admin", ROLE_ADMIN)
        customer = await _get_or_create_user(session, CUSTOMER_EMAIL, "Jane Customer", ROLE_USER)

        result = await session.execute(
            select(CleaningSubscription).where(CleaningSubscription.subscriber_id == customer.id)
        )
        if result.scalars().first():
            logger.info("Customer already has a subscription. Skipping bookings.")
        else:
            subscription = CleaningSubscription(
                subscriber_id=customer.id,
                cleaning_frequency="weekly",
                cleaning_price=120.0,
                supplies_charges=15.0,
                discount_amount=10.0,
                address="500 Congress Ave, Austin, TX",
                is_active=True,
            )
            session.add(subscription)
            await session.flush()

            now = datetime.now(timezone.utc)
            upcoming = await booking_store.create_booking(
                session,
                booking_user_id=customer.id,
                cleaning_price=120.0,
                supplies_charges=15.0,
                discount_amount=10.0,
                cleaning_date=now + timedelta(days=3),
                subscription_id=subscription.id,
            )
            served = await booking_store.create_booking(
                session,
                booking_user_id=customer.id,
                cleaning_price=120.0,
                supplies_charges=15.0,
                discount_amount=10.0,
                cleaning_date=now - timedelta(days=1),
                subscription_id=subscription.id,
            )
            served.booking_status = BookingStatus.SERVED.value

            paid = await booking_store.create_booking(
                session,
                booking_user_id=customer.id,
                cleaning_price=120.0,
                supplies_charges=15.0,
                discount_amount=10.0,
                cleaning_date=now - timedelta(days=8),
                subscription_id=subscription.id,
            )
            paid.booking_status = BookingStatus.COMPLETED.value
            paid.payment_status = PaymentStatus.COMPLETED.value
            paid.payment_intent_id = "pi_seed_000000000000"
            session.add(PaymentReceive(
                booking_id=paid.id,
                payment_intent_id=paid.payment_intent_id,
                total_paid=paid.total_amount,
            ))
            await session.commit()
            logger.info(
                "Seeded subscription %s with bookings: upcoming=%s served=%s paid=%s",
                subscription.id, upcoming.id, served.id, paid.id,
            )

    await engine.dispose()

    print(f"Admin token:    {create_access_token(admin.id, role=ROLE_ADMIN)}")
    print(f"Customer token: {create_access_token(customer.id, role=ROLE_USER)}")


if __name__ == "__main__":
    asyncio.run(seed())
