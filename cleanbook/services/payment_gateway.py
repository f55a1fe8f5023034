"""
Payment intent gateway - issues Stripe PaymentIntents for bookings.

A booking gets at most one live intent at a time: a stored intent is reused
while its amount and currency still match the booking and it has not been
confirmed or canceled. Otherwise a new intent is created and its id attached
to the booking through the reconciliation engine.

All Stripe calls are synchronous and run via run_in_executor to avoid blocking
the asyncio event loop.
"""
import asyncio
import logging
import uuid
from typing import Optional

from sqlalchemy.ext.asyncio import AsyncSession

from cleanbook.config import get_settings
from cleanbook.errors import (
    BookingServiceError,
    NotEligibleError,
    OwnershipError,
    UpstreamError,
)
from cleanbook.models.booking import (
    CleaningBooking,
    PaymentStatus,
    TERMINAL_BOOKING_STATUSES,
)
from cleanbook.services import booking_store
from cleanbook.services.reconciliation import attach_payment_intent

logger = logging.getLogger(__name__)

# Intent statuses that can still be handed to the client for payment
REUSABLE_INTENT_STATUSES = (
    "requires_payment_method",
    "requires_confirmation",
    "requires_action",
)


def _get_stripe():
    """Get configured Stripe module with per-request API key. Raises if not configured."""
    import stripe
    settings = get_settings()
    if not settings.stripe_secret_key:
        raise ValueError("Stripe secret key not configured")
    stripe.api_key = settings.stripe_secret_key
    stripe.max_network_retries = 1
    return stripe


async def _run_sync(func, *args, **kwargs):
    """Run a synchronous Stripe SDK call in the default thread pool executor."""
    loop = asyncio.get_running_loop()
    return await loop.run_in_executor(None, lambda: func(*args, **kwargs))


def to_minor_units(amount: float) -> int:
    """Dollars to cents."""
    return int(round((amount or 0) * 100))


def idempotency_key(booking_id: str, amount_cents: int, replaces: Optional[str] = None) -> str:
    """
    Same booking, amount and replaced intent always map to the same request.

    A canceled or spent intent is replaced under a fresh key; Stripe would
    otherwise answer the new request with the intent being replaced.
    """
    return f"booking-{booking_id}-{amount_cents}-{replaces or 'new'}"


def _check_payable(booking: Optional[CleaningBooking], booking_id, user_id) -> CleaningBooking:
    if booking is None or not booking.is_active:
        raise NotEligibleError(f"No active booking found with id: {booking_id}")
    if booking.booking_user_id != user_id:
        raise OwnershipError("Booking does not belong to the current user")
    if booking.booking_status in TERMINAL_BOOKING_STATUSES:
        raise NotEligibleError(f"Booking is {booking.booking_status} and cannot be paid")
    if booking.payment_status == PaymentStatus.COMPLETED.value:
        raise NotEligibleError("Booking has already been paid")
    return booking


async def _retrieve_reusable_intent(stripe, booking: CleaningBooking, amount_cents: int, currency: str):
    """Return the stored intent if it can still collect this booking's total."""
    if not booking.payment_intent_id:
        return None
    try:
        intent = await _run_sync(stripe.PaymentIntent.retrieve, booking.payment_intent_id)
    except stripe.error.InvalidRequestError:
        logger.warning(
            "Stored payment intent %s not found, creating a new one",
            booking.payment_intent_id,
            extra={"booking_id": str(booking.id), "payment_intent_id": booking.payment_intent_id},
        )
        return None

    if (
        intent["amount"] == amount_cents
        and intent["currency"] == currency
        and intent["status"] in REUSABLE_INTENT_STATUSES
    ):
        return intent
    return None


async def get_payment_intent(
    db: AsyncSession,
    booking_id: uuid.UUID,
    user_id: uuid.UUID,
    return_url: Optional[str] = None,
) -> dict:
    """
    Get or create the PaymentIntent that pays for a booking.

    Returns: {"payment_intent_id", "client_secret", "amount", "currency",
              "status", "return_url"}
    """
    settings = get_settings()
    currency = settings.stripe_currency.lower()

    try:
        booking = await booking_store.get_one_where(db, [CleaningBooking.id == booking_id])
        booking = _check_payable(booking, booking_id, user_id)
        amount_cents = to_minor_units(booking.total_amount)

        try:
            stripe = _get_stripe()
        except ValueError as e:
            logger.error("Stripe not configured: %s", str(e))
            raise UpstreamError("Payment gateway is not available", status_code=503) from e

        try:
            intent = await _retrieve_reusable_intent(stripe, booking, amount_cents, currency)
            if intent is None:
                intent = await _run_sync(
                    stripe.PaymentIntent.create,
                    amount=amount_cents,
                    currency=currency,
                    metadata={
                        "booking_id": str(booking.id),
                        "webhook_url": settings.webhook_url,
                    },
                    automatic_payment_methods={"enabled": True},
                    idempotency_key=idempotency_key(
                        str(booking.id), amount_cents, booking.payment_intent_id,
                    ),
                )
                logger.info(
                    "Payment intent created for booking %s: %s (%d %s)",
                    str(booking.id)[:8], intent["id"], amount_cents, currency,
                    extra={"booking_id": str(booking.id), "payment_intent_id": intent["id"]},
                )
        except stripe.error.StripeError as e:
            logger.error(
                "Stripe error issuing intent for booking %s: %s", booking_id, str(e),
                exc_info=True, extra={"booking_id": str(booking_id)},
            )
            raise UpstreamError("Could not get payment intent") from e

        if booking.payment_intent_id != intent["id"]:
            await attach_payment_intent(db, booking.id, intent["id"], owner_id=user_id)

        return {
            "payment_intent_id": intent["id"],
            "client_secret": intent["client_secret"],
            "amount": amount_cents,
            "currency": currency,
            "status": intent["status"],
            "return_url": return_url,
        }
    except BookingServiceError:
        raise
    except Exception as e:
        await db.rollback()
        logger.error(
            "Error getting payment intent for booking %s: %s", booking_id, str(e),
            exc_info=True, extra={"booking_id": str(booking_id)},
        )
        raise UpstreamError("Could not get payment intent") from e
