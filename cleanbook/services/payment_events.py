"""
Payment webhook processing - verify, record, dedupe, dispatch.

Flow for every inbound Stripe event:
1. Verify the signature against STRIPE_WEBHOOK_SECRET. Unverified payloads
   are logged and dropped, never parsed further.
2. Drop redeliveries: Redis SET NX fast path, then the
   (source, event_id) unique constraint on webhook_events.
3. Record the event in the audit trail and commit it.
4. Dispatch by event type. Only payment_intent.succeeded changes booking
   state (through the reconciliation engine). Failures, cancellations and
   refunds are recorded for audit only: a paid booking never reverts.
5. If dispatch fails, mark the event deferred and queue a
   reconcile_payment_event task. The processor is acknowledged regardless.
"""
import json
import logging
import uuid
from datetime import datetime, timezone
from typing import Optional

from sqlalchemy import select, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from cleanbook.config import get_settings
from cleanbook.database import async_session_factory
from cleanbook.errors import UpstreamError
from cleanbook.models.webhook_event import WebhookEvent
from cleanbook.services import booking_store
from cleanbook.services.payment_gateway import _get_stripe, _run_sync
from cleanbook.services.reconciliation import PaymentCapture, confirm_payment
from cleanbook.services.task_dispatch import enqueue_task
from cleanbook.utils.dedup import forget_event, is_duplicate_event
from cleanbook.utils.logging import get_correlation_id
from cleanbook.utils.webhook_signatures import compute_payload_hash

logger = logging.getLogger(__name__)

STRIPE_SOURCE = "stripe"
RECONCILE_TASK = "reconcile_payment_event"

PAYMENT_SUCCEEDED = "payment_intent.succeeded"
AUDIT_ONLY_EVENTS = (
    "payment_intent.payment_failed",
    "payment_intent.canceled",
    "charge.refunded",
)


def _intent_id_of(obj: dict) -> Optional[str]:
    """PaymentIntent id carried by an event object (an intent or a charge)."""
    if obj.get("object") == "charge":
        return obj.get("payment_intent")
    return obj.get("id")


def _metadata_booking_id(obj: dict) -> Optional[uuid.UUID]:
    raw = (obj.get("metadata") or {}).get("booking_id")
    if not raw:
        return None
    try:
        return uuid.UUID(str(raw))
    except ValueError:
        logger.warning("Event metadata carries malformed booking_id %r", raw)
        return None


async def _resolve_booking_id(db: AsyncSession, obj: dict) -> Optional[uuid.UUID]:
    """metadata.booking_id first, else the booking holding this intent."""
    booking_id = _metadata_booking_id(obj)
    if booking_id is not None:
        return booking_id
    intent_id = _intent_id_of(obj)
    if not intent_id:
        return None
    booking = await booking_store.find_by_payment_intent(db, intent_id)
    return booking.id if booking is not None else None


def _capture_from_intent(intent: dict) -> PaymentCapture:
    received = intent.get("amount_received") or intent.get("amount") or 0
    return PaymentCapture(
        payment_intent_id=intent["id"],
        amount=received / 100.0,
        currency=(intent.get("currency") or get_settings().stripe_currency).lower(),
    )


async def handle_payment_event(db: AsyncSession, event: dict) -> dict:
    """
    Apply one verified event. Safe to call repeatedly for the same event.

    Returns: {"status": "completed"|"ignored", "booking_id": str|None}
    """
    event_type = event["type"]
    obj = event["data"]["object"]
    extra = {"event_id": event.get("id"), "payment_intent_id": _intent_id_of(obj)}

    if event_type != PAYMENT_SUCCEEDED and event_type not in AUDIT_ONLY_EVENTS:
        logger.info("Unhandled Stripe event type: %s", event_type, extra=extra)
        return {"status": "ignored", "booking_id": None}

    booking_id = await _resolve_booking_id(db, obj)
    if booking_id is None:
        logger.warning(
            "Stripe event %s references no known booking, skipping", event_type, extra=extra,
        )
        return {"status": "ignored", "booking_id": None}

    if event_type in AUDIT_ONLY_EVENTS:
        logger.info(
            "Stripe %s recorded for booking %s, booking state unchanged",
            event_type, str(booking_id)[:8], extra={**extra, "booking_id": str(booking_id)},
        )
        return {"status": "completed", "booking_id": str(booking_id)}

    result = await confirm_payment(db, booking_id, _capture_from_intent(obj))
    return {
        "status": "completed" if result.changed else "ignored",
        "booking_id": str(booking_id),
    }


async def _record_event(db: AsyncSession, event: dict, payload_hash: str) -> Optional[uuid.UUID]:
    """Insert the audit row and commit. Returns None if this event_id is already recorded."""
    obj = event["data"]["object"]
    record = WebhookEvent(
        source=STRIPE_SOURCE,
        event_id=event["id"],
        event_type=event["type"],
        payload_hash=payload_hash,
        raw_payload=event,
        payment_intent_id=_intent_id_of(obj),
        processing_status="processing",
        correlation_id=get_correlation_id(),
    )
    db.add(record)
    try:
        await db.commit()
    except IntegrityError:
        await db.rollback()
        return None
    return record.id


async def _set_event_status(
    db: AsyncSession,
    record_id: uuid.UUID,
    status: str,
    booking_id: Optional[str] = None,
    error_message: Optional[str] = None,
) -> None:
    values = {
        "processing_status": status,
        "error_message": error_message,
        "processed_at": datetime.now(timezone.utc),
    }
    if booking_id:
        values["booking_id"] = uuid.UUID(booking_id)
    await db.execute(
        update(WebhookEvent).where(WebhookEvent.id == record_id).values(**values)
    )
    await db.commit()


async def handle_webhook(db: AsyncSession, payload: bytes, sig_header: str) -> dict:
    """
    Process a Stripe webhook delivery.

    Raises UpstreamError (503) when verification is impossible because the
    webhook secret is not configured. A failure to write the audit row is
    re-raised after clearing the dedup mark, so the delivery fails and Stripe
    sends it again.

    Returns: {"received": True, "event_type": str|None, "status": str}
    """
    settings = get_settings()
    if not settings.stripe_webhook_secret:
        logger.error("Stripe webhook secret not configured, cannot verify events")
        raise UpstreamError("Payment webhook is not configured", status_code=503)

    try:
        stripe = _get_stripe()
    except ValueError as e:
        logger.error("Stripe not configured: %s", str(e))
        raise UpstreamError("Payment webhook is not configured", status_code=503) from e

    try:
        await _run_sync(
            stripe.Webhook.construct_event,
            payload, sig_header, settings.stripe_webhook_secret,
        )
        # Verified: work on the plain JSON from here on
        event = json.loads(payload)
    except stripe.error.SignatureVerificationError:
        logger.warning("Stripe webhook signature verification failed")
        return {"received": True, "event_type": None, "status": "unverified"}
    except Exception as e:
        logger.warning("Stripe webhook parsing failed: %s", str(e))
        return {"received": True, "event_type": None, "status": "unverified"}

    event_id = event["id"]
    event_type = event["type"]
    logger.info("Stripe webhook received: %s", event_type, extra={"event_id": event_id})

    payload_hash = compute_payload_hash(payload)
    if await is_duplicate_event(STRIPE_SOURCE, event_id, payload_hash):
        return {"received": True, "event_type": event_type, "status": "duplicate"}

    try:
        record_id = await _record_event(db, event, payload_hash)
    except Exception:
        # Not recorded anywhere: let the processor redeliver
        await forget_event(STRIPE_SOURCE, event_id)
        raise
    if record_id is None:
        logger.info("Stripe event %s already recorded", event_id, extra={"event_id": event_id})
        return {"received": True, "event_type": event_type, "status": "duplicate"}

    try:
        outcome = await handle_payment_event(db, event)
        await _set_event_status(db, record_id, outcome["status"], booking_id=outcome["booking_id"])
        status = outcome["status"]
    except Exception as e:
        await db.rollback()
        logger.error(
            "Stripe event %s processing failed, deferring: %s", event_id, str(e),
            exc_info=True, extra={"event_id": event_id},
        )
        await _defer_event(db, record_id, str(e))
        status = "deferred"

    return {"received": True, "event_type": event_type, "status": status}


async def _defer_event(db: AsyncSession, record_id: uuid.UUID, error_message: str) -> None:
    """Hand a failed event to the task processor. Never raises."""
    try:
        await _set_event_status(db, record_id, "deferred", error_message=error_message[:500])
        await enqueue_task(
            RECONCILE_TASK,
            {"webhook_event_id": str(record_id)},
            priority=3,
            delay_seconds=30,
        )
    except Exception as e:
        logger.error("Failed to defer webhook event %s: %s", record_id, str(e), exc_info=True)


async def reprocess_event(webhook_event_id: str) -> dict:
    """
    Task processor entry point for deferred events. Raises on failure so the
    task is retried with backoff.
    """
    try:
        record_id = uuid.UUID(webhook_event_id)
    except ValueError:
        return {"status": "skipped", "reason": "invalid webhook_event_id"}
    async with async_session_factory() as db:
        result = await db.execute(
            select(WebhookEvent)
            .where(WebhookEvent.id == record_id)
            .execution_options(populate_existing=True)
        )
        record = result.scalar_one_or_none()
        if record is None:
            return {"status": "skipped", "reason": "event not found"}
        if record.processing_status in ("completed", "ignored"):
            return {"status": "skipped", "reason": f"already {record.processing_status}"}

        event = record.raw_payload
        try:
            outcome = await handle_payment_event(db, event)
        except Exception as e:
            await db.rollback()
            await _set_event_status(db, record_id, "failed", error_message=str(e)[:500])
            raise
        await _set_event_status(db, record_id, outcome["status"], booking_id=outcome["booking_id"])
        return outcome
