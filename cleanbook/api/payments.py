"""
Payment API - payment intent issuance and the Stripe webhook.

The webhook endpoint has NO auth (Stripe signature verification only). It
answers 200 for every delivery it handles, including unverified, duplicate
and deferred ones, 503 when the webhook secret is not configured, and 500
when the event cannot be written to the audit trail, so Stripe redelivers it.
"""
import logging
import uuid
from fastapi import APIRouter, Depends, Request
from sqlalchemy.ext.asyncio import AsyncSession

from cleanbook.api.deps import TokenPayload, get_token_payload
from cleanbook.database import get_db
from cleanbook.errors import ValidationError
from cleanbook.schemas.api_responses import SuccessResponse, WebhookAck
from cleanbook.services import payment_events
from cleanbook.services.payment_gateway import get_payment_intent
from cleanbook.utils.webhook_signatures import get_return_url

logger = logging.getLogger(__name__)
router = APIRouter(prefix="/api/PaymentReceive", tags=["payments"])


@router.get("/GetIntentByBookingId/{doc_id}", response_model=SuccessResponse)
async def get_intent_by_booking_id(
    doc_id: str,
    request: Request,
    db: AsyncSession = Depends(get_db),
    token: TokenPayload = Depends(get_token_payload),
):
    """Get or create the PaymentIntent for one of the caller's bookings."""
    try:
        booking_id = uuid.UUID(doc_id)
    except ValueError:
        raise ValidationError(f"Invalid booking id: {doc_id}") from None

    intent = await get_payment_intent(
        db,
        booking_id=booking_id,
        user_id=token.user_id,
        return_url=get_return_url(request),
    )
    return SuccessResponse(message="Payment intent", data=intent)


@router.post("/WebhookEvent", response_model=WebhookAck, status_code=200)
async def webhook_event(
    request: Request,
    db: AsyncSession = Depends(get_db),
):
    """
    Stripe webhook endpoint. No JWT auth - uses Stripe signature verification.
    """
    payload = await request.body()
    sig_header = request.headers.get("stripe-signature", "")

    result = await payment_events.handle_webhook(db, payload, sig_header)
    return WebhookAck(received=True, event_type=result.get("event_type"))
