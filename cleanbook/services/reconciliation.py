"""
Booking reconciliation engine - the only writer of booking/payment state.

Admin and customer edits, payment-intent attachment, webhook payment
confirmation and subscription cancellation all describe their change as a
list of Transition values and go through reconcile(). reconcile():

1. reads the booking through the eligibility filter (active, not
   Completed/Cancelled, not paid) - a miss is NotEligibleError,
2. validates every transition against that snapshot and builds one set of
   column values,
3. writes them with booking_store.conditional_update(), which re-checks the
   eligibility filter and the snapshot version in the same UPDATE,
4. on a lost race re-reads and tries again, a bounded number of times,
5. commits, then queues notifications. Notification failures are logged only.

A replayed payment confirmation is a no-op: once payment_status is
PaymentCompleted the booking no longer matches the eligibility filter.
"""
import enum
import logging
import uuid
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Optional

from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

from cleanbook.config import get_settings
from cleanbook.errors import (
    BookingServiceError,
    ConcurrentUpdateError,
    InvalidTransitionError,
    NotEligibleError,
    UpstreamError,
    ValidationError,
)
from cleanbook.models.booking import CleaningBooking, BookingStatus, PaymentStatus
from cleanbook.models.payment_receive import PaymentReceive
from cleanbook.schemas.booking import BookingUpdate
from cleanbook.services import booking_store
from cleanbook.services.notifications import (
    Notification,
    booking_confirmed,
    booking_served,
    dispatch_notifications,
)

logger = logging.getLogger(__name__)


class TransitionKind(str, enum.Enum):
    RESCHEDULE = "reschedule"
    ANNOTATE = "annotate"
    ADJUST_CHARGES = "adjust_charges"
    MARK_SERVED = "mark_served"
    ATTACH_PAYMENT_INTENT = "attach_payment_intent"
    CONFIRM_PAYMENT = "confirm_payment"
    CANCEL = "cancel"


@dataclass(frozen=True)
class Transition:
    kind: TransitionKind
    value: Any = None


@dataclass(frozen=True)
class PaymentCapture:
    """A processor-confirmed capture for one payment intent."""
    payment_intent_id: str
    amount: float
    currency: str = "usd"


@dataclass
class ReconciliationResult:
    booking: Optional[CleaningBooking]
    changed: bool
    notifications: list[Notification] = field(default_factory=list)


class _Plan:
    """Column values and post-commit notifications accumulated for one write."""

    def __init__(self, booking: CleaningBooking):
        self.booking = booking
        self.values: dict[str, Any] = {}
        self.notifications: list[Notification] = []
        self.capture: Optional[PaymentCapture] = None

    @property
    def email(self) -> str:
        user = self.booking.booking_user
        return user.email if user is not None else ""

    @property
    def booking_id(self) -> str:
        return str(self.booking.id)


def _require_initiated(plan: _Plan, action: str) -> None:
    current = plan.values.get("booking_status", plan.booking.booking_status)
    if current != BookingStatus.INITIATED.value:
        raise InvalidTransitionError(
            f"Booking status is not eligible for {action} (current: {current})"
        )


def _reschedule(plan: _Plan, cleaning_date: datetime) -> None:
    plan.values["cleaning_date"] = cleaning_date
    plan.notifications.append(booking_confirmed(plan.email, plan.booking_id, cleaning_date))


def _annotate(plan: _Plan, remarks: str) -> None:
    plan.values["remarks"] = remarks


def _adjust_charges(plan: _Plan, additional_charges: float) -> None:
    if additional_charges is None or additional_charges < 0:
        raise ValidationError("additional_charges must be zero or greater")
    booking = plan.booking
    plan.values["additional_charges"] = additional_charges
    plan.values["total_amount"] = booking_store.compute_total_amount(
        booking.cleaning_price,
        additional_charges,
        booking.supplies_charges,
        booking.discount_amount,
    )


def _mark_served(plan: _Plan, _value: Any) -> None:
    _require_initiated(plan, "marking as served")
    plan.values["booking_status"] = BookingStatus.SERVED.value
    plan.notifications.append(booking_served(plan.email, plan.booking_id))


def _attach_payment_intent(plan: _Plan, payment_intent_id: str) -> None:
    if not payment_intent_id:
        raise ValidationError("payment_intent_id is required")
    plan.values["payment_intent_id"] = payment_intent_id


def _confirm_payment(plan: _Plan, capture: PaymentCapture) -> None:
    booking = plan.booking
    if booking.payment_intent_id and booking.payment_intent_id != capture.payment_intent_id:
        logger.warning(
            "Booking %s paid through intent %s, expected %s",
            plan.booking_id[:8], capture.payment_intent_id, booking.payment_intent_id,
            extra={"booking_id": plan.booking_id, "payment_intent_id": capture.payment_intent_id},
        )
    if round(capture.amount, 2) != round(booking.total_amount or 0, 2):
        logger.warning(
            "Captured amount %.2f differs from booking total %.2f for %s",
            capture.amount, booking.total_amount or 0, plan.booking_id[:8],
            extra={"booking_id": plan.booking_id, "payment_intent_id": capture.payment_intent_id},
        )
    plan.values["payment_status"] = PaymentStatus.COMPLETED.value
    plan.values["booking_status"] = BookingStatus.COMPLETED.value
    plan.values["payment_intent_id"] = capture.payment_intent_id
    plan.capture = capture
    plan.notifications.append(
        booking_confirmed(plan.email, plan.booking_id, booking.cleaning_date)
    )


def _cancel(plan: _Plan, _value: Any) -> None:
    _require_initiated(plan, "cancellation")
    plan.values["booking_status"] = BookingStatus.CANCELLED.value


_TRANSITION_HANDLERS = {
    TransitionKind.RESCHEDULE: _reschedule,
    TransitionKind.ANNOTATE: _annotate,
    TransitionKind.ADJUST_CHARGES: _adjust_charges,
    TransitionKind.MARK_SERVED: _mark_served,
    TransitionKind.ATTACH_PAYMENT_INTENT: _attach_payment_intent,
    TransitionKind.CONFIRM_PAYMENT: _confirm_payment,
    TransitionKind.CANCEL: _cancel,
}


def plan_transitions(booking: CleaningBooking, transitions: list[Transition]) -> _Plan:
    """Validate transitions against a booking snapshot. Pure: touches no storage."""
    plan = _Plan(booking)
    for transition in transitions:
        handler = _TRANSITION_HANDLERS.get(transition.kind)
        if handler is None:
            raise ValidationError(f"Unsupported transition: {transition.kind}")
        handler(plan, transition.value)
    return plan


def transitions_from_patch(patch: BookingUpdate) -> list[Transition]:
    """Translate an edit request into transitions. Empty patches are rejected."""
    if not patch.model_dump(exclude_none=True):
        raise ValidationError("No fields to update")

    transitions = []
    if patch.cleaning_date is not None:
        transitions.append(Transition(TransitionKind.RESCHEDULE, patch.cleaning_date))
    if patch.remarks:
        transitions.append(Transition(TransitionKind.ANNOTATE, patch.remarks))
    if patch.additional_charges is not None:
        transitions.append(Transition(TransitionKind.ADJUST_CHARGES, patch.additional_charges))
    if patch.mark_as_served:
        transitions.append(Transition(TransitionKind.MARK_SERVED))

    if not transitions:
        raise ValidationError("No fields to update")
    return transitions


async def reconcile(
    db: AsyncSession,
    booking_id: uuid.UUID,
    transitions: list[Transition],
    actor_id: Optional[uuid.UUID] = None,
    owner_id: Optional[uuid.UUID] = None,
) -> ReconciliationResult:
    """
    Apply transitions to one booking atomically and commit.

    Raises NotEligibleError, InvalidTransitionError, ValidationError, or
    ConcurrentUpdateError once the retries are used up.
    Store errors propagate; the public wrappers below sanitize them.
    """
    if not transitions:
        raise ValidationError("No fields to update")

    max_attempts = max(1, get_settings().reconcile_max_attempts)
    for attempt in range(1, max_attempts + 1):
        booking = await booking_store.get_eligible_booking(
            db, booking_id, owner_id=owner_id, with_user=True,
        )
        if booking is None:
            raise NotEligibleError(f"No active booking found with id: {booking_id}")

        plan = plan_transitions(booking, transitions)
        plan.values["updated_at"] = datetime.now(timezone.utc)
        if actor_id is not None:
            plan.values["updated_by"] = actor_id

        if not await booking_store.conditional_update(db, booking.id, booking.version, plan.values):
            logger.info(
                "Booking %s changed during update (attempt %d/%d), re-reading",
                str(booking_id)[:8], attempt, max_attempts,
                extra={"booking_id": str(booking_id)},
            )
            continue

        if plan.capture is not None:
            db.add(PaymentReceive(
                booking_id=booking.id,
                payment_intent_id=plan.capture.payment_intent_id,
                total_paid=plan.capture.amount,
                currency=plan.capture.currency,
            ))
            await db.flush()

        await db.commit()

        updated = await booking_store.get_one_where(
            db, [CleaningBooking.id == booking.id], with_user=True, with_payment=True,
        )
        logger.info(
            "Booking %s reconciled: %s",
            str(booking_id)[:8], ",".join(t.kind.value for t in transitions),
            extra={"booking_id": str(booking_id)},
        )

        # Post-commit, best-effort
        await dispatch_notifications(plan.notifications)
        return ReconciliationResult(updated, True, plan.notifications)

    raise ConcurrentUpdateError(
        f"Booking {booking_id} was modified concurrently, please retry"
    )


async def apply_update(
    db: AsyncSession,
    booking_id: uuid.UUID,
    patch: BookingUpdate,
    actor_id: uuid.UUID,
    owner_id: Optional[uuid.UUID] = None,
) -> ReconciliationResult:
    """Edit path for admins and customers (date, remarks, charges, mark served)."""
    try:
        transitions = transitions_from_patch(patch)
        return await reconcile(db, booking_id, transitions, actor_id=actor_id, owner_id=owner_id)
    except BookingServiceError:
        raise
    except SQLAlchemyError as e:
        await db.rollback()
        logger.error(
            "Store error updating booking %s: %s", booking_id, str(e),
            exc_info=True, extra={"booking_id": str(booking_id)},
        )
        raise UpstreamError("Could not update booking") from e
    except Exception as e:
        await db.rollback()
        logger.error(
            "Error updating booking %s: %s", booking_id, str(e),
            exc_info=True, extra={"booking_id": str(booking_id)},
        )
        raise UpstreamError("Could not update booking") from e


async def attach_payment_intent(
    db: AsyncSession,
    booking_id: uuid.UUID,
    payment_intent_id: str,
    owner_id: uuid.UUID,
) -> ReconciliationResult:
    """Record the processor intent issued for a booking."""
    return await reconcile(
        db, booking_id,
        [Transition(TransitionKind.ATTACH_PAYMENT_INTENT, payment_intent_id)],
        actor_id=owner_id, owner_id=owner_id,
    )


async def cancel_booking(
    db: AsyncSession,
    booking_id: uuid.UUID,
    actor_id: uuid.UUID,
) -> ReconciliationResult:
    return await reconcile(
        db, booking_id, [Transition(TransitionKind.CANCEL)], actor_id=actor_id,
    )


async def confirm_payment(
    db: AsyncSession,
    booking_id: uuid.UUID,
    capture: PaymentCapture,
) -> ReconciliationResult:
    """
    Mark a booking paid and completed from a verified processor event.

    Idempotent: a booking that is already paid (or otherwise no longer
    eligible) is left untouched and reported as changed=False.
    """
    try:
        return await reconcile(
            db, booking_id, [Transition(TransitionKind.CONFIRM_PAYMENT, capture)],
        )
    except NotEligibleError:
        logger.info(
            "Payment confirmation for booking %s ignored: booking no longer eligible",
            str(booking_id)[:8],
            extra={"booking_id": str(booking_id), "payment_intent_id": capture.payment_intent_id},
        )
        return ReconciliationResult(None, False)
    except IntegrityError:
        # Another delivery recorded this capture first
        await db.rollback()
        logger.info(
            "Payment %s already recorded, skipping",
            capture.payment_intent_id,
            extra={"booking_id": str(booking_id), "payment_intent_id": capture.payment_intent_id},
        )
        return ReconciliationResult(None, False)
