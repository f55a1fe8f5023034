"""
Tests for cleanbook/services/reconciliation.py - the booking state machine.
Covers: transition planning, patch translation, reconcile() against SQLite,
payment confirmation idempotency, and the lost-race retry loop.
"""
import pytest
import uuid
from datetime import datetime, timezone
from unittest.mock import AsyncMock, MagicMock, patch
from sqlalchemy import select, func

from cleanbook.errors import (
    ConcurrentUpdateError,
    InvalidTransitionError,
    NotEligibleError,
    UpstreamError,
    ValidationError,
)
from cleanbook.models.booking import CleaningBooking, BookingStatus, PaymentStatus
from cleanbook.models.payment_receive import PaymentReceive
from cleanbook.schemas.booking import BookingUpdate
from cleanbook.services.notifications import BOOKING_CONFIRMED, BOOKING_SERVED
from cleanbook.services.reconciliation import (
    PaymentCapture,
    Transition,
    TransitionKind,
    apply_update,
    attach_payment_intent,
    cancel_booking,
    confirm_payment,
    plan_transitions,
    reconcile,
    transitions_from_patch,
)


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------

def _snapshot(**overrides):
    """An in-memory booking snapshot for pure planning tests."""
    defaults = {
        "id": uuid.uuid4(),
        "booking_status": BookingStatus.INITIATED.value,
        "payment_status": PaymentStatus.PENDING.value,
        "cleaning_price": 100.0,
        "supplies_charges": 10.0,
        "discount_amount": 5.0,
        "additional_charges": 0.0,
        "total_amount": 105.0,
        "cleaning_date": None,
        "payment_intent_id": None,
        "booking_user": MagicMock(email="owner@example.com"),
    }
    defaults.update(overrides)
    booking = MagicMock()
    for k, v in defaults.items():
        setattr(booking, k, v)
    return booking


async def _count_receives(db, booking_id):
    result = await db.execute(
        select(func.count(PaymentReceive.id)).where(PaymentReceive.booking_id == booking_id)
    )
    return result.scalar()


# ---------------------------------------------------------------------------
# transitions_from_patch
# ---------------------------------------------------------------------------

class TestTransitionsFromPatch:
    def test_empty_patch_rejected(self):
        with pytest.raises(ValidationError, match="No fields to update"):
            transitions_from_patch(BookingUpdate())

    def test_mark_as_served_false_alone_rejected(self):
        """A patch whose only field is a false intent asks for nothing."""
        with pytest.raises(ValidationError):
            transitions_from_patch(BookingUpdate(mark_as_served=False))

    def test_all_fields_map_to_transitions(self):
        when = datetime(2026, 11, 2, 9, 0, tzinfo=timezone.utc)
        transitions = transitions_from_patch(BookingUpdate(
            cleaning_date=when, remarks="Back door", additional_charges=20, mark_as_served=True,
        ))
        assert [t.kind for t in transitions] == [
            TransitionKind.RESCHEDULE,
            TransitionKind.ANNOTATE,
            TransitionKind.ADJUST_CHARGES,
            TransitionKind.MARK_SERVED,
        ]
        assert transitions[0].value == when
        assert transitions[2].value == 20

    def test_zero_charges_is_still_a_change(self):
        transitions = transitions_from_patch(BookingUpdate(additional_charges=0))
        assert transitions == [Transition(TransitionKind.ADJUST_CHARGES, 0)]


# ---------------------------------------------------------------------------
# plan_transitions - pure validation
# ---------------------------------------------------------------------------

class TestPlanTransitions:
    def test_adjust_charges_recomputes_total(self):
        plan = plan_transitions(_snapshot(), [Transition(TransitionKind.ADJUST_CHARGES, 20.0)])
        assert plan.values["additional_charges"] == 20.0
        assert plan.values["total_amount"] == 125.0

    def test_adjust_charges_rounds_up(self):
        plan = plan_transitions(_snapshot(), [Transition(TransitionKind.ADJUST_CHARGES, 0.2)])
        assert plan.values["total_amount"] == 106.0

    def test_negative_charges_rejected(self):
        with pytest.raises(ValidationError):
            plan_transitions(_snapshot(), [Transition(TransitionKind.ADJUST_CHARGES, -1.0)])

    def test_mark_served_requires_initiated(self):
        booking = _snapshot(booking_status=BookingStatus.SERVED.value)
        with pytest.raises(InvalidTransitionError, match="not eligible"):
            plan_transitions(booking, [Transition(TransitionKind.MARK_SERVED)])

    def test_mark_served_queues_served_mail(self):
        plan = plan_transitions(_snapshot(), [Transition(TransitionKind.MARK_SERVED)])
        assert plan.values["booking_status"] == BookingStatus.SERVED.value
        assert [n.kind for n in plan.notifications] == [BOOKING_SERVED]
        assert plan.notifications[0].email == "owner@example.com"

    def test_reschedule_queues_confirmation(self):
        when = datetime(2026, 11, 2, 9, 0, tzinfo=timezone.utc)
        plan = plan_transitions(_snapshot(), [Transition(TransitionKind.RESCHEDULE, when)])
        assert plan.values["cleaning_date"] == when
        assert plan.notifications[0].kind == BOOKING_CONFIRMED
        assert plan.notifications[0].cleaning_date == when

    def test_annotate_has_no_notification(self):
        plan = plan_transitions(_snapshot(), [Transition(TransitionKind.ANNOTATE, "Ring twice")])
        assert plan.values == {"remarks": "Ring twice"}
        assert plan.notifications == []

    def test_cancel_after_served_rejected(self):
        booking = _snapshot(booking_status=BookingStatus.SERVED.value)
        with pytest.raises(InvalidTransitionError):
            plan_transitions(booking, [Transition(TransitionKind.CANCEL)])

    def test_mark_served_then_cancel_in_one_plan_rejected(self):
        """Later transitions see the status set by earlier ones."""
        with pytest.raises(InvalidTransitionError):
            plan_transitions(_snapshot(), [
                Transition(TransitionKind.MARK_SERVED),
                Transition(TransitionKind.CANCEL),
            ])

    def test_confirm_payment_completes_both_statuses(self):
        capture = PaymentCapture("pi_123", 105.0)
        plan = plan_transitions(
            _snapshot(booking_status=BookingStatus.SERVED.value),
            [Transition(TransitionKind.CONFIRM_PAYMENT, capture)],
        )
        assert plan.values["payment_status"] == PaymentStatus.COMPLETED.value
        assert plan.values["booking_status"] == BookingStatus.COMPLETED.value
        assert plan.values["payment_intent_id"] == "pi_123"
        assert plan.capture == capture

    def test_attach_requires_intent_id(self):
        with pytest.raises(ValidationError):
            plan_transitions(_snapshot(), [Transition(TransitionKind.ATTACH_PAYMENT_INTENT, "")])


# ---------------------------------------------------------------------------
# reconcile / apply_update against the store
# ---------------------------------------------------------------------------

class TestApplyUpdate:
    async def test_charges_then_served_then_served_again(self, db, make_user, make_booking, mock_enqueue):
        """Price 100, supplies 10, discount 5: +20 charges totals 125, then served once."""
        user = await make_user(email="b1@example.com")
        booking = await make_booking(user)
        admin_id = uuid.uuid4()

        result = await apply_update(db, booking.id, BookingUpdate(additional_charges=20), actor_id=admin_id)
        assert result.changed is True
        assert result.booking.total_amount == 125.0
        assert result.booking.version == 2
        assert result.booking.updated_by == admin_id

        result = await apply_update(db, booking.id, BookingUpdate(mark_as_served=True), actor_id=admin_id)
        assert result.booking.booking_status == BookingStatus.SERVED.value
        mock_enqueue.assert_awaited_once()
        assert mock_enqueue.await_args.args[0] == BOOKING_SERVED
        assert mock_enqueue.await_args.args[1]["email"] == "b1@example.com"

        with pytest.raises(InvalidTransitionError):
            await apply_update(db, booking.id, BookingUpdate(mark_as_served=True), actor_id=admin_id)

        refreshed = await db.get(CleaningBooking, booking.id, populate_existing=True)
        assert refreshed.booking_status == BookingStatus.SERVED.value
        assert refreshed.version == 3
        assert mock_enqueue.await_count == 1

    async def test_unknown_booking_not_eligible(self, db):
        with pytest.raises(NotEligibleError, match="No active booking found"):
            await apply_update(db, uuid.uuid4(), BookingUpdate(remarks="x"), actor_id=uuid.uuid4())

    async def test_inactive_booking_not_eligible(self, db, make_user, make_booking):
        user = await make_user()
        booking = await make_booking(user, is_active=False)
        with pytest.raises(NotEligibleError):
            await apply_update(db, booking.id, BookingUpdate(remarks="x"), actor_id=user.id)

    async def test_cancelled_booking_not_eligible(self, db, make_user, make_booking):
        user = await make_user()
        booking = await make_booking(user, booking_status=BookingStatus.CANCELLED.value)
        with pytest.raises(NotEligibleError):
            await apply_update(db, booking.id, BookingUpdate(remarks="x"), actor_id=user.id)

    async def test_owner_filter_hides_other_users_bookings(self, db, make_user, make_booking):
        owner = await make_user()
        stranger = await make_user()
        booking = await make_booking(owner)
        with pytest.raises(NotEligibleError):
            await apply_update(
                db, booking.id, BookingUpdate(remarks="mine now"),
                actor_id=stranger.id, owner_id=stranger.id,
            )

    async def test_paid_booking_is_immutable(self, db, make_user, make_booking):
        user = await make_user()
        booking = await make_booking(
            user,
            booking_status=BookingStatus.COMPLETED.value,
            payment_status=PaymentStatus.COMPLETED.value,
        )
        for patch_ in (
            BookingUpdate(remarks="late note"),
            BookingUpdate(additional_charges=50),
            BookingUpdate(mark_as_served=True),
        ):
            with pytest.raises(NotEligibleError):
                await apply_update(db, booking.id, patch_, actor_id=user.id)

        refreshed = await db.get(CleaningBooking, booking.id, populate_existing=True)
        assert refreshed.booking_status == BookingStatus.COMPLETED.value
        assert refreshed.total_amount == booking.total_amount

    async def test_notification_failure_does_not_fail_update(self, db, make_user, make_booking, mock_enqueue):
        mock_enqueue.side_effect = RuntimeError("queue down")
        user = await make_user()
        booking = await make_booking(user)

        result = await apply_update(db, booking.id, BookingUpdate(mark_as_served=True), actor_id=user.id)
        assert result.booking.booking_status == BookingStatus.SERVED.value

    async def test_store_error_is_sanitized(self, db):
        from sqlalchemy.exc import OperationalError
        with patch(
            "cleanbook.services.reconciliation.booking_store.get_eligible_booking",
            new_callable=AsyncMock,
            side_effect=OperationalError("SELECT", {}, Exception("connection reset")),
        ):
            with pytest.raises(UpstreamError) as exc_info:
                await apply_update(db, uuid.uuid4(), BookingUpdate(remarks="x"), actor_id=uuid.uuid4())
        assert exc_info.value.message == "Could not update booking"
        assert "connection reset" not in exc_info.value.message


class TestReconcileRetries:
    async def test_lost_race_rereads_and_succeeds(self, db, make_user, make_booking):
        user = await make_user()
        booking = await make_booking(user)

        from cleanbook.services import booking_store
        real_update = booking_store.conditional_update
        calls = []

        async def _flaky(db_, booking_id, expected_version, values):
            calls.append(expected_version)
            if len(calls) == 1:
                return False
            return await real_update(db_, booking_id, expected_version, values)

        with patch("cleanbook.services.reconciliation.booking_store.conditional_update", side_effect=_flaky):
            result = await reconcile(db, booking.id, [Transition(TransitionKind.ANNOTATE, "retry")])

        assert result.booking.remarks == "retry"
        assert len(calls) == 2

    async def test_gives_up_after_max_attempts(self, db, make_user, make_booking):
        user = await make_user()
        booking = await make_booking(user)
        settings = MagicMock(reconcile_max_attempts=2)

        with (
            patch("cleanbook.services.reconciliation.get_settings", return_value=settings),
            patch(
                "cleanbook.services.reconciliation.booking_store.conditional_update",
                new_callable=AsyncMock, return_value=False,
            ) as mock_update,
        ):
            with pytest.raises(ConcurrentUpdateError):
                await reconcile(db, booking.id, [Transition(TransitionKind.ANNOTATE, "x")])
        assert mock_update.await_count == 2

    async def test_stale_version_is_rejected_by_store(self, db, make_user, make_booking):
        """A writer holding an old snapshot cannot overwrite a newer one."""
        from cleanbook.services import booking_store
        user = await make_user()
        booking = await make_booking(user)

        assert await booking_store.conditional_update(db, booking.id, 1, {"remarks": "first"}) is True
        assert await booking_store.conditional_update(db, booking.id, 1, {"remarks": "second"}) is False
        await db.commit()

        refreshed = await db.get(CleaningBooking, booking.id, populate_existing=True)
        assert refreshed.remarks == "first"
        assert refreshed.version == 2

    async def test_empty_transition_list_rejected(self, db):
        with pytest.raises(ValidationError):
            await reconcile(db, uuid.uuid4(), [])


# ---------------------------------------------------------------------------
# confirm_payment - webhook path
# ---------------------------------------------------------------------------

class TestConfirmPayment:
    async def test_replay_creates_one_receive_and_one_mail(self, db, make_user, make_booking, mock_enqueue):
        user = await make_user()
        booking = await make_booking(user, booking_status=BookingStatus.SERVED.value, payment_intent_id="pi_b1")
        capture = PaymentCapture("pi_b1", 105.0)

        first = await confirm_payment(db, booking.id, capture)
        second = await confirm_payment(db, booking.id, capture)

        assert first.changed is True
        assert first.booking.booking_status == BookingStatus.COMPLETED.value
        assert first.booking.payment_status == PaymentStatus.COMPLETED.value
        assert first.booking.payment_receive.total_paid == 105.0
        assert second.changed is False
        assert second.booking is None
        assert await _count_receives(db, booking.id) == 1
        assert mock_enqueue.await_count == 1
        assert mock_enqueue.await_args.args[0] == BOOKING_CONFIRMED

    async def test_confirms_initiated_booking(self, db, make_user, make_booking):
        user = await make_user()
        booking = await make_booking(user)
        result = await confirm_payment(db, booking.id, PaymentCapture("pi_init", 105.0))
        assert result.booking.booking_status == BookingStatus.COMPLETED.value

    async def test_cancelled_booking_is_left_alone(self, db, make_user, make_booking):
        user = await make_user()
        booking = await make_booking(user, booking_status=BookingStatus.CANCELLED.value)
        result = await confirm_payment(db, booking.id, PaymentCapture("pi_late", 105.0))
        assert result.changed is False
        assert await _count_receives(db, booking.id) == 0

    async def test_unknown_booking_is_noop(self, db):
        result = await confirm_payment(db, uuid.uuid4(), PaymentCapture("pi_ghost", 10.0))
        assert result.changed is False

    async def test_amount_mismatch_still_completes(self, db, make_user, make_booking):
        """The processor's capture is authoritative; the mismatch is only logged."""
        user = await make_user()
        booking = await make_booking(user)
        result = await confirm_payment(db, booking.id, PaymentCapture("pi_diff", 99.0))
        assert result.changed is True
        assert result.booking.payment_receive.total_paid == 99.0

    async def test_edit_after_payment_rejected(self, db, make_user, make_booking):
        user = await make_user()
        booking = await make_booking(user)
        await confirm_payment(db, booking.id, PaymentCapture("pi_x", 105.0))
        with pytest.raises(NotEligibleError):
            await apply_update(db, booking.id, BookingUpdate(mark_as_served=True), actor_id=user.id)


class TestAttachAndCancel:
    async def test_attach_payment_intent(self, db, make_user, make_booking):
        user = await make_user()
        booking = await make_booking(user)
        result = await attach_payment_intent(db, booking.id, "pi_new", owner_id=user.id)
        assert result.booking.payment_intent_id == "pi_new"
        assert result.booking.payment_status == PaymentStatus.PENDING.value

    async def test_cancel_initiated(self, db, make_user, make_booking):
        user = await make_user()
        booking = await make_booking(user)
        result = await cancel_booking(db, booking.id, actor_id=user.id)
        assert result.booking.booking_status == BookingStatus.CANCELLED.value

    async def test_cancel_served_rejected(self, db, make_user, make_booking):
        user = await make_user()
        booking = await make_booking(user, booking_status=BookingStatus.SERVED.value)
        with pytest.raises(InvalidTransitionError):
            await cancel_booking(db, booking.id, actor_id=user.id)
