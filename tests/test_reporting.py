"""
Tests for cleanbook/services/reporting.py - paid-only aggregates.
"""
import pytest
from unittest.mock import AsyncMock
from sqlalchemy.exc import OperationalError

from cleanbook.errors import UpstreamError
from cleanbook.models.booking import BookingStatus, PaymentStatus
from cleanbook.models.payment_receive import PaymentReceive
from cleanbook.services.reporting import (
    get_paid_bookings,
    get_top_booking_users,
    get_total_booking_earnings,
)

PAID = {
    "booking_status": BookingStatus.COMPLETED.value,
    "payment_status": PaymentStatus.COMPLETED.value,
}


class TestTotalEarnings:
    async def test_only_paid_completed_bookings_counted(self, db, make_user, make_booking):
        user = await make_user()
        await make_booking(user, **PAID)  # 105
        await make_booking(user, cleaning_price=200, supplies_charges=0, discount_amount=0, **PAID)
        await make_booking(user)  # open
        await make_booking(user, booking_status=BookingStatus.SERVED.value)
        await make_booking(user, booking_status=BookingStatus.CANCELLED.value)
        # Paid but not completed must never happen; still excluded if it does
        await make_booking(user, payment_status=PaymentStatus.COMPLETED.value)

        assert await get_total_booking_earnings(db) == 305.0

    async def test_no_bookings_is_zero(self, db):
        assert await get_total_booking_earnings(db) == 0.0

    async def test_storage_error_sanitized(self):
        broken = AsyncMock()
        broken.execute.side_effect = OperationalError("SELECT", {}, Exception("conn reset"))
        with pytest.raises(UpstreamError) as exc_info:
            await get_total_booking_earnings(broken)
        assert "conn reset" not in exc_info.value.message


class TestTopBookingUsers:
    async def test_ordered_by_paid_booking_count(self, db, make_user, make_booking):
        busy = await make_user(email="busy@example.com")
        casual = await make_user(email="casual@example.com")
        for _ in range(3):
            await make_booking(busy, **PAID)
        await make_booking(casual, **PAID)
        # Open bookings do not count toward the ranking
        for _ in range(5):
            await make_booking(casual)

        top = await get_top_booking_users(db)

        assert [row["booking_user"]["email"] for row in top] == ["busy@example.com", "casual@example.com"]
        assert top[0]["total_booking_count"] == 3
        assert top[1]["total_booking_count"] == 1
        assert top[0]["booking_user"]["id"] == str(busy.id)

    async def test_row_carries_user_projection(self, db, make_user, make_booking):
        user = await make_user(email="solo@example.com", full_name="Solo Cleaner")
        await make_booking(user, **PAID)

        (row,) = await get_top_booking_users(db)

        assert set(row) == {"booking_user", "total_booking_count"}
        assert set(row["booking_user"]) == {"id", "email", "full_name", "profile_picture", "date_joined"}
        assert row["booking_user"]["full_name"] == "Solo Cleaner"
        assert isinstance(row["booking_user"]["date_joined"], str)

    async def test_inactive_users_excluded(self, db, make_user, make_booking):
        gone = await make_user(is_active=False)
        await make_booking(gone, **PAID)
        assert await get_top_booking_users(db) == []

    async def test_users_without_paid_bookings_excluded(self, db, make_user, make_booking):
        user = await make_user()
        await make_booking(user)
        assert await get_top_booking_users(db) == []

    async def test_limit(self, db, make_user, make_booking):
        for _ in range(4):
            user = await make_user()
            await make_booking(user, **PAID)
        assert len(await get_top_booking_users(db, limit=2)) == 2


class TestPaidBookings:
    async def test_customer_sees_only_own(self, db, make_user, make_booking):
        me = await make_user()
        other = await make_user()
        mine = await make_booking(me, **PAID)
        await make_booking(other, **PAID)
        await make_booking(me)

        page = await get_paid_bookings(db, me.id, "user")

        assert page["total_records"] == 1
        assert page["data"][0]["id"] == str(mine.id)
        assert page["data"][0]["booking_user"]["email"] == me.email

    async def test_customer_cannot_widen_with_user_filter(self, db, make_user, make_booking):
        me = await make_user()
        other = await make_user()
        await make_booking(other, **PAID)

        page = await get_paid_bookings(db, me.id, "user", booking_user_id=other.id)
        assert page["total_records"] == 0

    async def test_admin_sees_all_and_can_filter(self, db, make_user, make_booking):
        admin = await make_user(role="admin")
        a = await make_user()
        b = await make_user()
        await make_booking(a, **PAID)
        await make_booking(b, **PAID)

        everything = await get_paid_bookings(db, admin.id, "admin")
        assert everything["total_records"] == 2

        only_b = await get_paid_bookings(db, admin.id, "admin", booking_user_id=b.id)
        assert only_b["total_records"] == 1
        assert only_b["data"][0]["booking_user_id"] == str(b.id)

    async def test_pagination(self, db, make_user, make_booking):
        user = await make_user()
        for _ in range(3):
            await make_booking(user, **PAID)

        page = await get_paid_bookings(db, user.id, "user", page=2, page_size=2)
        assert page["total_records"] == 3
        assert page["page"] == 2
        assert len(page["data"]) == 1

    async def test_payment_receive_included(self, db, make_user, make_booking):
        user = await make_user()
        booking = await make_booking(user, payment_intent_id="pi_paid", **PAID)
        db.add(PaymentReceive(booking_id=booking.id, total_paid=105.0, payment_intent_id="pi_paid"))
        await db.commit()

        page = await get_paid_bookings(db, user.id, "user")
        assert page["data"][0]["payment_receive"] == {"total_paid": 105.0, "payment_intent_id": "pi_paid"}
