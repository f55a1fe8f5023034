"""
Tests for cleanbook/services/transactional_email.py - SendGrid booking emails.
"""
from datetime import datetime
from unittest.mock import MagicMock, patch

from cleanbook.services.transactional_email import (
    BookingMail,
    _mask_email,
    _format_cleaning_date,
    send_booking_confirmed_mail,
    send_booking_served_mail,
)


def _make_mock_settings(**overrides):
    defaults = {
        "sendgrid_api_key": "SG.test",
        "from_email_transactional": "bookings@cleanbook.app",
        "from_name_transactional": "CleanBook",
    }
    defaults.update(overrides)
    settings = MagicMock()
    for k, v in defaults.items():
        setattr(settings, k, v)
    return settings


def _mock_sendgrid_client(message_id="msg-123"):
    response = MagicMock()
    response.headers = {"X-Message-Id": message_id}
    client = MagicMock()
    client.send.return_value = response
    return client


class TestFormatCleaningDate:
    def test_none(self):
        assert _format_cleaning_date(None) == "to be scheduled"

    def test_formats_date(self):
        assert _format_cleaning_date(datetime(2026, 11, 2, 9, 30)) == "Monday, November 02, 2026 at 09:30 AM"


class TestSendBookingMails:
    async def test_served_mail_sent(self):
        client = _mock_sendgrid_client()
        with (
            patch("cleanbook.services.transactional_email.get_settings", return_value=_make_mock_settings()),
            patch("sendgrid.SendGridAPIClient", return_value=client),
        ):
            result = await send_booking_served_mail("jane@example.com")

        assert result == {"message_id": "msg-123", "status": "sent", "error": None}
        client.send.assert_called_once()

    async def test_confirmed_mail_mentions_date(self):
        client = _mock_sendgrid_client()
        with (
            patch("cleanbook.services.transactional_email.get_settings", return_value=_make_mock_settings()),
            patch("sendgrid.SendGridAPIClient", return_value=client),
        ):
            result = await send_booking_confirmed_mail("jane@example.com", datetime(2026, 11, 2, 9, 30))

        assert result["status"] == "sent"
        message = client.send.call_args.args[0]
        body = message.get()
        assert "November 02, 2026" in str(body)

    async def test_not_configured_returns_error(self):
        with patch(
            "cleanbook.services.transactional_email.get_settings",
            return_value=_make_mock_settings(sendgrid_api_key=""),
        ):
            result = await send_booking_served_mail("jane@example.com")
        assert result["status"] == "error"
        assert result["error"] == "SendGrid not configured"

    async def test_provider_failure_never_raises(self):
        client = MagicMock()
        client.send.side_effect = Exception("HTTP 500")
        with (
            patch("cleanbook.services.transactional_email.get_settings", return_value=_make_mock_settings()),
            patch("sendgrid.SendGridAPIClient", return_value=client),
        ):
            result = await send_booking_confirmed_mail("jane@example.com", None)
        assert result == {"message_id": None, "status": "error", "error": "HTTP 500"}

    async def test_sender_and_category(self):
        client = _mock_sendgrid_client()
        with (
            patch("cleanbook.services.transactional_email.get_settings", return_value=_make_mock_settings()),
            patch("sendgrid.SendGridAPIClient", return_value=client),
        ):
            await send_booking_served_mail("jane@example.com")

        body = client.send.call_args.args[0].get()
        assert body["from"] == {"email": "bookings@cleanbook.app", "name": "CleanBook"}
        assert body["categories"] == ["booking_served"]
        assert [c["type"] for c in body["content"]] == ["text/plain", "text/html"]


class TestBookingMail:
    def test_text_and_html_share_content(self):
        mail = BookingMail(
            category="booking_confirmed",
            subject="s",
            heading="Booking Confirmed",
            paragraphs=["Your cleaning is confirmed for Monday."],
            note="Reschedule any time.",
            emphasis=["Monday"],
        )
        text = mail.render_text()
        assert text.startswith("Booking Confirmed\n\n")
        assert "Reschedule any time." in text
        assert "<strong>Monday</strong>" in mail.render_html()

    def test_html_escaped(self):
        mail = BookingMail(category="c", subject="s", heading="<b>", paragraphs=["a & b"])
        rendered = mail.render_html()
        assert "&lt;b&gt;" in rendered
        assert "a &amp; b" in rendered


class TestMaskEmail:
    def test_keeps_domain(self):
        assert _mask_email("jane@example.com") == "ja***@example.com"

    def test_garbage(self):
        assert _mask_email("") == "***"
