"""
Booking emails sent through SendGrid.

Each mail is described once as a BookingMail and rendered to both HTML and
plain text. Sends report {"message_id", "status", "error"} and never raise;
the task processor turns an error into a retry, and booking state is never
touched from here.
"""
import asyncio
import html
import logging
from dataclasses import dataclass, field
from datetime import datetime
from typing import Optional

from cleanbook.config import get_settings

logger = logging.getLogger(__name__)

_BODY_STYLE = "color: #555; font-size: 15px; line-height: 1.6;"
_NOTE_STYLE = "color: #999; font-size: 13px; line-height: 1.5;"
_SIGNATURE = "CleanBook - Home cleaning, scheduled"


@dataclass(frozen=True)
class BookingMail:
    category: str
    subject: str
    heading: str
    paragraphs: list[str]
    note: Optional[str] = None
    emphasis: list[str] = field(default_factory=list)

    def render_text(self) -> str:
        parts = [self.heading, *self.paragraphs]
        if self.note:
            parts.append(self.note)
        parts.append(f"-- {_SIGNATURE}")
        return "\n\n".join(parts)

    def render_html(self) -> str:
        def _para(text: str, style: str) -> str:
            escaped = html.escape(text)
            for phrase in self.emphasis:
                escaped = escaped.replace(html.escape(phrase), f"<strong>{html.escape(phrase)}</strong>")
            return f'<p style="{style}">{escaped}</p>'

        body = "".join(_para(p, _BODY_STYLE) for p in self.paragraphs)
        if self.note:
            body += _para(self.note, _NOTE_STYLE)
        return (
            '<div style="font-family: -apple-system, sans-serif; max-width: 480px; margin: 0 auto; padding: 40px 20px;">'
            f'<h2 style="color: #111; font-size: 20px; text-align: center;">{html.escape(self.heading)}</h2>'
            f"{body}"
            f'<p style="color: #bbb; font-size: 11px; text-align: center;">{_SIGNATURE}</p>'
            "</div>"
        )


def _mask_email(email: str) -> str:
    local, _, domain = (email or "").partition("@")
    return f"{local[:2]}***@{domain}" if domain else "***"


async def _send_transactional(to_email: str, mail: BookingMail) -> dict:
    settings = get_settings()
    if not settings.sendgrid_api_key:
        logger.error("SendGrid API key missing; %s mail not sent", mail.category)
        return {"message_id": None, "status": "error", "error": "SendGrid not configured"}

    try:
        from sendgrid import SendGridAPIClient
        from sendgrid.helpers.mail import Category, Mail

        message = Mail(
            from_email=(settings.from_email_transactional, settings.from_name_transactional),
            to_emails=to_email,
            subject=mail.subject,
            plain_text_content=mail.render_text(),
            html_content=mail.render_html(),
        )
        message.category = Category(mail.category)

        client = SendGridAPIClient(api_key=settings.sendgrid_api_key)
        # The SendGrid client is blocking
        response = await asyncio.get_running_loop().run_in_executor(None, client.send, message)
    except Exception as e:
        logger.error("%s mail to %s failed: %s", mail.category, _mask_email(to_email), str(e))
        return {"message_id": None, "status": "error", "error": str(e)}

    message_id = response.headers.get("X-Message-Id", "")
    logger.info("%s mail sent to %s (%s)", mail.category, _mask_email(to_email), message_id)
    return {"message_id": message_id, "status": "sent", "error": None}


def _format_cleaning_date(cleaning_date: Optional[datetime]) -> str:
    if cleaning_date is None:
        return "to be scheduled"
    return cleaning_date.strftime("%A, %B %d, %Y at %I:%M %p")


async def send_booking_served_mail(email: str) -> dict:
    """Tell the customer their cleaning has been carried out."""
    mail = BookingMail(
        category="booking_served",
        subject="Your cleaning has been completed",
        heading="Your Cleaning Is Done",
        paragraphs=[
            "Our team has finished your cleaning. We hope everything sparkles!",
            "If anything was missed, reply to this email and we'll make it right.",
        ],
    )
    return await _send_transactional(email, mail)


async def send_booking_confirmed_mail(email: str, cleaning_date: Optional[datetime]) -> dict:
    """Confirm the (possibly new) cleaning date for a booking."""
    when = _format_cleaning_date(cleaning_date)
    mail = BookingMail(
        category="booking_confirmed",
        subject="Your cleaning booking is confirmed",
        heading="Booking Confirmed",
        paragraphs=[f"Your cleaning is confirmed for {when}."],
        note="Need a different time? You can reschedule from your account any time before the visit.",
        emphasis=[when],
    )
    return await _send_transactional(email, mail)
