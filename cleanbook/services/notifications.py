"""
Notification service - fire-and-forget customer emails for booking events.

Booking state changes hand their notifications to dispatch_notifications()
after commit. Each one becomes a task_queue row that the task processor
sends later, so a slow or failing mail provider never touches the request
that changed the booking.
"""
import logging
from dataclasses import dataclass
from datetime import datetime
from typing import Iterable, Optional

from cleanbook.services.task_dispatch import enqueue_task

logger = logging.getLogger(__name__)

BOOKING_SERVED = "send_booking_served_mail"
BOOKING_CONFIRMED = "send_booking_confirmed_mail"


@dataclass(frozen=True)
class Notification:
    kind: str
    email: str
    booking_id: str
    cleaning_date: Optional[datetime] = None

    def to_payload(self) -> dict:
        return {
            "email": self.email,
            "booking_id": self.booking_id,
            "cleaning_date": self.cleaning_date.isoformat() if self.cleaning_date else None,
        }


def booking_served(email: str, booking_id: str) -> Notification:
    return Notification(BOOKING_SERVED, email, booking_id)


def booking_confirmed(email: str, booking_id: str, cleaning_date: Optional[datetime]) -> Notification:
    return Notification(BOOKING_CONFIRMED, email, booking_id, cleaning_date)


async def dispatch_notifications(notifications: Iterable[Notification]) -> int:
    """
    Queue notifications for background delivery. Never raises.

    Returns the number successfully queued.
    """
    queued = 0
    for notification in notifications:
        if not notification.email:
            logger.warning(
                "Skipping %s for booking %s: no recipient email",
                notification.kind, notification.booking_id[:8],
                extra={"booking_id": notification.booking_id},
            )
            continue
        try:
            await enqueue_task(notification.kind, notification.to_payload(), priority=7)
            queued += 1
        except Exception as e:
            logger.error(
                "Failed to queue %s for booking %s: %s",
                notification.kind, notification.booking_id[:8], str(e),
                extra={"booking_id": notification.booking_id},
            )
    return queued
