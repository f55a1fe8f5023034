"""
Database models - import all models here so Alembic can discover them.
"""
from cleanbook.models.user import ApplicationUser
from cleanbook.models.subscription import CleaningSubscription
from cleanbook.models.booking import CleaningBooking, BookingStatus, PaymentStatus
from cleanbook.models.payment_receive import PaymentReceive
from cleanbook.models.webhook_event import WebhookEvent
from cleanbook.models.task_queue import TaskQueue

__all__ = [
    "ApplicationUser",
    "CleaningSubscription",
    "CleaningBooking",
    "BookingStatus",
    "PaymentStatus",
    "PaymentReceive",
    "WebhookEvent",
    "TaskQueue",
]
