"""
Domain errors for the booking and payment services.

Services raise these; the API layer turns them into sanitized JSON responses
via the handler registered in main.py. Messages are client-facing: never put
storage or gateway internals in them.
"""
from typing import Optional


class BookingServiceError(Exception):
    """Base class for all client-facing booking/payment failures."""

    status_code: int = 400

    def __init__(self, message: str, status_code: Optional[int] = None) -> None:
        self.message = message
        if status_code is not None:
            self.status_code = status_code
        super().__init__(message)

    @property
    def code(self) -> str:
        return self.__class__.__name__

    def to_dict(self) -> dict:
        return {"message": self.message, "code": self.code}


class ValidationError(BookingServiceError):
    """Malformed or empty request payload."""


class NotEligibleError(BookingServiceError):
    """Booking is absent, inactive, or no longer in a mutable state."""


class InvalidTransitionError(BookingServiceError):
    """Requested transition is not allowed from the booking's current status."""


class OwnershipError(BookingServiceError):
    """Authenticated identity may not act on this resource."""

    status_code = 403


class UpstreamError(BookingServiceError):
    """Store or payment gateway failure, already logged with full context."""


class ConcurrentUpdateError(BookingServiceError):
    """Booking kept changing underneath every attempt; safe to retry."""

    status_code = 409
