"""Errors raised by the booking engine.

Each error carries a stable ``kind`` and a human readable ``reason``. The
HTTP layer maps kinds to status codes; nothing inside the engine swallows
them.
"""

BAD_REQUEST = "BAD_REQUEST"
FORBIDDEN = "FORBIDDEN"
NOT_FOUND = "NOT_FOUND"
CONFLICT = "CONFLICT"
RATE_LIMITED = "RATE_LIMITED"


class BookingError(Exception):
    kind = BAD_REQUEST

    def __init__(self, reason: str):
        super().__init__(reason)
        self.reason = reason


class BadRequestError(BookingError):
    kind = BAD_REQUEST


class ForbiddenError(BookingError):
    kind = FORBIDDEN


class NotFoundError(BookingError):
    kind = NOT_FOUND


class ConflictError(BookingError):
    """The store could not serialize a concurrent booking change."""

    kind = CONFLICT


class RateLimitedError(BookingError):
    kind = RATE_LIMITED
