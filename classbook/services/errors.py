from __future__ import annotations


class BookingError(Exception):
    """Base class for every business error raised by the services.

    ``message`` is safe to show to the person who triggered the operation.
    """

    message = "Something went wrong"

    def __init__(self, message: str | None = None):
        if message is not None:
            self.message = message
        super().__init__(self.message)


class Conflict(BookingError):
    """Expected, recoverable contention: re-fetch and decide again."""

    message = "This item was just taken, please choose another one"


class SlotTaken(Conflict):
    message = "This time slot has already been claimed, please pick another slot"


class SessionFull(Conflict):
    message = "Class is full"


class DuplicateGuest(Conflict):
    message = "Already booked for this class"


class InsufficientCredit(BookingError):
    message = "No available credits with this instructor"


class PassUnavailable(BookingError):
    message = "This free class pass is invalid, expired or already used"


class NotFound(BookingError):
    message = "Not found"


class SessionClosed(BookingError):
    message = "This class is no longer open for booking"


class NotOwner(BookingError):
    message = "Not authorized to cancel this booking"


class InvalidRequest(BookingError):
    message = "Invalid request"


class UpstreamUnavailable(BookingError):
    message = "An external service is unavailable, please try again"


class InvariantViolation(BookingError):
    """A guarded write let something impossible through. Always a bug."""

    message = "Internal consistency error"
