from __future__ import annotations

import enum


class SlotStatus(str, enum.Enum):
    available = "available"
    claimed = "claimed"
    completed = "completed"


class SessionStatus(str, enum.Enum):
    upcoming = "upcoming"
    cancelled = "cancelled"
    completed = "completed"


class BookingStatus(str, enum.Enum):
    confirmed = "confirmed"
    cancelled = "cancelled"


class PaymentMethod(str, enum.Enum):
    free = "free"
    donation = "donation"
    paid = "paid"
    credit = "credit"
    free_pass = "free_pass"


class PaymentStatus(str, enum.Enum):
    succeeded = "succeeded"
    failed = "failed"


TRANSITIONS: dict[type[enum.Enum], frozenset[tuple[enum.Enum, enum.Enum]]] = {
    SlotStatus: frozenset({
        (SlotStatus.available, SlotStatus.claimed),
        (SlotStatus.claimed, SlotStatus.available),
        (SlotStatus.claimed, SlotStatus.completed),
    }),
    SessionStatus: frozenset({
        (SessionStatus.upcoming, SessionStatus.cancelled),
        (SessionStatus.upcoming, SessionStatus.completed),
    }),
    BookingStatus: frozenset({
        (BookingStatus.confirmed, BookingStatus.cancelled),
    }),
}


def can_transition(current: enum.Enum, target: enum.Enum) -> bool:
    table = TRANSITIONS.get(type(current))
    return table is not None and (current, target) in table


def check_transition(current: enum.Enum, target: enum.Enum) -> None:
    """Raise InvariantViolation for any status change outside the table."""
    if not can_transition(current, target):
        from classbook.services.errors import InvariantViolation

        raise InvariantViolation(
            f"illegal {type(current).__name__} transition {current.value} -> {target.value}"
        )
