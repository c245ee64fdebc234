# booking_engine/domain/event_lifecycle.py

from datetime import datetime, timedelta, timezone
from enum import Enum


class EventStatus(str, Enum):
    UPCOMING = "UPCOMING"
    OPEN = "OPEN"
    ONGOING = "ONGOING"
    FULL = "FULL"
    COMPLETED = "COMPLETED"
    CANCELLED = "CANCELLED"
    CLOSED = "CLOSED"


# Statuses the scheduler never revisits. CLOSED is set by operators only.
TERMINAL_EVENT_STATUSES = frozenset(
    {
        EventStatus.COMPLETED,
        EventStatus.CANCELLED,
        EventStatus.CLOSED,
    }
)

UPCOMING_THRESHOLD = timedelta(days=7)


def as_utc(value: datetime) -> datetime:
    """Attach UTC to naive datetimes (SQLite drops tzinfo on read)."""
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


def compute_event_status(
    *,
    now: datetime,
    date: datetime,
    fee_cents: int,
    current_participants: int,
    min_participants: int,
    max_participants: int,
) -> EventStatus:
    """
    Derive an event's status from its inputs relative to ``now``.

    Rules are evaluated in precedence order:

    1. past events are COMPLETED when the minimum was reached, else CANCELLED
    2. events at capacity are FULL
    3. free events are OPEN
    4. events more than a week away are UPCOMING
    5. everything else is ONGOING
    """
    now = as_utc(now)
    date = as_utc(date)

    if date < now:
        if current_participants >= min_participants:
            return EventStatus.COMPLETED
        return EventStatus.CANCELLED

    if current_participants >= max_participants:
        return EventStatus.FULL

    if fee_cents == 0:
        return EventStatus.OPEN

    if date > now + UPCOMING_THRESHOLD:
        return EventStatus.UPCOMING

    return EventStatus.ONGOING


def is_bookable(status: EventStatus) -> bool:
    return status not in TERMINAL_EVENT_STATUSES and status != EventStatus.FULL
