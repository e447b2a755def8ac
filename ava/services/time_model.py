"""
Time arithmetic for the showing scheduler.

All instants are aware UTC datetimes. The display zone is only used to
interpret weekly open hours, which are local wall-clock "HH:MM" pairs.
Nothing here reads the clock except through an injected ``Clock``.
"""

from __future__ import annotations

from datetime import datetime, time, timedelta, timezone
from typing import Callable, Iterator, Mapping
from zoneinfo import ZoneInfo

from ava.core.constants import SLOT_MINUTES

Clock = Callable[[], datetime]

SLOT = timedelta(minutes=SLOT_MINUTES)

WEEKDAYS = (
    "monday",
    "tuesday",
    "wednesday",
    "thursday",
    "friday",
    "saturday",
    "sunday",
)

# weekday index (Monday=0) -> (open, close) local wall times
WeeklyHours = Mapping[int, tuple[time, time]]


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


def ensure_utc(instant: datetime) -> datetime:
    """Treat naive datetimes as UTC and normalise aware ones to UTC."""
    if instant.tzinfo is None:
        return instant.replace(tzinfo=timezone.utc)
    return instant.astimezone(timezone.utc)


def align(instant: datetime) -> datetime:
    """Floor an instant to the 30-minute UTC slot grid."""
    value = ensure_utc(instant)
    minute = (value.minute // SLOT_MINUTES) * SLOT_MINUTES
    return value.replace(minute=minute, second=0, microsecond=0)


def align_up(instant: datetime) -> datetime:
    """Ceiling counterpart of ``align``."""
    floored = align(instant)
    if floored == ensure_utc(instant):
        return floored
    return floored + SLOT


def slot_of(instant: datetime) -> tuple[datetime, datetime]:
    start = align(instant)
    return start, start + SLOT


def overlaps(
    a_start: datetime, a_end: datetime, b_start: datetime, b_end: datetime
) -> bool:
    """Half-open interval overlap."""
    return a_start < b_end and b_start < a_end


def parse_hhmm(value: str) -> time:
    """Parse a "HH:MM" wall-clock string, raising ValueError when malformed."""
    if not isinstance(value, str) or len(value) != 5 or value[2] != ":":
        raise ValueError(f"Invalid time '{value}'. Use HH:MM.")
    hours, minutes = value[:2], value[3:]
    if not (hours.isdigit() and minutes.isdigit()):
        raise ValueError(f"Invalid time '{value}'. Use HH:MM.")
    hour, minute = int(hours), int(minutes)
    if hour > 23 or minute > 59:
        raise ValueError(f"Invalid time '{value}'. Use HH:MM.")
    return time(hour, minute)


def is_in_open_hours(
    instant: datetime, hours: WeeklyHours, tz: ZoneInfo | str
) -> bool:
    """
    True when ``instant`` falls inside its local weekday's [open, close) window.

    A day whose close is not after its open ("00:00"-"00:00") is closed.
    """
    zone = ZoneInfo(tz) if isinstance(tz, str) else tz
    local = ensure_utc(instant).astimezone(zone)
    window = hours.get(local.weekday())
    if window is None:
        return False
    open_at, close_at = window
    if close_at <= open_at:
        return False
    wall = local.time().replace(tzinfo=None)
    return open_at <= wall < close_at


def enumerate_slots(start: datetime, end: datetime) -> Iterator[datetime]:
    """Yield every aligned slot start s with start <= s < end."""
    current = align_up(start)
    end = ensure_utc(end)
    while current < end:
        yield current
        current += SLOT
