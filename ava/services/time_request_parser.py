"""Parse free-text showing requests ("Sat 10:30am", "tomorrow at 2") into instants."""

from __future__ import annotations

import re
from datetime import date, datetime, time, timedelta, timezone
from zoneinfo import ZoneInfo

from ava.services.time_model import ensure_utc

_WEEKDAY_ALIASES = {
    "monday": 0,
    "mon": 0,
    "tuesday": 1,
    "tues": 1,
    "tue": 1,
    "wednesday": 2,
    "wed": 2,
    "thursday": 3,
    "thurs": 3,
    "thur": 3,
    "thu": 3,
    "friday": 4,
    "fri": 4,
    "saturday": 5,
    "sat": 5,
    "sunday": 6,
    "sun": 6,
}

_ISO_DATE_RE = re.compile(r"\b(\d{4})-(\d{2})-(\d{2})\b")
_NUMERIC_DATE_RE = re.compile(r"\b(\d{1,2})/(\d{1,2})\b")
_WEEKDAY_RE = re.compile(
    r"\b(next\s+)?("
    + "|".join(sorted(_WEEKDAY_ALIASES, key=len, reverse=True))
    + r")\b"
)
_TIME_RE = re.compile(r"\b(\d{1,2})(?::(\d{2}))?\s*(am|pm|a\.m\.|p\.m\.)?(?![\w/])")


def _resolve_date(msg: str, today: date) -> tuple[date, str]:
    """Return the requested local date and the message with date tokens removed."""
    iso = _ISO_DATE_RE.search(msg)
    if iso:
        year, month, day = (int(part) for part in iso.groups())
        return date(year, month, day), _ISO_DATE_RE.sub(" ", msg)

    numeric = _NUMERIC_DATE_RE.search(msg)
    if numeric:
        month, day = int(numeric.group(1)), int(numeric.group(2))
        target = date(today.year, month, day)
        if target < today:
            target = date(today.year + 1, month, day)
        return target, _NUMERIC_DATE_RE.sub(" ", msg)

    weekday = _WEEKDAY_RE.search(msg)
    if weekday:
        days_ahead = (_WEEKDAY_ALIASES[weekday.group(2)] - today.weekday()) % 7
        if weekday.group(1):
            days_ahead += 7
        return today + timedelta(days=days_ahead), msg

    if "tomorrow" in msg:
        return today + timedelta(days=1), msg
    if "next week" in msg:
        return today + timedelta(days=7), msg
    return today, msg


def _resolve_time(msg: str) -> time | None:
    if re.search(r"\bnoon\b", msg):
        return time(12, 0)

    candidates = list(_TIME_RE.finditer(msg))
    # Prefer an explicit "10:30" or "2pm" over a stray number
    candidates.sort(key=lambda m: 0 if (m.group(2) or m.group(3)) else 1)
    for match in candidates:
        hour = int(match.group(1))
        minute = int(match.group(2) or 0)
        meridian = (match.group(3) or "").replace(".", "")
        if minute > 59:
            continue
        if meridian:
            if hour < 1 or hour > 12:
                continue
            if meridian == "pm" and hour < 12:
                hour += 12
            elif meridian == "am" and hour == 12:
                hour = 0
        else:
            if hour > 23:
                continue
            if 1 <= hour <= 7:
                hour += 12
        return time(hour, minute)
    return None


def parse_time_request(
    text: str, *, now: datetime, tz: ZoneInfo | str
) -> datetime | None:
    """
    Interpret a lead's requested showing time.

    Returns a UTC instant (not slot-aligned), or None when no time of day
    could be found, so the caller can ask what time works best.
    """
    if not text:
        return None
    zone = ZoneInfo(tz) if isinstance(tz, str) else tz
    msg = text.lower()
    today = ensure_utc(now).astimezone(zone).date()

    try:
        target_date, remainder = _resolve_date(msg, today)
    except ValueError:
        return None

    wall = _resolve_time(remainder)
    if wall is None:
        return None

    local = datetime.combine(target_date, wall, tzinfo=zone)
    return local.astimezone(timezone.utc)
