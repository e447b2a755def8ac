"""Global open-hours settings (singleton row)."""

from __future__ import annotations

from datetime import time

from sqlalchemy import select
from sqlalchemy.orm import Session

from ava.db.models import GlobalSettings
from ava.services.time_model import WEEKDAYS, WeeklyHours, parse_hhmm

CLOSED = "00:00"


def get_global_settings(db: Session) -> GlobalSettings:
    """Return the settings row, creating it with default hours when absent."""
    row = db.execute(
        select(GlobalSettings).order_by(GlobalSettings.id).limit(1)
    ).scalar_one_or_none()
    if row is None:
        row = GlobalSettings()
        db.add(row)
        db.commit()
        db.refresh(row)
    return row


def hours_as_strings(row: GlobalSettings) -> dict[str, dict[str, str]]:
    return {
        day: {"open": getattr(row, f"{day}_start"), "close": getattr(row, f"{day}_end")}
        for day in WEEKDAYS
    }


def weekly_hours(row: GlobalSettings) -> WeeklyHours:
    """Map weekday index (Monday=0) to (open, close) wall times."""
    hours: dict[int, tuple[time, time]] = {}
    for index, day in enumerate(WEEKDAYS):
        hours[index] = (
            parse_hhmm(getattr(row, f"{day}_start")),
            parse_hhmm(getattr(row, f"{day}_end")),
        )
    return hours


def validate_day(day: str, open_at: str, close_at: str) -> None:
    """Raise ValueError for unknown days, malformed times or inverted windows."""
    if day not in WEEKDAYS:
        raise ValueError(f"Unknown weekday '{day}'")
    opens = parse_hhmm(open_at)
    closes = parse_hhmm(close_at)
    if open_at == CLOSED and close_at == CLOSED:
        return
    if closes <= opens:
        raise ValueError(f"{day}: open time must be before close time")


def update_hours(db: Session, changes: dict[str, tuple[str, str]]) -> GlobalSettings:
    """
    Apply {weekday: (open, close)} changes atomically.

    Every change is validated before any column is touched.
    """
    normalized: dict[str, tuple[str, str]] = {}
    for day, (open_at, close_at) in changes.items():
        key = day.strip().lower()
        validate_day(key, open_at, close_at)
        normalized[key] = (open_at, close_at)

    row = get_global_settings(db)
    for day, (open_at, close_at) in normalized.items():
        setattr(row, f"{day}_start", open_at)
        setattr(row, f"{day}_end", close_at)
    db.commit()
    db.refresh(row)
    return row
