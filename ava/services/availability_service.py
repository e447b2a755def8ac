"""Manual availability blocks per property."""

from __future__ import annotations

import logging
from datetime import datetime

from sqlalchemy import delete, select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from ava.db.models import AvailabilityInterval, Property
from ava.services.time_model import ensure_utc

logger = logging.getLogger(__name__)


def list_intervals(
    db: Session,
    property_slug: str | None = None,
) -> list[AvailabilityInterval]:
    stmt = select(AvailabilityInterval).order_by(AvailabilityInterval.start_time)
    if property_slug:
        stmt = stmt.join(Property).where(Property.slug == property_slug)
    return list(db.execute(stmt).scalars())


def blocks_overlapping(
    db: Session, property_id: int, start: datetime, end: datetime
) -> list[AvailabilityInterval]:
    """Blocked intervals for a property overlapping [start, end)."""
    return list(
        db.execute(
            select(AvailabilityInterval).where(
                AvailabilityInterval.property_id == property_id,
                AvailabilityInterval.is_blocked.is_(True),
                AvailabilityInterval.start_time < ensure_utc(end),
                AvailabilityInterval.end_time > ensure_utc(start),
            )
        ).scalars()
    )


def create_interval(
    db: Session,
    property: Property,
    start: datetime,
    end: datetime,
    is_blocked: bool = True,
    notes: str | None = None,
) -> AvailabilityInterval:
    """Insert a block. Raises ValueError on an empty range or duplicate start."""
    start, end = ensure_utc(start), ensure_utc(end)
    if start >= end:
        raise ValueError("Interval start must be before end")

    interval = AvailabilityInterval(
        property_id=property.id,
        start_time=start,
        end_time=end,
        is_blocked=is_blocked,
        notes=notes,
    )
    db.add(interval)
    try:
        db.commit()
    except IntegrityError:
        db.rollback()
        raise ValueError("An interval already starts at that time for this property")
    return interval


def delete_interval(db: Session, interval_id: int) -> bool:
    interval = db.get(AvailabilityInterval, interval_id)
    if interval is None:
        return False
    db.delete(interval)
    db.commit()
    return True


def purge_stale_intervals(db: Session, now: datetime) -> int:
    """Delete intervals that ended before now. Caller commits."""
    result = db.execute(
        delete(AvailabilityInterval).where(AvailabilityInterval.end_time < ensure_utc(now))
    )
    if result.rowcount:
        logger.info("Purged %d stale availability interval(s)", result.rowcount)
    return result.rowcount or 0


def release_event_blocks(
    db: Session,
    property_id: int,
    slot_start: datetime,
    slot_end: datetime,
    subjects: set[str],
) -> int:
    """Drop calendar-imported blocks starting inside a slot. Caller commits."""
    labels = [subject for subject in subjects if subject]
    if not labels:
        return 0
    result = db.execute(
        delete(AvailabilityInterval).where(
            AvailabilityInterval.property_id == property_id,
            AvailabilityInterval.start_time >= ensure_utc(slot_start),
            AvailabilityInterval.start_time < ensure_utc(slot_end),
            AvailabilityInterval.notes.in_(labels),
        )
    )
    return result.rowcount or 0
