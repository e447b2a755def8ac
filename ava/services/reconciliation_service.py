"""Outlook -> backend reconciliation.

Each tick pulls the external calendar over [now - 1 day, now + 7 days) and
makes internal bookings and blocks match it:

1. deletion sweep: bookings linked before the fetch whose event vanished are cancelled
2. upsert pass: busy events become confirmed outlook bookings and blocks

A connector failure aborts the tick before any write. A failure on one event
is logged and skipped. Re-running a tick against an unchanged calendar
writes nothing.
"""

from __future__ import annotations

import asyncio
import logging
import uuid
from dataclasses import dataclass, field
from datetime import datetime, timedelta

from sqlalchemy import select
from sqlalchemy.orm import Session, sessionmaker

from ava.core.config import settings
from ava.core.constants import (
    MAX_EXTERNAL_EVENT_HOURS,
    RECONCILE_LOOKAHEAD_DAYS,
    RECONCILE_LOOKBACK_DAYS,
    SYNC_CANCELLATION_REASON,
    TOPIC_AVAILABILITY_CHANGED,
    TOPIC_BOOKING_CHANGED,
)
from ava.core.events import EventBus, booking_payload, event_bus
from ava.core.structured_logging import build_log_context
from ava.db.enums import ACTIVE_BOOKING_STATUSES, BookingSource, BookingStatus
from ava.db.models import AvailabilityInterval, Booking
from ava.db.session import SessionLocal
from ava.services import availability_service, lead_service, property_service
from ava.services.calendar_connector import (
    CalendarError,
    CalendarEvent,
    OutlookCalendarConnector,
)
from ava.services.time_model import Clock, align, utc_now

logger = logging.getLogger(__name__)

MAX_EXTERNAL_EVENT = timedelta(hours=MAX_EXTERNAL_EVENT_HOURS)


# =============================================================================
# Types
# =============================================================================

@dataclass
class ReconcileReport:
    tick_id: str
    started_at: datetime
    aborted: bool = False
    error: str | None = None
    fetched: int = 0
    purged: int = 0
    cancelled: int = 0
    bookings_created: int = 0
    bookings_updated: int = 0
    blocks_upserted: int = 0
    skipped: int = 0
    failed: int = 0
    changed_booking_ids: list[int] = field(default_factory=list)

    @property
    def changes(self) -> int:
        return (
            self.purged
            + self.cancelled
            + self.bookings_created
            + self.bookings_updated
            + self.blocks_upserted
        )

    def as_dict(self) -> dict:
        return {
            "tick_id": self.tick_id,
            "aborted": self.aborted,
            "error": self.error,
            "fetched": self.fetched,
            "purged": self.purged,
            "cancelled": self.cancelled,
            "bookings_created": self.bookings_created,
            "bookings_updated": self.bookings_updated,
            "blocks_upserted": self.blocks_upserted,
            "skipped": self.skipped,
            "failed": self.failed,
        }


def _skip_reason(event: CalendarEvent) -> str | None:
    if not event.is_busy:
        return "not busy"
    if event.start is None or event.end is None or event.end <= event.start:
        return "malformed times"
    if event.end - event.start > MAX_EXTERNAL_EVENT:
        return "longer than 12h"
    return None


# =============================================================================
# Tick steps
# =============================================================================

def _release_blocks_for(db: Session, booking: Booking) -> int:
    slot_end = booking.slot_start + timedelta(minutes=booking.duration_minutes)
    subjects = {booking.notes or ""}
    if booking.property is not None:
        subjects.add(property_service.showing_subject(booking.property.address))
    return availability_service.release_event_blocks(
        db, booking.property_id, booking.slot_start, slot_end, subjects
    )


def linked_bookings_snapshot(
    db: Session, window_start: datetime, window_end: datetime
) -> dict[int, str]:
    """Active bookings in the window already linked to an event, as {booking id: event id}."""
    rows = db.execute(
        select(Booking.id, Booking.external_event_id).where(
            Booking.external_event_id.is_not(None),
            Booking.status.in_(ACTIVE_BOOKING_STATUSES),
            Booking.slot_start >= window_start,
            Booking.slot_start < window_end,
        )
    ).all()
    return {booking_id: event_id for booking_id, event_id in rows}


def sweep_deleted_events(
    db: Session,
    fetched_ids: set[str],
    linked_before: dict[int, str],
    now: datetime,
) -> list[Booking]:
    """
    Cancel bookings whose external event is gone. Caller commits.

    Only links present in ``linked_before`` (taken before the fetch began) are
    considered; a booking linked while the fetch was running is left for the
    next tick.
    """
    if not linked_before:
        return []
    candidates = db.execute(
        select(Booking).where(
            Booking.id.in_(list(linked_before)),
            Booking.status.in_(ACTIVE_BOOKING_STATUSES),
        )
    ).scalars().all()

    cancelled = []
    for booking in candidates:
        if booking.external_event_id != linked_before[booking.id]:
            continue
        if booking.external_event_id in fetched_ids:
            continue
        booking.status = BookingStatus.CANCELLED.value
        booking.cancelled_at = now
        booking.cancellation_reason = SYNC_CANCELLATION_REASON
        _release_blocks_for(db, booking)
        cancelled.append(booking)
    return cancelled


def _active_booking_at(
    db: Session, property_id: int, slot_start: datetime, exclude_id: int | None = None
) -> Booking | None:
    stmt = select(Booking).where(
        Booking.property_id == property_id,
        Booking.slot_start == slot_start,
        Booking.status.in_(ACTIVE_BOOKING_STATUSES),
    )
    if exclude_id is not None:
        stmt = stmt.where(Booking.id != exclude_id)
    return db.execute(stmt.order_by(Booking.id)).scalars().first()


def _mark_changed(report: ReconcileReport, booking: Booking) -> None:
    report.bookings_updated += 1
    report.changed_booking_ids.append(booking.id)


def _sync_linked_booking(
    db: Session, booking: Booking, event: CalendarEvent, slot_start: datetime,
    report: ReconcileReport,
) -> None:
    """Bring a booking already linked to this event in line with it."""
    context = build_log_context(
        booking_id=booking.id, event_id=event.id, tick_id=report.tick_id
    )
    if booking.source != BookingSource.OUTLOOK.value:
        # Bookings made here own their slot; Outlook only mirrors them
        return

    if booking.status == BookingStatus.CANCELLED.value:
        if booking.cancellation_reason != SYNC_CANCELLATION_REASON:
            return
        if _active_booking_at(db, booking.property_id, slot_start, booking.id):
            logger.info("Reappeared event's slot is taken; not reopening", extra=context)
            return
        booking.status = BookingStatus.CONFIRMED.value
        booking.cancelled_at = None
        booking.cancellation_reason = None
        booking.slot_start = slot_start
        booking.notes = event.subject
        _mark_changed(report, booking)
        return

    changed = False
    if booking.slot_start != slot_start:
        if _active_booking_at(db, booking.property_id, slot_start, booking.id):
            logger.warning("Moved event collides with another booking; keeping old slot", extra=context)
        else:
            report.blocks_upserted += _release_blocks_for(db, booking)
            booking.slot_start = slot_start
            changed = True
    if booking.notes != event.subject:
        booking.notes = event.subject
        changed = True
    if booking.status != BookingStatus.CONFIRMED.value:
        booking.status = BookingStatus.CONFIRMED.value
        changed = True
    if changed:
        db.flush()
        _mark_changed(report, booking)


def _upsert_block(
    db: Session, property_id: int, event: CalendarEvent, now: datetime, report: ReconcileReport
) -> None:
    if event.end < now:
        # Already over; the stale-interval purge owns it
        return
    block = db.execute(
        select(AvailabilityInterval).where(
            AvailabilityInterval.property_id == property_id,
            AvailabilityInterval.start_time == event.start,
        )
    ).scalar_one_or_none()
    if block is None:
        db.add(
            AvailabilityInterval(
                property_id=property_id,
                start_time=event.start,
                end_time=event.end,
                is_blocked=True,
                notes=event.subject,
            )
        )
        report.blocks_upserted += 1
    elif (
        block.end_time != event.end
        or not block.is_blocked
        or block.notes != event.subject
    ):
        block.end_time = event.end
        block.is_blocked = True
        block.notes = event.subject
        report.blocks_upserted += 1


def apply_event(
    db: Session, event: CalendarEvent, now: datetime, report: ReconcileReport
) -> None:
    """Upsert the booking and block for one busy event. Caller commits."""
    slot_start = align(event.start)

    linked = db.execute(
        select(Booking)
        .where(Booking.external_event_id == event.id)
        .order_by(Booking.id.desc())
    ).scalars().first()

    if linked is not None:
        _sync_linked_booking(db, linked, event, slot_start, report)
        _upsert_block(db, linked.property_id, event, now, report)
        return

    prop = property_service.match_property_for_subject(
        db, event.subject, settings.FALLBACK_PROPERTY_ID
    )
    if prop is None:
        logger.warning(
            "No property for external event; skipping",
            extra=build_log_context(event_id=event.id, tick_id=report.tick_id),
        )
        report.skipped += 1
        return

    existing = _active_booking_at(db, prop.id, slot_start)
    if existing is None:
        sentinel = lead_service.get_sentinel_lead(db)
        booking = Booking(
            property_id=prop.id,
            lead_id=sentinel.id,
            slot_start=slot_start,
            status=BookingStatus.CONFIRMED.value,
            source=BookingSource.OUTLOOK.value,
            notes=event.subject,
            external_event_id=event.id,
        )
        db.add(booking)
        db.flush()
        report.bookings_created += 1
        report.changed_booking_ids.append(booking.id)
    elif existing.source == BookingSource.OUTLOOK.value and existing.external_event_id is None:
        existing.external_event_id = event.id
        existing.notes = event.subject
        existing.status = BookingStatus.CONFIRMED.value
        _mark_changed(report, existing)
    else:
        logger.info(
            "Slot already held by booking %s; not importing event",
            existing.id,
            extra=build_log_context(
                booking_id=existing.id, event_id=event.id, tick_id=report.tick_id
            ),
        )

    _upsert_block(db, prop.id, event, now, report)


# =============================================================================
# Loop
# =============================================================================

class ReconciliationLoop:
    """Runs reconciliation ticks; ticks never overlap within a process."""

    def __init__(
        self,
        connector: OutlookCalendarConnector,
        *,
        session_factory: sessionmaker = SessionLocal,
        clock: Clock = utc_now,
        bus: EventBus = event_bus,
        interval_seconds: float | None = None,
    ):
        self.connector = connector
        self._session_factory = session_factory
        self._clock = clock
        self._bus = bus
        self.interval_seconds = (
            settings.RECONCILE_INTERVAL_SECONDS if interval_seconds is None else interval_seconds
        )
        self._lock = asyncio.Lock()

    async def tick(self) -> ReconcileReport:
        async with self._lock:
            return await self._tick()

    async def _tick(self) -> ReconcileReport:
        now = self._clock()
        report = ReconcileReport(tick_id=uuid.uuid4().hex[:12], started_at=now)
        context = build_log_context(tick_id=report.tick_id)
        window_start = now - timedelta(days=RECONCILE_LOOKBACK_DAYS)
        window_end = now + timedelta(days=RECONCILE_LOOKAHEAD_DAYS)

        with self._session_factory() as db:
            linked_before = linked_bookings_snapshot(db, window_start, window_end)

        try:
            await self.connector.access_token()
            events = await self.connector.list_events(window_start, window_end)
        except CalendarError as exc:
            report.aborted = True
            report.error = getattr(exc, "code", type(exc).__name__)
            logger.warning("Reconciliation tick aborted: %s", report.error, extra=context)
            return report
        report.fetched = len(events)

        with self._session_factory() as db:
            report.purged = availability_service.purge_stale_intervals(db, now)
            cancelled = sweep_deleted_events(
                db, {event.id for event in events}, linked_before, now
            )
            report.cancelled = len(cancelled)
            db.commit()
            for booking in cancelled:
                logger.info(
                    "Booking cancelled; Outlook event removed",
                    extra=build_log_context(
                        booking_id=booking.id,
                        event_id=booking.external_event_id,
                        tick_id=report.tick_id,
                    ),
                )
                report.changed_booking_ids.append(booking.id)

            for event in events:
                reason = _skip_reason(event)
                if reason:
                    report.skipped += 1
                    logger.debug("Skipping event %s: %s", event.id, reason)
                    continue
                try:
                    apply_event(db, event, now, report)
                    db.commit()
                except Exception:
                    db.rollback()
                    report.failed += 1
                    logger.exception(
                        "Failed to reconcile external event",
                        extra=build_log_context(event_id=event.id, tick_id=report.tick_id),
                    )

            for booking_id in dict.fromkeys(report.changed_booking_ids):
                booking = db.get(Booking, booking_id)
                if booking is not None:
                    self._bus.publish(TOPIC_BOOKING_CHANGED, booking_payload(booking))

        if report.purged or report.blocks_upserted:
            self._bus.publish(TOPIC_AVAILABILITY_CHANGED, {"tick_id": report.tick_id})

        logger.info(
            "Reconciliation tick done: fetched=%d cancelled=%d created=%d updated=%d "
            "blocks=%d skipped=%d failed=%d",
            report.fetched,
            report.cancelled,
            report.bookings_created,
            report.bookings_updated,
            report.blocks_upserted,
            report.skipped,
            report.failed,
            extra=context,
        )
        return report

    async def run_forever(self, stop: asyncio.Event) -> None:
        """Tick every interval until stop is set."""
        logger.info("Reconciliation loop starting (interval: %ss)", self.interval_seconds)
        while not stop.is_set():
            try:
                await self.tick()
            except Exception:
                logger.exception("Reconciliation tick crashed")
            try:
                await asyncio.wait_for(stop.wait(), timeout=self.interval_seconds)
            except asyncio.TimeoutError:
                pass
        logger.info("Reconciliation loop stopped")

