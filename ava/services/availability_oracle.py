"""Availability oracle - which 30-minute showing slots are free.

A slot is free when it lies in open hours and overlaps no manual block, no
active internal booking and no busy external event. When the external
calendar cannot be read the answer is marked degraded: fine for "what's
free?" displays, never enough to book against.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from datetime import datetime, timedelta

from sqlalchemy import select
from sqlalchemy.orm import Session

from ava.core.config import settings
from ava.core.constants import (
    MAX_EXTERNAL_EVENT_HOURS,
    MAX_SUGGESTIONS,
    SUGGESTION_HORIZON_HOURS,
)
from ava.db.enums import ACTIVE_BOOKING_STATUSES
from ava.db.models import Booking
from ava.services import availability_service, settings_service
from ava.services.calendar_connector import CalendarError, OutlookCalendarConnector
from ava.services.time_model import (
    SLOT,
    Clock,
    align,
    enumerate_slots,
    ensure_utc,
    is_in_open_hours,
    overlaps,
    utc_now,
)

logger = logging.getLogger(__name__)

MAX_EXTERNAL_EVENT = timedelta(hours=MAX_EXTERNAL_EVENT_HOURS)


@dataclass
class FreeSlots:
    """Ascending free slot starts plus whether the external calendar was read."""

    slots: list[datetime] = field(default_factory=list)
    degraded: bool = False
    degraded_reason: str | None = None


class AvailabilityOracle:
    def __init__(
        self,
        connector: OutlookCalendarConnector,
        *,
        clock: Clock = utc_now,
        display_timezone: str | None = None,
    ):
        self.connector = connector
        self._clock = clock
        self.display_timezone = display_timezone or settings.DISPLAY_TIMEZONE

    async def free_slots(
        self,
        db: Session,
        property_id: int,
        start: datetime,
        end: datetime,
        now: datetime | None = None,
    ) -> FreeSlots:
        """Free slots of [start, end) for a property, never earlier than now."""
        start, end = ensure_utc(start), ensure_utc(end)
        now = ensure_utc(now) if now is not None else self._clock()

        # 1. open-hours mask
        hours = settings_service.weekly_hours(settings_service.get_global_settings(db))
        candidates = [
            slot
            for slot in enumerate_slots(start, end)
            if slot >= now and is_in_open_hours(slot, hours, self.display_timezone)
        ]

        # 2. manual blocks
        if candidates:
            blocks = availability_service.blocks_overlapping(db, property_id, start, end)
            candidates = [
                slot
                for slot in candidates
                if not any(
                    overlaps(slot, slot + SLOT, block.start_time, block.end_time)
                    for block in blocks
                )
            ]

        # 3. active internal bookings
        if candidates:
            taken = set(
                db.execute(
                    select(Booking.slot_start).where(
                        Booking.property_id == property_id,
                        Booking.status.in_(ACTIVE_BOOKING_STATUSES),
                        Booking.slot_start >= start - SLOT,
                        Booking.slot_start < end,
                    )
                ).scalars()
            )
            candidates = [slot for slot in candidates if slot not in taken]

        # 4. external busy time
        result = FreeSlots()
        if candidates:
            try:
                busy = await self.connector.list_busy(start, end)
            except CalendarError as exc:
                logger.warning(
                    "Availability degraded for property %s: %s",
                    property_id,
                    getattr(exc, "code", type(exc).__name__),
                )
                result.degraded = True
                result.degraded_reason = getattr(exc, "code", type(exc).__name__)
                busy = []

            intervals = [
                (event.start, event.end)
                for event in busy
                if event.start is not None
                and event.end is not None
                and event.end - event.start <= MAX_EXTERNAL_EVENT
            ]
            candidates = [
                slot
                for slot in candidates
                if not any(overlaps(slot, slot + SLOT, s, e) for s, e in intervals)
            ]

        result.slots = candidates
        return result

    async def is_bookable(
        self,
        db: Session,
        property_id: int,
        slot_start: datetime,
        now: datetime | None = None,
    ) -> tuple[bool, FreeSlots]:
        """Whether exactly [slot_start, slot_start + 30min) is free."""
        slot_start = ensure_utc(slot_start)
        if slot_start != align(slot_start):
            return False, FreeSlots()
        answer = await self.free_slots(db, property_id, slot_start, slot_start + SLOT, now=now)
        return slot_start in answer.slots, answer

    async def next_free_slots(
        self,
        db: Session,
        property_id: int,
        after: datetime,
        limit: int = MAX_SUGGESTIONS,
        horizon: timedelta = timedelta(hours=SUGGESTION_HORIZON_HOURS),
        now: datetime | None = None,
    ) -> FreeSlots:
        after = ensure_utc(after)
        answer = await self.free_slots(db, property_id, after, after + horizon, now=now)
        answer.slots = answer.slots[:limit]
        return answer
