"""Booking coordinator - the single write path for new showings.

book() flow:
1. resolve lead and property, align the requested instant, reject the past
2. ask the availability oracle about the slot (degraded answers are refused)
3. insert a pending booking; the active-slot unique index settles races
4. mirror the booking into Outlook and link the returned event id

Outcomes are returned as result objects, never raised. Store commits never
span an await on the calendar, so a failed or cancelled mirror leaves a
pending booking that retry_mirror() (or the same lead booking again) finishes.
"""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import Union

from sqlalchemy import select
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.orm import Session

from ava.core.constants import (
    BOOK_MAX_ATTEMPTS,
    DEFAULT_BOOKING_DURATION_MINUTES,
    TOPIC_BOOKING_CHANGED,
    TOPIC_BOOKING_CREATED,
)
from ava.core.events import EventBus, booking_payload, event_bus
from ava.core.structured_logging import build_log_context, mask_phone
from ava.db.enums import ACTIVE_BOOKING_STATUSES, BookingSource, BookingStatus
from ava.db.models import Booking, Property
from ava.services import availability_service, lead_service, property_service
from ava.services.availability_oracle import AvailabilityOracle
from ava.services.calendar_connector import (
    CalendarError,
    OutlookCalendarConnector,
    UpstreamError,
)
from ava.services.time_model import Clock, align, utc_now
from ava.utils.normalization import normalize_phone

logger = logging.getLogger(__name__)


class StoreError(Exception):
    """A store failure the coordinator could not resolve by retrying."""


# =============================================================================
# Request / Result types
# =============================================================================

@dataclass
class BookingRequest:
    lead_phone: str
    property_slug: str
    requested_at: datetime
    source: str = BookingSource.SMS.value
    lead_name: str | None = None
    lead_email: str | None = None
    notes: str | None = None


@dataclass
class BookingOk:
    booking_id: int
    slot_start: datetime
    external_event_id: str | None
    created: bool = True


@dataclass
class BookingConflict:
    suggestions: list[datetime] = field(default_factory=list)
    degraded: bool = False


@dataclass
class PastTime:
    slot_start: datetime


@dataclass
class UnknownProperty:
    slug: str


@dataclass
class UnknownLead:
    reason: str


@dataclass
class CalendarDegraded:
    reason: str | None = None


@dataclass
class MirrorFailed:
    """The booking is stored as pending; Outlook did not accept the event."""

    booking_id: int
    slot_start: datetime
    error_code: str
    status_code: int | None = None
    detail: str | None = None


BookingResult = Union[
    BookingOk,
    BookingConflict,
    PastTime,
    UnknownProperty,
    UnknownLead,
    CalendarDegraded,
    MirrorFailed,
]


def _active_booking_at(db: Session, property_id: int, slot_start: datetime) -> Booking | None:
    return db.execute(
        select(Booking)
        .where(
            Booking.property_id == property_id,
            Booking.slot_start == slot_start,
            Booking.status.in_(ACTIVE_BOOKING_STATUSES),
        )
        .order_by(Booking.id)
    ).scalars().first()


# =============================================================================
# Coordinator
# =============================================================================

class BookingCoordinator:
    def __init__(
        self,
        connector: OutlookCalendarConnector,
        *,
        oracle: AvailabilityOracle | None = None,
        clock: Clock = utc_now,
        bus: EventBus = event_bus,
    ):
        self.connector = connector
        self.oracle = oracle or AvailabilityOracle(connector, clock=clock)
        self._clock = clock
        self._bus = bus
        self._mirrors_in_flight: dict[int, asyncio.Event] = {}

    def now(self) -> datetime:
        return self._clock()

    async def book(self, db: Session, request: BookingRequest) -> BookingResult:
        now = self._clock()
        try:
            phone = normalize_phone(request.lead_phone)
        except ValueError as exc:
            return UnknownLead(reason=str(exc))

        prop = property_service.get_property_by_slug(db, request.property_slug)
        if prop is None:
            return UnknownProperty(slug=request.property_slug)

        slot_start = align(request.requested_at)
        if slot_start < now:
            return PastTime(slot_start=slot_start)

        try:
            lead = lead_service.upsert_lead(
                db, phone, name=request.lead_name, source=request.source
            )
        except SQLAlchemyError as exc:
            db.rollback()
            raise StoreError("Could not store lead") from exc

        booking: Booking | None = None
        for attempt in range(BOOK_MAX_ATTEMPTS):
            existing = _active_booking_at(db, prop.id, slot_start)
            if existing is not None:
                if existing.lead_id == lead.id:
                    return await self._complete_existing(db, existing, prop, request.lead_email)
                return await self._conflict(db, prop, slot_start, now)

            bookable, answer = await self.oracle.is_bookable(db, prop.id, slot_start, now=now)
            if answer.degraded:
                logger.warning(
                    "Booking refused; calendar unreadable (%s)",
                    answer.degraded_reason,
                    extra=build_log_context(property_id=prop.id, lead_id=lead.id),
                )
                return CalendarDegraded(reason=answer.degraded_reason)
            if not bookable:
                return await self._conflict(db, prop, slot_start, now)

            candidate = Booking(
                property_id=prop.id,
                lead_id=lead.id,
                slot_start=slot_start,
                duration_minutes=DEFAULT_BOOKING_DURATION_MINUTES,
                status=BookingStatus.PENDING.value,
                source=request.source,
                notes=request.notes,
            )
            db.add(candidate)
            try:
                db.commit()
            except IntegrityError:
                db.rollback()
                logger.info(
                    "Slot taken concurrently (attempt %d/%d)",
                    attempt + 1,
                    BOOK_MAX_ATTEMPTS,
                    extra=build_log_context(property_id=prop.id, lead_id=lead.id),
                )
                continue
            except SQLAlchemyError as exc:
                db.rollback()
                raise StoreError("Could not store booking") from exc
            booking = candidate
            break

        if booking is None:
            return await self._conflict(db, prop, slot_start, now)

        logger.info(
            "Booking %s created for %s at %s",
            booking.id,
            mask_phone(lead.phone),
            slot_start.isoformat(),
            extra=build_log_context(booking_id=booking.id, property_id=prop.id, lead_id=lead.id),
        )
        self._bus.publish(TOPIC_BOOKING_CREATED, booking_payload(booking))
        return await self._mirror(db, booking, prop, request.lead_email)

    async def _conflict(
        self, db: Session, prop: Property, slot_start: datetime, now: datetime
    ) -> BookingConflict:
        answer = await self.oracle.next_free_slots(db, prop.id, slot_start, now=now)
        return BookingConflict(suggestions=answer.slots, degraded=answer.degraded)

    async def _complete_existing(
        self,
        db: Session,
        booking: Booking,
        prop: Property,
        attendee_email: str | None,
    ) -> BookingResult:
        if booking.status == BookingStatus.CONFIRMED.value or booking.external_event_id:
            return BookingOk(
                booking_id=booking.id,
                slot_start=booking.slot_start,
                external_event_id=booking.external_event_id,
                created=False,
            )
        result = await self._mirror(db, booking, prop, attendee_email)
        if isinstance(result, BookingOk):
            result.created = False
        return result

    async def _mirror(
        self,
        db: Session,
        booking: Booking,
        prop: Property,
        attendee_email: str | None = None,
    ) -> BookingResult:
        """
        Create the Outlook event for a pending booking and link it.

        A second caller for the same booking waits for the mirror already in
        flight and reports what it left behind; it only creates an event
        itself when that mirror did not link one.
        """
        while (in_flight := self._mirrors_in_flight.get(booking.id)) is not None:
            await in_flight.wait()
            db.refresh(booking)
            if booking.status == BookingStatus.CONFIRMED.value and booking.external_event_id:
                return BookingOk(
                    booking.id, booking.slot_start, booking.external_event_id, created=False
                )
            if booking.status == BookingStatus.CANCELLED.value:
                return MirrorFailed(
                    booking_id=booking.id,
                    slot_start=booking.slot_start,
                    error_code="CANCELLED",
                    detail="Booking was cancelled before the calendar event was linked",
                )

        done = asyncio.Event()
        self._mirrors_in_flight[booking.id] = done
        try:
            return await self._create_and_link(db, booking, prop, attendee_email)
        finally:
            del self._mirrors_in_flight[booking.id]
            done.set()

    async def _create_and_link(
        self,
        db: Session,
        booking: Booking,
        prop: Property,
        attendee_email: str | None,
    ) -> BookingResult:
        booking_id = booking.id
        slot_start = booking.slot_start
        context = build_log_context(booking_id=booking_id, property_id=prop.id)

        try:
            event_id = await self.connector.create_event(
                subject=property_service.showing_subject(prop.address),
                start=slot_start,
                end=slot_start + timedelta(minutes=booking.duration_minutes),
                location=prop.address,
                attendee_email=attendee_email,
            )
        except CalendarError as exc:
            logger.warning(
                "Outlook mirror failed (%s); booking left pending", exc.code, extra=context
            )
            return MirrorFailed(
                booking_id=booking_id,
                slot_start=slot_start,
                error_code=exc.code,
                status_code=exc.status_code if isinstance(exc, UpstreamError) else None,
                detail=str(exc),
            )

        db.refresh(booking)
        if booking.status == BookingStatus.CANCELLED.value:
            # Cancelled while the event was being created
            logger.info("Booking cancelled during mirror; removing event", extra=context)
            await self._delete_event_quietly(event_id, context)
            return MirrorFailed(
                booking_id=booking_id,
                slot_start=slot_start,
                error_code="CANCELLED",
                detail="Booking was cancelled before the calendar event was linked",
            )

        booking.status = BookingStatus.CONFIRMED.value
        booking.external_event_id = event_id
        try:
            db.commit()
        except SQLAlchemyError as exc:
            db.rollback()
            raise StoreError("Could not link calendar event") from exc

        logger.info("Booking %s confirmed in Outlook", booking_id, extra=context)
        self._bus.publish(TOPIC_BOOKING_CHANGED, booking_payload(booking))
        return BookingOk(booking_id, slot_start, event_id)

    async def _delete_event_quietly(self, event_id: str, context: dict) -> None:
        try:
            await self.connector.delete_event(event_id)
        except CalendarError as exc:
            logger.warning("Could not delete Outlook event (%s)", exc.code, extra=context)

    # -------------------------------------------------------------------------
    # Maintenance
    # -------------------------------------------------------------------------

    async def retry_mirror(self, db: Session, booking_id: int) -> BookingResult | None:
        """
        Finish the Outlook mirror of a pending booking.

        Returns None when the booking does not exist; raises ValueError for a
        cancelled booking.
        """
        booking = db.get(Booking, booking_id)
        if booking is None:
            return None
        if booking.status == BookingStatus.CANCELLED.value:
            raise ValueError("Booking is cancelled")
        prop = db.get(Property, booking.property_id)
        return await self._complete_existing(db, booking, prop, None)

    async def cancel(
        self, db: Session, booking_id: int, reason: str | None = None
    ) -> Booking | None:
        """Cancel a booking and remove its mirrored Outlook event (best effort)."""
        booking = db.get(Booking, booking_id)
        if booking is None:
            return None
        if booking.status == BookingStatus.CANCELLED.value:
            return booking

        now = self._clock()
        booking.status = BookingStatus.CANCELLED.value
        booking.cancelled_at = now
        booking.cancellation_reason = reason or "Cancelled"
        prop = db.get(Property, booking.property_id)
        availability_service.release_event_blocks(
            db,
            booking.property_id,
            booking.slot_start,
            booking.slot_start + timedelta(minutes=booking.duration_minutes),
            {property_service.showing_subject(prop.address)} if prop else set(),
        )
        db.commit()

        context = build_log_context(booking_id=booking.id, property_id=booking.property_id)
        logger.info("Booking %s cancelled", booking.id, extra=context)
        self._bus.publish(TOPIC_BOOKING_CHANGED, booking_payload(booking))

        # Events that originated in Outlook belong to the agent; leave them
        if booking.external_event_id and booking.source != BookingSource.OUTLOOK.value:
            await self._delete_event_quietly(booking.external_event_id, context)
        return booking
