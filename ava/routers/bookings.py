"""Bookings router - showing requests, maintenance and the live event stream."""

import asyncio
from typing import AsyncIterator, Awaitable, Callable

from fastapi import APIRouter, Depends, HTTPException, Query, Request, Response
from fastapi.responses import StreamingResponse
from sqlalchemy import select
from sqlalchemy.orm import Session

from ava.core.config import settings
from ava.core.deps import get_booking_coordinator, get_db
from ava.core.events import Subscription, event_bus
from ava.db.enums import BookingStatus
from ava.db.models import Booking, Property
from ava.routers.shared import booking_result_error
from ava.schemas.booking import (
    BookingCancel,
    BookingCreate,
    BookingRead,
    BookingResultRead,
)
from ava.services.booking_coordinator import BookingCoordinator, BookingRequest
from ava.services.time_request_parser import parse_time_request
from ava.utils.sse import STREAM_HEADERS, format_sse, format_sse_comment

router = APIRouter()


# =============================================================================
# Event stream
# =============================================================================

async def event_stream(
    subscription: Subscription,
    is_disconnected: Callable[[], Awaitable[bool]],
    heartbeat_seconds: float,
) -> AsyncIterator[str]:
    """Relay topic messages as SSE frames, with comment heartbeats when idle."""
    try:
        yield format_sse_comment("connected")
        while not await is_disconnected():
            try:
                message = await asyncio.wait_for(subscription.get(), timeout=heartbeat_seconds)
            except asyncio.TimeoutError:
                yield format_sse_comment("heartbeat")
                continue
            yield format_sse(message["type"], message["data"])
    finally:
        subscription.close()


@router.get("/events")
async def booking_events(request: Request) -> StreamingResponse:
    """Server-sent booking.created / booking.changed / availability.changed."""
    subscription = event_bus.subscribe(settings.SSE_QUEUE_SIZE)
    return StreamingResponse(
        event_stream(subscription, request.is_disconnected, settings.SSE_HEARTBEAT_SECONDS),
        media_type="text/event-stream",
        headers=STREAM_HEADERS,
    )


# =============================================================================
# Bookings
# =============================================================================

@router.get("", response_model=list[BookingRead])
def list_bookings(
    status: BookingStatus | None = Query(None),
    property_slug: str | None = Query(None),
    db: Session = Depends(get_db),
):
    stmt = select(Booking).order_by(Booking.slot_start)
    if status is not None:
        stmt = stmt.where(Booking.status == status.value)
    if property_slug:
        stmt = stmt.join(Property).where(Property.slug == property_slug)
    return list(db.execute(stmt).scalars())


@router.get("/{booking_id}", response_model=BookingRead)
def get_booking(booking_id: int, db: Session = Depends(get_db)):
    booking = db.get(Booking, booking_id)
    if booking is None:
        raise HTTPException(status_code=404, detail="Booking not found")
    return booking


@router.post("", response_model=BookingResultRead, status_code=201)
async def create_booking(
    body: BookingCreate,
    response: Response,
    db: Session = Depends(get_db),
    coordinator: BookingCoordinator = Depends(get_booking_coordinator),
):
    """
    Book a 30-minute showing.

    409 carries up to three suggested slots; 503 means the calendar could
    not be read and nothing was stored.
    """
    requested_at = body.requested_at
    if requested_at is None:
        requested_at = parse_time_request(
            body.requested_text,
            now=coordinator.now(),
            tz=settings.DISPLAY_TIMEZONE,
        )
        if requested_at is None:
            raise HTTPException(
                status_code=422,
                detail={"code": "NO_TIME", "message": "What time works best for you?"},
            )

    result = await coordinator.book(
        db,
        BookingRequest(
            lead_phone=body.phone,
            property_slug=body.property_slug,
            requested_at=requested_at,
            source=body.source,
            lead_name=body.lead_name,
            lead_email=body.lead_email,
            notes=body.notes,
        ),
    )
    error = booking_result_error(result)
    if error is not None:
        raise error

    if not result.created:
        response.status_code = 200
    booking = db.get(Booking, result.booking_id)
    return BookingResultRead(
        booking_id=result.booking_id,
        slot_start=result.slot_start,
        status=booking.status if booking else BookingStatus.PENDING.value,
        external_event_id=result.external_event_id,
        created=result.created,
    )


@router.post("/{booking_id}/cancel", response_model=BookingRead)
async def cancel_booking(
    booking_id: int,
    body: BookingCancel | None = None,
    db: Session = Depends(get_db),
    coordinator: BookingCoordinator = Depends(get_booking_coordinator),
):
    booking = await coordinator.cancel(db, booking_id, reason=body.reason if body else None)
    if booking is None:
        raise HTTPException(status_code=404, detail="Booking not found")
    return booking


@router.post("/{booking_id}/retry-mirror", response_model=BookingResultRead)
async def retry_mirror(
    booking_id: int,
    db: Session = Depends(get_db),
    coordinator: BookingCoordinator = Depends(get_booking_coordinator),
):
    try:
        result = await coordinator.retry_mirror(db, booking_id)
    except ValueError as e:
        raise HTTPException(status_code=409, detail=str(e))
    if result is None:
        raise HTTPException(status_code=404, detail="Booking not found")

    error = booking_result_error(result)
    if error is not None:
        raise error
    booking = db.get(Booking, result.booking_id)
    return BookingResultRead(
        booking_id=result.booking_id,
        slot_start=result.slot_start,
        status=booking.status,
        external_event_id=result.external_event_id,
        created=False,
    )
