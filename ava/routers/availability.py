"""Availability router - manual blocks and free-slot queries."""

from datetime import datetime, timedelta

from fastapi import APIRouter, Depends, HTTPException, Query
from sqlalchemy.orm import Session

from ava.core.constants import TOPIC_AVAILABILITY_CHANGED
from ava.core.deps import get_booking_coordinator, get_db
from ava.core.events import event_bus
from ava.schemas.availability import FreeSlotsRead, IntervalCreate, IntervalRead
from ava.services import availability_service, property_service
from ava.services.booking_coordinator import BookingCoordinator
from ava.services.time_model import ensure_utc

router = APIRouter()

MAX_QUERY_WINDOW = timedelta(days=14)


@router.get("", response_model=list[IntervalRead])
def list_intervals(
    property_slug: str | None = Query(None),
    db: Session = Depends(get_db),
):
    return availability_service.list_intervals(db, property_slug=property_slug)


@router.post("", response_model=IntervalRead, status_code=201)
def create_interval(body: IntervalCreate, db: Session = Depends(get_db)):
    prop = property_service.get_property_by_slug(db, body.property_slug)
    if prop is None:
        raise HTTPException(status_code=404, detail="Property not found")
    try:
        interval = availability_service.create_interval(
            db,
            prop,
            start=body.start_time,
            end=body.end_time,
            is_blocked=body.is_blocked,
            notes=body.notes,
        )
    except ValueError as e:
        raise HTTPException(status_code=409, detail=str(e))
    event_bus.publish(TOPIC_AVAILABILITY_CHANGED, {"property_id": prop.id})
    return interval


@router.delete("/{interval_id}", status_code=204)
def delete_interval(interval_id: int, db: Session = Depends(get_db)):
    if not availability_service.delete_interval(db, interval_id):
        raise HTTPException(status_code=404, detail="Interval not found")
    event_bus.publish(TOPIC_AVAILABILITY_CHANGED, {"interval_id": interval_id})


@router.get("/free-slots", response_model=FreeSlotsRead)
async def free_slots(
    property_slug: str = Query(...),
    start: datetime | None = Query(None),
    end: datetime | None = Query(None),
    db: Session = Depends(get_db),
    coordinator: BookingCoordinator = Depends(get_booking_coordinator),
):
    """
    Read-only availability for the dashboard.

    Answers are returned even when the calendar could not be read; check
    ``degraded`` before treating them as authoritative.
    """
    prop = property_service.get_property_by_slug(db, property_slug)
    if prop is None:
        raise HTTPException(status_code=404, detail="Property not found")

    window_start = ensure_utc(start) if start else coordinator.now()
    window_end = ensure_utc(end) if end else window_start + timedelta(days=7)
    if window_end <= window_start:
        raise HTTPException(status_code=422, detail="end must be after start")
    if window_end - window_start > MAX_QUERY_WINDOW:
        raise HTTPException(status_code=422, detail="Window is limited to 14 days")

    answer = await coordinator.oracle.free_slots(db, prop.id, window_start, window_end)
    return FreeSlotsRead(
        property_slug=prop.slug,
        start=window_start,
        end=window_end,
        slots=answer.slots,
        degraded=answer.degraded,
        degraded_reason=answer.degraded_reason,
    )
