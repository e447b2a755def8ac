"""Tests for the booking coordinator."""

import asyncio
import json
from datetime import timedelta

import pytest
from sqlalchemy import select

from ava.db.models import Booking, Lead
from ava.db.session import SessionLocal
from ava.services import availability_service, settings_service
from ava.services.booking_coordinator import (
    BookingConflict,
    BookingCoordinator,
    BookingOk,
    BookingRequest,
    CalendarDegraded,
    MirrorFailed,
    PastTime,
    UnknownLead,
    UnknownProperty,
)
from tests.conftest import NOW, local_instant


def _request(requested_at, phone="5551234567", slug="215-16-st-se", **kwargs):
    return BookingRequest(
        lead_phone=phone, property_slug=slug, requested_at=requested_at, **kwargs
    )


def _bookings(db):
    db.expire_all()
    return db.query(Booking).order_by(Booking.id).all()


def _drain(subscription):
    messages = []
    while not subscription.queue.empty():
        messages.append(subscription.queue.get_nowait())
    return messages


# =============================================================================
# book()
# =============================================================================

@pytest.mark.asyncio
async def test_book_free_slot_creates_and_mirrors(db, prop, coordinator, graph, bus):
    subscription = bus.subscribe()

    result = await coordinator.book(
        db, _request(local_instant(21, 10, 7), lead_email="lead@example.com")
    )

    assert isinstance(result, BookingOk)
    assert result.created
    assert result.slot_start == local_instant(21, 10)
    assert result.external_event_id in graph.events

    [booking] = _bookings(db)
    assert booking.status == "confirmed"
    assert booking.external_event_id == result.external_event_id
    assert booking.lead.phone == "+15551234567"

    body = json.loads(graph.graph_requests("POST")[0].content)
    assert body["subject"] == "Showing – 215 16 St SE"
    assert body["attendees"][0]["emailAddress"]["address"] == "lead@example.com"

    assert [m["type"] for m in _drain(subscription)] == ["booking.created", "booking.changed"]


@pytest.mark.asyncio
async def test_busy_slot_returns_conflict_with_suggestions(db, prop, coordinator, graph):
    graph.add_event("Dentist", local_instant(21, 10))

    result = await coordinator.book(db, _request(local_instant(21, 10)))

    assert isinstance(result, BookingConflict)
    assert result.suggestions == [
        local_instant(21, 10, 30),
        local_instant(21, 11),
        local_instant(21, 11, 30),
    ]
    assert _bookings(db) == []
    assert graph.graph_requests("POST") == []


@pytest.mark.asyncio
async def test_closed_day_suggests_next_open_slots(db, prop, coordinator):
    settings_service.update_hours(db, {"wednesday": ("00:00", "00:00")})

    result = await coordinator.book(db, _request(local_instant(21, 10)))

    assert isinstance(result, BookingConflict)
    assert result.suggestions == [
        local_instant(22, 9),
        local_instant(22, 9, 30),
        local_instant(22, 10),
    ]


@pytest.mark.asyncio
async def test_manual_block_is_a_conflict(db, prop, coordinator):
    availability_service.create_interval(db, prop, local_instant(21, 10), local_instant(21, 11))

    result = await coordinator.book(db, _request(local_instant(21, 10, 30)))

    assert isinstance(result, BookingConflict)
    assert result.suggestions[0] == local_instant(21, 11)


@pytest.mark.asyncio
async def test_past_time_is_rejected_before_any_write(db, prop, coordinator):
    result = await coordinator.book(db, _request(NOW - timedelta(minutes=31)))

    assert isinstance(result, PastTime)
    assert db.query(Lead).count() == 0
    assert _bookings(db) == []


@pytest.mark.asyncio
async def test_unknown_property_and_lead(db, prop, coordinator):
    assert isinstance(
        await coordinator.book(db, _request(local_instant(21, 10), slug="nowhere")),
        UnknownProperty,
    )
    assert isinstance(
        await coordinator.book(db, _request(local_instant(21, 10), phone="12")),
        UnknownLead,
    )


@pytest.mark.asyncio
async def test_unreachable_calendar_refuses_booking(db, prop, coordinator, graph):
    graph.fail_status = 503

    result = await coordinator.book(db, _request(local_instant(21, 10)))

    assert isinstance(result, CalendarDegraded)
    assert result.reason == "UPSTREAM_ERROR"
    assert _bookings(db) == []


@pytest.mark.asyncio
async def test_disconnected_calendar_refuses_booking(db, prop, connector, clock, bus):
    coordinator = BookingCoordinator(connector, clock=clock, bus=bus)

    result = await coordinator.book(db, _request(local_instant(21, 10)))

    assert isinstance(result, CalendarDegraded)
    assert result.reason == "NOT_CONNECTED"


@pytest.mark.asyncio
async def test_same_lead_same_slot_is_idempotent(db, prop, coordinator, graph):
    first = await coordinator.book(db, _request(local_instant(21, 10)))
    second = await coordinator.book(db, _request(local_instant(21, 10, 20)))

    assert isinstance(second, BookingOk)
    assert not second.created
    assert second.booking_id == first.booking_id
    assert second.external_event_id == first.external_event_id
    assert len(graph.graph_requests("POST")) == 1


@pytest.mark.asyncio
async def test_other_lead_same_slot_conflicts(db, prop, coordinator):
    await coordinator.book(db, _request(local_instant(21, 10)))

    result = await coordinator.book(db, _request(local_instant(21, 10), phone="5559876543"))

    assert isinstance(result, BookingConflict)
    assert local_instant(21, 10) not in result.suggestions


@pytest.mark.asyncio
async def test_fifty_concurrent_requests_book_once(db, prop, connector, clock, bus, graph):
    connector.seed_account(
        access_token="stale",
        refresh_token="seed-refresh",
        expires_at=NOW - timedelta(minutes=1),
    )
    coordinator = BookingCoordinator(connector, clock=clock, bus=bus)

    async def attempt(n: int):
        with SessionLocal() as session:
            return await coordinator.book(
                session, _request(local_instant(21, 10), phone=f"555000{n:04d}")
            )

    results = await asyncio.gather(*(attempt(n) for n in range(50)))

    assert sum(isinstance(r, BookingOk) for r in results) == 1
    assert sum(isinstance(r, BookingConflict) for r in results) == 49
    assert len(graph.token_requests) == 1
    assert len(graph.graph_requests("POST")) == 1
    assert len([b for b in _bookings(db) if b.status != "cancelled"]) == 1


# =============================================================================
# Mirror failures
# =============================================================================

@pytest.mark.asyncio
async def test_mirror_failure_leaves_pending_booking(db, prop, coordinator, graph):
    graph.create_status = 500

    result = await coordinator.book(db, _request(local_instant(21, 10)))

    assert isinstance(result, MirrorFailed)
    assert result.error_code == "UPSTREAM_ERROR"
    assert result.status_code == 500
    [booking] = _bookings(db)
    assert booking.id == result.booking_id
    assert booking.status == "pending"
    assert booking.external_event_id is None


@pytest.mark.asyncio
async def test_retry_mirror_completes_pending_booking(db, prop, coordinator, graph):
    graph.create_status = 500
    failed = await coordinator.book(db, _request(local_instant(21, 10)))
    graph.create_status = None

    result = await coordinator.retry_mirror(db, failed.booking_id)

    assert isinstance(result, BookingOk)
    assert not result.created
    [booking] = _bookings(db)
    assert booking.status == "confirmed"
    assert booking.external_event_id == result.external_event_id

    again = await coordinator.retry_mirror(db, failed.booking_id)
    assert again.external_event_id == result.external_event_id
    assert len(graph.graph_requests("POST")) == 2


@pytest.mark.asyncio
async def test_rebooking_same_slot_finishes_pending_mirror(db, prop, coordinator, graph):
    graph.create_status = 500
    failed = await coordinator.book(db, _request(local_instant(21, 10)))
    graph.create_status = None

    result = await coordinator.book(db, _request(local_instant(21, 10)))

    assert isinstance(result, BookingOk)
    assert result.booking_id == failed.booking_id
    assert result.external_event_id is not None


@pytest.mark.asyncio
async def test_retry_mirror_missing_or_cancelled(db, prop, coordinator, graph):
    assert await coordinator.retry_mirror(db, 12345) is None

    graph.create_status = 500
    failed = await coordinator.book(db, _request(local_instant(21, 10)))
    await coordinator.cancel(db, failed.booking_id)

    with pytest.raises(ValueError):
        await coordinator.retry_mirror(db, failed.booking_id)


async def _retry_in_own_session(coordinator, booking_id):
    with SessionLocal() as other:
        return await coordinator.retry_mirror(other, booking_id)


def _slow_create_event(monkeypatch, connector):
    original = connector.create_event

    async def slow_create(**kwargs):
        await asyncio.sleep(0.01)
        return await original(**kwargs)

    monkeypatch.setattr(connector, "create_event", slow_create)


@pytest.mark.asyncio
async def test_concurrent_retries_share_one_mirror(db, prop, coordinator, connected, graph, monkeypatch):
    graph.create_status = 500
    failed = await coordinator.book(db, _request(local_instant(21, 10)))
    graph.create_status = None
    _slow_create_event(monkeypatch, connected)

    first, second = await asyncio.gather(
        _retry_in_own_session(coordinator, failed.booking_id),
        _retry_in_own_session(coordinator, failed.booking_id),
    )

    assert isinstance(first, BookingOk)
    assert isinstance(second, BookingOk)
    assert first.external_event_id is not None
    assert second.external_event_id == first.external_event_id
    assert len(graph.graph_requests("POST")) == 2
    [booking] = _bookings(db)
    assert booking.status == "confirmed"


@pytest.mark.asyncio
async def test_waiting_retry_never_reports_an_unlinked_booking_as_ok(
    db, prop, coordinator, connected, graph, monkeypatch
):
    graph.create_status = 500
    failed = await coordinator.book(db, _request(local_instant(21, 10)))
    _slow_create_event(monkeypatch, connected)

    results = await asyncio.gather(
        _retry_in_own_session(coordinator, failed.booking_id),
        _retry_in_own_session(coordinator, failed.booking_id),
    )

    assert all(isinstance(result, MirrorFailed) for result in results)
    [booking] = _bookings(db)
    assert booking.status == "pending"
    assert booking.external_event_id is None


@pytest.mark.asyncio
async def test_cancel_during_mirror_removes_event(db, prop, coordinator, connected, graph, monkeypatch):
    original = connected.create_event

    async def create_then_cancel(**kwargs):
        event_id = await original(**kwargs)
        with SessionLocal() as other:
            booking = other.execute(select(Booking)).scalar_one()
            booking.status = "cancelled"
            other.commit()
        return event_id

    monkeypatch.setattr(connected, "create_event", create_then_cancel)

    result = await coordinator.book(db, _request(local_instant(21, 10)))

    assert isinstance(result, MirrorFailed)
    assert result.error_code == "CANCELLED"
    assert graph.events == {}
    [booking] = _bookings(db)
    assert booking.external_event_id is None


# =============================================================================
# cancel()
# =============================================================================

@pytest.mark.asyncio
async def test_cancel_deletes_mirrored_event_once(db, prop, coordinator, graph, bus):
    booked = await coordinator.book(db, _request(local_instant(21, 10)))
    subscription = bus.subscribe()

    cancelled = await coordinator.cancel(db, booked.booking_id, "Lead cancelled")

    assert cancelled.status == "cancelled"
    assert cancelled.cancellation_reason == "Lead cancelled"
    assert cancelled.cancelled_at == NOW
    assert graph.events == {}
    assert [m["type"] for m in _drain(subscription)] == ["booking.changed"]

    again = await coordinator.cancel(db, booked.booking_id)
    assert again.status == "cancelled"
    assert len(graph.graph_requests("DELETE")) == 1


@pytest.mark.asyncio
async def test_cancel_frees_the_slot(db, prop, coordinator):
    booked = await coordinator.book(db, _request(local_instant(21, 10)))
    await coordinator.cancel(db, booked.booking_id)

    result = await coordinator.book(db, _request(local_instant(21, 10), phone="5559876543"))

    assert isinstance(result, BookingOk)
    assert result.booking_id != booked.booking_id


@pytest.mark.asyncio
async def test_cancel_unknown_booking(db, coordinator):
    assert await coordinator.cancel(db, 999) is None
