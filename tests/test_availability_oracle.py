"""Tests for free-slot computation."""

from datetime import timedelta

import pytest

from ava.db.models import Booking, Lead
from ava.services import availability_service, settings_service
from ava.services.availability_oracle import AvailabilityOracle
from tests.conftest import NOW, local_instant


@pytest.fixture
def oracle(connected, clock):
    return AvailabilityOracle(connected, clock=clock, display_timezone="America/Edmonton")


def _book(db, prop, slot_start, status="confirmed"):
    lead = Lead(phone=f"+1555{len(db.query(Lead).all()):07d}")
    db.add(lead)
    db.flush()
    booking = Booking(
        property_id=prop.id,
        lead_id=lead.id,
        slot_start=slot_start,
        status=status,
        source="dashboard",
    )
    db.add(booking)
    db.commit()
    return booking


@pytest.mark.asyncio
async def test_open_hours_bound_the_day(db, prop, oracle):
    answer = await oracle.free_slots(db, prop.id, NOW, NOW + timedelta(hours=12))

    assert not answer.degraded
    assert answer.slots[0] == local_instant(20, 9)
    assert answer.slots[-1] == local_instant(20, 17, 30)
    assert len(answer.slots) == 18


@pytest.mark.asyncio
async def test_slots_before_now_are_never_free(db, prop, oracle, clock):
    clock.now = local_instant(20, 10, 15)

    answer = await oracle.free_slots(db, prop.id, local_instant(20, 9), local_instant(20, 12))

    assert answer.slots == [local_instant(20, 10, 30), local_instant(20, 11), local_instant(20, 11, 30)]


@pytest.mark.asyncio
async def test_manual_blocks_and_active_bookings_are_excluded(db, prop, oracle):
    availability_service.create_interval(db, prop, local_instant(21, 10), local_instant(21, 11))
    _book(db, prop, local_instant(21, 12))
    _book(db, prop, local_instant(21, 13), status="cancelled")

    answer = await oracle.free_slots(db, prop.id, local_instant(21, 9), local_instant(21, 14))

    assert answer.slots == [
        local_instant(21, 9),
        local_instant(21, 9, 30),
        local_instant(21, 11),
        local_instant(21, 11, 30),
        local_instant(21, 12, 30),
        local_instant(21, 13),
        local_instant(21, 13, 30),
    ]


@pytest.mark.asyncio
async def test_busy_external_events_are_excluded(db, prop, oracle, graph):
    graph.add_event("Dentist", local_instant(21, 10), local_instant(21, 10, 45))
    graph.add_event("Maybe lunch", local_instant(21, 12), show_as="tentative")

    answer = await oracle.free_slots(db, prop.id, local_instant(21, 9), local_instant(21, 13))

    assert local_instant(21, 10) not in answer.slots
    assert local_instant(21, 10, 30) not in answer.slots
    assert local_instant(21, 11) in answer.slots
    assert local_instant(21, 12) in answer.slots


@pytest.mark.asyncio
async def test_events_longer_than_twelve_hours_are_ignored(db, prop, oracle, graph):
    graph.add_event("Away", local_instant(21, 6), local_instant(21, 18) + timedelta(seconds=1))
    graph.add_event("Conference", local_instant(22, 6), local_instant(22, 18))

    wednesday = await oracle.free_slots(db, prop.id, local_instant(21, 9), local_instant(21, 10))
    thursday = await oracle.free_slots(db, prop.id, local_instant(22, 9), local_instant(22, 10))

    assert wednesday.slots == [local_instant(21, 9), local_instant(21, 9, 30)]
    assert thursday.slots == []


@pytest.mark.asyncio
async def test_unreachable_calendar_is_degraded(db, prop, oracle, graph):
    graph.fail_status = 503

    answer = await oracle.free_slots(db, prop.id, local_instant(21, 9), local_instant(21, 10))

    assert answer.degraded
    assert answer.degraded_reason == "UPSTREAM_ERROR"
    assert answer.slots == [local_instant(21, 9), local_instant(21, 9, 30)]


@pytest.mark.asyncio
async def test_closed_day_skips_calendar_lookup(db, prop, oracle, graph):
    settings_service.update_hours(db, {"wednesday": ("00:00", "00:00")})

    answer = await oracle.free_slots(db, prop.id, local_instant(21, 0), local_instant(21, 23))

    assert answer.slots == []
    assert graph.graph_requests() == []


@pytest.mark.asyncio
async def test_is_bookable_requires_an_aligned_free_slot(db, prop, oracle, graph):
    graph.add_event("Dentist", local_instant(21, 11))

    assert (await oracle.is_bookable(db, prop.id, local_instant(21, 10)))[0]
    assert not (await oracle.is_bookable(db, prop.id, local_instant(21, 10, 15)))[0]
    assert not (await oracle.is_bookable(db, prop.id, local_instant(21, 11)))[0]


@pytest.mark.asyncio
async def test_next_free_slots_limits_suggestions(db, prop, oracle):
    _book(db, prop, local_instant(21, 10))

    answer = await oracle.next_free_slots(db, prop.id, local_instant(21, 10))

    assert answer.slots == [local_instant(21, 10, 30), local_instant(21, 11), local_instant(21, 11, 30)]
