"""CLI command tests (click CliRunner)."""

from datetime import timedelta

import httpx
from click.testing import CliRunner
from sqlalchemy import select

from ava.cli import cli
from ava.db.models import Booking, Property
from ava.services import settings_service
from ava.services.calendar_connector import OutlookCalendarConnector


def test_create_property(db):
    result = CliRunner().invoke(
        cli, ["create-property", "--slug", "215 16 St SE", "--address", "215 16 St SE"]
    )

    assert result.exit_code == 0
    assert "✓ Property 215-16-st-se" in result.output
    assert db.execute(select(Property.slug)).scalars().all() == ["215-16-st-se"]


def test_create_property_rejects_blank_slug():
    result = CliRunner().invoke(cli, ["create-property", "--slug", "--", "--address", "x"])

    assert result.exit_code == 1
    assert "❌" in result.output


def test_set_hours(db):
    runner = CliRunner()

    result = runner.invoke(cli, ["set-hours", "--day", "Saturday", "--open", "11:00", "--close", "15:00"])
    assert result.exit_code == 0
    assert "Saturday: 11:00-15:00" in result.output

    result = runner.invoke(cli, ["set-hours", "--day", "sunday", "--open", "00:00", "--close", "00:00"])
    assert "Sunday is now closed" in result.output

    row = settings_service.get_global_settings(db)
    assert (row.saturday_start, row.saturday_end) == ("11:00", "15:00")
    assert (row.sunday_start, row.sunday_end) == ("00:00", "00:00")


def test_set_hours_rejects_inverted_window():
    result = CliRunner().invoke(cli, ["set-hours", "--day", "monday", "--open", "18:00", "--close", "09:00"])

    assert result.exit_code == 1
    assert "open time must be before close time" in result.output


def test_reconcile(monkeypatch, connected, graph):
    monkeypatch.setattr("ava.cli.OutlookCalendarConnector", lambda: connected)

    result = CliRunner().invoke(cli, ["reconcile"])
    assert result.exit_code == 0
    assert "✓ Fetched 0 event(s)" in result.output

    graph.fail_status = 503
    result = CliRunner().invoke(cli, ["reconcile"])
    assert result.exit_code == 1
    assert "Tick aborted" in result.output


def test_book(monkeypatch, connected, graph, prop, db):
    monkeypatch.setattr("ava.cli.OutlookCalendarConnector", lambda: connected)

    # Tuesday 2099-01-06 10:00 local (MST)
    args = ["book", "--phone", "5551234567", "--slug", prop.slug, "--at", "2099-01-06T10:07"]
    result = CliRunner().invoke(cli, args)

    assert result.exit_code == 0, result.output
    assert "Tue 2099-01-06 10:00" in result.output
    assert len(graph.graph_requests("POST")) == 1

    booking = db.execute(select(Booking)).scalar_one()
    assert booking.status == "confirmed"

    graph.add_event("Dentist", booking.slot_start + timedelta(minutes=30))
    result = CliRunner().invoke(
        cli, ["book", "--phone", "5559876543", "--slug", prop.slug, "--at", "2099-01-06T10:00"]
    )
    assert "❌ Slot not available" in result.output
    assert "→ Tue 2099-01-06 11:00" in result.output


def test_book_rejects_bad_time():
    result = CliRunner().invoke(cli, ["book", "--phone", "5551234567", "--slug", "x", "--at", "someday"])

    assert result.exit_code == 1
    assert "Invalid --at value" in result.output


def test_each_command_builds_its_own_connector(monkeypatch, connected, graph, clock):
    built = []

    def build():
        connector = OutlookCalendarConnector(
            transport=httpx.MockTransport(graph.handler),
            clock=clock,
            rate_limit_pause_seconds=0,
        )
        built.append(connector)
        return connector

    monkeypatch.setattr("ava.cli.OutlookCalendarConnector", build)
    runner = CliRunner()

    assert runner.invoke(cli, ["reconcile"]).exit_code == 0
    assert runner.invoke(cli, ["reconcile"]).exit_code == 0

    assert len(built) == 2
    assert built[0] is not built[1]
    assert len(graph.token_requests) == 0
