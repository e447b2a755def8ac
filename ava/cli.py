"""CLI tools for scheduling administration."""

from datetime import datetime
from zoneinfo import ZoneInfo

import click

from ava.core.async_utils import run_async
from ava.core.config import settings
from ava.db.session import SessionLocal
from ava.services import property_service, settings_service
from ava.services.booking_coordinator import (
    BookingConflict,
    BookingCoordinator,
    BookingOk,
    BookingRequest,
    CalendarDegraded,
    MirrorFailed,
    PastTime,
)
from ava.services.calendar_connector import OutlookCalendarConnector
from ava.services.reconciliation_service import ReconciliationLoop
from ava.services.time_model import WEEKDAYS


def _local(instant: datetime) -> str:
    return instant.astimezone(ZoneInfo(settings.DISPLAY_TIMEZONE)).strftime("%a %Y-%m-%d %H:%M")


@click.group()
def cli():
    """Ava scheduling CLI tools."""
    pass


@cli.command()
@click.option("--slug", required=True, help="URL-friendly slug (e.g. 215-16-st-se)")
@click.option("--address", required=True, help="Display address")
def create_property(slug: str, address: str):
    """
    Create a property (or update the address of an existing slug).

    Example:
        python -m ava.cli create-property --slug 215-16-st-se --address "215 16 St SE"
    """
    db = SessionLocal()
    try:
        prop = property_service.upsert_property(db, slug, address)
        click.echo(f"✓ Property {prop.slug} (id {prop.id}): {prop.address}")
    except ValueError as e:
        click.echo(f"❌ {e}")
        raise SystemExit(1)
    finally:
        db.close()


@cli.command()
@click.option("--day", required=True, type=click.Choice(WEEKDAYS, case_sensitive=False))
@click.option("--open", "open_at", required=True, help='Local opening time "HH:MM"')
@click.option("--close", "close_at", required=True, help='Local closing time "HH:MM" ("00:00" both to close)')
def set_hours(day: str, open_at: str, close_at: str):
    """Set one weekday's open hours."""
    db = SessionLocal()
    try:
        settings_service.update_hours(db, {day.lower(): (open_at, close_at)})
        if open_at == close_at == settings_service.CLOSED:
            click.echo(f"✓ {day.capitalize()} is now closed")
        else:
            click.echo(f"✓ {day.capitalize()}: {open_at}-{close_at} ({settings.DISPLAY_TIMEZONE})")
    except ValueError as e:
        click.echo(f"❌ {e}")
        raise SystemExit(1)
    finally:
        db.close()


@cli.command()
def reconcile():
    """Run one Outlook reconciliation tick."""
    # Fresh connector per run_async call: its lock belongs to one event loop
    report = run_async(ReconciliationLoop(OutlookCalendarConnector()).tick())
    if report.aborted:
        click.echo(f"❌ Tick aborted: {report.error}")
        raise SystemExit(1)
    click.echo(
        f"✓ Fetched {report.fetched} event(s): {report.cancelled} cancelled, "
        f"{report.bookings_created} created, {report.bookings_updated} updated, "
        f"{report.blocks_upserted} block(s), {report.skipped} skipped"
    )


@cli.command()
@click.option("--phone", required=True, help="Lead phone number")
@click.option("--slug", required=True, help="Property slug")
@click.option("--at", "at", required=True, help="ISO instant; naive values are local time")
@click.option("--source", default="dashboard", type=click.Choice(["dashboard", "sms"]))
def book(phone: str, slug: str, at: str, source: str):
    """Book a showing from the command line."""
    try:
        requested = datetime.fromisoformat(at)
    except ValueError:
        click.echo(f"❌ Invalid --at value '{at}'")
        raise SystemExit(1)
    if requested.tzinfo is None:
        requested = requested.replace(tzinfo=ZoneInfo(settings.DISPLAY_TIMEZONE))

    coordinator = BookingCoordinator(OutlookCalendarConnector())
    db = SessionLocal()
    try:
        result = run_async(
            coordinator.book(
                db,
                BookingRequest(
                    lead_phone=phone, property_slug=slug, requested_at=requested, source=source
                ),
            )
        )
    finally:
        db.close()

    if isinstance(result, BookingOk):
        click.echo(f"✓ Booking {result.booking_id} at {_local(result.slot_start)}")
        if result.external_event_id:
            click.echo(f"  Outlook event: {result.external_event_id}")
    elif isinstance(result, BookingConflict):
        click.echo("❌ Slot not available")
        for slot in result.suggestions:
            click.echo(f"  → {_local(slot)}")
    elif isinstance(result, PastTime):
        click.echo(f"❌ {_local(result.slot_start)} is in the past")
    elif isinstance(result, CalendarDegraded):
        click.echo(f"❌ Calendar unavailable ({result.reason}); nothing booked")
    elif isinstance(result, MirrorFailed):
        click.echo(f"⚠ Booking {result.booking_id} stored as pending; Outlook failed ({result.error_code})")
    else:
        click.echo(f"❌ {result}")


if __name__ == "__main__":
    cli()
