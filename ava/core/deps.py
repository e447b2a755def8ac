"""FastAPI dependencies for database access and scheduling services."""

from typing import Generator

from fastapi import Depends, Header, HTTPException
from sqlalchemy.orm import Session

from ava.core.config import settings
from ava.db.session import SessionLocal
from ava.services.booking_coordinator import BookingCoordinator
from ava.services.calendar_connector import OutlookCalendarConnector, get_connector
from ava.services.reconciliation_service import ReconciliationLoop


_coordinator: BookingCoordinator | None = None
_reconciler: ReconciliationLoop | None = None


def get_db() -> Generator[Session, None, None]:
    """
    Database session dependency.

    Yields a database session and ensures it's closed after the request.
    """
    db = SessionLocal()
    try:
        yield db
    finally:
        db.close()


def get_calendar_connector() -> OutlookCalendarConnector:
    return get_connector()


def get_booking_coordinator(
    connector: OutlookCalendarConnector = Depends(get_calendar_connector),
) -> BookingCoordinator:
    global _coordinator
    if _coordinator is None or _coordinator.connector is not connector:
        _coordinator = BookingCoordinator(connector)
    return _coordinator


def get_reconciliation_loop(
    connector: OutlookCalendarConnector = Depends(get_calendar_connector),
) -> ReconciliationLoop:
    global _reconciler
    if _reconciler is None or _reconciler.connector is not connector:
        _reconciler = ReconciliationLoop(connector)
    return _reconciler


def verify_internal_secret(x_internal_secret: str = Header(...)) -> None:
    """Verify the internal secret header."""
    expected = settings.INTERNAL_SECRET
    if not expected:
        raise HTTPException(status_code=501, detail="INTERNAL_SECRET not configured")
    if x_internal_secret != expected:
        raise HTTPException(status_code=403, detail="Invalid internal secret")
