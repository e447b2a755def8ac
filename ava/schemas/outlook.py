"""Outlook integration schemas."""

from datetime import datetime

from pydantic import BaseModel


class CalendarEventRead(BaseModel):
    id: str
    subject: str
    start: datetime | None
    end: datetime | None
    show_as: str
    location: str | None = None


class OutlookConnectResponse(BaseModel):
    connected: bool
    account_email: str | None = None


class ReconcileResponse(BaseModel):
    tick_id: str
    aborted: bool
    error: str | None
    fetched: int
    purged: int
    cancelled: int
    bookings_created: int
    bookings_updated: int
    blocks_upserted: int
    skipped: int
    failed: int
