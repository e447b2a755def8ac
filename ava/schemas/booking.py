"""Booking schemas - Pydantic models for the bookings API."""

from datetime import datetime
from typing import Literal

from pydantic import BaseModel, ConfigDict, Field, model_validator


class BookingCreate(BaseModel):
    """
    Schema for a booking request.

    Either an ISO ``requested_at`` or an SMS-style ``requested_text``
    ("Sat 10:30am") must be given.
    """
    phone: str = Field(..., min_length=1, max_length=32)
    property_slug: str = Field(..., min_length=1, max_length=200)
    requested_at: datetime | None = None
    requested_text: str | None = Field(None, max_length=500)
    source: Literal["dashboard", "sms"] = "dashboard"
    lead_name: str | None = Field(None, max_length=255)
    lead_email: str | None = Field(None, max_length=255)
    notes: str | None = None

    @model_validator(mode="after")
    def _requires_time(self):
        if self.requested_at is None and not (self.requested_text or "").strip():
            raise ValueError("requested_at or requested_text is required")
        return self


class BookingCancel(BaseModel):
    reason: str | None = Field(None, max_length=500)


class BookingRead(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: int
    property_id: int
    lead_id: int
    slot_start: datetime
    duration_minutes: int
    status: str
    source: str
    notes: str | None
    external_event_id: str | None
    cancelled_at: datetime | None
    cancellation_reason: str | None
    created_at: datetime
    updated_at: datetime


class BookingResultRead(BaseModel):
    """Outcome of a successful book() call."""
    booking_id: int
    slot_start: datetime
    status: str
    external_event_id: str | None
    created: bool
