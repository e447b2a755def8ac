"""Availability schemas."""

from datetime import datetime

from pydantic import BaseModel, ConfigDict, Field


class IntervalCreate(BaseModel):
    property_slug: str = Field(..., min_length=1, max_length=200)
    start_time: datetime
    end_time: datetime
    is_blocked: bool = True
    notes: str | None = None


class IntervalRead(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: int
    property_id: int
    start_time: datetime
    end_time: datetime
    is_blocked: bool
    notes: str | None
    created_at: datetime


class FreeSlotsRead(BaseModel):
    property_slug: str
    start: datetime
    end: datetime
    slots: list[datetime]
    degraded: bool
    degraded_reason: str | None = None
