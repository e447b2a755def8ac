"""Open-hours settings schemas."""

from pydantic import BaseModel, Field

HHMM_PATTERN = r"^\d{2}:\d{2}$"


class DayHours(BaseModel):
    """Local wall-clock window; "00:00"-"00:00" marks a closed day."""
    open: str = Field(..., pattern=HHMM_PATTERN)
    close: str = Field(..., pattern=HHMM_PATTERN)


class WeeklyHoursRead(BaseModel):
    timezone: str
    hours: dict[str, DayHours]


class WeeklyHoursUpdate(BaseModel):
    hours: dict[str, DayHours]
