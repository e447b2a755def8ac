"""Settings router - weekly open hours."""

from fastapi import APIRouter, Depends, HTTPException
from sqlalchemy.orm import Session

from ava.core.config import settings
from ava.core.constants import TOPIC_AVAILABILITY_CHANGED
from ava.core.deps import get_db
from ava.core.events import event_bus
from ava.schemas.settings import DayHours, WeeklyHoursRead, WeeklyHoursUpdate
from ava.services import settings_service

router = APIRouter()


def _to_read(row) -> WeeklyHoursRead:
    return WeeklyHoursRead(
        timezone=settings.DISPLAY_TIMEZONE,
        hours={
            day: DayHours(**window)
            for day, window in settings_service.hours_as_strings(row).items()
        },
    )


@router.get("/hours", response_model=WeeklyHoursRead)
def get_hours(db: Session = Depends(get_db)):
    return _to_read(settings_service.get_global_settings(db))


@router.put("/hours", response_model=WeeklyHoursRead)
def update_hours(body: WeeklyHoursUpdate, db: Session = Depends(get_db)):
    try:
        row = settings_service.update_hours(
            db, {day: (window.open, window.close) for day, window in body.hours.items()}
        )
    except ValueError as e:
        raise HTTPException(status_code=422, detail=str(e))
    event_bus.publish(TOPIC_AVAILABILITY_CHANGED, {"scope": "open_hours"})
    return _to_read(row)
