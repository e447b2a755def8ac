"""Microsoft Graph payload records, parsed at ingress."""

from __future__ import annotations

import re
from datetime import datetime, timezone
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

from pydantic import BaseModel, ConfigDict, Field

_FRACTION_RE = re.compile(r"(\.\d{1,6})\d*")


class GraphDateTime(BaseModel):
    """Graph's ``{"dateTime": "...", "timeZone": "..."}`` pair."""

    model_config = ConfigDict(populate_by_name=True, extra="ignore")

    date_time: str | None = Field(default=None, alias="dateTime")
    time_zone: str | None = Field(default=None, alias="timeZone")

    def to_utc(self, default_tz: str) -> datetime | None:
        """
        Convert to an aware UTC instant, or None when malformed.

        Graph sends seven fractional digits ("10:00:00.0000000") which
        ``fromisoformat`` rejects on older interpreters, so they are trimmed.
        """
        if not self.date_time:
            return None
        raw = _FRACTION_RE.sub(r"\1", self.date_time.strip())
        if raw.endswith("Z"):
            raw = raw[:-1] + "+00:00"
        try:
            parsed = datetime.fromisoformat(raw)
        except ValueError:
            return None
        if parsed.tzinfo is None:
            parsed = parsed.replace(tzinfo=_zone_for(self.time_zone, default_tz))
        return parsed.astimezone(timezone.utc)


def _zone_for(name: str | None, default_tz: str):
    if not name:
        return ZoneInfo(default_tz)
    if name.upper() in ("UTC", "ETC/UTC", "COORDINATED UNIVERSAL TIME"):
        return timezone.utc
    try:
        return ZoneInfo(name)
    except (ZoneInfoNotFoundError, ValueError):
        # Windows zone names ("Mountain Standard Time") map to the display zone
        return ZoneInfo(default_tz)


class GraphLocation(BaseModel):
    model_config = ConfigDict(populate_by_name=True, extra="ignore")

    display_name: str | None = Field(default=None, alias="displayName")


class GraphEvent(BaseModel):
    """One item of ``/me/calendarView`` or ``/me/events``."""

    model_config = ConfigDict(populate_by_name=True, extra="ignore")

    id: str
    subject: str | None = None
    start: GraphDateTime | None = None
    end: GraphDateTime | None = None
    location: GraphLocation | None = None
    show_as: str | None = Field(default=None, alias="showAs")


class GraphEventPage(BaseModel):
    model_config = ConfigDict(populate_by_name=True, extra="ignore")

    value: list[GraphEvent] = Field(default_factory=list)
    next_link: str | None = Field(default=None, alias="@odata.nextLink")


class TokenResponse(BaseModel):
    """OAuth token endpoint response."""

    model_config = ConfigDict(extra="ignore")

    access_token: str
    refresh_token: str | None = None
    expires_in: int = 3600
    token_type: str | None = None
    scope: str | None = None


class GraphUser(BaseModel):
    model_config = ConfigDict(populate_by_name=True, extra="ignore")

    mail: str | None = None
    user_principal_name: str | None = Field(default=None, alias="userPrincipalName")

    @property
    def email(self) -> str | None:
        return self.mail or self.user_principal_name
