"""Outlook calendar connector - Microsoft Graph integration for showings.

Handles:
- OAuth token lifecycle (single-flight refresh, encrypted storage)
- calendarView queries for busy time and reconciliation
- Event creation/read/deletion for mirrored bookings

One connector instance owns the refresh lock and the cached token; build it
once per process and inject it where calendar access is needed.
"""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass
from datetime import datetime, timedelta
from enum import Enum
from typing import Callable
from urllib.parse import urlencode
from zoneinfo import ZoneInfo

import httpx
from sqlalchemy import select
from sqlalchemy.orm import Session, sessionmaker

from ava.core.config import settings
from ava.core.constants import (
    GRAPH_EVENT_SELECT,
    GRAPH_MAX_PAGES,
    GRAPH_SCOPES,
    SHOW_AS_BUSY,
    SLOT_MINUTES,
)
from ava.db.enums import CalendarProvider
from ava.db.models import CalendarAccount
from ava.db.session import SessionLocal
from ava.schemas.graph import GraphEvent, GraphEventPage, GraphUser, TokenResponse
from ava.services.http_service import request_with_retries
from ava.services.time_model import Clock, ensure_utc, utc_now

logger = logging.getLogger(__name__)

DEFAULT_USER_ID = 1


# =============================================================================
# Errors
# =============================================================================

class CalendarError(Exception):
    """Base class for external calendar failures."""

    code = "CALENDAR_ERROR"


class CalendarNotConnectedError(CalendarError):
    """No CalendarAccount has been seeded by the OAuth flow."""

    code = "NOT_CONNECTED"


class AuthExpiredError(CalendarError):
    """The refresh token was rejected; an operator must reconnect Outlook."""

    code = "AUTH_EXPIRED"


class RateLimitedError(CalendarError):
    """Graph kept answering 429 after the single retry."""

    code = "RATE_LIMITED"


class UpstreamError(CalendarError):
    """Any other upstream failure, including timeouts."""

    code = "UPSTREAM_ERROR"

    def __init__(self, status_code: int | None, message: str):
        super().__init__(message)
        self.status_code = status_code
        self.message = message


# =============================================================================
# Types
# =============================================================================

class TokenState(str, Enum):
    FRESH = "fresh"
    REFRESHING = "refreshing"
    INVALID = "invalid"


@dataclass(frozen=True)
class CalendarEvent:
    """Normalised external event. start/end are None when Graph sent garbage."""

    id: str
    subject: str
    start: datetime | None
    end: datetime | None
    show_as: str
    location: str | None = None

    @property
    def is_busy(self) -> bool:
        return self.show_as == SHOW_AS_BUSY

    @property
    def duration(self) -> timedelta | None:
        if self.start is None or self.end is None:
            return None
        return self.end - self.start


@dataclass
class _CachedToken:
    access_token: str
    expires_at: datetime


# =============================================================================
# Account storage
# =============================================================================

def get_account(db: Session, user_id: int = DEFAULT_USER_ID) -> CalendarAccount | None:
    return db.execute(
        select(CalendarAccount).where(
            CalendarAccount.user_id == user_id,
            CalendarAccount.provider == CalendarProvider.OUTLOOK.value,
        )
    ).scalar_one_or_none()


def save_account(
    db: Session,
    *,
    access_token: str,
    refresh_token: str | None,
    expires_at: datetime,
    account_email: str | None = None,
    user_id: int = DEFAULT_USER_ID,
) -> CalendarAccount:
    """Create or overwrite the Outlook account row. Caller commits."""
    account = get_account(db, user_id)
    if account is None:
        account = CalendarAccount(
            user_id=user_id, provider=CalendarProvider.OUTLOOK.value
        )
        db.add(account)
    account.access_token = access_token
    if refresh_token:
        account.refresh_token = refresh_token
    account.token_expires_at = ensure_utc(expires_at)
    if account_email:
        account.account_email = account_email
    return account


# =============================================================================
# Connector
# =============================================================================

class OutlookCalendarConnector:
    """Microsoft Graph client for the leasing agent's calendar."""

    def __init__(
        self,
        session_factory: sessionmaker | Callable[[], Session] = SessionLocal,
        *,
        transport: httpx.AsyncBaseTransport | None = None,
        clock: Clock = utc_now,
        refresh_margin_seconds: int | None = None,
        rate_limit_pause_seconds: float | None = None,
        display_timezone: str | None = None,
    ):
        self._session_factory = session_factory
        self._transport = transport
        self._clock = clock
        self._margin = timedelta(
            seconds=settings.TOKEN_REFRESH_MARGIN_SECONDS
            if refresh_margin_seconds is None
            else refresh_margin_seconds
        )
        self._rate_limit_pause = (
            settings.GRAPH_RATE_LIMIT_PAUSE_SECONDS
            if rate_limit_pause_seconds is None
            else rate_limit_pause_seconds
        )
        self.display_timezone = display_timezone or settings.DISPLAY_TIMEZONE
        self._lock = asyncio.Lock()
        self._token: _CachedToken | None = None
        self._state = TokenState.FRESH

    @property
    def state(self) -> TokenState:
        return self._state

    def reset(self) -> None:
        """Forget cached credentials (after a reconnect re-seeds the account)."""
        self._token = None
        self._state = TokenState.FRESH

    def _http_client(self, timeout: float) -> httpx.AsyncClient:
        return httpx.AsyncClient(transport=self._transport, timeout=timeout)

    # -------------------------------------------------------------------------
    # Token lifecycle
    # -------------------------------------------------------------------------

    def _is_fresh(self, token: _CachedToken | None, now: datetime) -> bool:
        return token is not None and token.expires_at > now + self._margin

    async def access_token(self) -> str:
        """
        Return an access token whose expiry is beyond now + the safety margin.

        Concurrent callers share one refresh round-trip: the first caller
        refreshes under the lock, the rest find the new token cached.
        """
        if self._state == TokenState.INVALID:
            raise AuthExpiredError("Outlook authorization expired; reconnect required")
        if self._is_fresh(self._token, self._clock()):
            return self._token.access_token

        async with self._lock:
            if self._state == TokenState.INVALID:
                raise AuthExpiredError("Outlook authorization expired; reconnect required")
            now = self._clock()
            if self._is_fresh(self._token, now):
                return self._token.access_token

            with self._session_factory() as db:
                account = get_account(db)
                if account is None:
                    raise CalendarNotConnectedError("Outlook calendar is not connected")
                stored_access = account.access_token
                stored_refresh = account.refresh_token
                stored_expiry = account.token_expires_at

            if stored_access and stored_expiry is not None:
                candidate = _CachedToken(stored_access, ensure_utc(stored_expiry))
                if self._is_fresh(candidate, now):
                    self._token = candidate
                    return candidate.access_token

            if not stored_refresh:
                self._state = TokenState.INVALID
                raise AuthExpiredError("No refresh token stored; reconnect required")

            self._state = TokenState.REFRESHING
            try:
                token = await self._request_token(
                    {"grant_type": "refresh_token", "refresh_token": stored_refresh}
                )
            except AuthExpiredError:
                self._state = TokenState.INVALID
                self._token = None
                logger.warning("Outlook token refresh rejected; connector invalidated")
                raise
            except CalendarError:
                self._state = TokenState.FRESH
                raise

            expires_at = self._clock() + timedelta(seconds=token.expires_in)
            with self._session_factory() as db:
                save_account(
                    db,
                    access_token=token.access_token,
                    refresh_token=token.refresh_token,
                    expires_at=expires_at,
                )
                db.commit()

            self._token = _CachedToken(token.access_token, expires_at)
            self._state = TokenState.FRESH
            logger.info("Outlook access token refreshed (expires %s)", expires_at.isoformat())
            return token.access_token

    async def _request_token(self, data: dict[str, str]) -> TokenResponse:
        payload = {
            "client_id": settings.MS_GRAPH_CLIENT_ID,
            "client_secret": settings.MS_GRAPH_CLIENT_SECRET,
            "scope": GRAPH_SCOPES,
            **data,
        }
        async with self._http_client(settings.TOKEN_REFRESH_TIMEOUT_SECONDS) as client:
            try:
                response = await client.post(settings.token_endpoint, data=payload)
            except httpx.TimeoutException as exc:
                raise UpstreamError(None, "Token endpoint timed out") from exc
            except httpx.RequestError as exc:
                raise UpstreamError(None, f"Token endpoint unreachable: {type(exc).__name__}") from exc

        if response.status_code in (400, 401, 403):
            raise AuthExpiredError(
                f"Token endpoint rejected grant ({response.status_code})"
            )
        if response.status_code >= 400:
            raise UpstreamError(
                response.status_code,
                f"Token endpoint returned {response.status_code}",
            )
        try:
            return TokenResponse.model_validate(response.json())
        except ValueError as exc:
            raise AuthExpiredError("Token endpoint response had no access token") from exc

    # -------------------------------------------------------------------------
    # OAuth connect flow
    # -------------------------------------------------------------------------

    def authorization_url(self, state: str) -> str:
        params = {
            "client_id": settings.MS_GRAPH_CLIENT_ID,
            "response_type": "code",
            "redirect_uri": settings.MS_GRAPH_REDIRECT_URI,
            "response_mode": "query",
            "scope": GRAPH_SCOPES,
            "state": state,
        }
        return f"{settings.authorize_endpoint}?{urlencode(params)}"

    async def connect(self, code: str) -> str | None:
        """Exchange an authorization code and seed the account. Returns the email."""
        token = await self._request_token(
            {
                "grant_type": "authorization_code",
                "code": code,
                "redirect_uri": settings.MS_GRAPH_REDIRECT_URI,
            }
        )
        email = await self._fetch_account_email(token.access_token)
        expires_at = self._clock() + timedelta(seconds=token.expires_in)
        self.seed_account(
            access_token=token.access_token,
            refresh_token=token.refresh_token,
            expires_at=expires_at,
            account_email=email,
        )
        logger.info("Outlook calendar connected")
        return email

    def seed_account(
        self,
        *,
        access_token: str,
        refresh_token: str | None,
        expires_at: datetime,
        account_email: str | None = None,
    ) -> None:
        with self._session_factory() as db:
            save_account(
                db,
                access_token=access_token,
                refresh_token=refresh_token,
                expires_at=expires_at,
                account_email=account_email,
            )
            db.commit()
        self.reset()

    async def _fetch_account_email(self, access_token: str) -> str | None:
        async with self._http_client(settings.GRAPH_LIST_TIMEOUT_SECONDS) as client:
            try:
                response = await client.get(
                    f"{settings.GRAPH_BASE_URL}/me",
                    headers={"Authorization": f"Bearer {access_token}"},
                )
            except httpx.RequestError:
                logger.warning("Could not read Outlook profile after connect")
                return None
        if response.status_code != 200:
            logger.warning("Outlook profile lookup returned %s", response.status_code)
            return None
        return GraphUser.model_validate(response.json()).email

    # -------------------------------------------------------------------------
    # Graph requests
    # -------------------------------------------------------------------------

    async def _graph_request(
        self,
        method: str,
        url: str,
        *,
        timeout: float,
        params: dict | None = None,
        json: dict | None = None,
        headers: dict | None = None,
    ) -> httpx.Response:
        """Authorised Graph call with one retry on 429. 404 is returned to the caller."""
        token = await self.access_token()
        request_headers = {"Authorization": f"Bearer {token}", **(headers or {})}

        async with self._http_client(timeout) as client:
            try:
                response = await request_with_retries(
                    lambda: client.request(
                        method, url, params=params, json=json, headers=request_headers
                    ),
                    max_attempts=2,
                    base_delay=self._rate_limit_pause,
                    max_delay=self._rate_limit_pause,
                    retry_statuses={429},
                    retry_request_errors=False,
                    jitter=False,
                )
            except httpx.TimeoutException as exc:
                raise UpstreamError(None, f"Graph {method} timed out") from exc
            except httpx.RequestError as exc:
                raise UpstreamError(None, f"Graph {method} failed: {type(exc).__name__}") from exc

        if response.status_code == 429:
            raise RateLimitedError("Graph rate limit persisted after retry")
        if response.status_code == 401:
            # Revoked or rotated elsewhere; reload from storage next time
            self._token = None
        if response.status_code >= 400 and response.status_code != 404:
            raise UpstreamError(
                response.status_code,
                f"Graph {method} returned {response.status_code}",
            )
        return response

    def _to_calendar_event(self, raw: GraphEvent) -> CalendarEvent:
        return CalendarEvent(
            id=raw.id,
            subject=raw.subject or "",
            start=raw.start.to_utc(self.display_timezone) if raw.start else None,
            end=raw.end.to_utc(self.display_timezone) if raw.end else None,
            show_as=(raw.show_as or "").lower(),
            location=raw.location.display_name if raw.location else None,
        )

    def _local_wall(self, instant: datetime) -> str:
        local = ensure_utc(instant).astimezone(ZoneInfo(self.display_timezone))
        return local.strftime("%Y-%m-%dT%H:%M:%S")

    @staticmethod
    def _graph_instant(instant: datetime) -> str:
        return ensure_utc(instant).strftime("%Y-%m-%dT%H:%M:%SZ")

    async def list_events(self, start: datetime, end: datetime) -> list[CalendarEvent]:
        """Every event overlapping [start, end), any showAs, following nextLink pages."""
        url = f"{settings.GRAPH_BASE_URL}/me/calendarView"
        params: dict | None = {
            "startDateTime": self._graph_instant(start),
            "endDateTime": self._graph_instant(end),
            "$select": GRAPH_EVENT_SELECT,
            "$top": "100",
        }
        headers = {"Prefer": f'outlook.timezone="{self.display_timezone}"'}

        events: list[CalendarEvent] = []
        for _ in range(GRAPH_MAX_PAGES):
            response = await self._graph_request(
                "GET",
                url,
                timeout=settings.GRAPH_LIST_TIMEOUT_SECONDS,
                params=params,
                headers=headers,
            )
            if response.status_code == 404:
                raise UpstreamError(404, "Graph calendarView not found")
            try:
                page = GraphEventPage.model_validate(response.json())
            except ValueError as exc:
                raise UpstreamError(response.status_code, "Unreadable calendarView payload") from exc

            events.extend(self._to_calendar_event(item) for item in page.value)
            if not page.next_link:
                break
            url, params = page.next_link, None
        else:
            logger.warning("calendarView paging stopped after %d pages", GRAPH_MAX_PAGES)

        return events

    async def list_busy(self, start: datetime, end: datetime) -> list[CalendarEvent]:
        return [event for event in await self.list_events(start, end) if event.is_busy]

    async def get_event(self, event_id: str) -> CalendarEvent | None:
        response = await self._graph_request(
            "GET",
            f"{settings.GRAPH_BASE_URL}/me/events/{event_id}",
            timeout=settings.GRAPH_LIST_TIMEOUT_SECONDS,
            params={"$select": GRAPH_EVENT_SELECT},
            headers={"Prefer": f'outlook.timezone="{self.display_timezone}"'},
        )
        if response.status_code == 404:
            return None
        try:
            return self._to_calendar_event(GraphEvent.model_validate(response.json()))
        except ValueError as exc:
            raise UpstreamError(response.status_code, "Unreadable event payload") from exc

    async def create_event(
        self,
        *,
        subject: str,
        start: datetime,
        end: datetime | None = None,
        location: str | None = None,
        attendee_email: str | None = None,
    ) -> str:
        """Create a busy event and return its Graph id."""
        start = ensure_utc(start)
        if end is None or ensure_utc(end) <= start:
            end = start + timedelta(minutes=SLOT_MINUTES)

        body: dict = {
            "subject": subject,
            "start": {"dateTime": self._local_wall(start), "timeZone": self.display_timezone},
            "end": {"dateTime": self._local_wall(end), "timeZone": self.display_timezone},
            "showAs": SHOW_AS_BUSY,
        }
        if location:
            body["location"] = {"displayName": location}
        if attendee_email:
            body["attendees"] = [
                {"emailAddress": {"address": attendee_email}, "type": "required"}
            ]

        response = await self._graph_request(
            "POST",
            f"{settings.GRAPH_BASE_URL}/me/events",
            timeout=settings.GRAPH_CREATE_TIMEOUT_SECONDS,
            json=body,
        )
        if response.status_code == 404:
            raise UpstreamError(404, "Graph events endpoint not found")
        try:
            event_id = response.json().get("id")
        except ValueError as exc:
            raise UpstreamError(response.status_code, "Unreadable create-event payload") from exc
        if not event_id:
            raise UpstreamError(response.status_code, "Graph did not return an event id")
        return event_id

    async def delete_event(self, event_id: str) -> bool:
        """Delete an event. Returns False when it was already gone."""
        response = await self._graph_request(
            "DELETE",
            f"{settings.GRAPH_BASE_URL}/me/events/{event_id}",
            timeout=settings.GRAPH_CREATE_TIMEOUT_SECONDS,
        )
        return response.status_code != 404


_connector: OutlookCalendarConnector | None = None


def get_connector() -> OutlookCalendarConnector:
    """Process-wide connector used by the app, worker and CLI."""
    global _connector
    if _connector is None:
        _connector = OutlookCalendarConnector()
    return _connector
