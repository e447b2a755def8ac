"""
Test configuration and fixtures.

Provides:
- Throw-away SQLite database (schema created once, rows wiped after each test)
- Fake Microsoft Graph / token endpoint behind httpx.MockTransport
- Frozen clock and a connector wired to both
- HTTPX AsyncClient with database and connector overrides
"""
import json
import os
import tempfile
from datetime import datetime, timedelta, timezone
from typing import AsyncGenerator, Generator
from urllib.parse import parse_qsl

import httpx
import pytest
from cryptography.fernet import Fernet
from httpx import ASGITransport, AsyncClient
from sqlalchemy.orm import Session

_DB_DIR = tempfile.mkdtemp(prefix="ava-tests-")
os.environ["DATABASE_URL"] = f"sqlite:///{os.path.join(_DB_DIR, 'test.db')}"
os.environ["TOKEN_ENCRYPTION_KEY"] = Fernet.generate_key().decode()
os.environ["DISPLAY_TIMEZONE"] = "America/Edmonton"
os.environ["ENV"] = "test"
os.environ["SENTRY_DSN"] = ""

from ava.core.config import settings
from ava.core.deps import get_calendar_connector, get_db
from ava.core.events import EventBus
from ava.db.base import Base
from ava.db.models import Property
from ava.db.session import SessionLocal, engine
from ava.main import app
from ava.services.booking_coordinator import BookingCoordinator
from ava.services.calendar_connector import OutlookCalendarConnector

import ava.db.models  # noqa: F401


# Tuesday 2026-10-20 08:00 America/Edmonton (UTC-6)
NOW = datetime(2026, 10, 20, 14, 0, tzinfo=timezone.utc)


def local_instant(day: int, hour: int, minute: int = 0) -> datetime:
    """UTC instant for an October 2026 wall time in the display zone (MDT)."""
    return datetime(2026, 10, day, hour + 6, minute, tzinfo=timezone.utc)


# =============================================================================
# Clock
# =============================================================================

class FrozenClock:
    def __init__(self, now: datetime):
        self.now = now

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs) -> None:
        self.now = self.now + timedelta(**kwargs)


@pytest.fixture
def clock() -> FrozenClock:
    return FrozenClock(NOW)


# =============================================================================
# Fake Microsoft Graph
# =============================================================================

def _graph_time(instant: datetime) -> dict:
    return {
        "dateTime": instant.astimezone(timezone.utc).strftime("%Y-%m-%dT%H:%M:%S.0000000"),
        "timeZone": "UTC",
    }


class FakeGraph:
    """In-memory stand-in for login.microsoftonline.com and graph.microsoft.com."""

    def __init__(self):
        self.events: dict[str, dict] = {}
        self.requests: list[httpx.Request] = []
        self.token_requests: list[dict] = []
        self.token_status = 200
        self.token_expires_in = 3600
        self.rate_limited = 0
        self.fail_status: int | None = None
        self.create_status: int | None = None
        self.page_size: int | None = None
        self._counter = 0

    def _next(self, prefix: str) -> str:
        self._counter += 1
        return f"{prefix}-{self._counter}"

    def add_event(
        self,
        subject: str,
        start: datetime,
        end: datetime | None = None,
        show_as: str = "busy",
        event_id: str | None = None,
    ) -> str:
        event_id = event_id or self._next("evt")
        self.events[event_id] = {
            "id": event_id,
            "subject": subject,
            "start": _graph_time(start),
            "end": _graph_time(end or start + timedelta(minutes=30)),
            "showAs": show_as,
            "location": {"displayName": subject},
        }
        return event_id

    def graph_requests(self, method: str | None = None) -> list[httpx.Request]:
        return [
            r
            for r in self.requests
            if r.url.host == "graph.microsoft.com" and (method is None or r.method == method)
        ]

    def handler(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        if request.url.host == "login.microsoftonline.com":
            return self._token(request)
        if self.rate_limited > 0:
            self.rate_limited -= 1
            return httpx.Response(429, json={"error": {"code": "TooManyRequests"}})
        if self.fail_status is not None:
            return httpx.Response(self.fail_status, json={"error": {"code": "Boom"}})

        path = request.url.path
        if path.endswith("/me/calendarView"):
            return self._calendar_view(request)
        if path.endswith("/me"):
            return httpx.Response(200, json={"mail": "agent@example.com"})
        if path.endswith("/me/events") and request.method == "POST":
            return self._create(request)
        if "/me/events/" in path:
            event_id = path.rsplit("/", 1)[-1]
            if event_id not in self.events:
                return httpx.Response(404, json={"error": {"code": "ErrorItemNotFound"}})
            if request.method == "DELETE":
                del self.events[event_id]
                return httpx.Response(204)
            return httpx.Response(200, json=self.events[event_id])
        return httpx.Response(404)

    def _token(self, request: httpx.Request) -> httpx.Response:
        form = dict(parse_qsl(request.content.decode()))
        self.token_requests.append(form)
        if self.token_status != 200:
            return httpx.Response(self.token_status, json={"error": "invalid_grant"})
        n = len(self.token_requests)
        return httpx.Response(
            200,
            json={
                "access_token": f"access-{n}",
                "refresh_token": f"refresh-{n}",
                "expires_in": self.token_expires_in,
                "token_type": "Bearer",
            },
        )

    def _calendar_view(self, request: httpx.Request) -> httpx.Response:
        items = list(self.events.values())
        if self.page_size is None:
            return httpx.Response(200, json={"value": items})
        offset = int(request.url.params.get("$skiptoken", "0"))
        page = items[offset : offset + self.page_size]
        body: dict = {"value": page}
        if offset + self.page_size < len(items):
            body["@odata.nextLink"] = (
                f"{settings.GRAPH_BASE_URL}/me/calendarView?$skiptoken={offset + self.page_size}"
            )
        return httpx.Response(200, json=body)

    def _create(self, request: httpx.Request) -> httpx.Response:
        if self.create_status is not None:
            return httpx.Response(self.create_status, json={"error": {"code": "Boom"}})
        body = json.loads(request.content)
        event_id = self._next("created")
        self.events[event_id] = {"id": event_id, **body}
        return httpx.Response(201, json={"id": event_id, **body})


@pytest.fixture
def graph() -> FakeGraph:
    return FakeGraph()


@pytest.fixture
def connector(graph: FakeGraph, clock: FrozenClock) -> OutlookCalendarConnector:
    return OutlookCalendarConnector(
        transport=httpx.MockTransport(graph.handler),
        clock=clock,
        rate_limit_pause_seconds=0,
        display_timezone="America/Edmonton",
    )


@pytest.fixture
def connected(connector: OutlookCalendarConnector) -> OutlookCalendarConnector:
    """Connector with a stored account whose access token is good for an hour."""
    connector.seed_account(
        access_token="seed-access",
        refresh_token="seed-refresh",
        expires_at=NOW + timedelta(hours=1),
        account_email="agent@example.com",
    )
    return connector


@pytest.fixture
def bus() -> EventBus:
    return EventBus(default_maxsize=10)


# =============================================================================
# Database Fixtures
# =============================================================================

@pytest.fixture(scope="session", autouse=True)
def _schema() -> Generator[None, None, None]:
    Base.metadata.create_all(engine)
    yield
    Base.metadata.drop_all(engine)


@pytest.fixture(autouse=True)
def _clean_tables() -> Generator[None, None, None]:
    yield
    with engine.begin() as conn:
        for table in reversed(Base.metadata.sorted_tables):
            conn.execute(table.delete())


@pytest.fixture(scope="function")
def db() -> Generator[Session, None, None]:
    session = SessionLocal()
    yield session
    session.rollback()
    session.close()


@pytest.fixture
def prop(db: Session) -> Property:
    prop = Property(slug="215-16-st-se", address="215 16 St SE")
    db.add(prop)
    db.commit()
    return prop


# =============================================================================
# Client Fixtures
# =============================================================================

@pytest.fixture(scope="function")
async def client(
    db: Session, connector: OutlookCalendarConnector
) -> AsyncGenerator[AsyncClient, None]:
    """AsyncClient with the test session and fake-Graph connector injected."""
    def override_get_db():
        yield db

    app.dependency_overrides[get_db] = override_get_db
    app.dependency_overrides[get_calendar_connector] = lambda: connector

    async with AsyncClient(
        transport=ASGITransport(app=app),
        base_url="http://test"
    ) as c:
        yield c

    app.dependency_overrides.clear()


@pytest.fixture
def coordinator(
    connected: OutlookCalendarConnector, clock: FrozenClock, bus: EventBus
) -> BookingCoordinator:
    return BookingCoordinator(connected, clock=clock, bus=bus)
