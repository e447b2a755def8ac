"""
Outlook integration endpoints.

- /api/outlook: OAuth connect flow and a read-only view of upcoming events
- /api/outlook-sync: on-demand reconciliation (X-Internal-Secret) and the
  Graph change-notification webhook
"""

import logging
import secrets
from datetime import timedelta

from fastapi import APIRouter, BackgroundTasks, Depends, HTTPException, Query, Request
from fastapi.responses import PlainTextResponse, RedirectResponse, Response

from ava.core.config import settings
from ava.core.deps import (
    get_calendar_connector,
    get_reconciliation_loop,
    verify_internal_secret,
)
from ava.routers.shared import calendar_http_error
from ava.schemas.outlook import CalendarEventRead, OutlookConnectResponse, ReconcileResponse
from ava.services.calendar_connector import CalendarError, OutlookCalendarConnector
from ava.services.reconciliation_service import ReconciliationLoop
from ava.services.time_model import utc_now

logger = logging.getLogger(__name__)

STATE_COOKIE = "outlook_oauth_state"

router = APIRouter(prefix="/api/outlook", tags=["outlook"])
sync_router = APIRouter(prefix="/api/outlook-sync", tags=["outlook"])


# =============================================================================
# OAuth
# =============================================================================

@router.get("/auth")
def outlook_auth(
    connector: OutlookCalendarConnector = Depends(get_calendar_connector),
):
    """Redirect the operator to the Microsoft consent screen."""
    if not settings.MS_GRAPH_CLIENT_ID:
        raise HTTPException(status_code=501, detail="MS_GRAPH_CLIENT_ID not configured")
    state = secrets.token_urlsafe(16)
    response = RedirectResponse(connector.authorization_url(state), status_code=302)
    response.set_cookie(
        STATE_COOKIE,
        state,
        max_age=600,
        httponly=True,
        secure=settings.ENV != "dev",
        samesite="lax",
    )
    return response


@router.get("/callback", response_model=OutlookConnectResponse)
async def outlook_callback(
    request: Request,
    code: str | None = Query(None),
    state: str | None = Query(None),
    error: str | None = Query(None),
    connector: OutlookCalendarConnector = Depends(get_calendar_connector),
):
    if error:
        raise HTTPException(status_code=400, detail=f"Microsoft sign-in failed: {error}")
    if not code:
        raise HTTPException(status_code=400, detail="Missing authorization code")
    expected_state = request.cookies.get(STATE_COOKIE)
    if not expected_state or not state or not secrets.compare_digest(expected_state, state):
        raise HTTPException(status_code=400, detail="Invalid OAuth state")

    try:
        email = await connector.connect(code)
    except CalendarError as exc:
        raise calendar_http_error(exc)
    return OutlookConnectResponse(connected=True, account_email=email)


@router.get("/events", response_model=list[CalendarEventRead])
async def outlook_events(
    connector: OutlookCalendarConnector = Depends(get_calendar_connector),
):
    """Normalised events for the next seven days."""
    start = utc_now()
    try:
        events = await connector.list_events(start, start + timedelta(days=7))
    except CalendarError as exc:
        raise calendar_http_error(exc)
    return [
        CalendarEventRead(
            id=event.id,
            subject=event.subject,
            start=event.start,
            end=event.end,
            show_as=event.show_as,
            location=event.location,
        )
        for event in events
    ]


# =============================================================================
# Sync
# =============================================================================

@sync_router.post(
    "/poll",
    response_model=ReconcileResponse,
    dependencies=[Depends(verify_internal_secret)],
)
async def poll_outlook(
    loop: ReconciliationLoop = Depends(get_reconciliation_loop),
):
    """Run one reconciliation tick now (cron or operator trigger)."""
    report = await loop.tick()
    return ReconcileResponse(**report.as_dict())


@sync_router.post("/webhook")
async def outlook_webhook(
    request: Request,
    background_tasks: BackgroundTasks,
    validation_token: str | None = Query(None, alias="validationToken"),
    loop: ReconciliationLoop = Depends(get_reconciliation_loop),
):
    """
    Graph change notifications.

    Subscription validation echoes ``validationToken`` as text/plain;
    notifications schedule a reconciliation tick and return 202.
    """
    if validation_token is not None:
        return PlainTextResponse(validation_token, status_code=200)

    try:
        payload = await request.json()
    except ValueError:
        raise HTTPException(status_code=400, detail="Invalid JSON")

    notifications = payload.get("value") if isinstance(payload, dict) else None
    if not isinstance(notifications, list):
        raise HTTPException(status_code=400, detail="Missing notifications")

    expected = settings.GRAPH_WEBHOOK_CLIENT_STATE
    if expected:
        for item in notifications:
            client_state = item.get("clientState") if isinstance(item, dict) else None
            if not client_state or not secrets.compare_digest(client_state, expected):
                logger.warning("Graph notification with unexpected clientState")
                raise HTTPException(status_code=403, detail="Invalid clientState")

    if notifications:
        background_tasks.add_task(loop.tick)
    return Response(status_code=202)
