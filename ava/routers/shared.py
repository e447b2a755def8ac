"""Helpers shared by routers: result and error translation."""

from fastapi import HTTPException

from ava.services.booking_coordinator import (
    BookingConflict,
    BookingOk,
    BookingResult,
    CalendarDegraded,
    MirrorFailed,
    PastTime,
    UnknownLead,
    UnknownProperty,
)
from ava.services.calendar_connector import (
    AuthExpiredError,
    CalendarError,
    CalendarNotConnectedError,
    RateLimitedError,
    UpstreamError,
)


def calendar_http_error(exc: CalendarError) -> HTTPException:
    """Map a calendar failure to the HTTP error the dashboard expects."""
    if isinstance(exc, AuthExpiredError):
        return HTTPException(status_code=401, detail={"code": exc.code, "message": str(exc)})
    if isinstance(exc, CalendarNotConnectedError):
        return HTTPException(status_code=409, detail={"code": exc.code, "message": str(exc)})
    if isinstance(exc, RateLimitedError):
        return HTTPException(status_code=429, detail={"code": exc.code, "message": str(exc)})
    if isinstance(exc, UpstreamError):
        return HTTPException(
            status_code=502,
            detail={"code": exc.code, "message": exc.message, "upstream_status": exc.status_code},
        )
    return HTTPException(status_code=502, detail={"code": exc.code, "message": str(exc)})


def booking_result_error(result: BookingResult) -> HTTPException | None:
    """Return the HTTP error for a non-Ok booking outcome (None for Ok)."""
    if isinstance(result, BookingOk):
        return None
    if isinstance(result, BookingConflict):
        return HTTPException(
            status_code=409,
            detail={
                "code": "CONFLICT",
                "message": "That time is not available",
                "suggestions": [slot.isoformat() for slot in result.suggestions],
                "degraded": result.degraded,
            },
        )
    if isinstance(result, PastTime):
        return HTTPException(
            status_code=422,
            detail={"code": "PAST_TIME", "slot_start": result.slot_start.isoformat()},
        )
    if isinstance(result, UnknownProperty):
        return HTTPException(
            status_code=404,
            detail={"code": "UNKNOWN_PROPERTY", "message": f"Property '{result.slug}' not found"},
        )
    if isinstance(result, UnknownLead):
        return HTTPException(
            status_code=404, detail={"code": "UNKNOWN_LEAD", "message": result.reason}
        )
    if isinstance(result, CalendarDegraded):
        return HTTPException(
            status_code=503,
            detail={
                "code": "DEGRADED",
                "message": "Calendar unavailable, try again shortly",
                "reason": result.reason,
            },
        )
    if isinstance(result, MirrorFailed):
        return HTTPException(
            status_code=502,
            detail={
                "code": "UPSTREAM_ERROR",
                "message": result.detail,
                "booking_id": result.booking_id,
                "calendar_error": result.error_code,
                "upstream_status": result.status_code,
            },
        )
    return HTTPException(status_code=500, detail="Unhandled booking outcome")
