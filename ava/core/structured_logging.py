"""Structured logging helpers (PII-safe)."""

from typing import Any


def mask_phone(phone: str | None) -> str:
    """Keep only the last four digits of a phone number."""
    if not phone:
        return ""
    digits = "".join(ch for ch in phone if ch.isdigit())
    return f"***{digits[-4:]}" if digits else "***"


def build_log_context(
    *,
    booking_id: int | None = None,
    property_id: int | None = None,
    lead_id: int | None = None,
    event_id: str | None = None,
    tick_id: str | None = None,
) -> dict[str, Any]:
    """Return a PII-safe log context dict."""
    context: dict[str, Any] = {}
    if booking_id is not None:
        context["booking_id"] = booking_id
    if property_id is not None:
        context["property_id"] = property_id
    if lead_id is not None:
        context["lead_id"] = lead_id
    if event_id:
        context["event_id"] = event_id
    if tick_id:
        context["tick_id"] = tick_id
    return context
