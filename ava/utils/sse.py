"""Server-sent events helpers."""

from __future__ import annotations

import json
from typing import Any


def format_sse(event_type: str, data: dict[str, Any]) -> str:
    """Format a single SSE event payload."""
    return f"event: {event_type}\ndata: {json.dumps(data, default=str)}\n\n"


def format_sse_comment(comment: str = "ping") -> str:
    """Format a comment event (used as heartbeat)."""
    return f": {comment}\n\n"


STREAM_HEADERS = {
    "Cache-Control": "no-cache, no-transform",
    "Content-Encoding": "identity",
    "Connection": "keep-alive",
    "X-Accel-Buffering": "no",
}
