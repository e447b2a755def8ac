"""HTTP helpers with retry/backoff for integrations."""

from __future__ import annotations

import asyncio
import logging
import random
from typing import Awaitable, Callable

import httpx

logger = logging.getLogger(__name__)

DEFAULT_RETRY_STATUSES = {429, 500, 502, 503, 504}


async def request_with_retries(
    request_fn: Callable[[], Awaitable[httpx.Response]],
    *,
    max_attempts: int = 3,
    base_delay: float = 0.5,
    max_delay: float = 4.0,
    retry_statuses: set[int] | None = None,
    retry_request_errors: bool = True,
    jitter: bool = True,
) -> httpx.Response:
    """Execute an HTTP request with exponential backoff retries.

    The last response is returned even when its status is retryable, so
    callers decide how to surface it.
    """
    statuses = DEFAULT_RETRY_STATUSES if retry_statuses is None else retry_statuses

    def _delay(attempt: int) -> float:
        delay = min(max_delay, base_delay * (2**attempt))
        if delay and jitter:
            delay = delay + random.uniform(0, delay / 2)
        return delay

    for attempt in range(max_attempts):
        try:
            response = await request_fn()
        except httpx.RequestError as exc:
            if not retry_request_errors or attempt >= max_attempts - 1:
                raise
            delay = _delay(attempt)
            logger.warning("HTTP request failed, retrying", exc_info=exc)
            if delay:
                await asyncio.sleep(delay)
            continue

        if response.status_code in statuses and attempt < max_attempts - 1:
            delay = _delay(attempt)
            logger.warning(
                "HTTP request returned %s, retrying", response.status_code
            )
            if delay:
                await asyncio.sleep(delay)
            continue

        return response

    return response
