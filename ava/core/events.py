"""
In-process notification topic for dashboard fan-out.

Publishers never wait on subscribers: every subscriber owns a bounded
queue and, when it is full, the oldest queued message is dropped.
"""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass, field
from typing import Any

from ava.core.config import settings

logger = logging.getLogger(__name__)


@dataclass(eq=False)
class Subscription:
    """One subscriber's bounded mailbox."""

    queue: asyncio.Queue
    dropped: int = 0
    _bus: "EventBus | None" = field(default=None, repr=False)

    async def get(self) -> dict[str, Any]:
        return await self.queue.get()

    def close(self) -> None:
        if self._bus is not None:
            self._bus.unsubscribe(self)
            self._bus = None


class EventBus:
    """Process-wide pub/sub topic with drop-oldest backpressure."""

    def __init__(self, default_maxsize: int = 100):
        self._default_maxsize = default_maxsize
        self._subscribers: set[Subscription] = set()

    @property
    def subscriber_count(self) -> int:
        return len(self._subscribers)

    def subscribe(self, maxsize: int | None = None) -> Subscription:
        size = maxsize or self._default_maxsize
        subscription = Subscription(queue=asyncio.Queue(maxsize=size), _bus=self)
        self._subscribers.add(subscription)
        return subscription

    def unsubscribe(self, subscription: Subscription) -> None:
        self._subscribers.discard(subscription)

    def publish(self, event_type: str, data: dict[str, Any]) -> int:
        """Deliver to every subscriber without blocking. Returns deliveries."""
        message = {"type": event_type, "data": data}
        delivered = 0
        for subscription in list(self._subscribers):
            queue = subscription.queue
            if queue.full():
                try:
                    queue.get_nowait()
                except asyncio.QueueEmpty:
                    pass
                subscription.dropped += 1
            try:
                queue.put_nowait(message)
                delivered += 1
            except asyncio.QueueFull:
                subscription.dropped += 1
        logger.debug("Published %s to %d subscriber(s)", event_type, delivered)
        return delivered


event_bus = EventBus(default_maxsize=settings.SSE_QUEUE_SIZE)


def booking_payload(booking) -> dict[str, Any]:
    """Wire shape of a booking on the notification topic."""
    return {
        "id": booking.id,
        "property_id": booking.property_id,
        "lead_id": booking.lead_id,
        "slot_start": booking.slot_start.isoformat(),
        "status": booking.status,
        "source": booking.source,
        "external_event_id": booking.external_event_id,
    }
