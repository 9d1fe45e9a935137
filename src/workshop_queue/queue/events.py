from __future__ import annotations

import asyncio
from collections.abc import Awaitable, Callable
from typing import Any

from workshop_queue.ops import metrics
from workshop_queue.utils.log import logger

Handler = Callable[[dict[str, Any]], "Awaitable[None] | None"]

ENTRY_ADDED = "entry.added"
ENTRY_CALLED = "entry.called"
ENTRY_STARTED = "entry.started"
ENTRY_COMPLETED = "entry.completed"
ENTRY_CANCELLED = "entry.cancelled"
ENTRY_EXPIRED = "entry.expired"
QUEUE_OPENED = "queue.opened"
QUEUE_CLOSED = "queue.closed"
QUEUE_HOURS_UPDATED = "queue.hours_updated"

ALL = "*"


class EventBus:
    """
    In-process pub/sub for queue domain events.

    Subscribers register for one event type or for "*". A failing subscriber is
    logged and counted; it does not stop delivery to the others and never turns
    a committed queue operation into a failure.
    """

    def __init__(self) -> None:
        self._handlers: dict[str, list[Handler]] = {}

    def subscribe(self, event_type: str, handler: Handler) -> Callable[[], None]:
        self._handlers.setdefault(str(event_type), []).append(handler)

        def _unsubscribe() -> None:
            items = self._handlers.get(str(event_type), [])
            if handler in items:
                items.remove(handler)

        return _unsubscribe

    def handler_count(self, event_type: str | None = None) -> int:
        if event_type is None:
            return sum(len(v) for v in self._handlers.values())
        return len(self._handlers.get(str(event_type), []))

    async def emit(self, event_type: str, payload: dict[str, Any]) -> None:
        event = dict(payload)
        event["type"] = str(event_type)
        metrics.events_emitted.labels(type=str(event_type)).inc()
        handlers = list(self._handlers.get(str(event_type), [])) + list(
            self._handlers.get(ALL, [])
        )
        for h in handlers:
            try:
                res = h(event)
                if asyncio.iscoroutine(res):
                    await res
            except Exception:
                metrics.event_handler_errors.labels(type=str(event_type)).inc()
                logger.exception("event_handler_failed", event_type=str(event_type))
