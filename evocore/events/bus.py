"""Event Bus — ordered, in-process notification of what the core did.

Topics are dotted ``<subsystem>.<what>`` names: "task.executing",
"agent.status_changed", "trigger.dropped", "harmony.evaluated". A
subscription pattern may use shell wildcards, so "task.*" receives every
task event and "*" receives everything.

Delivery is sequential, in subscription order, and finished before
``emit`` returns; a subscriber sees events in the order the core produced
them. Subsystems release their locks before emitting, so a subscriber may
call straight back into the core. A subscriber that raises is logged and
skipped.
"""

from __future__ import annotations

import fnmatch
import logging
from collections import deque
from datetime import datetime
from typing import Any, Awaitable, Callable

from pydantic import BaseModel, Field

from evocore.types import new_id, utcnow

_logger = logging.getLogger(__name__)

EventHandler = Callable[["Event"], Awaitable[None]]


class Event(BaseModel):
    """Something a subsystem did."""

    id: str = Field(default_factory=new_id)
    topic: str
    data: dict[str, Any] = Field(default_factory=dict)
    source: str = ""
    timestamp: datetime = Field(default_factory=utcnow)


class EventBus:
    def __init__(self, history_limit: int = 500) -> None:
        self._subscriptions: list[tuple[str, EventHandler]] = []
        self._history: deque[Event] = deque(maxlen=history_limit)

    def subscribe(self, pattern: str, handler: EventHandler) -> None:
        self._subscriptions.append((pattern, handler))

    async def emit(
        self, topic: str, data: dict[str, Any] | None = None, source: str = ""
    ) -> Event:
        """Record an event and hand it to each matching subscriber in turn."""
        event = Event(topic=topic, data=dict(data or {}), source=source)
        self._history.append(event)

        # Subscriptions added by a handler take effect from the next event.
        for pattern, handler in list(self._subscriptions):
            if not fnmatch.fnmatchcase(topic, pattern):
                continue
            try:
                await handler(event)
            except Exception:
                _logger.exception(
                    "Subscriber %s failed on %s from %s",
                    getattr(handler, "__qualname__", repr(handler)),
                    topic,
                    source or "unknown",
                )
        return event

    def history(self, pattern: str = "*", limit: int = 50) -> list[Event]:
        """Retained events matching a topic pattern, newest first."""
        matching = [e for e in self._history if fnmatch.fnmatchcase(e.topic, pattern)]
        return matching[::-1][:limit]
