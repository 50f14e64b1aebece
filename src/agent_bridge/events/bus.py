"""Async pub/sub EventBus carrying bridge lifecycle events.

The connection manager, the session coordinator, the tool executor and the
tool-call loop publish here.  Observers either subscribe (the CLI's event
log) or read the bounded :attr:`EventBus.history` afterwards.
"""

from __future__ import annotations

import asyncio
import inspect
import logging
from collections import deque
from typing import Any, Callable

from agent_bridge.types import AgentEvent, EventType

_logger = logging.getLogger(__name__)

# Subscription key for handlers that receive every event
WILDCARD = "*"

Handler = Callable[[AgentEvent], Any]


class EventBus:
    """Fans bridge events out to subscribers and keeps the latest ones.

    Handlers subscribe to one :class:`EventType` or to :data:`WILDCARD`.
    They may be sync or async.  A handler that raises is logged and the
    others still run, so observers can never break a turn.
    """

    def __init__(self, max_history: int = 200) -> None:
        self._handlers: dict[EventType | str, list[Handler]] = {}
        self._history: deque[AgentEvent] = deque(maxlen=max_history)

    def subscribe(self, event_type: EventType | str, handler: Handler) -> None:
        """Register *handler* for *event_type* (or ``"*"`` for all)."""
        if event_type != WILDCARD and not isinstance(event_type, EventType):
            raise ValueError(f"Unknown event type: {event_type!r}")
        self._handlers.setdefault(event_type, []).append(handler)

    async def publish(self, event_type: EventType, **data: Any) -> AgentEvent:
        """Record an event and deliver it to matching handlers concurrently."""
        event = AgentEvent(type=event_type, data=data)
        self._history.append(event)

        handlers = [*self._handlers.get(event_type, ()), *self._handlers.get(WILDCARD, ())]
        if handlers:
            await asyncio.gather(*(self._deliver(h, event) for h in handlers))
        return event

    @property
    def history(self) -> list[AgentEvent]:
        """Recorded events, oldest first."""
        return list(self._history)

    def events(self, *event_types: EventType) -> list[AgentEvent]:
        """Recorded events of the given types, oldest first."""
        return [e for e in self._history if e.type in event_types]

    # ------------------------------------------------------------------
    # Internals
    # ------------------------------------------------------------------

    @staticmethod
    async def _deliver(handler: Handler, event: AgentEvent) -> None:
        try:
            result = handler(event)
            if inspect.isawaitable(result):
                await result
        except Exception:
            _logger.exception(
                "EventBus handler %s raised for event %s",
                getattr(handler, "__name__", handler),
                event.type.value,
            )
