"""Caller-facing transport contract shared by both backends.

A transport takes the caller's full message list plus an optional abort
signal and returns a lazy, finite chunk sequence that ends with exactly
one ``finish`` or ``error`` chunk (or stops early when aborted).
"""

from __future__ import annotations

import asyncio
import logging
from contextlib import aclosing
from typing import Any, AsyncIterator, Iterable

from agent_bridge.config import BridgeConfig
from agent_bridge.core.executor import Executor
from agent_bridge.core.loop import ResponseBackend, ToolCallLoop
from agent_bridge.core.session import Session, SessionCoordinator
from agent_bridge.events.bus import EventBus
from agent_bridge.protocol.request import to_message
from agent_bridge.tools.registry import ToolRegistry
from agent_bridge.types import ChatMessage, Chunk

_logger = logging.getLogger(__name__)

__all__ = ["ChatTransport", "ResponseBackend"]


class ChatTransport:
    """One logical session over one backend.

    Usage::

        transport = WebSocketChatTransport(config, registry)
        async for chunk in transport.send_messages(messages):
            ...
        await transport.aclose()

    Turns on the same transport are serialized; concurrent logical
    sessions should each use their own transport (and so their own
    connection).
    """

    def __init__(
        self,
        backend: ResponseBackend,
        config: BridgeConfig,
        registry: ToolRegistry,
        session_id: str = "default",
        coordinator: SessionCoordinator | None = None,
        event_bus: EventBus | None = None,
    ) -> None:
        self._backend = backend
        self._config = config
        self._registry = registry
        self._session_id = session_id
        self._event_bus = event_bus
        self._coordinator = coordinator or SessionCoordinator(config.max_steps, event_bus)
        self._executor = Executor(registry, config.max_tool_output, event_bus)
        self._closed = False

    @property
    def backend(self) -> ResponseBackend:
        return self._backend

    @property
    def session(self) -> Session:
        return self._coordinator.get(self._session_id)

    def _request_extra(self) -> dict[str, Any]:
        extra = dict(self._config.active_profile.extra_params)
        if self._config.store is not None:
            extra["store"] = self._config.store
        return extra

    def _build_loop(self) -> ToolCallLoop:
        return ToolCallLoop(
            self._backend,
            self._executor,
            self._coordinator,
            model=self._config.active_profile.model,
            instructions=self._config.instructions,
            tools=self._registry.get_schemas(),
            extra=self._request_extra(),
            event_bus=self._event_bus,
        )

    async def send_messages(
        self,
        messages: Iterable[ChatMessage | dict[str, Any]],
        abort_signal: asyncio.Event | None = None,
    ) -> AsyncIterator[Chunk]:
        """Run one caller turn over the full conversation *messages*."""
        if self._closed:
            raise RuntimeError("Transport is closed")
        history = [to_message(m) for m in messages]
        session = self.session

        async with session.turn_lock:
            plan = await self._coordinator.plan_turn(session, history, self._backend)
            async with aclosing(self._build_loop().run(session, plan, abort_signal)) as chunks:
                async for chunk in chunks:
                    yield chunk

    async def aclose(self) -> None:
        """Close the backend.  Safe to call more than once."""
        if self._closed:
            return
        self._closed = True
        _logger.debug("Closing transport for session %s", self._session_id)
        await self._backend.aclose()
