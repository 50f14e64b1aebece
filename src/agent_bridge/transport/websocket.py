"""Persistent-connection backend over one managed WebSocket."""

from __future__ import annotations

import asyncio
from contextlib import AbstractAsyncContextManager
from typing import Any, AsyncIterator

from agent_bridge.config import BridgeConfig, ProfileSpec
from agent_bridge.events.bus import EventBus
from agent_bridge.tools.registry import ToolRegistry
from agent_bridge.transport.base import ChatTransport
from agent_bridge.transport.connection import ConnectionManager, Connector


def service_headers(profile: ProfileSpec) -> dict[str, str]:
    """Handshake headers: bearer token plus the beta opt-in, if any."""
    headers = {"Authorization": f"Bearer {profile.resolved_api_key()}"}
    if profile.beta_header:
        headers["OpenAI-Beta"] = profile.beta_header
    return headers


class WebSocketBackend:
    """Sends every request over the same connection, reconnecting lazily."""

    def __init__(
        self,
        profile: ProfileSpec,
        config: BridgeConfig,
        event_bus: EventBus | None = None,
        connector: Connector | None = None,
    ) -> None:
        self.connection = ConnectionManager(
            profile.ws_url,
            headers=service_headers(profile),
            connect_timeout=config.connect_timeout,
            frame_timeout=config.frame_timeout,
            drain_timeout=config.drain_timeout,
            ping_interval=config.ping_interval,
            ping_timeout=config.ping_timeout,
            event_bus=event_bus,
            connector=connector,
        )

    @property
    def generation(self) -> int:
        return self.connection.generation

    def is_current(self, generation: int | None) -> bool:
        return self.connection.is_current(generation)

    def request(
        self,
        payload: dict[str, Any],
        abort: asyncio.Event | None = None,
        anchor_generation: int | None = None,
    ) -> AbstractAsyncContextManager[AsyncIterator[dict[str, Any]]]:
        return self.connection.request(payload, abort, anchor_generation)

    async def aclose(self) -> None:
        await self.connection.aclose()


class WebSocketChatTransport(ChatTransport):
    """Chat transport that keeps one WebSocket open across turns."""

    def __init__(
        self,
        config: BridgeConfig,
        registry: ToolRegistry,
        session_id: str = "default",
        event_bus: EventBus | None = None,
        connector: Connector | None = None,
    ) -> None:
        backend = WebSocketBackend(
            config.active_profile, config, event_bus=event_bus, connector=connector,
        )
        super().__init__(backend, config, registry, session_id=session_id, event_bus=event_bus)
