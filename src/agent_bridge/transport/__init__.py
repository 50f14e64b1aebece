"""Chat transports: persistent WebSocket and per-step HTTP."""

from __future__ import annotations

import logging

from agent_bridge.config import BridgeConfig
from agent_bridge.events.bus import EventBus
from agent_bridge.tools.registry import ToolRegistry
from agent_bridge.transport.base import ChatTransport
from agent_bridge.transport.http import HttpBackend, HttpChatTransport
from agent_bridge.transport.websocket import WebSocketBackend, WebSocketChatTransport

_logger = logging.getLogger(__name__)

__all__ = [
    "ChatTransport",
    "HttpBackend",
    "HttpChatTransport",
    "WebSocketBackend",
    "WebSocketChatTransport",
    "build_transport",
]


def build_transport(
    config: BridgeConfig,
    registry: ToolRegistry,
    session_id: str = "default",
    event_bus: EventBus | None = None,
) -> ChatTransport:
    """Construct the transport named by ``config.transport``."""
    _logger.debug("Using %s transport for session %s", config.transport, session_id)
    if config.transport == "http":
        return HttpChatTransport(config, registry, session_id=session_id, event_bus=event_bus)
    if config.transport == "websocket":
        return WebSocketChatTransport(config, registry, session_id=session_id, event_bus=event_bus)
    raise ValueError(f"Unknown transport: {config.transport!r}")
