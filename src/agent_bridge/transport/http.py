"""Direct request/response backend: one streamed HTTP POST per step.

Every step pays for its own request setup, which is what the persistent
WebSocket backend avoids.  Continuation anchors still work over HTTP as
long as the service stores responses, so this backend never invalidates
them on its own.
"""

from __future__ import annotations

import asyncio
import json
import logging
from contextlib import asynccontextmanager
from typing import Any, AsyncIterator

import httpx

from agent_bridge.config import BridgeConfig, ProfileSpec
from agent_bridge.core.abort import TurnAborted
from agent_bridge.errors import BridgeConnectionError, FrameTimeoutError
from agent_bridge.events.bus import EventBus
from agent_bridge.protocol.wire import SSEDecoder
from agent_bridge.tools.registry import ToolRegistry
from agent_bridge.transport.base import ChatTransport

_logger = logging.getLogger(__name__)

# Retry configuration
_MAX_RETRIES = 3
_BACKOFF_BASE = 1  # seconds -- exponential: 1, 2, 4
_RETRYABLE_STATUSES = (429, 500, 502, 503, 504)


def _error_frame(status: int, body: bytes) -> dict[str, Any]:
    """An ``error`` frame built from a failed response's body.

    The service reports a stale ``previous_response_id`` as an HTTP 400
    with the same error object it sends over the WebSocket, so building a
    frame from it lets the loop classify both transports identically.
    """
    error: dict[str, Any] = {}
    try:
        data = json.loads(body)
    except (json.JSONDecodeError, UnicodeDecodeError):
        data = None
    if isinstance(data, dict) and isinstance(data.get("error"), dict):
        error = dict(data["error"])
    elif body:
        error = {"message": body.decode("utf-8", errors="replace")[:500]}
    if not error.get("message"):
        error["message"] = f"HTTP {status}"
    error.setdefault("status", status)
    return {"type": "error", "error": error}


class HttpBackend:
    """Streams ``POST /responses`` with ``stream: true`` per request."""

    generation = 0

    def __init__(
        self,
        profile: ProfileSpec,
        timeout: float = 120,
        connect_timeout: float = 30,
        frame_timeout: float = 120,
        client: httpx.AsyncClient | None = None,
    ) -> None:
        self.profile = profile
        headers = {
            "Authorization": f"Bearer {profile.resolved_api_key()}",
            "Content-Type": "application/json",
        }
        self._client = client or httpx.AsyncClient(
            base_url=profile.url,
            headers=headers,
            timeout=httpx.Timeout(timeout, connect=connect_timeout, read=frame_timeout),
        )
        self._frame_timeout = frame_timeout

    def is_current(self, generation: int | None) -> bool:
        # Responses live on the service, not on a connection
        return True

    @asynccontextmanager
    async def request(
        self,
        payload: dict[str, Any],
        abort: asyncio.Event | None = None,
        anchor_generation: int | None = None,
    ) -> AsyncIterator[AsyncIterator[dict[str, Any]]]:
        # Anchors outlive HTTP connections, so anchor_generation is not checked
        if abort is not None and abort.is_set():
            raise TurnAborted()
        body = {k: v for k, v in payload.items() if k != "type"}
        body["stream"] = True
        frames = self._stream(body)
        try:
            yield frames
        finally:
            await frames.aclose()

    async def _stream(self, body: dict[str, Any]) -> AsyncIterator[dict[str, Any]]:
        received = False

        for attempt in range(_MAX_RETRIES):
            last_attempt = attempt == _MAX_RETRIES - 1
            try:
                async with self._client.stream("POST", "/responses", json=body) as resp:
                    if resp.status_code in _RETRYABLE_STATUSES and not last_attempt:
                        _logger.warning(
                            "Responses API returned %d (attempt %d/%d), retrying...",
                            resp.status_code, attempt + 1, _MAX_RETRIES,
                        )
                    elif resp.status_code >= 400:
                        content = await resp.aread()
                        _logger.warning("Responses API returned %d", resp.status_code)
                        yield _error_frame(resp.status_code, content)
                        return
                    else:
                        decoder = SSEDecoder()
                        async for line in resp.aiter_lines():
                            for frame in decoder.feed(line):
                                received = True
                                yield frame
                        for frame in decoder.flush():
                            yield frame
                        return
            except httpx.TimeoutException as e:
                if received or last_attempt:
                    raise FrameTimeoutError(
                        f"No data from {self.profile.url} within {self._frame_timeout:.0f}s"
                    ) from e
                _logger.warning(
                    "Responses API timeout (attempt %d/%d): %s",
                    attempt + 1, _MAX_RETRIES, e,
                )
            except httpx.TransportError as e:
                if received or last_attempt:
                    raise BridgeConnectionError(
                        f"Request to {self.profile.url} failed: {e}"
                    ) from e
                _logger.warning(
                    "Responses API error (attempt %d/%d): %s",
                    attempt + 1, _MAX_RETRIES, e,
                )
            await asyncio.sleep(_BACKOFF_BASE * (2 ** attempt))

    async def aclose(self) -> None:
        """Close the underlying HTTP client."""
        await self._client.aclose()


class HttpChatTransport(ChatTransport):
    """Chat transport that opens a fresh HTTP request for every step."""

    def __init__(
        self,
        config: BridgeConfig,
        registry: ToolRegistry,
        session_id: str = "default",
        event_bus: EventBus | None = None,
        client: httpx.AsyncClient | None = None,
    ) -> None:
        backend = HttpBackend(
            config.active_profile,
            connect_timeout=config.connect_timeout,
            frame_timeout=config.frame_timeout,
            client=client,
        )
        super().__init__(backend, config, registry, session_id=session_id, event_bus=event_bus)
