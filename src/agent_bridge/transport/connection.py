"""Connection manager for one persistent WebSocket to the completion service.

Lifecycle::

    DISCONNECTED --acquire()--> CONNECTING --open--> OPEN --request()--> BUSY
         ^                          |                  ^                  |
         +------- failure ----------+                  +---- terminal ----+
         +------------------- peer close / aclose() / timeout ------------+

- ``acquire()`` connects lazily.  Concurrent callers share one pending
  attempt; if it fails every waiter gets the error and the state resets so
  the next call starts a fresh attempt.
- ``request()`` serializes requests strictly FIFO: at most one response is
  in flight per connection.  It never sends an anchor produced on an
  earlier connection.
- The service may close an aged connection at any time.  That is expected:
  the next ``acquire()`` reconnects and bumps :attr:`generation`, which is
  how sessions notice their continuation anchors went stale.
"""

from __future__ import annotations

import asyncio
import enum
import json
import logging
from contextlib import asynccontextmanager
from typing import Any, AsyncIterator, Awaitable, Callable

from websockets.asyncio.client import connect
from websockets.exceptions import ConnectionClosed, WebSocketException
from websockets.protocol import State

from agent_bridge.core.abort import TurnAborted, race
from agent_bridge.errors import (
    AnchorNotFoundError,
    BridgeConnectionError,
    FrameTimeoutError,
    ProtocolError,
    TransportClosedError,
)
from agent_bridge.events.bus import EventBus
from agent_bridge.protocol.wire import decode_ws_message, is_terminal_frame
from agent_bridge.types import EventType

_logger = logging.getLogger(__name__)

Connector = Callable[..., Awaitable[Any]]


class ConnectionState(enum.Enum):
    DISCONNECTED = "disconnected"
    CONNECTING = "connecting"
    OPEN = "open"
    BUSY = "busy"
    CLOSING = "closing"


class _Subscription:
    """Frames of one in-flight response, read straight off the socket."""

    def __init__(self, manager: ConnectionManager, ws: Any) -> None:
        self._manager = manager
        self._ws = ws
        self.finished = False

    async def frames(self) -> AsyncIterator[dict[str, Any]]:
        while True:
            raw = await self._manager._receive(self._ws)
            try:
                frame = decode_ws_message(raw)
            except ProtocolError as e:
                _logger.warning("Dropping malformed frame: %s", e)
                continue
            if is_terminal_frame(frame):
                self.finished = True
                yield frame
                return
            yield frame


class ConnectionManager:
    """Owns one lazily opened WebSocket and serializes requests over it.

    Parameters
    ----------
    url:
        WebSocket endpoint.
    headers:
        Handshake headers (authorization, beta opt-in).
    frame_timeout:
        Longest wait for any inbound frame while a response is in flight.
    drain_timeout:
        Longest wait for an abandoned response to finish before the
        connection is replaced instead.
    connector:
        Coroutine function opening the socket; ``websockets`` by default.
    """

    def __init__(
        self,
        url: str,
        headers: dict[str, str] | None = None,
        connect_timeout: float = 30.0,
        frame_timeout: float = 120.0,
        drain_timeout: float = 10.0,
        ping_interval: float | None = 30.0,
        ping_timeout: float | None = 10.0,
        event_bus: EventBus | None = None,
        connector: Connector | None = None,
    ) -> None:
        self._url = url
        self._headers = dict(headers or {})
        self._connect_timeout = connect_timeout
        self._frame_timeout = frame_timeout
        self._drain_timeout = drain_timeout
        self._ping_interval = ping_interval
        self._ping_timeout = ping_timeout
        self._event_bus = event_bus
        self._connector = connector or connect

        self._ws: Any = None
        self._state = ConnectionState.DISCONNECTED
        self._connecting: asyncio.Task | None = None
        self._lock = asyncio.Lock()
        self._generation = 0
        self._abandoned = False

    # ------------------------------------------------------------------
    # Introspection
    # ------------------------------------------------------------------

    @property
    def state(self) -> ConnectionState:
        return self._state

    @property
    def generation(self) -> int:
        """Incremented every time a new physical connection opens."""
        return self._generation

    def is_current(self, generation: int | None) -> bool:
        """True if *generation* is the live connection's generation."""
        return generation == self._generation and self._is_open()

    def _is_open(self) -> bool:
        return self._ws is not None and self._ws.state is State.OPEN

    # ------------------------------------------------------------------
    # Connection lifecycle
    # ------------------------------------------------------------------

    async def acquire(self) -> Any:
        """Return an open connection, connecting if necessary."""
        if self._is_open():
            return self._ws

        if self._ws is not None:
            _logger.info("Connection to %s was closed by the peer; reconnecting", self._url)
            await self._discard("closed by peer")

        if self._connecting is None:
            self._state = ConnectionState.CONNECTING
            self._connecting = asyncio.create_task(self._open())
        # Shielded so one cancelled waiter does not abort the shared attempt
        return await asyncio.shield(self._connecting)

    async def _open(self) -> Any:
        _logger.info("Connecting to %s", self._url)
        try:
            ws = await self._connector(
                self._url,
                additional_headers=self._headers,
                open_timeout=self._connect_timeout,
                ping_interval=self._ping_interval,
                ping_timeout=self._ping_timeout,
            )
        except (WebSocketException, OSError, asyncio.TimeoutError) as e:
            self._state = ConnectionState.DISCONNECTED
            _logger.warning("Connection to %s failed: %s", self._url, e)
            raise BridgeConnectionError(f"Could not connect to {self._url}: {e}") from e
        finally:
            self._connecting = None

        self._ws = ws
        self._generation += 1
        self._abandoned = False
        self._state = ConnectionState.OPEN
        await self._publish(EventType.CONNECTION_OPENED, generation=self._generation)
        return ws

    async def aclose(self) -> None:
        """Close the connection; any in-flight response fails with TransportClosedError."""
        if self._connecting is not None:
            self._connecting.cancel()
            self._connecting = None
        ws = self._ws
        if ws is None:
            self._state = ConnectionState.DISCONNECTED
            return
        self._state = ConnectionState.CLOSING
        try:
            await ws.close()
        finally:
            await self._discard("closed by client")

    async def _discard(self, reason: str) -> None:
        """Forget the current socket.  The next acquire() opens a new one."""
        if self._ws is None:
            return
        ws, self._ws = self._ws, None
        self._state = ConnectionState.DISCONNECTED
        self._abandoned = False
        if ws.state is not State.CLOSED:
            await ws.close()
        await self._publish(
            EventType.CONNECTION_CLOSED, generation=self._generation, reason=reason,
        )

    # ------------------------------------------------------------------
    # Requests
    # ------------------------------------------------------------------

    @asynccontextmanager
    async def request(
        self,
        payload: dict[str, Any],
        abort: asyncio.Event | None = None,
        anchor_generation: int | None = None,
    ) -> AsyncIterator[AsyncIterator[dict[str, Any]]]:
        """Send *payload* and yield the response's frames.

        Usage::

            async with manager.request(payload, abort) as frames:
                async for frame in frames:
                    ...

        Waiting for the lock or the connection gives way to *abort*, and
        *abort* is checked once more before sending, so an aborted request
        never reaches the service.  If *payload* continues from a previous
        response, *anchor_generation* is the generation that response was
        produced on; when the connection about to be used is a different
        one, :class:`AnchorNotFoundError` is raised instead of sending.

        The subscription ends when the block exits, on every path.  Leaving
        before the terminal frame marks the response as abandoned; the next
        request drains it first so the connection stays reusable.
        """
        await race(self._lock.acquire(), abort)
        try:
            ws = await race(self.acquire(), abort)
            if self._abandoned:
                ws = await self._drain(ws)
            if abort is not None and abort.is_set():
                raise TurnAborted()

            anchor_id = payload.get("previous_response_id")
            if anchor_id and anchor_generation not in (None, self._generation):
                _logger.info(
                    "Anchor %s belongs to connection %s, now on %d",
                    anchor_id, anchor_generation, self._generation,
                )
                raise AnchorNotFoundError(anchor_id, reason="connection replaced")

            subscription = _Subscription(self, ws)
            frames = subscription.frames()
            self._state = ConnectionState.BUSY
            try:
                try:
                    await ws.send(json.dumps(payload))
                except ConnectionClosed as e:
                    await self._discard("closed during send")
                    raise TransportClosedError(f"Connection closed before send: {e}") from e
                yield frames
            finally:
                await frames.aclose()
                if self._ws is ws:
                    if not subscription.finished and self._is_open():
                        _logger.info("Response abandoned before completion; will drain")
                        self._abandoned = True
                    if self._state is ConnectionState.BUSY:
                        self._state = ConnectionState.OPEN
        finally:
            self._lock.release()

    async def _receive(self, ws: Any) -> str | bytes:
        try:
            return await asyncio.wait_for(ws.recv(), self._frame_timeout)
        except asyncio.TimeoutError as e:
            _logger.warning("No frame within %.1fs; dropping connection", self._frame_timeout)
            await self._discard("frame timeout")
            raise FrameTimeoutError(
                f"No frame received within {self._frame_timeout:.0f}s"
            ) from e
        except ConnectionClosed as e:
            await self._discard("closed while awaiting response")
            raise TransportClosedError(f"Connection closed while awaiting response: {e}") from e

    async def _drain(self, ws: Any) -> Any:
        """Read off the rest of an abandoned response."""

        async def _until_terminal() -> int:
            dropped = 0
            while True:
                raw = await ws.recv()
                dropped += 1
                try:
                    if is_terminal_frame(decode_ws_message(raw)):
                        return dropped
                except ProtocolError:
                    continue

        try:
            dropped = await asyncio.wait_for(_until_terminal(), self._drain_timeout)
        except (asyncio.TimeoutError, ConnectionClosed):
            _logger.warning("Abandoned response did not finish; replacing connection")
            await self._discard("drain failed")
            return await self.acquire()
        _logger.debug("Drained %d frames of an abandoned response", dropped)
        self._abandoned = False
        return ws

    async def _publish(self, event_type: EventType, **data: Any) -> None:
        if self._event_bus:
            await self._event_bus.publish(event_type, url=self._url, **data)
