"""Decoding of the two streaming wire shapes into ``StreamEvent`` objects.

Over HTTP the service streams Server-Sent Events (``data: <json>`` lines,
events separated by a blank line, ``data: [DONE]`` at the end).  Over a
WebSocket every text message is one JSON frame.  Both end up as plain frame
dicts, which :func:`decode_frame` maps onto the normalized vocabulary.
"""

from __future__ import annotations

import json
import logging
from typing import Any

from agent_bridge.errors import ProtocolError
from agent_bridge.types import StreamEvent, StreamEventType

_logger = logging.getLogger(__name__)

_DONE_MARKER = "[DONE]"

# Service frame type -> normalized event type
_FRAME_TYPES: dict[str, StreamEventType] = {
    "response.created": StreamEventType.CREATED,
    "response.output_text.delta": StreamEventType.TEXT_DELTA,
    "response.output_text.done": StreamEventType.TEXT_DONE,
    "response.output_item.added": StreamEventType.ITEM_ADDED,
    "response.function_call_arguments.delta": StreamEventType.ITEM_ARGS_DELTA,
    "response.output_item.done": StreamEventType.ITEM_DONE,
    "response.completed": StreamEventType.COMPLETED,
    "response.incomplete": StreamEventType.COMPLETED,
    "response.failed": StreamEventType.ERROR,
    "error": StreamEventType.ERROR,
}

TERMINAL_FRAME_TYPES = frozenset({
    "response.completed",
    "response.incomplete",
    "response.failed",
    "error",
})


def is_terminal_frame(frame: dict[str, Any]) -> bool:
    return frame.get("type") in TERMINAL_FRAME_TYPES


# ---------------------------------------------------------------------------
# Raw text -> frame dict
# ---------------------------------------------------------------------------

def decode_ws_message(message: str | bytes) -> dict[str, Any]:
    """Parse one WebSocket text message into a frame dict."""
    if isinstance(message, bytes):
        message = message.decode("utf-8", errors="replace")
    try:
        frame = json.loads(message)
    except json.JSONDecodeError as e:
        raise ProtocolError(f"Non-JSON frame: {message[:80]!r}") from e
    if not isinstance(frame, dict):
        raise ProtocolError(f"Frame is not an object: {message[:80]!r}")
    return frame


class SSEDecoder:
    """Incremental Server-Sent Events decoder fed one line at a time.

    ``feed()`` returns the frames completed by that line.  Only ``data:``
    fields are of interest; multi-line data is joined with newlines as the
    SSE format prescribes.
    """

    def __init__(self) -> None:
        self._data: list[str] = []

    def feed(self, line: str) -> list[dict[str, Any]]:
        line = line.rstrip("\r\n")
        if not line:
            return self._dispatch()
        if line.startswith(":"):
            return []  # comment / keepalive
        if line.startswith("data:"):
            value = line[5:]
            if value.startswith(" "):
                value = value[1:]
            self._data.append(value)
        return []

    def flush(self) -> list[dict[str, Any]]:
        """Dispatch whatever is buffered at end of stream."""
        return self._dispatch()

    def _dispatch(self) -> list[dict[str, Any]]:
        if not self._data:
            return []
        data = "\n".join(self._data)
        self._data = []
        if data.strip() == _DONE_MARKER:
            return []
        try:
            return [decode_ws_message(data)]
        except ProtocolError as e:
            _logger.warning("Dropping malformed SSE event: %s", e)
            return []


# ---------------------------------------------------------------------------
# Frame dict -> StreamEvent
# ---------------------------------------------------------------------------

def _require_str(frame: dict[str, Any], key: str) -> str:
    value = frame.get(key)
    if not isinstance(value, str):
        raise ProtocolError(f"{frame.get('type')} frame without string {key!r}")
    return value


def _require_dict(frame: dict[str, Any], key: str) -> dict[str, Any]:
    value = frame.get(key)
    if not isinstance(value, dict):
        raise ProtocolError(f"{frame.get('type')} frame without object {key!r}")
    return value


def decode_frame(frame: dict[str, Any]) -> StreamEvent | None:
    """Map a frame dict onto a :class:`StreamEvent`.

    Returns ``None`` for frame types outside the vocabulary; raises
    :class:`ProtocolError` when a known frame lacks its required fields.
    """
    frame_type = frame.get("type")
    if not isinstance(frame_type, str):
        raise ProtocolError("Frame without a type")

    kind = _FRAME_TYPES.get(frame_type)
    if kind is None:
        _logger.debug("Ignoring frame type %s", frame_type)
        return None

    if kind in (StreamEventType.CREATED, StreamEventType.COMPLETED):
        return StreamEvent(type=kind, response=_require_dict(frame, "response"))

    if kind is StreamEventType.TEXT_DELTA:
        return StreamEvent(
            type=kind,
            item_id=frame.get("item_id") or "",
            delta=_require_str(frame, "delta"),
        )

    if kind is StreamEventType.TEXT_DONE:
        return StreamEvent(type=kind, item_id=frame.get("item_id") or "")

    if kind in (StreamEventType.ITEM_ADDED, StreamEventType.ITEM_DONE):
        return StreamEvent(type=kind, item=_require_dict(frame, "item"))

    if kind is StreamEventType.ITEM_ARGS_DELTA:
        return StreamEvent(
            type=kind,
            item_id=_require_str(frame, "item_id"),
            delta=_require_str(frame, "delta"),
        )

    # ERROR: either a top-level ``error`` frame or ``response.failed``
    if frame_type == "response.failed":
        response = frame.get("response") or {}
        error = response.get("error") or {"message": "Response failed"}
        return StreamEvent(type=kind, response=response, error=error)
    error = frame.get("error")
    if not isinstance(error, dict):
        error = {"message": frame.get("message") or "Unknown upstream error"}
    return StreamEvent(type=kind, error=error)
