"""Protocol chunk translator.

A synchronous, per-request state machine that turns normalized
``StreamEvent`` objects into caller-facing ``Chunk`` objects:

    created          -> [start] start-step(ttfb)
    text delta       -> [text-start] text-delta
    text done        -> text-end
    item added       -> tool-input-start          (function calls only)
    args delta       -> tool-input-delta          (dropped when unmatched)
    item done        -> tool-input-available      (parsed JSON or raw text)
    completed        -> data-stats, outcome ready for the loop
    error            -> recorded on the outcome; the loop raises it

Scratch state (text part id, pending tool calls) lives for one request and
is discarded by :meth:`ChunkTranslator.close`.
"""

from __future__ import annotations

import json
import logging
import time
import uuid
from dataclasses import dataclass, field
from typing import Any, Callable

from agent_bridge.errors import is_anchor_not_found
from agent_bridge.types import (
    Chunk,
    ChunkType,
    PendingToolCall,
    StreamEvent,
    StreamEventType,
    TokenUsage,
    ToolCall,
)

_logger = logging.getLogger(__name__)


def tool_call_chunk_id(call_id: str) -> str:
    return f"tool-{call_id}"


def parse_arguments(raw: str) -> Any:
    """Structured arguments when *raw* is JSON, else *raw* itself."""
    try:
        return json.loads(raw)
    except (json.JSONDecodeError, TypeError):
        return raw


@dataclass
class StepOutcome:
    """What the loop needs to know once a request has finished streaming."""

    response_id: str | None = None
    tool_calls: list[ToolCall] = field(default_factory=list)
    completed: bool = False
    error: dict[str, Any] | None = None
    anchor_missing: bool = False

    @property
    def finished(self) -> bool:
        return self.completed or self.error is not None or self.anchor_missing


class ChunkTranslator:
    """Translate one request's inbound events into chunks.

    Parameters
    ----------
    usage:
        The session's running token counters; ``completed`` adds to them.
    sent_at:
        Clock reading taken when the request was sent (for ttfb).  Defaults
        to construction time; :meth:`mark_sent` moves it.
    emit_start:
        Whether the first ``created`` frame should also produce ``start``.
    """

    def __init__(
        self,
        usage: TokenUsage,
        sent_at: float | None = None,
        emit_start: bool = False,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self._usage = usage
        self._clock = clock
        self._sent_at = sent_at if sent_at is not None else clock()
        self._emit_start = emit_start
        self._started = False
        self._text_part_id: str | None = None
        self._pending: dict[str, PendingToolCall] = {}
        self._item_to_call: dict[str, str] = {}
        self.outcome = StepOutcome()

    # ------------------------------------------------------------------
    # Public API
    # ------------------------------------------------------------------

    @property
    def started(self) -> bool:
        """True once ``start`` has been emitted by this translator."""
        return self._started

    @property
    def pending(self) -> dict[str, PendingToolCall]:
        return dict(self._pending)

    def feed(self, event: StreamEvent) -> list[Chunk]:
        """Translate one event.  Events after a terminal one are ignored."""
        if self.outcome.finished:
            _logger.debug("Ignoring %s after terminal frame", event.type.value)
            return []

        handler = self._HANDLERS[event.type]
        return handler(self, event)

    def mark_sent(self) -> None:
        """Restart the ttfb clock; call once the request is on the wire."""
        self._sent_at = self._clock()

    def close(self) -> None:
        """Drop per-request scratch state."""
        self._pending.clear()
        self._item_to_call.clear()
        self._text_part_id = None

    # ------------------------------------------------------------------
    # Handlers
    # ------------------------------------------------------------------

    def _on_created(self, event: StreamEvent) -> list[Chunk]:
        response_id = event.response.get("id", "")
        chunks: list[Chunk] = []
        if self._emit_start and not self._started:
            chunks.append(Chunk(ChunkType.START, {"messageId": f"msg-{response_id}"}))
            self._started = True
        ttfb = round((self._clock() - self._sent_at) * 1000)
        chunks.append(Chunk(ChunkType.START_STEP, {"responseId": response_id, "ttfb": ttfb}))
        return chunks

    def _on_text_delta(self, event: StreamEvent) -> list[Chunk]:
        chunks: list[Chunk] = []
        if self._text_part_id is None:
            self._text_part_id = f"text-{uuid.uuid4().hex[:12]}"
            chunks.append(Chunk(ChunkType.TEXT_START, {"id": self._text_part_id}))
        chunks.append(Chunk(ChunkType.TEXT_DELTA, {
            "id": self._text_part_id,
            "delta": event.delta,
        }))
        return chunks

    def _on_text_done(self, event: StreamEvent) -> list[Chunk]:
        if self._text_part_id is None:
            return []
        part_id, self._text_part_id = self._text_part_id, None
        return [Chunk(ChunkType.TEXT_END, {"id": part_id})]

    def _on_item_added(self, event: StreamEvent) -> list[Chunk]:
        item = event.item
        if item.get("type") != "function_call":
            return []
        call_id = item.get("call_id") or item.get("id") or ""
        pending = PendingToolCall(
            call_id=call_id,
            name=item.get("name", ""),
            item_id=item.get("id", ""),
        )
        self._pending[call_id] = pending
        if pending.item_id:
            self._item_to_call[pending.item_id] = call_id
        return [Chunk(ChunkType.TOOL_INPUT_START, {
            "toolCallId": tool_call_chunk_id(call_id),
            "toolName": pending.name,
            "dynamic": True,
        })]

    def _on_args_delta(self, event: StreamEvent) -> list[Chunk]:
        call_id = self._item_to_call.get(event.item_id, event.item_id)
        pending = self._pending.get(call_id)
        if pending is None or pending.finalized:
            _logger.debug("Dropping argument delta for unknown item %s", event.item_id)
            return []
        pending.append(event.delta)
        return [Chunk(ChunkType.TOOL_INPUT_DELTA, {
            "toolCallId": tool_call_chunk_id(call_id),
            "inputTextDelta": event.delta,
        })]

    def _on_item_done(self, event: StreamEvent) -> list[Chunk]:
        item = event.item
        if item.get("type") != "function_call":
            return []
        call_id = item.get("call_id") or self._item_to_call.get(item.get("id", ""), "")
        pending = self._pending.get(call_id)
        if pending is None:
            _logger.warning("Function call %s finished without being announced", call_id)
            return []
        arguments = item.get("arguments")
        raw = pending.finalize(arguments if isinstance(arguments, str) else None)
        return [Chunk(ChunkType.TOOL_INPUT_AVAILABLE, {
            "toolCallId": tool_call_chunk_id(call_id),
            "toolName": pending.name,
            "input": parse_arguments(raw),
            "dynamic": True,
        })]

    def _on_completed(self, event: StreamEvent) -> list[Chunk]:
        response = event.response
        if response.get("status") == "incomplete":
            _logger.warning(
                "Response %s incomplete: %s",
                response.get("id"), response.get("incomplete_details"),
            )
        self._usage.add(response.get("usage"))

        self.outcome.completed = True
        self.outcome.response_id = response.get("id")
        self.outcome.tool_calls = self._requested_calls(response)
        return [Chunk(ChunkType.DATA_STATS, {"data": {"tokens": self._usage.to_dict()}})]

    def _on_error(self, event: StreamEvent) -> list[Chunk]:
        if is_anchor_not_found(event.error):
            _logger.warning("Service lost the continuation anchor: %s", event.error.get("message"))
            self.outcome.anchor_missing = True
            return []
        _logger.warning("Service reported an error: %s", event.error.get("message"))
        self.outcome.error = event.error
        return []

    _HANDLERS: dict[StreamEventType, Callable[[ChunkTranslator, StreamEvent], list[Chunk]]] = {
        StreamEventType.CREATED: _on_created,
        StreamEventType.TEXT_DELTA: _on_text_delta,
        StreamEventType.TEXT_DONE: _on_text_done,
        StreamEventType.ITEM_ADDED: _on_item_added,
        StreamEventType.ITEM_ARGS_DELTA: _on_args_delta,
        StreamEventType.ITEM_DONE: _on_item_done,
        StreamEventType.COMPLETED: _on_completed,
        StreamEventType.ERROR: _on_error,
    }

    # ------------------------------------------------------------------
    # Internals
    # ------------------------------------------------------------------

    def _requested_calls(self, response: dict[str, Any]) -> list[ToolCall]:
        output = response.get("output")
        if isinstance(output, list):
            return [
                ToolCall(
                    call_id=o.get("call_id", ""),
                    name=o.get("name", ""),
                    arguments=o.get("arguments") or "",
                )
                for o in output
                if isinstance(o, dict) and o.get("type") == "function_call"
            ]
        return [
            ToolCall(call_id=p.call_id, name=p.name, arguments=p.arguments)
            for p in self._pending.values()
            if p.finalized
        ]
