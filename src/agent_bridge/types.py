"""Shared data types for Agent Bridge."""

from __future__ import annotations

import enum
import time
from dataclasses import dataclass, field
from typing import Any


# ---------------------------------------------------------------------------
# Tool types
# ---------------------------------------------------------------------------

@dataclass
class ToolParameter:
    """Definition of a tool parameter."""

    name: str
    type: str  # string, integer, boolean, array, object
    description: str
    required: bool = True
    default: Any = None
    enum: list[str] | None = None


@dataclass
class ToolCall:
    """A callable action requested by a completed response."""

    call_id: str
    name: str
    arguments: str = ""  # raw JSON text as streamed by the service

    def to_input_item(self) -> dict[str, Any]:
        """Echo of the call for full-context replays."""
        return {
            "type": "function_call",
            "call_id": self.call_id,
            "name": self.name,
            "arguments": self.arguments,
        }


@dataclass
class ToolResult:
    """Result of a tool execution."""

    success: bool
    output: str
    error: str = ""
    metadata: dict[str, Any] = field(default_factory=dict)

    def to_message(self) -> str:
        if self.success:
            return self.output
        if self.output:
            return f"{self.error}\n{self.output}"
        return self.error


@dataclass
class PendingToolCall:
    """Arguments of a tool call while they are still streaming in.

    The buffer is append-only until :meth:`finalize` freezes it.
    """

    call_id: str
    name: str
    item_id: str = ""
    buffer: str = ""
    final: str | None = None

    @property
    def finalized(self) -> bool:
        return self.final is not None

    @property
    def arguments(self) -> str:
        return self.final if self.final is not None else self.buffer

    def append(self, delta: str) -> None:
        if self.final is not None:
            raise ValueError(f"arguments for {self.call_id} are already final")
        self.buffer += delta

    def finalize(self, arguments: str | None = None) -> str:
        """Freeze the arguments; the service's full copy wins when given."""
        if self.final is None:
            self.final = arguments if arguments is not None else self.buffer
        return self.final


# ---------------------------------------------------------------------------
# Usage accounting
# ---------------------------------------------------------------------------

@dataclass
class TokenUsage:
    """Running token counters for a session."""

    input: int = 0
    input_cached: int = 0
    output: int = 0

    def add(self, usage: dict[str, Any] | None) -> None:
        """Add a service ``usage`` object (``input_tokens`` etc.)."""
        if not usage:
            return
        self.input += usage.get("input_tokens") or 0
        details = usage.get("input_tokens_details") or {}
        self.input_cached += details.get("cached_tokens") or 0
        self.output += usage.get("output_tokens") or 0

    def to_dict(self) -> dict[str, int]:
        return {
            "input": self.input,
            "inputCached": self.input_cached,
            "output": self.output,
        }


# ---------------------------------------------------------------------------
# Inbound stream events
# ---------------------------------------------------------------------------

class StreamEventType(enum.Enum):
    """Normalized inbound frame kinds."""

    CREATED = "created"
    TEXT_DELTA = "text-delta"
    TEXT_DONE = "text-done"
    ITEM_ADDED = "item-added"
    ITEM_ARGS_DELTA = "item-args-delta"
    ITEM_DONE = "item-done"
    COMPLETED = "completed"
    ERROR = "error"


@dataclass
class StreamEvent:
    """One inbound frame, stripped down to what the translator needs."""

    type: StreamEventType
    response: dict[str, Any] = field(default_factory=dict)
    item: dict[str, Any] = field(default_factory=dict)
    item_id: str = ""
    delta: str = ""
    error: dict[str, Any] = field(default_factory=dict)

    @property
    def is_terminal(self) -> bool:
        return self.type in (StreamEventType.COMPLETED, StreamEventType.ERROR)


# ---------------------------------------------------------------------------
# Caller-facing chunks
# ---------------------------------------------------------------------------

class ChunkType(str, enum.Enum):
    """Caller-facing chunk vocabulary."""

    START = "start"
    START_STEP = "start-step"
    TEXT_START = "text-start"
    TEXT_DELTA = "text-delta"
    TEXT_END = "text-end"
    TOOL_INPUT_START = "tool-input-start"
    TOOL_INPUT_DELTA = "tool-input-delta"
    TOOL_INPUT_AVAILABLE = "tool-input-available"
    TOOL_OUTPUT_AVAILABLE = "tool-output-available"
    FINISH_STEP = "finish-step"
    FINISH = "finish"
    ERROR = "error"
    DATA_STATS = "data-stats"


@dataclass
class Chunk:
    """A transport-agnostic event delivered to the caller."""

    type: ChunkType
    fields: dict[str, Any] = field(default_factory=dict)

    def get(self, key: str, default: Any = None) -> Any:
        return self.fields.get(key, default)

    def __getitem__(self, key: str) -> Any:
        return self.fields[key]

    def to_dict(self) -> dict[str, Any]:
        return {"type": self.type.value, **self.fields}

    @property
    def is_terminal(self) -> bool:
        return self.type in (ChunkType.FINISH, ChunkType.ERROR)


# ---------------------------------------------------------------------------
# Caller messages
# ---------------------------------------------------------------------------

@dataclass
class ChatMessage:
    """A caller-side conversation message made of parts."""

    id: str
    role: str  # user | assistant | system
    parts: list[dict[str, Any]] = field(default_factory=list)

    @classmethod
    def from_dict(cls, raw: dict[str, Any]) -> ChatMessage:
        parts = raw.get("parts")
        if parts is None and isinstance(raw.get("content"), str):
            parts = [{"type": "text", "text": raw["content"]}]
        return cls(id=str(raw.get("id", "")), role=raw.get("role", "user"), parts=parts or [])

    @classmethod
    def user(cls, id: str, text: str) -> ChatMessage:
        return cls(id=id, role="user", parts=[{"type": "text", "text": text}])

    @property
    def text(self) -> str:
        return "".join(
            p["text"] for p in self.parts
            if p.get("type") == "text" and isinstance(p.get("text"), str)
        )


# ---------------------------------------------------------------------------
# Event types
# ---------------------------------------------------------------------------

class EventType(enum.Enum):
    """Lifecycle events published on the EventBus."""

    # Connection lifecycle
    CONNECTION_OPENED = "connection.opened"
    CONNECTION_CLOSED = "connection.closed"

    # Requests
    REQUEST_SENT = "request.sent"
    ANCHOR_INVALIDATED = "anchor.invalidated"

    # Tool events
    TOOL_EXECUTING = "tool.executing"
    TOOL_EXECUTED = "tool.executed"
    TOOL_ERROR = "tool.error"

    # Turn lifecycle
    TURN_STARTED = "turn.started"
    TURN_DONE = "turn.done"
    TURN_ERROR = "turn.error"
    TURN_CANCELLED = "turn.cancelled"


@dataclass
class AgentEvent:
    """Event emitted via the EventBus."""

    type: EventType
    data: dict[str, Any] = field(default_factory=dict)
    timestamp: float = field(default_factory=time.time)
