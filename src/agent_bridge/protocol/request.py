"""Outbound request model and caller-message conversion."""

from __future__ import annotations

import uuid
from dataclasses import dataclass, field
from typing import Any, Iterable

from agent_bridge.types import ChatMessage


def to_message(message: ChatMessage | dict[str, Any]) -> ChatMessage:
    if isinstance(message, ChatMessage):
        return message
    return ChatMessage.from_dict(message)


def message_to_input_item(message: ChatMessage) -> dict[str, Any]:
    """One caller message as a service ``message`` input item.

    Only text parts are sent; assistant text is ``output_text``, everything
    else ``input_text``.
    """
    content_type = "output_text" if message.role == "assistant" else "input_text"
    return {
        "type": "message",
        "role": message.role,
        "content": [
            {"type": content_type, "text": p["text"]}
            for p in message.parts
            if p.get("type") == "text" and isinstance(p.get("text"), str)
        ],
    }


def convert_to_input(messages: Iterable[ChatMessage]) -> list[dict[str, Any]]:
    return [message_to_input_item(m) for m in messages]


def tool_output_item(call_id: str, output: str) -> dict[str, Any]:
    return {"type": "function_call_output", "call_id": call_id, "output": output}


@dataclass
class ResponseRequest:
    """Everything needed for one completion call."""

    model: str
    input: list[dict[str, Any]]
    instructions: str = ""
    tools: list[dict[str, Any]] = field(default_factory=list)
    previous_response_id: str | None = None
    extra: dict[str, Any] = field(default_factory=dict)
    id: str = field(default_factory=lambda: uuid.uuid4().hex[:12])

    def to_payload(self) -> dict[str, Any]:
        """The ``response.create`` frame body."""
        payload: dict[str, Any] = {
            "type": "response.create",
            "model": self.model,
            "instructions": self.instructions,
            "tools": self.tools,
            "input": self.input,
        }
        if self.previous_response_id:
            payload["previous_response_id"] = self.previous_response_id
        payload.update(self.extra)
        return payload
