"""Executor: runs requested tool calls against the capability map.

Failures never escape: an unknown tool, a handler that raises, or a
handler reporting failure all become an ``"Error: <message>"`` output the
model can read and adapt to.
"""

from __future__ import annotations

import inspect
import json
import logging
from dataclasses import dataclass
from typing import Any

from agent_bridge.events.bus import EventBus
from agent_bridge.tools.registry import ToolRegistry
from agent_bridge.types import EventType, ToolCall

_logger = logging.getLogger(__name__)

MAX_TOOL_OUTPUT = 10000
TRUNCATION_MARKER = "\n... (truncated)"


def truncate_output(text: str, max_length: int = MAX_TOOL_OUTPUT) -> str:
    """Cut *text* to *max_length* characters plus a truncation marker.

    Depends on length alone, so truncating an already truncated string
    returns it unchanged.
    """
    if len(text) <= max_length:
        return text
    return text[:max_length] + TRUNCATION_MARKER


def _stringify(result: Any) -> str:
    if isinstance(result, str):
        return result
    try:
        return json.dumps(result, default=str)
    except (TypeError, ValueError):
        return str(result)


@dataclass
class ToolOutcome:
    """Result of one tool call, ready to send back to the service."""

    call: ToolCall
    output: str
    success: bool


class Executor:
    """Runs tool calls sequentially through the tool registry.

    Usage::

        executor = Executor(registry, max_output=10000, event_bus=bus)
        outcome = await executor.run(tool_call)
    """

    def __init__(
        self,
        registry: ToolRegistry,
        max_output: int = MAX_TOOL_OUTPUT,
        event_bus: EventBus | None = None,
    ) -> None:
        self._registry = registry
        self._max_output = max_output
        self._event_bus = event_bus

    async def run(self, call: ToolCall) -> ToolOutcome:
        handler = self._registry.get_handler(call.name)
        if handler is None:
            available = ", ".join(self._registry.tool_names()) or "none"
            output = f"Error: Unknown tool: {call.name}. Available: {available}"
            await self._emit(EventType.TOOL_ERROR, {"tool": call.name, "error": output})
            return ToolOutcome(call=call, output=output, success=False)

        arguments = self._parse_arguments(call)
        await self._emit(EventType.TOOL_EXECUTING, {
            "tool": call.name,
            "arguments": arguments,
        })
        _logger.info("Executing %s: %s", call.name, json.dumps(arguments, default=str)[:200])

        try:
            result = handler(arguments)
            if inspect.isawaitable(result):
                result = await result
            output = _stringify(result)
            success = True
        except Exception as e:
            _logger.warning("Tool %s failed: %s", call.name, e)
            output = f"Error: {e}"
            success = False

        output = truncate_output(output, self._max_output)
        if success:
            await self._emit(EventType.TOOL_EXECUTED, {
                "tool": call.name,
                "output_length": len(output),
            })
        else:
            await self._emit(EventType.TOOL_ERROR, {"tool": call.name, "error": output})
        return ToolOutcome(call=call, output=output, success=success)

    @staticmethod
    def _parse_arguments(call: ToolCall) -> dict[str, Any]:
        if not call.arguments:
            return {}
        try:
            args = json.loads(call.arguments)
        except json.JSONDecodeError:
            _logger.warning("Unparseable arguments for %s: %.200s", call.name, call.arguments)
            return {}
        return args if isinstance(args, dict) else {}

    async def _emit(self, event_type: EventType, data: dict[str, Any]) -> None:
        if self._event_bus:
            await self._event_bus.publish(event_type, **data)
