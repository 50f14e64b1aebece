"""Async Tool abstract base class."""

from __future__ import annotations

import inspect
import json
from abc import ABC, abstractmethod
from typing import Any, Callable

from agent_bridge.errors import ToolExecutionError
from agent_bridge.types import ToolParameter, ToolResult


class Tool(ABC):
    """Base class for all tools.

    Subclasses must set ``name``, ``description``, ``parameters`` as class
    attributes and implement the async ``execute()`` method.  Calling a tool
    instance with an argument dict is the capability-map contract: it
    returns the output text or raises.
    """

    name: str
    description: str
    parameters: list[ToolParameter]

    @abstractmethod
    async def execute(self, **kwargs: Any) -> ToolResult:
        """Execute the tool asynchronously."""

    async def __call__(self, arguments: dict[str, Any]) -> str:
        result = await self.execute(**arguments)
        if not result.success:
            raise ToolExecutionError(result.to_message())
        return result.output

    def to_schema(self) -> dict[str, Any]:
        """Function definition in the completion service's flat format."""
        properties: dict[str, Any] = {}
        required: list[str] = []
        for p in self.parameters:
            prop: dict[str, Any] = {
                "type": p.type,
                "description": p.description,
            }
            if p.enum:
                prop["enum"] = p.enum
            if p.default is not None:
                prop["default"] = p.default
            properties[p.name] = prop
            if p.required:
                required.append(p.name)

        return {
            "type": "function",
            "name": self.name,
            "description": self.description,
            "parameters": {
                "type": "object",
                "properties": properties,
                "required": required,
            },
        }


class FunctionTool(Tool):
    """Adapts a plain ``(arguments) -> result`` callable, sync or async."""

    def __init__(
        self,
        name: str,
        handler: Callable[[dict[str, Any]], Any],
        description: str = "",
        parameters: list[ToolParameter] | None = None,
    ) -> None:
        self.name = name
        self.description = description or name
        self.parameters = parameters or []
        self._handler = handler

    async def execute(self, **kwargs: Any) -> ToolResult:
        try:
            result = await self(kwargs)
        except ToolExecutionError as e:
            return ToolResult(success=False, output="", error=str(e))
        if not isinstance(result, str):
            result = json.dumps(result, default=str)
        return ToolResult(success=True, output=result)

    async def __call__(self, arguments: dict[str, Any]) -> Any:
        # Raw results pass through untouched; the runner stringifies them
        result = self._handler(arguments)
        if inspect.isawaitable(result):
            result = await result
        if isinstance(result, ToolResult):
            if not result.success:
                raise ToolExecutionError(result.to_message())
            return result.output
        return result
