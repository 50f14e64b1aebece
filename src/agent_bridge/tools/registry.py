"""Tool registry: the name -> handler capability map used by the loop."""

from __future__ import annotations

import inspect
import logging
from typing import Any, Callable, Mapping

from agent_bridge.tools.base import FunctionTool, Tool
from agent_bridge.types import ToolParameter

_logger = logging.getLogger(__name__)

Handler = Callable[[dict[str, Any]], Any]


class ToolRegistry:
    """Registry of available tools.

    Names and argument schemas are opaque to the bridge; the registry only
    resolves a handler by name and advertises the schemas to the service.
    """

    def __init__(self) -> None:
        self._tools: dict[str, Tool] = {}

    @classmethod
    def from_handlers(cls, handlers: Mapping[str, Handler]) -> ToolRegistry:
        """Build a registry from a plain ``{name: handler}`` mapping."""
        registry = cls()
        for name, handler in handlers.items():
            if isinstance(handler, Tool):
                registry.register(handler)
            else:
                registry.register_function(name, handler)
        return registry

    def register(self, tool: Tool) -> None:
        """Register a tool instance."""
        if tool.name in self._tools:
            _logger.warning("Replacing already registered tool %s", tool.name)
        self._tools[tool.name] = tool

    def register_function(
        self,
        name: str,
        handler: Handler,
        description: str = "",
        parameters: list[ToolParameter] | None = None,
    ) -> None:
        """Register a plain ``(arguments) -> result`` callable."""
        self.register(FunctionTool(name, handler, description, parameters))

    def get(self, name: str) -> Tool | None:
        """Look up a tool by name."""
        return self._tools.get(name)

    def get_handler(self, name: str) -> Handler | None:
        return self._tools.get(name)

    def list_tools(self) -> list[Tool]:
        return list(self._tools.values())

    def tool_names(self) -> list[str]:
        return list(self._tools.keys())

    def get_schemas(self) -> list[dict[str, Any]]:
        """Function definitions for every registered tool."""
        return [t.to_schema() for t in self._tools.values()]

    def __len__(self) -> int:
        return len(self._tools)

    def __contains__(self, name: object) -> bool:
        return name in self._tools

    async def aclose(self) -> None:
        """Release resources held by tools that own any."""
        for tool in self._tools.values():
            closer = getattr(tool, "aclose", None)
            if closer is None:
                continue
            result = closer()
            if inspect.isawaitable(result):
                await result
