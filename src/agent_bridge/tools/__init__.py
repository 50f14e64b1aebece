"""Tool system for Agent Bridge."""

from agent_bridge.tools.base import FunctionTool, Tool
from agent_bridge.tools.cache import ToolExecutorCache
from agent_bridge.tools.registry import ToolRegistry

__all__ = ["FunctionTool", "Tool", "ToolExecutorCache", "ToolRegistry"]
