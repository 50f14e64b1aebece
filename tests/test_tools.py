"""Tests for Tool, ToolRegistry and the executor cache."""

from __future__ import annotations

import asyncio
from typing import Any

import pytest

from agent_bridge.errors import ToolExecutionError
from agent_bridge.tools.base import FunctionTool, Tool
from agent_bridge.tools.cache import ToolExecutorCache
from agent_bridge.tools.registry import ToolRegistry
from agent_bridge.types import ToolParameter, ToolResult


class GreetTool(Tool):
    name = "greet"
    description = "Say hello"
    parameters = [
        ToolParameter(name="who", type="string", description="Name"),
        ToolParameter(name="style", type="string", description="Tone",
                      required=False, default="plain", enum=["plain", "loud"]),
    ]

    async def execute(self, **kwargs: Any) -> ToolResult:
        who = kwargs.get("who")
        if not who:
            return ToolResult(success=False, output="", error="who is required")
        return ToolResult(success=True, output=f"hello {who}")


class Closable:
    def __init__(self) -> None:
        self.closed = 0

    async def aclose(self) -> None:
        self.closed += 1


# ---------------------------------------------------------------------------
# Tool / FunctionTool
# ---------------------------------------------------------------------------

class TestTool:
    async def test_call_returns_output(self):
        assert await GreetTool()({"who": "ada"}) == "hello ada"

    async def test_call_raises_on_failure(self):
        with pytest.raises(ToolExecutionError, match="who is required"):
            await GreetTool()({})

    def test_schema(self):
        schema = GreetTool().to_schema()
        assert schema["type"] == "function"
        assert schema["name"] == "greet"
        params = schema["parameters"]
        assert params["required"] == ["who"]
        assert params["properties"]["style"] == {
            "type": "string", "description": "Tone", "enum": ["plain", "loud"],
            "default": "plain",
        }

    async def test_function_tool_execute(self):
        tool = FunctionTool("add", lambda a: a["x"] + a["y"])
        result = await tool.execute(x=1, y=2)
        assert result.success
        assert result.output == "3"

    async def test_function_tool_failure(self):
        tool = FunctionTool("f", lambda a: ToolResult(success=False, output="", error="bad"))
        result = await tool.execute()
        assert not result.success
        assert result.error == "bad"


# ---------------------------------------------------------------------------
# ToolRegistry
# ---------------------------------------------------------------------------

class TestToolRegistry:
    def test_from_handlers(self):
        registry = ToolRegistry.from_handlers({"greet": GreetTool(), "ping": lambda a: "pong"})
        assert registry.tool_names() == ["greet", "ping"]
        assert len(registry) == 2
        assert "ping" in registry
        assert isinstance(registry.get("ping"), FunctionTool)
        assert registry.get("missing") is None
        assert [t.name for t in registry.list_tools()] == ["greet", "ping"]

    def test_schemas(self):
        registry = ToolRegistry.from_handlers({"ping": lambda a: "pong"})
        [schema] = registry.get_schemas()
        assert schema["name"] == "ping"
        assert schema["parameters"] == {"type": "object", "properties": {}, "required": []}

    def test_replace(self):
        registry = ToolRegistry()
        registry.register_function("t", lambda a: 1)
        registry.register_function("t", lambda a: 2)
        assert len(registry) == 1

    async def test_handler_lookup(self):
        registry = ToolRegistry.from_handlers({"ping": lambda a: "pong"})
        handler = registry.get_handler("ping")
        assert await handler({}) == "pong"

    async def test_aclose_closes_tools_that_own_resources(self):
        class ResourceTool(GreetTool):
            name = "res"
            closed = False

            async def aclose(self):
                self.closed = True

        tool = ResourceTool()
        registry = ToolRegistry.from_handlers({"res": tool, "ping": lambda a: "pong"})
        await registry.aclose()
        assert tool.closed


# ---------------------------------------------------------------------------
# ToolExecutorCache
# ---------------------------------------------------------------------------

class TestToolExecutorCache:
    async def test_concurrent_acquire_builds_once(self):
        cache = ToolExecutorCache()
        builds = 0
        gate = asyncio.Event()

        async def factory():
            nonlocal builds
            builds += 1
            await gate.wait()
            return Closable()

        tasks = [asyncio.create_task(cache.acquire("k", factory)) for _ in range(3)]
        await asyncio.sleep(0)
        gate.set()
        results = await asyncio.gather(*tasks)

        assert builds == 1
        assert all(r is results[0] for r in results)
        assert cache.refcount("k") == 3

    async def test_closed_at_zero_references(self):
        cache = ToolExecutorCache()
        executor = Closable()

        async def factory():
            return executor

        await cache.acquire("k", factory)
        await cache.acquire("k", factory)
        await cache.release("k")
        assert executor.closed == 0
        assert "k" in cache
        await cache.release("k")
        assert executor.closed == 1
        assert "k" not in cache

    async def test_rebuilt_after_disposal(self):
        cache = ToolExecutorCache()
        built = []

        async def factory():
            built.append(Closable())
            return built[-1]

        async with cache.lease("k", factory) as first:
            pass
        async with cache.lease("k", factory) as second:
            pass
        assert first is not second
        assert [b.closed for b in built] == [1, 1]

    async def test_factory_failure_is_not_cached(self):
        cache = ToolExecutorCache()
        attempts = 0

        async def factory():
            nonlocal attempts
            attempts += 1
            if attempts == 1:
                raise OSError("no sandbox")
            return Closable()

        with pytest.raises(OSError):
            await cache.acquire("k", factory)
        assert "k" not in cache

        executor = await cache.acquire("k", factory)
        assert isinstance(executor, Closable)
        assert attempts == 2

    async def test_failure_reaches_every_waiter(self):
        cache = ToolExecutorCache()
        gate = asyncio.Event()

        async def factory():
            await gate.wait()
            raise OSError("no sandbox")

        tasks = [asyncio.create_task(cache.acquire("k", factory)) for _ in range(2)]
        await asyncio.sleep(0)
        gate.set()
        results = await asyncio.gather(*tasks, return_exceptions=True)
        assert all(isinstance(r, OSError) for r in results)
        assert "k" not in cache

    async def test_release_unknown_key(self):
        await ToolExecutorCache().release("ghost")

    async def test_aclose(self):
        cache = ToolExecutorCache()
        executors = {}

        async def factory_for(key):
            executors[key] = Closable()
            return executors[key]

        await cache.acquire("a", lambda: factory_for("a"))
        await cache.acquire("b", lambda: factory_for("b"))
        await cache.aclose()
        assert executors["a"].closed == 1
        assert executors["b"].closed == 1
        assert cache.refcount("a") == 0
