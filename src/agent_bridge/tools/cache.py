"""Keyed, reference-counted cache of tool executors.

Building a tool executor can be expensive (a sandbox, a loaded document
set), so transports serving the same workspace share one.  An entry is
created on first lease, shared by concurrent leases of the same key, and
closed when the last lease is released.

Typical usage::

    cache = ToolExecutorCache()

    async with cache.lease("docs", build_registry) as registry:
        transport = build_transport(config, registry)
        ...
"""

from __future__ import annotations

import asyncio
import inspect
import logging
from contextlib import asynccontextmanager
from dataclasses import dataclass
from typing import Any, AsyncIterator, Awaitable, Callable, Hashable

_logger = logging.getLogger(__name__)

Factory = Callable[[], Awaitable[Any]]


@dataclass
class _Entry:
    task: asyncio.Task
    refs: int = 0


class ToolExecutorCache:
    """Lazily built executors keyed by *key*, released at zero references."""

    def __init__(self) -> None:
        self._entries: dict[Hashable, _Entry] = {}

    def __contains__(self, key: object) -> bool:
        return key in self._entries

    def refcount(self, key: Hashable) -> int:
        entry = self._entries.get(key)
        return entry.refs if entry else 0

    async def acquire(self, key: Hashable, factory: Factory) -> Any:
        """Return the executor for *key*, building it on first use.

        Concurrent first calls share a single factory invocation.  If the
        factory fails, every waiter sees the error and the entry is
        removed so a later call can retry.
        """
        entry = self._entries.get(key)
        if entry is None:
            _logger.debug("Building tool executor for %r", key)
            entry = _Entry(task=asyncio.ensure_future(factory()))
            self._entries[key] = entry
        entry.refs += 1
        try:
            return await asyncio.shield(entry.task)
        except BaseException:
            entry.refs -= 1
            if self._entries.get(key) is entry and (entry.refs == 0 or _failed(entry.task)):
                del self._entries[key]
                if entry.refs == 0:
                    await self._dispose(key, entry)
            raise

    async def release(self, key: Hashable) -> None:
        """Drop one reference; the executor is closed when none remain."""
        entry = self._entries.get(key)
        if entry is None:
            _logger.warning("Release of unknown tool executor %r", key)
            return
        entry.refs -= 1
        if entry.refs > 0:
            return
        del self._entries[key]
        await self._dispose(key, entry)

    @asynccontextmanager
    async def lease(self, key: Hashable, factory: Factory) -> AsyncIterator[Any]:
        executor = await self.acquire(key, factory)
        try:
            yield executor
        finally:
            await self.release(key)

    async def aclose(self) -> None:
        """Close every cached executor regardless of outstanding leases."""
        entries, self._entries = self._entries, {}
        for key, entry in entries.items():
            await self._dispose(key, entry)

    @staticmethod
    async def _dispose(key: Hashable, entry: _Entry) -> None:
        if not entry.task.done():
            entry.task.cancel()
            await asyncio.gather(entry.task, return_exceptions=True)
            return
        if _failed(entry.task):
            return
        closer = getattr(entry.task.result(), "aclose", None)
        if closer is None:
            return
        _logger.debug("Closing tool executor for %r", key)
        result = closer()
        if inspect.isawaitable(result):
            await result


def _failed(task: asyncio.Task) -> bool:
    return task.done() and (task.cancelled() or task.exception() is not None)
