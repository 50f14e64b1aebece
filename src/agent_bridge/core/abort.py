"""Racing awaitables against an external abort signal."""

from __future__ import annotations

import asyncio
from typing import Any, AsyncIterator, Awaitable, TypeVar

T = TypeVar("T")


class TurnAborted(Exception):
    """The caller's abort signal fired."""


async def race(aw: Awaitable[T], abort: asyncio.Event | None) -> T:
    """Await *aw* unless *abort* is set first, then cancel it and raise."""
    if abort is None:
        return await aw
    task = asyncio.ensure_future(aw)
    if abort.is_set():
        task.cancel()
        await asyncio.gather(task, return_exceptions=True)
        raise TurnAborted()

    waiter = asyncio.ensure_future(abort.wait())
    try:
        await asyncio.wait({task, waiter}, return_when=asyncio.FIRST_COMPLETED)
    finally:
        waiter.cancel()
        if not task.done():
            task.cancel()
            await asyncio.gather(task, return_exceptions=True)
    if task.cancelled():
        raise TurnAborted()
    return task.result()


async def until_aborted(
    items: AsyncIterator[T], abort: asyncio.Event | None,
) -> AsyncIterator[T]:
    """Yield from *items* until exhausted or *abort* fires."""
    if abort is None:
        async for item in items:
            yield item
        return
    while True:
        try:
            item: Any = await race(anext(items), abort)
        except StopAsyncIteration:
            return
        yield item
