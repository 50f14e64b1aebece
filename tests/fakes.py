"""Frame builders and in-memory backends shared by the test modules."""

from __future__ import annotations

import asyncio
import json
from contextlib import asynccontextmanager
from typing import Any

from websockets.exceptions import ConnectionClosedError
from websockets.protocol import State

from agent_bridge.core.abort import TurnAborted


# ---------------------------------------------------------------------------
# Frame builders
# ---------------------------------------------------------------------------

def created(rid: str) -> dict:
    return {"type": "response.created", "response": {"id": rid, "status": "in_progress"}}


def text_delta(delta: str, item_id: str = "msg_1") -> dict:
    return {"type": "response.output_text.delta", "item_id": item_id, "delta": delta}


def text_done(item_id: str = "msg_1") -> dict:
    return {"type": "response.output_text.done", "item_id": item_id}


def item_added(call_id: str, name: str, item_id: str = "") -> dict:
    return {
        "type": "response.output_item.added",
        "item": {"type": "function_call", "id": item_id or f"fc_{call_id}",
                 "call_id": call_id, "name": name, "arguments": ""},
    }


def args_delta(call_id: str, delta: str, item_id: str = "") -> dict:
    return {
        "type": "response.function_call_arguments.delta",
        "item_id": item_id or f"fc_{call_id}",
        "delta": delta,
    }


def item_done(call_id: str, name: str, arguments: str, item_id: str = "") -> dict:
    return {
        "type": "response.output_item.done",
        "item": {"type": "function_call", "id": item_id or f"fc_{call_id}",
                 "call_id": call_id, "name": name, "arguments": arguments},
    }


def completed(rid: str, output: list | None = None, usage: dict | None = None) -> dict:
    response: dict[str, Any] = {"id": rid, "status": "completed", "output": output or []}
    if usage is not None:
        response["usage"] = usage
    return {"type": "response.completed", "response": response}


def error(message: str, code: str | None = None) -> dict:
    err: dict[str, Any] = {"type": "invalid_request_error", "message": message}
    if code:
        err["code"] = code
    return {"type": "error", "error": err}


def anchor_missing(anchor: str = "resp_old") -> dict:
    return error(f"Previous response with id '{anchor}' not found.",
                 code="previous_response_not_found")


def usage(input_tokens: int, output_tokens: int, cached: int = 0) -> dict:
    return {
        "input_tokens": input_tokens,
        "input_tokens_details": {"cached_tokens": cached},
        "output_tokens": output_tokens,
    }


def text_response(rid: str, text: str, usage: dict | None = None) -> list[dict]:
    """A complete response that answers with *text* and no tool calls."""
    half = len(text) // 2 or len(text)
    deltas = [d for d in (text[:half], text[half:]) if d]
    return [
        created(rid),
        *[text_delta(d) for d in deltas],
        text_done(),
        completed(rid, output=[{
            "type": "message", "role": "assistant",
            "content": [{"type": "output_text", "text": text}],
        }], usage=usage),
    ]


def tool_response(
    rid: str, call_id: str, name: str, arguments: str = "{}", usage: dict | None = None,
) -> list[dict]:
    """A complete response requesting one function call."""
    return [
        created(rid),
        item_added(call_id, name),
        args_delta(call_id, arguments),
        item_done(call_id, name, arguments),
        completed(rid, output=[{
            "type": "function_call", "id": f"fc_{call_id}",
            "call_id": call_id, "name": name, "arguments": arguments,
        }], usage=usage),
    ]


# ---------------------------------------------------------------------------
# Backend double for the loop
# ---------------------------------------------------------------------------

HANG = object()


class ScriptedBackend:
    """Replays one scripted frame list per request and records payloads.

    A script entry may be a frame dict, an exception instance (raised when
    reached) or ``HANG`` (blocks forever).  A script that is a callable is
    called with the payload and must return the frame list.  A script that
    is itself an exception instance is raised before anything is sent.
    """

    def __init__(self, *scripts: Any) -> None:
        self.scripts = list(scripts)
        self.payloads: list[dict] = []
        self.anchor_generations: list[int | None] = []
        self.generation = 1
        self.current = True
        self.closed = False
        self.open_subscriptions = 0

    def is_current(self, generation: int | None) -> bool:
        return self.current and generation == self.generation

    def replace_connection(self) -> None:
        self.generation += 1

    @asynccontextmanager
    async def request(self, payload: dict, abort=None, anchor_generation=None):
        if abort is not None and abort.is_set():
            raise TurnAborted()
        self.anchor_generations.append(anchor_generation)
        script = self.scripts.pop(0) if self.scripts else []
        if isinstance(script, BaseException):
            raise script
        self.payloads.append(payload)
        if callable(script):
            script = script(payload)
        frames = self._frames(script)
        self.open_subscriptions += 1
        try:
            yield frames
        finally:
            await frames.aclose()
            self.open_subscriptions -= 1

    async def _frames(self, script: list):
        for entry in script:
            if entry is HANG:
                await asyncio.Event().wait()
            if isinstance(entry, BaseException):
                raise entry
            await asyncio.sleep(0)
            yield entry

    async def aclose(self) -> None:
        self.closed = True


# ---------------------------------------------------------------------------
# WebSocket double for the connection manager
# ---------------------------------------------------------------------------

CLOSE = object()


class FakeWebSocket:
    """In-memory stand-in for a ``websockets`` client connection.

    *responder* maps each sent payload to the frames the peer answers with;
    frames may include ``CLOSE`` to simulate a peer-initiated close.
    """

    def __init__(self, responder=None) -> None:
        self.state = State.OPEN
        self.sent: list[dict] = []
        self.incoming: asyncio.Queue = asyncio.Queue()
        self.responder = responder
        self.close_calls = 0

    async def send(self, message: str) -> None:
        if self.state is not State.OPEN:
            raise ConnectionClosedError(None, None)
        payload = json.loads(message)
        self.sent.append(payload)
        if self.responder is not None:
            for frame in self.responder(payload) or []:
                self.push(frame)

    def push(self, frame: Any) -> None:
        if frame is CLOSE or isinstance(frame, str):
            self.incoming.put_nowait(frame)
        else:
            self.incoming.put_nowait(json.dumps(frame))

    async def recv(self) -> str:
        if self.state is State.CLOSED and self.incoming.empty():
            raise ConnectionClosedError(None, None)
        item = await self.incoming.get()
        if item is CLOSE:
            self.state = State.CLOSED
            raise ConnectionClosedError(None, None)
        return item

    async def close(self) -> None:
        self.close_calls += 1
        self.state = State.CLOSED


class FakeConnector:
    """Connector hook: hands out :class:`FakeWebSocket` instances."""

    def __init__(self, responder=None, fail: BaseException | None = None) -> None:
        self.responder = responder
        self.fail = fail
        self.calls: list[tuple[str, dict]] = []
        self.sockets: list[FakeWebSocket] = []
        self.gate: asyncio.Event | None = None

    async def __call__(self, url: str, **kwargs: Any) -> FakeWebSocket:
        self.calls.append((url, kwargs))
        if self.gate is not None:
            await self.gate.wait()
        if self.fail is not None:
            raise self.fail
        ws = FakeWebSocket(self.responder)
        self.sockets.append(ws)
        return ws


def scripted_responder(*scripts: list[dict]):
    """Responder answering the n-th request with the n-th frame list."""
    queue = list(scripts)

    def respond(payload: dict) -> list:
        return queue.pop(0) if queue else []

    return respond


def chunk_types(chunks) -> list[str]:
    return [c.type.value for c in chunks]


def without_stats(chunks) -> list:
    return [c for c in chunks if c.type.value != "data-stats"]
