"""Tests for the per-step HTTP backend against httpx.MockTransport."""

from __future__ import annotations

import asyncio
import json

import httpx
import pytest

from agent_bridge.config import ProfileSpec
from agent_bridge.core.abort import TurnAborted
from agent_bridge.errors import BridgeConnectionError, FrameTimeoutError
from agent_bridge.transport.http import HttpBackend, _error_frame

from fakes import text_response

PROFILE = ProfileSpec(url="https://api.test/v1", api_key="sk-test")


def sse_body(frames: list[dict]) -> bytes:
    lines = []
    for frame in frames:
        lines.append(f"event: {frame['type']}\ndata: {json.dumps(frame)}\n\n")
    lines.append("data: [DONE]\n\n")
    return "".join(lines).encode()


def sse_response(frames: list[dict]) -> httpx.Response:
    return httpx.Response(
        200, content=sse_body(frames), headers={"content-type": "text/event-stream"},
    )


def make_backend(handler) -> HttpBackend:
    client = httpx.AsyncClient(
        base_url=PROFILE.url, transport=httpx.MockTransport(handler),
    )
    return HttpBackend(PROFILE, client=client)


async def read_all(backend, payload=None) -> list[dict]:
    payload = payload or {"type": "response.create", "model": "m", "input": []}
    async with backend.request(payload) as frames:
        return [f async for f in frames]


@pytest.fixture(autouse=True)
def no_backoff(monkeypatch):
    monkeypatch.setattr("agent_bridge.transport.http._BACKOFF_BASE", 0)


class TestStreaming:
    async def test_frames_from_sse(self):
        requests = []

        def handler(request: httpx.Request):
            requests.append(request)
            return sse_response(text_response("resp_1", "hi"))

        backend = make_backend(handler)
        frames = await read_all(backend, {
            "type": "response.create", "model": "m", "input": [],
            "previous_response_id": "resp_0",
        })

        assert [f["type"] for f in frames] == [
            "response.created", "response.output_text.delta",
            "response.output_text.done", "response.completed",
        ]
        [req] = requests
        assert req.method == "POST"
        assert req.url.path == "/v1/responses"
        body = json.loads(req.content)
        assert body["stream"] is True
        assert "type" not in body
        assert body["previous_response_id"] == "resp_0"

    def test_default_client_headers(self):
        backend = HttpBackend(PROFILE)
        assert backend._client.headers["Authorization"] == "Bearer sk-test"

    def test_anchors_never_go_stale(self):
        backend = HttpBackend(PROFILE)
        assert backend.generation == 0
        assert backend.is_current(0)
        assert backend.is_current(None)

    async def test_aclose(self):
        backend = make_backend(lambda r: sse_response([]))
        await backend.aclose()
        assert backend._client.is_closed


class TestErrors:
    async def test_client_error_becomes_error_frame(self):
        def handler(request):
            return httpx.Response(400, json={"error": {
                "message": "Previous response with id 'resp_0' not found.",
                "code": "previous_response_not_found",
            }})

        frames = await read_all(make_backend(handler))
        assert frames == [{"type": "error", "error": {
            "message": "Previous response with id 'resp_0' not found.",
            "code": "previous_response_not_found",
            "status": 400,
        }}]

    async def test_retryable_status_retried(self):
        calls = 0

        def handler(request):
            nonlocal calls
            calls += 1
            if calls < 3:
                return httpx.Response(503, text="busy")
            return sse_response(text_response("resp_1", "ok"))

        frames = await read_all(make_backend(handler))
        assert calls == 3
        assert frames[-1]["type"] == "response.completed"

    async def test_failed_response_released_before_backoff(self, monkeypatch):
        responses: list[httpx.Response] = []
        open_during_sleep = []

        def handler(request):
            response = (httpx.Response(503, text="busy") if not responses
                        else sse_response(text_response("resp_1", "ok")))
            responses.append(response)
            return response

        async def record_sleep(delay):
            open_during_sleep.extend(not r.is_closed for r in responses)

        monkeypatch.setattr(asyncio, "sleep", record_sleep)
        frames = await read_all(make_backend(handler))

        assert frames[-1]["type"] == "response.completed"
        assert open_during_sleep == [False]

    async def test_aborted_request_is_never_posted(self):
        requests = []

        def handler(request):
            requests.append(request)
            return sse_response(text_response("resp_1", "ok"))

        abort = asyncio.Event()
        abort.set()
        with pytest.raises(TurnAborted):
            async with make_backend(handler).request({"model": "m", "input": []}, abort):
                pass
        assert requests == []

    async def test_retries_exhausted(self):
        calls = 0

        def handler(request):
            nonlocal calls
            calls += 1
            return httpx.Response(429, text="slow down")

        frames = await read_all(make_backend(handler))
        assert calls == 3
        assert frames == [{"type": "error", "error": {"message": "slow down", "status": 429}}]

    async def test_timeout_then_success(self):
        calls = 0

        def handler(request):
            nonlocal calls
            calls += 1
            if calls == 1:
                raise httpx.ReadTimeout("slow", request=request)
            return sse_response(text_response("resp_1", "ok"))

        frames = await read_all(make_backend(handler))
        assert calls == 2
        assert frames[0]["type"] == "response.created"

    async def test_persistent_timeout(self):
        def handler(request):
            raise httpx.ConnectTimeout("slow", request=request)

        with pytest.raises(FrameTimeoutError):
            await read_all(make_backend(handler))

    async def test_unreachable(self):
        def handler(request):
            raise httpx.ConnectError("refused", request=request)

        with pytest.raises(BridgeConnectionError):
            await read_all(make_backend(handler))


class TestErrorFrame:
    def test_plain_body(self):
        assert _error_frame(502, b"bad gateway")["error"] == {
            "message": "bad gateway", "status": 502,
        }

    def test_empty_body(self):
        assert _error_frame(500, b"")["error"] == {"message": "HTTP 500", "status": 500}

    def test_error_without_message(self):
        frame = _error_frame(400, b'{"error": {"code": "x"}}')
        assert frame["error"] == {"code": "x", "message": "HTTP 400", "status": 400}
