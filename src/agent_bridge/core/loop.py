"""Tool-call loop engine.

Drives one caller turn as an explicit state machine::

    IDLE -> AWAITING_MODEL -> DONE
                           -> EXECUTING_TOOLS -> AWAITING_MODEL
                           -> STEP_BUDGET_EXCEEDED
                           -> FAILED

Every turn ends with exactly one terminal chunk (``finish`` or ``error``)
unless it is cancelled, in which case chunk emission simply stops.
"""

from __future__ import annotations

import asyncio
import enum
import logging
import time
from contextlib import AbstractAsyncContextManager, aclosing
from typing import Any, AsyncIterator, Callable, Protocol

from agent_bridge.core.abort import TurnAborted, race, until_aborted
from agent_bridge.core.executor import Executor
from agent_bridge.core.session import Session, SessionCoordinator, TurnPlan
from agent_bridge.errors import (
    AnchorNotFoundError,
    BridgeConnectionError,
    ProtocolError,
    UpstreamError,
)
from agent_bridge.events.bus import EventBus
from agent_bridge.protocol.request import ResponseRequest, tool_output_item
from agent_bridge.protocol.translator import ChunkTranslator, tool_call_chunk_id
from agent_bridge.protocol.wire import decode_frame
from agent_bridge.types import Chunk, ChunkType, EventType

_logger = logging.getLogger(__name__)


class ResponseBackend(Protocol):
    """Sends one ``response.create`` payload and streams its frames back."""

    @property
    def generation(self) -> int: ...

    def is_current(self, generation: int | None) -> bool: ...

    def request(
        self,
        payload: dict[str, Any],
        abort: asyncio.Event | None = None,
        anchor_generation: int | None = None,
    ) -> AbstractAsyncContextManager[AsyncIterator[dict[str, Any]]]:
        """Open one request.

        Raises :class:`TurnAborted` instead of sending once *abort* is set,
        and :class:`AnchorNotFoundError` if the payload's anchor was produced
        on a connection other than the one it would be sent on.
        """

    async def aclose(self) -> None: ...


class LoopState(enum.Enum):
    IDLE = "idle"
    AWAITING_MODEL = "awaiting_model"
    EXECUTING_TOOLS = "executing_tools"
    DONE = "done"
    STEP_BUDGET_EXCEEDED = "step_budget_exceeded"
    FAILED = "failed"


TERMINAL_STATES = frozenset({
    LoopState.DONE,
    LoopState.STEP_BUDGET_EXCEEDED,
    LoopState.FAILED,
})


class ToolCallLoop:
    """Runs request / tool-execution cycles until a turn is finished.

    Parameters
    ----------
    backend:
        Where requests go (persistent WebSocket or plain HTTP).
    executor:
        Runs the tool calls the model asks for.
    coordinator:
        Owns anchor invalidation for the session.
    model, instructions, tools, extra:
        Request fields sent with every step.
    """

    def __init__(
        self,
        backend: ResponseBackend,
        executor: Executor,
        coordinator: SessionCoordinator,
        model: str,
        instructions: str = "",
        tools: list[dict[str, Any]] | None = None,
        extra: dict[str, Any] | None = None,
        event_bus: EventBus | None = None,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self._backend = backend
        self._executor = executor
        self._coordinator = coordinator
        self._model = model
        self._instructions = instructions
        self._tools = tools or []
        self._extra = extra or {}
        self._event_bus = event_bus
        self._clock = clock
        self.state = LoopState.IDLE

    async def run(
        self,
        session: Session,
        plan: TurnPlan,
        abort: asyncio.Event | None = None,
    ) -> AsyncIterator[Chunk]:
        """Run one caller turn, yielding chunks as they are produced."""
        session.step_count = 0
        initial_anchor = session.anchor_id
        anchor = plan.anchor_id
        step_input = plan.input
        turn_items: list[dict[str, Any]] = []
        outcome = None
        started = False
        error_text = ""

        self.state = LoopState.AWAITING_MODEL
        await self._publish(
            EventType.TURN_STARTED,
            session_id=session.session_id,
            full_context=plan.full_context,
        )

        try:
            while self.state not in TERMINAL_STATES:
                _check_abort(abort)

                if self.state is LoopState.AWAITING_MODEL:
                    if anchor is not None and not self._coordinator.anchor_valid(
                        session, self._backend,
                    ):
                        await self._coordinator.invalidate(session, "connection replaced")
                        anchor = None
                        step_input = plan.full_input() + turn_items

                    request = ResponseRequest(
                        model=self._model,
                        input=step_input,
                        instructions=self._instructions,
                        tools=self._tools,
                        previous_response_id=anchor,
                        extra=self._extra,
                    )
                    translator = ChunkTranslator(
                        session.usage, emit_start=not started, clock=self._clock,
                    )
                    try:
                        async with aclosing(
                            self._stream_step(
                                request, translator, abort,
                                session.anchor_generation if anchor else None,
                            ),
                        ) as chunks:
                            async for chunk in chunks:
                                yield chunk
                    except AnchorNotFoundError as e:
                        started = started or translator.started
                        await self._coordinator.invalidate(session, e.reason)
                        anchor = None
                        step_input = plan.full_input() + turn_items
                        continue
                    started = started or translator.started
                    outcome = translator.outcome

                    if outcome.anchor_missing:
                        error_text = "Service rejected a request that carried no anchor"
                        self.state = LoopState.FAILED
                    elif not outcome.completed:
                        error_text = "Response stream ended before completion"
                        self.state = LoopState.FAILED
                    else:
                        session.set_anchor(outcome.response_id, self._backend.generation)
                        if not outcome.tool_calls:
                            self.state = LoopState.DONE
                        elif session.step_count >= session.max_steps:
                            self.state = LoopState.STEP_BUDGET_EXCEEDED
                        else:
                            self.state = LoopState.EXECUTING_TOOLS

                elif self.state is LoopState.EXECUTING_TOOLS:
                    outputs: list[dict[str, Any]] = []
                    for call in outcome.tool_calls:
                        result = await race(self._executor.run(call), abort)
                        yield Chunk(ChunkType.TOOL_OUTPUT_AVAILABLE, {
                            "toolCallId": tool_call_chunk_id(call.call_id),
                            "output": result.output,
                            "dynamic": True,
                        })
                        outputs.append(tool_output_item(call.call_id, result.output))
                    yield Chunk(ChunkType.FINISH_STEP)

                    turn_items.extend(call.to_input_item() for call in outcome.tool_calls)
                    turn_items.extend(outputs)
                    anchor = session.anchor_id
                    step_input = outputs if anchor else plan.full_input() + turn_items
                    session.step_count += 1
                    self.state = LoopState.AWAITING_MODEL

        except TurnAborted:
            _logger.info("Session %s: turn aborted", session.session_id)
            await self._cancelled(session, initial_anchor)
            return
        except BridgeConnectionError as e:
            _logger.warning("Session %s: connection failed: %s", session.session_id, e)
            error_text = str(e) or "Connection failed"
            self.state = LoopState.FAILED
        except UpstreamError as e:
            _logger.warning("Session %s: upstream error: %s", session.session_id, e)
            error_text = str(e)
            self.state = LoopState.FAILED
        except Exception as e:
            _logger.exception("Unexpected failure in session %s", session.session_id)
            error_text = f"Internal error: {e}"
            self.state = LoopState.FAILED
        finally:
            if self.state in (LoopState.AWAITING_MODEL, LoopState.EXECUTING_TOOLS):
                # Closed or cancelled by the consumer mid-turn
                await self._cancelled(session, initial_anchor)

        if self.state is LoopState.FAILED:
            if session.anchor_id != initial_anchor:
                await self._coordinator.invalidate(session, "turn failed")
            if error_text:
                yield Chunk(ChunkType.ERROR, {"errorText": error_text})
            await self._publish(
                EventType.TURN_ERROR,
                session_id=session.session_id,
                error=error_text,
            )
            return

        if self.state is LoopState.DONE:
            yield Chunk(ChunkType.FINISH_STEP)
            self._coordinator.commit_turn(session, plan.messages)
        else:
            _logger.info(
                "Session %s: step budget of %d reached; pending tool calls not run",
                session.session_id, session.max_steps,
            )
            await self._coordinator.invalidate(session, "tool calls left unanswered")
        yield Chunk(ChunkType.FINISH, {"finishReason": "stop"})
        await self._publish(
            EventType.TURN_DONE,
            session_id=session.session_id,
            steps=session.step_count,
            budget_exceeded=self.state is LoopState.STEP_BUDGET_EXCEEDED,
        )

    # ------------------------------------------------------------------
    # One request
    # ------------------------------------------------------------------

    async def _stream_step(
        self,
        request: ResponseRequest,
        translator: ChunkTranslator,
        abort: asyncio.Event | None,
        anchor_generation: int | None,
    ) -> AsyncIterator[Chunk]:
        """Send *request* and translate its frames until a terminal one."""
        _logger.info(
            "Sending request %s (%d input item(s), anchor=%s)",
            request.id, len(request.input), request.previous_response_id,
        )
        await self._publish(
            EventType.REQUEST_SENT,
            request_id=request.id,
            anchor_id=request.previous_response_id,
            items=len(request.input),
        )
        try:
            async with self._backend.request(
                request.to_payload(), abort, anchor_generation,
            ) as frames:
                translator.mark_sent()
                async with aclosing(until_aborted(frames, abort)) as stream:
                    async for frame in stream:
                        try:
                            event = decode_frame(frame)
                        except ProtocolError as e:
                            _logger.warning("Dropping malformed frame: %s", e)
                            continue
                        if event is None:
                            continue
                        for chunk in translator.feed(event):
                            yield chunk
                        if event.is_terminal:
                            break
        finally:
            translator.close()

        outcome = translator.outcome
        if outcome.anchor_missing and request.previous_response_id:
            raise AnchorNotFoundError(request.previous_response_id)
        if outcome.error is not None:
            raise UpstreamError(
                outcome.error.get("message") or "Unknown upstream error",
                code=outcome.error.get("code"),
            )

    # ------------------------------------------------------------------
    # Helpers
    # ------------------------------------------------------------------

    async def _cancelled(self, session: Session, initial_anchor: str | None) -> None:
        self.state = LoopState.IDLE
        if session.anchor_id != initial_anchor:
            # The anchor may reference tool calls that were never answered
            session.clear_anchor()
        await self._publish(EventType.TURN_CANCELLED, session_id=session.session_id)

    async def _publish(self, event_type: EventType, **data: Any) -> None:
        if self._event_bus:
            await self._event_bus.publish(event_type, **data)


def _check_abort(abort: asyncio.Event | None) -> None:
    if abort is not None and abort.is_set():
        raise TurnAborted()
