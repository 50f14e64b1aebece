"""Per-turn response statistics derived from the chunk stream."""

from __future__ import annotations

import copy
import time
from dataclasses import dataclass, field
from typing import Callable

from agent_bridge.types import Chunk, ChunkType


@dataclass
class ResponseStats:
    """Timing and usage figures for one caller turn.

    Times are ``time.monotonic()`` readings in seconds; latencies and ttfb
    are milliseconds.
    """

    message_id: str = ""
    start_time: float = 0.0
    end_time: float | None = None
    steps: int = 0
    tool_calls: int = 0
    step_latencies: list[int] = field(default_factory=list)
    step_ttfb: list[int] = field(default_factory=list)
    step_response_ids: list[str] = field(default_factory=list)
    current_step_start: float | None = None
    tokens: dict[str, int] | None = None
    tool_call_steps: dict[str, int] = field(default_factory=dict)
    error: str | None = None

    @property
    def total_ms(self) -> int | None:
        if self.end_time is None:
            return None
        return round((self.end_time - self.start_time) * 1000)


class StatsTracker:
    """Feed every chunk of a turn to :meth:`observe`.

    *on_update* receives a snapshot whenever the figures change.
    """

    def __init__(
        self,
        on_update: Callable[[ResponseStats], None] | None = None,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self._on_update = on_update
        self._clock = clock
        self.stats: ResponseStats | None = None

    def observe(self, chunk: Chunk) -> None:
        stats = self.stats
        if chunk.type is ChunkType.START:
            self.stats = ResponseStats(
                message_id=chunk.get("messageId", ""),
                start_time=self._clock(),
            )
        elif stats is None:
            return
        elif chunk.type is ChunkType.START_STEP:
            stats.steps += 1
            stats.current_step_start = self._clock()
            if chunk.get("responseId"):
                stats.step_response_ids.append(chunk["responseId"])
            if chunk.get("ttfb") is not None:
                stats.step_ttfb.append(chunk["ttfb"])
        elif chunk.type is ChunkType.TOOL_INPUT_START:
            stats.tool_calls += 1
            stats.tool_call_steps[chunk["toolCallId"]] = stats.steps - 1
        elif chunk.type is ChunkType.FINISH_STEP:
            if stats.current_step_start is None:
                return
            stats.step_latencies.append(
                round((self._clock() - stats.current_step_start) * 1000)
            )
            stats.current_step_start = None
        elif chunk.type is ChunkType.DATA_STATS:
            tokens = (chunk.get("data") or {}).get("tokens")
            if not tokens:
                return
            stats.tokens = dict(tokens)
        elif chunk.is_terminal:
            stats.end_time = self._clock()
            if chunk.type is ChunkType.ERROR:
                stats.error = chunk.get("errorText")
        else:
            return
        self._notify()

    def _notify(self) -> None:
        if self._on_update and self.stats is not None:
            self._on_update(copy.deepcopy(self.stats))
