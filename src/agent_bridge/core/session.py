"""Session coordinator: decides how much history each turn must resend.

Each logical session owns one continuation anchor (the id of the last
completed response the service still holds) and one step counter.  With a
valid anchor only the caller's newly added user messages are sent; without
one the whole conversation is reconstructed.
"""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass, field
from typing import Any, Protocol

from agent_bridge.events.bus import EventBus
from agent_bridge.protocol.request import convert_to_input
from agent_bridge.types import ChatMessage, EventType, TokenUsage

_logger = logging.getLogger(__name__)


class GenerationSource(Protocol):
    """What the coordinator needs from a backend to judge anchor freshness."""

    @property
    def generation(self) -> int: ...

    def is_current(self, generation: int | None) -> bool: ...


def _fingerprint(message: ChatMessage) -> tuple[str, str, str]:
    return (message.id, message.role, message.text)


@dataclass
class Session:
    """Per-conversation continuation state."""

    session_id: str
    max_steps: int = 30
    anchor_id: str | None = None
    anchor_generation: int | None = None
    usage: TokenUsage = field(default_factory=TokenUsage)
    step_count: int = 0
    accounted: list[tuple[str, str, str]] = field(default_factory=list)
    turn_lock: asyncio.Lock = field(default_factory=asyncio.Lock, repr=False)

    def set_anchor(self, anchor_id: str | None, generation: int) -> None:
        self.anchor_id = anchor_id
        self.anchor_generation = generation if anchor_id else None

    def clear_anchor(self) -> None:
        self.anchor_id = None
        self.anchor_generation = None


@dataclass
class TurnPlan:
    """Input for the first request of a caller turn."""

    messages: list[ChatMessage]
    input: list[dict[str, Any]]
    anchor_id: str | None = None

    @property
    def full_context(self) -> bool:
        return self.anchor_id is None

    def full_input(self) -> list[dict[str, Any]]:
        """The entire reconstructed conversation."""
        return convert_to_input(self.messages)


class SessionCoordinator:
    """Keeps one :class:`Session` per logical session id."""

    def __init__(self, max_steps: int = 30, event_bus: EventBus | None = None) -> None:
        self._max_steps = max_steps
        self._event_bus = event_bus
        self._sessions: dict[str, Session] = {}

    def get(self, session_id: str) -> Session:
        session = self._sessions.get(session_id)
        if session is None:
            session = Session(session_id=session_id, max_steps=self._max_steps)
            self._sessions[session_id] = session
        return session

    def drop(self, session_id: str) -> None:
        self._sessions.pop(session_id, None)

    # ------------------------------------------------------------------
    # Anchor handling
    # ------------------------------------------------------------------

    @staticmethod
    def anchor_valid(session: Session, backend: GenerationSource) -> bool:
        """True if the anchor exists and was produced on the live connection."""
        if session.anchor_id is None:
            return False
        return backend.is_current(session.anchor_generation)

    async def invalidate(self, session: Session, reason: str) -> None:
        """Forget the anchor; the next request goes out in full-context mode."""
        if session.anchor_id is None:
            return
        _logger.warning(
            "Session %s: dropping anchor %s (%s)",
            session.session_id, session.anchor_id, reason,
        )
        anchor_id = session.anchor_id
        session.clear_anchor()
        if self._event_bus:
            await self._event_bus.publish(
                EventType.ANCHOR_INVALIDATED,
                session_id=session.session_id,
                anchor_id=anchor_id,
                reason=reason,
            )

    # ------------------------------------------------------------------
    # Turn planning
    # ------------------------------------------------------------------

    async def plan_turn(
        self,
        session: Session,
        messages: list[ChatMessage],
        backend: GenerationSource,
    ) -> TurnPlan:
        """Work out the input for a new caller turn."""
        if session.anchor_id is not None and not self.anchor_valid(session, backend):
            await self.invalidate(session, "connection replaced")

        if session.anchor_id is not None:
            new_messages = self._new_user_messages(session, messages)
            if new_messages is not None:
                _logger.debug(
                    "Session %s: continuing from %s with %d new message(s)",
                    session.session_id, session.anchor_id, len(new_messages),
                )
                return TurnPlan(
                    messages=messages,
                    input=convert_to_input(new_messages),
                    anchor_id=session.anchor_id,
                )
            await self.invalidate(session, "history diverged")

        return TurnPlan(messages=messages, input=convert_to_input(messages))

    def commit_turn(self, session: Session, messages: list[ChatMessage]) -> None:
        """Record *messages* as held by the service after a finished turn."""
        session.accounted = [_fingerprint(m) for m in messages]

    @staticmethod
    def _new_user_messages(
        session: Session, messages: list[ChatMessage],
    ) -> list[ChatMessage] | None:
        known = session.accounted
        if [_fingerprint(m) for m in messages[: len(known)]] != known:
            return None
        added = [m for m in messages[len(known):] if m.role == "user"]
        return added or None
