"""Core loop components for Agent Bridge."""

from agent_bridge.core.executor import Executor, ToolOutcome, truncate_output
from agent_bridge.core.loop import LoopState, ToolCallLoop
from agent_bridge.core.session import Session, SessionCoordinator, TurnPlan
from agent_bridge.core.stats import ResponseStats, StatsTracker

__all__ = [
    "Executor",
    "LoopState",
    "ResponseStats",
    "Session",
    "SessionCoordinator",
    "StatsTracker",
    "ToolCallLoop",
    "ToolOutcome",
    "TurnPlan",
    "truncate_output",
]
