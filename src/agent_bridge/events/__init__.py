"""Lifecycle event bus for Agent Bridge."""

from agent_bridge.events.bus import EventBus

__all__ = ["EventBus"]
