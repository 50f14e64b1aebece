"""Configuration for Agent Bridge.

Config discovery (first match wins):
  1. ``--config`` flag
  2. ``./agent_bridge.yaml``
  3. ``~/.config/agent-bridge/config.yaml``
  4. Built-in defaults
"""

from __future__ import annotations

import logging
import os
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any

import yaml

_logger = logging.getLogger(__name__)

DEFAULT_INSTRUCTIONS = (
    "You are a helpful assistant with access to a small workspace. "
    "Use your tools to explore files before answering, and keep answers short."
)

TRANSPORTS = ("websocket", "http")


# ---------------------------------------------------------------------------
# Config data structures
# ---------------------------------------------------------------------------

@dataclass
class ProfileSpec:
    """A named completion-service profile."""

    provider: str = "openai"
    url: str = "https://api.openai.com/v1"
    ws_url: str = "wss://api.openai.com/v1/responses"
    api_key: str = ""
    model: str = "gpt-4.1-mini"
    beta_header: str = "responses_websockets=2026-02-06"
    extra_params: dict[str, Any] = field(default_factory=dict)

    def resolved_api_key(self) -> str:
        """Explicit key, else ``OPENAI_API_KEY`` from the environment."""
        return self.api_key or os.environ.get("OPENAI_API_KEY", "")


@dataclass
class BridgeConfig:
    """Top-level config for Agent Bridge."""

    # Active profile name
    profile: str = "openai"

    # Named profiles
    profiles: dict[str, ProfileSpec] = field(
        default_factory=lambda: {"openai": ProfileSpec()}
    )

    # "websocket" (persistent connection) or "http" (request per step)
    transport: str = "websocket"

    instructions: str = DEFAULT_INSTRUCTIONS

    # Agent loop
    max_steps: int = 30
    max_tool_output: int = 10000

    # Timeouts (seconds)
    connect_timeout: float = 30.0
    frame_timeout: float = 120.0
    drain_timeout: float = 10.0
    ping_interval: float = 30.0
    ping_timeout: float = 10.0

    # Demo toolset root; None disables the workspace tools
    workspace: str | None = None

    # Forwarded to the service when set
    store: bool | None = None

    @property
    def active_profile(self) -> ProfileSpec:
        return self.profiles.get(self.profile, ProfileSpec())


# ---------------------------------------------------------------------------
# Loading
# ---------------------------------------------------------------------------

_SEARCH_PATHS = [
    Path("./agent_bridge.yaml"),
    Path.home() / ".config" / "agent-bridge" / "config.yaml",
]

_SCALAR_KEYS = (
    "instructions", "max_steps", "max_tool_output", "connect_timeout",
    "frame_timeout", "drain_timeout", "ping_interval", "ping_timeout",
    "workspace", "store",
)


def _parse_profile(raw: dict[str, Any]) -> ProfileSpec:
    defaults = ProfileSpec()
    return ProfileSpec(
        provider=raw.get("provider", defaults.provider),
        url=raw.get("url", defaults.url),
        ws_url=raw.get("ws_url", defaults.ws_url),
        api_key=raw.get("api_key", ""),
        model=raw.get("model", defaults.model),
        beta_header=raw.get("beta_header", defaults.beta_header),
        extra_params=raw.get("extra_params", {}),
    )


def load_config(path: str | Path | None = None) -> BridgeConfig:
    """Load configuration from YAML.

    Parameters
    ----------
    path:
        Explicit config path.  If *None*, search default locations.

    Returns
    -------
    BridgeConfig
    """
    config_path: Path | None = None

    if path is not None:
        config_path = Path(path)
        if not config_path.exists():
            _logger.warning("Config file not found: %s, using defaults", path)
            return BridgeConfig()
    else:
        for candidate in _SEARCH_PATHS:
            if candidate.exists():
                config_path = candidate
                break

    if config_path is None:
        _logger.info("No config file found, using defaults")
        return BridgeConfig()

    _logger.info("Loading config from %s", config_path)
    with open(config_path) as f:
        raw = yaml.safe_load(f) or {}

    profiles: dict[str, ProfileSpec] = {}
    for name, praw in (raw.get("profiles") or {}).items():
        profiles[name] = _parse_profile(praw or {})
    if not profiles:
        profiles["openai"] = ProfileSpec()

    transport = raw.get("transport", "websocket")
    if transport not in TRANSPORTS:
        raise ValueError(
            f"Unknown transport {transport!r}; expected one of {', '.join(TRANSPORTS)}"
        )

    config = BridgeConfig(
        profile=raw.get("profile", next(iter(profiles))),
        profiles=profiles,
        transport=transport,
    )
    for key in _SCALAR_KEYS:
        if raw.get(key) is not None:
            setattr(config, key, raw[key])
    return config
