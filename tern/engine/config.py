"""Configuration loaded from environment variables.

All settings have sensible defaults. Override via TERN_* env vars,
or via ~/.tern/config.yaml (see yaml_config.py).
"""
from __future__ import annotations

import logging
import os
from collections.abc import Awaitable, Callable
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any

logger = logging.getLogger(__name__)


# Optional async callback for real-time event observation.
# Signature: async def callback(event: dict[str, Any]) -> None
EventCallback = Callable[[dict[str, Any]], Awaitable[None]]

DEFAULT_BASE_URL = "https://ark.cn-beijing.volces.com/api/v3"
DEFAULT_MODEL = "doubao-seed-1-8-251228"


async def fire_event(
    callback: EventCallback | None,
    event: dict[str, Any],
) -> None:
    """Fire an event callback if set. Observer errors never reach the engine."""
    if callback is None:
        return
    try:
        await callback(event)
    except Exception:
        logger.debug("Event callback failed for %s", event.get("event"), exc_info=True)


def _env_bool(name: str, default: bool) -> bool:
    raw = os.getenv(name)
    if raw is None or raw == "":
        return default
    return raw.lower() in {"1", "true", "yes", "on"}


def default_home() -> Path:
    return Path(os.getenv("TERN_HOME") or Path.home() / ".tern")


@dataclass
class EngineConfig:
    """Assistant engine configuration."""

    # Model endpoint
    model: str = DEFAULT_MODEL
    base_url: str = DEFAULT_BASE_URL
    api_key: str | None = field(default=None, repr=False)
    thinking: bool = True

    # Turn limits
    max_steps: int = 20
    subagent_max_steps: int = 10
    subagent_max_output_chars: int = 8000

    # Per-server time limit for connect + first tool probe.
    mcp_connect_timeout_seconds: float = 30.0
    bash_timeout_seconds: float = 30.0

    # Skip every confirmation prompt. Only honoured when stdin is not a TTY.
    unattended: bool = False

    log_level: str = "INFO"

    # Root for tasks/, projects/, logs/ and user-level config files.
    home: Path = field(default_factory=default_home)

    # Optional async callback for real-time event observation.
    # Receives dicts like {"event": "stream_chunk", "agent_id": "...", ...}
    event_callback: EventCallback | None = field(default=None, repr=False)

    @property
    def tasks_dir(self) -> Path:
        return self.home / "tasks"

    @property
    def projects_dir(self) -> Path:
        return self.home / "projects"

    @property
    def logs_dir(self) -> Path:
        return self.home / "logs"

    def apply_env(self) -> EngineConfig:
        """Overlay any TERN_* environment variables onto this config."""
        tern_vars = sorted(
            k for k in os.environ if k.startswith("TERN_") and k != "TERN_API_KEY"
        )
        if tern_vars:
            logger.info(
                "EngineConfig.apply_env: TERN_* env overrides: %s",
                ", ".join(f"{k}={os.environ[k]}" for k in tern_vars),
            )
        else:
            logger.debug("EngineConfig.apply_env: no TERN_* env vars set")

        self.model = os.getenv("TERN_MODEL", self.model)
        self.base_url = os.getenv("TERN_BASE_URL", self.base_url)
        self.api_key = (
            os.getenv("TERN_API_KEY") or os.getenv("ARK_API_KEY") or self.api_key
        )
        self.thinking = _env_bool("TERN_THINKING", self.thinking)
        self.max_steps = int(os.getenv("TERN_MAX_STEPS", str(self.max_steps)))
        self.subagent_max_steps = int(os.getenv(
            "TERN_SUBAGENT_MAX_STEPS", str(self.subagent_max_steps)
        ))
        self.subagent_max_output_chars = int(os.getenv(
            "TERN_SUBAGENT_MAX_OUTPUT", str(self.subagent_max_output_chars)
        ))
        self.mcp_connect_timeout_seconds = float(os.getenv(
            "TERN_MCP_CONNECT_TIMEOUT", str(self.mcp_connect_timeout_seconds)
        ))
        self.bash_timeout_seconds = float(os.getenv(
            "TERN_BASH_TIMEOUT", str(self.bash_timeout_seconds)
        ))
        self.log_level = os.getenv("TERN_LOG_LEVEL", self.log_level)
        return self

    @classmethod
    def from_env(cls) -> EngineConfig:
        """Load configuration from TERN_* environment variables."""
        config = cls().apply_env()
        logger.info(
            "EngineConfig.from_env: model=%s base_url=%s max_steps=%d log_level=%s",
            config.model, config.base_url, config.max_steps, config.log_level,
        )
        return config
