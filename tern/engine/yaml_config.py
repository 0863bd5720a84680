"""YAML configuration loader.

Settings are layered, lowest precedence first:

1. EngineConfig defaults
2. User file ``~/.tern/config.yaml``
3. Project file ``<cwd>/.tern/config.yaml``
4. TERN_* environment variables
5. CLI flags (applied by the caller)

Example YAML:
    model:
      id: doubao-seed-1-8-251228
      base_url: https://ark.cn-beijing.volces.com/api/v3
      thinking: true
      api_key_env: ARK_API_KEY

    engine:
      max_steps: 20
      subagent_max_steps: 10
      subagent_max_output_chars: 8000
      mcp_connect_timeout_seconds: 30
      bash_timeout_seconds: 30
      log_level: INFO
"""
from __future__ import annotations

import logging
import os
from pathlib import Path
from typing import Any

import yaml

from .config import EngineConfig, default_home

logger = logging.getLogger(__name__)

CONFIG_FILENAME = "config.yaml"

_MODEL_KEYS = {"id", "base_url", "thinking", "api_key_env"}
_ENGINE_KEYS = {
    "max_steps": int,
    "subagent_max_steps": int,
    "subagent_max_output_chars": int,
    "mcp_connect_timeout_seconds": float,
    "bash_timeout_seconds": float,
    "log_level": str,
}


def _load_yaml_file(path: Path, label: str) -> dict[str, Any]:
    """Load one YAML settings file.

    Returns an empty dict when the file is missing or malformed so
    callers can merge unconditionally.
    """
    if not path.is_file():
        logger.debug("_load_yaml_file: %s not found at %s", label, path)
        return {}
    try:
        with open(path, encoding="utf-8") as f:
            data = yaml.safe_load(f) or {}
    except yaml.YAMLError as exc:
        logger.warning("_load_yaml_file: YAML parse error in %s (%s): %s", label, path, exc)
        return {}
    except OSError as exc:
        logger.warning("_load_yaml_file: cannot read %s (%s): %s", label, path, exc)
        return {}
    if not isinstance(data, dict):
        logger.warning("_load_yaml_file: %s is not a mapping, ignoring", path)
        return {}
    logger.info(
        "_load_yaml_file: loaded %s from %s (sections: %s)",
        label, path, ", ".join(sorted(data)) or "empty",
    )
    return data


def _merge_sections(*layers: dict[str, Any]) -> dict[str, dict[str, Any]]:
    merged: dict[str, dict[str, Any]] = {}
    for layer in layers:
        for section, values in layer.items():
            if not isinstance(values, dict):
                logger.warning("Config section '%s' is not a mapping, ignoring", section)
                continue
            merged.setdefault(section, {}).update(values)
    return merged


def apply_settings(config: EngineConfig, raw: dict[str, Any]) -> EngineConfig:
    """Apply parsed ``model`` and ``engine`` sections onto *config*."""
    for section in raw:
        if section not in ("model", "engine"):
            logger.warning("Unknown config section '%s' ignored", section)

    model_raw = raw.get("model") or {}
    for key in model_raw:
        if key not in _MODEL_KEYS:
            logger.warning("Unknown model setting '%s' ignored", key)
    if "id" in model_raw:
        config.model = str(model_raw["id"])
    if "base_url" in model_raw:
        config.base_url = str(model_raw["base_url"]).rstrip("/")
    if "thinking" in model_raw:
        config.thinking = bool(model_raw["thinking"])
    key_env = model_raw.get("api_key_env")
    if key_env:
        config.api_key = os.getenv(str(key_env)) or config.api_key

    engine_raw = raw.get("engine") or {}
    for key, value in engine_raw.items():
        cast = _ENGINE_KEYS.get(key)
        if cast is None:
            logger.warning("Unknown engine setting '%s' ignored", key)
            continue
        try:
            setattr(config, key, cast(value))
        except (TypeError, ValueError):
            logger.warning("Invalid value for engine.%s: %r", key, value)
    return config


def load_engine_config(cwd: str | Path, home: Path | None = None) -> EngineConfig:
    """Build the effective EngineConfig for a working directory."""
    home = home or default_home()
    user_raw = _load_yaml_file(home / CONFIG_FILENAME, "user config")
    project_raw = _load_yaml_file(
        Path(cwd) / ".tern" / CONFIG_FILENAME, "project config",
    )
    config = EngineConfig(home=home)
    apply_settings(config, _merge_sections(user_raw, project_raw))
    config.apply_env()
    logger.info(
        "load_engine_config: model=%s base_url=%s thinking=%s max_steps=%d",
        config.model, config.base_url, config.thinking, config.max_steps,
    )
    return config
