"""MCP server configuration loading.

Two config sources, later overriding earlier by server name:

1. User-level: ~/.tern/mcp.json
2. Project-level: <cwd>/.tern/mcp.json

Config format (either top-level key is accepted):
{
    "mcpServers": {
        "filesystem": {
            "command": "npx",
            "args": ["-y", "@modelcontextprotocol/server-filesystem", "${HOME}"]
        },
        "github": {
            "type": "http",
            "url": "https://api.githubcopilot.com/mcp/",
            "headers": {"Authorization": "Bearer ${GITHUB_TOKEN}"}
        }
    }
}

String values may reference ``${VAR}`` or ``${VAR:-default}``. They are
expanded against the process environment without a shell; an unset
variable with no default becomes "".
"""

from __future__ import annotations

import json
import logging
import os
import re
from collections.abc import Mapping
from pathlib import Path
from typing import Any

from tern.engine.models import McpServerConfig, TransportKind

logger = logging.getLogger(__name__)

MCP_CONFIG_FILENAME = "mcp.json"

# Joins prefix, server and tool in mcp__<server>__<tool>.
NAME_SEPARATOR = "__"

_VAR_PATTERN = re.compile(r"\$\{([A-Za-z_][A-Za-z0-9_]*)(?::-([^}]*))?\}")

_LOCAL_TYPES = {"stdio", "local", "local-process"}
_REMOTE_TYPES = {"http", "streamable-http", "remote", "remote-stream", "sse"}


def expand_vars(value: str, env: Mapping[str, str] | None = None) -> str:
    env = os.environ if env is None else env

    def _sub(match: re.Match[str]) -> str:
        name, default = match.group(1), match.group(2)
        found = env.get(name)
        if found:
            return found
        return default if default is not None else ""

    return _VAR_PATTERN.sub(_sub, value)


def _expand(value: Any, env: Mapping[str, str] | None) -> Any:
    if isinstance(value, str):
        return expand_vars(value, env)
    if isinstance(value, list):
        return [_expand(v, env) for v in value]
    if isinstance(value, dict):
        return {k: _expand(v, env) for k, v in value.items()}
    return value


def parse_server_config(
    name: str,
    raw: Any,
    env: Mapping[str, str] | None = None,
) -> McpServerConfig | None:
    """Parse one server entry. Returns None (with a warning) if unusable."""
    if NAME_SEPARATOR in name:
        logger.warning(
            "MCP server name '%s' contains '%s', which is reserved for tool names; skipping",
            name, NAME_SEPARATOR,
        )
        return None
    if not isinstance(raw, dict):
        logger.warning("MCP server '%s' config is not an object, skipping", name)
        return None
    cfg = _expand(raw, env)
    declared = str(cfg.get("type") or "").lower()

    if declared:
        if declared in _LOCAL_TYPES:
            transport = TransportKind.LOCAL_PROCESS
        elif declared in _REMOTE_TYPES:
            transport = TransportKind.REMOTE_STREAM
        else:
            logger.warning("MCP server '%s' has unknown type '%s', skipping", name, declared)
            return None
    elif cfg.get("url") and not cfg.get("command"):
        transport = TransportKind.REMOTE_STREAM
    else:
        transport = TransportKind.LOCAL_PROCESS

    if transport is TransportKind.LOCAL_PROCESS and not cfg.get("command"):
        logger.warning("local MCP server '%s' missing 'command', skipping", name)
        return None
    if transport is TransportKind.REMOTE_STREAM and not cfg.get("url"):
        logger.warning("remote MCP server '%s' missing 'url', skipping", name)
        return None

    return McpServerConfig(
        name=name,
        transport=transport,
        command=cfg.get("command"),
        args=[str(a) for a in cfg.get("args") or []],
        env={str(k): str(v) for k, v in (cfg.get("env") or {}).items()},
        cwd=cfg.get("cwd"),
        url=cfg.get("url"),
        headers={str(k): str(v) for k, v in (cfg.get("headers") or {}).items()},
        sse=declared == "sse",
    )


def load_config_file(
    path: Path,
    env: Mapping[str, str] | None = None,
) -> dict[str, McpServerConfig]:
    if not path.is_file():
        logger.debug("MCP config not found at %s", path)
        return {}
    try:
        data = json.loads(path.read_text(encoding="utf-8"))
    except (OSError, json.JSONDecodeError) as exc:
        logger.warning("Failed to load MCP config from %s: %s", path, exc)
        return {}
    if not isinstance(data, dict):
        logger.warning("MCP config %s is not a JSON object, skipping", path)
        return {}
    servers = data.get("mcpServers")
    if servers is None:
        servers = data.get("servers")
    if not isinstance(servers, dict):
        logger.warning("MCP config %s has no 'mcpServers' or 'servers' object", path)
        return {}

    configs: dict[str, McpServerConfig] = {}
    for name, raw in servers.items():
        parsed = parse_server_config(str(name), raw, env)
        if parsed is not None:
            configs[parsed.name] = parsed
    logger.info(
        "Loaded MCP servers from %s: [%s]",
        path, ", ".join(configs) if configs else "none",
    )
    return configs


def load_mcp_configs(
    cwd: str | Path,
    home: Path,
    env: Mapping[str, str] | None = None,
) -> dict[str, McpServerConfig]:
    """Merged user + project server configs; project wins on name clashes."""
    merged = load_config_file(home / MCP_CONFIG_FILENAME, env)
    merged.update(load_config_file(Path(cwd) / ".tern" / MCP_CONFIG_FILENAME, env))
    return merged
