"""MCP server connection state machine.

Defines valid transitions and enforces them. Invalid transitions
raise ValueError rather than silently proceeding.

State Diagram:

    DISCONNECTED ──> CONNECTING ──┬──> CONNECTED ──┬──> ERROR (probe failed)
                         ^        │                │
                         │        └──> ERROR       └──> DISCONNECTED
                         │               │
                         └───────────────┘  (reconnect)

    CONNECTED/ERROR/CONNECTING ──> CONNECTING  (reconnect)
    Any state ──> DISCONNECTED  (close_all)
"""
from __future__ import annotations

from .models import ServerStatus

VALID_TRANSITIONS: dict[ServerStatus, set[ServerStatus]] = {
    ServerStatus.DISCONNECTED: {
        ServerStatus.CONNECTING,
        ServerStatus.DISCONNECTED,
    },
    ServerStatus.CONNECTING: {
        ServerStatus.CONNECTED,
        ServerStatus.ERROR,
        ServerStatus.CONNECTING,
        ServerStatus.DISCONNECTED,
    },
    ServerStatus.CONNECTED: {
        ServerStatus.ERROR,
        ServerStatus.CONNECTING,
        ServerStatus.DISCONNECTED,
    },
    ServerStatus.ERROR: {
        ServerStatus.CONNECTING,
        ServerStatus.DISCONNECTED,
    },
}


def validate_transition(current: ServerStatus, target: ServerStatus) -> None:
    """Validate a state transition. Raises ValueError if invalid."""
    allowed = VALID_TRANSITIONS.get(current, set())
    if target not in allowed:
        allowed_str = ", ".join(sorted(s.value for s in allowed)) or "none"
        raise ValueError(
            f"Invalid server transition: {current.value} -> {target.value}. "
            f"Allowed from {current.value}: {allowed_str}"
        )
