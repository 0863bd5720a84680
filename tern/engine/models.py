"""Core data models for the assistant engine.

All dataclasses, enums, and type aliases. Single source of truth
to avoid circular imports.
"""
from __future__ import annotations

import time
import uuid
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Union

from tern.shared.models.message import ChatMessage, ToolCall


def _now_ms() -> int:
    return int(time.time() * 1000)


def _short_id() -> str:
    return str(uuid.uuid4())[:8]


class TaskStatus(str, Enum):
    """Task graph record states."""
    PENDING = "pending"
    IN_PROGRESS = "in_progress"
    COMPLETED = "completed"
    DELETED = "deleted"


# Tasks in these states are never valid dependency targets.
CLOSED_TASK_STATES = frozenset({TaskStatus.COMPLETED, TaskStatus.DELETED})


class ServerStatus(str, Enum):
    """MCP server connection states. See lifecycle.py for transition rules."""
    CONNECTING = "connecting"
    CONNECTED = "connected"
    ERROR = "error"
    DISCONNECTED = "disconnected"


class TransportKind(str, Enum):
    """How an MCP server is reached."""
    LOCAL_PROCESS = "local-process"
    REMOTE_STREAM = "remote-stream"


class TurnOutcome(str, Enum):
    """How a single agent turn ended."""
    COMPLETED = "completed"
    STEP_LIMIT = "step_limit"
    ABORTED = "aborted"
    ERROR = "error"


# Only these outcomes are committed to history and saved.
COMMITTED_OUTCOMES = frozenset({TurnOutcome.COMPLETED, TurnOutcome.STEP_LIMIT})


@dataclass
class Task:
    """A shared unit of work visible to every agent in a session.

    Dependency sets are kept as insertion-ordered lists so the persisted
    form is stable. Empty sets and empty metadata serialize as absent.
    """
    subject: str
    id: str = field(default_factory=_short_id)
    description: str | None = None
    status: TaskStatus = TaskStatus.PENDING
    active_form: str | None = None
    owner: str | None = None
    blocks: list[str] = field(default_factory=list)
    blocked_by: list[str] = field(default_factory=list)
    metadata: dict[str, Any] = field(default_factory=dict)
    created_at: int = field(default_factory=_now_ms)
    updated_at: int = field(default_factory=_now_ms)

    def to_dict(self) -> dict[str, Any]:
        data: dict[str, Any] = {
            "id": self.id,
            "subject": self.subject,
            "status": self.status.value,
        }
        if self.description is not None:
            data["description"] = self.description
        if self.active_form is not None:
            data["activeForm"] = self.active_form
        if self.owner is not None:
            data["owner"] = self.owner
        if self.blocks:
            data["blocks"] = list(self.blocks)
        if self.blocked_by:
            data["blockedBy"] = list(self.blocked_by)
        if self.metadata:
            data["metadata"] = dict(self.metadata)
        data["createdAt"] = self.created_at
        data["updatedAt"] = self.updated_at
        return data

    def summary(self) -> dict[str, Any]:
        """Compact listing form used by the taskList tool."""
        data: dict[str, Any] = {
            "id": self.id,
            "subject": self.subject,
            "status": self.status.value,
        }
        if self.owner is not None:
            data["owner"] = self.owner
        if self.blocked_by:
            data["blockedBy"] = list(self.blocked_by)
        return data

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> Task:
        now = _now_ms()
        return cls(
            id=str(data["id"]),
            subject=str(data.get("subject", "")),
            description=data.get("description"),
            status=TaskStatus(data.get("status", TaskStatus.PENDING.value)),
            active_form=data.get("activeForm"),
            owner=data.get("owner"),
            blocks=list(data.get("blocks") or []),
            blocked_by=list(data.get("blockedBy") or []),
            metadata=dict(data.get("metadata") or {}),
            created_at=int(data.get("createdAt", now)),
            updated_at=int(data.get("updatedAt", now)),
        )


@dataclass
class McpServerConfig:
    """Parsed configuration for one MCP server."""
    name: str
    transport: TransportKind
    command: str | None = None
    args: list[str] = field(default_factory=list)
    env: dict[str, str] = field(default_factory=dict)
    cwd: str | None = None
    url: str | None = None
    headers: dict[str, str] = field(default_factory=dict)
    # Remote servers that only speak the older HTTP+SSE protocol.
    sse: bool = False


@dataclass
class ServerConnection:
    """Live state of one configured MCP server."""
    name: str
    config: McpServerConfig
    status: ServerStatus = ServerStatus.DISCONNECTED
    tool_count: int = 0
    last_error: str | None = None
    handle: Any = field(default=None, repr=False)

    def snapshot(self) -> dict[str, Any]:
        return {
            "name": self.name,
            "transport": self.config.transport.value,
            "status": self.status.value,
            "toolCount": self.tool_count,
            "error": self.last_error,
        }


# ── Model stream events ──────────────────────────────────────────


@dataclass
class TextDelta:
    text: str


@dataclass
class ReasoningDelta:
    text: str


@dataclass
class ToolCallStart:
    call_id: str
    name: str


@dataclass
class ToolInputDelta:
    call_id: str
    delta: str


@dataclass
class ToolCallEnd:
    call_id: str


@dataclass
class Finish:
    reason: str = "stop"
    usage: dict[str, int] = field(default_factory=dict)


ModelEvent = Union[
    TextDelta, ReasoningDelta, ToolCallStart, ToolInputDelta, ToolCallEnd, Finish,
]


@dataclass
class PendingToolCall:
    """A tool call being assembled from stream deltas."""
    call_id: str
    name: str
    raw_input: str = ""
    closed: bool = False

    def to_tool_call(self) -> ToolCall:
        return ToolCall(id=self.call_id, name=self.name, arguments=self.raw_input)


@dataclass
class TurnState:
    """Transient per-turn accumulator, owned by one agent loop."""
    text: str = ""
    reasoning: str = ""
    open_calls: dict[str, PendingToolCall] = field(default_factory=dict)
    step: int = 0
    usage: dict[str, int] = field(default_factory=dict)

    def add_usage(self, usage: dict[str, int]) -> None:
        for key, value in usage.items():
            if isinstance(value, int):
                self.usage[key] = self.usage.get(key, 0) + value

    def reset_step(self) -> None:
        self.text = ""
        self.reasoning = ""
        self.open_calls = {}


@dataclass
class TurnResult:
    """Final result of one agent turn."""
    outcome: TurnOutcome
    text: str = ""
    messages: list[ChatMessage] = field(default_factory=list)
    steps: int = 0
    usage: dict[str, int] = field(default_factory=dict)
    error: str | None = None

    @property
    def committed(self) -> bool:
        return self.outcome in COMMITTED_OUTCOMES
