"""Event types emitted by the assistant engine.

Each event corresponds to an engine callback dict, parsed into
a typed dataclass for safe consumption by a front-end.
"""
from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any


@dataclass
class EngineEvent:
    """Base event from the assistant engine."""
    event_type: str = ""
    agent_id: str = ""


@dataclass
class TurnStarted(EngineEvent):
    event_type: str = "turn_started"
    step_limit: int = 0
    tools: list[str] = field(default_factory=list)


@dataclass
class TurnFinished(EngineEvent):
    event_type: str = "turn_finished"
    outcome: str = ""
    steps: int = 0
    usage: dict[str, int] = field(default_factory=dict)
    error: str | None = None


@dataclass
class StreamChunk(EngineEvent):
    event_type: str = "stream_chunk"
    text: str = ""


@dataclass
class ReasoningChunk(EngineEvent):
    event_type: str = "reasoning_chunk"
    text: str = ""


@dataclass
class ToolCallStarted(EngineEvent):
    event_type: str = "tool_call_started"
    call_id: str = ""
    tool_name: str = ""
    arguments: str = ""


@dataclass
class ToolCallCompleted(EngineEvent):
    event_type: str = "tool_call_completed"
    call_id: str = ""
    tool_name: str = ""
    result: str = ""
    is_error: bool = False


@dataclass
class ConfirmationRequested(EngineEvent):
    event_type: str = "confirmation_requested"
    confirmation_id: str = ""
    tool_name: str = ""
    description: str = ""
    preview: str | None = None


@dataclass
class ConfirmationResolved(EngineEvent):
    event_type: str = "confirmation_resolved"
    confirmation_id: str = ""
    approved: bool = False
    source: str | None = None


@dataclass
class QuestionRequested(EngineEvent):
    event_type: str = "question_requested"
    question_id: str = ""
    question: str = ""
    options: list[dict[str, str]] = field(default_factory=list)


@dataclass
class QuestionResolved(EngineEvent):
    event_type: str = "question_resolved"
    question_id: str = ""
    answered: bool = False
    source: str | None = None


@dataclass
class TaskListChanged(EngineEvent):
    event_type: str = "task_list_changed"
    tasks: list[dict[str, Any]] = field(default_factory=list)


@dataclass
class StepLimitReached(EngineEvent):
    event_type: str = "step_limit_reached"
    steps: int = 0


@dataclass
class SubAgentStarted(EngineEvent):
    event_type: str = "subagent_started"
    task: str = ""


@dataclass
class SubAgentFinished(EngineEvent):
    event_type: str = "subagent_finished"
    is_error: bool = False
    duration_seconds: float = 0.0


@dataclass
class McpStatusChanged(EngineEvent):
    event_type: str = "mcp_status_changed"
    server: str = ""
    status: str = ""
    tool_count: int = 0
    error: str | None = None


_EVENT_MAP: dict[str, type[EngineEvent]] = {
    "turn_started": TurnStarted,
    "turn_finished": TurnFinished,
    "stream_chunk": StreamChunk,
    "reasoning_chunk": ReasoningChunk,
    "tool_call_started": ToolCallStarted,
    "tool_call_completed": ToolCallCompleted,
    "confirmation_requested": ConfirmationRequested,
    "confirmation_resolved": ConfirmationResolved,
    "question_requested": QuestionRequested,
    "question_resolved": QuestionResolved,
    "task_list_changed": TaskListChanged,
    "step_limit_reached": StepLimitReached,
    "subagent_started": SubAgentStarted,
    "subagent_finished": SubAgentFinished,
    "mcp_status_changed": McpStatusChanged,
}


def event_to_dict(event: EngineEvent) -> dict[str, Any]:
    """Convert a typed event back to the engine's callback dict shape."""
    data = {
        name: getattr(event, name)
        for name in event.__dataclass_fields__
        if name != "event_type"
    }
    data["event"] = event.event_type
    return data


def dict_to_event(data: dict[str, Any]) -> EngineEvent:
    """Convert an engine callback dict to a typed event dataclass."""
    event_type = data.get("event", "")
    cls = _EVENT_MAP.get(event_type, EngineEvent)
    # Filter dict keys to only those the dataclass accepts
    valid_fields = {f.name for f in cls.__dataclass_fields__.values()}
    filtered = {k: v for k, v in data.items() if k in valid_fields}
    if "event" in data and "event_type" not in filtered:
        filtered["event_type"] = data["event"]
    return cls(**filtered)
