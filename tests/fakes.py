"""Scripted test doubles shared by the engine tests."""
from __future__ import annotations

import json
from collections.abc import AsyncIterator, Awaitable, Callable
from typing import Any, Union

from tern.engine.models import (
    Finish,
    ModelEvent,
    TextDelta,
    ToolCallEnd,
    ToolCallStart,
    ToolInputDelta,
)
from tern.engine.providers.base import ModelClient, ModelRequest
from tern.engine.tools.base import Tool, ToolContext, ToolResult

# A step is either a list of events, or an async callable that receives
# the request and yields events.
Step = Union[list[ModelEvent], Callable[[ModelRequest], AsyncIterator[ModelEvent]]]


def text_step(text: str, usage: dict[str, int] | None = None) -> list[ModelEvent]:
    return [TextDelta(text), Finish("stop", usage or {})]


def tool_step(*calls: tuple[str, str, dict[str, Any] | str], text: str = "") -> list[ModelEvent]:
    """One step requesting each (call_id, name, args) in order."""
    events: list[ModelEvent] = [TextDelta(text)] if text else []
    for call_id, name, args in calls:
        raw = args if isinstance(args, str) else json.dumps(args)
        events += [ToolCallStart(call_id, name), ToolInputDelta(call_id, raw), ToolCallEnd(call_id)]
    events.append(Finish("tool_calls", {"total_tokens": 10}))
    return events


class ScriptedModel(ModelClient):
    """Replays one scripted step per stream() call."""

    def __init__(self, steps: list[Step], *, repeat_last: bool = False) -> None:
        self.steps = list(steps)
        self.repeat_last = repeat_last
        self.requests: list[ModelRequest] = []
        self.closed = False

    @property
    def name(self) -> str:
        return "scripted"

    @property
    def model_id(self) -> str:
        return "scripted-1"

    async def stream(self, request: ModelRequest) -> AsyncIterator[ModelEvent]:
        self.requests.append(request)
        index = len(self.requests) - 1
        if index >= len(self.steps):
            if not self.repeat_last:
                raise AssertionError(f"unexpected model call #{index + 1}")
            index = len(self.steps) - 1
        step = self.steps[index]
        if callable(step):
            async for event in step(request):
                yield event
        else:
            for event in step:
                yield event

    async def close(self) -> None:
        self.closed = True


def make_tool(
    name: str,
    execute: Callable[[dict[str, Any], ToolContext], Awaitable[ToolResult]],
    *,
    side_effecting: bool = False,
    required: list[str] | None = None,
) -> Tool:
    return Tool(
        name=name,
        description=f"test tool {name}",
        input_schema={"type": "object", "properties": {}, "required": required or []},
        execute=execute,
        side_effecting=side_effecting,
    )
