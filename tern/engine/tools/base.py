"""Tool dispatch contract.

A tool declares a JSON-schema input, a description for the model and an
async ``execute(input, ctx) -> dict``. A result carrying an ``error`` key
is a tool-level failure the model gets to see; it never ends the turn.

Side-effecting tools also provide ``describe(input, ctx)``, which returns
the human description and optional preview (diff or command) shown in
the confirmation prompt before execution.
"""
from __future__ import annotations

import json
from collections.abc import Awaitable, Callable, Iterable
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any

from tern.engine.abort import AbortSignal
from tern.engine.config import EventCallback

ToolResult = dict[str, Any]


@dataclass
class ToolContext:
    """Per-call execution context handed to every tool."""
    cwd: Path
    abort: AbortSignal
    agent_id: str = "main"
    call_id: str = ""
    event_callback: EventCallback | None = None


ToolExecutor = Callable[[dict[str, Any], ToolContext], Awaitable[ToolResult]]
ToolDescriber = Callable[[dict[str, Any], ToolContext], Awaitable[tuple[str, "str | None"]]]


@dataclass
class Tool:
    name: str
    description: str
    input_schema: dict[str, Any]
    execute: ToolExecutor
    side_effecting: bool = False
    describe: ToolDescriber | None = None
    # Where the tool comes from: "builtin", "task", "agent", "skill" or "mcp:<server>".
    origin: str = "builtin"

    def definition(self) -> dict[str, Any]:
        """Function declaration in the chat-completions tool format."""
        return {
            "type": "function",
            "function": {
                "name": self.name,
                "description": self.description,
                "parameters": self.input_schema,
            },
        }


def is_tool_error(result: Any) -> bool:
    return isinstance(result, dict) and "error" in result


def tool_error(message: str) -> ToolResult:
    return {"error": message}


def decode_tool_input(raw: str) -> dict[str, Any]:
    """Parse accumulated tool-call arguments. Raises ValueError when unusable."""
    if not raw or not raw.strip():
        return {}
    try:
        value = json.loads(raw)
    except json.JSONDecodeError as exc:
        raise ValueError(f"Invalid JSON arguments: {exc.msg}") from exc
    if not isinstance(value, dict):
        raise ValueError("Tool arguments must be a JSON object")
    return value


def missing_required(schema: dict[str, Any], tool_input: dict[str, Any]) -> list[str]:
    return [key for key in schema.get("required", []) if key not in tool_input]


def format_result(result: ToolResult) -> str:
    """Serialize a tool result as the tool message content."""
    return json.dumps(result, ensure_ascii=False, default=str)


@dataclass
class ToolRegistry:
    """Name-keyed set of tools available to one agent loop."""
    tools: dict[str, Tool] = field(default_factory=dict)

    @classmethod
    def of(cls, tools: Iterable[Tool]) -> ToolRegistry:
        registry = cls()
        for tool in tools:
            registry.add(tool)
        return registry

    def add(self, tool: Tool) -> None:
        if tool.name in self.tools:
            raise ValueError(f"Duplicate tool name: {tool.name}")
        self.tools[tool.name] = tool

    def get(self, name: str) -> Tool | None:
        return self.tools.get(name)

    def names(self) -> list[str]:
        return list(self.tools)

    def side_effecting(self) -> list[str]:
        return [t.name for t in self.tools.values() if t.side_effecting]

    def definitions(self) -> list[dict[str, Any]]:
        return [t.definition() for t in self.tools.values()]

    def __contains__(self, name: object) -> bool:
        return name in self.tools

    def __len__(self) -> int:
        return len(self.tools)
