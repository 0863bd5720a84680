"""Model-facing tools over the shared TaskGraphStore."""
from __future__ import annotations

from typing import Any

from tern.engine.config import fire_event
from tern.engine.errors import TaskNotFoundError
from tern.engine.task_graph import TaskGraphStore

from .base import Tool, ToolContext, ToolResult, tool_error

_STATUS_VALUES = ["pending", "in_progress", "completed", "deleted"]


async def _notify(ctx: ToolContext, store: TaskGraphStore) -> None:
    await fire_event(ctx.event_callback, {
        "event": "task_list_changed",
        "agent_id": ctx.agent_id,
        "tasks": [t.to_dict() for t in store.list()],
    })


def make_task_tools(store: TaskGraphStore) -> dict[str, Tool]:
    """taskCreate, taskUpdate, taskGet and taskList bound to *store*."""

    async def create(tool_input: dict[str, Any], ctx: ToolContext) -> ToolResult:
        task = store.create(
            subject=str(tool_input["subject"]),
            description=tool_input.get("description"),
            active_form=tool_input.get("activeForm"),
            metadata=tool_input.get("metadata"),
        )
        await _notify(ctx, store)
        return {"task": task.to_dict()}

    async def update(tool_input: dict[str, Any], ctx: ToolContext) -> ToolResult:
        try:
            task = store.update(
                str(tool_input["taskId"]),
                status=tool_input.get("status"),
                subject=tool_input.get("subject"),
                description=tool_input.get("description"),
                active_form=tool_input.get("activeForm"),
                owner=tool_input.get("owner"),
                add_blocks=tool_input.get("addBlocks"),
                add_blocked_by=tool_input.get("addBlockedBy"),
                metadata=tool_input.get("metadata"),
            )
        except TaskNotFoundError as exc:
            return tool_error(str(exc))
        except ValueError as exc:
            return tool_error(f"Invalid task update: {exc}")
        await _notify(ctx, store)
        return {"task": task.to_dict()}

    async def get(tool_input: dict[str, Any], ctx: ToolContext) -> ToolResult:
        try:
            return {"task": store.get(str(tool_input["taskId"])).to_dict()}
        except TaskNotFoundError as exc:
            return tool_error(str(exc))

    async def list_tasks(tool_input: dict[str, Any], ctx: ToolContext) -> ToolResult:
        return {"tasks": [t.summary() for t in store.list()]}

    task_id_schema = {"type": "string", "description": "Task id from taskCreate or taskList"}
    tools = [
        Tool(
            name="taskCreate",
            description=(
                "Create a task in the shared task list. Use for multi-step work "
                "so progress stays visible."
            ),
            input_schema={
                "type": "object",
                "properties": {
                    "subject": {"type": "string", "description": "Short imperative title"},
                    "description": {"type": "string"},
                    "activeForm": {"type": "string", "description": "Present-continuous label shown while in progress"},
                    "metadata": {"type": "object"},
                },
                "required": ["subject"],
            },
            execute=create,
            origin="task",
        ),
        Tool(
            name="taskUpdate",
            description=(
                "Update a task: status, text, owner, dependencies (addBlocks / "
                "addBlockedBy) or metadata (null removes a key)."
            ),
            input_schema={
                "type": "object",
                "properties": {
                    "taskId": task_id_schema,
                    "status": {"type": "string", "enum": _STATUS_VALUES},
                    "subject": {"type": "string"},
                    "description": {"type": "string"},
                    "activeForm": {"type": "string"},
                    "owner": {"type": "string"},
                    "addBlocks": {"type": "array", "items": {"type": "string"}},
                    "addBlockedBy": {"type": "array", "items": {"type": "string"}},
                    "metadata": {"type": "object"},
                },
                "required": ["taskId"],
            },
            execute=update,
            origin="task",
        ),
        Tool(
            name="taskGet",
            description="Get the full record of one task.",
            input_schema={
                "type": "object",
                "properties": {"taskId": task_id_schema},
                "required": ["taskId"],
            },
            execute=get,
            origin="task",
        ),
        Tool(
            name="taskList",
            description="List all tasks with their status, owner and open blockers.",
            input_schema={"type": "object", "properties": {}},
            execute=list_tasks,
            origin="task",
        ),
    ]
    return {tool.name: tool for tool in tools}
