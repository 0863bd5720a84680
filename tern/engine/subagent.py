"""Isolated, bounded sub-agents for parallel research.

Every spawn gets a fresh AgentLoop with its own (empty) history, its own
pre-approved confirmation gate and its own media cache. The only things
shared with the parent are the model client and the session's
TaskGraphStore. The tool set is read-only; a registry containing any
side-effecting tool is rejected before the sub-agent starts.
"""
from __future__ import annotations

import logging
import time
import uuid
from pathlib import Path
from typing import Any

from tern.shared.models.message import ChatMessage
from tern.shared.services.media_store import MediaCache

from .abort import AbortSignal
from .agent_loop import AgentLoop
from .config import EventCallback, fire_event
from .confirmation import ConfirmationGate
from .context import build_subagent_prompt
from .errors import ToolRegistryError
from .models import TurnOutcome
from .providers.base import ModelClient
from .task_graph import TaskGraphStore
from .tools.base import Tool, ToolContext, ToolRegistry, ToolResult, tool_error
from .tools.builtin import read_only_tools
from .tools.task_tools import make_task_tools

logger = logging.getLogger(__name__)

SUBAGENT_TOOL_NAMES = ("read", "glob", "grep", "taskList", "taskGet", "taskUpdate")
TRUNCATION_MARKER = "\n\n[output truncated - exceeded {limit} char limit]"


def truncate_output(text: str, limit: int) -> str:
    if len(text) <= limit:
        return text
    return text[:limit] + TRUNCATION_MARKER.format(limit=limit)


def restricted_registry(tools: list[Tool]) -> ToolRegistry:
    """Registry for a sub-agent. Raises ToolRegistryError on anything unsafe."""
    unsafe = [t.name for t in tools if t.side_effecting]
    if unsafe:
        raise ToolRegistryError(unsafe, "sub-agents may only use read-only tools")
    unknown = [t.name for t in tools if t.name not in SUBAGENT_TOOL_NAMES]
    if unknown:
        raise ToolRegistryError(unknown, "not in the sub-agent allow-list")
    return ToolRegistry.of(tools)


class SubAgentSpawner:
    """Runs nested agent loops on behalf of the parent agent."""

    def __init__(
        self,
        model: ModelClient,
        store: TaskGraphStore,
        *,
        cwd: str | Path,
        max_steps: int = 10,
        max_output_chars: int = 8000,
        event_callback: EventCallback | None = None,
    ) -> None:
        self._model = model
        self._store = store
        self._cwd = Path(cwd)
        self.max_steps = max_steps
        self.max_output_chars = max_output_chars
        self._event_callback = event_callback

    def build_registry(self, media: MediaCache) -> ToolRegistry:
        task_tools = make_task_tools(self._store)
        tools = read_only_tools(media) + [
            task_tools[name] for name in ("taskList", "taskGet", "taskUpdate")
        ]
        return restricted_registry(tools)

    async def spawn(
        self,
        task: str,
        context: str | None = None,
        abort: AbortSignal | None = None,
    ) -> ToolResult:
        agent_id = f"sub-{str(uuid.uuid4())[:8]}"
        signal = abort.child() if abort is not None else AbortSignal()
        media = MediaCache()
        loop = AgentLoop(
            self._model,
            ConfirmationGate(unattended=True),
            cwd=self._cwd,
            agent_id=agent_id,
            media=media,
        )
        registry = self.build_registry(media)
        prompt = f"Context:\n{context}\n\nTask:\n{task}" if context else task
        started = time.monotonic()
        await fire_event(self._event_callback, {
            "event": "subagent_started", "agent_id": agent_id, "task": task[:200],
        })
        logger.info("Sub-agent %s started: %.120s", agent_id, task)

        try:
            result = await loop.run_turn(
                [ChatMessage.user(prompt)],
                build_subagent_prompt(self._cwd, self.max_steps, self.max_output_chars),
                registry,
                self.max_steps,
                signal,
            )
        except Exception as exc:
            logger.error("Sub-agent %s crashed: %s", agent_id, exc, exc_info=True)
            output: ToolResult = tool_error(f"Sub-agent failed: {exc}")
        else:
            output = self._to_output(agent_id, result.outcome, result.text, result.error)
        finally:
            signal.unlink()

        await fire_event(self._event_callback, {
            "event": "subagent_finished",
            "agent_id": agent_id,
            "is_error": "error" in output,
            "duration_seconds": round(time.monotonic() - started, 2),
        })
        return output

    def _to_output(
        self,
        agent_id: str,
        outcome: TurnOutcome,
        text: str,
        error: str | None,
    ) -> ToolResult:
        if outcome is TurnOutcome.ABORTED:
            logger.info("Sub-agent %s aborted", agent_id)
            return tool_error("Sub-agent aborted")
        if outcome is TurnOutcome.ERROR:
            logger.warning("Sub-agent %s failed: %s", agent_id, error)
            return tool_error(f"Sub-agent failed: {error}")
        if outcome is TurnOutcome.STEP_LIMIT:
            logger.info("Sub-agent %s hit its %d-step limit", agent_id, self.max_steps)
            text = text or f"(sub-agent reached its {self.max_steps}-step limit without a final answer)"
        return {"result": truncate_output(text, self.max_output_chars)}

    def as_tool(self) -> Tool:
        async def execute(tool_input: dict[str, Any], ctx: ToolContext) -> ToolResult:
            return await self.spawn(
                str(tool_input["task"]),
                tool_input.get("context"),
                abort=ctx.abort,
            )

        return Tool(
            name="spawnAgent",
            description=(
                "Spawn an isolated read-only research sub-agent for one independent "
                f"subtask. It has at most {self.max_steps} tool steps and returns "
                f"up to {self.max_output_chars} characters. Several spawnAgent "
                "calls in one step run in parallel."
            ),
            input_schema={
                "type": "object",
                "properties": {
                    "task": {"type": "string", "description": "What the sub-agent must find out"},
                    "context": {"type": "string", "description": "Background the sub-agent needs"},
                },
                "required": ["task"],
            },
            execute=execute,
            origin="agent",
        )
