"""Top-level assistant engine.

Wires together the model client, task graph, confirmation gate, MCP
manager, sub-agent spawner, media cache and session log for one
session in one working directory.

Usage:
    from tern.engine import AssistantEngine, EngineConfig

    engine = AssistantEngine(config, model, cwd="/path/to/project")
    await engine.start()
    result = await engine.run("Add a --verbose flag to the CLI")
    await engine.shutdown()
"""
from __future__ import annotations

import asyncio
import logging
from pathlib import Path
from typing import Any

from tern.shared.models.message import ChatMessage
from tern.shared.services.media_store import MediaCache
from tern.shared.services.session_log import SessionLog, SessionSummary

from .abort import AbortSignal
from .agent_loop import AgentLoop
from .config import EngineConfig, fire_event
from .confirmation import ConfirmationCallback, ConfirmationGate
from .context import build_system_prompt
from .errors import SessionNotFoundError, TurnInProgressError
from .mcp.config import load_mcp_configs
from .mcp.manager import McpManager
from .mcp.transport import SessionOpener, make_session_opener
from .memory import load_project_memory, memory_path
from .models import Task, TurnOutcome, TurnResult
from .providers.base import ModelClient
from .skills import Skill, discover_skills, make_load_skill_tool, skills_prompt_section
from .subagent import SubAgentSpawner
from .task_graph import TaskGraphStore
from .tools.ask_tool import make_ask_question_tool
from .tools.base import ToolRegistry
from .tools.builtin import builtin_tools
from .tools.task_tools import make_task_tools

logger = logging.getLogger(__name__)


class AssistantEngine:
    """One interactive session: history, shared state and the turn driver."""

    def __init__(
        self,
        config: EngineConfig,
        model: ModelClient,
        *,
        cwd: str | Path = ".",
        session_id: str | None = None,
        on_confirmation: ConfirmationCallback | None = None,
        mcp_opener: SessionOpener | None = None,
    ) -> None:
        self._config = config
        self._event_callback = config.event_callback
        self.model = model
        self.cwd = Path(cwd).resolve()

        self.session_log = SessionLog(config.projects_dir)
        self.session_id = session_id or self.session_log.create_session(self.cwd)
        self.history: list[ChatMessage] = []
        self.skills: list[Skill] = []
        self.skill_warnings: list[str] = []

        self.media = MediaCache()
        self.tasks = TaskGraphStore(self.session_id, config.tasks_dir)
        self.gate = ConfirmationGate(
            unattended=config.unattended,
            on_request=on_confirmation,
            event_callback=self._event_callback,
        )
        self.mcp = McpManager(
            mcp_opener or make_session_opener(config.logs_dir),
            connect_timeout=config.mcp_connect_timeout_seconds,
            event_callback=self._event_callback,
        )
        self.spawner = SubAgentSpawner(
            model,
            self.tasks,
            cwd=self.cwd,
            max_steps=config.subagent_max_steps,
            max_output_chars=config.subagent_max_output_chars,
            event_callback=self._event_callback,
        )
        self.loop = AgentLoop(
            model,
            self.gate,
            cwd=self.cwd,
            agent_id="main",
            event_callback=self._event_callback,
            media=self.media,
        )
        self._turn_lock = asyncio.Lock()
        self._abort: AbortSignal | None = None

    @property
    def config(self) -> EngineConfig:
        return self._config

    @property
    def busy(self) -> bool:
        return self._turn_lock.locked()

    async def start(self) -> list[dict[str, Any]]:
        """Load MCP configuration and connect every server (best-effort)."""
        configs = load_mcp_configs(self.cwd, self._config.home)
        if not configs:
            logger.info("No MCP servers configured")
            return []
        return await self.mcp.connect_all(configs)

    async def build_registry(self) -> ToolRegistry:
        registry = ToolRegistry.of(
            builtin_tools(self.media, self._config.bash_timeout_seconds)
        )
        for tool in make_task_tools(self.tasks).values():
            registry.add(tool)
        registry.add(self.spawner.as_tool())
        registry.add(make_ask_question_tool(self.gate))
        registry.add(make_load_skill_tool(self.skills))
        for tool in await self.mcp.all_tools():
            registry.add(tool)
        return registry

    @property
    def memory_file(self) -> Path:
        return memory_path(self._config.projects_dir, self.cwd)

    def refresh_skills(self) -> list[Skill]:
        """Rescan global and project skills so edits apply from the next turn."""
        self.skills, self.skill_warnings = discover_skills(self.cwd, self._config.home)
        return self.skills

    def system_prompt(self) -> str:
        return build_system_prompt(
            self.cwd,
            memory_file=self.memory_file,
            memory=load_project_memory(self._config.projects_dir, self.cwd),
            skills_section=skills_prompt_section(self.skills),
        )

    async def run(self, prompt: str, images: list[str] | None = None) -> TurnResult:
        """Run one user turn. History and transcript change only on success."""
        if self._turn_lock.locked():
            raise TurnInProgressError(self.session_id)
        async with self._turn_lock:
            abort = AbortSignal()
            self._abort = abort
            user_message = ChatMessage.user(prompt, images=images)
            try:
                self.refresh_skills()
                registry = await self.build_registry()
                result = await self.loop.run_turn(
                    self.history + [user_message],
                    self.system_prompt(),
                    registry,
                    self._config.max_steps,
                    abort,
                )
            finally:
                self._abort = None

            if result.committed:
                self.history.append(user_message)
                self.history.extend(result.messages)
                self.session_log.save(self.cwd, self.session_id, self.history)
            else:
                logger.info(
                    "Turn %s: history left unchanged (%d messages)",
                    result.outcome.value, len(self.history),
                )
            if result.outcome is TurnOutcome.STEP_LIMIT:
                logger.info("Turn stopped at the %d-step limit", self._config.max_steps)
            return result

    def abort(self, reason: str = "aborted by user") -> bool:
        """Abort the running turn. Returns False when no turn is running."""
        if self._abort is None:
            return False
        self._abort.abort(reason)
        return True

    def resume(self, prefix: str) -> str:
        """Switch to a persisted session identified by a unique id prefix."""
        if self.busy:
            raise TurnInProgressError(self.session_id)
        session_id = self.session_log.resolve_prefix(self.cwd, prefix)
        if session_id is None:
            raise SessionNotFoundError(prefix)
        self.session_id = session_id
        self.history = self.session_log.load(self.cwd, session_id)
        self.tasks.switch_session(session_id)
        logger.info("Resumed session %s (%d messages)", session_id[:8], len(self.history))
        return session_id

    def clear(self) -> str:
        """Start a fresh session in the same working directory."""
        if self.busy:
            raise TurnInProgressError(self.session_id)
        self.session_id = self.session_log.create_session(self.cwd)
        self.history = []
        self.media.drain()
        self.tasks.switch_session(self.session_id)
        return self.session_id

    def list_sessions(self) -> list[SessionSummary]:
        return self.session_log.list_sessions(self.cwd)

    def list_tasks(self) -> list[Task]:
        return self.tasks.list()

    async def reconnect(self, name: str) -> dict[str, Any]:
        status = await self.mcp.reconnect(name)
        await fire_event(self._event_callback, {"event": "mcp_reconnected", "server": name})
        return status

    async def shutdown(self) -> None:
        self.abort("shutdown")
        await self.mcp.close_all()
        await self.model.close()
        logger.info("Engine shut down (session %s)", self.session_id[:8])
