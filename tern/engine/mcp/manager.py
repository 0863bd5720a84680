"""Lifecycle manager for configured MCP servers.

Each connection attempt runs in its own runner task which enters the
transport context, probes the tool catalog, reports readiness through a
future and then parks until asked to stop. Keeping enter and exit in one
task is required by the anyio task groups inside the MCP client.

Failures never propagate out of connect_all(): a server that errors or
times out is marked ``error`` with a message and the rest carry on.
"""
from __future__ import annotations

import asyncio
import json
import logging
from dataclasses import dataclass
from typing import Any

from mcp import ClientSession

from tern.engine.config import EventCallback, fire_event
from tern.engine.errors import ServerConnectTimeoutError, ServerNotFoundError
from tern.engine.lifecycle import validate_transition
from tern.engine.models import McpServerConfig, ServerConnection, ServerStatus
from tern.engine.tools.base import Tool, ToolContext, ToolResult, tool_error

from .config import NAME_SEPARATOR
from .transport import SessionOpener

logger = logging.getLogger(__name__)

TOOL_PREFIX = "mcp"
STOP_GRACE_SECONDS = 5.0


def namespaced_tool_name(server: str, tool: str) -> str:
    return NAME_SEPARATOR.join((TOOL_PREFIX, server, tool))


def _error_text(exc: BaseException) -> str:
    # anyio task groups wrap the real failure in an exception group.
    inner = getattr(exc, "exceptions", None)
    if inner:
        return _error_text(inner[0])
    return str(exc) or type(exc).__name__


def _content_text(result: Any) -> str:
    parts: list[str] = []
    for item in getattr(result, "content", None) or []:
        text = getattr(item, "text", None)
        if text is not None:
            parts.append(text)
        else:
            parts.append(f"[{getattr(item, 'type', 'content')} omitted]")
    return "\n".join(parts)


@dataclass
class _Runner:
    task: asyncio.Task
    stop: asyncio.Event


class McpManager:
    """Connect, probe, reconnect and close N MCP servers."""

    def __init__(
        self,
        opener: SessionOpener,
        *,
        connect_timeout: float = 30.0,
        event_callback: EventCallback | None = None,
    ) -> None:
        self._opener = opener
        self._timeout = connect_timeout
        self._event_callback = event_callback
        self._connections: dict[str, ServerConnection] = {}
        self._runners: dict[str, _Runner] = {}

    # ── Public API ──

    async def connect_all(self, configs: dict[str, McpServerConfig]) -> list[dict[str, Any]]:
        for name, config in configs.items():
            if name not in self._connections:
                self._connections[name] = ServerConnection(name=name, config=config)
            else:
                self._connections[name].config = config
        if configs:
            await asyncio.gather(*(self._connect(name) for name in configs))
        return self.get_status()

    async def all_tools(self) -> list[Tool]:
        connected = [
            c for c in self._connections.values()
            if c.status is ServerStatus.CONNECTED and c.handle is not None
        ]
        catalogs = await asyncio.gather(*(self._probe(c) for c in connected))
        tools: dict[str, Tool] = {}
        for conn, catalog in zip(connected, catalogs):
            for mcp_tool in catalog:
                tool = self._wrap_tool(conn.name, mcp_tool)
                if tool.name in tools:
                    logger.warning(
                        "MCP tool %s from %s clashes with one from %s; keeping the first",
                        tool.name, tool.origin, tools[tool.name].origin,
                    )
                    continue
                tools[tool.name] = tool
        return list(tools.values())

    def get_status(self) -> list[dict[str, Any]]:
        return [c.snapshot() for c in self._connections.values()]

    def connection(self, name: str) -> ServerConnection:
        conn = self._connections.get(name)
        if conn is None:
            raise ServerNotFoundError(name)
        return conn

    async def reconnect(self, name: str) -> dict[str, Any]:
        conn = self.connection(name)
        await self._stop_runner(name)
        conn.handle = None
        await self._connect(name)
        return conn.snapshot()

    async def close_all(self) -> None:
        names = list(self._connections)
        await asyncio.gather(*(self._stop_runner(name) for name in names))
        for name in names:
            conn = self._connections[name]
            conn.handle = None
            await self._set_status(conn, ServerStatus.DISCONNECTED)
        logger.info("Closed %d MCP server(s)", len(names))

    async def call_tool(self, server: str, tool: str, arguments: dict[str, Any]) -> ToolResult:
        conn = self._connections.get(server)
        if conn is None:
            return tool_error(f"MCP server not configured: {server}")
        session: ClientSession | None = conn.handle
        if conn.status is not ServerStatus.CONNECTED or session is None:
            return tool_error(f"MCP server {server} is {conn.status.value}")
        try:
            result = await session.call_tool(tool, arguments)
        except Exception as exc:
            logger.warning("MCP call %s/%s failed: %s", server, tool, exc, exc_info=True)
            return tool_error(f"{server}/{tool}: {_error_text(exc)}")
        text = _content_text(result)
        if getattr(result, "isError", False):
            return tool_error(text or f"{server}/{tool} reported an error")
        output: ToolResult = {"content": text}
        structured = getattr(result, "structuredContent", None)
        if structured:
            output["structuredContent"] = structured
        return output

    # ── Connection runner ──

    async def _connect(self, name: str) -> None:
        conn = self._connections[name]
        conn.last_error = None
        conn.tool_count = 0
        await self._set_status(conn, ServerStatus.CONNECTING)

        ready: asyncio.Future = asyncio.get_running_loop().create_future()
        stop = asyncio.Event()
        task = asyncio.create_task(self._run(conn, ready, stop), name=f"mcp-{name}")
        self._runners[name] = _Runner(task=task, stop=stop)

        try:
            session, tool_count = await asyncio.wait_for(asyncio.shield(ready), self._timeout)
        except asyncio.TimeoutError:
            timeout = ServerConnectTimeoutError(name, self._timeout)
            logger.warning("%s", timeout)
            await self._stop_runner(name, graceful=False)
            conn.last_error = str(timeout)
            await self._set_status(conn, ServerStatus.ERROR)
            return
        except Exception as exc:
            conn.last_error = f"{name}: {_error_text(exc)}"
            logger.warning("MCP server %s failed to connect: %s", name, conn.last_error)
            await self._stop_runner(name, graceful=False)
            await self._set_status(conn, ServerStatus.ERROR)
            return

        conn.handle = session
        conn.tool_count = tool_count
        await self._set_status(conn, ServerStatus.CONNECTED)
        logger.info("MCP server %s connected (%d tools)", name, tool_count)

    async def _run(
        self,
        conn: ServerConnection,
        ready: asyncio.Future,
        stop: asyncio.Event,
    ) -> None:
        try:
            async with self._opener(conn.config) as session:
                listed = await session.list_tools()
                if not ready.done():
                    ready.set_result((session, len(listed.tools)))
                await stop.wait()
        except asyncio.CancelledError:
            if not ready.done():
                ready.cancel()
            raise
        except Exception as exc:
            if not ready.done():
                ready.set_exception(exc)
                return
            if not stop.is_set():
                logger.warning("MCP server %s connection lost: %s", conn.name, _error_text(exc))
                conn.handle = None
                conn.last_error = f"{conn.name}: connection lost: {_error_text(exc)}"
                if conn.status is ServerStatus.CONNECTED:
                    await self._set_status(conn, ServerStatus.ERROR)

    async def _stop_runner(self, name: str, graceful: bool = True) -> None:
        runner = self._runners.pop(name, None)
        if runner is None:
            return
        runner.stop.set()
        if graceful:
            await asyncio.wait({runner.task}, timeout=STOP_GRACE_SECONDS)
        if not runner.task.done():
            runner.task.cancel()
        try:
            await runner.task
        except asyncio.CancelledError:
            pass
        except Exception:
            logger.debug("MCP runner %s ended with error", name, exc_info=True)

    # ── Catalog ──

    async def _probe(self, conn: ServerConnection) -> list[Any]:
        session: ClientSession = conn.handle
        try:
            listed = await asyncio.wait_for(session.list_tools(), self._timeout)
        except Exception as exc:
            conn.last_error = f"Failed to list tools: {_error_text(exc)}"
            logger.warning("MCP server %s probe failed: %s", conn.name, conn.last_error)
            if conn.status is ServerStatus.CONNECTED:
                await self._set_status(conn, ServerStatus.ERROR)
            return []
        conn.tool_count = len(listed.tools)
        return list(listed.tools)

    def _wrap_tool(self, server: str, mcp_tool: Any) -> Tool:
        tool_name = mcp_tool.name
        annotations = getattr(mcp_tool, "annotations", None)
        destructive = bool(getattr(annotations, "destructiveHint", False))

        async def execute(tool_input: dict[str, Any], ctx: ToolContext) -> ToolResult:
            return await self.call_tool(server, tool_name, tool_input)

        async def describe(tool_input: dict[str, Any], ctx: ToolContext) -> tuple[str, str | None]:
            preview = json.dumps(tool_input, indent=2, ensure_ascii=False)
            return f"Call {tool_name} on MCP server {server}", preview

        return Tool(
            name=namespaced_tool_name(server, tool_name),
            description=mcp_tool.description or f"{tool_name} (MCP server {server})",
            input_schema=mcp_tool.inputSchema or {"type": "object", "properties": {}},
            execute=execute,
            side_effecting=destructive,
            describe=describe if destructive else None,
            origin=f"mcp:{server}",
        )

    async def _set_status(self, conn: ServerConnection, status: ServerStatus) -> None:
        validate_transition(conn.status, status)
        previous, conn.status = conn.status, status
        if previous is not status:
            logger.info("MCP server %s: %s -> %s", conn.name, previous.value, status.value)
        await fire_event(self._event_callback, {
            "event": "mcp_status_changed",
            "server": conn.name,
            "status": status.value,
            "tool_count": conn.tool_count,
            "error": conn.last_error,
        })
