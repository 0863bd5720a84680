"""Open initialized MCP client sessions for each transport kind.

``open_session(config)`` returns an async context manager yielding a
ready ``ClientSession``. The context must be entered and exited by the
same task: the underlying anyio task groups are bound to it.
"""
from __future__ import annotations

import logging
import os
from contextlib import asynccontextmanager
from pathlib import Path
from typing import AsyncContextManager, AsyncIterator, Callable

from mcp import ClientSession, StdioServerParameters
from mcp.client.sse import sse_client
from mcp.client.stdio import stdio_client
from mcp.client.streamable_http import streamablehttp_client

from tern.engine.models import McpServerConfig, TransportKind

logger = logging.getLogger(__name__)

SessionOpener = Callable[[McpServerConfig], AsyncContextManager[ClientSession]]


def stdio_parameters(config: McpServerConfig) -> StdioServerParameters:
    return StdioServerParameters(
        command=config.command or "",
        args=list(config.args),
        env={**os.environ, **config.env},
        cwd=config.cwd,
    )


def make_session_opener(log_dir: Path) -> SessionOpener:
    """Opener that logs each local server's stderr to ``mcp-<name>.log``."""

    @asynccontextmanager
    async def _open(config: McpServerConfig) -> AsyncIterator[ClientSession]:
        if config.transport is TransportKind.LOCAL_PROCESS:
            log_dir.mkdir(parents=True, exist_ok=True)
            log_path = log_dir / f"mcp-{config.name}.log"
            logger.debug("Starting MCP server %s: %s %s", config.name, config.command, config.args)
            with open(log_path, "a", encoding="utf-8") as errlog:
                async with stdio_client(stdio_parameters(config), errlog=errlog) as (read_stream, write_stream):
                    async with ClientSession(read_stream, write_stream) as session:
                        await session.initialize()
                        yield session
        elif config.sse:
            async with sse_client(config.url, headers=config.headers or None) as (read_stream, write_stream):
                async with ClientSession(read_stream, write_stream) as session:
                    await session.initialize()
                    yield session
        else:
            async with streamablehttp_client(config.url, headers=config.headers or None) as (
                read_stream, write_stream, _get_session_id,
            ):
                async with ClientSession(read_stream, write_stream) as session:
                    await session.initialize()
                    yield session

    return _open
