"""Exception hierarchy for the assistant engine.

Specific exceptions for each failure mode. Tool-level failures are not
exceptions: they travel back to the model as ``{"error": ...}`` dicts.
"""
from __future__ import annotations


class TernError(Exception):
    """Base exception for all engine errors."""


class TaskNotFoundError(TernError):
    """Task id is unknown or the task has been deleted."""
    def __init__(self, task_id: str):
        self.task_id = task_id
        super().__init__(f"Task not found: {task_id}")


class ModelCallError(TernError):
    """The model endpoint failed at the transport level."""
    def __init__(self, status: int | None, detail: str):
        self.status = status
        self.detail = detail
        prefix = f"HTTP {status}: " if status is not None else ""
        super().__init__(f"Model call failed: {prefix}{detail}")


class ServerConnectTimeoutError(TernError):
    """An MCP server did not finish connecting within its time limit."""
    def __init__(self, name: str, seconds: float):
        self.name = name
        self.seconds = seconds
        super().__init__(f"{name}: timeout after {seconds:g}s")


class ServerNotFoundError(TernError):
    """Requested MCP server is not configured."""
    def __init__(self, name: str):
        self.name = name
        super().__init__(f"MCP server not configured: {name}")


class TurnInProgressError(TernError):
    """A turn is already running for this session."""
    def __init__(self, session_id: str):
        self.session_id = session_id
        super().__init__(f"A turn is already running in session {session_id[:8]}")


class SessionNotFoundError(TernError):
    """No unique persisted session matches the given prefix."""
    def __init__(self, prefix: str):
        self.prefix = prefix
        super().__init__(f"No unique session matches '{prefix}'")


class ToolRegistryError(TernError):
    """A tool registry was built with tools it must not contain."""
    def __init__(self, tool_names: list[str], reason: str):
        self.tool_names = tool_names
        self.reason = reason
        super().__init__(f"Invalid tool registry ({', '.join(tool_names)}): {reason}")
