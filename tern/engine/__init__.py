"""tern engine: agent loop, tools, MCP and session state for a terminal coding assistant."""
from .models import (
    McpServerConfig,
    ServerStatus,
    Task,
    TaskStatus,
    TransportKind,
    TurnOutcome,
    TurnResult,
)
from .config import EngineConfig
from .errors import (
    ModelCallError,
    ServerConnectTimeoutError,
    ServerNotFoundError,
    SessionNotFoundError,
    TaskNotFoundError,
    TernError,
    ToolRegistryError,
    TurnInProgressError,
)

__all__ = [
    # Core engine (lazy import to avoid circular deps)
    "AssistantEngine",
    # Models
    "McpServerConfig",
    "ServerStatus",
    "Task",
    "TaskStatus",
    "TransportKind",
    "TurnOutcome",
    "TurnResult",
    # Config
    "EngineConfig",
    "load_engine_config",
    # Providers (lazy import)
    "ModelClient",
    "ArkChatClient",
    # MCP (lazy import)
    "McpManager",
    # Errors
    "ModelCallError",
    "ServerConnectTimeoutError",
    "ServerNotFoundError",
    "SessionNotFoundError",
    "TaskNotFoundError",
    "TernError",
    "ToolRegistryError",
    "TurnInProgressError",
]


def __getattr__(name: str):
    if name == "AssistantEngine":
        from .engine import AssistantEngine
        return AssistantEngine
    if name == "load_engine_config":
        from .yaml_config import load_engine_config
        return load_engine_config
    if name == "ModelClient":
        from .providers.base import ModelClient
        return ModelClient
    if name == "ArkChatClient":
        from .providers.ark_provider import ArkChatClient
        return ArkChatClient
    if name == "McpManager":
        from .mcp.manager import McpManager
        return McpManager
    raise AttributeError(f"module {__name__!r} has no attribute {name!r}")
