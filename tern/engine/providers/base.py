"""Abstract base for model clients.

A model client turns one request (messages, system prompt, tool
declarations) into an async stream of ModelEvents. The agent loop is
the only consumer; it stops iterating on abort, so implementations must
release their transport when the async generator is closed.
"""
from __future__ import annotations

import abc
import logging
from dataclasses import dataclass, field
from typing import Any, AsyncIterator

from tern.engine.models import ModelEvent
from tern.shared.models.message import ChatMessage

logger = logging.getLogger(__name__)


@dataclass
class ModelRequest:
    """One model call."""
    messages: list[ChatMessage]
    system_prompt: str = ""
    tools: list[dict[str, Any]] = field(default_factory=list)
    thinking: bool | None = None


class ModelClient(abc.ABC):
    """Abstract streaming model interface."""

    @property
    @abc.abstractmethod
    def name(self) -> str:
        """Short client name (e.g. 'ark')."""

    @property
    @abc.abstractmethod
    def model_id(self) -> str:
        """Model identifier sent with each request."""

    @abc.abstractmethod
    def stream(self, request: ModelRequest) -> AsyncIterator[ModelEvent]:
        """Stream deltas for *request*.

        The final event is a Finish. Transport failures raise
        ModelCallError.
        """

    async def close(self) -> None:
        """Release any pooled connections."""
