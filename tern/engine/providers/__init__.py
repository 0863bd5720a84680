"""Streaming model clients."""
from .base import ModelClient, ModelRequest
from .ark_provider import ArkChatClient

__all__ = [
    "ModelClient",
    "ModelRequest",
    "ArkChatClient",
]
