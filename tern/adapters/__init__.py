"""Adapters package - Bridge between the engine and the terminal front-end.

Typed engine events and the event bus that carries them to the
renderer.
"""
from __future__ import annotations

__all__ = [
    "EventBus",
    "EngineEvent",
    "dict_to_event",
]

from tern.adapters.event_bus import EventBus
from tern.adapters.events import EngineEvent, dict_to_event
