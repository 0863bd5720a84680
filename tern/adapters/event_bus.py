"""Async event bus bridging engine callbacks to a front-end consumer.

The engine fires events via callback while a turn runs. The EventBus
queues them for the front-end's consumer loop.
"""
from __future__ import annotations

import asyncio
import logging
from collections.abc import AsyncIterator
from typing import Any

from tern.adapters.events import EngineEvent, dict_to_event
from tern.engine.config import EventCallback

logger = logging.getLogger(__name__)

PUT_TIMEOUT_SECONDS = 30.0


class EventBus:
    """Async queue bridging engine callbacks to event consumers."""

    def __init__(self, maxsize: int = 5000) -> None:
        self._queue: asyncio.Queue[EngineEvent] = asyncio.Queue(maxsize=maxsize)
        self._closed = False

    async def _callback(self, data: dict[str, Any]) -> None:
        """Callback to pass to EngineConfig.event_callback."""
        await self.emit(dict_to_event(data))

    def make_callback(self) -> EventCallback:
        """Return the async callback for EngineConfig.event_callback."""
        return self._callback

    async def emit(self, event: EngineEvent) -> None:
        """Queue an event, waiting for space rather than dropping it."""
        if self._closed:
            return
        try:
            await asyncio.wait_for(self._queue.put(event), timeout=PUT_TIMEOUT_SECONDS)
        except asyncio.TimeoutError:
            logger.error(
                "EventBus queue blocked for %ss, dropping: %s (queue size: %d)",
                PUT_TIMEOUT_SECONDS, event.event_type, self._queue.qsize(),
            )

    async def consume(self) -> AsyncIterator[EngineEvent]:
        """Yield events as they arrive. Stops on close()."""
        while not self._closed:
            try:
                event = await asyncio.wait_for(self._queue.get(), timeout=0.5)
            except asyncio.TimeoutError:
                continue
            yield event

    def pending(self) -> int:
        return self._queue.qsize()

    def close(self) -> None:
        """Stop the consumer loop permanently."""
        self._closed = True

    def reset(self) -> None:
        """Drain leftover events and re-open the bus."""
        while not self._queue.empty():
            self._queue.get_nowait()
        self._closed = False
