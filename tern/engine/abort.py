"""Cooperative cancellation signal shared by one turn and its sub-agents."""
from __future__ import annotations

import asyncio
import logging
from collections.abc import Callable

logger = logging.getLogger(__name__)


class AbortSignal:
    """One-shot abort flag with synchronous listeners.

    Child signals (one per sub-agent) are linked to their parent so
    aborting the parent aborts every child.
    """

    def __init__(self) -> None:
        self._event = asyncio.Event()
        self._listeners: list[Callable[[], None]] = []
        self._unlink: Callable[[], None] | None = None
        self.reason: str | None = None

    @property
    def aborted(self) -> bool:
        return self._event.is_set()

    def abort(self, reason: str = "aborted by user") -> None:
        if self._event.is_set():
            return
        self.reason = reason
        self._event.set()
        listeners, self._listeners = self._listeners, []
        for listener in listeners:
            try:
                listener()
            except Exception:
                logger.exception("Abort listener failed")

    def add_listener(self, listener: Callable[[], None]) -> Callable[[], None]:
        """Register *listener*; it runs immediately if already aborted.

        Returns a function that unregisters it.
        """
        if self._event.is_set():
            listener()
            return lambda: None
        self._listeners.append(listener)

        def _remove() -> None:
            if listener in self._listeners:
                self._listeners.remove(listener)

        return _remove

    def child(self) -> AbortSignal:
        child = AbortSignal()
        child._unlink = self.add_listener(
            lambda: child.abort(self.reason or "parent aborted"),
        )
        return child

    def unlink(self) -> None:
        """Stop following the parent signal this one was created from."""
        if self._unlink is not None:
            self._unlink()
            self._unlink = None

    async def wait(self) -> None:
        await self._event.wait()
