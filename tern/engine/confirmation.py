"""Confirmation gate for side-effecting tool calls and user questions.

Each risky tool call registers a PendingConfirmation and suspends on
its single-use future until the UI (or an abort) writes a decision.
Exactly one decision is accepted per confirmation: when a UI decision
and an abort race, whichever lands first wins and the other is
logged and dropped.

Clarifying questions from askQuestion go through the same gate as a
PendingQuestion, answered once by the UI or dropped by an abort.
"""
from __future__ import annotations

import asyncio
import logging
import uuid
from collections.abc import Awaitable, Callable
from dataclasses import dataclass, field

from .abort import AbortSignal
from .config import EventCallback, fire_event

logger = logging.getLogger(__name__)


@dataclass
class PendingConfirmation:
    """One outstanding approval request."""
    tool_name: str
    description: str
    preview: str | None = None
    agent_id: str = "main"
    id: str = field(default_factory=lambda: str(uuid.uuid4())[:8])
    decision: asyncio.Future = field(
        default_factory=lambda: asyncio.get_running_loop().create_future(),
        repr=False,
    )
    resolved_by: str | None = None

    @property
    def resolved(self) -> bool:
        return self.decision.done()

    def resolve(self, approved: bool, source: str = "ui") -> bool:
        """Write the decision. Returns False if one was already written."""
        if self.decision.done():
            logger.info(
                "Confirmation %s already resolved by %s; ignoring %s decision (approved=%s)",
                self.id, self.resolved_by or "cancellation", source, approved,
            )
            return False
        self.resolved_by = source
        self.decision.set_result(bool(approved))
        logger.info(
            "Confirmation %s for %s resolved by %s: %s",
            self.id, self.tool_name, source, "approved" if approved else "denied",
        )
        return True


@dataclass
class PendingQuestion:
    """A clarifying question waiting for the user's answer.

    The answer is None when the question was dropped (abort, shutdown).
    """
    question: str
    options: list[dict[str, str]] = field(default_factory=list)
    agent_id: str = "main"
    id: str = field(default_factory=lambda: str(uuid.uuid4())[:8])
    answer: asyncio.Future = field(
        default_factory=lambda: asyncio.get_running_loop().create_future(),
        repr=False,
    )
    resolved_by: str | None = None

    def resolve(self, answer: str | None, source: str = "ui") -> bool:
        if self.answer.done():
            logger.info(
                "Question %s already resolved by %s; ignoring %s answer",
                self.id, self.resolved_by or "cancellation", source,
            )
            return False
        self.resolved_by = source
        self.answer.set_result(answer)
        logger.info("Question %s resolved by %s", self.id, source)
        return True


# Notified whenever a confirmation is opened. The receiver is expected to
# eventually call ConfirmationGate.resolve() with the user's decision.
ConfirmationCallback = Callable[[PendingConfirmation], Awaitable[None]]


class ConfirmationGate:
    """Per-session registry of pending confirmations."""

    def __init__(
        self,
        *,
        unattended: bool = False,
        on_request: ConfirmationCallback | None = None,
        event_callback: EventCallback | None = None,
    ) -> None:
        self.unattended = unattended
        self._on_request = on_request
        self._event_callback = event_callback
        self._pending: dict[str, PendingConfirmation] = {}
        self._questions: dict[str, PendingQuestion] = {}
        self._abort: AbortSignal | None = None

    def bind_abort(self, signal: AbortSignal) -> Callable[[], None]:
        """Deny every outstanding confirmation when *signal* fires."""
        self._abort = signal
        return signal.add_listener(lambda: self.deny_all(source="abort"))

    async def request_confirmation(
        self,
        tool_name: str,
        description: str,
        preview: str | None = None,
        *,
        agent_id: str = "main",
    ) -> bool:
        if self.unattended:
            logger.debug("Unattended mode: auto-approving %s", tool_name)
            return True
        if self._abort is not None and self._abort.aborted:
            logger.info("Turn already aborted: denying %s", tool_name)
            return False

        pending = PendingConfirmation(
            tool_name=tool_name,
            description=description,
            preview=preview,
            agent_id=agent_id,
        )
        self._pending[pending.id] = pending
        logger.info("Confirmation %s opened for %s: %s", pending.id, tool_name, description)
        try:
            await fire_event(self._event_callback, {
                "event": "confirmation_requested",
                "agent_id": agent_id,
                "confirmation_id": pending.id,
                "tool_name": tool_name,
                "description": description,
                "preview": preview,
            })
            if self._on_request is not None:
                await self._on_request(pending)
            approved = await pending.decision
        finally:
            self._pending.pop(pending.id, None)

        await fire_event(self._event_callback, {
            "event": "confirmation_resolved",
            "agent_id": agent_id,
            "confirmation_id": pending.id,
            "approved": approved,
            "source": pending.resolved_by,
        })
        return approved

    async def ask(
        self,
        question: str,
        options: list[dict[str, str]] | None = None,
        *,
        agent_id: str = "main",
    ) -> str | None:
        """Ask the user a question. Returns None if nobody can or will answer."""
        if self.unattended:
            logger.info("Unattended mode: nobody to answer %r", question)
            return None
        if self._abort is not None and self._abort.aborted:
            return None

        pending = PendingQuestion(question=question, options=list(options or []), agent_id=agent_id)
        self._questions[pending.id] = pending
        logger.info("Question %s opened: %s", pending.id, question)
        try:
            await fire_event(self._event_callback, {
                "event": "question_requested",
                "agent_id": agent_id,
                "question_id": pending.id,
                "question": question,
                "options": pending.options,
            })
            answer = await pending.answer
        finally:
            self._questions.pop(pending.id, None)

        await fire_event(self._event_callback, {
            "event": "question_resolved",
            "agent_id": agent_id,
            "question_id": pending.id,
            "answered": answer is not None,
            "source": pending.resolved_by,
        })
        return answer

    def pending(self) -> list[PendingConfirmation]:
        return list(self._pending.values())

    def get(self, confirmation_id: str) -> PendingConfirmation | None:
        return self._pending.get(confirmation_id)

    def questions(self) -> list[PendingQuestion]:
        return list(self._questions.values())

    def get_question(self, question_id: str) -> PendingQuestion | None:
        return self._questions.get(question_id)

    def answer(self, question_id: str, text: str, source: str = "ui") -> bool:
        pending = self._questions.get(question_id)
        if pending is None:
            logger.info("Question %s is no longer pending; ignoring %s answer", question_id, source)
            return False
        return pending.resolve(text, source=source)

    def resolve(self, confirmation_id: str, approved: bool, source: str = "ui") -> bool:
        pending = self._pending.get(confirmation_id)
        if pending is None:
            logger.info(
                "Confirmation %s is no longer pending; ignoring %s decision",
                confirmation_id, source,
            )
            return False
        return pending.resolve(approved, source=source)

    def deny_all(self, source: str = "abort") -> int:
        """Deny every outstanding confirmation and drop every open question."""
        count = 0
        for pending in list(self._pending.values()):
            if pending.resolve(False, source=source):
                count += 1
        for question in list(self._questions.values()):
            if question.resolve(None, source=source):
                count += 1
        if count:
            logger.info("Denied %d pending confirmation(s) (%s)", count, source)
        return count
