from __future__ import annotations

import asyncio

import pytest

from tern.engine.abort import AbortSignal
from tern.engine.confirmation import ConfirmationGate


@pytest.mark.asyncio
async def test_unattended_gate_approves_without_prompting():
    events = []

    async def callback(data):
        events.append(data)

    gate = ConfirmationGate(unattended=True, event_callback=callback)
    assert await gate.request_confirmation("bash", "rm -rf build") is True
    assert events == []


@pytest.mark.asyncio
async def test_ui_decision_resolves_request():
    gate = ConfirmationGate()

    async def approve(pending):
        asyncio.get_running_loop().call_soon(gate.resolve, pending.id, True)

    gate._on_request = approve
    assert await gate.request_confirmation("write", "Create notes.txt") is True
    assert gate.pending() == []


@pytest.mark.asyncio
async def test_events_carry_confirmation_id_and_source():
    events = []

    async def callback(data):
        events.append(data)

    gate = ConfirmationGate(event_callback=callback)
    task = asyncio.create_task(gate.request_confirmation("edit", "Edit app.py", "--- diff"))
    await asyncio.sleep(0)
    (pending,) = gate.pending()
    gate.resolve(pending.id, False)

    assert await task is False
    requested, resolved = events
    assert requested["event"] == "confirmation_requested"
    assert requested["confirmation_id"] == pending.id
    assert requested["preview"] == "--- diff"
    assert resolved == {
        "event": "confirmation_resolved",
        "agent_id": "main",
        "confirmation_id": pending.id,
        "approved": False,
        "source": "ui",
    }


@pytest.mark.asyncio
async def test_abort_denies_pending_and_late_ui_decision_is_ignored():
    gate = ConfirmationGate()
    signal = AbortSignal()
    gate.bind_abort(signal)

    task = asyncio.create_task(gate.request_confirmation("bash", "make deploy"))
    await asyncio.sleep(0)
    (pending,) = gate.pending()

    signal.abort()
    assert await task is False
    assert pending.resolved_by == "abort"
    # The record is gone, and even a direct late write is rejected.
    assert gate.resolve(pending.id, True) is False
    assert pending.resolve(True, source="ui") is False
    assert pending.decision.result() is False


@pytest.mark.asyncio
async def test_first_decision_wins():
    gate = ConfirmationGate()
    task = asyncio.create_task(gate.request_confirmation("write", "w"))
    await asyncio.sleep(0)
    (pending,) = gate.pending()

    assert gate.resolve(pending.id, True) is True
    assert pending.resolve(False, source="abort") is False
    assert await task is True


@pytest.mark.asyncio
async def test_request_after_abort_is_denied_immediately():
    gate = ConfirmationGate()
    signal = AbortSignal()
    gate.bind_abort(signal)
    signal.abort()
    assert await gate.request_confirmation("bash", "ls") is False
    assert gate.pending() == []


@pytest.mark.asyncio
async def test_deny_all_counts_only_open_requests():
    gate = ConfirmationGate()
    tasks = [
        asyncio.create_task(gate.request_confirmation("bash", f"cmd {i}"))
        for i in range(3)
    ]
    await asyncio.sleep(0)
    assert len(gate.pending()) == 3

    assert gate.deny_all(source="shutdown") == 3
    assert await asyncio.gather(*tasks) == [False, False, False]
    assert gate.deny_all() == 0


@pytest.mark.asyncio
async def test_question_is_answered_once_and_reports_events():
    events = []

    async def callback(data):
        events.append(data)

    gate = ConfirmationGate(event_callback=callback)
    task = asyncio.create_task(gate.ask("Which branch?", [{"label": "main"}]))
    await asyncio.sleep(0)
    (question,) = gate.questions()

    assert gate.get_question(question.id) is question
    assert gate.answer(question.id, "develop") is True
    assert await task == "develop"
    assert gate.answer(question.id, "main") is False
    assert gate.questions() == []
    requested, resolved = events
    assert requested["options"] == [{"label": "main"}]
    assert resolved == {
        "event": "question_resolved",
        "agent_id": "main",
        "question_id": question.id,
        "answered": True,
        "source": "ui",
    }


@pytest.mark.asyncio
async def test_abort_drops_open_questions_and_unattended_gate_never_asks():
    gate = ConfirmationGate()
    signal = AbortSignal()
    gate.bind_abort(signal)
    task = asyncio.create_task(gate.ask("Which port?"))
    await asyncio.sleep(0)
    (question,) = gate.questions()

    signal.abort()

    assert await task is None
    assert question.resolved_by == "abort"
    assert await gate.ask("Again?") is None
    assert await ConfirmationGate(unattended=True).ask("Anyone?") is None


@pytest.mark.asyncio
async def test_get_returns_only_open_confirmations():
    gate = ConfirmationGate()
    task = asyncio.create_task(gate.request_confirmation("edit", "Edit app.py"))
    await asyncio.sleep(0)
    (pending,) = gate.pending()

    assert gate.get(pending.id) is pending
    gate.resolve(pending.id, True)
    await task
    assert gate.get(pending.id) is None

@pytest.mark.asyncio
async def test_child_abort_follows_parent_until_unlinked():
    parent = AbortSignal()
    linked = parent.child()
    detached = parent.child()
    detached.unlink()

    parent.abort("stop")

    assert linked.aborted
    assert linked.reason == "stop"
    assert not detached.aborted
