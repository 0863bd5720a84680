from __future__ import annotations

import asyncio
import json

import pytest

from fakes import ScriptedModel, make_tool, text_step, tool_step
from tern.engine.abort import AbortSignal
from tern.engine.agent_loop import AgentLoop
from tern.engine.confirmation import ConfirmationGate
from tern.engine.errors import ModelCallError
from tern.engine.models import TextDelta, ToolCallEnd, ToolCallStart, ToolInputDelta, Finish, TurnOutcome
from tern.engine.tools.base import ToolRegistry
from tern.shared.models.message import ChatMessage, MessageRole
from tern.shared.services.media_store import MediaCache


def _loop(model, tmp_path, gate=None, events=None, media=None) -> AgentLoop:
    async def callback(data):
        if events is not None:
            events.append(data)

    return AgentLoop(
        model,
        gate or ConfirmationGate(),
        cwd=tmp_path,
        event_callback=callback,
        media=media,
    )


def _tool_messages(result):
    return [m for m in result.messages if m.role is MessageRole.TOOL]


@pytest.mark.asyncio
async def test_text_only_turn_completes(tmp_path):
    model = ScriptedModel([text_step("Hello there", {"total_tokens": 7})])
    events = []
    loop = _loop(model, tmp_path, events=events)

    result = await loop.run_turn(
        [ChatMessage.user("hi")], "system", ToolRegistry(), 5, AbortSignal(),
    )

    assert result.outcome is TurnOutcome.COMPLETED
    assert result.committed
    assert result.text == "Hello there"
    assert result.steps == 1
    assert result.usage == {"total_tokens": 7}
    assert [m.role for m in result.messages] == [MessageRole.ASSISTANT]
    assert [e["event"] for e in events] == ["turn_started", "stream_chunk", "turn_finished"]
    assert model.requests[0].system_prompt == "system"


@pytest.mark.asyncio
async def test_tool_results_follow_request_order_not_completion_order(tmp_path):
    finished: list[str] = []

    async def slow(tool_input, ctx):
        await asyncio.sleep(0.05)
        finished.append("slow")
        return {"value": "slow"}

    async def fast(tool_input, ctx):
        finished.append("fast")
        return {"value": "fast"}

    registry = ToolRegistry.of([make_tool("slow", slow), make_tool("fast", fast)])
    model = ScriptedModel([
        tool_step(("c1", "slow", {}), ("c2", "fast", {})),
        text_step("done"),
    ])

    result = await _loop(model, tmp_path).run_turn(
        [ChatMessage.user("go")], "", registry, 5, AbortSignal(),
    )

    assert finished == ["fast", "slow"]
    tool_messages = _tool_messages(result)
    assert [m.tool_call_id for m in tool_messages] == ["c1", "c2"]
    assert [json.loads(m.content)["value"] for m in tool_messages] == ["slow", "fast"]
    # The second request carries assistant + both results before the new step.
    second = model.requests[1].messages
    assert [m.role for m in second[-3:]] == [MessageRole.ASSISTANT, MessageRole.TOOL, MessageRole.TOOL]
    assert [c.id for c in second[-3].tool_calls] == ["c1", "c2"]


@pytest.mark.asyncio
async def test_tool_starts_when_its_call_closes_mid_stream(tmp_path):
    started = asyncio.Event()

    async def probe(tool_input, ctx):
        started.set()
        return {"ok": True}

    async def step(request):
        yield ToolCallStart("c1", "probe")
        yield ToolInputDelta("c1", "{}")
        yield ToolCallEnd("c1")
        # The stream is still open; the tool must already be running.
        await asyncio.wait_for(started.wait(), timeout=1)
        yield TextDelta("after")
        yield Finish("tool_calls")

    model = ScriptedModel([step, text_step("done")])
    result = await _loop(model, tmp_path).run_turn(
        [ChatMessage.user("go")], "", ToolRegistry.of([make_tool("probe", probe)]), 5, AbortSignal(),
    )

    assert result.outcome is TurnOutcome.COMPLETED
    assert result.messages[0].content == "after"


@pytest.mark.asyncio
async def test_concurrent_tools_overlap(tmp_path):
    both_running = asyncio.Event()
    running = 0

    async def worker(tool_input, ctx):
        nonlocal running
        running += 1
        if running == 2:
            both_running.set()
        await asyncio.wait_for(both_running.wait(), timeout=1)
        return {"id": tool_input["n"]}

    model = ScriptedModel([
        tool_step(("a", "worker", {"n": 1}), ("b", "worker", {"n": 2})),
        text_step("done"),
    ])
    result = await _loop(model, tmp_path).run_turn(
        [ChatMessage.user("go")], "", ToolRegistry.of([make_tool("worker", worker)]), 5, AbortSignal(),
    )

    assert result.outcome is TurnOutcome.COMPLETED
    assert [json.loads(m.content) for m in _tool_messages(result)] == [{"id": 1}, {"id": 2}]


@pytest.mark.asyncio
async def test_step_limit_returns_committed_partial_turn(tmp_path):
    async def noop(tool_input, ctx):
        return {"ok": True}

    events = []
    model = ScriptedModel([tool_step(("c", "noop", {}), text="working")], repeat_last=True)
    result = await _loop(model, tmp_path, events=events).run_turn(
        [ChatMessage.user("loop forever")], "", ToolRegistry.of([make_tool("noop", noop)]), 3, AbortSignal(),
    )

    assert result.outcome is TurnOutcome.STEP_LIMIT
    assert result.committed
    assert result.steps == 3
    assert len(model.requests) == 3
    assert len(result.messages) == 6
    assert result.usage == {"total_tokens": 30}
    assert any(e["event"] == "step_limit_reached" and e["steps"] == 3 for e in events)


@pytest.mark.asyncio
async def test_tool_errors_are_returned_to_the_model(tmp_path):
    async def boom(tool_input, ctx):
        raise RuntimeError("disk on fire")

    async def needs_path(tool_input, ctx):
        return {"ok": True}

    registry = ToolRegistry.of([
        make_tool("boom", boom),
        make_tool("needs_path", needs_path, required=["path"]),
    ])
    model = ScriptedModel([
        tool_step(
            ("c1", "boom", {}),
            ("c2", "nope", {}),
            ("c3", "needs_path", {}),
            ("c4", "needs_path", "{not json"),
        ),
        text_step("recovered"),
    ])

    result = await _loop(model, tmp_path).run_turn(
        [ChatMessage.user("go")], "", registry, 5, AbortSignal(),
    )

    assert result.outcome is TurnOutcome.COMPLETED
    errors = [json.loads(m.content)["error"] for m in _tool_messages(result)]
    assert errors[0] == "boom failed: disk on fire"
    assert errors[1] == "Unknown tool: nope"
    assert errors[2] == "needs_path: missing required parameter(s): path"
    assert errors[3].startswith("needs_path: Invalid JSON arguments")


@pytest.mark.asyncio
async def test_denied_side_effect_is_reported_and_not_executed(tmp_path):
    executed = []

    async def write(tool_input, ctx):
        executed.append(tool_input)
        return {"ok": True}

    gate = ConfirmationGate()

    async def deny(pending):
        asyncio.get_running_loop().call_soon(gate.resolve, pending.id, False)

    gate._on_request = deny
    model = ScriptedModel([tool_step(("c1", "write", {"path": "x"})), text_step("ok, skipped")])

    result = await _loop(model, tmp_path, gate=gate).run_turn(
        [ChatMessage.user("write x")], "",
        ToolRegistry.of([make_tool("write", write, side_effecting=True)]), 5, AbortSignal(),
    )

    assert executed == []
    assert result.outcome is TurnOutcome.COMPLETED
    (tool_message,) = _tool_messages(result)
    assert json.loads(tool_message.content) == {"error": "User denied write operation."}


@pytest.mark.asyncio
async def test_abort_during_confirmation_ends_turn_without_messages(tmp_path):
    executed = []

    async def bash(tool_input, ctx):
        executed.append(True)
        return {"ok": True}

    signal = AbortSignal()
    gate = ConfirmationGate()
    seen = []

    async def on_request(pending):
        seen.append(pending)
        asyncio.get_running_loop().call_soon(signal.abort, "user pressed ctrl-c")

    gate._on_request = on_request
    model = ScriptedModel([tool_step(("c1", "bash", {"command": "make"}))])

    result = await _loop(model, tmp_path, gate=gate).run_turn(
        [ChatMessage.user("build")], "",
        ToolRegistry.of([make_tool("bash", bash, side_effecting=True)]), 5, signal,
    )

    assert result.outcome is TurnOutcome.ABORTED
    assert not result.committed
    assert result.messages == []
    assert result.error == "user pressed ctrl-c"
    assert executed == []
    (pending,) = seen
    assert pending.decision.result() is False
    assert pending.resolved_by == "abort"
    assert gate.pending() == []


@pytest.mark.asyncio
async def test_abort_while_streaming(tmp_path):
    signal = AbortSignal()

    async def step(request):
        yield TextDelta("partial")
        signal.abort()
        await asyncio.sleep(10)
        yield Finish()

    result = await _loop(ScriptedModel([step]), tmp_path).run_turn(
        [ChatMessage.user("hi")], "", ToolRegistry(), 5, signal,
    )

    assert result.outcome is TurnOutcome.ABORTED
    assert result.messages == []


@pytest.mark.asyncio
async def test_model_failure_is_an_error_outcome(tmp_path):
    async def step(request):
        yield TextDelta("par")
        raise ModelCallError(502, "bad gateway")

    result = await _loop(ScriptedModel([step]), tmp_path).run_turn(
        [ChatMessage.user("hi")], "", ToolRegistry(), 5, AbortSignal(),
    )

    assert result.outcome is TurnOutcome.ERROR
    assert not result.committed
    assert "bad gateway" in result.error
    assert result.messages == []


@pytest.mark.asyncio
async def test_pending_media_is_injected_before_next_call(tmp_path):
    media = MediaCache()

    async def screenshot(tool_input, ctx):
        return {"mediaId": media.put("image/png", b"\x89PNG")}

    model = ScriptedModel([tool_step(("c1", "screenshot", {})), text_step("I see it")])
    result = await _loop(model, tmp_path, media=media).run_turn(
        [ChatMessage.user("look")], "", ToolRegistry.of([make_tool("screenshot", screenshot)]), 5, AbortSignal(),
    )

    injected = model.requests[1].messages[-1]
    assert injected.role is MessageRole.USER
    assert injected.content == "[1 image(s) attached above]"
    assert injected.images[0].startswith("data:image/png;base64,")
    assert injected in result.messages
    assert len(media) == 0
