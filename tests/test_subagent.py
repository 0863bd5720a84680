from __future__ import annotations

import asyncio
import json
from pathlib import Path

import pytest

from fakes import ScriptedModel, text_step, tool_step
from tern.engine.abort import AbortSignal
from tern.engine.agent_loop import AgentLoop
from tern.engine.confirmation import ConfirmationGate
from tern.engine.errors import ToolRegistryError
from tern.engine.models import Finish, TaskStatus, TextDelta
from tern.engine.subagent import SUBAGENT_TOOL_NAMES, SubAgentSpawner, restricted_registry
from tern.engine.task_graph import TaskGraphStore
from tern.engine.tools.base import ToolContext, ToolRegistry
from tern.engine.tools.builtin import WRITE_TOOL, builtin_tools
from tern.shared.models.message import ChatMessage, MessageRole
from tern.shared.services.media_store import MediaCache


def _spawner(model, tmp_path, *, events=None, max_steps=4, max_output_chars=8000):
    async def callback(data):
        if events is not None:
            events.append(data)

    store = TaskGraphStore("sess", tmp_path / "tasks")
    return SubAgentSpawner(
        model,
        store,
        cwd=tmp_path,
        max_steps=max_steps,
        max_output_chars=max_output_chars,
        event_callback=callback,
    ), store


def test_registry_contains_only_read_only_tools(tmp_path):
    spawner, _ = _spawner(ScriptedModel([]), tmp_path)
    registry = spawner.build_registry(MediaCache())
    assert sorted(registry.names()) == sorted(SUBAGENT_TOOL_NAMES)
    assert registry.side_effecting() == []
    assert "spawnAgent" not in registry


def test_side_effecting_tool_is_rejected():
    with pytest.raises(ToolRegistryError) as excinfo:
        restricted_registry([WRITE_TOOL])
    assert excinfo.value.tool_names == ["write"]


def test_builtin_side_effecting_tools_are_all_rejected():
    with pytest.raises(ToolRegistryError) as excinfo:
        restricted_registry(builtin_tools(MediaCache()))
    assert set(excinfo.value.tool_names) == {"write", "edit", "bash"}


@pytest.mark.asyncio
async def test_spawn_returns_final_text_and_uses_fresh_history(tmp_path):
    (tmp_path / "notes.md").write_text("alpha\nbeta\n")
    model = ScriptedModel([
        tool_step(("r1", "read", {"path": "notes.md"})),
        text_step("notes.md has two lines"),
    ])
    events = []
    spawner, _ = _spawner(model, tmp_path, events=events)

    output = await spawner.spawn("Summarize notes.md", context="The user is writing docs")

    assert output == {"result": "notes.md has two lines"}
    first = model.requests[0]
    assert len(first.messages) == 1
    assert first.messages[0].role is MessageRole.USER
    assert first.messages[0].content == (
        "Context:\nThe user is writing docs\n\nTask:\nSummarize notes.md"
    )
    tool_result = json.loads(model.requests[1].messages[-1].content)
    assert "alpha" in tool_result["content"]
    started, finished = [e for e in events if e["event"].startswith("subagent_")]
    assert started["event"] == "subagent_started"
    assert started["agent_id"].startswith("sub-")
    assert finished["agent_id"] == started["agent_id"]
    assert finished["is_error"] is False


@pytest.mark.asyncio
async def test_output_is_truncated_with_marker(tmp_path):
    model = ScriptedModel([text_step("x" * 50)])
    spawner, _ = _spawner(model, tmp_path, max_output_chars=10)

    output = await spawner.spawn("long answer please")

    assert output["result"] == "x" * 10 + "\n\n[output truncated - exceeded 10 char limit]"


@pytest.mark.asyncio
async def test_step_limit_is_bounded(tmp_path):
    model = ScriptedModel([tool_step(("t", "taskList", {}))], repeat_last=True)
    spawner, _ = _spawner(model, tmp_path, max_steps=2)

    output = await spawner.spawn("never finishes")

    assert len(model.requests) == 2
    assert "result" in output


@pytest.mark.asyncio
async def test_write_attempt_is_an_unknown_tool(tmp_path):
    model = ScriptedModel([
        tool_step(("w", "write", {"path": "x.txt", "content": "nope"})),
        text_step("could not write"),
    ])
    spawner, _ = _spawner(model, tmp_path)

    await spawner.spawn("try to write")

    assert not (tmp_path / "x.txt").exists()
    denied = json.loads(model.requests[1].messages[-1].content)
    assert denied == {"error": "Unknown tool: write"}


@pytest.mark.asyncio
async def test_sub_agent_shares_the_task_graph(tmp_path):
    spawner, store = _spawner(ScriptedModel([]), tmp_path)
    task = store.create("investigate flaky test")
    spawner._model = ScriptedModel([
        tool_step(("u", "taskUpdate", {"taskId": task.id, "status": "in_progress", "owner": "sub"})),
        text_step("claimed"),
    ])

    await spawner.spawn("claim the task")

    updated = store.get(task.id)
    assert updated.status is TaskStatus.IN_PROGRESS
    assert updated.owner == "sub"


@pytest.mark.asyncio
async def test_parent_abort_reaches_the_sub_agent(tmp_path):
    parent = AbortSignal()

    async def step(request):
        yield TextDelta("thinking")
        parent.abort("parent stopped")
        await asyncio.sleep(10)
        yield Finish()

    spawner, _ = _spawner(ScriptedModel([step]), tmp_path)
    output = await spawner.spawn("slow research", abort=parent)

    assert output == {"error": "Sub-agent aborted"}


@pytest.mark.asyncio
async def test_model_failure_is_a_tool_error(tmp_path):
    async def step(request):
        raise RuntimeError("connection reset")
        yield  # pragma: no cover

    spawner, _ = _spawner(ScriptedModel([step]), tmp_path)
    output = await spawner.spawn("anything")

    assert output == {"error": "Sub-agent failed: connection reset"}


@pytest.mark.asyncio
async def test_spawn_agent_tool_passes_context_and_abort(tmp_path):
    model = ScriptedModel([text_step("found it")])
    spawner, _ = _spawner(model, tmp_path)
    tool = spawner.as_tool()

    assert tool.name == "spawnAgent"
    assert tool.side_effecting is False
    assert tool.input_schema["required"] == ["task"]
    ctx = ToolContext(cwd=Path(tmp_path), abort=AbortSignal())
    assert await tool.execute({"task": "find it"}, ctx) == {"result": "found it"}


class _RoutingModel(ScriptedModel):
    """Parent asks for two sub-agents; each sub-agent waits for the other."""

    def __init__(self) -> None:
        super().__init__([])
        self.parent_calls = 0
        self.sub_agents_waiting = 0
        self.both_running = asyncio.Event()

    async def stream(self, request):
        self.requests.append(request)
        if "research sub-agent" in request.system_prompt:
            self.sub_agents_waiting += 1
            if self.sub_agents_waiting == 2:
                self.both_running.set()
            await asyncio.wait_for(self.both_running.wait(), timeout=1)
            yield TextDelta(f"answer for {request.messages[0].content}")
            yield Finish()
            return
        self.parent_calls += 1
        if self.parent_calls == 1:
            for event in tool_step(("s1", "spawnAgent", {"task": "A"}), ("s2", "spawnAgent", {"task": "B"})):
                yield event
        else:
            yield TextDelta("merged")
            yield Finish()


@pytest.mark.asyncio
async def test_two_sub_agents_in_one_step_run_concurrently(tmp_path):
    model = _RoutingModel()
    spawner, _ = _spawner(model, tmp_path)
    loop = AgentLoop(model, ConfirmationGate(), cwd=tmp_path)

    result = await loop.run_turn(
        [ChatMessage.user("research A and B")], "parent", ToolRegistry.of([spawner.as_tool()]), 5, AbortSignal(),
    )

    assert result.text == "merged"
    answers = [json.loads(m.content) for m in result.messages if m.role is MessageRole.TOOL]
    assert answers == [{"result": "answer for A"}, {"result": "answer for B"}]
