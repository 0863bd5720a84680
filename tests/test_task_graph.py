from __future__ import annotations

import json

import pytest

from tern.engine.errors import TaskNotFoundError
from tern.engine.models import TaskStatus
from tern.engine.task_graph import TaskGraphStore


def _store(tmp_path, session_id: str = "session-a") -> TaskGraphStore:
    return TaskGraphStore(session_id, tmp_path / "tasks")


def test_create_assigns_pending_status_and_persists(tmp_path):
    store = _store(tmp_path)
    task = store.create("Write parser", description="tokenizer first", active_form="Writing parser")

    assert task.status is TaskStatus.PENDING
    assert len(task.id) == 8
    data = json.loads(store.path.read_text())
    assert data == [task.to_dict()]
    assert data[0]["activeForm"] == "Writing parser"
    assert "blocks" not in data[0]
    assert "metadata" not in data[0]


def test_list_preserves_creation_order(tmp_path):
    store = _store(tmp_path)
    ids = [store.create(f"task {i}").id for i in range(4)]
    assert [t.id for t in store.list()] == ids


def test_update_unknown_task_raises(tmp_path):
    store = _store(tmp_path)
    with pytest.raises(TaskNotFoundError, match="Task not found: nope"):
        store.update("nope", status="completed")


def test_update_rejects_invalid_status(tmp_path):
    store = _store(tmp_path)
    task = store.create("a")
    with pytest.raises(ValueError):
        store.update(task.id, status="finished")
    assert store.get(task.id).status is TaskStatus.PENDING


def test_dependencies_merge_as_sets(tmp_path):
    store = _store(tmp_path)
    a = store.create("a")
    b = store.create("b")
    c = store.create("c")

    store.update(c.id, add_blocked_by=[a.id])
    updated = store.update(c.id, add_blocked_by=[a.id, b.id])

    assert updated.blocked_by == [a.id, b.id]


def test_unknown_and_self_references_are_pruned(tmp_path):
    store = _store(tmp_path)
    a = store.create("a")
    updated = store.update(a.id, add_blocks=["ghost123", a.id])
    assert updated.blocks == []


def test_completing_a_task_removes_it_from_every_dependency_list(tmp_path):
    store = _store(tmp_path)
    a = store.create("a")
    b = store.create("b")
    c = store.create("c")
    store.update(b.id, add_blocked_by=[a.id])
    store.update(c.id, add_blocked_by=[a.id, b.id])
    store.update(a.id, add_blocks=[b.id, c.id])

    store.update(a.id, status="completed")

    assert store.get(b.id).blocked_by == []
    assert store.get(c.id).blocked_by == [b.id]
    persisted = {t["id"]: t for t in json.loads(store.path.read_text())}
    assert "blockedBy" not in persisted[b.id]
    assert persisted[c.id]["blockedBy"] == [b.id]


def test_deleted_task_is_hidden_and_unpersisted(tmp_path):
    store = _store(tmp_path)
    a = store.create("a")
    b = store.create("b")
    store.update(b.id, add_blocked_by=[a.id])

    store.update(a.id, status=TaskStatus.DELETED)

    assert [t.id for t in store.list()] == [b.id]
    assert store.get(b.id).blocked_by == []
    with pytest.raises(TaskNotFoundError):
        store.get(a.id)
    with pytest.raises(TaskNotFoundError):
        store.update(a.id, subject="again")
    assert [t["id"] for t in json.loads(store.path.read_text())] == [b.id]


def test_metadata_merge_and_key_removal(tmp_path):
    store = _store(tmp_path)
    task = store.create("a", metadata={"area": "cli", "priority": 2})

    updated = store.update(task.id, metadata={"priority": None, "owner_note": "x"})

    assert updated.metadata == {"area": "cli", "owner_note": "x"}


def test_returned_tasks_are_copies(tmp_path):
    store = _store(tmp_path)
    task = store.create("a")
    fetched = store.get(task.id)
    fetched.blocks.append("mutated")
    fetched.subject = "changed"
    assert store.get(task.id).subject == "a"
    assert store.get(task.id).blocks == []


def test_reload_from_disk(tmp_path):
    store = _store(tmp_path)
    a = store.create("a")
    b = store.create("b")
    store.update(b.id, add_blocked_by=[a.id], owner="sub-1234")

    reopened = _store(tmp_path)
    tasks = reopened.list()
    assert [t.id for t in tasks] == [a.id, b.id]
    assert tasks[1].blocked_by == [a.id]
    assert tasks[1].owner == "sub-1234"


def test_switch_session_isolates_graphs(tmp_path):
    store = _store(tmp_path, "one")
    store.create("belongs to one")

    store.switch_session("two")
    assert store.list() == []
    store.create("belongs to two")

    store.switch_session("one")
    assert [t.subject for t in store.list()] == ["belongs to one"]


def test_corrupt_task_file_is_ignored(tmp_path):
    tasks_dir = tmp_path / "tasks"
    tasks_dir.mkdir()
    (tasks_dir / "broken.json").write_text("{not json")
    store = TaskGraphStore("broken", tasks_dir)
    assert store.list() == []
