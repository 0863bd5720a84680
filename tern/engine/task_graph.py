"""Shared task graph for one session.

Every agent in a session (the main loop and any sub-agents) reads and
mutates the same TaskGraphStore. Each mutation:

1. applies the patch under a lock,
2. prunes dependency edges across the whole graph so no ``blocks`` or
   ``blockedBy`` entry points at a completed, deleted or unknown task,
3. persists the non-deleted tasks to ``<tasks_dir>/<session_id>.json``
   before returning.

Deleted tasks stay in memory so their ids keep resolving to "not found"
instead of being reused, but they are never listed or persisted.
"""
from __future__ import annotations

import copy
import json
import logging
import threading
import time
from pathlib import Path
from typing import Any

from tern.shared.services.durable_write import atomic_write_json

from .errors import TaskNotFoundError
from .models import CLOSED_TASK_STATES, Task, TaskStatus

logger = logging.getLogger(__name__)


class TaskGraphStore:
    """Insertion-ordered, persisted task records with dependency edges."""

    def __init__(self, session_id: str, tasks_dir: Path) -> None:
        self._lock = threading.Lock()
        self._tasks_dir = Path(tasks_dir)
        self._session_id = session_id
        self._tasks: dict[str, Task] = {}
        self._load()

    @property
    def session_id(self) -> str:
        return self._session_id

    @property
    def path(self) -> Path:
        return self._tasks_dir / f"{self._session_id}.json"

    def switch_session(self, session_id: str) -> None:
        """Point the store at another session, loading its persisted tasks."""
        with self._lock:
            self._session_id = session_id
            self._tasks = {}
            self._load()

    # ── Operations ──

    def create(
        self,
        subject: str,
        description: str | None = None,
        active_form: str | None = None,
        metadata: dict[str, Any] | None = None,
    ) -> Task:
        with self._lock:
            task = Task(subject=subject, description=description, active_form=active_form)
            while task.id in self._tasks:
                task = Task(subject=subject, description=description, active_form=active_form)
            if metadata:
                _merge_metadata(task, metadata)
            self._tasks[task.id] = task
            self._persist()
            logger.info("Task created %s: %s", task.id, subject)
            return copy.deepcopy(task)

    def update(
        self,
        task_id: str,
        *,
        status: TaskStatus | str | None = None,
        subject: str | None = None,
        description: str | None = None,
        active_form: str | None = None,
        owner: str | None = None,
        add_blocks: list[str] | None = None,
        add_blocked_by: list[str] | None = None,
        metadata: dict[str, Any] | None = None,
    ) -> Task:
        """Patch a task. Fields left as None are untouched.

        Raises TaskNotFoundError for unknown or deleted ids and
        ValueError for an unknown status value.
        """
        new_status = TaskStatus(status) if status is not None else None
        with self._lock:
            task = self._tasks.get(task_id)
            if task is None or task.status is TaskStatus.DELETED:
                raise TaskNotFoundError(task_id)

            if new_status is not None:
                task.status = new_status
            if subject is not None:
                task.subject = subject
            if description is not None:
                task.description = description
            if active_form is not None:
                task.active_form = active_form
            if owner is not None:
                task.owner = owner

            for dep in add_blocks or []:
                if dep not in task.blocks:
                    task.blocks.append(dep)
            for dep in add_blocked_by or []:
                if dep not in task.blocked_by:
                    task.blocked_by.append(dep)

            if metadata is not None:
                _merge_metadata(task, metadata)

            task.updated_at = int(time.time() * 1000)
            self._prune_edges()
            self._persist()
            logger.info("Task updated %s (status=%s)", task.id, task.status.value)
            return copy.deepcopy(task)

    def get(self, task_id: str) -> Task:
        with self._lock:
            task = self._tasks.get(task_id)
            if task is None or task.status is TaskStatus.DELETED:
                raise TaskNotFoundError(task_id)
            return copy.deepcopy(task)

    def list(self) -> list[Task]:
        """All non-deleted tasks in creation order."""
        with self._lock:
            return [
                copy.deepcopy(t) for t in self._tasks.values()
                if t.status is not TaskStatus.DELETED
            ]

    # ── Internals ──

    def _prune_edges(self) -> None:
        live = {
            tid for tid, t in self._tasks.items()
            if t.status not in CLOSED_TASK_STATES
        }
        for task in self._tasks.values():
            task.blocks = [d for d in task.blocks if d in live and d != task.id]
            task.blocked_by = [d for d in task.blocked_by if d in live and d != task.id]

    def _persist(self) -> None:
        data = [
            t.to_dict() for t in self._tasks.values()
            if t.status is not TaskStatus.DELETED
        ]
        atomic_write_json(self.path, data)

    def _load(self) -> None:
        path = self.path
        if not path.is_file():
            return
        try:
            raw = json.loads(path.read_text(encoding="utf-8"))
        except (OSError, json.JSONDecodeError) as exc:
            logger.warning("Cannot read task file %s: %s", path, exc)
            return
        if not isinstance(raw, list):
            logger.warning("Task file %s is not a JSON array, ignoring", path)
            return
        for item in raw:
            try:
                task = Task.from_dict(item)
            except (KeyError, TypeError, ValueError) as exc:
                logger.warning("Skipping malformed task record in %s: %s", path, exc)
                continue
            self._tasks[task.id] = task
        logger.info("Loaded %d task(s) for session %s", len(self._tasks), self._session_id[:8])


def _merge_metadata(task: Task, patch: dict[str, Any]) -> None:
    """Key-level merge. A None value removes the key."""
    merged = dict(task.metadata)
    for key, value in patch.items():
        if value is None:
            merged.pop(key, None)
        else:
            merged[key] = value
    task.metadata = merged
