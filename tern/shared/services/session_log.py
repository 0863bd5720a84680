"""Session transcript persistence.

Storage layout:
    ~/.tern/projects/{cwd-slug}/{session_id}.jsonl

The slug is the absolute working directory with every "/" replaced by
"-". Each line is one SessionRecord:

    {"type", "sessionId", "recordId", "parentRecordId",
     "workingDirectory", "branchLabel", "timestamp", "message"}

Records form a linear chain through parentRecordId. A save rewrites the
whole file, reusing record ids and timestamps by position so history
that has not changed keeps its identity.
"""

from __future__ import annotations

import json
import logging
import uuid
from dataclasses import dataclass
from datetime import datetime, timezone
from pathlib import Path
from typing import Any

from tern.shared.models.message import ChatMessage, MessageRole
from tern.shared.services.durable_write import atomic_write_jsonl

logger = logging.getLogger(__name__)

FIRST_PROMPT_CHARS = 120


def _utcnow_iso() -> str:
    return datetime.now(timezone.utc).isoformat()


def project_slug(cwd: str | Path) -> str:
    return str(Path(cwd).resolve()).replace("/", "-")


def read_branch_label(cwd: str | Path) -> str | None:
    """Current git branch for cwd, read from .git/HEAD without running git."""
    current = Path(cwd).resolve()
    for directory in (current, *current.parents):
        git_path = directory / ".git"
        if git_path.is_file():
            # Worktree: ".git" is a file pointing at the real git dir.
            try:
                pointer = git_path.read_text(encoding="utf-8").strip()
            except OSError:
                return None
            if not pointer.startswith("gitdir:"):
                return None
            git_dir = Path(pointer[len("gitdir:"):].strip())
            if not git_dir.is_absolute():
                git_dir = directory / git_dir
        elif git_path.is_dir():
            git_dir = git_path
        else:
            continue
        try:
            head = (git_dir / "HEAD").read_text(encoding="utf-8").strip()
        except OSError:
            return None
        if head.startswith("ref: refs/heads/"):
            return head[len("ref: refs/heads/"):]
        return head[:8] or None
    return None


@dataclass
class SessionSummary:
    session_id: str
    first_prompt: str
    message_count: int
    created: str
    modified: str
    branch_label: str | None = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "sessionId": self.session_id,
            "firstPrompt": self.first_prompt,
            "messageCount": self.message_count,
            "created": self.created,
            "modified": self.modified,
            "branchLabel": self.branch_label,
        }


class SessionLog:
    """Append-only, resumable transcripts keyed by working directory."""

    def __init__(self, projects_dir: Path) -> None:
        self._projects_dir = Path(projects_dir)

    def project_dir(self, cwd: str | Path) -> Path:
        return self._projects_dir / project_slug(cwd)

    def session_path(self, cwd: str | Path, session_id: str) -> Path:
        return self.project_dir(cwd) / f"{session_id}.jsonl"

    def create_session(self, cwd: str | Path) -> str:
        """Allocate a new session id. Nothing is written until the first save."""
        session_id = str(uuid.uuid4())
        logger.info("New session %s for %s", session_id[:8], cwd)
        return session_id

    def save(self, cwd: str | Path, session_id: str, messages: list[ChatMessage]) -> None:
        if not messages:
            return
        path = self.session_path(cwd, session_id)
        previous = self._read_records(path)
        branch = read_branch_label(cwd)
        working_dir = str(Path(cwd).resolve())

        records: list[dict[str, Any]] = []
        parent_id: str | None = None
        for index, message in enumerate(messages):
            prior = previous[index] if index < len(previous) else None
            record_id = (prior or {}).get("recordId") or str(uuid.uuid4())
            timestamp = (prior or {}).get("timestamp") or _utcnow_iso()
            records.append({
                "type": message.role.value,
                "sessionId": session_id,
                "recordId": record_id,
                "parentRecordId": parent_id,
                "workingDirectory": working_dir,
                "branchLabel": branch,
                "timestamp": timestamp,
                "message": message.to_dict(),
            })
            parent_id = record_id

        atomic_write_jsonl(path, records)
        logger.info("Saved session %s (%d records)", session_id[:8], len(records))

    def load(self, cwd: str | Path, session_id: str) -> list[ChatMessage]:
        messages: list[ChatMessage] = []
        for record in self._read_records(self.session_path(cwd, session_id)):
            try:
                messages.append(ChatMessage.from_dict(record["message"]))
            except (KeyError, TypeError, ValueError) as exc:
                logger.warning("Skipping malformed record in session %s: %s", session_id[:8], exc)
        return messages

    def list_sessions(self, cwd: str | Path) -> list[SessionSummary]:
        """Summaries derived from the record files, newest-modified first."""
        directory = self.project_dir(cwd)
        if not directory.is_dir():
            return []
        summaries: list[SessionSummary] = []
        for path in directory.glob("*.jsonl"):
            records = self._read_records(path)
            if not records:
                continue
            first_prompt = ""
            for record in records:
                message = record.get("message") or {}
                if message.get("role") == MessageRole.USER.value:
                    first_prompt = str(message.get("content") or "")[:FIRST_PROMPT_CHARS]
                    break
            timestamps = [r.get("timestamp") or "" for r in records]
            summaries.append(SessionSummary(
                session_id=path.stem,
                first_prompt=first_prompt,
                message_count=len(records),
                created=min(timestamps),
                modified=max(timestamps),
                branch_label=records[-1].get("branchLabel"),
            ))
        summaries.sort(key=lambda s: s.modified, reverse=True)
        return summaries

    def resolve_prefix(self, cwd: str | Path, prefix: str) -> str | None:
        """Full session id for prefix, or None if zero or several match."""
        if not prefix:
            return None
        directory = self.project_dir(cwd)
        if not directory.is_dir():
            return None
        matches = [p.stem for p in directory.glob("*.jsonl") if p.stem.startswith(prefix)]
        if len(matches) == 1:
            return matches[0]
        return None

    def delete(self, cwd: str | Path, session_id: str) -> bool:
        path = self.session_path(cwd, session_id)
        if not path.exists():
            return False
        path.unlink()
        logger.info("Deleted session %s", session_id[:8])
        return True

    def _read_records(self, path: Path) -> list[dict[str, Any]]:
        if not path.is_file():
            return []
        records: list[dict[str, Any]] = []
        try:
            with open(path, encoding="utf-8") as f:
                for lineno, line in enumerate(f, 1):
                    line = line.strip()
                    if not line:
                        continue
                    try:
                        record = json.loads(line)
                    except json.JSONDecodeError:
                        logger.warning("Skipping unparseable line %d in %s", lineno, path)
                        continue
                    if isinstance(record, dict):
                        records.append(record)
        except OSError as exc:
            logger.warning("Cannot read session file %s: %s", path, exc)
        return records
