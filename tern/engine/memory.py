"""Per-project memory file, injected into the system prompt.

The file lives next to the project's transcripts:
``<home>/projects/<cwd-slug>/memory/MEMORY.md``. The assistant only
writes it when the user asks; tern itself only reads it.
"""
from __future__ import annotations

import logging
from pathlib import Path

from tern.shared.services.session_log import project_slug

logger = logging.getLogger(__name__)

MEMORY_FILENAME = "MEMORY.md"
MAX_MEMORY_CHARS = 32_000
TRUNCATION_NOTE = "\n\n[Memory truncated at {limit} characters.]"


def memory_path(projects_dir: str | Path, cwd: str | Path) -> Path:
    return Path(projects_dir) / project_slug(cwd) / "memory" / MEMORY_FILENAME


def load_project_memory(projects_dir: str | Path, cwd: str | Path) -> str | None:
    """Memory text for *cwd*, or None when there is none."""
    path = memory_path(projects_dir, cwd)
    try:
        text = path.read_text(encoding="utf-8")
    except FileNotFoundError:
        return None
    except OSError as exc:
        logger.warning("Cannot read project memory %s: %s", path, exc)
        return None
    if not text.strip():
        return None
    if len(text) > MAX_MEMORY_CHARS:
        logger.warning(
            "Project memory %s is %d chars; truncating to %d",
            path, len(text), MAX_MEMORY_CHARS,
        )
        text = text[:MAX_MEMORY_CHARS] + TRUNCATION_NOTE.format(limit=MAX_MEMORY_CHARS)
    return text
