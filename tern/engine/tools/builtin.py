"""Built-in file, search and shell tools.

``read``, ``glob`` and ``grep`` are read-only and run without prompting.
``write``, ``edit`` and ``bash`` are side-effecting: the agent loop calls
their ``describe`` hook and routes them through the confirmation gate
before ``execute`` ever runs.
"""
from __future__ import annotations

import asyncio
import difflib
import logging
import os
import re
import signal
from pathlib import Path
from typing import Any

from tern.shared.services.durable_write import atomic_write_text
from tern.shared.services.media_store import MediaCache

from .base import Tool, ToolContext, ToolResult, tool_error

logger = logging.getLogger(__name__)

MAX_READ_LINES = 2000
MAX_LINE_CHARS = 2000
LARGE_FILE_WARN_LINES = 500
MAX_GLOB_FILES = 200
MAX_GREP_MATCHES = 200
BASH_HEAD_LINES = 100
BASH_TAIL_LINES = 50

IMAGE_TYPES = {
    ".png": "image/png",
    ".jpg": "image/jpeg",
    ".jpeg": "image/jpeg",
    ".gif": "image/gif",
    ".webp": "image/webp",
    ".bmp": "image/bmp",
    ".svg": "image/svg+xml",
}

# Directories under $HOME that tools must never read.
_DENIED_HOME_DIRS = {".ssh", ".aws", ".config", ".gnupg"}

# Catastrophic commands refused outright, even with approval.
BASH_DENYLIST = [
    re.compile(r"rm\s+-rf\s+/(?:\s|$)"),
    re.compile(r"rm\s+-rf\s+~(?:\s|$)"),
    re.compile(r"rm\s+-rf\s+\$HOME(?:\s|$)"),
    re.compile(r"curl[^|]+\|\s*(?:ba)?sh"),
    re.compile(r"wget[^|]+\|\s*(?:ba)?sh"),
    re.compile(r":\s*\(\s*\)\s*\{.*:\|:&?\s*\}.*:"),
    re.compile(r">\s*/dev/sd[a-z]"),
    re.compile(r"mkfs\."),
    re.compile(r"dd\s+if=.+of=/dev/"),
]


def _resolve(ctx: ToolContext, path: str) -> Path:
    p = Path(path).expanduser()
    if not p.is_absolute():
        p = ctx.cwd / p
    return p.resolve()


def is_denied_path(path: Path) -> bool:
    if path.name.startswith(".env"):
        return True
    home = Path.home().resolve()
    try:
        rel = path.relative_to(home)
    except ValueError:
        return False
    return bool(rel.parts) and rel.parts[0] in _DENIED_HOME_DIRS


def is_denied_command(command: str) -> bool:
    return any(pattern.search(command) for pattern in BASH_DENYLIST)


def unified_diff(path: Path, before: str, after: str) -> str:
    lines = difflib.unified_diff(
        before.splitlines(keepends=True),
        after.splitlines(keepends=True),
        fromfile=f"a/{path.name}",
        tofile=f"b/{path.name}",
    )
    return "".join(lines)


def diff_stats(diff: str) -> tuple[int, int]:
    added = removed = 0
    for line in diff.splitlines():
        if line.startswith("+") and not line.startswith("+++"):
            added += 1
        elif line.startswith("-") and not line.startswith("---"):
            removed += 1
    return added, removed


def truncate_output(output: str) -> str:
    """Keep the first 100 and last 50 lines of long command output."""
    if not output:
        return output
    lines = output.split("\n")
    total = len(lines)
    if total <= BASH_HEAD_LINES + BASH_TAIL_LINES:
        return output
    dropped = total - BASH_HEAD_LINES - BASH_TAIL_LINES
    return "\n".join(
        lines[:BASH_HEAD_LINES]
        + [f"... {dropped} lines truncated ..."]
        + lines[total - BASH_TAIL_LINES:]
    )


# ── read ──


def _read_lines(path: Path, offset: int, limit: int) -> tuple[list[str], int]:
    all_lines = path.read_text(encoding="utf-8", errors="replace").split("\n")
    return all_lines[offset:offset + limit], len(all_lines)


def make_read_tool(media: MediaCache) -> Tool:
    async def execute(tool_input: dict[str, Any], ctx: ToolContext) -> ToolResult:
        path = _resolve(ctx, str(tool_input["path"]))
        if is_denied_path(path):
            return tool_error(f"Access denied: {tool_input['path']} is in the restricted path list.")
        if not path.exists():
            return tool_error(f"File not found: {tool_input['path']}")
        if not path.is_file():
            return tool_error(f"Not a file: {tool_input['path']}")

        media_type = IMAGE_TYPES.get(path.suffix.lower())
        if media_type is not None:
            data = await asyncio.to_thread(path.read_bytes)
            media_id = media.put(media_type, data)
            return {"mediaId": media_id, "mediaType": media_type, "byteSize": len(data)}

        # 0-based line offset; numbering in the output stays 1-based.
        offset = max(int(tool_input.get("offset") or 0), 0)
        limit = int(tool_input.get("limit") or MAX_READ_LINES)
        selected, line_count = await asyncio.to_thread(_read_lines, path, offset, limit)
        numbered = []
        for number, line in enumerate(selected, start=offset + 1):
            if len(line) > MAX_LINE_CHARS:
                line = line[:MAX_LINE_CHARS] + "..."
            numbered.append(f"{number:6d}\t{line}")
        result: ToolResult = {"content": "\n".join(numbered), "lineCount": line_count}
        if line_count > LARGE_FILE_WARN_LINES and "limit" not in tool_input:
            result["warning"] = (
                f"Large file: {line_count} lines. Consider reading a specific "
                "line range if you only need part of it."
            )
        return result

    return Tool(
        name="read",
        description=(
            "Read a file. Text comes back with line numbers; images are "
            "attached to the conversation for you to see."
        ),
        input_schema={
            "type": "object",
            "properties": {
                "path": {"type": "string", "description": "File path, absolute or relative to the working directory"},
                "offset": {"type": "integer", "description": "0-based line offset to start from"},
                "limit": {"type": "integer", "description": "Maximum number of lines"},
            },
            "required": ["path"],
        },
        execute=execute,
    )


# ── glob / grep ──


def _visible(rel: Path) -> bool:
    return not any(part.startswith(".") for part in rel.parts)


def _glob(base: Path, pattern: str) -> list[Path]:
    return sorted(
        p for p in base.glob(pattern)
        if p.is_file() and _visible(p.relative_to(base))
    )


async def _glob_execute(tool_input: dict[str, Any], ctx: ToolContext) -> ToolResult:
    base = _resolve(ctx, str(tool_input.get("cwd") or "."))
    files = [str(p) for p in await asyncio.to_thread(_glob, base, str(tool_input["pattern"]))]
    truncated = len(files) > MAX_GLOB_FILES
    return {
        "files": files[:MAX_GLOB_FILES],
        "count": min(len(files), MAX_GLOB_FILES),
        "totalCount": len(files),
        "truncated": truncated,
    }


def _grep(base: Path, regex: re.Pattern[str], file_glob: str) -> list[dict[str, Any]]:
    matches: list[dict[str, Any]] = []
    for path in _glob(base, file_glob):
        try:
            text = path.read_text(encoding="utf-8")
        except (OSError, UnicodeDecodeError):
            continue
        for number, line in enumerate(text.split("\n"), start=1):
            if regex.search(line):
                matches.append({"file": str(path), "line": number, "content": line.strip()})
    return matches


async def _grep_execute(tool_input: dict[str, Any], ctx: ToolContext) -> ToolResult:
    pattern = str(tool_input["pattern"])
    try:
        regex = re.compile(pattern)
    except re.error:
        return tool_error(f"Invalid regex pattern: {pattern}")
    base = _resolve(ctx, str(tool_input.get("cwd") or "."))
    file_glob = str(tool_input.get("fileGlob") or "**/*")
    matches = await asyncio.to_thread(_grep, base, regex, file_glob)
    return {
        "matches": matches[:MAX_GREP_MATCHES],
        "count": min(len(matches), MAX_GREP_MATCHES),
        "totalCount": len(matches),
        "truncated": len(matches) > MAX_GREP_MATCHES,
    }


GLOB_TOOL = Tool(
    name="glob",
    description="Find files by glob pattern (e.g. 'src/**/*.py'). Hidden paths are skipped.",
    input_schema={
        "type": "object",
        "properties": {
            "pattern": {"type": "string"},
            "cwd": {"type": "string", "description": "Directory to search from"},
        },
        "required": ["pattern"],
    },
    execute=_glob_execute,
)

GREP_TOOL = Tool(
    name="grep",
    description="Search file contents with a regular expression.",
    input_schema={
        "type": "object",
        "properties": {
            "pattern": {"type": "string", "description": "Python regular expression"},
            "fileGlob": {"type": "string", "description": "Files to search, default '**/*'"},
            "cwd": {"type": "string"},
        },
        "required": ["pattern"],
    },
    execute=_grep_execute,
)


# ── write / edit ──


def _read_existing(path: Path) -> str | None:
    if not path.is_file():
        return None
    return path.read_text(encoding="utf-8", errors="replace")


async def _write_describe(tool_input: dict[str, Any], ctx: ToolContext) -> tuple[str, str | None]:
    path = _resolve(ctx, str(tool_input["path"]))
    before = _read_existing(path)
    content = str(tool_input.get("content", ""))
    if before is None:
        return f"Create new file {path}", unified_diff(path, "", content)
    diff = unified_diff(path, before, content)
    added, removed = diff_stats(diff)
    return f"Modify {path} (+{added} / -{removed} lines)", diff


async def _write_execute(tool_input: dict[str, Any], ctx: ToolContext) -> ToolResult:
    path = _resolve(ctx, str(tool_input["path"]))
    if is_denied_path(path):
        return tool_error(f"Access denied: {tool_input['path']} is in the restricted path list.")
    content = str(tool_input.get("content", ""))
    created = not path.exists()
    atomic_write_text(path, content)
    logger.info("write %s (%d bytes)", path, len(content))
    return {"path": str(path), "created": created, "bytesWritten": len(content.encode("utf-8"))}


def _apply_edit(tool_input: dict[str, Any], before: str) -> str:
    old = str(tool_input["old_string"])
    new = str(tool_input["new_string"])
    if not old:
        raise ValueError("old_string must not be empty")
    count = before.count(old)
    if count == 0:
        raise ValueError("old_string not found in file")
    if count > 1 and not tool_input.get("replace_all"):
        raise ValueError(
            f"old_string matches {count} locations; add surrounding context "
            "or set replace_all"
        )
    return before.replace(old, new) if tool_input.get("replace_all") else before.replace(old, new, 1)


async def _edit_describe(tool_input: dict[str, Any], ctx: ToolContext) -> tuple[str, str | None]:
    path = _resolve(ctx, str(tool_input["path"]))
    before = _read_existing(path)
    if before is None:
        return f"Edit {path} (file does not exist)", None
    try:
        after = _apply_edit(tool_input, before)
    except ValueError as exc:
        return f"Edit {path} ({exc})", None
    diff = unified_diff(path, before, after)
    added, removed = diff_stats(diff)
    return f"Edit {path} (+{added} / -{removed} lines)", diff


async def _edit_execute(tool_input: dict[str, Any], ctx: ToolContext) -> ToolResult:
    path = _resolve(ctx, str(tool_input["path"]))
    if is_denied_path(path):
        return tool_error(f"Access denied: {tool_input['path']} is in the restricted path list.")
    before = _read_existing(path)
    if before is None:
        return tool_error(f"File not found: {tool_input['path']}")
    try:
        after = _apply_edit(tool_input, before)
    except ValueError as exc:
        return tool_error(str(exc))
    atomic_write_text(path, after)
    added, removed = diff_stats(unified_diff(path, before, after))
    logger.info("edit %s (+%d/-%d)", path, added, removed)
    return {"path": str(path), "linesAdded": added, "linesRemoved": removed}


WRITE_TOOL = Tool(
    name="write",
    description="Create or overwrite a file with the given content.",
    input_schema={
        "type": "object",
        "properties": {
            "path": {"type": "string"},
            "content": {"type": "string"},
        },
        "required": ["path", "content"],
    },
    execute=_write_execute,
    side_effecting=True,
    describe=_write_describe,
)

EDIT_TOOL = Tool(
    name="edit",
    description=(
        "Replace an exact string in a file. old_string must match exactly "
        "once unless replace_all is set."
    ),
    input_schema={
        "type": "object",
        "properties": {
            "path": {"type": "string"},
            "old_string": {"type": "string"},
            "new_string": {"type": "string"},
            "replace_all": {"type": "boolean"},
        },
        "required": ["path", "old_string", "new_string"],
    },
    execute=_edit_execute,
    side_effecting=True,
    describe=_edit_describe,
)


# ── bash ──


async def _bash_describe(tool_input: dict[str, Any], ctx: ToolContext) -> tuple[str, str | None]:
    command = str(tool_input["command"])
    return f"Run shell command in {ctx.cwd}", command


def make_bash_tool(timeout_seconds: float = 30.0) -> Tool:
    async def execute(tool_input: dict[str, Any], ctx: ToolContext) -> ToolResult:
        command = str(tool_input["command"])
        if is_denied_command(command):
            logger.warning("bash command blocked by denylist: %.120s", command)
            return tool_error(f"Command blocked by security policy: {command}")

        proc = await asyncio.create_subprocess_shell(
            command,
            cwd=str(ctx.cwd),
            stdout=asyncio.subprocess.PIPE,
            stderr=asyncio.subprocess.PIPE,
            start_new_session=True,
        )
        try:
            stdout, stderr = await asyncio.wait_for(proc.communicate(), timeout=timeout_seconds)
        except asyncio.TimeoutError:
            _kill(proc)
            await proc.wait()
            return tool_error(f"Command timed out after {timeout_seconds:g}s: {command}")
        except asyncio.CancelledError:
            _kill(proc)
            raise

        result: ToolResult = {
            "stdout": truncate_output(stdout.decode("utf-8", errors="replace")),
            "stderr": truncate_output(stderr.decode("utf-8", errors="replace")),
            "exitCode": proc.returncode,
        }
        logger.info("bash exit=%s cmd=%.80s", proc.returncode, command)
        return result

    return Tool(
        name="bash",
        description=(
            "Run a shell command in the working directory. Long output keeps "
            "the first 100 and last 50 lines."
        ),
        input_schema={
            "type": "object",
            "properties": {"command": {"type": "string"}},
            "required": ["command"],
        },
        execute=execute,
        side_effecting=True,
        describe=_bash_describe,
    )


def _kill(proc: asyncio.subprocess.Process) -> None:
    """Kill the shell and everything it started.

    The group outlives the shell when background children still hold it.
    """
    try:
        os.killpg(proc.pid, signal.SIGKILL)
    except ProcessLookupError:
        pass
    except PermissionError:
        if proc.returncode is None:
            proc.kill()


def builtin_tools(media: MediaCache, bash_timeout_seconds: float = 30.0) -> list[Tool]:
    return [
        make_read_tool(media),
        GLOB_TOOL,
        GREP_TOOL,
        WRITE_TOOL,
        EDIT_TOOL,
        make_bash_tool(bash_timeout_seconds),
    ]


def read_only_tools(media: MediaCache) -> list[Tool]:
    return [make_read_tool(media), GLOB_TOOL, GREP_TOOL]
