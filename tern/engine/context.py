"""System prompts and the environment snapshot injected into them."""
from __future__ import annotations

import logging
import platform
import subprocess
import sys
from pathlib import Path

from tern.shared.services.session_log import read_branch_label

logger = logging.getLogger(__name__)

PROJECT_INSTRUCTIONS_FILES = ("AGENTS.md", ".tern/AGENTS.md")
MAX_INSTRUCTIONS_CHARS = 20_000


def _git_status_summary(cwd: Path) -> str | None:
    try:
        proc = subprocess.run(
            ["git", "status", "--porcelain"],
            cwd=str(cwd), capture_output=True, text=True, timeout=3,
        )
    except (OSError, subprocess.SubprocessError):
        return None
    if proc.returncode != 0:
        return None
    lines = [line for line in proc.stdout.splitlines() if line.strip()]
    if not lines:
        return "clean"
    modified = sum(1 for l in lines if "M" in l[:2])
    added = sum(1 for l in lines if l[:1] in ("A", "?"))
    deleted = sum(1 for l in lines if "D" in l[:2])
    parts = []
    if modified:
        parts.append(f"{modified} modified")
    if added:
        parts.append(f"{added} added/untracked")
    if deleted:
        parts.append(f"{deleted} deleted")
    return ", ".join(parts) or f"{len(lines)} changed"


def environment_snapshot(cwd: str | Path) -> str:
    """Lightweight facts so the model need not spend a tool call on them."""
    cwd = Path(cwd)
    lines = [
        f"- CWD: {cwd}",
        f"- Platform: {sys.platform}/{platform.machine()}",
        f"- Python: {platform.python_version()}",
    ]
    branch = read_branch_label(cwd)
    if branch:
        lines.append(f"- Git branch: {branch}")
        status = _git_status_summary(cwd)
        if status:
            lines.append(f"- Git status: {status}")
    return "\n".join(lines)


def load_project_instructions(cwd: str | Path) -> str | None:
    for name in PROJECT_INSTRUCTIONS_FILES:
        path = Path(cwd) / name
        if path.is_file():
            try:
                text = path.read_text(encoding="utf-8")
            except OSError as exc:
                logger.warning("Cannot read %s: %s", path, exc)
                continue
            return text[:MAX_INSTRUCTIONS_CHARS]
    return None


BASE_SYSTEM_PROMPT = """<persona>
You are tern, a precise terminal coding assistant. Minimal words, maximum signal.
</persona>

<tools>
  Exploration:   glob, grep, read
  Modification:  edit, write (the user confirms each change)
  Execution:     bash (the user confirms each command)
  Task tracking: taskCreate, taskUpdate, taskGet, taskList
  Interaction:   askQuestion, loadSkill
  Sub-agents:    spawnAgent
  External:      mcp__<server>__<tool> tools from configured MCP servers
</tools>

<rules>
- Read a file before modifying it. Prefer edit for existing files; write for new ones.
- Prefer parallel tool calls for independent lookups.
- Use tasks for work with three or more steps; mark in_progress before and completed after.
- Use spawnAgent for fully independent research subtasks; several calls in one step run in parallel.
- A tool result with an "error" key failed. Read the message and adjust instead of retrying blindly.
- If the user denies an operation, do not retry it; ask what they want instead.
- Use askQuestion when requirements are ambiguous or the user must choose; never for permission to run a tool.
- When the user invokes a skill or a listed skill applies, call loadSkill first and follow its instructions.
- Write to the project memory file only when the user explicitly asks you to remember something.
</rules>"""


SUBAGENT_SYSTEM_PROMPT = """<persona>
You are a focused research sub-agent spawned by a parent coding assistant.
Your output is consumed by the parent agent, not shown to the user. Facts, no filler.
</persona>

<limits>
- Tools (read-only): read, glob, grep, taskList, taskGet, taskUpdate
- Tool steps: {max_steps} maximum. Plan your search before executing.
- Output: {max_chars} characters maximum.
- You cannot edit, write or create files, or run commands.
</limits>

<method>
1. Start broad with glob or grep, then read only the regions that matter.
2. Issue independent searches in the same step.
3. If your task references shared work, check taskList and mark your task in_progress / completed.
4. If you cannot find what was asked, say what you searched so the parent can adjust.
</method>

<format>
**Finding**: direct answer in 1-2 sentences

**Evidence**:
- file_path:line - relevant detail

**Notes** (optional): caveats or related findings
</format>"""


def build_system_prompt(
    cwd: str | Path,
    *,
    memory_file: Path | None = None,
    memory: str | None = None,
    skills_section: str | None = None,
) -> str:
    """Base prompt, then environment, project instructions, memory and skills."""
    sections = [BASE_SYSTEM_PROMPT, "<environment>\n" + environment_snapshot(cwd) + "\n</environment>"]
    instructions = load_project_instructions(cwd)
    if instructions:
        sections.append("<project_instructions>\n" + instructions.strip() + "\n</project_instructions>")
    if memory_file is not None:
        body = memory.strip() if memory else "(empty)"
        sections.append(f'<project_memory path="{memory_file}">\n{body}\n</project_memory>')
    if skills_section:
        sections.append(skills_section)
    return "\n\n".join(sections)


def build_subagent_prompt(cwd: str | Path, max_steps: int, max_chars: int) -> str:
    return "\n\n".join([
        SUBAGENT_SYSTEM_PROMPT.format(max_steps=max_steps, max_chars=max_chars),
        "<environment>\n" + environment_snapshot(cwd) + "\n</environment>",
    ])
