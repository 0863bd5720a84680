"""SKILL.md discovery and on-demand loading.

A skill is a directory holding a ``SKILL.md`` whose YAML frontmatter
names and describes it:

    ---
    name: release-notes
    description: Draft release notes from the git log
    ---
    Full instructions...

Only names and descriptions go into the system prompt; the body is
loaded by the ``loadSkill`` tool when the model needs it. Skills are
read from ``<home>/skills`` (global) and ``<cwd>/.tern/skills``
(project); a project skill shadows a global one with the same name.
"""
from __future__ import annotations

import logging
import re
from dataclasses import dataclass
from pathlib import Path
from typing import Any

import yaml

from .tools.base import Tool, ToolContext, ToolResult, tool_error

logger = logging.getLogger(__name__)

SKILL_FILENAME = "SKILL.md"
PROJECT_SKILLS_DIR = ".tern/skills"
CHARS_PER_TOKEN = 4
MAX_DESCRIPTION_TOKENS = 2000
MAX_BODY_CHARS = 8000 * CHARS_PER_TOKEN

_FRONTMATTER = re.compile(r"\A---[ \t]*\n(.*?)\n---[ \t]*(?:\n|\Z)", re.DOTALL)


@dataclass
class Skill:
    name: str
    description: str
    scope: str  # "global" or "project"
    path: Path

    def prompt_cost(self) -> int:
        return len(self.name) + len(self.description) + 10


def parse_frontmatter(text: str) -> dict[str, Any] | None:
    match = _FRONTMATTER.match(text)
    if not match:
        return None
    try:
        data = yaml.safe_load(match.group(1))
    except yaml.YAMLError as exc:
        logger.debug("Bad skill frontmatter: %s", exc)
        return None
    return data if isinstance(data, dict) else None


def _scan(directory: Path, scope: str) -> list[Skill]:
    if not directory.is_dir():
        return []
    skills = []
    for entry in sorted(directory.iterdir()):
        path = entry / SKILL_FILENAME
        if not entry.is_dir() or not path.is_file():
            continue
        try:
            meta = parse_frontmatter(path.read_text(encoding="utf-8"))
        except OSError as exc:
            logger.warning("Cannot read %s: %s", path, exc)
            continue
        if not meta or not isinstance(meta.get("name"), str) or not isinstance(meta.get("description"), str):
            logger.info("Skipping %s: frontmatter needs a name and a description", path)
            continue
        description = " ".join(meta["description"].split())
        skills.append(Skill(meta["name"].strip(), description, scope, path))
    return skills


def discover_skills(cwd: str | Path, home: str | Path) -> tuple[list[Skill], list[str]]:
    """Skills visible from *cwd*, plus warnings for the user.

    Descriptions share a fixed prompt budget; skills that do not fit are
    dropped from the end, global ones first.
    """
    warnings: list[str] = []
    merged: dict[str, Skill] = {}
    for skill in _scan(Path(cwd) / PROJECT_SKILLS_DIR, "project") + _scan(Path(home) / "skills", "global"):
        merged.setdefault(skill.name, skill)
    skills = list(merged.values())

    total = sum(s.prompt_cost() for s in skills)
    estimated_tokens = -(-total // CHARS_PER_TOKEN)
    if estimated_tokens <= MAX_DESCRIPTION_TOKENS:
        return skills, warnings

    warnings.append(
        f"Skill descriptions exceed the ~{MAX_DESCRIPTION_TOKENS} token budget "
        f"(estimated ~{estimated_tokens} tokens); some skills were dropped."
    )
    logger.warning(warnings[-1])
    budget = MAX_DESCRIPTION_TOKENS * CHARS_PER_TOKEN
    kept = []
    for skill in skills:
        if skill.prompt_cost() <= budget:
            kept.append(skill)
            budget -= skill.prompt_cost()
    return kept, warnings


def load_skill_body(skill: Skill) -> tuple[str, bool] | None:
    """The skill's instructions without frontmatter, and whether they were cut."""
    try:
        text = skill.path.read_text(encoding="utf-8")
    except OSError as exc:
        logger.warning("Cannot read skill %s at %s: %s", skill.name, skill.path, exc)
        return None
    body = _FRONTMATTER.sub("", text, count=1).strip()
    if len(body) > MAX_BODY_CHARS:
        return body[:MAX_BODY_CHARS], True
    return body, False


def skills_prompt_section(skills: list[Skill]) -> str | None:
    if not skills:
        return None
    lines = [f"- **{s.name}** [{s.scope}]: {s.description}" for s in skills]
    return (
        "<available_skills>\n"
        "Call loadSkill with a skill's name before following it.\n"
        + "\n".join(lines)
        + "\n</available_skills>"
    )


def make_load_skill_tool(skills: list[Skill]) -> Tool:
    by_name = {s.name: s for s in skills}

    async def execute(tool_input: dict[str, Any], ctx: ToolContext) -> ToolResult:
        name = str(tool_input["name"])
        skill = by_name.get(name)
        if skill is None:
            available = ", ".join(by_name) or "none"
            return tool_error(f'Skill not found: "{name}". Available skills: {available}')
        loaded = load_skill_body(skill)
        if loaded is None:
            return tool_error(f'Could not read skill file for: "{name}"')
        body, truncated = loaded
        return {"body": body, "truncated": truncated}

    return Tool(
        name="loadSkill",
        description=(
            "Load the full instructions for a skill by name. Call this when the "
            "user invokes a skill (e.g. /skills:release-notes) or a listed skill "
            "clearly applies, and follow its guidance."
        ),
        input_schema={
            "type": "object",
            "properties": {
                "name": {"type": "string", "description": "Skill name from the available skills list"},
            },
            "required": ["name"],
        },
        execute=execute,
        origin="skill",
    )
