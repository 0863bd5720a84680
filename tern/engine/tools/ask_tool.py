"""askQuestion: let the model ask the user a clarifying question."""
from __future__ import annotations

from typing import Any

from tern.engine.confirmation import ConfirmationGate

from .base import Tool, ToolContext, ToolResult, tool_error


def _clean_options(raw: Any) -> list[dict[str, str]] | None:
    if raw is None:
        return []
    if not isinstance(raw, list):
        return None
    options = []
    for item in raw:
        if not isinstance(item, dict) or not isinstance(item.get("label"), str):
            return None
        option = {"label": item["label"]}
        if isinstance(item.get("description"), str):
            option["description"] = item["description"]
        options.append(option)
    return options


def make_ask_question_tool(gate: ConfirmationGate) -> Tool:

    async def execute(tool_input: dict[str, Any], ctx: ToolContext) -> ToolResult:
        question = str(tool_input["question"]).strip()
        if not question:
            return tool_error("question must not be empty")
        options = _clean_options(tool_input.get("options"))
        if options is None:
            return tool_error("options must be a list of {label, description?} objects")
        answer = await gate.ask(question, options, agent_id=ctx.agent_id)
        if answer is None:
            if gate.unattended:
                return tool_error("No user is available to answer; proceed with your best judgement")
            return tool_error("The question was cancelled before the user answered")
        return {"answer": answer}

    return Tool(
        name="askQuestion",
        description=(
            "Ask the user a clarifying question before proceeding. Use when requirements "
            "are unclear, the user must make a decision, or you want to align on an approach. "
            "You may offer recommended options; the user can pick one or type their own answer. "
            "Do NOT use this for yes/no permission to run a tool; that is asked automatically."
        ),
        input_schema={
            "type": "object",
            "properties": {
                "question": {"type": "string", "description": "The question to ask the user"},
                "options": {
                    "type": "array",
                    "description": "Recommended answers the user can choose from",
                    "items": {
                        "type": "object",
                        "properties": {
                            "label": {"type": "string", "description": "Short answer text"},
                            "description": {"type": "string", "description": "Optional elaboration"},
                        },
                        "required": ["label"],
                    },
                },
            },
            "required": ["question"],
        },
        execute=execute,
    )
