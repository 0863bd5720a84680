"""Conversation message and tool call models."""

from dataclasses import dataclass, field
from enum import Enum
from typing import Any


class MessageRole(Enum):
    USER = "user"
    ASSISTANT = "assistant"
    TOOL = "tool"


@dataclass
class ToolCall:
    id: str
    name: str
    arguments: str

    def to_dict(self) -> dict[str, Any]:
        return {"id": self.id, "name": self.name, "arguments": self.arguments}


@dataclass
class ChatMessage:
    role: MessageRole
    content: str = ""
    reasoning: str | None = None
    tool_calls: list[ToolCall] = field(default_factory=list)
    # Set on tool messages: the call this result answers.
    tool_call_id: str | None = None
    name: str | None = None
    # data: URLs attached to a user message.
    images: list[str] = field(default_factory=list)

    @classmethod
    def user(cls, content: str, images: list[str] | None = None) -> "ChatMessage":
        return cls(role=MessageRole.USER, content=content, images=list(images or []))

    @classmethod
    def tool_result(cls, call: ToolCall, content: str) -> "ChatMessage":
        return cls(
            role=MessageRole.TOOL,
            content=content,
            tool_call_id=call.id,
            name=call.name,
        )

    def to_dict(self) -> dict[str, Any]:
        data: dict[str, Any] = {"role": self.role.value, "content": self.content}
        if self.reasoning:
            data["reasoning"] = self.reasoning
        if self.tool_calls:
            data["toolCalls"] = [tc.to_dict() for tc in self.tool_calls]
        if self.tool_call_id is not None:
            data["toolCallId"] = self.tool_call_id
        if self.name is not None:
            data["name"] = self.name
        if self.images:
            data["images"] = list(self.images)
        return data

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "ChatMessage":
        return cls(
            role=MessageRole(data["role"]),
            content=data.get("content") or "",
            reasoning=data.get("reasoning"),
            tool_calls=[
                ToolCall(id=tc["id"], name=tc["name"], arguments=tc.get("arguments", ""))
                for tc in data.get("toolCalls") or []
            ],
            tool_call_id=data.get("toolCallId"),
            name=data.get("name"),
            images=list(data.get("images") or []),
        )
