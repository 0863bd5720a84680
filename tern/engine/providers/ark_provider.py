"""Streaming client for an OpenAI-compatible chat/completions endpoint.

Targets Volcengine Ark by default. The request body follows the
chat-completions schema with two extensions:

    "stream_options": {"include_usage": true}
    "thinking": {"type": "enabled" | "disabled"}

Each SSE ``data:`` line carries a chunk whose ``choices[0].delta`` may
hold ``content``, ``reasoning_content`` and indexed ``tool_calls``. The
final chunk carries ``usage`` with an empty ``choices`` list.
"""
from __future__ import annotations

import json
import logging
from typing import Any, AsyncIterator

import aiohttp

from tern.engine.errors import ModelCallError
from tern.engine.models import (
    Finish,
    ModelEvent,
    ReasoningDelta,
    TextDelta,
    ToolCallEnd,
    ToolCallStart,
    ToolInputDelta,
)
from tern.shared.models.message import ChatMessage, MessageRole

from .base import ModelClient, ModelRequest

logger = logging.getLogger(__name__)

_ERROR_BODY_CHARS = 500


def to_wire_messages(system_prompt: str, messages: list[ChatMessage]) -> list[dict[str, Any]]:
    """Convert history to chat-completions message dicts."""
    wire: list[dict[str, Any]] = []
    if system_prompt:
        wire.append({"role": "system", "content": system_prompt})
    for msg in messages:
        if msg.role is MessageRole.USER:
            if msg.images:
                parts: list[dict[str, Any]] = [
                    {"type": "image_url", "image_url": {"url": url}} for url in msg.images
                ]
                parts.append({"type": "text", "text": msg.content})
                wire.append({"role": "user", "content": parts})
            else:
                wire.append({"role": "user", "content": msg.content})
        elif msg.role is MessageRole.ASSISTANT:
            entry: dict[str, Any] = {"role": "assistant", "content": msg.content}
            if msg.tool_calls:
                entry["tool_calls"] = [
                    {
                        "id": tc.id,
                        "type": "function",
                        "function": {"name": tc.name, "arguments": tc.arguments or "{}"},
                    }
                    for tc in msg.tool_calls
                ]
            wire.append(entry)
        else:
            wire.append({
                "role": "tool",
                "tool_call_id": msg.tool_call_id,
                "content": msg.content,
            })
    return wire


class ChunkDecoder:
    """Turns parsed stream chunks into ModelEvents.

    A tool call is closed as soon as a delta for a different index
    arrives, and every open call is closed when the stream finishes.
    """

    def __init__(self) -> None:
        self._open: dict[int, str] = {}
        self._current_index: int | None = None
        self.finish_reason: str = "stop"
        self.usage: dict[str, int] = {}

    def feed(self, chunk: dict[str, Any]) -> list[ModelEvent]:
        events: list[ModelEvent] = []
        usage = chunk.get("usage")
        if isinstance(usage, dict):
            self.usage = {k: v for k, v in usage.items() if isinstance(v, int)}

        for choice in chunk.get("choices") or []:
            delta = choice.get("delta") or {}
            reasoning = delta.get("reasoning_content")
            if reasoning:
                events.append(ReasoningDelta(reasoning))
            content = delta.get("content")
            if content:
                events.append(TextDelta(content))
            for call in delta.get("tool_calls") or []:
                events.extend(self._tool_call_delta(call))
            if choice.get("finish_reason"):
                self.finish_reason = choice["finish_reason"]
                events.extend(self._close_all())
        return events

    def finish(self) -> list[ModelEvent]:
        events = self._close_all()
        events.append(Finish(reason=self.finish_reason, usage=dict(self.usage)))
        return events

    def _tool_call_delta(self, call: dict[str, Any]) -> list[ModelEvent]:
        events: list[ModelEvent] = []
        index = int(call.get("index", 0))
        function = call.get("function") or {}
        if index not in self._open:
            if self._current_index is not None and self._current_index in self._open:
                events.append(ToolCallEnd(self._open.pop(self._current_index)))
            call_id = call.get("id") or f"call_{index}"
            self._open[index] = call_id
            events.append(ToolCallStart(call_id=call_id, name=function.get("name", "")))
        self._current_index = index
        arguments = function.get("arguments")
        if arguments:
            events.append(ToolInputDelta(call_id=self._open[index], delta=arguments))
        return events

    def _close_all(self) -> list[ModelEvent]:
        events: list[ModelEvent] = [ToolCallEnd(call_id) for call_id in self._open.values()]
        self._open.clear()
        self._current_index = None
        return events


class ArkChatClient(ModelClient):
    """aiohttp-based streaming chat client."""

    def __init__(
        self,
        *,
        api_key: str,
        model: str,
        base_url: str,
        thinking: bool = True,
        session: aiohttp.ClientSession | None = None,
    ) -> None:
        self._api_key = api_key
        self._model = model
        self._base_url = base_url.rstrip("/")
        self._thinking = thinking
        self._session = session
        self._owns_session = session is None

    @property
    def name(self) -> str:
        return "ark"

    @property
    def model_id(self) -> str:
        return self._model

    def build_body(self, request: ModelRequest) -> dict[str, Any]:
        thinking = self._thinking if request.thinking is None else request.thinking
        body: dict[str, Any] = {
            "model": self._model,
            "messages": to_wire_messages(request.system_prompt, request.messages),
            "stream": True,
            "stream_options": {"include_usage": True},
            "thinking": {"type": "enabled" if thinking else "disabled"},
        }
        if request.tools:
            body["tools"] = request.tools
        return body

    def _get_session(self) -> aiohttp.ClientSession:
        if self._session is None or self._session.closed:
            self._session = aiohttp.ClientSession(
                timeout=aiohttp.ClientTimeout(total=None, sock_connect=30, sock_read=300),
            )
            self._owns_session = True
        return self._session

    async def stream(self, request: ModelRequest) -> AsyncIterator[ModelEvent]:
        url = f"{self._base_url}/chat/completions"
        headers = {
            "Authorization": f"Bearer {self._api_key}",
            "Content-Type": "application/json",
            "Accept": "text/event-stream",
        }
        body = self.build_body(request)
        decoder = ChunkDecoder()
        logger.debug(
            "POST %s model=%s messages=%d tools=%d",
            url, self._model, len(body["messages"]), len(request.tools),
        )
        try:
            async with self._get_session().post(url, json=body, headers=headers) as resp:
                if resp.status >= 400:
                    detail = (await resp.text())[:_ERROR_BODY_CHARS]
                    raise ModelCallError(resp.status, detail)
                async for raw in resp.content:
                    chunk = parse_sse_line(raw.decode("utf-8", errors="replace"))
                    if chunk is None:
                        continue
                    if chunk == "[DONE]":
                        break
                    for event in decoder.feed(chunk):
                        yield event
        except aiohttp.ClientError as exc:
            raise ModelCallError(None, str(exc) or type(exc).__name__) from exc
        for event in decoder.finish():
            yield event

    async def close(self) -> None:
        if self._owns_session and self._session is not None and not self._session.closed:
            await self._session.close()


def parse_sse_line(line: str) -> dict[str, Any] | str | None:
    """Decode one SSE line: a chunk dict, "[DONE]", or None to skip."""
    line = line.strip()
    if not line.startswith("data:"):
        return None
    payload = line[len("data:"):].strip()
    if not payload:
        return None
    if payload == "[DONE]":
        return payload
    try:
        chunk = json.loads(payload)
    except json.JSONDecodeError:
        logger.warning("Skipping unparseable stream chunk: %.200s", payload)
        return None
    if isinstance(chunk, dict) and "error" in chunk:
        error = chunk["error"]
        message = error.get("message") if isinstance(error, dict) else str(error)
        raise ModelCallError(None, message or "stream error")
    return chunk if isinstance(chunk, dict) else None
