"""Drives one agent turn: model call, tool dispatch, repeat.

Each step streams one model response. Text and reasoning deltas are
surfaced as events while they arrive; every tool call is dispatched as
its own task the moment the model closes it, so calls in one step run
concurrently. Before the next model call all of the step's results are
joined and appended in the order the model requested them.

A turn ends when a step requests no tools (completed), when the step
limit is hit (step_limit), when the abort signal fires (aborted) or when
the model transport fails (error). Only the first two produce messages
for the caller to commit.
"""
from __future__ import annotations

import asyncio
import json
import logging
from pathlib import Path
from typing import Any

from tern.shared.models.message import ChatMessage, MessageRole, ToolCall
from tern.shared.services.media_store import MediaCache

from .abort import AbortSignal
from .config import EventCallback, fire_event
from .confirmation import ConfirmationGate
from .models import (
    Finish,
    PendingToolCall,
    ReasoningDelta,
    TextDelta,
    ToolCallEnd,
    ToolCallStart,
    ToolInputDelta,
    TurnOutcome,
    TurnResult,
    TurnState,
)
from .providers.base import ModelClient, ModelRequest
from .tools.base import (
    ToolContext,
    ToolRegistry,
    ToolResult,
    decode_tool_input,
    format_result,
    is_tool_error,
    missing_required,
    tool_error,
)

logger = logging.getLogger(__name__)

_RESULT_PREVIEW_CHARS = 300


class _Aborted(Exception):
    """Internal: the turn's abort signal fired while waiting."""


async def _until_done_or_aborted(awaitable_task: asyncio.Task, abort: AbortSignal) -> Any:
    """Await *awaitable_task*, cancelling it and raising _Aborted on abort."""
    if abort.aborted:
        awaitable_task.cancel()
        raise _Aborted()
    abort_wait = asyncio.ensure_future(abort.wait())
    try:
        await asyncio.wait({awaitable_task, abort_wait}, return_when=asyncio.FIRST_COMPLETED)
    finally:
        abort_wait.cancel()
    if abort.aborted:
        awaitable_task.cancel()
        raise _Aborted()
    return awaitable_task.result()


class AgentLoop:
    """One agent's turn driver. Holds no conversation state between turns."""

    def __init__(
        self,
        model: ModelClient,
        gate: ConfirmationGate,
        *,
        cwd: str | Path,
        agent_id: str = "main",
        event_callback: EventCallback | None = None,
        media: MediaCache | None = None,
    ) -> None:
        self.model = model
        self.gate = gate
        self.cwd = Path(cwd)
        self.agent_id = agent_id
        self._event_callback = event_callback
        self._media = media

    async def _emit(self, event: str, **payload: Any) -> None:
        await fire_event(self._event_callback, {
            "event": event, "agent_id": self.agent_id, **payload,
        })

    async def run_turn(
        self,
        messages: list[ChatMessage],
        system_prompt: str,
        registry: ToolRegistry,
        step_limit: int,
        abort: AbortSignal,
    ) -> TurnResult:
        working = list(messages)
        produced: list[ChatMessage] = []
        state = TurnState()
        unbind = self.gate.bind_abort(abort)
        await self._emit("turn_started", step_limit=step_limit, tools=registry.names())
        try:
            result = await self._run_steps(
                working, produced, state, system_prompt, registry, step_limit, abort,
            )
        except _Aborted:
            logger.info("Turn aborted for %s after %d step(s)", self.agent_id, state.step)
            result = TurnResult(
                outcome=TurnOutcome.ABORTED, steps=state.step, usage=dict(state.usage),
                error=abort.reason,
            )
        finally:
            unbind()
        await self._emit(
            "turn_finished",
            outcome=result.outcome.value,
            steps=result.steps,
            usage=result.usage,
            error=result.error,
        )
        return result

    async def _run_steps(
        self,
        working: list[ChatMessage],
        produced: list[ChatMessage],
        state: TurnState,
        system_prompt: str,
        registry: ToolRegistry,
        step_limit: int,
        abort: AbortSignal,
    ) -> TurnResult:
        while state.step < step_limit:
            if abort.aborted:
                raise _Aborted()
            state.step += 1
            state.reset_step()

            media_message = self._take_pending_media()
            if media_message is not None:
                working.append(media_message)
                produced.append(media_message)

            order: list[PendingToolCall] = []
            tasks: dict[str, asyncio.Task] = {}
            request = ModelRequest(
                messages=list(working),
                system_prompt=system_prompt,
                tools=registry.definitions(),
            )
            consumer = asyncio.create_task(
                self._consume_stream(request, state, order, tasks, registry, abort),
            )
            try:
                await _until_done_or_aborted(consumer, abort)
            except _Aborted:
                await self._cancel_all(consumer, tasks)
                raise
            except asyncio.CancelledError:
                await self._cancel_all(consumer, tasks)
                raise
            except Exception as exc:
                await self._cancel_all(consumer, tasks)
                logger.error("Model call failed for %s: %s", self.agent_id, exc, exc_info=True)
                return TurnResult(
                    outcome=TurnOutcome.ERROR,
                    steps=state.step,
                    usage=dict(state.usage),
                    error=str(exc),
                )

            assistant = ChatMessage(
                role=MessageRole.ASSISTANT,
                content=state.text,
                reasoning=state.reasoning or None,
                tool_calls=[call.to_tool_call() for call in order],
            )

            if not order:
                working.append(assistant)
                produced.append(assistant)
                return TurnResult(
                    outcome=TurnOutcome.COMPLETED,
                    text=state.text,
                    messages=produced,
                    steps=state.step,
                    usage=dict(state.usage),
                )

            joined = asyncio.ensure_future(
                asyncio.gather(*(tasks[call.call_id] for call in order))
            )
            try:
                contents = await _until_done_or_aborted(joined, abort)
            except _Aborted:
                await self._cancel_all(joined, tasks)
                raise
            except asyncio.CancelledError:
                await self._cancel_all(joined, tasks)
                raise

            step_messages = [assistant] + [
                ChatMessage.tool_result(call.to_tool_call(), content)
                for call, content in zip(order, contents)
            ]
            working.extend(step_messages)
            produced.extend(step_messages)

        logger.warning("Step limit (%d) reached for %s", step_limit, self.agent_id)
        await self._emit("step_limit_reached", steps=state.step)
        return TurnResult(
            outcome=TurnOutcome.STEP_LIMIT,
            text=state.text,
            messages=produced,
            steps=state.step,
            usage=dict(state.usage),
        )

    async def _consume_stream(
        self,
        request: ModelRequest,
        state: TurnState,
        order: list[PendingToolCall],
        tasks: dict[str, asyncio.Task],
        registry: ToolRegistry,
        abort: AbortSignal,
    ) -> None:
        def dispatch(call: PendingToolCall) -> None:
            if call.closed:
                return
            call.closed = True
            tasks[call.call_id] = asyncio.create_task(
                self._execute_call(call.to_tool_call(), registry, abort),
            )

        stream = self.model.stream(request)
        try:
            async for event in stream:
                if isinstance(event, TextDelta):
                    state.text += event.text
                    await self._emit("stream_chunk", text=event.text)
                elif isinstance(event, ReasoningDelta):
                    state.reasoning += event.text
                    await self._emit("reasoning_chunk", text=event.text)
                elif isinstance(event, ToolCallStart):
                    call = PendingToolCall(call_id=event.call_id, name=event.name)
                    state.open_calls[event.call_id] = call
                    order.append(call)
                elif isinstance(event, ToolInputDelta):
                    call = state.open_calls.get(event.call_id)
                    if call is None:
                        logger.warning("Input delta for unknown tool call %s", event.call_id)
                        continue
                    call.raw_input += event.delta
                elif isinstance(event, ToolCallEnd):
                    call = state.open_calls.get(event.call_id)
                    if call is not None:
                        dispatch(call)
                elif isinstance(event, Finish):
                    state.add_usage(event.usage)
        finally:
            aclose = getattr(stream, "aclose", None)
            if aclose is not None:
                await aclose()
        for call in order:
            dispatch(call)

    async def _execute_call(
        self,
        call: ToolCall,
        registry: ToolRegistry,
        abort: AbortSignal,
    ) -> str:
        await self._emit("tool_call_started", call_id=call.id, tool_name=call.name, arguments=call.arguments)
        result = await self._dispatch(call, registry, abort)
        content = format_result(result)
        await self._emit(
            "tool_call_completed",
            call_id=call.id,
            tool_name=call.name,
            is_error=is_tool_error(result),
            result=content[:_RESULT_PREVIEW_CHARS],
        )
        return content

    async def _dispatch(
        self,
        call: ToolCall,
        registry: ToolRegistry,
        abort: AbortSignal,
    ) -> ToolResult:
        tool = registry.get(call.name)
        if tool is None:
            logger.warning("%s requested unknown tool %s", self.agent_id, call.name)
            return tool_error(f"Unknown tool: {call.name}")
        try:
            tool_input = decode_tool_input(call.arguments)
        except ValueError as exc:
            return tool_error(f"{call.name}: {exc}")
        missing = missing_required(tool.input_schema, tool_input)
        if missing:
            return tool_error(f"{call.name}: missing required parameter(s): {', '.join(missing)}")

        ctx = ToolContext(
            cwd=self.cwd,
            abort=abort,
            agent_id=self.agent_id,
            call_id=call.id,
            event_callback=self._event_callback,
        )
        try:
            if tool.side_effecting:
                if tool.describe is not None:
                    description, preview = await tool.describe(tool_input, ctx)
                else:
                    description = f"Run {tool.name}"
                    preview = json.dumps(tool_input, indent=2, ensure_ascii=False)
                approved = await self.gate.request_confirmation(
                    tool.name, description, preview, agent_id=self.agent_id,
                )
                if not approved:
                    logger.info("User denied %s (%s)", tool.name, call.id)
                    return tool_error(f"User denied {tool.name} operation.")
            result = await tool.execute(tool_input, ctx)
        except asyncio.CancelledError:
            raise
        except Exception as exc:
            logger.error("Tool %s failed: %s", tool.name, exc, exc_info=True)
            return tool_error(f"{tool.name} failed: {exc}")
        if not isinstance(result, dict):
            result = {"result": result}
        return result

    def _take_pending_media(self) -> ChatMessage | None:
        if self._media is None or not len(self._media):
            return None
        items = self._media.drain()
        return ChatMessage.user(
            f"[{len(items)} image(s) attached above]",
            images=[item.data_url() for item in items],
        )

    @staticmethod
    async def _cancel_all(primary: asyncio.Future, tasks: dict[str, asyncio.Task]) -> None:
        pending = [primary, *tasks.values()]
        for task in pending:
            if not task.done():
                task.cancel()
        await asyncio.gather(*pending, return_exceptions=True)
