"""tern: terminal coding assistant.

Entry point for the ``tern`` console script. Runs an interactive REPL
rendered with rich, or a single prompt with ``-p``.
"""

from __future__ import annotations

import argparse
import asyncio
import contextlib
import logging
import os
import signal
import sys
from collections.abc import Awaitable
from logging.handlers import RotatingFileHandler
from pathlib import Path
from typing import Any

from rich.console import Console
from rich.markup import escape
from rich.panel import Panel
from rich.prompt import Confirm, InvalidResponse
from rich.syntax import Syntax
from rich.table import Table
from rich.text import TextType

from tern.adapters.event_bus import EventBus
from tern.adapters.events import (
    ConfirmationRequested,
    EngineEvent,
    McpStatusChanged,
    QuestionRequested,
    ReasoningChunk,
    StepLimitReached,
    StreamChunk,
    SubAgentFinished,
    SubAgentStarted,
    ToolCallCompleted,
    ToolCallStarted,
)
from tern.engine.engine import AssistantEngine
from tern.engine.errors import SessionNotFoundError, TernError, TurnInProgressError
from tern.engine.models import TurnOutcome
from tern.engine.providers.ark_provider import ArkChatClient
from tern.engine.yaml_config import load_engine_config

logger = logging.getLogger(__name__)

HELP_TEXT = """\
/help              show this help
/status            model, session and MCP server status
/tasks             list the shared task graph
/sessions          list saved sessions for this directory
/resume <prefix>   switch to a saved session
/mcp               MCP server status
/skills            list available skills
/memory            show the project memory file path
/reconnect <name>  reconnect one MCP server
/clear             start a new session
/exit              quit
Ctrl-C during a turn aborts it."""


def setup_logging(log_dir: Path, level: str) -> Path:
    """Send all logging to a rotating file; the terminal stays clean."""
    log_dir.mkdir(parents=True, exist_ok=True)
    log_file = log_dir / "tern.log"
    root = logging.getLogger()
    root.setLevel(getattr(logging, level.upper(), logging.INFO))
    root.handlers.clear()
    handler = RotatingFileHandler(
        log_file, maxBytes=2_000_000, backupCount=3, encoding="utf-8"
    )
    handler.setFormatter(logging.Formatter(
        "%(asctime)s %(name)s %(levelname)s %(message)s"
    ))
    root.addHandler(handler)
    return log_file


class LineReader:
    """Reads terminal lines in a worker thread, one read at a time.

    A blocking read cannot be interrupted. When its caller gives up
    (say, a confirmation withdrawn by Ctrl-C) the read stays in flight,
    and the line it eventually returns goes to the next caller instead
    of answering a prompt that no longer exists.
    """

    def __init__(self, console: Console) -> None:
        self.console = console
        self._pending: asyncio.Future | None = None

    async def read(self, prompt: TextType = "") -> str:
        if self._pending is None:
            self._pending = asyncio.ensure_future(asyncio.to_thread(self.console.input, prompt))
        else:
            self.console.print(prompt, end="")
        pending = self._pending
        try:
            return await asyncio.shield(pending)
        finally:
            if pending.done() and self._pending is pending:
                self._pending = None


class ConsoleRenderer:
    """Consumes engine events and renders them; answers confirmations and questions."""

    def __init__(
        self,
        console: Console,
        engine: AssistantEngine,
        bus: EventBus,
        reader: LineReader | None = None,
    ) -> None:
        self.console = console
        self.engine = engine
        self.bus = bus
        self.reader = reader or LineReader(console)
        # True while waiting on the user; queued events cannot drain meanwhile.
        self.prompting = False
        self._in_text = False

    async def settle(self) -> None:
        """Wait for queued events to be rendered, unless a prompt is open."""
        while self.bus.pending() and not self.prompting:
            await asyncio.sleep(0.05)

    async def run(self) -> None:
        async for event in self.bus.consume():
            try:
                await self.render(event)
            except Exception:
                logger.exception("Failed to render %s", event.event_type)

    def _end_text(self) -> None:
        if self._in_text:
            self.console.print()
            self._in_text = False

    async def render(self, event: EngineEvent) -> None:
        if isinstance(event, StreamChunk):
            if event.agent_id == "main":
                self.console.print(event.text, end="", markup=False, highlight=False)
                self._in_text = True
        elif isinstance(event, ReasoningChunk):
            if event.agent_id == "main":
                self.console.print(event.text, end="", style="dim italic", markup=False, highlight=False)
                self._in_text = True
        elif isinstance(event, ToolCallStarted):
            self._end_text()
            args = event.arguments if len(event.arguments) < 120 else event.arguments[:117] + "..."
            self.console.print(f"[cyan]⏺ {event.tool_name}[/cyan] [dim]{args}[/dim]", highlight=False)
        elif isinstance(event, ToolCallCompleted):
            if event.is_error:
                self.console.print(f"  [red]✗ {event.tool_name}: {event.result}[/red]", highlight=False)
        elif isinstance(event, ConfirmationRequested):
            self._end_text()
            await self._confirm(event)
        elif isinstance(event, QuestionRequested):
            self._end_text()
            await self._question(event)
        elif isinstance(event, SubAgentStarted):
            self.console.print(f"[magenta]↳ sub-agent {event.agent_id}[/magenta] [dim]{event.task}[/dim]")
        elif isinstance(event, SubAgentFinished):
            status = "[red]failed[/red]" if event.is_error else "[green]done[/green]"
            self.console.print(f"[magenta]↳ sub-agent {event.agent_id}[/magenta] {status} ({event.duration_seconds}s)")
        elif isinstance(event, StepLimitReached):
            self._end_text()
            self.console.print(f"[yellow]Step limit reached after {event.steps} steps.[/yellow]")
        elif isinstance(event, McpStatusChanged):
            if event.status == "error":
                self.console.print(f"[yellow]MCP {event.server}: {event.error}[/yellow]")

    async def _until_answered(self, ask: Awaitable[Any], resolution: asyncio.Future) -> tuple[bool, Any]:
        """Run *ask* unless *resolution* completes first (abort, shutdown).

        Returns (answered, answer).
        """
        answer = asyncio.ensure_future(ask)
        self.prompting = True
        try:
            await asyncio.wait({answer, resolution}, return_when=asyncio.FIRST_COMPLETED)
        finally:
            self.prompting = False
            if not answer.done():
                answer.cancel()
                with contextlib.suppress(asyncio.CancelledError):
                    await answer
        if answer.cancelled():
            return False, None
        try:
            return True, answer.result()
        except EOFError:
            logger.info("Input closed while waiting for an answer")
            return True, None

    async def _ask_allow(self) -> bool:
        prompt = Confirm("Allow?", console=self.console)
        text = prompt.make_prompt(False)
        while True:
            value = (await self.reader.read(text)).strip()
            if not value:
                return False
            try:
                return prompt.process_response(value)
            except InvalidResponse as error:
                prompt.on_validate_error(value, error)

    async def _ask_answer(self, options: list[dict[str, str]]) -> str:
        while True:
            value = (await self.reader.read("[bold cyan]Answer:[/bold cyan] ")).strip()
            if value.isdigit() and 1 <= int(value) <= len(options):
                return options[int(value) - 1]["label"]
            if value:
                return value

    def _withdrawn(self, what: str, source: str | None) -> None:
        self.console.print()
        self.console.print(f"[dim]{what} withdrawn ({source or 'cancelled'}).[/dim]")

    async def _confirm(self, event: ConfirmationRequested) -> None:
        pending = self.engine.gate.get(event.confirmation_id)
        if pending is None:
            self.console.print("[dim]Confirmation skipped: the request was already resolved.[/dim]")
            return
        body = event.preview or ""
        renderable = Syntax(body, "diff", word_wrap=True) if body.startswith(("---", "@@")) else body
        self.console.print(Panel(
            renderable,
            title=f"[bold]{event.tool_name}[/bold]: {event.description}",
            border_style="yellow",
        ))
        answered, approved = await self._until_answered(self._ask_allow(), pending.decision)
        if not answered:
            self._withdrawn("Confirmation", pending.resolved_by)
        elif not self.engine.gate.resolve(event.confirmation_id, bool(approved)):
            self.console.print("[dim]Decision ignored: the request was already resolved.[/dim]")

    async def _question(self, event: QuestionRequested) -> None:
        pending = self.engine.gate.get_question(event.question_id)
        if pending is None:
            return
        lines = [escape(event.question)]
        for number, option in enumerate(event.options, start=1):
            line = f"  {number}. {escape(option['label'])}"
            if option.get("description"):
                line += f" [dim]- {escape(option['description'])}[/dim]"
            lines.append(line)
        if event.options:
            lines.append("[dim]Pick a number or type your own answer.[/dim]")
        self.console.print(Panel("\n".join(lines), title="[bold]Question[/bold]", border_style="cyan"))
        answered, text = await self._until_answered(self._ask_answer(event.options), pending.answer)
        if not answered:
            self._withdrawn("Question", pending.resolved_by)
        elif text is None:
            pending.resolve(None, source="ui")
        elif not self.engine.gate.answer(event.question_id, text):
            self.console.print("[dim]Answer ignored: the question was already closed.[/dim]")


def _print_tasks(console: Console, engine: AssistantEngine) -> None:
    tasks = engine.list_tasks()
    if not tasks:
        console.print("[dim]No tasks.[/dim]")
        return
    table = Table("id", "status", "subject", "owner", "blocked by")
    for task in tasks:
        table.add_row(
            task.id, task.status.value, task.subject,
            task.owner or "", ", ".join(task.blocked_by),
        )
    console.print(table)


def _print_sessions(console: Console, engine: AssistantEngine) -> None:
    sessions = engine.list_sessions()
    if not sessions:
        console.print("[dim]No saved sessions for this directory.[/dim]")
        return
    table = Table("id", "modified", "messages", "branch", "first prompt")
    for summary in sessions:
        table.add_row(
            summary.session_id[:8], summary.modified[:19].replace("T", " "),
            str(summary.message_count), summary.branch_label or "",
            summary.first_prompt.replace("\n", " ")[:60],
        )
    console.print(table)


def _print_mcp(console: Console, engine: AssistantEngine) -> None:
    statuses = engine.mcp.get_status()
    if not statuses:
        console.print("[dim]No MCP servers configured.[/dim]")
        return
    table = Table("server", "transport", "status", "tools", "error")
    for s in statuses:
        table.add_row(s["name"], s["transport"], s["status"], str(s["toolCount"]), s["error"] or "")
    console.print(table)


def _print_skills(console: Console, engine: AssistantEngine) -> None:
    skills = engine.refresh_skills()
    for warning in engine.skill_warnings:
        console.print(f"[yellow]{warning}[/yellow]")
    if not skills:
        console.print("[dim]No skills. Add <name>/SKILL.md under ~/.tern/skills or .tern/skills.[/dim]")
        return
    table = Table("skill", "scope", "description")
    for skill in skills:
        table.add_row(skill.name, skill.scope, skill.description)
    console.print(table)


async def _run_turn(console: Console, engine: AssistantEngine, renderer: ConsoleRenderer, prompt: str) -> None:
    loop = asyncio.get_running_loop()
    try:
        loop.add_signal_handler(signal.SIGINT, engine.abort)
        handler_installed = True
    except (NotImplementedError, RuntimeError):
        handler_installed = False
    try:
        result = await engine.run(prompt)
    except TurnInProgressError as exc:
        console.print(f"[red]{exc}[/red]")
        return
    except Exception as exc:
        logger.exception("Turn failed outside the agent loop")
        console.print(f"[red]Error: {exc}[/red]")
        return
    finally:
        if handler_installed:
            loop.remove_signal_handler(signal.SIGINT)
    await renderer.settle()
    console.print()
    if result.outcome is TurnOutcome.ABORTED:
        console.print("[yellow]Turn aborted. Nothing was saved.[/yellow]")
    elif result.outcome is TurnOutcome.ERROR:
        console.print(f"[red]Error: {result.error}[/red]")


async def _handle_command(console: Console, engine: AssistantEngine, line: str) -> bool:
    """Run a slash command. Returns False when the REPL should exit."""
    command, _, arg = line[1:].partition(" ")
    arg = arg.strip()
    if command in ("exit", "quit"):
        return False
    if command == "help":
        console.print(HELP_TEXT)
    elif command == "status":
        console.print(
            f"model: {engine.model.model_id}\nsession: {engine.session_id}\n"
            f"cwd: {engine.cwd}\nmessages: {len(engine.history)}"
        )
        _print_mcp(console, engine)
    elif command == "tasks":
        _print_tasks(console, engine)
    elif command == "sessions":
        _print_sessions(console, engine)
    elif command == "resume":
        try:
            session_id = engine.resume(arg)
        except SessionNotFoundError as exc:
            console.print(f"[red]{exc}[/red]")
        else:
            console.print(f"Resumed {session_id[:8]} ({len(engine.history)} messages)")
    elif command == "mcp":
        _print_mcp(console, engine)
    elif command == "skills":
        _print_skills(console, engine)
    elif command == "memory":
        state = "exists" if engine.memory_file.is_file() else "not created yet"
        console.print(f"{engine.memory_file} ({state})")
    elif command == "reconnect":
        try:
            status = await engine.reconnect(arg)
        except TernError as exc:
            console.print(f"[red]{exc}[/red]")
        else:
            console.print(f"{arg}: {status['status']} {status['error'] or ''}")
    elif command == "clear":
        console.print(f"New session {engine.clear()[:8]}")
    else:
        console.print(f"[red]Unknown command /{command}[/red] (try /help)")
    return True


async def _repl(console: Console, engine: AssistantEngine, renderer: ConsoleRenderer) -> None:
    console.print(Panel(
        f"[bold]tern[/bold] · {engine.model.model_id}\n{engine.cwd}\n/help for commands",
        border_style="blue",
    ))
    while True:
        try:
            line = (await renderer.reader.read("[bold blue]› [/bold blue]")).strip()
        except (EOFError, KeyboardInterrupt):
            break
        if not line:
            continue
        if line.startswith("/"):
            if not await _handle_command(console, engine, line):
                break
            continue
        await _run_turn(console, engine, renderer, line)


async def _main_async(args: argparse.Namespace, console: Console) -> int:
    cwd = Path(args.cwd).resolve()
    config = load_engine_config(cwd)
    if args.model:
        config.model = args.model
    if args.api_key:
        config.api_key = args.api_key
    if args.thinking is not None:
        config.thinking = args.thinking == "on"
    config.unattended = args.dangerously_skip_permissions
    log_file = setup_logging(config.logs_dir, "DEBUG" if args.verbose else config.log_level)
    logger.info("Starting tern cwd=%s model=%s log=%s", cwd, config.model, log_file)

    if not config.api_key:
        console.print("[red]No API key. Set ARK_API_KEY (or TERN_API_KEY) or pass --api-key.[/red]")
        return 1

    bus = EventBus()
    config.event_callback = bus.make_callback()
    model = ArkChatClient(
        api_key=config.api_key,
        model=config.model,
        base_url=config.base_url,
        thinking=config.thinking,
    )
    engine = AssistantEngine(config, model, cwd=cwd)
    if args.resume:
        try:
            engine.resume(args.resume)
        except SessionNotFoundError as exc:
            console.print(f"[red]{exc}[/red]")
            await engine.shutdown()
            return 1

    renderer = ConsoleRenderer(console, engine, bus)
    rendering = asyncio.create_task(renderer.run())
    try:
        await engine.start()
        if args.prompt:
            await _run_turn(console, engine, renderer, args.prompt)
        else:
            await _repl(console, engine, renderer)
    finally:
        await engine.shutdown()
        bus.close()
        await rendering
    return 0


def main() -> None:
    parser = argparse.ArgumentParser(
        prog="tern",
        description="tern: terminal coding assistant",
    )
    parser.add_argument("-p", "--prompt", help="Run a single prompt and exit")
    parser.add_argument("--model", help="Model id (overrides config)")
    parser.add_argument("--api-key", help="API key (default: $ARK_API_KEY)")
    parser.add_argument(
        "--thinking", choices=["on", "off"], default=None,
        help="Enable or disable model reasoning output",
    )
    parser.add_argument(
        "--resume", metavar="PREFIX",
        help="Resume a saved session by unique id prefix",
    )
    parser.add_argument("--cwd", default=os.getcwd(), help="Working directory")
    parser.add_argument("-v", "--verbose", action="store_true", help="Debug logging")
    parser.add_argument(
        "--dangerously-skip-permissions", action="store_true",
        help="Approve every tool call without asking (non-interactive use only)",
    )
    args = parser.parse_args()
    console = Console()

    if args.dangerously_skip_permissions and sys.stdin.isatty():
        console.print(
            "[red]--dangerously-skip-permissions is only allowed when stdin is "
            "not a terminal (CI, pipes, scripts).[/red]"
        )
        sys.exit(2)

    sys.exit(asyncio.run(_main_async(args, console)))


if __name__ == "__main__":
    main()
