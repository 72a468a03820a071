"""helm entry point.

Initializes the components and runs the interactive chat loop:
  Settings -> AnthropicClient -> ToolDispatcher -> EventBus (+ recorder) -> AgentRunner
"""

from __future__ import annotations

import asyncio
import json
import logging
import signal
from pathlib import Path
from typing import Any, Optional
from uuid import uuid4

import typer
from pydantic import ValidationError
from rich.console import Console
from rich.markup import escape

from helm.api.builtin_tools import register_builtin_tools
from helm.api.client import AnthropicClient
from helm.api.compaction import CompressionStatus
from helm.api.models import EventType, FinishReason, StreamEvent
from helm.api.runner import AgentRunner
from helm.api.tools import ToolDispatcher
from helm.config import Settings
from helm.events import EventBus
from helm.recording import SessionRecorder

logger = logging.getLogger(__name__)

__version__ = "0.1.0"

app = typer.Typer(
    name="helm",
    help="Interactive coding agent with adaptive context management",
    add_completion=False,
)

console = Console()
err_console = Console(stderr=True)

CONTROL_WORDS = ("/compress", "/reset", "/exit")


async def create_components(settings: Settings) -> dict[str, Any]:
    """Initialize all components in dependency order."""
    client = AnthropicClient(settings)
    await client.start()

    dispatcher = None
    if settings.tools_enabled:
        dispatcher = ToolDispatcher()
        register_builtin_tools(dispatcher, settings)

    bus = EventBus()
    recorder = None
    if settings.record_dir:
        recorder = SessionRecorder(bus, settings.record_dir)
    await bus.start()

    runner = AgentRunner(settings, client, dispatcher, bus)
    return {
        "client": client,
        "dispatcher": dispatcher,
        "bus": bus,
        "recorder": recorder,
        "runner": runner,
    }


async def shutdown_components(components: dict[str, Any]) -> None:
    """Close in reverse order. The bus drains before it stops."""
    await components["bus"].stop()
    await components["client"].close()


def render_event(event: StreamEvent) -> None:
    """Print one orchestrator event to the terminal."""
    if event.type == EventType.TEXT_DELTA:
        console.print(event.text, end="", markup=False, highlight=False)
    elif event.type == EventType.TOOL_CALL_REQUEST and event.tool_call:
        args = json.dumps(event.tool_call.args, default=str)
        console.print(
            f"\n[dim]> {escape(event.tool_call.name)} {escape(args[:200])}[/dim]", highlight=False
        )
    elif event.type == EventType.TOOL_CALL_RESPONSE and event.tool_result:
        style = "red" if event.tool_result.is_error else "dim"
        first_line = event.tool_result.output.splitlines()[0] if event.tool_result.output else ""
        console.print(f"[{style}]< {escape(first_line[:200])}[/{style}]", highlight=False)
    elif event.type == EventType.CHAT_COMPRESSED:
        console.print(
            f"\n[yellow]Chat compressed: {event.value['tokens_before']} -> "
            f"{event.value['tokens_after']} tokens[/yellow]"
        )
    elif event.type == EventType.MAX_SESSION_TURNS:
        console.print(
            f"\n[red]Maximum session turns reached ({event.value['limit']}). "
            "Use /reset to start over.[/red]"
        )
    elif event.type == EventType.SESSION_TOKEN_LIMIT:
        console.print(
            f"\n[red]Session token limit exceeded: ~{event.value['estimated']} > "
            f"{event.value['limit']}. Use /compress or /reset.[/red]"
        )
    elif event.type == EventType.ERROR:
        console.print(f"\n[red]Error: {escape(event.text)}[/red]", highlight=False)
    elif event.type == EventType.FINISHED:
        reason = event.value.get("reason")
        if reason == FinishReason.CANCELLED:
            console.print("\n[yellow]Cancelled.[/yellow]")
        elif reason == FinishReason.BUDGET_EXHAUSTED:
            console.print("\n[yellow]Stopped: turn budget exhausted.[/yellow]")
        else:
            console.print()


async def run_prompt(runner: AgentRunner, session_id: str, prompt: str) -> FinishReason | None:
    """Send one prompt. Ctrl+C sets the shared cancel event instead of killing the process."""
    cancel = asyncio.Event()
    loop = asyncio.get_running_loop()
    try:
        loop.add_signal_handler(signal.SIGINT, cancel.set)
        installed = True
    except (NotImplementedError, RuntimeError):
        installed = False

    reason = None
    try:
        async for event in runner.send_message_stream(session_id, prompt, cancel):
            render_event(event)
            if event.type == EventType.FINISHED:
                reason = event.value.get("reason")
    finally:
        if installed:
            loop.remove_signal_handler(signal.SIGINT)
    return reason


async def handle_control_word(runner: AgentRunner, session_id: str, word: str) -> bool:
    """Run a control word. Returns False when the loop should exit."""
    if word == "/exit":
        return False
    if word == "/reset":
        await runner.reset_session(session_id)
        console.print("[green]Conversation reset.[/green]")
    elif word == "/compress":
        outcome = await runner.compress_session(session_id)
        if outcome.status == CompressionStatus.COMPRESSED:
            console.print(
                f"[green]Compressed: {outcome.tokens_before} -> {outcome.tokens_after} tokens[/green]"
            )
        else:
            console.print(f"[yellow]Compression {outcome.status}: {outcome.reason}[/yellow]")
    return True


async def chat_loop(settings: Settings, session_id: str) -> None:
    components = await create_components(settings)
    runner: AgentRunner = components["runner"]
    try:
        while True:
            try:
                line = await asyncio.to_thread(console.input, "[bold green]> [/bold green]")
            except (EOFError, KeyboardInterrupt):
                break
            line = line.strip()
            if not line:
                continue
            if line in CONTROL_WORDS:
                if not await handle_control_word(runner, session_id, line):
                    break
                continue
            await run_prompt(runner, session_id, line)
    finally:
        await runner.end_session(session_id)
        await shutdown_components(components)


async def run_once(settings: Settings, prompt: str) -> FinishReason | None:
    components = await create_components(settings)
    session_id = uuid4().hex
    try:
        return await run_prompt(components["runner"], session_id, prompt)
    finally:
        await components["runner"].end_session(session_id)
        await shutdown_components(components)


def load_settings(**overrides: Any) -> Settings:
    """Settings from env/.env with non-None CLI overrides applied."""
    try:
        settings = Settings(**{k: v for k, v in overrides.items() if v is not None})
    except ValidationError as e:
        err_console.print(f"[red]Invalid configuration:[/red]\n{e}")
        raise typer.Exit(1)

    logging.basicConfig(
        level=getattr(logging, settings.log_level.upper(), logging.INFO),
        format="%(asctime)s %(name)s %(levelname)s %(message)s",
    )
    if not settings.anthropic_api_key and not settings.anthropic_auth_token:
        logger.warning("Neither ANTHROPIC_API_KEY nor ANTHROPIC_AUTH_TOKEN is set")
    return settings


def version_callback(value: bool) -> None:
    if value:
        console.print(f"helm v{__version__}")
        raise typer.Exit()


@app.callback()
def main(
    version: bool = typer.Option(
        None,
        "--version",
        "-V",
        help="Show version and exit",
        callback=version_callback,
        is_eager=True,
    ),
):
    """helm - turn orchestration with adaptive context management."""


@app.command("chat")
def chat_command(
    session: Optional[str] = typer.Option(None, "--session", "-s", help="Session id"),
    model: Optional[str] = typer.Option(None, "--model", "-m", help="Model to use"),
    plan: bool = typer.Option(False, "--plan", help="Plan mode: read-only tools, no edits"),
    workdir: Optional[Path] = typer.Option(None, "--workdir", "-w", help="Workspace directory"),
    record_dir: Optional[Path] = typer.Option(None, "--record-dir", help="Write session events as JSONL here"),
    max_session_turns: Optional[int] = typer.Option(None, help="Maximum turns per session (0 = unlimited)"),
    session_token_limit: Optional[int] = typer.Option(None, help="Session token ceiling (0 = unlimited)"),
):
    """Interactive chat. Control words: /compress, /reset, /exit. Ctrl+C cancels a turn."""
    settings = load_settings(
        model=model,
        approval_mode="plan" if plan else None,
        workspace_dir=str(workdir) if workdir else None,
        record_dir=str(record_dir) if record_dir else None,
        max_session_turns=max_session_turns,
        session_token_limit=session_token_limit,
    )
    console.print(f"[bold blue]helm v{__version__}[/bold blue]  model: [cyan]{settings.model}[/cyan]")
    console.print(f"[dim]Control words: {', '.join(CONTROL_WORDS)}[/dim]")
    asyncio.run(chat_loop(settings, session or uuid4().hex))


@app.command("run")
def run_command(
    prompt: str = typer.Argument(..., help="The prompt to send"),
    model: Optional[str] = typer.Option(None, "--model", "-m", help="Model to use"),
    plan: bool = typer.Option(False, "--plan", help="Plan mode: read-only tools, no edits"),
    workdir: Optional[Path] = typer.Option(None, "--workdir", "-w", help="Workspace directory"),
):
    """Send one prompt and exit. Exit code 1 on error, 130 on cancellation."""
    settings = load_settings(
        model=model,
        approval_mode="plan" if plan else None,
        workspace_dir=str(workdir) if workdir else None,
    )
    reason = asyncio.run(run_once(settings, prompt))
    if reason == FinishReason.CANCELLED:
        raise typer.Exit(130)
    if reason in (FinishReason.ERROR, FinishReason.SESSION_TOKEN_LIMIT, FinishReason.MAX_SESSION_TURNS):
        raise typer.Exit(1)


if __name__ == "__main__":
    app()
