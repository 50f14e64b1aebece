"""Command line demo for Agent Bridge: one-shot ``ask`` and interactive ``chat``."""

from __future__ import annotations

import asyncio
import contextlib
import json
import logging
import signal
import sys
import uuid
from contextlib import asynccontextmanager
from pathlib import Path
from typing import Any, AsyncIterator

import click
from prompt_toolkit import PromptSession
from prompt_toolkit.history import FileHistory
from rich.console import Console
from rich.panel import Panel
from rich.table import Table

from agent_bridge import __version__
from agent_bridge.config import TRANSPORTS, BridgeConfig, load_config
from agent_bridge.core.stats import ResponseStats, StatsTracker
from agent_bridge.events.bus import EventBus
from agent_bridge.tools.cache import ToolExecutorCache
from agent_bridge.tools.registry import ToolRegistry
from agent_bridge.tools.workspace import open_workspace
from agent_bridge.transport import ChatTransport, build_transport
from agent_bridge.types import AgentEvent, Chunk, ChunkType, EventType

console = Console()

_HISTORY_FILE = Path.home() / ".config" / "agent-bridge" / "history"

_tool_cache = ToolExecutorCache()

_VERBOSE = "agent_bridge.verbose"


class ChunkDisplay:
    """Renders chunks to the terminal as they arrive."""

    def __init__(self, con: Console):
        self.con = con
        self._streaming = False
        self._tool_names: dict[str, str] = {}
        self.text = ""
        self.message_id = ""
        self.failed = False

    def handle(self, chunk: Chunk):
        if chunk.type is ChunkType.START:
            self.message_id = chunk.get("messageId", "")

        elif chunk.type is ChunkType.TEXT_DELTA:
            if not self._streaming:
                self._streaming = True
                self.con.print()
            self.text += chunk["delta"]
            self.con.print(chunk["delta"], end="", highlight=False)

        elif chunk.type is ChunkType.TEXT_END:
            self._flush()

        elif chunk.type is ChunkType.TOOL_INPUT_AVAILABLE:
            self._flush()
            self._tool_names[chunk["toolCallId"]] = chunk["toolName"]
            args = json.dumps(chunk.get("input"), default=str)
            if len(args) > 120:
                args = args[:120] + "..."
            self.con.print(f"[yellow]> {chunk['toolName']}[/yellow] [dim]{args}[/dim]")

        elif chunk.type is ChunkType.TOOL_OUTPUT_AVAILABLE:
            out = chunk.get("output", "")
            ok = not out.startswith("Error:")
            icon = "[green]OK[/green]" if ok else "[red]FAIL[/red]"
            if len(out) > 600:
                out = out[:600] + "\n..."
            if out.strip():
                name = self._tool_names.get(chunk["toolCallId"], "")
                self.con.print(Panel(out, title=f"{icon} {name}",
                                     border_style="dim", expand=False))

        elif chunk.type is ChunkType.ERROR:
            self._flush()
            self.failed = True
            self.con.print(f"[red]Error: {chunk.get('errorText', '')}[/red]")

        elif chunk.type is ChunkType.FINISH:
            self._flush()

    def _flush(self):
        if self._streaming:
            self.con.print()
            self._streaming = False


class EventLog:
    """Prints connection, request and anchor events as they happen (``-v``)."""

    SHOWN = (
        EventType.CONNECTION_OPENED,
        EventType.CONNECTION_CLOSED,
        EventType.REQUEST_SENT,
        EventType.ANCHOR_INVALIDATED,
    )

    def __init__(self, con: Console):
        self.con = con

    def attach(self, bus: EventBus) -> EventBus:
        for event_type in self.SHOWN:
            bus.subscribe(event_type, self.handle)
        return bus

    def handle(self, event: AgentEvent):
        data = event.data
        if event.type is EventType.CONNECTION_OPENED:
            line = f"connection {data.get('generation')} opened"
        elif event.type is EventType.CONNECTION_CLOSED:
            line = f"connection {data.get('generation')} closed: {data.get('reason')}"
        elif event.type is EventType.ANCHOR_INVALIDATED:
            line = f"anchor {data.get('anchor_id')} dropped: {data.get('reason')}"
        else:
            line = (f"request {data.get('request_id')}: {data.get('items')} item(s),"
                    f" anchor {data.get('anchor_id') or 'none'}")
        self.con.print(line, style="dim", markup=False, highlight=False)


def stats_table(stats: ResponseStats) -> Table:
    """Per-turn summary: steps, tool calls, latencies and tokens."""
    table = Table(show_header=False, box=None, padding=(0, 2))
    table.add_column(style="dim")
    table.add_column()
    if stats.total_ms is not None:
        table.add_row("total", f"{stats.total_ms} ms")
    table.add_row("steps", str(stats.steps))
    table.add_row("tool calls", str(stats.tool_calls))
    if stats.step_ttfb:
        table.add_row("ttfb", ", ".join(f"{t} ms" for t in stats.step_ttfb))
    if stats.step_latencies:
        table.add_row("step latency", ", ".join(f"{t} ms" for t in stats.step_latencies))
    if stats.tokens:
        table.add_row(
            "tokens",
            f"in {stats.tokens['input']} (cached {stats.tokens['inputCached']})"
            f" / out {stats.tokens['output']}",
        )
    return table


@asynccontextmanager
async def open_tools(config: BridgeConfig) -> AsyncIterator[ToolRegistry]:
    """The workspace toolset if one is configured, else no tools."""
    if not config.workspace:
        yield ToolRegistry()
        return
    root = str(Path(config.workspace).expanduser().resolve())
    async with _tool_cache.lease(root, lambda: open_workspace(root)) as registry:
        yield registry


def _user_message(text: str) -> dict[str, Any]:
    return {"id": uuid.uuid4().hex[:12], "role": "user", "parts": [{"type": "text", "text": text}]}


async def run_turn(
    transport: ChatTransport,
    history: list[dict[str, Any]],
    display: ChunkDisplay,
    abort: asyncio.Event | None = None,
) -> StatsTracker:
    """Send *history*, render the reply and append it to *history*."""
    tracker = StatsTracker()
    async for chunk in transport.send_messages(history, abort_signal=abort):
        tracker.observe(chunk)
        display.handle(chunk)
    if display.text:
        history.append({
            "id": display.message_id or uuid.uuid4().hex[:12],
            "role": "assistant",
            "parts": [{"type": "text", "text": display.text}],
        })
    return tracker


def _event_bus() -> EventBus | None:
    """A bus with the event log attached when running with ``--verbose``."""
    if not click.get_current_context().meta.get(_VERBOSE):
        return None
    return EventLog(console).attach(EventBus())


async def _ask(
    config: BridgeConfig, prompt: str, show_stats: bool, event_bus: EventBus | None = None,
) -> bool:
    async with open_tools(config) as registry:
        transport = build_transport(config, registry, event_bus=event_bus)
        try:
            display = ChunkDisplay(console)
            tracker = await run_turn(transport, [_user_message(prompt)], display)
        finally:
            await transport.aclose()
    if show_stats and tracker.stats:
        console.print(stats_table(tracker.stats))
    return not display.failed


async def _chat(config: BridgeConfig, event_bus: EventBus | None = None) -> None:
    _HISTORY_FILE.parent.mkdir(parents=True, exist_ok=True)
    session: PromptSession = PromptSession(history=FileHistory(str(_HISTORY_FILE)))
    loop = asyncio.get_running_loop()

    async with open_tools(config) as registry:
        session_id = uuid.uuid4().hex[:8]
        transport = build_transport(
            config, registry, session_id=session_id, event_bus=event_bus,
        )
        history: list[dict[str, Any]] = []
        last: ResponseStats | None = None
        try:
            while True:
                try:
                    text = await session.prompt_async("> ")
                except (EOFError, KeyboardInterrupt):
                    break
                text = text.strip()
                if not text:
                    continue
                if text in ("/exit", "/quit"):
                    break
                if text == "/stats":
                    if last:
                        console.print(stats_table(last))
                    continue
                if text == "/reset":
                    await transport.aclose()
                    session_id = uuid.uuid4().hex[:8]
                    transport = build_transport(
                        config, registry, session_id=session_id, event_bus=event_bus,
                    )
                    history = []
                    console.print("[dim]New conversation[/dim]")
                    continue

                history.append(_user_message(text))
                abort = asyncio.Event()
                with contextlib.suppress(NotImplementedError, RuntimeError):
                    loop.add_signal_handler(signal.SIGINT, abort.set)
                try:
                    tracker = await run_turn(transport, history, ChunkDisplay(console), abort)
                finally:
                    with contextlib.suppress(NotImplementedError, RuntimeError):
                        loop.remove_signal_handler(signal.SIGINT)
                if abort.is_set():
                    console.print("\n[yellow]Cancelled[/yellow]")
                if tracker.stats:
                    last = tracker.stats
                    console.print(stats_table(last))
        finally:
            await transport.aclose()


@click.group()
@click.version_option(__version__, prog_name="agent-bridge")
@click.option("--config", "-c", "config_path", default=None,
              help="Path to agent_bridge.yaml (auto-detected from CWD or ~/.config/agent-bridge/)")
@click.option("--transport", "-t", type=click.Choice(TRANSPORTS), default=None,
              help="Override the configured transport")
@click.option("--workspace", "-w", default=None, help="Directory exposed to the file tools")
@click.option("--max-steps", type=int, default=None, help="Tool batches allowed per turn")
@click.option("--verbose", "-v", is_flag=True, help="Verbose logging")
@click.pass_context
def main(ctx: click.Context, config_path: str | None, transport: str | None,
         workspace: str | None, max_steps: int | None, verbose: bool):
    """Agent Bridge - tool-calling chat over a persistent connection."""
    ctx.meta[_VERBOSE] = verbose
    if verbose:
        logging.basicConfig(level=logging.DEBUG)
    else:
        logging.basicConfig(level=logging.WARNING)

    try:
        config = load_config(config_path)
    except ValueError as e:
        raise click.ClickException(str(e)) from e
    if transport:
        config.transport = transport
    if workspace:
        config.workspace = workspace
    if max_steps is not None:
        config.max_steps = max_steps
    ctx.obj = config


@main.command()
@click.argument("prompt")
@click.option("--stats/--no-stats", default=True, help="Print timing and token stats")
@click.pass_obj
def ask(config: BridgeConfig, prompt: str, stats: bool):
    """Run a single turn and exit."""
    ok = asyncio.run(_ask(config, prompt, stats, _event_bus()))
    if not ok:
        sys.exit(1)


@main.command()
@click.pass_obj
def chat(config: BridgeConfig):
    """Interactive conversation on one persistent session."""
    console.print(
        f"[bold cyan]agent-bridge[/bold cyan] [dim]v{__version__}"
        f" | {config.transport} | {config.active_profile.model}[/dim]"
    )
    console.print("[dim]/stats, /reset, /exit. Ctrl-C cancels the running turn.[/dim]\n")
    asyncio.run(_chat(config, _event_bus()))


if __name__ == "__main__":
    main()
