from __future__ import annotations

import asyncio
import json
import logging
import signal
from datetime import datetime
from pathlib import Path
from typing import Any

import typer
from rich.align import Align
from rich.console import Console
from rich.logging import RichHandler
from rich.markup import escape
from rich.panel import Panel
from rich.table import Table
from rich.text import Text

from .app_context import AppContext
from .config.loader import load_settings
from .config.models import SandboxMode, Settings
from .errors import HarnessError
from .events.store import EventStore
from .session.models import ToolCall, new_turn_id, parse_openai_tool_calls
from .tools.base import ToolResult, ToolStatus
from .tools.permissions import ApprovalDecision, AutoApprover, AutoApprovePolicy
from .util.cancel import CancelToken
from .util.subprocess import OutputChunk

app = typer.Typer(add_completion=False, help="pyharness: tool execution core for coding agents.")
console = Console()

_STATUS_STYLE = {
    ToolStatus.SUCCESS: "green",
    ToolStatus.USER_REJECTED: "yellow",
    ToolStatus.VALIDATION_FAILED: "magenta",
    ToolStatus.EXECUTION_ERROR: "red",
    ToolStatus.CANCELLED: "bright_black",
}


def _setup_logging(verbose: bool) -> None:
    logging.basicConfig(
        level=logging.DEBUG if verbose else logging.WARNING,
        format="%(message)s",
        datefmt="[%X]",
        handlers=[RichHandler(console=Console(stderr=True), rich_tracebacks=True, show_path=verbose)],
        force=True,
    )


def _resolve_cwd(cwd: Path | None) -> Path:
    cwd = Path(str(cwd or Path.cwd())).expanduser()
    if not cwd.is_absolute():
        cwd = (Path.cwd() / cwd).resolve()
    else:
        cwd = cwd.resolve()
    if not cwd.is_dir():
        raise typer.BadParameter(f"--cwd must be an existing directory, got: {cwd}")
    return cwd


def _load(cwd: Path, config: Path | None, sandbox: str | None, yes: bool) -> Settings:
    try:
        settings = load_settings(cwd=cwd, explicit_path=config)
    except FileNotFoundError as e:
        raise typer.BadParameter(str(e))
    if sandbox:
        if sandbox not in {m.value for m in SandboxMode}:
            raise typer.BadParameter(f"--sandbox must be one of: {', '.join(m.value for m in SandboxMode)}")
        settings.sandbox.mode = SandboxMode(sandbox)
    if yes:
        settings.auto_approve = AutoApprovePolicy(all=True)
    return settings


def _read_calls(call: str | None, args: str | None, calls_file: Path | None, turn_id: str) -> list[ToolCall]:
    if calls_file is not None:
        try:
            data = json.loads(calls_file.read_text(encoding="utf-8"))
        except (OSError, json.JSONDecodeError) as e:
            raise typer.BadParameter(f"cannot read {calls_file}: {e}")
        if isinstance(data, dict):
            data = data.get("tool_calls", [data])
        if not isinstance(data, list):
            raise typer.BadParameter("calls file must hold a list of tool calls")
        out: list[ToolCall] = []
        for i, it in enumerate(data):
            if not isinstance(it, dict):
                raise typer.BadParameter(f"tool call #{i} is not an object")
            if "function" in it:
                out.extend(parse_openai_tool_calls([it], turn_id))
                continue
            arguments = it.get("arguments") or {}
            if not isinstance(arguments, dict):
                raise typer.BadParameter(f"tool call #{i}: arguments must be an object")
            out.append(
                ToolCall(
                    id=str(it.get("id") or f"call_{i + 1}"),
                    name=str(it.get("name") or ""),
                    arguments=arguments,
                    turn_id=turn_id,
                )
            )
        return out
    if not call:
        raise typer.BadParameter("give --call NAME (with --args JSON) or --file calls.json")
    try:
        parsed: Any = json.loads(args) if args else {}
    except json.JSONDecodeError as e:
        raise typer.BadParameter(f"--args is not valid JSON: {e}")
    if not isinstance(parsed, dict):
        raise typer.BadParameter("--args must be a JSON object")
    return [ToolCall(id="call_1", name=call, arguments=parsed, turn_id=turn_id)]


def _print_output(call_id: str, chunk: OutputChunk) -> None:
    style = "red" if chunk.stream == "stderr" else "bright_black"
    console.print(f"[{style}]{call_id}|{chunk.stream}[/{style}] {escape(chunk.text.rstrip())}", highlight=False)


def _print_result(res: ToolResult) -> None:
    style = _STATUS_STYLE.get(res.status, "white")
    title = f"{res.tool_name} ({res.call_id}) [{res.status.value}]"
    if res.error is not None:
        title += f" {res.error.kind}"
    console.print(Panel(Text(res.content[:8000] or "(no output)"), title=escape(title), border_style=style))


@app.command()
def tools(
    cwd: Path = typer.Option(None, "--cwd", help="Working directory (project root). Defaults to current directory."),
    config: Path = typer.Option(None, "--config", help="Explicit settings file (JSON or YAML)."),
    verbose: bool = typer.Option(False, "--verbose", "-v", help="Debug logging."),
):
    """List available tools, including those of configured MCP servers."""
    _setup_logging(verbose)
    cwd = _resolve_cwd(cwd)
    settings = _load(cwd, config, sandbox=None, yes=False)
    # Listing does not execute anything; don't spin up an isolation boundary for it.
    settings.sandbox.mode = SandboxMode.NONE

    async def _list() -> None:
        ctx = await AppContext.open(cwd, settings, approver=AutoApprover(ApprovalDecision.DENY), record_events=False)
        async with ctx:
            table = Table(title="Tools")
            table.add_column("name", style="bold", no_wrap=True)
            table.add_column("class")
            table.add_column("source")
            table.add_column("description")
            for tool in ctx.tools.list_tools():
                spec = tool.spec
                table.add_row(
                    spec.name,
                    spec.permission_key + ("*" if spec.side_effecting else ""),
                    ctx.tools.source_of(spec.name) or "builtin",
                    spec.description.splitlines()[0] if spec.description else "",
                )
            console.print(table)
            for name, state, count in ctx.mcp.status():
                console.print(f"MCP [bold]{name}[/bold]: {state.value} ({count} tools)")

    try:
        asyncio.run(_list())
    except HarnessError as e:
        console.print(f"[red]{e.kind}:[/red] {e}")
        raise typer.Exit(code=1)


@app.command()
def run(
    call: str = typer.Option(None, "--call", "-c", help="Tool name to call."),
    args: str = typer.Option(None, "--args", "-a", help="Tool arguments as a JSON object."),
    calls_file: Path = typer.Option(None, "--file", "-f", help="JSON file with a list of tool calls (one turn)."),
    cwd: Path = typer.Option(None, "--cwd", help="Working directory (project root). Defaults to current directory."),
    config: Path = typer.Option(None, "--config", help="Explicit settings file (JSON or YAML)."),
    sandbox: str = typer.Option(None, "--sandbox", help="Override sandbox mode: none, restricted, containerized."),
    yes: bool = typer.Option(False, "--yes", help="Auto-approve every tool that would ask."),
    session: str = typer.Option(None, "--session", help="Session id (default creates new)."),
    verbose: bool = typer.Option(False, "--verbose", "-v", help="Debug logging."),
):
    """Execute one turn of tool calls and print the results in call order.

    Ctrl-C cancels the turn; every call still gets a result.
    """
    _setup_logging(verbose)
    cwd = _resolve_cwd(cwd)
    settings = _load(cwd, config, sandbox, yes)
    turn_id = new_turn_id()
    calls = _read_calls(call, args, calls_file, turn_id)

    async def _run() -> bool:
        ctx = await AppContext.open(cwd, settings, session_id=session, on_output=_print_output)
        async with ctx:
            table = Table.grid(padding=(0, 2))
            table.add_row("[bold green]cwd[/bold green]", f"[bright_cyan]{ctx.cwd}[/bright_cyan]")
            table.add_row("[bold green]session[/bold green]", f"[bright_cyan]{ctx.session_id}[/bright_cyan]")
            table.add_row("[bold green]sandbox[/bold green]", f"[bright_cyan]{settings.sandbox.mode.value}[/bright_cyan]")
            table.add_row("[bold green]config[/bold green]", f"[bright_cyan]{settings.loaded_from or '(none)'}[/bright_cyan]")
            table.add_row("[bold green]tools[/bold green]", f"[bright_cyan]{len(ctx.tools)}[/bright_cyan]")
            console.print(Align.center(Panel(table, title="[bold magenta]pyharness[/bold magenta]", border_style="bright_blue")))

            token = CancelToken()
            loop = asyncio.get_running_loop()
            try:
                loop.add_signal_handler(signal.SIGINT, token.cancel, "interrupted")
            except (NotImplementedError, RuntimeError):
                pass
            try:
                turn = ctx.engine.start_turn(calls, cancel=token, turn_id=turn_id)
                async for res in turn:
                    _print_result(res)
                outcome = await turn.wait()
            finally:
                try:
                    loop.remove_signal_handler(signal.SIGINT)
                except (NotImplementedError, RuntimeError):
                    pass
            if outcome.cancelled:
                console.print("[yellow]Turn cancelled.[/yellow]")
            return all(r.status is ToolStatus.SUCCESS for r in outcome.results)

    try:
        ok = asyncio.run(_run())
    except ValueError as e:
        raise typer.BadParameter(str(e))
    except HarnessError as e:
        console.print(f"[red]{e.kind}:[/red] {e}")
        raise typer.Exit(code=2)
    if not ok:
        raise typer.Exit(code=1)


@app.command()
def events(
    session: str = typer.Option(..., "--session", help="Session id to inspect events."),
    tail: int = typer.Option(200, "--tail", help="Show last N events."),
):
    """Show recent structured events (turns, tool calls, server changes) recorded for a session."""
    es = EventStore.open(session)
    evs = es.tail(tail or 0)
    console.print(Panel.fit(f"session: {session}\nfile: {es.path}\nevents: {len(evs)}", title="Events"))
    for e in evs:
        ts = datetime.fromtimestamp(e.ts).strftime("%Y-%m-%d %H:%M:%S")
        console.print(Panel.fit(Text(json.dumps(e.data, ensure_ascii=False, indent=2)[:4000]), title=escape(f"{ts}  {e.type}")))


@app.command()
def stats(
    session: str = typer.Option(..., "--session", help="Session id to summarize."),
):
    """Show a compact summary for a session (latency, statuses, tool usage)."""
    es = EventStore.open(session)
    tool_call = es.of_type("tool.call")
    tool_res = es.of_type("tool.result")
    tool_den = es.of_type("tool.denied")
    turns = es.of_type("turn.end")
    cancelled = es.of_type("turn.cancelled")

    vals = []
    for e in tool_res:
        ms = (e.data or {}).get("elapsed_ms")
        if isinstance(ms, (int, float)) and ms >= 0:
            vals.append(float(ms))
    tool_avg = (sum(vals) / len(vals)) if vals else None

    statuses: dict[str, int] = {}
    for e in tool_res:
        s = str((e.data or {}).get("status"))
        statuses[s] = statuses.get(s, 0) + 1

    freq: dict[str, int] = {}
    for e in tool_call:
        t = (e.data or {}).get("tool")
        if t:
            freq[t] = freq.get(t, 0) + 1
    top_tools = sorted(freq.items(), key=lambda x: x[1], reverse=True)[:12]

    lines = [
        f"session: {session}",
        f"events_file: {es.path}",
        f"turns: {len(turns)}  cancelled: {len(cancelled)}",
        f"tool_calls: {len(tool_call)}  tool_results: {len(tool_res)}  tool_denied: {len(tool_den)}",
    ]
    if tool_avg is not None:
        lines.append(f"tool_avg_latency_ms: {tool_avg:.1f}")
    if statuses:
        lines.append("statuses: " + ", ".join(f"{k}={v}" for k, v in sorted(statuses.items())))
    if top_tools:
        lines.append("top_tools:")
        for name, c in top_tools:
            lines.append(f"  - {name}: {c}")

    console.print(Panel.fit("\n".join(lines), title="Stats"))


if __name__ == "__main__":
    app()
