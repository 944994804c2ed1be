"""Main entry point for Nexus."""

import asyncio
import shlex
from pathlib import Path
from typing import Any

import typer
from rich.console import Console
from rich.markup import escape
from rich.table import Table
from rich.text import Text

from nexus.agent import EVENT_STREAM_DELTA, EVENT_TOOL_COMPLETED, EVENT_TOOL_CONTINUE, EVENT_TOOL_EXECUTING
from nexus.commands import (
    EVENT_STREAM_END,
    EVENT_STREAM_ERROR,
    NexusCommands,
    describe_error,
)
from nexus.config import Config, set_config
from nexus.exceptions import ConfigurationError, NexusError
from nexus.logging import configure_logging, log, set_log_sink

app = typer.Typer(help="Nexus - chat with an LLM that can run commands on your machines")
console = Console()

HELP_TEXT = """Commands:
  /clear             Clear conversation (cost totals are kept)
  /reset-cost        Reset all token counters
  /tokens            Show token usage, context and cost
  /model [id]        Show or switch the active model
  /models            List allowed models
  /machines          Probe machine status
  /exec <m> <cmd>    Run a command directly on a machine
  /help              Show this help
  /exit              Quit"""


class _ChatLog:
    """Log sink for the chat REPL.

    Lines logged while a reply is streaming are held back and printed once
    the reply is done, so they never split the streamed text.
    """

    def __init__(self):
        self.holding = False
        self._pending: list[str] = []

    def write(self, line: str) -> None:
        if self.holding:
            self._pending.append(line)
            return
        console.print(Text.from_ansi(line), style="dim")

    def hold(self) -> None:
        self.holding = True

    def release(self) -> None:
        self.holding = False
        pending, self._pending = self._pending, []
        for line in pending:
            self.write(line)


def _bootstrap(config_path: str, verbose: bool) -> Config:
    try:
        cfg = Config.load(config_path or None)
    except Exception as e:
        log.error("Failed to load config", error=str(e))
        console.print(f"[red]Failed to load config: {escape(str(e))}[/red]")
        raise typer.Exit(code=1)
    set_config(cfg)
    configure_logging("DEBUG" if verbose else None)
    return cfg


def _format_stats(stats: dict[str, Any]) -> str:
    return (
        f"context {stats['context_percent']}% "
        f"({stats['last_input_tokens']:,}/{stats['context_window']:,}) | "
        f"total {stats['total_input_tokens']:,} in / {stats['total_output_tokens']:,} out | "
        f"requests {stats['request_count']} | ${stats['estimated_cost']:.4f}"
    )


def _print_stats(stats: dict[str, Any]) -> None:
    style = {"warn": "yellow", "critical": "red"}.get(stats.get("context_level", ""), "dim")
    console.print(f"[{style}]{escape(_format_stats(stats))}[/{style}]")
    if stats.get("context_level") == "critical":
        console.print("[red]Context is almost full. Use /clear to start a new conversation.[/red]")


def _print_machine_table(statuses: list[dict[str, Any]]) -> None:
    table = Table(title="Machines")
    table.add_column("Name")
    table.add_column("Role")
    table.add_column("Status")
    for item in statuses:
        status = "[green]online[/green]" if item["online"] else "[red]offline[/red]"
        table.add_row(escape(item["name"]), item["role"], status)
    console.print(table)


def _print_exec_result(result: dict[str, Any]) -> None:
    if result["stdout"]:
        console.print(escape(result["stdout"]))
    if result["stderr"]:
        console.print(f"[red]{escape(result['stderr'])}[/red]")
    if not result["stdout"] and not result["stderr"]:
        console.print(f"exit: {result['exit_code']}")


def _render_event(event: str, payload: dict[str, Any]) -> None:
    """Print one live event of a streamed turn."""
    if event == EVENT_STREAM_DELTA:
        console.print(payload["text"], end="", markup=False, highlight=False)
    elif event == EVENT_TOOL_EXECUTING:
        console.print(
            f"\n[cyan]> {escape(payload['machine_name'])}: {escape(payload['command'])}[/cyan]"
        )
    elif event == EVENT_TOOL_COMPLETED:
        mark = "[green]done[/green]" if payload["success"] else "[red]failed[/red]"
        console.print(f"  {escape(payload['machine_name'])}: {mark}")
    elif event == EVENT_TOOL_CONTINUE:
        console.print()
    elif event == EVENT_STREAM_END:
        console.print()
        executions = payload.get("tool_executions") or []
        if executions:
            succeeded = sum(1 for item in executions if item["success"])
            console.print(f"[dim]{len(executions)} command(s) run, {succeeded} succeeded[/dim]")
        _print_stats(payload["token_stats"])
    elif event == EVENT_STREAM_ERROR:
        console.print(f"\n[red]{escape(payload['message'])}[/red]")


async def _handle_slash_command(commands: NexusCommands, raw: str) -> bool:
    """Handle a ``/`` command. Returns False when the REPL should exit."""
    parts = raw.strip().split(maxsplit=1)
    name = parts[0].lower()
    args = parts[1].strip() if len(parts) > 1 else ""

    if name in ("/exit", "/quit"):
        return False
    if name == "/help":
        console.print(HELP_TEXT)
    elif name == "/clear":
        await commands.clear_history()
        console.print("[dim]Conversation cleared (cost totals kept).[/dim]")
    elif name == "/reset-cost":
        await commands.reset_cost()
        console.print("[dim]Token counters reset.[/dim]")
    elif name == "/tokens":
        _print_stats(await commands.get_token_stats())
    elif name == "/model":
        if args:
            console.print(await commands.set_model(args))
        else:
            console.print(await commands.get_current_model())
    elif name == "/models":
        for entry in commands.list_models():
            console.print(
                f"{entry['id']}  ${entry['input_price']}/${entry['output_price']} per Mtok, "
                f"{entry['context_window']:,} ctx"
            )
    elif name == "/machines":
        _print_machine_table(await commands.get_machine_status())
    elif name == "/exec":
        tokens = args.split(maxsplit=1)
        if len(tokens) < 2:
            console.print("Usage: /exec <machine> <command>")
        else:
            _print_exec_result(await commands.execute_remote_command(tokens[0], tokens[1]))
    else:
        console.print(f"Unknown command: {escape(name)}. Type /help.")
    return True


async def _chat_loop(cfg: Config, chat_log: _ChatLog) -> None:
    commands = NexusCommands(config=cfg)
    console.print("[bold]=== Nexus ===[/bold]")
    console.print("Type your message, /help for commands, /exit to quit.")
    try:
        while True:
            try:
                text = (await asyncio.to_thread(console.input, "[bold]> [/bold]")).strip()
            except EOFError:
                log.info("EOF received")
                break
            if not text:
                continue
            if text.startswith("/"):
                try:
                    if not await _handle_slash_command(commands, text):
                        log.info("User requested exit")
                        break
                except (NexusError, ValueError) as e:
                    console.print(f"[red]{escape(describe_error(e))}[/red]")
                continue
            chat_log.hold()
            try:
                await commands.send_message_stream(text, _render_event)
            except (NexusError, ValueError):
                # Already rendered via the stream-error event.
                continue
            finally:
                chat_log.release()
    finally:
        await commands.close()


@app.command()
def chat(
    config: str = typer.Option("", "-c", "--config", help="Path to config file"),
    verbose: bool = typer.Option(False, "-v", "--verbose", help="Debug logging"),
) -> None:
    """Interactive streaming chat."""
    chat_log = _ChatLog()
    set_log_sink(chat_log.write)
    cfg = _bootstrap(config, verbose)
    try:
        cfg.require_api_key()
    except ConfigurationError as e:
        console.print(f"[red]{escape(describe_error(e))}[/red]")
        raise typer.Exit(code=1)
    try:
        asyncio.run(_chat_loop(cfg, chat_log))
    except KeyboardInterrupt:
        console.print("\nBye.")


@app.command()
def serve(
    config: str = typer.Option("", "-c", "--config", help="Path to config file"),
    host: str = typer.Option("", "--host", help="Override bind host"),
    port: int = typer.Option(0, "--port", help="Override bind port"),
    verbose: bool = typer.Option(False, "-v", "--verbose", help="Debug logging"),
) -> None:
    """Run the HTTP/SSE API server."""
    from nexus.web_server import run_web_server

    cfg = _bootstrap(config, verbose)
    if host:
        cfg.web.host = host
    if port:
        cfg.web.port = port
    if not cfg.resolved_api_key():
        console.print(
            "[yellow]Warning: API key is not configured; chat requests will fail "
            "until ANTHROPIC_API_KEY is set.[/yellow]"
        )
    config_path = Path(config).expanduser() if config else Config.resolve_default_config_path()
    run_web_server(cfg, config_path)


@app.command()
def machines(
    config: str = typer.Option("", "-c", "--config", help="Path to config file"),
) -> None:
    """Probe and list machine status."""
    cfg = _bootstrap(config, False)
    commands = NexusCommands(config=cfg)
    _print_machine_table(asyncio.run(commands.get_machine_status()))


@app.command(name="exec")
def exec_command(
    machine: str = typer.Argument(..., help="Machine name"),
    command: list[str] = typer.Argument(..., help="Command to run"),
    config: str = typer.Option("", "-c", "--config", help="Path to config file"),
) -> None:
    """Run one command on a machine without the model."""
    cfg = _bootstrap(config, False)
    commands = NexusCommands(config=cfg)
    command_line = command[0] if len(command) == 1 else shlex.join(command)
    try:
        result = asyncio.run(commands.execute_remote_command(machine, command_line))
    except NexusError as e:
        console.print(f"[red]{escape(describe_error(e))}[/red]")
        raise typer.Exit(code=1)
    _print_exec_result(result)
    if not result["success"]:
        raise typer.Exit(code=1)


@app.command()
def version() -> None:
    """Show version information."""
    from nexus import __version__

    console.print(f"Nexus v{__version__}")


if __name__ == "__main__":
    app()
