import asyncio
import sys

import click
from rich.console import Console
from rich.panel import Panel
from rich.table import Table

from relay import __version__
from relay.bus.queue import MessageBus
from relay.core.config import Settings
from relay.core.exceptions import ConfigurationError
from relay.core.logging import configure_logging
from relay.domain.models import InboundMessage
from relay.runtime import build_runtime
from relay.sessions.manager import SessionManager

console = Console()

EXIT_COMMANDS = {"exit", "quit", "/exit", "/quit", ":q"}
SECRET_FIELDS = {"LLM_API_KEY", "BRAVE_API_KEY"}


def _load_settings(ctx: click.Context) -> Settings:
    return ctx.obj["settings"]


@click.group()
@click.version_option(version=__version__, prog_name="relay")
@click.option("--log-level", default=None, help="Override LOG_LEVEL")
@click.pass_context
def cli(ctx, log_level):
    """
    Relay - conversational agent orchestration engine

    Talk to the agent from the terminal or run it as a stdin-driven service.
    """
    settings = Settings()
    configure_logging(log_level or settings.LOG_LEVEL, settings.LOG_FORMAT)
    ctx.ensure_object(dict)
    ctx.obj["settings"] = settings


@cli.command()
@click.option("--message", "-m", help="Send a single message and exit")
@click.option("--session", "-s", default="direct", help="Chat identity of the conversation")
@click.pass_context
def chat(ctx, message, session):
    """Chat with the agent (one-shot with -m, interactive otherwise)"""
    settings = _load_settings(ctx)

    async def _run():
        runtime = build_runtime(settings)
        try:
            if message:
                reply = await runtime.dispatcher.process_direct(message, chat_identity=session)
                console.print(reply)
                return

            console.print(Panel.fit(
                f"[bold green]{settings.AGENT_NAME}[/bold green] - type 'exit' to quit",
                title="Interactive chat",
            ))
            while True:
                try:
                    text = await asyncio.to_thread(console.input, "[bold cyan]You:[/bold cyan] ")
                except EOFError:
                    break
                if text.strip().lower() in EXIT_COMMANDS:
                    break
                if not text.strip():
                    continue
                reply = await runtime.dispatcher.process_direct(text, chat_identity=session)
                console.print(f"[bold green]{settings.AGENT_NAME}:[/bold green] {reply}")
        finally:
            await runtime.aclose()

    try:
        asyncio.run(_run())
    except ConfigurationError as e:
        console.print(f"[red]Configuration error: {e}[/red]")
        sys.exit(1)


@cli.command()
@click.pass_context
def serve(ctx):
    """Serve stdin lines as inbound messages until EOF"""
    settings = _load_settings(ctx)

    async def _run():
        runtime = build_runtime(settings)
        bus = MessageBus(settings.BUS_BUFFER_SIZE)
        server = asyncio.create_task(runtime.dispatcher.serve(bus))
        sent = 0
        printed = 0

        async def printer():
            nonlocal printed
            while True:
                outbound = await bus.consume_outbound()
                console.print(f"[green]{outbound.chat_identity}>[/green] {outbound.content}")
                printed += 1

        printing = asyncio.create_task(printer())
        try:
            while True:
                line = await asyncio.to_thread(sys.stdin.readline)
                if not line:
                    break
                if line.strip():
                    await bus.publish_inbound(InboundMessage(
                        channel="stdin", chat_identity="stdin", sender="stdin", content=line.strip(),
                    ))
                    sent += 1
            # Every inbound message gets exactly one answer.
            while printed < sent:
                await asyncio.sleep(0.1)
        finally:
            printing.cancel()
            await runtime.aclose()
            await server

    try:
        asyncio.run(_run())
    except ConfigurationError as e:
        console.print(f"[red]Configuration error: {e}[/red]")
        sys.exit(1)


@cli.command()
@click.pass_context
def status(ctx):
    """Show effective configuration"""
    settings = _load_settings(ctx)
    table = Table(title="Relay Configuration")
    table.add_column("Setting", style="cyan")
    table.add_column("Value", style="green")
    for name, value in settings.model_dump().items():
        if name in SECRET_FIELDS:
            value = "set" if value else "[red]not set[/red]"
        table.add_row(name, str(value))
    console.print(table)


@cli.group()
def sessions():
    """Stored conversation management"""
    pass


@sessions.command(name="list")
@click.pass_context
def list_sessions(ctx):
    """List stored conversations, newest first"""
    settings = _load_settings(ctx.find_root())
    manager = SessionManager(settings.data_path / "sessions")
    rows = manager.list_sessions()
    if not rows:
        console.print("No sessions stored")
        return
    table = Table(title="Sessions")
    table.add_column("Key", style="cyan")
    table.add_column("Updated", style="green")
    table.add_column("Turns", justify="right")
    for row in rows:
        table.add_row(row["key"], row["updated_at"] or "-", str(row["turn_count"]))
    console.print(table)


@sessions.command(name="clear")
@click.argument("key")
@click.pass_context
def clear_session(ctx, key):
    """Delete the stored conversation KEY (channel:chat)"""
    settings = _load_settings(ctx.find_root())
    manager = SessionManager(settings.data_path / "sessions")
    if manager.delete(key):
        console.print(f"[green]✓[/green] Deleted session {key}")
    else:
        console.print(f"[yellow]No session {key}[/yellow]")


if __name__ == "__main__":
    cli()
