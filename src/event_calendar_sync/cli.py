"""Diagnostic command line for the calendar sync engine.

The engine is meant to be driven by an application; these commands expose
the same operations for inspection and manual runs.
"""

import asyncio
import logging
import sys
from pathlib import Path
from typing import Any, Awaitable, Callable, Optional

import click
from rich.console import Console
from rich.logging import RichHandler
from rich.table import Table

from . import __version__
from .config import CalendarSyncSettings, get_config_dir, load_settings, CONFIG_FILE
from .connection import ConnectionStateHolder, ConnectionStore
from .credential_manager import CredentialManager
from .event_store import YamlEventStore
from .models import CalendarProvider
from .providers.base import CalendarSyncError
from .providers.local_calendar import LocalCalendarClient
from .providers.remote_calendar import RemoteCalendarClient
from .sync_engine import CalendarSyncEngine


console = Console()
logger = logging.getLogger(__name__)

PROVIDER_CHOICES = [CalendarProvider.LOCAL.value, CalendarProvider.REMOTE.value]


def setup_logging(verbose: bool):
    logging.basicConfig(
        level=logging.DEBUG if verbose else logging.WARNING,
        format="%(message)s",
        datefmt="[%X]",
        handlers=[RichHandler(console=Console(stderr=True), rich_tracebacks=True)],
    )


def build_engine(settings: CalendarSyncSettings) -> CalendarSyncEngine:
    """Wire the engine to file-backed state and the system keyring."""
    settings.ensure_data_dir()
    connection = ConnectionStateHolder(ConnectionStore(settings.connection_path))
    local_client = LocalCalendarClient(settings.local)
    remote_client = RemoteCalendarClient(settings.remote, CredentialManager())
    event_store = YamlEventStore(settings.events_path)
    return CalendarSyncEngine(connection, local_client, remote_client, event_store)


def run_with_engine(ctx: click.Context, func: Callable[[CalendarSyncEngine], Awaitable[Any]]) -> Any:
    """Run ``func`` against a fresh engine, reporting sync errors."""
    async def runner():
        engine = build_engine(ctx.obj["settings"])
        try:
            return await func(engine)
        finally:
            await engine.remote_client.aclose()

    try:
        return asyncio.run(runner())
    except CalendarSyncError as e:
        console.print(f"[red]{e.__class__.__name__}: {e}[/red]")
        ctx.exit(1)
    except KeyboardInterrupt:
        console.print("\n[yellow]Cancelled by user[/yellow]")
        ctx.exit(130)


@click.group()
@click.option("--config", "config_path", type=click.Path(path_type=Path), default=None,
              help="Config file (defaults to config.yaml in the config directory)")
@click.option("--verbose", "-v", is_flag=True, help="Enable debug logging")
@click.version_option(__version__, prog_name="calsync")
@click.pass_context
def calsync(ctx: click.Context, config_path: Optional[Path], verbose: bool):
    """Mirror local events into a device or remote calendar."""
    setup_logging(verbose)
    ctx.ensure_object(dict)
    ctx.obj["settings"] = load_settings(config_path)
    ctx.obj["config_path"] = config_path or get_config_dir() / CONFIG_FILE


@calsync.command()
@click.pass_context
def status(ctx: click.Context):
    """Show the current calendar connection."""
    async def show(engine: CalendarSyncEngine):
        state = engine.state

        table = Table(title="Calendar Connection", show_header=True, header_style="bold magenta")
        table.add_column("Setting", style="cyan")
        table.add_column("Value")

        table.add_row("Provider", state.provider.value)
        table.add_row("Calendar", state.selected_calendar_name or "-")
        table.add_row("Calendar ID", state.selected_calendar_id or "-")
        table.add_row("Sync enabled", "✅" if state.sync_enabled else "❌")
        table.add_row("Last sync", state.last_sync_at.isoformat() if state.last_sync_at else "never")
        table.add_row("Source links", "on" if state.include_source_links else "off")
        table.add_row("Remote signed in", "✅" if engine.is_remote_authenticated() else "❌")
        table.add_row("Events stored", str(len(engine.event_store.list())))

        console.print(table)

    run_with_engine(ctx, show)


@calsync.command()
@click.argument("provider", type=click.Choice(PROVIDER_CHOICES))
@click.pass_context
def calendars(ctx: click.Context, provider: str):
    """List writable calendars of PROVIDER."""
    async def show(engine: CalendarSyncEngine):
        infos = await engine.list_available_calendars(CalendarProvider(provider))
        if not infos:
            console.print("[yellow]No writable calendars found[/yellow]")
            return

        table = Table(show_header=True, header_style="bold magenta")
        table.add_column("ID", style="dim")
        table.add_column("Title", style="cyan")
        table.add_column("Source")
        table.add_column("Color")
        for info in infos:
            table.add_row(info.id, info.title, info.source, f"[{info.color}]■[/] {info.color}")
        console.print(table)

    run_with_engine(ctx, show)


@calsync.command()
@click.argument("provider", type=click.Choice(PROVIDER_CHOICES))
@click.argument("calendar_id")
@click.argument("name")
@click.pass_context
def connect(ctx: click.Context, provider: str, calendar_id: str, name: str):
    """Connect CALENDAR_ID of PROVIDER as the sync target."""
    async def do_connect(engine: CalendarSyncEngine):
        if provider == CalendarProvider.LOCAL.value:
            await engine.connect_local(calendar_id, name)
        else:
            await engine.connect_remote(calendar_id, name)
        console.print(f"[green]✅ Connected to {name}[/green]")

    run_with_engine(ctx, do_connect)


@calsync.command()
@click.pass_context
def disconnect(ctx: click.Context):
    """Disconnect the calendar and stop syncing."""
    async def do_disconnect(engine: CalendarSyncEngine):
        await engine.disconnect()
        console.print("[green]Calendar disconnected[/green]")

    run_with_engine(ctx, do_disconnect)


@calsync.command()
@click.argument("event_id", required=False)
@click.option("--all", "sync_all", is_flag=True, help="Sync every stored event")
@click.pass_context
def sync(ctx: click.Context, event_id: Optional[str], sync_all: bool):
    """Sync EVENT_ID, or every stored event with --all."""
    if not event_id and not sync_all:
        raise click.UsageError("Give an EVENT_ID or --all")

    async def do_sync(engine: CalendarSyncEngine):
        if not engine.state.sync_enabled:
            console.print("[yellow]No calendar connected; nothing synced[/yellow]")
            return

        if sync_all:
            await engine.sync_all_events()
            console.print("[green]Sync finished[/green]")
            return

        event = engine.event_store.get(event_id)
        if event is None:
            console.print(f"[red]Event {event_id} not found[/red]")
            ctx.exit(1)
        synced = await engine.sync_event(event)
        calendar_event_id = synced.calendar_event_id_for(engine.state.provider)
        console.print(f"[green]✅ Synced {synced.name}[/green] [dim]({calendar_event_id})[/dim]")

    run_with_engine(ctx, do_sync)


@calsync.command()
@click.argument("event_id")
@click.pass_context
def delete(ctx: click.Context, event_id: str):
    """Delete the calendar record of EVENT_ID."""
    async def do_delete(engine: CalendarSyncEngine):
        event = engine.event_store.get(event_id)
        if event is None:
            console.print(f"[red]Event {event_id} not found[/red]")
            ctx.exit(1)
        await engine.delete_calendar_event(event)
        console.print(f"[green]Calendar record of {event.name} deleted[/green]")

    run_with_engine(ctx, do_delete)


@calsync.command("source-links")
@click.argument("mode", type=click.Choice(["on", "off"]))
@click.pass_context
def source_links(ctx: click.Context, mode: str):
    """Turn event links in calendar notes on or off."""
    async def do_set(engine: CalendarSyncEngine):
        engine.set_include_source_links(mode == "on")
        console.print(f"Source links {mode}")

    run_with_engine(ctx, do_set)


@calsync.command()
@click.pass_context
def doctor(ctx: click.Context):
    """Check the environment the providers depend on."""
    settings: CalendarSyncSettings = ctx.obj["settings"]
    storage_info = CredentialManager().get_storage_info()

    table = Table(title="Calendar Sync Doctor", show_header=True, header_style="bold magenta")
    table.add_column("Check", style="cyan")
    table.add_column("Status", justify="center")
    table.add_column("Details")

    def add_check(name: str, ok: bool, details: str):
        table.add_row(name, "✅" if ok else "❌", details)

    config_path = ctx.obj["config_path"]
    add_check("Config file", config_path.exists(), str(config_path))
    add_check("Data directory", settings.data_dir.exists(), str(settings.data_dir))
    add_check("Keyring", storage_info["keyring_available"],
              storage_info["keyring_backend"] or "in-memory fallback")
    add_check("Device calendar", LocalCalendarClient(settings.local).is_available(),
              f"needs macOS and osascript (platform: {sys.platform})")
    add_check("OAuth client id", bool(settings.remote.client_id),
              "set remote.client_id or CALSYNC_REMOTE__CLIENT_ID")
    add_check("Redirect URI", True, settings.remote.redirect_uri)

    console.print(table)


def main():
    calsync(obj={})


if __name__ == "__main__":
    main()
