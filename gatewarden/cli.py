"""CLI entry point for gatewarden.

Commands:
- gatewarden ensure: Make sure the gateway is running and ready
- gatewarden boot: Run the gateway boot sequence and exec the gateway
- gatewarden restore: Restore state from the durable store if it is newer
- gatewarden sync store|repo|all: Back up state
- gatewarden fingerprint: Show the environment fingerprint
- gatewarden status: Show gateway, backup and event status
- gatewarden version: Show the version

All commands read credentials from the process environment.
"""

from __future__ import annotations

import logging
import os
import sys

import click
from rich.console import Console
from rich.logging import RichHandler
from rich.markup import escape
from rich.panel import Panel
from rich.table import Table

from gatewarden import __version__
from gatewarden.core import boot as boot_sequence
from gatewarden.core.config import ConfigError, WardenConfig, load_config
from gatewarden.core.fingerprint import FingerprintMarker, compute_fingerprint, present_keys
from gatewarden.core.locks import LockTimeoutError
from gatewarden.core.models import SyncResult
from gatewarden.core.state import Database
from gatewarden.core.supervisor import GatewayStartupError, GatewaySupervisor, SupervisorError
from gatewarden.sandbox.environment import LocalEnvironment
from gatewarden.sandbox.mount import MountAdapter, StorageCredentials
from gatewarden.sandbox.registry import find_supervised_process
from gatewarden.sync.repository import RepositoryCredentials, RepositorySync
from gatewarden.sync.restore import Reconciler
from gatewarden.sync.store import StoreSync
from gatewarden.sync.timestamps import MARKER_NAME, read_marker

console = Console()


def _setup_logging(verbose: int) -> None:
    level = logging.WARNING
    if verbose == 1:
        level = logging.INFO
    elif verbose >= 2:
        level = logging.DEBUG
    logging.basicConfig(
        level=level,
        format="%(message)s",
        datefmt="[%X]",
        handlers=[RichHandler(console=Console(stderr=True), rich_tracebacks=False)],
        force=True,
    )


def get_snapshot() -> dict[str, str]:
    """Environment snapshot for this invocation."""
    return dict(os.environ)


def _config(ctx: click.Context) -> WardenConfig:
    return ctx.obj["config"]


def _open_db(config: WardenConfig) -> Database | None:
    try:
        return Database(config.events_db)
    except Exception as e:
        logging.getLogger(__name__).warning(f"Event log unavailable: {e}")
        return None


def _environment(config: WardenConfig) -> LocalEnvironment:
    return LocalEnvironment(
        logs_dir=config.logs_dir,
        registry_path=config.launch_registry_file,
        host=config.gateway_host,
    )


def _mount_adapter(config: WardenConfig) -> MountAdapter:
    return MountAdapter(config.mount_path, config.mount_table_path, timeout=config.mount_timeout)


def _print_sync_result(result: SyncResult) -> None:
    if result.success:
        if result.changeset:
            body = f"[green]Pushed[/green] {result.changeset[:12]} at {result.last_sync}"
        elif result.note:
            body = f"[green]Up to date:[/green] {escape(result.note)}"
        else:
            body = f"[green]Backed up[/green] at {result.last_sync}"
        console.print(Panel(body, title=f"Sync: {result.destination}"))
        return

    body = f"[red]{escape(result.error or 'failed')}[/red]"
    if result.category:
        body += f"\n[dim]Category: {result.category.value}[/dim]"
    if result.details:
        body += f"\n{escape(result.details)}"
    console.print(Panel(body, title=f"Sync: {result.destination}", border_style="red"))


@click.group()
@click.option(
    "--config", "-c", "config_path", type=click.Path(dir_okay=False), help="Path to gatewarden.yaml"
)
@click.option("--verbose", "-v", count=True, help="Increase log verbosity (-v info, -vv debug)")
@click.pass_context
def main(ctx: click.Context, config_path: str | None, verbose: int) -> None:
    """gatewarden - gateway supervisor and state backup.

    Keeps one gateway process running in the sandbox and its state
    durable across sandbox restarts.
    """
    _setup_logging(verbose)
    try:
        config = load_config(config_path)
    except ConfigError as e:
        console.print(f"[red]Configuration error:[/red] {escape(str(e))}")
        sys.exit(1)
    ctx.ensure_object(dict)
    ctx.obj["config"] = config


@main.command()
@click.pass_context
def ensure(ctx: click.Context) -> None:
    """Make sure the gateway is running and ready."""
    config = _config(ctx)
    snapshot = get_snapshot()
    supervisor = GatewaySupervisor(
        config,
        _environment(config),
        mount_adapter=_mount_adapter(config),
        db=_open_db(config),
    )
    credentials = StorageCredentials.from_snapshot(snapshot, config.bucket_name)

    try:
        handle = supervisor.ensure_running(credentials, snapshot)
    except GatewayStartupError as e:
        console.print(f"[red]Gateway failed to start[/red] [dim]({e.category.value})[/dim]")
        if e.stdout.strip():
            console.print(Panel(escape(e.stdout.strip()), title="stdout"))
        if e.stderr.strip():
            console.print(Panel(escape(e.stderr.strip()), title="stderr", border_style="red"))
        sys.exit(1)
    except SupervisorError as e:
        console.print(f"[red]Error:[/red] {escape(str(e))} [dim]({e.category.value})[/dim]")
        sys.exit(1)
    except LockTimeoutError as e:
        console.print(f"[red]Error:[/red] {escape(str(e))}")
        sys.exit(1)

    table = Table(title="Gateway", show_header=False)
    table.add_column("Field", style="cyan")
    table.add_column("Value")
    table.add_row("PID", str(handle.pid))
    table.add_row("Status", handle.status.value)
    table.add_row("Port", str(handle.port or config.gateway_port))
    table.add_row("Command", escape(handle.command))
    console.print(table)


@main.command()
@click.option("--no-exec", is_flag=True, help="Print the gateway command instead of running it")
@click.pass_context
def boot(ctx: click.Context, no_exec: bool) -> None:
    """Run the boot sequence and exec the gateway."""
    config = _config(ctx)
    snapshot = get_snapshot()

    try:
        result = boot_sequence.prepare(
            config,
            snapshot,
            _environment(config),
            _mount_adapter(config),
            db=_open_db(config),
        )
    except boot_sequence.BootError as e:
        console.print(f"[red]Boot failed:[/red] {escape(str(e))}")
        sys.exit(1)

    if result.command is None:
        console.print("[yellow]Gateway is already running, exiting.[/yellow]")
        return

    if result.restore is not None and result.restore.restored:
        console.print(f"[green]Restored:[/green] {', '.join(result.restore.targets)}")

    if no_exec:
        console.print(boot_sequence.redact_command(result.command), markup=False, soft_wrap=True)
        return

    try:
        boot_sequence.exec_gateway(result.command)
    except OSError as e:
        console.print(f"[red]Failed to exec gateway:[/red] {escape(str(e))}")
        sys.exit(1)


@main.command()
@click.option("--check", is_flag=True, help="Only report whether a restore would happen")
@click.pass_context
def restore(ctx: click.Context, check: bool) -> None:
    """Restore state from the durable store if it is newer."""
    config = _config(ctx)
    reconciler = Reconciler(config, db=None if check else _open_db(config))

    if check:
        if reconciler.should_restore():
            console.print("[green]Durable store is newer; restore would run[/green]")
        else:
            console.print("[dim]Local state is current; restore would be skipped[/dim]")
        return

    report = reconciler.restore()
    if report.restored:
        console.print(
            Panel(
                f"[green]Restored:[/green] {', '.join(report.targets)}\n"
                f"[dim]Config layout: {report.config_layout or 'none'}[/dim]",
                title="Restore",
            )
        )
    else:
        console.print(Panel(f"[yellow]Skipped:[/yellow] {escape(report.reason)}", title="Restore"))
    if report.failed_targets:
        console.print(f"[red]Failed:[/red] {', '.join(report.failed_targets)}")
        sys.exit(1)


@main.group()
def sync() -> None:
    """Back up gateway state."""
    pass


def _sync_store(config: WardenConfig, snapshot: dict[str, str], db: Database | None) -> SyncResult:
    engine = StoreSync(config, _mount_adapter(config), db=db)
    return engine.sync_to_store(StorageCredentials.from_snapshot(snapshot, config.bucket_name))


def _sync_repo(config: WardenConfig, snapshot: dict[str, str], db: Database | None) -> SyncResult:
    engine = RepositorySync(config, db=db)
    return engine.sync_to_repository(RepositoryCredentials.from_snapshot(snapshot))


@sync.command("store")
@click.pass_context
def sync_store(ctx: click.Context) -> None:
    """Mirror state to the durable store."""
    config = _config(ctx)
    result = _sync_store(config, get_snapshot(), _open_db(config))
    _print_sync_result(result)
    if not result.success:
        sys.exit(1)


@sync.command("repo")
@click.pass_context
def sync_repo(ctx: click.Context) -> None:
    """Commit and push state to the backup repository."""
    config = _config(ctx)
    result = _sync_repo(config, get_snapshot(), _open_db(config))
    _print_sync_result(result)
    if not result.success:
        sys.exit(1)


@sync.command("all")
@click.pass_context
def sync_all(ctx: click.Context) -> None:
    """Back up to every destination; each runs regardless of the other."""
    config = _config(ctx)
    snapshot = get_snapshot()
    db = _open_db(config)
    results = [_sync_store(config, snapshot, db), _sync_repo(config, snapshot, db)]
    for result in results:
        _print_sync_result(result)
    if not all(r.success for r in results):
        sys.exit(1)


@main.command()
def fingerprint() -> None:
    """Show the environment fingerprint (key names only, never values)."""
    snapshot = get_snapshot()
    value = compute_fingerprint(snapshot)
    console.print(value or "[dim](no recognized keys set)[/dim]", markup=not value)
    console.print(f"[dim]{len(present_keys(snapshot))} recognized keys present[/dim]")


@main.command()
@click.option("--events", "-n", type=int, default=10, help="Number of recent events to show")
@click.pass_context
def status(ctx: click.Context, events: int) -> None:
    """Show gateway, backup and event status."""
    config = _config(ctx)
    snapshot = get_snapshot()

    table = Table(title="gatewarden status", show_header=False)
    table.add_column("Field", style="cyan")
    table.add_column("Value")

    handle = find_supervised_process(_environment(config))
    if handle is None:
        table.add_row("Gateway", "[yellow]not running[/yellow]")
    else:
        table.add_row("Gateway", f"pid {handle.pid} ({handle.status.value})")

    stored = FingerprintMarker(config.fingerprint_file).read()
    current = compute_fingerprint(snapshot)
    if stored is None:
        table.add_row("Fingerprint", "[dim]no marker[/dim]")
    elif stored == current:
        table.add_row("Fingerprint", "[green]matches environment[/green]")
    else:
        table.add_row("Fingerprint", "[yellow]differs from environment (restart pending)[/yellow]")

    mounted = _mount_adapter(config).is_mounted()
    table.add_row("Durable store", "mounted" if mounted else "[yellow]not mounted[/yellow]")
    table.add_row("Store last sync", read_marker(config.mount_path / MARKER_NAME) or "-")
    table.add_row("Local last sync", read_marker(config.config_dir / MARKER_NAME) or "-")
    console.print(table)

    if not config.events_db.exists():
        return
    db = _open_db(config)
    if db is None:
        return
    recent = db.get_events(limit=events)
    if not recent:
        return
    event_table = Table(title="Recent events")
    event_table.add_column("Time", style="dim")
    event_table.add_column("Event", style="cyan")
    event_table.add_column("PID")
    event_table.add_column("Message")
    for event in recent:
        event_table.add_row(
            event.timestamp.strftime("%Y-%m-%d %H:%M:%S"),
            event.event_type.value,
            str(event.pid) if event.pid else "",
            escape(event.message),
        )
    console.print(event_table)


@main.command()
def version() -> None:
    """Show the version."""
    console.print(f"gatewarden {__version__}")


if __name__ == "__main__":
    main()
