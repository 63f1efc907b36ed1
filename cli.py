"""
ClinicSync CLI
Commands: status, sync, backup, restore, reconcile, backups, prune,
conflicts, resolve, keys, rotate-key, server
"""

import asyncio
import json
import logging
from pathlib import Path
from typing import Optional

import typer
from rich.console import Console
from rich.table import Table
from rich.panel import Panel
from rich.progress import BarColumn, Progress, TextColumn
from rich import box

app = typer.Typer(
    name="clinicsync",
    help="ClinicSync: encrypted sync and backup for clinic data",
    add_completion=False,
)
console = Console()


@app.callback()
def main(verbose: bool = typer.Option(False, "--verbose", "-v", help="Show engine logs")):
    logging.basicConfig(
        level=logging.INFO if verbose else logging.WARNING,
        format="%(asctime)s [%(levelname)s] %(name)s: %(message)s",
    )
    # Suppress noisy loggers when running CLI
    logging.getLogger("botocore").setLevel(logging.WARNING)
    logging.getLogger("urllib3").setLevel(logging.WARNING)


def _engine():
    """Wire the engine from settings before any command that needs it."""
    from clinicsync.config.settings import settings
    from clinicsync.sync.engine import build_engine
    return build_engine(settings)


def _run_with_progress(engine, coro_factory):
    """Run an engine operation, rendering its progress as a bar."""
    with Progress(
        TextColumn("[bold blue]{task.description}"),
        BarColumn(),
        TextColumn("{task.percentage:>3.0f}%"),
        console=console,
        transient=True,
    ) as progress:
        task = progress.add_task("Starting", total=1.0)
        engine.add_progress_listener(
            lambda p: progress.update(task, completed=p.fraction, description=p.step)
        )
        return asyncio.run(coro_factory())


def _print_result(result) -> None:
    style = {"success": "green", "partial": "yellow", "cancelled": "yellow"}.get(result.status.value, "red")
    lines = [
        f"Status   : [{style}]{result.status.value}[/]",
        f"Duration : [cyan]{result.duration_seconds:.1f}s[/]",
    ]
    for name, count in sorted(result.counts.items()):
        lines.append(f"{name:<9}: [cyan]{count}[/]")
    if result.unresolved_conflicts:
        lines.append(
            f"Conflicts: [yellow]{len(result.unresolved_conflicts)} awaiting resolution[/] "
            "(run [bold]clinicsync conflicts[/])"
        )
    if result.error_message:
        lines.append(f"Error    : [red]{result.error_category}/{result.error_kind}[/] {result.error_message}")
    if result.requires_reauth:
        lines.append("[red]Storage credentials need to be renewed.[/]")
    for name, value in result.details.items():
        if isinstance(value, (str, int, float, bool)):
            lines.append(f"{name:<9}: {value}")
    console.print(Panel("\n".join(lines), title=result.operation.value, border_style=style))
    if not result.ok:
        raise typer.Exit(1)


# ── status ────────────────────────────────────────────────────────────────────

@app.command()
def status():
    """Show engine, key and table status."""
    engine = _engine()
    info = engine.status()
    table = Table(title="Tables", box=box.ROUNDED)
    table.add_column("Table", style="cyan")
    table.add_column("Pending", justify="right")
    table.add_column("Last sync", no_wrap=True)
    table.add_column("Last backup", no_wrap=True)

    from clinicsync.sync.clock import from_epoch_ms
    for name in engine.tables:
        meta = engine.records.get_sync_metadata(name)
        table.add_row(
            name,
            str(engine.records.pending_count(name)),
            from_epoch_ms(meta.last_sync_timestamp).strftime("%Y-%m-%d %H:%M") if meta and meta.last_sync_timestamp else "-",
            from_epoch_ms(meta.last_backup_timestamp).strftime("%Y-%m-%d %H:%M") if meta and meta.last_backup_timestamp else "-",
        )

    rotation = "[yellow]due[/]" if info["needs_key_rotation"] else "[green]ok[/]"
    console.print(Panel(
        f"Tenant        : [cyan]{info['tenant_id']}[/]\n"
        f"Origin        : [cyan]{info['origin_id']}[/]\n"
        f"Strategy      : [cyan]{info['conflict_strategy']}[/]\n"
        f"Key rotation  : {rotation}\n"
        f"Circuit       : [cyan]{info['circuit']['state']}[/]\n"
        f"Conflicts     : [yellow]{info['pending_conflicts']}[/]",
        title="ClinicSync Status",
        border_style="blue",
    ))
    console.print(table)


# ── sync / backup / restore / reconcile ──────────────────────────────────────

@app.command()
def sync(full: bool = typer.Option(False, "--full", help="Upload all pending records")):
    """Upload local changes and pull the latest remote snapshot."""
    engine = _engine()
    _print_result(_run_with_progress(engine, lambda: engine.sync(full=full)))


@app.command()
def backup():
    """Encrypt and upload a full snapshot."""
    engine = _engine()
    _print_result(_run_with_progress(engine, engine.backup))


@app.command()
def restore(backup_id: Optional[str] = typer.Argument(None, help="Backup id or name (default: latest)")):
    """Restore local data from a remote backup."""
    engine = _engine()
    _print_result(_run_with_progress(engine, lambda: engine.restore(backup_id)))


@app.command()
def reconcile():
    """Restore if the remote is newer, otherwise back up."""
    engine = _engine()
    _print_result(_run_with_progress(engine, engine.reconcile))


# ── backups / prune ───────────────────────────────────────────────────────────

@app.command()
def backups():
    """List remote backups for this tenant."""
    from clinicsync.sync.errors import SyncError
    engine = _engine()
    try:
        items = asyncio.run(engine.list_backups())
    except SyncError as e:
        console.print(f"[red]Could not list backups:[/] {e.category}/{e.kind.value} {e.message}")
        raise typer.Exit(1)
    if not items:
        console.print("[dim]No backups yet.[/]")
        return

    from clinicsync.sync.backups import backup_statistics
    table = Table(title="Backups", box=box.ROUNDED)
    table.add_column("Name", style="cyan", no_wrap=True)
    table.add_column("Created", no_wrap=True)
    table.add_column("Size", justify="right")
    for d in items:
        table.add_row(d.name, d.created_at.strftime("%Y-%m-%d %H:%M:%S"), f"{d.size:,}")
    console.print(table)

    stats = backup_statistics(items)
    console.print(f"[dim]{stats['count']} backups, {stats['total_size']:,} bytes[/]")


@app.command()
def prune(dry_run: bool = typer.Option(False, "--dry-run", help="Only show what would be deleted")):
    """Apply the retention policy to remote backups and sync uploads."""
    engine = _engine()
    result = asyncio.run(engine.cleanup_backups(dry_run=dry_run))
    if not result.ok:
        _print_result(result)

    details = result.details
    if dry_run:
        for name in details["planned_names"]:
            console.print(f"[yellow]would delete[/] {name}")
        console.print(f"[dim]{len(details['planned'])} of {details['total']} remote objects would be deleted[/]")
        return
    console.print(f"[green]Deleted {len(details['deleted'])} remote objects[/]")


# ── conflicts ─────────────────────────────────────────────────────────────────

@app.command()
def conflicts(table_name: Optional[str] = typer.Option(None, "--table", "-t")):
    """List conflicts awaiting manual resolution."""
    engine = _engine()
    items = engine.list_conflicts(table_name)
    if not items:
        console.print("[dim]No pending conflicts.[/]")
        return

    table = Table(title="Conflicts", box=box.ROUNDED)
    table.add_column("ID", style="cyan", no_wrap=True, max_width=12)
    table.add_column("Table")
    table.add_column("Record")
    table.add_column("Detected", no_wrap=True)
    table.add_column("Local origin")
    table.add_column("Remote origin")
    for c in items:
        table.add_row(
            c.id[:8],
            c.table_name,
            c.record_id,
            c.detected_at.strftime("%Y-%m-%d %H:%M"),
            str(c.local_record.get("origin_id", "-")),
            str(c.remote_record.get("origin_id", "-")),
        )
    console.print(table)


@app.command()
def resolve(
    conflict_id: str = typer.Argument(..., help="Conflict ID (or prefix)"),
    strategy: str = typer.Option("last_write_wins", "--strategy", "-s",
                                 help="use_local | use_remote | merge | manual | last_write_wins"),
    record_file: Optional[Path] = typer.Option(None, "--record", "-r", help="JSON record for manual resolution"),
    notes: Optional[str] = typer.Option(None, "--notes"),
):
    """Resolve a pending conflict."""
    from clinicsync.sync.models import ResolutionStrategy

    try:
        chosen = ResolutionStrategy(strategy)
    except ValueError:
        console.print(f"[red]Error:[/] unknown strategy {strategy!r}")
        raise typer.Exit(1)

    record = None
    if record_file is not None:
        record = json.loads(record_file.read_text(encoding="utf-8"))

    engine = _engine()
    matches = [c for c in engine.list_conflicts() if c.id.startswith(conflict_id)]
    if len(matches) != 1:
        console.print(f"[red]Conflict not found or ambiguous:[/] {conflict_id}")
        raise typer.Exit(1)
    _print_result(asyncio.run(engine.resolve_conflict(matches[0].id, chosen, record, notes)))


# ── keys ──────────────────────────────────────────────────────────────────────

@app.command()
def keys():
    """List encryption keys for this tenant (metadata only)."""
    engine = _engine()
    items = engine.keys.list_keys(engine.tenant_id)
    if not items:
        console.print("[dim]No keys yet. One is created on the first sync or backup.[/]")
        return

    table = Table(title="Keys", box=box.ROUNDED)
    table.add_column("Key ID", style="cyan", no_wrap=True)
    table.add_column("Created", no_wrap=True)
    table.add_column("Expires", no_wrap=True)
    table.add_column("Active", justify="center")
    for k in items:
        table.add_row(
            k.key_id,
            k.created_at.strftime("%Y-%m-%d %H:%M"),
            k.expires_at.strftime("%Y-%m-%d %H:%M"),
            "[green]yes[/]" if k.is_active else "",
        )
    console.print(table)


@app.command("rotate-key")
def rotate_key():
    """Create a new active key. Older keys remain available for decryption."""
    engine = _engine()
    key_id = engine.keys.rotate_key(engine.tenant_id)
    console.print(f"[green]Active key is now[/] [cyan]{key_id}[/]")


# ── server ────────────────────────────────────────────────────────────────────

@app.command()
def server(
    host: str = typer.Option("127.0.0.1", "--host"),
    port: int = typer.Option(8000, "--port"),
    reload: bool = typer.Option(False, "--reload"),
):
    """Start the ClinicSync API server."""
    import uvicorn
    console.print(f"[green]Starting ClinicSync API server[/] → http://{host}:{port}")
    uvicorn.run("clinicsync.main:app", host=host, port=port, reload=reload)


if __name__ == "__main__":
    app()
