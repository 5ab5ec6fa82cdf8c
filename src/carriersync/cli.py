"""CLI interface for the carriersync worker."""

from __future__ import annotations

import asyncio
import json
import signal
import typing
from collections import deque
from collections.abc import Awaitable, Callable
from typing import TypeVar

import typer
from rich.console import Console
from rich.table import Table

from carriersync.config import (
    AppConfig,
    config_exists,
    ensure_dirs,
    get_base_dir,
    load_config,
    save_config,
)
from carriersync.logging import SYNC_LOG, WORKER_LOG, setup_logging
from carriersync.storage.database import Database
from carriersync.storage.queue import QueueSet

if typing.TYPE_CHECKING:
    from carriersync.worker import SyncWorker

T = TypeVar("T")

app = typer.Typer(
    name="carriersync",
    help="Resumable, checkpointed carrier device inventory sync.",
    add_completion=False,
)
console = Console()


def main() -> None:
    """Entry point that wraps ``app()`` with a clean KeyboardInterrupt handler."""
    try:
        app()
    except KeyboardInterrupt:
        console.print("Interrupted.")
        raise SystemExit(130) from None


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------


def _with_db(fn: Callable[[AppConfig, Database, QueueSet], Awaitable[T]]) -> T:
    """Open the database, run *fn* against it and close it again."""
    cfg = load_config()
    ensure_dirs()

    async def _inner() -> T:
        db = Database(cfg.database_path)
        await db.connect()
        try:
            return await fn(cfg, db, QueueSet(db))
        finally:
            await db.close()

    return asyncio.run(_inner())


# ---------------------------------------------------------------------------
# Commands
# ---------------------------------------------------------------------------


@app.command()
def init() -> None:
    """Create the config file (if missing) and the database schema."""
    ensure_dirs()
    if not config_exists():
        save_config(AppConfig())
        console.print(f"[green]Wrote default config[/green] to {get_base_dir() / 'config.toml'}")

    async def _noop(cfg: AppConfig, db: Database, queues: QueueSet) -> str:
        return str(db.path)

    path = _with_db(_noop)
    console.print(f"[green]Database ready[/green] at {path}")


@app.command()
def trigger() -> None:
    """Publish a start-of-cycle message for the worker to pick up."""

    async def _trigger(cfg: AppConfig, db: Database, queues: QueueSet) -> int:
        from carriersync.sync.handler import InvocationHandler

        return await InvocationHandler(cfg, db, queues).trigger()

    message_id = _with_db(_trigger)
    console.print(f"[green]Sync triggered[/green] (message {message_id})")


@app.command(name="run-once")
def run_once(
    start_if_idle: bool = typer.Option(True, help="Start a fresh cycle when no message is due"),
) -> None:
    """Run one invocation: handle every due message on the sync and detail queues."""

    async def _run(cfg: AppConfig, db: Database, queues: QueueSet) -> int:
        from carriersync.sync.handler import InvocationHandler

        setup_logging(cfg.worker.log_level, cfg.log_dir, console=True)
        return await InvocationHandler(cfg, db, queues).run_once(start_if_idle=start_if_idle)

    handled = _with_db(_run)
    console.print(f"Handled {handled} message(s).")


@app.command()
def worker() -> None:
    """Run the polling worker in the foreground until interrupted."""

    async def _serve(cfg: AppConfig, db: Database, queues: QueueSet) -> dict:
        from carriersync.sync.handler import InvocationHandler
        from carriersync.worker import SyncWorker

        setup_logging(cfg.worker.log_level, cfg.log_dir, console=True)
        sync_worker = SyncWorker(
            InvocationHandler(cfg, db, queues),
            trigger_interval_minutes=cfg.worker.trigger_interval_minutes,
            poll_interval_seconds=cfg.worker.poll_interval_seconds,
        )
        stop = asyncio.Event()
        _install_signal_handlers(asyncio.get_running_loop(), sync_worker, stop)

        await sync_worker.start()
        await stop.wait()
        await sync_worker.stop()
        return sync_worker.get_status()

    console.print(
        "[green]Worker running[/green], press Ctrl+C to stop. "
        "SIGHUP starts a cycle now, SIGUSR1 pauses, SIGUSR2 resumes."
    )
    final = _with_db(_serve)
    console.print(f"Worker stopped after handling {final['handled']} message(s).")


def _install_signal_handlers(loop: asyncio.AbstractEventLoop, sync_worker: SyncWorker, stop: asyncio.Event) -> None:
    """Map process signals onto worker controls."""
    for sig in (signal.SIGINT, signal.SIGTERM):
        loop.add_signal_handler(sig, stop.set)
    loop.add_signal_handler(signal.SIGHUP, sync_worker.trigger_now)
    loop.add_signal_handler(signal.SIGUSR1, sync_worker.pause)
    loop.add_signal_handler(signal.SIGUSR2, sync_worker.resume)


@app.command()
def status() -> None:
    """Show queue depths, staging table counts and recent sync runs."""

    async def _collect(cfg: AppConfig, db: Database, queues: QueueSet) -> dict:
        return {
            "queues": {
                q.name: await q.depth() for q in (queues.sync, queues.usage, queues.detail)
            },
            "tables": await db.table_counts(),
            "runs": await db.list_sync_runs(limit=5),
        }

    data = _with_db(_collect)

    queue_table = Table(title="Queues")
    queue_table.add_column("queue")
    queue_table.add_column("messages", justify="right")
    for name, depth in data["queues"].items():
        queue_table.add_row(name, str(depth))
    console.print(queue_table)

    table_table = Table(title="Tables")
    table_table.add_column("table")
    table_table.add_column("rows", justify="right")
    for name, count in data["tables"].items():
        style = "green" if count > 0 else "dim"
        table_table.add_row(f"[{style}]{name}[/{style}]", str(count))
    console.print(table_table)

    runs = data["runs"]
    if not runs:
        console.print("[dim]No sync runs yet.[/dim]")
        return
    run_table = Table(title="Recent sync runs")
    for column in ("id", "provider", "status", "started", "finished", "stats"):
        run_table.add_column(column)
    status_colors = {"running": "blue", "completed": "green", "abandoned": "yellow", "failed": "red"}
    for run in runs:
        color = status_colors.get(run.status, "white")
        stats = json.loads(run.stats_json) if run.stats_json else {}
        run_table.add_row(
            str(run.id),
            str(run.service_provider_id),
            f"[{color}]{run.status}[/{color}]",
            run.started_at.isoformat(timespec="seconds"),
            run.finished_at.isoformat(timespec="seconds") if run.finished_at else "-",
            ", ".join(f"{k}={v}" for k, v in stats.items() if v),
        )
    console.print(run_table)


@app.command()
def logs(
    tail_lines: int = typer.Option(50, "--lines", "-n", help="Number of lines to show"),
    sync: bool = typer.Option(False, "--sync", help="Show sync.log (JSON) instead of worker.log"),
) -> None:
    """Show recent worker log output."""
    filename = SYNC_LOG if sync else WORKER_LOG
    log_file = get_base_dir() / "logs" / filename
    if not log_file.exists():
        console.print(f"[yellow]Log file not found:[/yellow] {log_file}")
        raise typer.Exit(1)

    with open(log_file, encoding="utf-8") as fh:
        last_lines = deque(fh, maxlen=tail_lines)

    if not last_lines:
        console.print("[dim]Log file is empty.[/dim]")
        return
    for line in last_lines:
        console.print(line.rstrip("\n"), highlight=False, markup=False)


# ---------------------------------------------------------------------------
# Providers
# ---------------------------------------------------------------------------


provider_app = typer.Typer(name="provider", help="Manage carrier service providers.", add_completion=False)
app.add_typer(provider_app)


@provider_app.command(name="add")
def provider_add(
    provider_id: int = typer.Argument(help="Service provider id"),
    name: str = typer.Argument(help="Display name"),
    client_id: str = typer.Option("", help="Carrier app id"),
    client_secret: str = typer.Option("", help="Carrier app secret"),
    sandbox_url: str = typer.Option("", help="Sandbox API base URL"),
    production_url: str = typer.Option("", help="Production API base URL"),
    integration: str = typer.Option("", help="Integration name (defaults to sync.integration)"),
) -> None:
    """Add or update a service provider."""

    async def _add(cfg: AppConfig, db: Database, queues: QueueSet) -> None:
        await db.add_service_provider(
            provider_id=provider_id,
            name=name,
            integration=integration or cfg.sync.integration,
            client_id=client_id,
            client_secret=client_secret,
            sandbox_url=sandbox_url,
            production_url=production_url,
        )

    _with_db(_add)
    console.print(f"[green]Saved provider[/green] {provider_id} ({name})")


@provider_app.command(name="list")
def provider_list() -> None:
    """List configured service providers."""

    async def _list(cfg: AppConfig, db: Database, queues: QueueSet) -> list:
        return await db.list_service_providers()

    providers = _with_db(_list)
    if not providers:
        console.print("[dim]No providers configured.[/dim]")
        return
    table = Table()
    for column in ("id", "name", "integration", "active", "sandbox", "production"):
        table.add_column(column)
    for p in providers:
        table.add_row(str(p.id), p.name, p.integration, str(p.is_active), p.sandbox_url, p.production_url)
    console.print(table)


@provider_app.command(name="setting")
def provider_setting(
    provider_id: int = typer.Argument(help="Service provider id"),
    key: str = typer.Argument(help="Setting key, e.g. IncludedFANs or ExcludedFANs"),
    value: str = typer.Argument(help="Setting value; account lists are separated by ',' or ';'"),
) -> None:
    """Set a provider-level setting."""

    async def _set(cfg: AppConfig, db: Database, queues: QueueSet) -> None:
        await db.set_provider_setting(provider_id, key, value)

    _with_db(_set)
    console.print(f"[green]Set[/green] {key} for provider {provider_id}")


# ---------------------------------------------------------------------------
# Config
# ---------------------------------------------------------------------------


config_app = typer.Typer(name="config", help="View and modify configuration.", add_completion=False)
app.add_typer(config_app)


@config_app.command(name="show")
def config_show() -> None:
    """Show current configuration."""
    cfg = load_config()
    console.print("\n[bold]Current Configuration[/bold]")
    for section_name in ("worker", "sync", "carrier"):
        console.print(f"\n[bold cyan]\\[{section_name}][/bold cyan]")
        for key, value in getattr(cfg, section_name).model_dump(mode="python").items():
            console.print(f"  {key} = {value}")
    console.print()


@config_app.command(name="set")
def config_set(
    key: str = typer.Argument(help="Dotted key, e.g. sync.batch_size"),
    value: str = typer.Argument(help="New value"),
) -> None:
    """Set a configuration value (e.g. carriersync config set sync.batch_size 500)."""
    parts = key.split(".", maxsplit=1)
    if len(parts) != 2:
        console.print("[red]Key must be in section.field format (e.g. sync.batch_size).[/red]")
        raise typer.Exit(1)

    section_name, field_name = parts
    cfg = load_config()
    if section_name not in type(cfg).model_fields:
        console.print(f"[red]Unknown section:[/red] {section_name}")
        console.print(f"[dim]Valid sections: {', '.join(type(cfg).model_fields)}[/dim]")
        raise typer.Exit(1)

    section_model = getattr(cfg, section_name)
    fields = type(section_model).model_fields
    if field_name not in fields:
        console.print(f"[red]Unknown field:[/red] {section_name}.{field_name}")
        console.print(f"[dim]Valid fields: {', '.join(fields)}[/dim]")
        raise typer.Exit(1)

    try:
        coerced = _coerce_value(value, fields[field_name].annotation)
        section_data = section_model.model_dump(mode="python")
        section_data[field_name] = coerced
        new_section = type(section_model)(**section_data)
    except (ValueError, TypeError) as exc:
        console.print(f"[red]Invalid value:[/red] {exc}")
        raise typer.Exit(1) from exc

    save_config(cfg.model_copy(update={section_name: new_section}))
    console.print(f"[green]Set[/green] {key} = {coerced}")


def _coerce_value(raw: str, field_type: object) -> object:
    """Coerce a string value to the expected field type."""
    if field_type is bool:
        if raw.lower() in ("true", "1", "yes"):
            return True
        if raw.lower() in ("false", "0", "no"):
            return False
        msg = f"Cannot convert '{raw}' to bool (use true/false)"
        raise ValueError(msg)
    if field_type is int:
        return int(raw)
    if field_type is float:
        return float(raw)
    if typing.get_origin(field_type) is typing.Literal:
        args = typing.get_args(field_type)
        if raw not in args:
            msg = f"'{raw}' is not a valid option (choose from: {', '.join(str(a) for a in args)})"
            raise ValueError(msg)
    return raw
