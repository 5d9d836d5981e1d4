"""
Root Typer application for the streamkeeper CLI.

Commands::

    streamkeeper run        run the manager against the SQLite store
    streamkeeper jobs       list jobs
    streamkeeper history    list completed runs
    streamkeeper config     show effective settings
"""

from __future__ import annotations

import asyncio
import json
from pathlib import Path

import typer
from rich.console import Console
from rich.table import Table

from streamkeeper.core.logging import configure_logging
from streamkeeper.core.models import JobStatus
from streamkeeper.core.settings import ManagerSettings, get_settings
from streamkeeper.core.timestamps import to_iso8601
from streamkeeper.store.sqlite import SQLiteJobStore

console = Console()
err_console = Console(stderr=True)

app = typer.Typer(
    name="streamkeeper",
    help="streamkeeper: scheduled stream lifecycle manager.",
    no_args_is_help=True,
    rich_markup_mode="rich",
)


def _version_callback(value: bool) -> None:
    if value:
        from importlib.metadata import PackageNotFoundError
        from importlib.metadata import version as pkg_version

        try:
            v = pkg_version("streamkeeper")
        except PackageNotFoundError:
            from streamkeeper import __version__ as v
        typer.echo(f"streamkeeper {v}")
        raise typer.Exit()


@app.callback()
def main(
    version: bool | None = typer.Option(  # noqa: UP007
        None,
        "--version",
        "-V",
        help="Show version and exit.",
        callback=_version_callback,
        is_eager=True,
    ),
) -> None:
    """streamkeeper CLI: run the manager and inspect jobs and history."""


def _open_store(db: Path | None, settings: ManagerSettings) -> SQLiteJobStore:
    return SQLiteJobStore.open(db or settings.database_path)


def _fmt(value: object) -> str:
    if value is None:
        return "-"
    return str(value)


# ── run ──────────────────────────────────────────────────────────────────


@app.command("run")
def run(
    db: Path | None = typer.Option(None, "--db", "-d", help="SQLite database path"),  # noqa: UP007
    log_level: str | None = typer.Option(None, "--log-level", "-l", help="DEBUG, INFO, WARNING, ERROR"),  # noqa: UP007
    poll_interval: float | None = typer.Option(None, "--poll-interval", help="Seconds between trigger sweeps"),  # noqa: UP007
) -> None:
    """Run the stream manager until SIGTERM or SIGINT.

    Example::

        streamkeeper run --db data/streams.db --poll-interval 30
    """
    from streamkeeper.manager import StreamManager

    settings = get_settings()
    updates: dict[str, object] = {}
    if log_level:
        updates["log_level"] = log_level
    if poll_interval:
        updates["poll_interval_seconds"] = poll_interval
    if updates:
        settings = settings.model_copy(update=updates)

    configure_logging(
        level=settings.log_level,
        json_format=settings.json_logs,
        service=settings.service_name,
    )

    store = _open_store(db, settings)
    console.print(
        f"[bold green]Starting streamkeeper[/bold green] "
        f"(db={db or settings.database_path}, poll={settings.poll_interval_seconds}s)"
    )
    try:
        manager = StreamManager(store, settings=settings)
        asyncio.run(manager.run_forever())
    except KeyboardInterrupt:
        console.print("\n[yellow]Stopped by user[/yellow]")
    except Exception as exc:
        err_console.print(f"[red]Manager error: {exc}[/red]")
        raise typer.Exit(code=1)
    finally:
        store.close()
    console.print("[green]Shutdown complete[/green]")


# ── jobs ─────────────────────────────────────────────────────────────────


@app.command("jobs")
def jobs(
    status: str | None = typer.Option(None, "--status", "-s", help="scheduled, live or offline"),  # noqa: UP007
    db: Path | None = typer.Option(None, "--db", "-d", help="SQLite database path"),  # noqa: UP007
    as_json: bool = typer.Option(False, "--json", help="Output as JSON"),
) -> None:
    """List stream jobs."""
    job_status: JobStatus | None = None
    if status:
        try:
            job_status = JobStatus(status.lower())
        except ValueError:
            raise typer.BadParameter(f"unknown status: {status}", param_hint="--status") from None

    store = _open_store(db, get_settings())
    try:
        rows = store.list_jobs(job_status)
    finally:
        store.close()

    if as_json:
        console.print_json(json.dumps([r.to_row() for r in rows], default=str))
        return

    if not rows:
        console.print("[yellow]No jobs found[/yellow]")
        return

    table = Table(title="Jobs")
    table.add_column("ID", style="cyan")
    table.add_column("Title")
    table.add_column("Status")
    table.add_column("Scheduled start")
    table.add_column("End")
    table.add_column("Started")
    table.add_column("Source")
    colors = {JobStatus.LIVE: "green", JobStatus.SCHEDULED: "blue", JobStatus.OFFLINE: "dim"}
    for job in rows:
        table.add_row(
            job.id,
            job.title,
            f"[{colors[job.status]}]{job.status.value}[/]",
            _fmt(to_iso8601(job.schedule_time)),
            _fmt(to_iso8601(job.end_time)),
            _fmt(to_iso8601(job.start_time)),
            f"{job.source_type.value}:{_fmt(job.source_id)}",
        )
    console.print(table)


# ── history ──────────────────────────────────────────────────────────────


@app.command("history")
def history(
    job: str | None = typer.Option(None, "--job", "-j", help="Only runs of this job"),  # noqa: UP007
    limit: int = typer.Option(50, "--limit", "-n", help="Maximum rows"),
    db: Path | None = typer.Option(None, "--db", "-d", help="SQLite database path"),  # noqa: UP007
    as_json: bool = typer.Option(False, "--json", help="Output as JSON"),
) -> None:
    """List completed runs, most recent first."""
    store = _open_store(db, get_settings())
    try:
        records = store.list_history(job, limit=limit)
    finally:
        store.close()

    if as_json:
        console.print_json(json.dumps([r.to_dict() for r in records], default=str))
        return

    if not records:
        console.print("[yellow]No history recorded[/yellow]")
        return

    table = Table(title="Run history")
    table.add_column("Job", style="cyan")
    table.add_column("Title")
    table.add_column("Platform")
    table.add_column("Start")
    table.add_column("End")
    table.add_column("Duration (s)", justify="right")
    for r in records:
        table.add_row(
            r.job_id,
            r.title,
            r.platform,
            _fmt(to_iso8601(r.start_time)),
            _fmt(to_iso8601(r.end_time)),
            str(r.duration_seconds),
        )
    console.print(table)


# ── config ───────────────────────────────────────────────────────────────


@app.command("config")
def config(
    format: str = typer.Option("table", "--format", "-f", help="Output format: table, json, env"),
) -> None:
    """Show the effective configuration."""
    settings = get_settings()

    if format == "json":
        console.print_json(settings.model_dump_json())
        return

    if format == "env":
        for key, value in sorted(settings.model_dump().items()):
            console.print(f"STREAMKEEPER_{key.upper()}={value}")
        return

    table = Table(title="Settings")
    table.add_column("Setting", style="cyan")
    table.add_column("Value")
    for key, value in settings.model_dump().items():
        table.add_row(key, str(value))
    console.print(table)


if __name__ == "__main__":
    app()
