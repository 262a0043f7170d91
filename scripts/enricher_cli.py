#!/usr/bin/env python3
"""Operator CLI for the bookmark enrichment workers."""

from __future__ import annotations

import asyncio
import logging
from datetime import timedelta
from pathlib import Path
from typing import Optional

import typer
from arq.worker import run_worker
from rich.console import Console
from rich.logging import RichHandler
from rich.table import Table

from enricher.queue import (
    ArqTransport,
    JobRuntime,
    JobTransport,
    QueueUnavailableError,
    get_redis_settings,
)
from enricher.schemas import MaintenanceJob, MaintenanceTask, SnapshotJob, SubscriptionTier
from enricher.settings import get_settings
from enricher.store import DeadLetterConfig, DeadLetterStore
from enricher.worker import WorkerSettings, enqueue_maintenance_job, enqueue_snapshot_job

console = Console()
cli = typer.Typer(help="Run and operate the bookmark enrichment workers.")
enqueue_cli = typer.Typer(help="Submit jobs to the enrichment queues.")
cli.add_typer(enqueue_cli, name="enqueue")
dead_cli = typer.Typer(help="Inspect and recover dead-lettered jobs.")
cli.add_typer(dead_cli, name="dead")


def _configure_logging(level: str) -> None:
    logging.basicConfig(
        level=level.upper(),
        format="%(message)s",
        datefmt="[%X]",
        handlers=[RichHandler(console=console, rich_tracebacks=True)],
    )


def _open_transport() -> JobTransport:
    return ArqTransport(get_redis_settings(get_settings().queue))


def _dead_letter_store(db_path: Optional[Path]) -> DeadLetterStore:
    path = db_path or get_settings().storage.dead_letter_db_path
    return DeadLetterStore(DeadLetterConfig(db_path=path))


def _report_submission(job_id: Optional[str]) -> None:
    if job_id is None:
        console.print("[red]Queue unavailable; job not submitted.[/]")
        raise typer.Exit(1)
    console.print(f"[green]Queued[/] {job_id}")


@cli.command()
def worker(
    log_level: Optional[str] = typer.Option(None, "--log-level", help="Override LOG_LEVEL."),
) -> None:
    """Run the Arq worker until interrupted."""

    _configure_logging(log_level or get_settings().telemetry.log_level)
    run_worker(WorkerSettings)  # type: ignore[arg-type]


@enqueue_cli.command("maintenance")
def enqueue_maintenance(
    task: MaintenanceTask = typer.Option(..., "--task", help="Scan to run."),
    user: Optional[str] = typer.Option(None, "--user", help="Limit the scan to one user."),
) -> None:
    """Queue a duplicate-detection or broken-link scan."""

    async def _submit() -> Optional[str]:
        runtime = JobRuntime(_open_transport())
        try:
            return await enqueue_maintenance_job(runtime, MaintenanceJob(type=task, user_id=user))
        finally:
            await runtime.close()

    _report_submission(asyncio.run(_submit()))


@enqueue_cli.command("snapshot")
def enqueue_snapshot(
    bookmark: str = typer.Option(..., "--bookmark", help="Bookmark id."),
    url: str = typer.Option(..., "--url", help="Page to capture."),
    user: str = typer.Option(..., "--user", help="Owning user id."),
    tier: SubscriptionTier = typer.Option(SubscriptionTier.PRO, "--tier", help="Owner's subscription tier."),
) -> None:
    """Queue a snapshot capture for one bookmark."""

    async def _submit() -> Optional[str]:
        runtime = JobRuntime(_open_transport())
        try:
            return await enqueue_snapshot_job(
                runtime,
                SnapshotJob(bookmark_id=bookmark, url=url, user_id=user, user_tier=tier),
            )
        finally:
            await runtime.close()

    _report_submission(asyncio.run(_submit()))


@dead_cli.command("list")
def dead_list(
    kind: Optional[str] = typer.Option(None, "--kind", help="Only show one job kind."),
    limit: int = typer.Option(50, min=1, help="Maximum records to show."),
    json_output: bool = typer.Option(False, "--json/--no-json", help="Emit JSON instead of a table."),
    db_path: Optional[Path] = typer.Option(None, "--db", help="Dead-letter database path."),
) -> None:
    """List dead-lettered jobs, newest first."""

    records = _dead_letter_store(db_path).list(kind=kind, limit=limit)
    if json_output:
        console.print_json(data=[record.model_dump(mode="json") for record in records])
        return
    if not records:
        console.print("[dim]No dead-lettered jobs.[/]")
        return
    table = Table("ID", "Job", "Kind", "Attempts", "Failed at", "Error", title="Dead letters")
    for record in records:
        table.add_row(
            str(record.id),
            record.job_id,
            record.kind,
            str(record.attempts),
            record.failed_at.isoformat(timespec="seconds"),
            record.error,
        )
    console.print(table)


@dead_cli.command("requeue")
def dead_requeue(
    record_id: int = typer.Argument(..., help="Dead-letter record id."),
    db_path: Optional[Path] = typer.Option(None, "--db", help="Dead-letter database path."),
) -> None:
    """Resubmit a dead-lettered job with its original payload."""

    store = _dead_letter_store(db_path)

    async def _requeue() -> str:
        runtime = JobRuntime(_open_transport(), dead_letters=store)
        try:
            return await runtime.requeue_dead_letter(record_id)
        finally:
            await runtime.close()

    try:
        job_id = asyncio.run(_requeue())
    except KeyError:
        console.print(f"[red]No dead-letter record {record_id}[/]")
        raise typer.Exit(1)
    except QueueUnavailableError as exc:
        console.print(f"[red]Queue unavailable[/]: {exc}")
        raise typer.Exit(1)
    console.print(f"[green]Requeued[/] {job_id}")


@dead_cli.command("purge")
def dead_purge(
    days: int = typer.Option(7, "--days", min=0, help="Delete records older than this many days."),
    db_path: Optional[Path] = typer.Option(None, "--db", help="Dead-letter database path."),
) -> None:
    """Delete old dead-letter records."""

    removed = _dead_letter_store(db_path).purge(older_than=timedelta(days=days))
    console.print(f"Purged {removed} dead-letter record(s)")


if __name__ == "__main__":
    cli()
