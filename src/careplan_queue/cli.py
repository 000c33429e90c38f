"""careplan-queue CLI - operate the recommendation job queue."""

import asyncio
import logging
from datetime import datetime
from pathlib import Path
from typing import Any, Awaitable, Callable, List, Optional, TypeVar

import typer
from rich.console import Console
from rich.markup import escape
from rich.table import Table
from sqlalchemy.engine import make_url
from sqlalchemy.ext.asyncio import AsyncSession

from alembic import command
from alembic.config import Config
from careplan_queue.database import create_session_maker, get_session
from careplan_queue.errors import QueueError
from careplan_queue.queues import maintenance, store
from careplan_queue.schemas.jobs import JobResponse
from careplan_queue.settings import Settings
from careplan_queue.worker import serve

T = TypeVar("T")

app = typer.Typer(
    help="Care-plan recommendation job queue",
    no_args_is_help=True,
)
console = Console()

DATABASE_URL_OPTION = typer.Option(None, "--database-url", help="Overrides CAREPLAN_QUEUE_DATABASE_URL")


def _settings(database_url: Optional[str]) -> Settings:
    settings = Settings()
    if database_url:
        settings = settings.model_copy(update={"database_url": database_url})
    logging.basicConfig(level=settings.log_level, format=settings.log_format)
    return settings


def _run(settings: Settings, operation: Callable[[AsyncSession], Awaitable[T]], read_only: bool = False) -> T:
    async def _execute() -> T:
        engine, session_maker = create_session_maker(settings.database_url)
        try:
            async with get_session(session_maker, read_only=read_only) as session:
                return await operation(session)
        finally:
            await engine.dispose()

    try:
        return asyncio.run(_execute())
    except QueueError as e:
        console.print(f"[red]Error: {escape(str(e))}[/red]")
        raise typer.Exit(1)


def _format_time(timestamp: Optional[int]) -> str:
    if timestamp is None:
        return "-"
    return datetime.fromtimestamp(timestamp).strftime("%Y-%m-%d %H:%M:%S")


@app.command()
def migrate(
    database_url: Optional[str] = DATABASE_URL_OPTION,
    config_file: Path = typer.Option(Path("alembic.ini"), "--config", help="Alembic config file"),
) -> None:
    """Create or upgrade the job store schema."""
    settings = _settings(database_url)
    url = make_url(settings.database_url)
    if url.get_backend_name() == "sqlite" and url.database and url.database != ":memory:":
        Path(url.database).parent.mkdir(parents=True, exist_ok=True)

    alembic_cfg = Config(str(config_file))
    alembic_cfg.set_main_option("sqlalchemy.url", settings.database_url)
    command.upgrade(alembic_cfg, "head")
    console.print("[green]Job store is up to date.[/green]")


@app.command()
def worker(
    database_url: Optional[str] = DATABASE_URL_OPTION,
    concurrency: Optional[int] = typer.Option(None, "--concurrency", "-c", help="Concurrent poll loops"),
    job_type: Optional[List[str]] = typer.Option(None, "--job-type", help="Only claim these job types"),
    maintenance_enabled: bool = typer.Option(
        True, "--maintenance/--no-maintenance", help="Run the staleness sweep and retention cleanup"
    ),
) -> None:
    """Run a recommendation worker until interrupted."""
    settings = _settings(database_url)
    if concurrency:
        settings = settings.model_copy(update={"worker_concurrency": concurrency})
    asyncio.run(serve(settings, job_types=job_type or None, run_maintenance=maintenance_enabled))


@app.command()
def stats(database_url: Optional[str] = DATABASE_URL_OPTION) -> None:
    """Show queue health."""
    settings = _settings(database_url)
    job_stats = _run(settings, maintenance.get_job_stats, read_only=True)

    console.print(f"Total jobs: {job_stats.total}")
    if job_stats.avg_processing_time is None:
        console.print("Average processing time: n/a")
    else:
        console.print(f"Average processing time: {job_stats.avg_processing_time:.1f}s")

    table = Table(title="Jobs by status")
    table.add_column("Status", style="yellow")
    table.add_column("Count", justify="right")
    for status, count in sorted(job_stats.by_status.items()):
        table.add_row(status, str(count))
    console.print(table)

    table = Table(title="Jobs by type")
    table.add_column("Type", style="cyan")
    table.add_column("Count", justify="right")
    for job_type, count in sorted(job_stats.by_type.items()):
        table.add_row(job_type, str(count))
    console.print(table)


@app.command()
def queue(
    database_url: Optional[str] = DATABASE_URL_OPTION,
    limit: int = typer.Option(10, "--limit", "-n", help="Number of pending jobs to show"),
) -> None:
    """List pending jobs in claim order."""
    settings = _settings(database_url)

    async def _list(session: AsyncSession) -> List[Any]:
        return await store.get_job_queue(session, limit=limit)

    jobs = _run(settings, _list, read_only=True)
    if not jobs:
        console.print("[green]No pending jobs.[/green]")
        return

    table = Table(title="Pending jobs")
    table.add_column("Job ID", style="cyan", no_wrap=True)
    table.add_column("Type", style="white")
    table.add_column("Priority", justify="right")
    table.add_column("Attempts", justify="right")
    table.add_column("Created", style="green")
    for job in jobs:
        table.add_row(job.job_id, job.job_type, str(job.priority), str(job.attempt_count), _format_time(job.created_at))
    console.print(table)


@app.command()
def show(job_id: str, database_url: Optional[str] = DATABASE_URL_OPTION) -> None:
    """Show a single job as JSON."""
    settings = _settings(database_url)

    async def _get(session: AsyncSession) -> Optional[JobResponse]:
        job = await store.get_job_by_id(session, job_id)
        return JobResponse.model_validate(job) if job else None

    response = _run(settings, _get, read_only=True)
    if response is None:
        console.print(f"[red]Job {escape(job_id)} not found[/red]")
        raise typer.Exit(1)
    console.print_json(response.model_dump_json())


@app.command()
def cancel(job_id: str, database_url: Optional[str] = DATABASE_URL_OPTION) -> None:
    """Cancel a pending or processing job."""
    settings = _settings(database_url)

    async def _cancel(session: AsyncSession) -> bool:
        return await store.cancel_job(session, job_id)

    if _run(settings, _cancel):
        console.print(f"[yellow]Cancelled {escape(job_id)}[/yellow]")
    else:
        console.print(f"Job {escape(job_id)} had already finished; nothing to cancel")


@app.command("cancel-session")
def cancel_session(session_id: str, database_url: Optional[str] = DATABASE_URL_OPTION) -> None:
    """Cancel every unfinished job for a clinical session."""
    settings = _settings(database_url)

    async def _cancel(session: AsyncSession) -> int:
        return await store.cancel_jobs_by_session(session, session_id)

    count = _run(settings, _cancel)
    console.print(f"Cancelled {count} jobs for session {escape(session_id)}")


@app.command()
def retry(job_id: str, database_url: Optional[str] = DATABASE_URL_OPTION) -> None:
    """Requeue a failed job."""
    settings = _settings(database_url)

    async def _retry(session: AsyncSession) -> int:
        job = await store.retry_failed_job(session, job_id)
        return job.attempt_count

    attempts = _run(settings, _retry)
    console.print(f"[green]Requeued {escape(job_id)}[/green] ({attempts} previous attempts)")


@app.command()
def cleanup(
    database_url: Optional[str] = DATABASE_URL_OPTION,
    older_than_days: Optional[int] = typer.Option(None, "--older-than-days", help="Retention window in days"),
) -> None:
    """Delete finished jobs older than the retention window."""
    settings = _settings(database_url)
    days = older_than_days if older_than_days is not None else settings.retention_days

    async def _cleanup(session: AsyncSession) -> int:
        return await maintenance.cleanup_old_jobs(session, older_than_days=days)

    deleted = _run(settings, _cleanup)
    console.print(f"Deleted {deleted} jobs finished more than {days} days ago")


@app.command()
def sweep(
    database_url: Optional[str] = DATABASE_URL_OPTION,
    timeout: Optional[int] = typer.Option(None, "--timeout", help="Seconds before a processing job counts as stale"),
) -> None:
    """Requeue jobs stuck in processing after a worker crash."""
    settings = _settings(database_url)
    timeout_seconds = timeout if timeout is not None else settings.stale_job_timeout

    async def _sweep(session: AsyncSession) -> int:
        return await maintenance.requeue_stale_jobs(session, timeout_seconds=timeout_seconds)

    requeued = _run(settings, _sweep)
    console.print(f"Requeued {requeued} stale jobs")


def main() -> None:
    """Main entry point for the CLI."""
    app()


if __name__ == "__main__":
    main()
