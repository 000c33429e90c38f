from __future__ import annotations

import asyncio
import functools
import logging
import signal
from typing import Any, Awaitable, Callable, Dict, Iterable, Optional

from apscheduler.schedulers.asyncio import AsyncIOScheduler
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from careplan_queue.database import create_session_maker, get_session
from careplan_queue.errors import (
    InvalidTransitionError,
    JobNotFoundError,
    JobValidationError,
    StoreUnavailableError,
)
from careplan_queue.models import RecommendationJob
from careplan_queue.queues import maintenance, store
from careplan_queue.recommender import create_recommender_client, request_recommendation
from careplan_queue.schemas.jobs import JobStatus
from careplan_queue.settings import Settings

logger = logging.getLogger(__name__)

Processor = Callable[[RecommendationJob], Awaitable[Dict[str, Any]]]


async def _report_failure(
    session_maker: async_sessionmaker[AsyncSession],
    job: RecommendationJob,
    error: str,
    *,
    settings: Settings,
) -> None:
    async with get_session(session_maker) as session:
        try:
            failed = await store.update_job_status(
                session,
                job.job_id,
                JobStatus.FAILED,
                error_message=error,
                expected_attempt=job.attempt_count,
            )
        except (InvalidTransitionError, JobNotFoundError) as e:
            logger.warning("Not recording failure for job %s: %s", job.job_id, e)
            return

        if failed.attempt_count < settings.max_attempts:
            await store.retry_failed_job(session, job.job_id)
            logger.info(
                "Retrying job %s (attempt %d of %d failed)", job.job_id, failed.attempt_count, settings.max_attempts
            )
        else:
            logger.error("Job %s failed after %d attempts: %s", job.job_id, failed.attempt_count, error)


async def process_next_job(
    session_maker: async_sessionmaker[AsyncSession],
    processor: Processor,
    *,
    settings: Settings,
    job_types: Optional[Iterable[str]] = None,
) -> bool:
    """Claim one job, run it and report the outcome.

    The claim and the report use separate short sessions so no transaction is
    held open while the processor runs. Returns whether a job was claimed.
    """
    async with get_session(session_maker) as session:
        job = await store.get_next_pending_job(session, job_types=job_types)
    if job is None:
        return False

    logger.info("Processing job %s (%s) for patient %s", job.job_id, job.job_type, job.patient_id)
    try:
        results = await processor(job)
    except Exception as exc:
        logger.exception("Job %s failed on attempt %d", job.job_id, job.attempt_count)
        await _report_failure(session_maker, job, f"{type(exc).__name__}: {exc}", settings=settings)
        return True

    try:
        async with get_session(session_maker) as session:
            await store.update_job_results(session, job.job_id, results, expected_attempt=job.attempt_count)
    except (InvalidTransitionError, JobNotFoundError) as e:
        # Cancelled, requeued or pruned while running; the late results are dropped.
        logger.warning("Discarding results for job %s: %s", job.job_id, e)
    except JobValidationError as e:
        await _report_failure(session_maker, job, str(e), settings=settings)
    return True


async def _poll_loop(
    name: str,
    session_maker: async_sessionmaker[AsyncSession],
    processor: Processor,
    *,
    settings: Settings,
    stop_event: asyncio.Event,
    job_types: Optional[Iterable[str]],
) -> None:
    delay = settings.poll_interval
    while not stop_event.is_set():
        try:
            claimed = await process_next_job(session_maker, processor, settings=settings, job_types=job_types)
        except StoreUnavailableError as e:
            logger.error("%s: job store unavailable: %s", name, e)
            claimed = False
        except Exception:
            logger.exception("%s: polling error", name)
            claimed = False

        if claimed:
            delay = settings.poll_interval
            continue

        try:
            await asyncio.wait_for(stop_event.wait(), timeout=delay)
        except asyncio.TimeoutError:
            pass
        delay = min(delay * 2, settings.max_poll_interval)
    logger.info("%s stopped", name)


async def run_worker(
    session_maker: async_sessionmaker[AsyncSession],
    processor: Processor,
    *,
    settings: Settings,
    stop_event: asyncio.Event,
    job_types: Optional[Iterable[str]] = None,
) -> None:
    """Run ``settings.worker_concurrency`` poll loops until ``stop_event`` is set."""
    kinds = list(job_types) if job_types else None
    loops = [
        _poll_loop(
            f"worker-{index}",
            session_maker,
            processor,
            settings=settings,
            stop_event=stop_event,
            job_types=kinds,
        )
        for index in range(settings.worker_concurrency)
    ]
    await asyncio.gather(*loops)


def schedule_maintenance(
    scheduler: AsyncIOScheduler,
    session_maker: async_sessionmaker[AsyncSession],
    *,
    settings: Settings,
) -> None:
    """Register the staleness sweep and retention cleanup on ``scheduler``."""

    async def sweep() -> None:
        async with get_session(session_maker) as session:
            await maintenance.requeue_stale_jobs(session, timeout_seconds=settings.stale_job_timeout)

    async def cleanup() -> None:
        async with get_session(session_maker) as session:
            await maintenance.cleanup_old_jobs(session, older_than_days=settings.retention_days)

    scheduler.add_job(sweep, "interval", seconds=settings.sweep_interval, id="stale-sweep", coalesce=True)
    scheduler.add_job(cleanup, "interval", seconds=settings.cleanup_interval, id="retention-cleanup", coalesce=True)


async def serve(
    settings: Settings,
    *,
    job_types: Optional[Iterable[str]] = None,
    run_maintenance: bool = True,
) -> None:
    engine, session_maker = create_session_maker(settings.database_url)
    stop_event = asyncio.Event()

    loop = asyncio.get_running_loop()
    for sig in (signal.SIGINT, signal.SIGTERM):
        loop.add_signal_handler(sig, stop_event.set)

    scheduler = AsyncIOScheduler()
    if run_maintenance:
        schedule_maintenance(scheduler, session_maker, settings=settings)
        scheduler.start()

    client = create_recommender_client(settings)
    processor = functools.partial(request_recommendation, client)
    logger.info(
        "Recommendation worker starting - concurrency=%d max_attempts=%d",
        settings.worker_concurrency,
        settings.max_attempts,
    )
    try:
        await run_worker(session_maker, processor, settings=settings, stop_event=stop_event, job_types=job_types)
    finally:
        if scheduler.running:
            scheduler.shutdown(wait=False)
        await client.aclose()
        await engine.dispose()
        logger.info("Recommendation worker shutdown completed")


def main() -> None:
    settings = Settings()
    logging.basicConfig(level=settings.log_level, format=settings.log_format)
    asyncio.run(serve(settings))


if __name__ == "__main__":
    main()
