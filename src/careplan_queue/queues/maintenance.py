"""Queue health statistics, retention cleanup and the staleness sweep."""

import logging
from typing import Optional

from sqlalchemy import delete, func, update
from sqlalchemy.ext.asyncio import AsyncSession
from sqlmodel import col, select

from careplan_queue.database import current_timestamp
from careplan_queue.errors import JobValidationError
from careplan_queue.models import RecommendationJob
from careplan_queue.schemas.jobs import TERMINAL_STATUSES, JobStats, JobStatus

logger = logging.getLogger(__name__)

SECONDS_PER_DAY = 86_400
DEFAULT_RETENTION_DAYS = 30


async def get_job_stats(session: AsyncSession) -> JobStats:
    total = await session.execute(select(func.count()).select_from(RecommendationJob))
    by_status = await session.execute(
        select(col(RecommendationJob.status), func.count()).group_by(col(RecommendationJob.status))
    )
    by_type = await session.execute(
        select(col(RecommendationJob.job_type), func.count()).group_by(col(RecommendationJob.job_type))
    )
    # Jobs never claimed have no started_at and stay out of the average.
    avg_seconds = await session.execute(
        select(func.avg(col(RecommendationJob.completed_at) - col(RecommendationJob.started_at))).where(
            col(RecommendationJob.started_at).is_not(None),
            col(RecommendationJob.completed_at).is_not(None),
        )
    )
    avg = avg_seconds.scalar_one_or_none()

    return JobStats(
        total=int(total.scalar_one()),
        by_status={status: int(count) for status, count in by_status.all()},
        by_type={job_type: int(count) for job_type, count in by_type.all()},
        avg_processing_time=float(avg) if avg is not None else None,
    )


async def cleanup_old_jobs(
    session: AsyncSession,
    *,
    older_than_days: int = DEFAULT_RETENTION_DAYS,
    now: Optional[int] = None,
) -> int:
    """Delete terminal jobs that finished before the retention cutoff.

    Pending and processing jobs are never deleted, however old.
    """
    if older_than_days < 0:
        raise JobValidationError("older_than_days must not be negative")
    timestamp = now if now is not None else current_timestamp()
    cutoff = timestamp - older_than_days * SECONDS_PER_DAY

    finished_at = func.coalesce(col(RecommendationJob.completed_at), col(RecommendationJob.updated_at))
    stmt = (
        delete(RecommendationJob)
        .where(
            col(RecommendationJob.status).in_([status.value for status in TERMINAL_STATUSES]),
            finished_at < cutoff,
        )
        .execution_options(synchronize_session=False)
    )
    result = await session.execute(stmt)
    deleted: int = result.rowcount  # type: ignore[attr-defined]
    logger.info(f"Cleaned up {deleted} jobs finished more than {older_than_days} days ago")
    return deleted


async def requeue_stale_jobs(
    session: AsyncSession,
    *,
    timeout_seconds: int,
    now: Optional[int] = None,
) -> int:
    """Return jobs stuck in processing past ``timeout_seconds`` to pending.

    Covers workers that crashed between claim and report. The attempt count is
    left alone; the next claim increments it as usual.
    """
    if timeout_seconds <= 0:
        raise JobValidationError("timeout_seconds must be positive")
    timestamp = now if now is not None else current_timestamp()

    stmt = (
        update(RecommendationJob)
        .where(
            col(RecommendationJob.status) == JobStatus.PROCESSING.value,
            col(RecommendationJob.started_at) < timestamp - timeout_seconds,
        )
        .values(status=JobStatus.PENDING.value, started_at=None, updated_at=timestamp)
        .execution_options(synchronize_session=False)
    )
    result = await session.execute(stmt)
    requeued: int = result.rowcount  # type: ignore[attr-defined]
    if requeued:
        logger.warning(f"Requeued {requeued} jobs stuck in processing for over {timeout_seconds}s")
    return requeued
