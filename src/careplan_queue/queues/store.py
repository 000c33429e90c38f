import logging
from typing import Any, Dict, Iterable, List, Optional, Union

from sqlalchemy import update
from sqlalchemy.ext.asyncio import AsyncSession
from sqlmodel import col, select

from careplan_queue.database import current_timestamp
from careplan_queue.errors import InvalidTransitionError, JobNotFoundError, JobValidationError
from careplan_queue.models import RecommendationJob
from careplan_queue.schemas.jobs import (
    ACTIVE_STATUSES,
    ALLOWED_TRANSITIONS,
    TERMINAL_STATUSES,
    JobPriority,
    JobStatus,
    JobType,
)

logger = logging.getLogger(__name__)

MAX_LIST_LIMIT = 500
CLAIM_CANDIDATES = 5


def _claim_order() -> tuple[Any, ...]:
    return (
        col(RecommendationJob.priority).desc(),
        col(RecommendationJob.created_at).asc(),
        col(RecommendationJob.id).asc(),
    )


def _cap(limit: Optional[int]) -> int:
    if limit is None or limit <= 0:
        return MAX_LIST_LIMIT
    return min(limit, MAX_LIST_LIMIT)


def _now(now: Optional[int]) -> int:
    return now if now is not None else current_timestamp()


def coerce_job_type(job_type: Union[JobType, str]) -> JobType:
    if isinstance(job_type, JobType):
        return job_type
    try:
        return JobType(str(job_type).strip().upper())
    except ValueError:
        raise JobValidationError(f"Unknown job type: {job_type}") from None


def coerce_priority(priority: Union[JobPriority, int, str]) -> JobPriority:
    if isinstance(priority, str):
        try:
            return JobPriority[priority.strip().upper()]
        except KeyError:
            raise JobValidationError(f"Unknown priority: {priority}") from None
    try:
        return JobPriority(priority)
    except ValueError:
        raise JobValidationError(f"Unknown priority: {priority}") from None


def coerce_status(status: Union[JobStatus, str]) -> JobStatus:
    if isinstance(status, JobStatus):
        return status
    try:
        return JobStatus(str(status).strip().lower())
    except ValueError:
        raise JobValidationError(f"Unknown job status: {status}") from None


async def _fetch(session: AsyncSession, job_id: str) -> Optional[RecommendationJob]:
    # Bulk updates below skip session synchronization, so always reload the row.
    stmt = (
        select(RecommendationJob)
        .where(col(RecommendationJob.job_id) == job_id)
        .limit(1)
        .execution_options(populate_existing=True)
    )
    result = await session.execute(stmt)
    return result.scalar_one_or_none()


async def _require(session: AsyncSession, job_id: str) -> RecommendationJob:
    job = await _fetch(session, job_id)
    if job is None:
        raise JobNotFoundError(job_id)
    return job


async def _guarded_update(
    session: AsyncSession,
    job_pk: int,
    expected: Iterable[JobStatus],
    values: Dict[str, Any],
    expected_attempt: Optional[int] = None,
) -> bool:
    """Apply ``values`` only if the row is still in one of the ``expected`` statuses."""
    stmt = update(RecommendationJob).where(
        col(RecommendationJob.id) == job_pk,
        col(RecommendationJob.status).in_([status.value for status in expected]),
    )
    if expected_attempt is not None:
        stmt = stmt.where(col(RecommendationJob.attempt_count) == expected_attempt)
    result = await session.execute(stmt.values(**values).execution_options(synchronize_session=False))
    return result.rowcount == 1  # type: ignore[attr-defined]


async def _transition_rejected(session: AsyncSession, job_id: str, requested: JobStatus) -> InvalidTransitionError:
    latest = await _fetch(session, job_id)
    if latest is None:
        raise JobNotFoundError(job_id)
    return InvalidTransitionError(job_id, latest.status, requested.value)


async def create_job(
    session: AsyncSession,
    *,
    session_id: str,
    patient_id: str,
    job_type: Union[JobType, str],
    priority: Union[JobPriority, int, str] = JobPriority.NORMAL,
    input_data: Optional[Dict[str, Any]] = None,
    now: Optional[int] = None,
) -> RecommendationJob:
    """Queue a new recommendation job in ``pending``."""
    if not session_id or not str(session_id).strip():
        raise JobValidationError("session_id is required")
    if not patient_id or not str(patient_id).strip():
        raise JobValidationError("patient_id is required")
    kind = coerce_job_type(job_type)
    urgency = coerce_priority(priority)

    timestamp = _now(now)
    job = RecommendationJob(
        session_id=session_id,
        patient_id=patient_id,
        job_type=kind.value,
        priority=urgency.value,
        status=JobStatus.PENDING.value,
        input_data=input_data,
        attempt_count=0,
        created_at=timestamp,
        updated_at=timestamp,
    )
    session.add(job)
    await session.flush()
    logger.info(f"Job {job.job_id} of type {kind.value} queued for session {session_id} ({urgency.name})")
    return job


async def get_job_by_id(session: AsyncSession, job_id: str) -> Optional[RecommendationJob]:
    return await _fetch(session, job_id)


async def get_next_pending_job(
    session: AsyncSession,
    *,
    job_types: Optional[Iterable[Union[JobType, str]]] = None,
    now: Optional[int] = None,
) -> Optional[RecommendationJob]:
    """Claim the highest-priority, oldest pending job.

    The claim is a compare-and-swap on ``status``: the candidate row is only
    moved to ``processing`` if it is still ``pending`` when the update runs.
    A worker that loses the race moves on to the next candidate. Returns
    ``None`` when nothing is pending, or when every candidate examined was
    taken by a concurrent worker first.
    """
    kinds = [coerce_job_type(job_type).value for job_type in job_types] if job_types else None
    timestamp = _now(now)
    lost: List[int] = []

    for _ in range(CLAIM_CANDIDATES):
        stmt = select(col(RecommendationJob.id)).where(col(RecommendationJob.status) == JobStatus.PENDING.value)
        if kinds:
            stmt = stmt.where(col(RecommendationJob.job_type).in_(kinds))
        if lost:
            stmt = stmt.where(col(RecommendationJob.id).not_in(lost))
        stmt = stmt.order_by(*_claim_order()).limit(1).with_for_update(skip_locked=True)

        result = await session.execute(stmt)
        job_pk = result.scalar_one_or_none()
        if job_pk is None:
            return None

        claimed = await _guarded_update(
            session,
            job_pk,
            [JobStatus.PENDING],
            {
                "status": JobStatus.PROCESSING.value,
                "started_at": timestamp,
                "updated_at": timestamp,
                "attempt_count": col(RecommendationJob.attempt_count) + 1,
            },
        )
        if claimed:
            job = await session.get(RecommendationJob, job_pk, populate_existing=True)
            if job is not None:
                logger.info(f"Claimed job {job.job_id} (attempt {job.attempt_count})")
            return job
        lost.append(job_pk)

    logger.debug(f"Lost claim race on {len(lost)} candidate jobs")
    return None


async def get_jobs_by_session(
    session: AsyncSession, session_id: str, *, limit: Optional[int] = None
) -> List[RecommendationJob]:
    stmt = (
        select(RecommendationJob)
        .where(col(RecommendationJob.session_id) == session_id)
        .order_by(col(RecommendationJob.created_at).desc(), col(RecommendationJob.id).desc())
        .limit(_cap(limit))
        .execution_options(populate_existing=True)
    )
    result = await session.execute(stmt)
    return list(result.scalars().all())


async def get_jobs_by_patient(
    session: AsyncSession,
    patient_id: str,
    *,
    status: Optional[Union[JobStatus, str]] = None,
    limit: Optional[int] = 50,
) -> List[RecommendationJob]:
    stmt = select(RecommendationJob).where(col(RecommendationJob.patient_id) == patient_id)
    if status:
        stmt = stmt.where(col(RecommendationJob.status) == coerce_status(status).value)
    stmt = (
        stmt.order_by(col(RecommendationJob.created_at).desc(), col(RecommendationJob.id).desc())
        .limit(_cap(limit))
        .execution_options(populate_existing=True)
    )
    result = await session.execute(stmt)
    return list(result.scalars().all())


async def update_job_status(
    session: AsyncSession,
    job_id: str,
    status: Union[JobStatus, str],
    *,
    error_message: Optional[str] = None,
    expected_attempt: Optional[int] = None,
    now: Optional[int] = None,
) -> RecommendationJob:
    """Move a job to ``status`` if the state machine allows it.

    ``completed`` is reserved for ``update_job_results`` and ``failed -> pending``
    for ``retry_failed_job``. Passing ``expected_attempt`` additionally requires
    the row to still carry that attempt count, so a worker whose claim was
    requeued by the staleness sweep cannot report over a newer claim.
    """
    target = coerce_status(status)
    job = await _require(session, job_id)
    current = JobStatus(job.status)

    if target == JobStatus.COMPLETED or current == JobStatus.FAILED or target not in ALLOWED_TRANSITIONS[current]:
        raise InvalidTransitionError(job_id, current.value, target.value)
    if target == JobStatus.FAILED and not (error_message and error_message.strip()):
        raise JobValidationError("error_message is required when marking a job failed")

    timestamp = _now(now)
    values: Dict[str, Any] = {
        "status": target.value,
        "updated_at": timestamp,
        "error_message": error_message if target == JobStatus.FAILED else None,
    }
    if target == JobStatus.PROCESSING:
        values["started_at"] = timestamp
        values["attempt_count"] = col(RecommendationJob.attempt_count) + 1
    if target in TERMINAL_STATUSES:
        values["completed_at"] = timestamp

    assert job.id is not None
    if not await _guarded_update(session, job.id, [current], values, expected_attempt):
        raise await _transition_rejected(session, job_id, target)

    logger.info(f"Job {job_id} moved from {current.value} to {target.value}")
    return await _require(session, job_id)


async def update_job_results(
    session: AsyncSession,
    job_id: str,
    results: Dict[str, Any],
    *,
    expected_attempt: Optional[int] = None,
    now: Optional[int] = None,
) -> RecommendationJob:
    """Store results and complete a ``processing`` job."""
    if results is None:
        raise JobValidationError("results are required to complete a job")
    job = await _require(session, job_id)

    timestamp = _now(now)
    assert job.id is not None
    completed = await _guarded_update(
        session,
        job.id,
        [JobStatus.PROCESSING],
        {
            "status": JobStatus.COMPLETED.value,
            "results": results,
            "error_message": None,
            "completed_at": timestamp,
            "updated_at": timestamp,
        },
        expected_attempt,
    )
    if not completed:
        raise await _transition_rejected(session, job_id, JobStatus.COMPLETED)

    logger.info(f"Job {job_id} completed")
    return await _require(session, job_id)


async def cancel_job(session: AsyncSession, job_id: str, *, now: Optional[int] = None) -> bool:
    """Cancel a pending or processing job. Returns False if it had already finished."""
    job = await _require(session, job_id)
    if JobStatus(job.status) in TERMINAL_STATUSES:
        return False

    timestamp = _now(now)
    assert job.id is not None
    cancelled = await _guarded_update(
        session,
        job.id,
        ACTIVE_STATUSES,
        {
            "status": JobStatus.CANCELLED.value,
            "error_message": None,
            "completed_at": timestamp,
            "updated_at": timestamp,
        },
    )
    if cancelled:
        logger.info(f"Job {job_id} cancelled")
    return cancelled


async def cancel_jobs_by_session(session: AsyncSession, session_id: str, *, now: Optional[int] = None) -> int:
    timestamp = _now(now)
    stmt = (
        update(RecommendationJob)
        .where(
            col(RecommendationJob.session_id) == session_id,
            col(RecommendationJob.status).in_([status.value for status in ACTIVE_STATUSES]),
        )
        .values(
            status=JobStatus.CANCELLED.value,
            error_message=None,
            completed_at=timestamp,
            updated_at=timestamp,
        )
        .execution_options(synchronize_session=False)
    )
    result = await session.execute(stmt)
    count: int = result.rowcount  # type: ignore[attr-defined]
    if count:
        logger.info(f"Cancelled {count} jobs for session {session_id}")
    return count


async def get_job_queue(session: AsyncSession, *, limit: Optional[int] = 10) -> List[RecommendationJob]:
    """Pending jobs in the order workers will claim them."""
    stmt = (
        select(RecommendationJob)
        .where(col(RecommendationJob.status) == JobStatus.PENDING.value)
        .order_by(*_claim_order())
        .limit(_cap(limit))
        .execution_options(populate_existing=True)
    )
    result = await session.execute(stmt)
    return list(result.scalars().all())


async def retry_failed_job(session: AsyncSession, job_id: str, *, now: Optional[int] = None) -> RecommendationJob:
    """Requeue a failed job. ``attempt_count`` is kept so callers can cap retries."""
    job = await _require(session, job_id)

    timestamp = _now(now)
    assert job.id is not None
    retried = await _guarded_update(
        session,
        job.id,
        [JobStatus.FAILED],
        {
            "status": JobStatus.PENDING.value,
            "error_message": None,
            "started_at": None,
            "completed_at": None,
            "updated_at": timestamp,
        },
    )
    if not retried:
        raise await _transition_rejected(session, job_id, JobStatus.PENDING)

    logger.info(f"Job {job_id} requeued after failure (attempts so far: {job.attempt_count})")
    return await _require(session, job_id)
