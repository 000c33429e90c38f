# mypy: ignore-errors

import pytest

from careplan_queue.errors import InvalidTransitionError, JobNotFoundError, JobValidationError
from careplan_queue.queues import maintenance, store
from careplan_queue.schemas.jobs import JobPriority, JobStatus, JobType

NOW = 1_760_000_000


async def _create(session, **overrides):
    fields = {
        "session_id": "s1",
        "patient_id": "p1",
        "job_type": JobType.GENERATE_RECOMMENDATION,
        "now": NOW,
    }
    fields.update(overrides)
    return await store.create_job(session, **fields)


@pytest.mark.asyncio
async def test_create_job_starts_pending(session) -> None:
    job = await _create(session, input_data={"conditions": ["E11.9"]})

    assert job.status == JobStatus.PENDING.value
    assert job.attempt_count == 0
    assert job.results is None
    assert job.error_message is None
    assert job.priority == JobPriority.NORMAL
    assert job.input_data == {"conditions": ["E11.9"]}
    assert job.created_at == NOW
    assert job.updated_at == NOW
    assert job.job_id


@pytest.mark.asyncio
async def test_create_job_accepts_priority_and_type_names(session) -> None:
    job = await _create(session, job_type="refresh_recommendation", priority="high")

    assert job.job_type == "REFRESH_RECOMMENDATION"
    assert job.priority == JobPriority.HIGH.value


@pytest.mark.asyncio
@pytest.mark.parametrize(
    "overrides",
    [
        {"session_id": ""},
        {"patient_id": None},
        {"patient_id": "   "},
        {"job_type": "NOT_A_JOB"},
        {"priority": "CRITICAL"},
        {"priority": 9},
    ],
)
async def test_create_job_rejects_invalid_input_without_writing(session, overrides) -> None:
    with pytest.raises(JobValidationError):
        await _create(session, **overrides)

    stats = await maintenance.get_job_stats(session)
    assert stats.total == 0


@pytest.mark.asyncio
async def test_get_job_by_id_missing_returns_none(session) -> None:
    assert await store.get_job_by_id(session, "missing") is None


@pytest.mark.asyncio
async def test_claim_complete_scenario(session) -> None:
    job = await _create(session, priority="HIGH")

    claimed = await store.get_next_pending_job(session, now=NOW + 5)
    assert claimed is not None
    assert claimed.job_id == job.job_id
    assert claimed.status == JobStatus.PROCESSING.value
    assert claimed.attempt_count == 1
    assert claimed.started_at == NOW + 5

    results = {"items": [{"template_id": "t-1", "score": 0.92}]}
    await store.update_job_results(session, job.job_id, results, now=NOW + 20)

    finished = await store.get_job_by_id(session, job.job_id)
    assert finished.status == JobStatus.COMPLETED.value
    assert finished.results == results
    assert finished.completed_at == NOW + 20
    assert finished.updated_at == NOW + 20
    assert finished.error_message is None


@pytest.mark.asyncio
async def test_claim_prefers_priority_over_age(session) -> None:
    low = await _create(session, priority=JobPriority.LOW, now=NOW)
    urgent = await _create(session, priority=JobPriority.URGENT, now=NOW + 10)

    first = await store.get_next_pending_job(session, now=NOW + 20)
    second = await store.get_next_pending_job(session, now=NOW + 20)

    assert first.job_id == urgent.job_id
    assert second.job_id == low.job_id


@pytest.mark.asyncio
async def test_claim_is_fifo_within_priority(session) -> None:
    older = await _create(session, now=NOW)
    same_second = await _create(session, now=NOW)
    newer = await _create(session, now=NOW + 1)

    claimed = [await store.get_next_pending_job(session, now=NOW + 2) for _ in range(3)]

    assert [job.job_id for job in claimed] == [older.job_id, same_second.job_id, newer.job_id]


@pytest.mark.asyncio
async def test_claim_with_nothing_pending_returns_none(session) -> None:
    assert await store.get_next_pending_job(session) is None

    job = await _create(session)
    await store.cancel_job(session, job.job_id, now=NOW + 1)

    assert await store.get_next_pending_job(session) is None


@pytest.mark.asyncio
async def test_claim_filters_by_job_type(session) -> None:
    await _create(session, job_type=JobType.GENERATE_RECOMMENDATION, priority="URGENT")
    review = await _create(session, job_type=JobType.PERIODIC_REVIEW, priority="LOW")

    claimed = await store.get_next_pending_job(session, job_types=["PERIODIC_REVIEW"])

    assert claimed.job_id == review.job_id


@pytest.mark.asyncio
async def test_claimed_job_is_not_returned_again_until_retried(session) -> None:
    job = await _create(session)

    first = await store.get_next_pending_job(session, now=NOW + 1)
    assert first.job_id == job.job_id
    assert await store.get_next_pending_job(session, now=NOW + 2) is None

    await store.update_job_status(session, job.job_id, JobStatus.FAILED, error_message="timeout", now=NOW + 3)
    await store.retry_failed_job(session, job.job_id, now=NOW + 4)

    again = await store.get_next_pending_job(session, now=NOW + 5)
    assert again.job_id == job.job_id
    assert again.attempt_count == 2


@pytest.mark.asyncio
async def test_terminal_states_are_write_once(session) -> None:
    job = await _create(session)
    await store.get_next_pending_job(session, now=NOW + 1)
    await store.update_job_results(session, job.job_id, {"items": []}, now=NOW + 2)

    with pytest.raises(InvalidTransitionError) as exc_info:
        await store.update_job_status(session, job.job_id, "failed", error_message="late failure")

    assert exc_info.value.current == "completed"
    assert exc_info.value.requested == "failed"
    unchanged = await store.get_job_by_id(session, job.job_id)
    assert unchanged.status == JobStatus.COMPLETED.value
    assert unchanged.results == {"items": []}
    assert unchanged.error_message is None


@pytest.mark.asyncio
@pytest.mark.parametrize("target", ["completed", "failed", "pending"])
async def test_update_status_rejects_illegal_transitions_from_pending(session, target) -> None:
    job = await _create(session)

    with pytest.raises(InvalidTransitionError):
        await store.update_job_status(session, job.job_id, target, error_message="nope", now=NOW + 1)

    unchanged = await store.get_job_by_id(session, job.job_id)
    assert unchanged.status == JobStatus.PENDING.value
    assert unchanged.updated_at == NOW


@pytest.mark.asyncio
async def test_update_status_to_processing_counts_as_claim(session) -> None:
    job = await _create(session)

    updated = await store.update_job_status(session, job.job_id, JobStatus.PROCESSING, now=NOW + 7)

    assert updated.status == JobStatus.PROCESSING.value
    assert updated.started_at == NOW + 7
    assert updated.attempt_count == 1


@pytest.mark.asyncio
async def test_update_status_failed_requires_error_message(session) -> None:
    job = await _create(session)
    await store.get_next_pending_job(session, now=NOW + 1)

    with pytest.raises(JobValidationError):
        await store.update_job_status(session, job.job_id, JobStatus.FAILED)

    failed = await store.update_job_status(
        session, job.job_id, JobStatus.FAILED, error_message="recommender timeout", now=NOW + 9
    )
    assert failed.status == JobStatus.FAILED.value
    assert failed.error_message == "recommender timeout"
    assert failed.completed_at == NOW + 9


@pytest.mark.asyncio
async def test_failed_job_cannot_be_requeued_through_update_status(session) -> None:
    job = await _create(session)
    await store.get_next_pending_job(session, now=NOW + 1)
    await store.update_job_status(session, job.job_id, JobStatus.FAILED, error_message="boom", now=NOW + 2)

    with pytest.raises(InvalidTransitionError):
        await store.update_job_status(session, job.job_id, JobStatus.PENDING)


@pytest.mark.asyncio
async def test_operations_on_missing_job_raise_not_found(session) -> None:
    with pytest.raises(JobNotFoundError):
        await store.update_job_status(session, "missing", JobStatus.CANCELLED)
    with pytest.raises(JobNotFoundError):
        await store.update_job_results(session, "missing", {"items": []})
    with pytest.raises(JobNotFoundError):
        await store.cancel_job(session, "missing")
    with pytest.raises(JobNotFoundError) as exc_info:
        await store.retry_failed_job(session, "missing")
    assert exc_info.value.job_id == "missing"


@pytest.mark.asyncio
async def test_update_results_requires_processing(session) -> None:
    job = await _create(session)

    with pytest.raises(InvalidTransitionError):
        await store.update_job_results(session, job.job_id, {"items": []})

    unchanged = await store.get_job_by_id(session, job.job_id)
    assert unchanged.status == JobStatus.PENDING.value
    assert unchanged.results is None


@pytest.mark.asyncio
async def test_report_is_rejected_for_a_superseded_claim(session) -> None:
    job = await _create(session)
    first = await store.get_next_pending_job(session, now=NOW + 1)
    first_attempt = first.attempt_count

    await maintenance.requeue_stale_jobs(session, timeout_seconds=60, now=NOW + 1000)
    second = await store.get_next_pending_job(session, now=NOW + 1001)
    assert second.attempt_count == first_attempt + 1

    with pytest.raises(InvalidTransitionError):
        await store.update_job_results(session, job.job_id, {"items": []}, expected_attempt=first_attempt)

    completed = await store.update_job_results(
        session, job.job_id, {"items": ["fresh"]}, expected_attempt=second.attempt_count
    )
    assert completed.results == {"items": ["fresh"]}


@pytest.mark.asyncio
async def test_cancel_job(session) -> None:
    pending = await _create(session)
    processing = await _create(session, priority="URGENT")
    await store.get_next_pending_job(session, now=NOW + 1)
    assert processing.status == JobStatus.PROCESSING.value

    assert await store.cancel_job(session, pending.job_id, now=NOW + 2) is True
    assert await store.cancel_job(session, processing.job_id, now=NOW + 2) is True

    for job_id in (pending.job_id, processing.job_id):
        cancelled = await store.get_job_by_id(session, job_id)
        assert cancelled.status == JobStatus.CANCELLED.value
        assert cancelled.completed_at == NOW + 2


@pytest.mark.asyncio
async def test_cancel_finished_job_is_a_no_op(session) -> None:
    job = await _create(session)
    await store.get_next_pending_job(session, now=NOW + 1)
    await store.update_job_results(session, job.job_id, {"items": []}, now=NOW + 2)

    assert await store.cancel_job(session, job.job_id, now=NOW + 3) is False

    unchanged = await store.get_job_by_id(session, job.job_id)
    assert unchanged.status == JobStatus.COMPLETED.value
    assert unchanged.completed_at == NOW + 2


@pytest.mark.asyncio
async def test_cancel_jobs_by_session_only_touches_unfinished_jobs(session) -> None:
    await _create(session, session_id="s1")
    claimed = await _create(session, session_id="s1", priority="URGENT")
    await store.get_next_pending_job(session, now=NOW + 1)
    done = await _create(session, session_id="s1", priority="EMERGENCY")
    await store.get_next_pending_job(session, now=NOW + 2)
    await store.update_job_results(session, done.job_id, {"items": []}, now=NOW + 3)
    other = await _create(session, session_id="s2")

    count = await store.cancel_jobs_by_session(session, "s1", now=NOW + 4)

    assert count == 2
    statuses = {job.job_id: job.status for job in await store.get_jobs_by_session(session, "s1")}
    assert statuses[claimed.job_id] == JobStatus.CANCELLED.value
    assert statuses[done.job_id] == JobStatus.COMPLETED.value
    assert (await store.get_job_by_id(session, other.job_id)).status == JobStatus.PENDING.value
    assert await store.cancel_jobs_by_session(session, "s1", now=NOW + 5) == 0


@pytest.mark.asyncio
async def test_get_job_queue_lists_pending_jobs_in_claim_order(session) -> None:
    normal = await _create(session, now=NOW)
    low = await _create(session, priority="LOW", now=NOW - 100)
    urgent = await _create(session, priority="URGENT", now=NOW + 50)
    claimed = await _create(session, priority="EMERGENCY", now=NOW)
    await store.get_next_pending_job(session, now=NOW + 60)

    queued = await store.get_job_queue(session)

    assert [job.job_id for job in queued] == [urgent.job_id, normal.job_id, low.job_id]
    assert claimed.job_id not in {job.job_id for job in queued}
    assert len(await store.get_job_queue(session, limit=1)) == 1


@pytest.mark.asyncio
async def test_get_jobs_by_patient_filters_and_limits(session) -> None:
    first = await _create(session, patient_id="p1", now=NOW)
    second = await _create(session, patient_id="p1", now=NOW + 10)
    await _create(session, patient_id="p2", now=NOW + 20)
    await store.cancel_job(session, first.job_id, now=NOW + 30)

    jobs = await store.get_jobs_by_patient(session, "p1")
    assert [job.job_id for job in jobs] == [second.job_id, first.job_id]

    cancelled = await store.get_jobs_by_patient(session, "p1", status="cancelled")
    assert [job.job_id for job in cancelled] == [first.job_id]

    limited = await store.get_jobs_by_patient(session, "p1", limit=1)
    assert [job.job_id for job in limited] == [second.job_id]


@pytest.mark.asyncio
async def test_get_jobs_by_session(session) -> None:
    mine = await _create(session, session_id="s1")
    await _create(session, session_id="s2")

    jobs = await store.get_jobs_by_session(session, "s1")

    assert [job.job_id for job in jobs] == [mine.job_id]
    assert await store.get_jobs_by_session(session, "unknown") == []


@pytest.mark.asyncio
async def test_retry_failed_job_keeps_attempt_count(session) -> None:
    job = await _create(session)
    await store.get_next_pending_job(session, now=NOW + 1)
    failed = await store.update_job_status(session, job.job_id, "failed", error_message="timeout", now=NOW + 2)
    attempts = failed.attempt_count

    retried = await store.retry_failed_job(session, job.job_id, now=NOW + 3)

    assert retried.status == JobStatus.PENDING.value
    assert retried.error_message is None
    assert retried.attempt_count == attempts
    assert retried.started_at is None
    assert retried.completed_at is None
    assert retried.updated_at == NOW + 3


@pytest.mark.asyncio
async def test_retry_requires_failed_job(session) -> None:
    job = await _create(session)

    with pytest.raises(InvalidTransitionError) as exc_info:
        await store.retry_failed_job(session, job.job_id)

    assert exc_info.value.current == "pending"


@pytest.mark.asyncio
async def test_listings_reflect_bulk_cancel_in_same_session(session) -> None:
    job = await _create(session, session_id="s1", patient_id="p1")

    assert await store.cancel_jobs_by_session(session, "s1", now=NOW + 1) == 1

    listed = await store.get_jobs_by_patient(session, "p1")
    assert [(j.job_id, j.status) for j in listed] == [(job.job_id, JobStatus.CANCELLED.value)]
    assert listed[0].completed_at == NOW + 1
    assert await store.get_jobs_by_patient(session, "p1", status="pending") == []
    assert await store.get_job_queue(session) == []
