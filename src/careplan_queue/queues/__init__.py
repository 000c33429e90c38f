from careplan_queue.queues.maintenance import cleanup_old_jobs, get_job_stats, requeue_stale_jobs
from careplan_queue.queues.store import (
    cancel_job,
    cancel_jobs_by_session,
    create_job,
    get_job_by_id,
    get_job_queue,
    get_jobs_by_patient,
    get_jobs_by_session,
    get_next_pending_job,
    retry_failed_job,
    update_job_results,
    update_job_status,
)

__all__ = [
    "cancel_job",
    "cancel_jobs_by_session",
    "cleanup_old_jobs",
    "create_job",
    "get_job_by_id",
    "get_job_queue",
    "get_job_stats",
    "get_jobs_by_patient",
    "get_jobs_by_session",
    "get_next_pending_job",
    "requeue_stale_jobs",
    "retry_failed_job",
    "update_job_results",
    "update_job_status",
]
