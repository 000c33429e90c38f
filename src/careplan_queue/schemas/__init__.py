from careplan_queue.schemas.jobs import (
    ACTIVE_STATUSES,
    ALLOWED_TRANSITIONS,
    TERMINAL_STATUSES,
    JobPriority,
    JobResponse,
    JobStats,
    JobStatus,
    JobType,
)

__all__ = [
    "ACTIVE_STATUSES",
    "ALLOWED_TRANSITIONS",
    "TERMINAL_STATUSES",
    "JobPriority",
    "JobResponse",
    "JobStats",
    "JobStatus",
    "JobType",
]
