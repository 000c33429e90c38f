"""Recommendation job schemas."""

from enum import Enum, IntEnum
from typing import Any, Dict, Optional

from pydantic import BaseModel, ConfigDict, Field


class JobStatus(str, Enum):
    """Job status states."""

    PENDING = "pending"
    PROCESSING = "processing"
    COMPLETED = "completed"
    FAILED = "failed"
    CANCELLED = "cancelled"


TERMINAL_STATUSES = frozenset({JobStatus.COMPLETED, JobStatus.FAILED, JobStatus.CANCELLED})
ACTIVE_STATUSES = frozenset({JobStatus.PENDING, JobStatus.PROCESSING})

# failed -> pending is only reachable through an explicit retry.
ALLOWED_TRANSITIONS: Dict[JobStatus, frozenset[JobStatus]] = {
    JobStatus.PENDING: frozenset({JobStatus.PROCESSING, JobStatus.CANCELLED}),
    JobStatus.PROCESSING: frozenset({JobStatus.COMPLETED, JobStatus.FAILED, JobStatus.CANCELLED}),
    JobStatus.FAILED: frozenset({JobStatus.PENDING}),
    JobStatus.COMPLETED: frozenset(),
    JobStatus.CANCELLED: frozenset(),
}


class JobType(str, Enum):
    """Kinds of recommendation work."""

    GENERATE_RECOMMENDATION = "GENERATE_RECOMMENDATION"
    REFRESH_RECOMMENDATION = "REFRESH_RECOMMENDATION"
    INITIAL_ASSESSMENT = "INITIAL_ASSESSMENT"
    DATA_UPDATE_TRIGGER = "DATA_UPDATE_TRIGGER"
    PERIODIC_REVIEW = "PERIODIC_REVIEW"
    EMERGENCY_ALERT = "EMERGENCY_ALERT"


class JobPriority(IntEnum):
    """Claim urgency, higher values are claimed first."""

    LOW = 1
    NORMAL = 2
    HIGH = 3
    URGENT = 4
    EMERGENCY = 5


class JobResponse(BaseModel):
    """Serialized recommendation job."""

    model_config = ConfigDict(from_attributes=True)

    job_id: str
    session_id: str
    patient_id: str
    job_type: str
    priority: int
    status: str
    input_data: Optional[Dict[str, Any]] = None
    results: Optional[Dict[str, Any]] = None
    error_message: Optional[str] = None
    attempt_count: int = 0
    created_at: int
    updated_at: int
    started_at: Optional[int] = None
    completed_at: Optional[int] = None


class JobStats(BaseModel):
    """Aggregate queue health."""

    total: int = 0
    by_status: Dict[str, int] = Field(default_factory=dict)
    by_type: Dict[str, int] = Field(default_factory=dict)
    avg_processing_time: Optional[float] = None
