"""Recommendation job entity."""

import time
import uuid
from typing import Any, Dict, Optional

from sqlalchemy import JSON, Index
from sqlmodel import Field, SQLModel

from careplan_queue.schemas.jobs import JobPriority, JobStatus


class RecommendationJob(SQLModel, table=True):
    """One unit of recommendation work for a clinical session and patient."""

    __tablename__ = "recommendation_jobs"
    __table_args__ = (
        Index("ix_recommendation_jobs_session_id", "session_id"),
        Index("ix_recommendation_jobs_patient_id_status", "patient_id", "status"),
        Index("ix_recommendation_jobs_claim_order", "status", "priority", "created_at"),
        Index("ix_recommendation_jobs_status_completed_at", "status", "completed_at"),
    )

    id: Optional[int] = Field(default=None, primary_key=True)
    job_id: str = Field(default_factory=lambda: str(uuid.uuid4()), unique=True)
    session_id: str
    patient_id: str
    job_type: str
    priority: int = Field(default=JobPriority.NORMAL.value)
    status: str = Field(default=JobStatus.PENDING.value)
    input_data: Optional[Dict[str, Any]] = Field(default=None, sa_type=JSON)
    results: Optional[Dict[str, Any]] = Field(default=None, sa_type=JSON)
    error_message: Optional[str] = None
    attempt_count: int = Field(default=0)
    created_at: int = Field(default_factory=lambda: int(time.time()))
    updated_at: int = Field(default_factory=lambda: int(time.time()))
    started_at: Optional[int] = None
    completed_at: Optional[int] = None
