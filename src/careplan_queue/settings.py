"""Pydantic-based settings for the recommendation job queue."""

from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """Configuration settings for the queue, its workers and maintenance tasks."""

    model_config = SettingsConfigDict(
        env_prefix="CAREPLAN_QUEUE_",
        case_sensitive=False,
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
    )

    log_level: str = Field(default="INFO", description="Logging level")

    # Database settings
    database_url: str = Field(
        default="sqlite+aiosqlite:///data/careplan_queue.db", description="Async SQLAlchemy database URL"
    )

    # Recommender service
    recommender_base_url: str = Field(
        default="http://localhost:8010", description="Base URL of the care-plan recommender service"
    )
    recommender_timeout: float = Field(default=30.0, description="Recommender request timeout in seconds")

    # Worker settings
    worker_concurrency: int = Field(default=1, ge=1, description="Number of concurrent poll loops per worker")
    poll_interval: float = Field(default=1.0, gt=0, description="Initial wait after an empty poll in seconds")
    max_poll_interval: float = Field(default=30.0, gt=0, description="Upper bound for empty-poll backoff")
    max_attempts: int = Field(default=3, ge=1, description="Claims allowed before a failed job stays failed")

    # Maintenance settings
    stale_job_timeout: int = Field(
        default=900, gt=0, description="Seconds a job may stay processing before the sweep requeues it"
    )
    sweep_interval: int = Field(default=60, gt=0, description="Seconds between staleness sweeps")
    retention_days: int = Field(default=30, ge=0, description="Days terminal jobs are kept before cleanup")
    cleanup_interval: int = Field(default=3600, gt=0, description="Seconds between retention cleanups")

    @property
    def log_format(self) -> str:
        """Log message format."""
        return "%(asctime)s - %(name)s - %(levelname)s - %(message)s"
