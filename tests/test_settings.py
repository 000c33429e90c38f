# mypy: ignore-errors

import pytest
from pydantic import ValidationError

from careplan_queue.settings import Settings


def test_settings_read_prefixed_environment(monkeypatch) -> None:
    monkeypatch.setenv("CAREPLAN_QUEUE_STALE_JOB_TIMEOUT", "120")
    monkeypatch.setenv("CAREPLAN_QUEUE_MAX_ATTEMPTS", "5")

    settings = Settings()

    assert settings.stale_job_timeout == 120
    assert settings.max_attempts == 5


@pytest.mark.parametrize(
    "overrides",
    [
        {"stale_job_timeout": 0},
        {"sweep_interval": 0},
        {"cleanup_interval": -1},
        {"retention_days": -1},
    ],
)
def test_settings_reject_values_that_would_break_maintenance(overrides) -> None:
    with pytest.raises(ValidationError):
        Settings(**overrides)
