import pytest
from pydantic import ValidationError

from reward_board.core.config import Settings


def test_settings_read_prefixed_environment(monkeypatch) -> None:
    monkeypatch.setenv("RB_WORKER_CONCURRENCY", "8")
    monkeypatch.setenv("RB_MODERATION_REVIEW_THRESHOLD", "55")

    settings = Settings()

    assert settings.worker_concurrency == 8
    assert settings.moderation_review_threshold == 55
    assert settings.job_max_attempts == 3


@pytest.mark.parametrize("lease_seconds", [30, 60])
def test_settings_reject_lease_not_longer_than_job_timeout(lease_seconds: int) -> None:
    with pytest.raises(ValidationError, match="claim_lease_seconds"):
        Settings(claim_lease_seconds=lease_seconds, job_timeout_seconds=60)
