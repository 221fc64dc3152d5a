from functools import lru_cache

from pydantic import model_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    app_name: str = "reward-board-api"
    environment: str = "dev"
    database_url: str | None = None
    database_pool_min_size: int = 1
    database_pool_max_size: int = 10
    moderation_channel: str = "moderation"
    moderation_review_threshold: int = 40
    wordlists_path: str | None = None
    job_max_attempts: int = 3
    job_retry_base_seconds: int = 5
    job_retry_max_seconds: int = 300
    worker_id: str = "local-moderation-worker"
    worker_concurrency: int = 4
    poll_interval_seconds: float = 2.0
    max_backoff_seconds: float = 15.0
    claim_lease_seconds: int = 120
    job_timeout_seconds: float = 30.0
    lease_reaper_interval_seconds: float = 15.0
    lease_reaper_batch_size: int = 100
    missing_review_interval_seconds: float = 300.0
    missing_review_batch_size: int = 100
    missing_review_grace_seconds: int = 60
    feed_max_limit: int = 200
    otel_enabled: bool = True
    otel_service_name: str = "reward-board"
    otel_exporter_otlp_endpoint: str | None = None
    otel_exporter_otlp_headers: str | None = None
    otel_trace_sample_ratio: float = 1.0
    otel_log_correlation: bool = True

    model_config = SettingsConfigDict(env_prefix="RB_", extra="ignore")

    @model_validator(mode="after")
    def check_claim_lease_covers_job_timeout(self) -> "Settings":
        if self.claim_lease_seconds <= self.job_timeout_seconds:
            raise ValueError("claim_lease_seconds must exceed job_timeout_seconds")
        return self


@lru_cache
def get_settings() -> Settings:
    return Settings()
