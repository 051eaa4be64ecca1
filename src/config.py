"""
Configuration for the webhook delivery engine.

Values come from environment variables prefixed with ``WEBHOOK_`` (or a
local ``.env`` file), e.g. ``WEBHOOK_MAX_ATTEMPTS=3``.
"""
from functools import lru_cache

from pydantic import Field, model_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """Engine settings loaded from the environment."""

    model_config = SettingsConfigDict(
        env_prefix="WEBHOOK_",
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
    )

    # Store
    database_url: str = "sqlite:///webhook_deliveries.db"

    # Delivery
    max_attempts: int = Field(default=5, gt=0)
    request_timeout_seconds: float = Field(default=10.0, gt=0)
    response_body_limit: int = Field(default=1000, gt=0)

    # Retry backoff
    backoff_base_seconds: float = Field(default=30.0, gt=0)
    backoff_cap_seconds: float = Field(default=7200.0, gt=0)

    # Scheduler
    scheduler_interval_seconds: float = Field(default=30.0, gt=0)
    batch_size: int = Field(default=50, gt=0)
    parallelism: int = Field(default=10, gt=0)
    stuck_timeout_seconds: float = Field(default=600.0, ge=0)

    # Signatures
    signature_tolerance_seconds: int = Field(default=300, ge=0)
    # Secret for operator test sends that have no partner secret of their own
    test_secret: str = "webhook-test-secret"

    # Alerting
    failure_rate_threshold: float = Field(default=0.10, ge=0.0, le=1.0)
    metrics_window_seconds: float = Field(default=300.0, gt=0)

    log_level: str = "INFO"

    @model_validator(mode="after")
    def _check_backoff(self) -> "Settings":
        if self.backoff_cap_seconds < self.backoff_base_seconds:
            raise ValueError("backoff_cap_seconds must be >= backoff_base_seconds")
        return self


@lru_cache
def get_settings() -> Settings:
    return Settings()
