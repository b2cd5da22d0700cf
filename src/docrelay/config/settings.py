"""Application settings.

Hey future me - settings are NESTED. Env vars use "__" as the delimiter, e.g.
DATABASE__URL=postgresql+asyncpg://... or WORKFLOW__EXPIRATION_HOURS=72. A .env file in
the working directory is picked up too. get_settings() caches the instance; tests build
their own Settings(...) and pass it in instead of touching the cache.
"""

from datetime import timedelta
from functools import lru_cache
from typing import Literal

from pydantic import BaseModel, Field, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

from docrelay.domain.entities import MAX_RECIPIENTS


class DatabaseSettings(BaseModel):
    """Database connection settings."""

    url: str = "sqlite+aiosqlite:///./data/docrelay.db"
    echo: bool = False
    pool_pre_ping: bool = True
    pool_size: int = Field(default=5, ge=1)
    max_overflow: int = Field(default=10, ge=0)
    pool_timeout: int = Field(default=30, ge=1)
    pool_recycle: int = Field(default=3600, ge=-1)


class WorkflowSettings(BaseModel):
    """Session engine timings and limits."""

    base_url: str = "http://localhost:8000/workflow"
    document_url: str = "/documents/default.pdf"
    expiration_hours: int = Field(default=48, gt=0)
    reminder_delay_hours: int = Field(default=24, gt=0)
    max_reminders: int = Field(default=2, ge=0)
    max_recipients: int = MAX_RECIPIENTS
    stale_retention_days: int = Field(default=7, gt=0)
    batch_size: int = Field(default=100, gt=0)
    cache_ttl_seconds: int = Field(default=3600, gt=0)
    notify_on_completion: bool = False

    @field_validator("max_recipients")
    @classmethod
    def check_max_recipients(cls, value: int) -> int:
        if not 1 <= value <= MAX_RECIPIENTS:
            raise ValueError(f"max_recipients must be between 1 and {MAX_RECIPIENTS}")
        return value

    @field_validator("base_url")
    @classmethod
    def strip_trailing_slash(cls, value: str) -> str:
        return value.rstrip("/")

    @property
    def expiration_window(self) -> timedelta:
        return timedelta(hours=self.expiration_hours)

    @property
    def reminder_delay(self) -> timedelta:
        return timedelta(hours=self.reminder_delay_hours)

    @property
    def stale_retention(self) -> timedelta:
        return timedelta(days=self.stale_retention_days)


class SchedulerSettings(BaseModel):
    """Periodic sweep intervals (seconds)."""

    enabled: bool = True
    reminder_interval_seconds: float = Field(default=3600, gt=0)
    expiration_interval_seconds: float = Field(default=1800, gt=0)
    stale_cleanup_interval_seconds: float = Field(default=86400, gt=0)
    job_cleanup_interval_seconds: float = Field(default=900, gt=0)
    statistics_interval_seconds: float = Field(default=3600, gt=0)
    shutdown_timeout: float = Field(default=10.0, gt=0)


class NotificationSettings(BaseModel):
    """Outbound notification gateway."""

    # No URL = logging-only mode (notifications are logged, never sent)
    webhook_url: str | None = None
    webhook_auth_header: str | None = None
    webhook_timeout: float = Field(default=30.0, gt=0)
    sender_name: str = "DocRelay"


class ObservabilitySettings(BaseModel):
    """Logging output settings."""

    log_json_format: bool = False


class Settings(BaseSettings):
    """Application settings with environment variable support."""

    model_config = SettingsConfigDict(
        env_file=".env",
        env_nested_delimiter="__",
        extra="ignore",
    )

    app_name: str = "docrelay"
    log_level: Literal["DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"] = "INFO"
    debug: bool = False

    database: DatabaseSettings = Field(default_factory=DatabaseSettings)
    workflow: WorkflowSettings = Field(default_factory=WorkflowSettings)
    scheduler: SchedulerSettings = Field(default_factory=SchedulerSettings)
    notifications: NotificationSettings = Field(default_factory=NotificationSettings)
    observability: ObservabilitySettings = Field(default_factory=ObservabilitySettings)

    @field_validator("log_level", mode="before")
    @classmethod
    def upper_log_level(cls, value: str) -> str:
        return value.upper() if isinstance(value, str) else value


@lru_cache
def get_settings() -> Settings:
    """Load settings once per process."""
    return Settings()
