"""Application settings loaded from environment variables."""

import os
import socket
from datetime import timedelta
from pathlib import Path

from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict


def _env_file() -> str | None:
    if os.getenv("PYTEST_CURRENT_TEST"):
        return None
    return ".env"


class Settings(BaseSettings):
    """Task manager configuration. All values come from environment variables."""

    # Database
    database_path: Path = Field(default=Path("data/taskmanager.db"))

    # Scheduler
    scheduler_timezone: str = Field(default="UTC")
    scheduler_pool_size: int = Field(default=10, gt=0)
    misfire_threshold_seconds: float = Field(default=60.0, ge=0)
    shutdown_drain_seconds: float = Field(default=10.0, ge=0)

    # Retry policy defaults (overridable per task)
    retry_max_attempts: int = Field(default=3, ge=0)
    retry_backoff_base_seconds: float = Field(default=1.0, gt=0)
    retry_backoff_cap_seconds: float = Field(default=300.0, gt=0)

    # Audit
    audit_queue_size: int = Field(default=1000, gt=0)

    # Event stream
    event_replay_size: int = Field(default=100, ge=0)
    event_subscriber_buffer: int = Field(default=50, gt=0)

    # Identifies this process in audit records
    node_id: str = Field(default_factory=socket.gethostname)

    # Logging
    log_level: str = Field(default="INFO")

    model_config = SettingsConfigDict(env_file=_env_file(), env_file_encoding="utf-8")

    @classmethod
    def settings_customise_sources(
        cls,
        settings_cls: type[BaseSettings],
        init_settings,
        env_settings,
        dotenv_settings,
        file_secret_settings,
    ):
        if os.getenv("PYTEST_CURRENT_TEST"):
            return (init_settings,)
        return (init_settings, env_settings, dotenv_settings, file_secret_settings)

    @property
    def misfire_threshold(self) -> timedelta:
        return timedelta(seconds=self.misfire_threshold_seconds)

    @property
    def retry_backoff_base(self) -> timedelta:
        return timedelta(seconds=self.retry_backoff_base_seconds)

    @property
    def retry_backoff_cap(self) -> timedelta:
        return timedelta(seconds=self.retry_backoff_cap_seconds)


settings = Settings()
