"""
CRM Sync Configuration Settings
"""
from datetime import datetime
from pathlib import Path
from typing import Optional

from pydantic_settings import BaseSettings, SettingsConfigDict
from pydantic import Field


class Settings(BaseSettings):
    """Application settings loaded from environment variables."""

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore"
    )

    # Paths (use CRM_ prefix)
    data_path: Path = Field(
        default=Path("./data"),
        alias="CRM_DATA_PATH"
    )
    crm_db_path: Optional[Path] = Field(
        default=None,
        alias="CRM_DB_PATH",
        description="SQLite database for identities, import candidates and sync state (defaults to <data>/crm.db)"
    )
    google_token_dir: Path = Field(
        default=Path("./config/google_tokens"),
        alias="CRM_GOOGLE_TOKEN_DIR",
        description="Directory holding one authorized-user token file per Google account"
    )

    # Server
    port: int = Field(default=8000, alias="CRM_PORT")
    host: str = Field(default="0.0.0.0", alias="CRM_HOST")

    log_level: str = Field(default="INFO", alias="CRM_LOG_LEVEL")

    # Time acceleration for replaying schedules (1.0 = wall clock)
    time_acceleration: float = Field(
        default=1.0,
        alias="CRM_TIME_ACCELERATION",
        description="Multiplier applied to elapsed time since CRM_TIME_BASE"
    )
    time_base: Optional[datetime] = Field(
        default=None,
        alias="CRM_TIME_BASE",
        description="Start instant for accelerated time (defaults to process start)"
    )

    # Background scheduler
    sync_scheduler_enabled: bool = Field(default=True, alias="CRM_SYNC_SCHEDULER_ENABLED")
    sync_poll_seconds: int = Field(default=60, alias="CRM_SYNC_POLL_SECONDS")
    sync_max_workers: int = Field(default=4, alias="CRM_SYNC_MAX_WORKERS")
    sync_run_deadline_seconds: Optional[float] = Field(
        default=None,
        alias="CRM_SYNC_RUN_DEADLINE",
        description="Cancel in-flight syncs after this many seconds (unset = no deadline)"
    )

    # Retry schedule after a failed sync, indexed by consecutive error count.
    # Empty (the default) retries at the provider's regular interval.
    sync_error_backoff_raw: str = Field(
        default="",
        alias="CRM_SYNC_ERROR_BACKOFF_MINUTES",
        description="Comma-separated retry delays in minutes"
    )

    @property
    def sync_error_backoff_minutes(self) -> list[int]:
        """Parse comma-separated backoff schedule into list."""
        if not self.sync_error_backoff_raw:
            return []
        return [int(x.strip()) for x in self.sync_error_backoff_raw.split(",") if x.strip()]

    # Log retention for the sync_logs table
    sync_log_retention_days: int = Field(default=30, alias="CRM_SYNC_LOG_RETENTION_DAYS")

    @property
    def resolved_crm_db_path(self) -> Path:
        """Get the CRM database path, falling back to the data directory."""
        if self.crm_db_path:
            return self.crm_db_path
        return self.data_path / "crm.db"


settings = Settings()
