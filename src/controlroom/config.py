"""Runtime configuration management."""

from __future__ import annotations

import logging
from functools import lru_cache
from pathlib import Path

from pydantic import Field, model_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """Engine settings loaded from environment variables and .env file."""

    model_config = SettingsConfigDict(
        env_prefix="CONTROLROOM_",
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
    )

    # Filesystem layout
    DATA_DIR: str = Field(default=".controlroom", description="Base directory for local state")
    RUNS_BASE_DIR: str = Field(
        default=".controlroom/runs",
        description="Base directory holding one scratch directory per script run",
    )

    # Storage
    STORAGE_BACKEND: str = Field(default="sqlite", description="Storage backend: sqlite, memory")
    STORAGE_DB_PATH: str = Field(
        default=".controlroom/controlroom.db", description="SQLite database path (sqlite backend only)"
    )

    # Execution
    CAPTURE_OUTPUT_EVENTS: bool = Field(
        default=True, description="Persist every stdout/stderr line as a run event"
    )
    MAX_CONCURRENT_STEPS: int = Field(
        default=0, description="Upper bound on concurrently running steps per execution (0 = unbounded)"
    )
    KILL_GRACE_SECONDS: float = Field(
        default=5.0, description="Seconds to wait after terminating a process tree before killing it"
    )

    # Logging
    LOG_LEVEL: str = Field(default="INFO", description="Log level used by the CLI")

    @model_validator(mode="after")
    def validate_limits(self) -> "Settings":
        """Reject negative limits and unknown log levels."""
        if self.MAX_CONCURRENT_STEPS < 0:
            raise ValueError("MAX_CONCURRENT_STEPS must be >= 0")
        if self.KILL_GRACE_SECONDS < 0:
            raise ValueError("KILL_GRACE_SECONDS must be >= 0")
        level = self.LOG_LEVEL.upper()
        if not isinstance(logging.getLevelName(level), int):
            raise ValueError(f"Unknown LOG_LEVEL: {self.LOG_LEVEL}")
        self.LOG_LEVEL = level
        return self

    @property
    def runs_base_path(self) -> Path:
        return Path(self.RUNS_BASE_DIR)


@lru_cache
def get_settings() -> Settings:
    """Get cached settings instance."""
    return Settings()
