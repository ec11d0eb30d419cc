"""
Configuration settings for the offline sync engine.

Uses environment variables (prefixed ``OFFLINE_SYNC_``) with sensible
defaults for local development.
"""

from functools import lru_cache
from pathlib import Path
from typing import Literal

from pydantic import Field, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


class SyncSettings(BaseSettings):
    """Engine settings loaded from environment variables."""

    model_config = SettingsConfigDict(
        env_prefix="OFFLINE_SYNC_",
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="ignore",
    )

    # Local storage
    db_path: Path = Field(default_factory=lambda: Path.home() / ".offline_sync" / "sync.db")

    # Scheduler
    batch_size: int = Field(default=10, ge=1)
    max_retries: int = Field(default=3, ge=1)
    sync_interval: float = Field(default=60.0, gt=0)  # Periodic tick
    continuation_delay: float = Field(default=1.0, ge=0)  # Pause between full batches
    delivery_timeout: float = Field(default=30.0, gt=0)
    permission_cooldown: float = Field(default=300.0, ge=0)  # Circuit breaker window

    # Credentials
    token_expiry_buffer: float = Field(default=30.0, ge=0)
    refresh_min_interval: float = Field(default=5.0, ge=0)
    token_url: str | None = None
    client_id: str = ""
    client_secret: str = ""

    # Remote API
    api_base_url: str = "http://localhost:54321/rest/v1"
    api_timeout: float = 30.0

    # Connectivity probing
    probe_url: str | None = None
    probe_interval: float = Field(default=30.0, gt=0)
    probe_timeout: float = 5.0

    log_level: Literal["DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"] = "INFO"

    @field_validator("api_base_url", mode="before")
    @classmethod
    def strip_trailing_slash(cls, v):
        """Normalize base URL so endpoint paths can be appended directly."""
        if isinstance(v, str):
            return v.rstrip("/")
        return v

    @field_validator("log_level", mode="before")
    @classmethod
    def upper_log_level(cls, v):
        if isinstance(v, str):
            return v.upper()
        return v


@lru_cache
def get_settings() -> SyncSettings:
    """Get cached settings instance."""
    return SyncSettings()
