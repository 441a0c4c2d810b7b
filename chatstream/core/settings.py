from __future__ import annotations

import os
from functools import lru_cache
from pathlib import Path

from dotenv import load_dotenv
from pydantic_settings import BaseSettings, SettingsConfigDict
from pydantic import Field, field_validator

# Load environment variables from project root .env if present
current_file_path = Path(__file__).resolve()
project_root_depth = 2  # Two levels up from chatstream/core/settings.py to project root

if len(current_file_path.parents) <= project_root_depth:
    project_root = Path.cwd()
else:
    project_root = current_file_path.parents[project_root_depth]

ENV_PATH = project_root / ".env"
load_dotenv(ENV_PATH)


class Settings(BaseSettings):
    """Application configuration loaded from environment variables."""

    model_config = SettingsConfigDict(
        case_sensitive=False,
        env_file=ENV_PATH,
        extra="ignore",
        populate_by_name=True,
    )

    environment: str = Field(default="development", alias="ENVIRONMENT")

    # Run activity registry
    stream_watchdog_timeout: float = Field(default=60.0, alias="STREAM_WATCHDOG_TIMEOUT")
    stream_watchdog_strict: bool = Field(default=False, alias="STREAM_WATCHDOG_STRICT")
    stream_strict_watchdog_timeout: float = Field(default=30.0, alias="STREAM_STRICT_WATCHDOG_TIMEOUT")
    stream_sweep_interval: float = Field(default=1.0, alias="STREAM_SWEEP_INTERVAL")
    stream_registry_stale_after: float = Field(default=120.0, alias="STREAM_REGISTRY_STALE_AFTER")

    # Progress throttle
    stream_throttle_interval: float = Field(default=0.25, alias="STREAM_THROTTLE_INTERVAL")

    # SSE transport
    sse_connect_timeout: float = Field(default=30.0, alias="SSE_CONNECT_TIMEOUT")
    sse_max_retries: int = Field(default=3, alias="SSE_MAX_RETRIES")
    sse_retry_base_delay: float = Field(default=1.0, alias="SSE_RETRY_BASE_DELAY")
    sse_retry_max_delay: float = Field(default=10.0, alias="SSE_RETRY_MAX_DELAY")
    sse_retry_backoff: float = Field(default=2.0, alias="SSE_RETRY_BACKOFF")
    sse_prelude_size: int = Field(default=2048, alias="SSE_PRELUDE_SIZE")

    @field_validator(
        "stream_watchdog_timeout",
        "stream_strict_watchdog_timeout",
        "stream_sweep_interval",
        "stream_registry_stale_after",
        "stream_throttle_interval",
        "sse_connect_timeout",
    )
    @classmethod
    def validate_positive_interval(cls, v: float) -> float:
        if v <= 0:
            raise ValueError("stream and transport intervals must be positive")
        return v

    @field_validator("sse_max_retries")
    @classmethod
    def validate_sse_max_retries(cls, v: int) -> int:
        if v < 0:
            raise ValueError("sse_max_retries must be zero or greater")
        return v

    @field_validator("sse_retry_backoff")
    @classmethod
    def validate_sse_retry_backoff(cls, v: float) -> float:
        if v < 1.0:
            raise ValueError("sse_retry_backoff must be at least 1.0")
        return v

    def is_production_mode(self) -> bool:
        """Production is detected from ENVIRONMENT or the usual deploy variables."""
        env_indicators = [
            self.environment.lower() in ["production", "prod"],
            os.getenv("DEPLOY_ENV", "").lower() in ["production", "prod"],
            os.getenv("STAGE", "").lower() in ["production", "prod"],
        ]
        return any(env_indicators)

    def effective_watchdog_timeout(self) -> float:
        """Watchdog threshold after applying the strict policy toggle."""
        if self.stream_watchdog_strict:
            return min(self.stream_watchdog_timeout, self.stream_strict_watchdog_timeout)
        return self.stream_watchdog_timeout


@lru_cache()
def get_settings() -> Settings:
    """
    Return a singleton instance of the application settings.

    Uses an internal cache to ensure the same Settings instance is returned on each call.
    """
    return Settings()

# Instantiate settings at import time for convenience
settings: Settings = get_settings()
