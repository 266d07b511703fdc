from __future__ import annotations

"""Engine configuration loaded from ``STATEFLOW_*`` environment variables."""

from functools import lru_cache
from pathlib import Path
from typing import Optional

from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict


class EngineSettings(BaseSettings):
    """Settings shared by the scheduler, the engine facade and the API."""

    model_config = SettingsConfigDict(env_prefix="STATEFLOW_", extra="ignore")

    max_retry_interval_seconds: float = Field(
        default=300.0,
        gt=0,
        description="Upper bound on any single retry backoff, whatever the rule asks for.",
    )
    default_task_timeout_seconds: Optional[float] = Field(
        default=None,
        gt=0,
        description="Timeout for Task states that do not set TimeoutSeconds. Unset means no limit.",
    )
    execution_timeout_seconds: Optional[float] = Field(
        default=None,
        gt=0,
        description="Timeout for executions whose definition does not set TimeoutSeconds.",
    )
    max_map_concurrency: int = Field(
        default=0,
        ge=0,
        description="Engine-wide cap on concurrent Map iterations; 0 leaves MaxConcurrency alone.",
    )
    history_dir: Optional[Path] = Field(
        default=None,
        description="Directory for JSON-lines execution history. Unset keeps history in memory.",
    )
    log_level: str = Field(default="INFO")


@lru_cache
def get_settings() -> EngineSettings:
    """Return the process-wide settings instance."""

    return EngineSettings()


__all__ = ["EngineSettings", "get_settings"]
