from functools import lru_cache
from typing import Literal

from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """Application configuration loaded from environment variables."""

    model_config = SettingsConfigDict(env_prefix="THERAPY_SCHEDULER_", case_sensitive=False)

    environment: Literal["development", "staging", "production"] = "development"
    project_name: str = "Therapy Auto-Scheduling API"
    version: str = "0.1.0"

    debug: bool = False
    log_level: Literal["DEBUG", "INFO", "WARNING", "ERROR"] = "INFO"

    grid_resolution_minutes: int = Field(default=15, gt=0)
    # Compatibility scores go stale with entity edits; keep this in minutes, not hours.
    score_cache_ttl_seconds: float = Field(default=300.0, ge=0)
    scoring_workers: int = Field(default=4, ge=1)
    run_deadline_seconds: float | None = Field(default=None, gt=0)


@lru_cache
def get_settings() -> Settings:
    return Settings()
