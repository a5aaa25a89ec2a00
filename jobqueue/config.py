"""Configuration management using Pydantic Settings."""

from functools import lru_cache
from typing import Literal, Optional

from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """Queue engine settings loaded from environment variables."""

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="ignore",
    )

    # Logging
    log_level: str = Field(default="INFO", description="Logging level")
    log_format: Literal["json", "console"] = Field(
        default="json", description="Log renderer: json for services, console for terminals"
    )

    # Storage driver
    queue_driver: str = Field(
        default="database",
        description="Storage driver: database (PostgreSQL) or redis",
    )

    # PostgreSQL
    database_url: Optional[str] = Field(
        default=None, description="PostgreSQL connection URL for the database driver"
    )
    db_pool_min_size: int = Field(default=1, description="Minimum connection pool size")
    db_pool_max_size: int = Field(default=10, description="Maximum connection pool size")

    # Redis
    redis_url: str = Field(
        default="redis://localhost:6379/0", description="Redis connection URL"
    )
    redis_prefix: str = Field(
        default="jobqueue:", description="Key namespace for every Redis key"
    )

    # Dispatch defaults
    default_queue: str = Field(
        default="default", description="Queue used when a job does not name one"
    )
    unique_lock_ttl_seconds: int = Field(
        default=3600, ge=1, description="Default TTL for unique-job dedup locks"
    )

    # Worker loop
    worker_sleep_seconds: float = Field(
        default=3.0, ge=0.0, description="Sleep between polls that found no job"
    )
    worker_max_jobs: int = Field(
        default=0, ge=0, description="Stop after this many jobs (0 = unbounded)"
    )
    worker_timeout_seconds: int = Field(
        default=0, ge=0, description="Stop after this many seconds (0 = unbounded)"
    )
    job_stale_timeout_minutes: int = Field(
        default=30, ge=1, description="Running jobs older than this are presumed abandoned"
    )
    stale_reap_interval_seconds: int = Field(
        default=60, ge=0, description="Worker-loop stale sweep period (0 = disabled)"
    )
    schedule_check_interval_seconds: int = Field(
        default=60, ge=0, description="Worker-loop schedule check period (0 = disabled)"
    )

    # Event bus
    event_bus_mode: Literal["memory", "redis"] = Field(
        default="memory",
        description="Event fan-out: memory (in-process) or redis (stream for other processes)",
    )
    event_bus_buffer_size: int = Field(
        default=1000, ge=1, description="Recent-event buffer size / Redis stream MAXLEN"
    )


@lru_cache
def get_settings() -> Settings:
    """Get cached settings instance."""
    return Settings()
