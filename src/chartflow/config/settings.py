from __future__ import annotations

from functools import lru_cache

from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    model_config = SettingsConfigDict(
        env_prefix="CHARTFLOW_",
        env_file=".env",
        extra="ignore",
    )

    # Runtime
    ENVIRONMENT: str = Field(default="dev", description="Environment name")
    HOST: str = Field(default="0.0.0.0", description="Bind host")
    PORT: int = Field(default=7920, description="Bind port")

    # Database
    DATABASE_URL: str = Field(default="sqlite:///chartflow_dev.db")
    TEST_DATABASE_URL: str = Field(default="sqlite:///:memory:")
    SCHEMA_MODE: str = Field(
        default="create_all",
        description="create_all: auto-create tables (dev), migrations: use Alembic only (prod)",
    )

    # Queue
    JOB_MAX_ATTEMPTS_DEFAULT: int = Field(
        default=3, description="Claims allowed per job before it fails permanently"
    )
    JOB_RETRY_BACKOFF_SECONDS: int = Field(
        default=30,
        description="Advisory retry delay per attempt reported by fail_job (not enforced)",
    )
    JOB_STALE_TIMEOUT_MINUTES: int = Field(
        default=30, description="Processing lock age after which a job is released"
    )
    JOB_STATS_WINDOW_HOURS: int = Field(
        default=24, description="Look-back window for queue statistics"
    )
    JOB_RETENTION_DAYS: int = Field(
        default=7, description="Completed jobs older than this are removed by cleanup"
    )

    # Worker
    WORKER_POLL_INTERVAL_SECONDS: float = Field(
        default=2.0, description="Sleep between claim attempts when the queue is empty"
    )
    WORKER_ERROR_BACKOFF_SECONDS: float = Field(
        default=5.0, description="Sleep after a failed poll cycle"
    )
    DOWNLOAD_TIMEOUT_SECONDS: float = Field(
        default=60.0, description="Ceiling for fetching a document before OCR"
    )

    # External services
    OCR_BASE_URL: str = Field(
        default="http://localhost:8200", description="OCR extraction service base URL"
    )
    OCR_TIMEOUT_SECONDS: float = Field(default=120.0)
    AI_BASE_URL: str = Field(
        default="http://localhost:8300", description="AI coding service base URL"
    )
    AI_TIMEOUT_SECONDS: float = Field(default=180.0)
    AI_SERVICE_TOKEN: str = Field(default="", description="Bearer token for the AI service")

    # Object storage
    S3_BUCKET_NAME: str = Field(default="")
    S3_ENDPOINT_URL: str = Field(default="http://localhost:9000")
    S3_ACCESS_KEY_ID: str = Field(default="minioadmin")
    S3_SECRET_ACCESS_KEY: str = Field(default="minioadmin")
    S3_REGION_NAME: str = Field(default="us-east-1")
    S3_PRESIGN_EXPIRES_SECONDS: int = Field(default=3600)


@lru_cache(maxsize=1)
def get_settings() -> Settings:
    return Settings()
