"""Environment-driven configuration with Pydantic v2."""

from typing import List, Literal, Optional
from pydantic import Field, field_validator
from pydantic_settings import BaseSettings


class Settings(BaseSettings):
    """Application settings driven entirely by environment variables."""

    # Server Configuration
    host: str = Field(default="0.0.0.0", env="HOST")
    port: int = Field(default=3001, env="PORT", ge=1024, le=65535)
    debug: bool = Field(default=False, env="DEBUG")
    cors_origins: List[str] = Field(default=["*"], env="CORS_ORIGINS")

    # Broker / Storage
    redis_url: Optional[str] = Field(default="redis://localhost:6379/0", env="REDIS_URL")
    redis_enabled: bool = Field(default=False, env="REDIS_ENABLED")

    # Job Queue
    queue_name: str = Field(default="nexus-workflows", env="QUEUE_NAME")
    job_attempts: int = Field(default=3, env="JOB_ATTEMPTS", ge=1, le=20)
    job_backoff_delay_ms: int = Field(default=1000, env="JOB_BACKOFF_DELAY_MS", ge=0)
    job_retention_seconds: int = Field(default=86400, env="JOB_RETENTION_SECONDS", ge=60)
    stalled_job_timeout: int = Field(default=300, env="STALLED_JOB_TIMEOUT", ge=5)
    stalled_sweep_interval: int = Field(default=30, env="STALLED_SWEEP_INTERVAL", ge=1)

    # Worker
    embedded_worker: bool = Field(default=True, env="EMBEDDED_WORKER")
    worker_concurrency: int = Field(default=4, env="WORKER_CONCURRENCY", ge=1, le=64)
    worker_poll_interval: float = Field(default=0.5, env="WORKER_POLL_INTERVAL", ge=0.01, le=30.0)

    # Events
    events_channel: str = Field(default="workflow_events", env="EVENTS_CHANNEL")

    # Compiler
    strict_merge: bool = Field(default=True, env="STRICT_MERGE")

    # Google Sheets (service account JSON file)
    google_service_account_file: Optional[str] = Field(default=None, env="GOOGLE_SERVICE_ACCOUNT_FILE")
    sheets_read_range: str = Field(default="Sheet1!A2:Z", env="SHEETS_READ_RANGE")

    # HTTP node
    http_timeout: int = Field(default=30, env="HTTP_TIMEOUT", ge=1, le=300)

    # Logging
    log_level: str = Field(default="INFO", env="LOG_LEVEL")
    log_format: Literal["json", "console"] = Field(default="json", env="LOG_FORMAT")
    log_file: Optional[str] = Field(default=None, env="LOG_FILE")

    @field_validator("queue_name")
    @classmethod
    def validate_queue_name(cls, v):
        """Queue names become Redis key prefixes; keep them free of separators."""
        if not v or ":" in v or " " in v:
            raise ValueError("queue_name must be non-empty and contain no ':' or spaces")
        return v

    @property
    def is_development(self) -> bool:
        """Check if running in development mode."""
        return self.debug

    model_config = {
        "env_file": ".env",
        "env_file_encoding": "utf-8",
        "case_sensitive": False,
        "extra": "ignore",
        "env_parse_none_str": "none",
    }
