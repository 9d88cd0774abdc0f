import logging
import os
from pathlib import Path

from pydantic import field_validator
from pydantic_settings import BaseSettings


def _get_version() -> str:
    """Read version from pyproject.toml or environment variable."""
    # First check environment variable (for Docker/CI overrides)
    if env_version := os.getenv("VIGIL_VERSION"):
        return env_version

    # Try to read from pyproject.toml
    try:
        pyproject_path = Path(__file__).parent.parent.parent / "pyproject.toml"
        if pyproject_path.exists():
            content = pyproject_path.read_text()
            for line in content.split("\n"):
                if line.startswith("version"):
                    # Parse: version = "0.1.0"
                    return line.split("=")[1].strip().strip('"').strip("'")
    except OSError:
        pass

    return "0.0.0-dev"


# Application version - read from pyproject.toml, env var, or default to dev
APP_VERSION = _get_version()


class Settings(BaseSettings):
    # Database
    POSTGRES_HOST: str = "localhost"
    POSTGRES_PORT: int = 5432
    POSTGRES_USER: str = "vigil"
    POSTGRES_PASSWORD: str = "devpassword"
    POSTGRES_DB: str = "vigil"
    # Sized for one API process plus the trigger workers sharing the database
    DATABASE_POOL_SIZE: int = 20
    DATABASE_MAX_OVERFLOW: int = 40

    @property
    def DATABASE_URL(self) -> str:
        return (
            f"postgresql+asyncpg://{self.POSTGRES_USER}:{self.POSTGRES_PASSWORD}"
            f"@{self.POSTGRES_HOST}:{self.POSTGRES_PORT}/{self.POSTGRES_DB}"
        )

    @property
    def DATABASE_URL_SYNC(self) -> str:
        return (
            f"postgresql+psycopg2://{self.POSTGRES_USER}:{self.POSTGRES_PASSWORD}"
            f"@{self.POSTGRES_HOST}:{self.POSTGRES_PORT}/{self.POSTGRES_DB}"
        )

    # Redis (event log, job queue, scheduler locks)
    REDIS_URL: str = "redis://localhost:6379"

    # App
    APP_NAME: str = "Vigil"
    DEBUG: bool = False
    LOG_LEVEL: str = "INFO"

    # Trigger engine
    TRIGGER_CONSUMER_GROUP: str = "playbook-trigger-engine"
    TRIGGER_WORKER_CONCURRENCY: int = 5
    TRIGGER_POLL_INTERVAL_MS: int = 2000
    TRIGGER_BATCH_SIZE: int = 10
    EVENT_MAX_DELIVERIES: int = 5
    EVENT_CLAIM_IDLE_MS: int = 30000
    EVENT_STREAM_MAXLEN: int = 100000

    # Durable job queue
    JOB_MAX_ATTEMPTS: int = 3
    JOB_BACKOFF_BASE_MS: int = 2000
    JOB_BACKOFF_MAX_MS: int = 60000
    # Must outlast the longest playbook run; reclaimed jobs wait for it to lapse
    JOB_LEASE_MS: int = 600000

    # Playbook executor
    STEP_DEFAULT_TIMEOUT_MS: int = 30000

    # Correlation
    CORRELATION_TIME_WINDOW_HOURS: float = 24.0
    CORRELATION_CONFIDENCE_THRESHOLD: float = 0.65
    CORRELATION_LOOKBACK_HOURS: float = 24.0
    CORRELATION_MIN_ALERTS: int = 3
    CORRELATION_INTERVAL_MINUTES: int = 15
    CORRELATION_PERSIST_INCIDENTS: bool = True

    @field_validator("LOG_LEVEL")
    @classmethod
    def validate_log_level(cls, v: str) -> str:
        """Normalize the log level and reject names the logging module doesn't know."""
        level = v.strip().upper()
        if not isinstance(logging.getLevelName(level), int):
            raise ValueError(f"LOG_LEVEL must be a standard logging level, got {v!r}")
        return level

    @field_validator(
        "TRIGGER_WORKER_CONCURRENCY",
        "TRIGGER_POLL_INTERVAL_MS",
        "TRIGGER_BATCH_SIZE",
        "EVENT_MAX_DELIVERIES",
        "JOB_MAX_ATTEMPTS",
        "JOB_LEASE_MS",
        "STEP_DEFAULT_TIMEOUT_MS",
        "CORRELATION_INTERVAL_MINUTES",
    )
    @classmethod
    def validate_positive(cls, v: int, info) -> int:
        if v <= 0:
            raise ValueError(f"{info.field_name} must be a positive integer")
        return v

    @field_validator("CORRELATION_CONFIDENCE_THRESHOLD")
    @classmethod
    def validate_threshold(cls, v: float) -> float:
        if not 0.0 <= v <= 1.0:
            raise ValueError("CORRELATION_CONFIDENCE_THRESHOLD must be within [0, 1]")
        return v

    @field_validator("CORRELATION_TIME_WINDOW_HOURS", "CORRELATION_LOOKBACK_HOURS")
    @classmethod
    def validate_hours(cls, v: float, info) -> float:
        if v <= 0:
            raise ValueError(f"{info.field_name} must be greater than zero")
        return v

    class Config:
        env_file = ".env"
        case_sensitive = True


settings = Settings()
