import pytest
from pydantic import ValidationError

from vigil.core.config import Settings, settings


def test_settings_loads():
    assert settings.POSTGRES_HOST is not None
    assert settings.DATABASE_URL.startswith("postgresql+asyncpg://")
    assert settings.DATABASE_URL_SYNC.startswith("postgresql+psycopg2://")


def test_log_level_is_normalized():
    assert Settings(LOG_LEVEL=" debug ").LOG_LEVEL == "DEBUG"


def test_unknown_log_level_rejected():
    with pytest.raises(ValidationError):
        Settings(LOG_LEVEL="LOUD")


@pytest.mark.parametrize(
    "field",
    [
        "TRIGGER_WORKER_CONCURRENCY",
        "JOB_MAX_ATTEMPTS",
        "JOB_LEASE_MS",
        "STEP_DEFAULT_TIMEOUT_MS",
        "CORRELATION_INTERVAL_MINUTES",
    ],
)
def test_counts_must_be_positive(field):
    with pytest.raises(ValidationError):
        Settings(**{field: 0})


@pytest.mark.parametrize("value", [-0.1, 1.5])
def test_confidence_threshold_range(value):
    with pytest.raises(ValidationError):
        Settings(CORRELATION_CONFIDENCE_THRESHOLD=value)


def test_windows_from_environment(monkeypatch):
    """Correlation windows can be tuned through the environment."""
    monkeypatch.setenv("CORRELATION_TIME_WINDOW_HOURS", "6")
    monkeypatch.setenv("CORRELATION_LOOKBACK_HOURS", "12")
    test_settings = Settings()
    assert test_settings.CORRELATION_TIME_WINDOW_HOURS == 6.0
    assert test_settings.CORRELATION_LOOKBACK_HOURS == 12.0


def test_zero_window_rejected():
    with pytest.raises(ValidationError):
        Settings(CORRELATION_TIME_WINDOW_HOURS=0)
