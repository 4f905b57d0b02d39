import pytest
from pydantic import ValidationError

from forgegraph.config import Settings, get_settings, reset_settings_cache
from forgegraph.service.resilience import RetryPolicy
from forgegraph.service.steps import PollSettings


def test_defaults():
    settings = Settings()

    assert settings.default_max_steps == 100
    assert settings.default_checkpoint_interval == 1
    assert settings.retry_max_retries == 3
    assert settings.retry_delay_ms == 1000
    assert settings.circuit_failure_threshold == 5
    assert settings.circuit_reset_timeout_ms == 60000
    assert settings.redis_url is None


def test_environment_overrides(monkeypatch):
    monkeypatch.setenv("DEFAULT_MAX_STEPS", "25")
    monkeypatch.setenv("RETRY_BACKOFF_FACTOR", "3")
    monkeypatch.setenv("REDIS_URL", "redis://cache:6379/0")

    settings = Settings.from_env()

    assert settings.default_max_steps == 25
    assert settings.retry_backoff_factor == 3.0
    assert settings.redis_url == "redis://cache:6379/0"


def test_dotenv_file_is_read(monkeypatch, tmp_path):
    (tmp_path / ".env").write_text("DEFAULT_CHECKPOINT_INTERVAL=5\n")
    monkeypatch.chdir(tmp_path)
    monkeypatch.delenv("DEFAULT_CHECKPOINT_INTERVAL", raising=False)

    assert Settings.from_env().default_checkpoint_interval == 5


def test_environment_beats_dotenv(monkeypatch, tmp_path):
    (tmp_path / ".env").write_text("DEFAULT_MAX_STEPS=5\n")
    monkeypatch.chdir(tmp_path)
    monkeypatch.setenv("DEFAULT_MAX_STEPS", "7")

    assert Settings.from_env().default_max_steps == 7


@pytest.mark.parametrize(
    "field,value",
    [
        ("default_max_steps", 0),
        ("checkpoint_workers", 0),
        ("retry_delay_ms", -1),
        ("retry_backoff_factor", 0.5),
        ("human_input_poll_interval_seconds", 0),
    ],
)
def test_invalid_values_rejected(field, value):
    with pytest.raises(ValidationError):
        Settings(**{field: value})


def test_non_positive_expiry_disables_expiry():
    assert Settings(checkpoint_expires_in_days=0).checkpoint_expires_in_days is None
    assert Settings(checkpoint_expires_in_days=14).checkpoint_expires_in_days == 14


def test_settings_are_cached_until_reset(monkeypatch):
    reset_settings_cache()
    first = get_settings()
    monkeypatch.setenv("DEFAULT_MAX_STEPS", "42")

    assert get_settings() is first
    reset_settings_cache()
    assert get_settings().default_max_steps == 42


def test_policies_from_settings():
    settings = Settings(
        retry_max_retries=1,
        retry_delay_ms=10,
        human_input_poll_interval_seconds=0.5,
        human_input_max_wakeups=7,
    )

    assert RetryPolicy.from_settings(settings) == RetryPolicy(1, 10, 2.0)
    poll = PollSettings.from_settings(settings)
    assert poll.interval_seconds == 0.5
    assert poll.max_wakeups == 7
