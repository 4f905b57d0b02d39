from __future__ import annotations

import os
from typing import Any

from dotenv import dotenv_values
from pydantic import BaseModel, ConfigDict, Field, field_validator

from forgegraph.logging import get_logger

logger = get_logger(__name__)


def env_field(default: Any, env: str, **kwargs):
    extra = kwargs.pop("json_schema_extra", {}) or {}
    extra = {**extra, "env": env}
    return Field(default, json_schema_extra=extra, **kwargs)


class Settings(BaseModel):
    """Runtime settings for the graph engine and its collaborators."""

    database_url: str = env_field(
        "postgresql://localhost:5432/forgegraph", "DATABASE_URL"
    )
    use_memory_store: bool = env_field(
        True,
        "USE_MEMORY_STORE",
        description="Persist checkpoints to a JSON file instead of Postgres",
    )
    state_fs_root: str = env_field("/var/lib/forgegraph", "STATE_FS_ROOT")
    redis_url: str | None = env_field(
        None,
        "REDIS_URL",
        description="Optional Redis used to push approval resolutions to waiting steps",
    )
    test_mode: bool = env_field(False, "TEST_MODE")

    # Execution engine
    default_max_steps: int = env_field(100, "DEFAULT_MAX_STEPS")
    default_checkpoint_interval: int = env_field(
        1,
        "DEFAULT_CHECKPOINT_INTERVAL",
        description="Persist the checkpoint every N completed steps",
    )
    checkpoint_expires_in_days: int | None = env_field(
        None, "CHECKPOINT_EXPIRES_IN_DAYS"
    )
    checkpoint_workers: int = env_field(
        4,
        "CHECKPOINT_WORKERS",
        description="Thread pool size for blocking persistence calls",
    )

    # Resilience defaults
    retry_max_retries: int = env_field(3, "RETRY_MAX_RETRIES")
    retry_delay_ms: int = env_field(1000, "RETRY_DELAY_MS")
    retry_backoff_factor: float = env_field(2.0, "RETRY_BACKOFF_FACTOR")
    circuit_failure_threshold: int = env_field(5, "CIRCUIT_FAILURE_THRESHOLD")
    circuit_reset_timeout_ms: int = env_field(60000, "CIRCUIT_RESET_TIMEOUT_MS")

    # Human input polling fallback
    human_input_poll_interval_seconds: float = env_field(
        2.0, "HUMAN_INPUT_POLL_INTERVAL_SECONDS"
    )
    human_input_poll_backoff_factor: float = env_field(
        1.5, "HUMAN_INPUT_POLL_BACKOFF_FACTOR"
    )
    human_input_max_poll_interval_seconds: float = env_field(
        10.0, "HUMAN_INPUT_MAX_POLL_INTERVAL_SECONDS"
    )
    human_input_max_wakeups: int = env_field(
        600,
        "HUMAN_INPUT_MAX_WAKEUPS",
        description="Upper bound on approval-store checks per Human-Input step",
    )
    human_input_default_timeout_seconds: float = env_field(
        300, "HUMAN_INPUT_DEFAULT_TIMEOUT_SECONDS"
    )

    # Model-call defaults
    default_model: str = env_field("llama3-8b-8192", "DEFAULT_MODEL")
    default_temperature: float = env_field(0.7, "DEFAULT_TEMPERATURE")
    completion_api_key: str | None = env_field(
        None,
        "GROQ_API_KEY",
        description="API key for the OpenAI-compatible completion endpoint",
    )
    completion_base_url: str = env_field(
        "https://api.groq.com/openai/v1", "COMPLETION_BASE_URL"
    )
    completion_max_tokens: int = env_field(1024, "COMPLETION_MAX_TOKENS")
    completion_timeout_seconds: float = env_field(60.0, "COMPLETION_TIMEOUT_SECONDS")

    model_config = ConfigDict(extra="ignore")

    @classmethod
    def from_env(cls) -> "Settings":
        env_file_values = dotenv_values(".env")
        merged: dict[str, str] = {}
        for name, field in cls.model_fields.items():
            extra = field.json_schema_extra or {}
            env_key = extra.get("env") if isinstance(extra, dict) else None
            env_name = env_key or name.upper()
            if env_name in os.environ:
                merged[name] = os.environ[env_name]
            elif env_name in env_file_values:
                merged[name] = env_file_values[env_name]
        return cls(**merged)

    @field_validator(
        "default_max_steps",
        "default_checkpoint_interval",
        "checkpoint_workers",
        "circuit_failure_threshold",
        "human_input_max_wakeups",
        "completion_max_tokens",
    )
    @classmethod
    def _ensure_positive_int(cls, value: int) -> int:
        if value < 1:
            raise ValueError("must be at least 1")
        return value

    @field_validator("retry_max_retries", "retry_delay_ms", "circuit_reset_timeout_ms")
    @classmethod
    def _ensure_non_negative(cls, value: int) -> int:
        if value < 0:
            raise ValueError("must not be negative")
        return value

    @field_validator("retry_backoff_factor", "human_input_poll_backoff_factor")
    @classmethod
    def _ensure_backoff_factor(cls, value: float) -> float:
        if value < 1.0:
            raise ValueError("backoff factor must be >= 1")
        return value

    @field_validator(
        "human_input_poll_interval_seconds", "human_input_max_poll_interval_seconds"
    )
    @classmethod
    def _ensure_poll_interval(cls, value: float) -> float:
        if value <= 0:
            raise ValueError("poll interval must be positive")
        return value

    @field_validator("checkpoint_expires_in_days")
    @classmethod
    def _validate_expiry(cls, value: int | None) -> int | None:
        if value is not None and value <= 0:
            logger.warning("checkpoint_expiry_ignored", value=value)
            return None
        return value


def get_settings() -> Settings:
    global _settings_cache
    if _settings_cache is None:
        _settings_cache = Settings.from_env()
    return _settings_cache


_settings_cache: Settings | None = None


def reset_settings_cache() -> None:
    """Clear cached settings so future calls re-read the environment."""

    global _settings_cache
    _settings_cache = None
