"""Settings configuration for kiro-rotation."""

from functools import lru_cache
from pathlib import Path

import platformdirs
from pydantic import Field, field_validator, model_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

from kiro_rotation.rotation.constants import (
    ACCOUNTS_FILE_NAME,
    CONFIG_SUBDIR,
    DEFAULT_REGION,
    LOCK_BACKOFF_FACTOR,
    LOCK_MAX_TIMEOUT_SECONDS,
    LOCK_MIN_TIMEOUT_SECONDS,
    LOCK_RETRIES,
    TOAST_DEBOUNCE_MS,
    USAGE_FILE_NAME,
)
from kiro_rotation.rotation.pool import SelectionStrategy


__all__ = ["RotationSettings", "get_settings"]


def _default_accounts_path() -> Path:
    return Path(platformdirs.user_config_dir()) / CONFIG_SUBDIR / ACCOUNTS_FILE_NAME


def _default_usage_path() -> Path:
    return Path(platformdirs.user_config_dir()) / CONFIG_SUBDIR / USAGE_FILE_NAME


class RotationSettings(BaseSettings):
    """
    Configuration settings for the account rotation engine.

    Settings are loaded from environment variables with the KIRO_ prefix and
    from a .env file. Environment variables take precedence.
    """

    model_config = SettingsConfigDict(
        env_prefix="KIRO_",
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="ignore",
    )

    # Storage locations
    accounts_path: Path = Field(
        default_factory=_default_accounts_path,
        description="Path of the account metadata document",
    )

    usage_path: Path = Field(
        default_factory=_default_usage_path,
        description="Path of the usage metadata document",
    )

    # Selection
    strategy: SelectionStrategy = Field(
        default=SelectionStrategy.STICKY,
        description="Account selection strategy: sticky, round-robin or lowest-usage",
    )

    default_region: str = Field(
        default=DEFAULT_REGION,
        description="Region assumed for accounts that do not record one",
    )

    toast_debounce_ms: int = Field(
        default=TOAST_DEBOUNCE_MS,
        ge=0,
        description="Window in which repeated account-switch notifications are suppressed",
    )

    # File locking
    lock_retries: int = Field(
        default=LOCK_RETRIES,
        ge=0,
        le=50,
        description="Retries after the first failed lock attempt",
    )

    lock_min_timeout_seconds: float = Field(
        default=LOCK_MIN_TIMEOUT_SECONDS,
        gt=0,
        description="First back-off delay between lock attempts",
    )

    lock_max_timeout_seconds: float = Field(
        default=LOCK_MAX_TIMEOUT_SECONDS,
        gt=0,
        description="Upper bound for the back-off delay",
    )

    lock_backoff_factor: float = Field(
        default=LOCK_BACKOFF_FACTOR,
        ge=1.0,
        description="Multiplier applied to the delay after each attempt",
    )

    # Logging
    log_level: str = Field(
        default="INFO",
        description="Logging level (DEBUG, INFO, WARNING, ERROR, CRITICAL)",
    )

    log_json: bool = Field(
        default=False,
        description="Render log events as JSON instead of console output",
    )

    @field_validator("accounts_path", "usage_path", mode="after")
    @classmethod
    def expand_path(cls, v: Path) -> Path:
        return v.expanduser()

    @field_validator("log_level", mode="after")
    @classmethod
    def validate_log_level(cls, v: str) -> str:
        level = v.upper()
        if level not in {"DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"}:
            raise ValueError(f"Invalid log level: {v}")
        return level

    @model_validator(mode="after")
    def validate_lock_timeouts(self) -> "RotationSettings":
        if self.lock_min_timeout_seconds > self.lock_max_timeout_seconds:
            raise ValueError(
                "lock_min_timeout_seconds must not exceed lock_max_timeout_seconds"
            )
        return self


@lru_cache
def get_settings() -> RotationSettings:
    """Get the process-wide settings instance."""
    return RotationSettings()
