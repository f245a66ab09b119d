"""Pydantic schema for configuration validation.

All config values are validated at startup. Typos and invalid values
fail fast with clear error messages.

Usage:
    from hybrid_credits.config_schema import load_validated_config, AppConfig
    config = load_validated_config("config/config.yaml")
    # config is now a validated AppConfig instance
"""

from __future__ import annotations

from pathlib import Path
from typing import Any, Literal
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

import yaml
from pydantic import BaseModel, ConfigDict, Field, field_validator


# =============================================================================
# BASE MODEL WITH STRICT VALIDATION
# =============================================================================

class StrictModel(BaseModel):
    """Base model that rejects unknown fields (catches typos)."""

    model_config = ConfigDict(extra="forbid")


# =============================================================================
# CREDITS / QUOTA MODELS
# =============================================================================

class CreditsConfig(StrictModel):
    """Paid credit configuration."""

    starter_credits: int = Field(
        default=10,
        ge=0,
        description="Free credits granted to a new identity"
    )


class QuotaConfig(StrictModel):
    """Free daily quota configuration."""

    daily_limit: int = Field(
        default=5,
        gt=0,
        description="Free processing units per identity per calendar day"
    )
    timezone: str | None = Field(
        default=None,
        description="IANA time zone for the quota day (None = system local time)"
    )

    @field_validator("timezone")
    @classmethod
    def validate_timezone(cls, v: str | None) -> str | None:
        """Reject unknown time zone names."""
        if v is None:
            return v
        try:
            ZoneInfo(v)
        except (ZoneInfoNotFoundError, ValueError) as e:
            raise ValueError(f"Unknown time zone: {v}") from e
        return v


class PremiumConfig(StrictModel):
    """Subscription status refresh configuration."""

    refresh_throttle_seconds: float = Field(
        default=60.0,
        ge=0,
        description="Minimum seconds between subscription checks per identity"
    )


class RemoteConfig(StrictModel):
    """Remote ledger call configuration."""

    timeout_seconds: float = Field(
        default=10.0,
        gt=0,
        description="Timeout for each remote ledger call (surfaces as Unavailable)"
    )


# =============================================================================
# STORAGE MODELS
# =============================================================================

class StorageConfig(StrictModel):
    """On-device persistence configuration."""

    db_path: str = Field(
        default="data/hybrid_credits.db",
        description="SQLite file holding cached balances and identity state"
    )


class TimeoutsConfig(StrictModel):
    """SQLite lock and retry configuration."""

    state_store_lock: float = Field(
        default=5.0,
        gt=0,
        description="SQLite busy timeout in seconds"
    )
    state_store_retry_max: int = Field(
        default=5,
        ge=1,
        description="Max attempts on 'database is locked'"
    )
    state_store_retry_base: float = Field(
        default=0.1,
        ge=0,
        description="Base backoff delay in seconds"
    )
    state_store_retry_max_delay: float = Field(
        default=5.0,
        ge=0,
        description="Backoff delay cap in seconds"
    )


# =============================================================================
# LOGGING MODEL
# =============================================================================

class LoggingConfig(StrictModel):
    """Logging configuration."""

    level: Literal["DEBUG", "INFO", "WARNING", "ERROR"] = Field(
        default="INFO",
        description="Log level for the hybrid_credits logger"
    )
    audit_file: str = Field(
        default="logs/credits_audit.jsonl",
        description="Append-only JSONL audit trail of balance changes"
    )
    default_recent: int = Field(
        default=50,
        gt=0,
        description="Default number of recent audit events to return"
    )


# =============================================================================
# ROOT CONFIG MODEL
# =============================================================================

class AppConfig(StrictModel):
    """Root configuration model.

    All fields have sensible defaults, so an empty config file is valid.
    """

    credits: CreditsConfig = Field(default_factory=CreditsConfig)
    quota: QuotaConfig = Field(default_factory=QuotaConfig)
    premium: PremiumConfig = Field(default_factory=PremiumConfig)
    remote: RemoteConfig = Field(default_factory=RemoteConfig)
    storage: StorageConfig = Field(default_factory=StorageConfig)
    timeouts: TimeoutsConfig = Field(default_factory=TimeoutsConfig)
    logging: LoggingConfig = Field(default_factory=LoggingConfig)


# =============================================================================
# LOADING FUNCTIONS
# =============================================================================

def load_validated_config(config_path: str | Path = "config/config.yaml") -> AppConfig:
    """Load and validate configuration from YAML file.

    Args:
        config_path: Path to config YAML file.

    Returns:
        Validated AppConfig instance.

    Raises:
        FileNotFoundError: If config file doesn't exist.
        pydantic.ValidationError: If config is invalid (with detailed error message).
    """
    path = Path(config_path)
    if not path.exists():
        raise FileNotFoundError(f"Config file not found: {path}")

    with open(path) as f:
        raw_config = yaml.safe_load(f) or {}

    return AppConfig.model_validate(raw_config)


def validate_config_dict(config_dict: dict[str, Any]) -> AppConfig:
    """Validate a configuration dictionary.

    Raises:
        pydantic.ValidationError: If config is invalid.
    """
    return AppConfig.model_validate(config_dict)


__all__ = [
    "AppConfig",
    "CreditsConfig",
    "QuotaConfig",
    "PremiumConfig",
    "RemoteConfig",
    "StorageConfig",
    "TimeoutsConfig",
    "LoggingConfig",
    "load_validated_config",
    "validate_config_dict",
]
