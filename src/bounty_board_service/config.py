"""
Configuration management for the bounty board engine.

Loads configuration from YAML with ZERO defaults for required sections.
Every value must be explicitly specified or startup fails.
"""

from __future__ import annotations

import os
from functools import lru_cache
from pathlib import Path
from typing import Any

import yaml
from pydantic import BaseModel, ConfigDict, field_validator

REDACTION_MARKER = "***REDACTED***"

_SENSITIVE_KEY_FRAGMENTS = ("secret", "password", "token", "private_key")


class ServiceConfig(BaseModel):
    """Service identity configuration."""

    model_config = ConfigDict(extra="forbid")
    name: str
    version: str


class ServerConfig(BaseModel):
    """HTTP server configuration."""

    model_config = ConfigDict(extra="forbid")
    host: str
    port: int
    log_level: str


class LoggingConfig(BaseModel):
    """Logging configuration."""

    model_config = ConfigDict(extra="forbid")
    level: str
    directory: str


class DatabaseConfig(BaseModel):
    """Engine database configuration."""

    model_config = ConfigDict(extra="forbid")
    path: str


class LedgerConfig(BaseModel):
    """Local wallet ledger adapter configuration."""

    model_config = ConfigDict(extra="forbid")
    path: str
    secret_env_prefix: str | None = None


class SettlementConfig(BaseModel):
    """Escrow settlement behaviour."""

    model_config = ConfigDict(extra="forbid")
    timeout_seconds: float
    default_asset: str
    require_funded_escrow: bool
    retry_interval_seconds: int

    @field_validator("timeout_seconds")
    @classmethod
    def _positive_timeout(cls, value: float) -> float:
        if value <= 0:
            msg = "timeout_seconds must be positive"
            raise ValueError(msg)
        return value

    @field_validator("retry_interval_seconds")
    @classmethod
    def _non_negative_interval(cls, value: int) -> int:
        if value < 0:
            msg = "retry_interval_seconds must be >= 0 (0 disables the sweep)"
            raise ValueError(msg)
        return value


class Settings(BaseModel):
    """
    Root configuration container.

    All sections are REQUIRED. No defaults exist.
    Missing fields cause immediate startup failure.
    """

    model_config = ConfigDict(extra="forbid")
    service: ServiceConfig
    server: ServerConfig
    logging: LoggingConfig
    database: DatabaseConfig
    ledger: LedgerConfig
    settlement: SettlementConfig


def get_config_path() -> Path:
    """Determine configuration file path from CONFIG_PATH, else the project root."""
    env_path = os.environ.get("CONFIG_PATH")
    if env_path:
        return Path(env_path)
    return Path(__file__).resolve().parents[2] / "config.yaml"


@lru_cache(maxsize=1)
def get_settings() -> Settings:
    """Load and cache settings from the configured YAML file."""
    config_path = get_config_path()
    raw = yaml.safe_load(config_path.read_text())
    if not isinstance(raw, dict):
        msg = f"Invalid config file: {config_path}"
        raise ValueError(msg)
    return Settings(**raw)


def clear_settings_cache() -> None:
    """Drop cached settings so the next call re-reads the file."""
    get_settings.cache_clear()


def _redact(value: Any) -> Any:
    if isinstance(value, dict):
        return {
            key: (
                REDACTION_MARKER
                if any(fragment in key.lower() for fragment in _SENSITIVE_KEY_FRAGMENTS)
                and val is not None
                else _redact(val)
            )
            for key, val in value.items()
        }
    if isinstance(value, list):
        return [_redact(item) for item in value]
    return value


def get_safe_config() -> dict[str, Any]:
    """Get configuration with sensitive values redacted."""
    redacted: dict[str, Any] = _redact(get_settings().model_dump())
    return redacted
