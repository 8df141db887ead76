"""
Shelfwise Configuration — Load and validate shelfwise.yaml at startup.

Usage:
    from shelfwise.engine.config import load_config, get_config

Resolution:
    1. Explicit path passed to load_config()
    2. $SHELFWISE_CONFIG
    3. shelfwise.yaml found by walking up from CWD
    4. Built-in defaults

$SHELFWISE_DATABASE_URL overrides database.url regardless of source.
"""

from __future__ import annotations

import os
from pathlib import Path
from typing import Optional

import yaml
from pydantic import BaseModel, Field, ValidationError as PydanticValidationError, field_validator

from shelfwise.engine.errors import ConfigError

CONFIG_FILENAME = "shelfwise.yaml"
CONFIG_ENV_VAR = "SHELFWISE_CONFIG"
DATABASE_URL_ENV_VAR = "SHELFWISE_DATABASE_URL"


# ---------------------------------------------------------------------------
# Pydantic models for shelfwise.yaml
# ---------------------------------------------------------------------------

class DatabaseConfig(BaseModel):
    url: str = "sqlite:///shelfwise.db"
    pool_size: int = 10
    max_overflow: int = 20
    pool_timeout: int = 30
    pool_recycle: int = 1800
    pool_pre_ping: bool = True
    echo: bool = False


class HierarchyConfig(BaseModel):
    name_max_length: int = Field(default=100, ge=1)
    move_conflict_retries: int = Field(default=2, ge=0)
    default_color: str = "#16A34A"


class SecurityConfig(BaseModel):
    grant_sweep_cron: str = "0 3 * * *"
    allow_past_expiry: bool = False

    @field_validator("grant_sweep_cron")
    @classmethod
    def validate_cron(cls, v: str) -> str:
        if len(v.split()) != 5:
            raise ValueError(f"grant_sweep_cron must have 5 fields, got '{v}'")
        return v


class ActivityConfig(BaseModel):
    enabled: bool = True
    directory: str = ".shelfwise/activity"
    history_days: int = 30


class LoggingConfig(BaseModel):
    level: str = "INFO"
    directory: str = ".shelfwise/logs"

    @field_validator("level")
    @classmethod
    def validate_level(cls, v: str) -> str:
        v = v.upper()
        if v not in ("DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"):
            raise ValueError(f"unknown log level '{v}'")
        return v


class CeleryConfig(BaseModel):
    broker: str = "redis://localhost:6379/0"
    result_backend: str = "redis://localhost:6379/1"


class ShelfwiseConfig(BaseModel):
    """Root model for shelfwise.yaml."""
    environment: str = "dev"

    database: DatabaseConfig = DatabaseConfig()
    hierarchy: HierarchyConfig = HierarchyConfig()
    security: SecurityConfig = SecurityConfig()
    activity: ActivityConfig = ActivityConfig()
    logging: LoggingConfig = LoggingConfig()
    celery: CeleryConfig = CeleryConfig()

    @field_validator("environment")
    @classmethod
    def validate_environment(cls, v: str) -> str:
        if v not in ("dev", "staging", "prod"):
            raise ValueError(f"environment must be dev/staging/prod, got '{v}'")
        return v


# ---------------------------------------------------------------------------
# Config loading
# ---------------------------------------------------------------------------

_config: Optional[ShelfwiseConfig] = None


def _find_config_file() -> Optional[Path]:
    """Walk up from CWD looking for shelfwise.yaml."""
    current = Path.cwd()
    for parent in [current, *current.parents]:
        candidate = parent / CONFIG_FILENAME
        if candidate.exists():
            return candidate
    return None


def load_config(config_path: Optional[str] = None) -> ShelfwiseConfig:
    """
    Load and validate shelfwise.yaml.

    Args:
        config_path: Explicit path to the YAML file. If None, uses
                     $SHELFWISE_CONFIG or auto-discovers.

    Returns:
        Validated ShelfwiseConfig instance (also cached for get_config()).

    Raises:
        ConfigError: unreadable YAML, or values that fail validation.
    """
    global _config

    if config_path is None:
        config_path = os.environ.get(CONFIG_ENV_VAR)

    path: Optional[Path]
    if config_path is not None:
        path = Path(config_path)
        if not path.exists():
            raise ConfigError(f"Config file not found: {path}", path=str(path))
    else:
        path = _find_config_file()

    raw: dict = {}
    if path is not None:
        try:
            with open(path, "r", encoding="utf-8") as f:
                raw = yaml.safe_load(f) or {}
        except yaml.YAMLError as exc:
            raise ConfigError(f"Invalid YAML in {path}: {exc}", path=str(path)) from exc
        if not isinstance(raw, dict):
            raise ConfigError(f"{path} must contain a mapping at the top level", path=str(path))

    db_url = os.environ.get(DATABASE_URL_ENV_VAR)
    if db_url:
        raw.setdefault("database", {})
        raw["database"] = {**(raw["database"] or {}), "url": db_url}

    try:
        _config = ShelfwiseConfig(**raw)
    except PydanticValidationError as exc:
        raise ConfigError(
            f"Invalid configuration: {exc.error_count()} error(s)",
            path=str(path) if path else None,
            errors=exc.errors(),
        ) from exc
    return _config


def get_config() -> ShelfwiseConfig:
    """Get the currently loaded config, loading if necessary."""
    global _config
    if _config is None:
        _config = load_config()
    return _config


def reset_config() -> None:
    """Forget the cached config (tests, reloads)."""
    global _config
    _config = None
