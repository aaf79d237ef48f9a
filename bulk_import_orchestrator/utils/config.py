"""
Configuration for Bulk Import Orchestrator

Settings come from an optional YAML file overlaid with ``BULK_IMPORT_*``
environment variables, validated by a pydantic model.
"""

import os
from pathlib import Path
from typing import Any, Dict, Mapping, Optional

import yaml
from pydantic import BaseModel, Field, ValidationError as PydanticValidationError, field_validator

from ..core.exceptions import ConfigurationError


ENV_PREFIX = "BULK_IMPORT_"


class ImportSettings(BaseModel):
    """Runtime settings for the import service, workers and CLI."""

    # Persistence
    database_url: str = "memory://"
    pool_size: int = Field(default=10, ge=1)

    # Batch executor
    worker_count: int = Field(default=2, ge=0)
    idle_interval: float = Field(default=5.0, gt=0)
    lease_seconds: int = Field(default=600, ge=1)
    max_error_files: int = Field(default=0, ge=0)
    max_row_failure_ratio: Optional[float] = Field(default=None, ge=0, le=1)
    run_workers: bool = True

    # Submission / polling
    retry_after_seconds: int = Field(default=120, ge=1)
    buffer_size: int = Field(default=1024, ge=1)
    spool_max_memory: int = Field(default=8 * 1024 * 1024, ge=0)
    tenant_header: str = "X-Tenant-ID"
    default_tenant: Optional[str] = None
    defer_incomplete_activation: bool = False

    # Record store collaborator; None selects the in-memory store
    record_store_url: Optional[str] = None
    record_store_timeout: float = Field(default=30.0, gt=0)

    # Logging
    log_level: str = "INFO"
    structured_logging: bool = True
    log_file: Optional[str] = None

    @field_validator("log_level")
    @classmethod
    def _check_log_level(cls, value: str) -> str:
        value = value.upper()
        if value not in {"DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"}:
            raise ValueError(f"unknown log level {value}")
        return value


def _env_overrides(environ: Mapping[str, str]) -> Dict[str, Any]:
    overrides = {}
    for name in ImportSettings.model_fields:
        key = f"{ENV_PREFIX}{name.upper()}"
        if key in environ:
            value = environ[key]
            overrides[name] = None if value == "" else value
    return overrides


def load_settings(path: Optional[str] = None, environ: Optional[Mapping[str, str]] = None,
                  **overrides: Any) -> ImportSettings:
    """
    Load settings from YAML, environment and explicit overrides (in that order).

    Args:
        path: Optional YAML file path
        environ: Environment mapping, defaults to ``os.environ``
        **overrides: Values that win over file and environment

    Returns:
        Validated ImportSettings

    Raises:
        ConfigurationError: If the file cannot be read or a value is invalid
    """
    data: Dict[str, Any] = {}

    if path:
        try:
            loaded = yaml.safe_load(Path(path).read_text(encoding="utf-8"))
        except (OSError, yaml.YAMLError) as e:
            raise ConfigurationError(str(path), f"Failed to read configuration file: {e}")
        if loaded is not None and not isinstance(loaded, dict):
            raise ConfigurationError(str(path), "Configuration file must contain a mapping")
        data.update(loaded or {})

    data.update(_env_overrides(os.environ if environ is None else environ))
    data.update({k: v for k, v in overrides.items() if v is not None})

    try:
        return ImportSettings.model_validate(data)
    except PydanticValidationError as e:
        first = e.errors()[0]
        key = ".".join(str(p) for p in first.get("loc", ())) or "settings"
        raise ConfigurationError(key, first.get("msg", str(e)))
