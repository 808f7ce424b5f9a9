"""
FileVault Configuration: Load and validate filevault.yaml at startup.

Usage:
    from filevault.engine.config import load_platform_config, get_platform_config
"""

from __future__ import annotations

from pathlib import Path
from typing import Optional

import yaml
from pydantic import BaseModel, Field, ValidationError as PydanticValidationError, field_validator

from filevault.engine.errors import ConfigError

CONFIG_FILENAME = "filevault.yaml"


# ---------------------------------------------------------------------------
# Pydantic models for filevault.yaml
# ---------------------------------------------------------------------------

class DatabaseConfig(BaseModel):
    url: str = "sqlite:///.filevault/filevault.db"
    pool_size: int = 10
    max_overflow: int = 20
    pool_timeout: int = 30
    pool_recycle: int = 1800
    pool_pre_ping: bool = True
    echo: bool = False


class StorageConfig(BaseModel):
    root: str = ".filevault/blobs"
    chunk_size: int = Field(default=64 * 1024, gt=0)


class LogRetentionConfig(BaseModel):
    execution_days: int = 90
    security_days: int = 365


class LogAsyncQueueConfig(BaseModel):
    flush_interval_ms: int = 100
    flush_batch_size: int = 50
    max_queue_size: int = 10000


class LoggingConfig(BaseModel):
    level: str = "INFO"
    directory: str = ".filevault/logs"
    compress_after_days: int = 7
    retention: LogRetentionConfig = LogRetentionConfig()
    async_queue: LogAsyncQueueConfig = LogAsyncQueueConfig()

    @field_validator("level")
    @classmethod
    def validate_level(cls, v: str) -> str:
        v = v.upper()
        if v not in ("DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"):
            raise ValueError(f"invalid log level '{v}'")
        return v


class DocumentsConfig(BaseModel):
    max_upload_size_mb: int = Field(default=50, gt=0)
    max_name_length: int = Field(default=255, gt=0)


class PlatformConfig(BaseModel):
    """Root model for filevault.yaml."""
    name: str = "FileVault"
    environment: str = "dev"

    database: DatabaseConfig = DatabaseConfig()
    storage: StorageConfig = StorageConfig()
    logging: LoggingConfig = LoggingConfig()
    documents: DocumentsConfig = DocumentsConfig()

    @field_validator("environment")
    @classmethod
    def validate_environment(cls, v: str) -> str:
        if v not in ("dev", "staging", "prod"):
            raise ValueError(f"environment must be dev/staging/prod, got '{v}'")
        return v


# ---------------------------------------------------------------------------
# Config Loading Functions
# ---------------------------------------------------------------------------

_platform_config: Optional[PlatformConfig] = None


def _find_project_root() -> Path:
    """Find the project root by looking for filevault.yaml."""
    current = Path.cwd()
    for parent in [current, *current.parents]:
        if (parent / CONFIG_FILENAME).exists():
            return parent
    return current


def load_platform_config(config_path: Optional[str] = None) -> PlatformConfig:
    """
    Load and validate filevault.yaml.

    Args:
        config_path: Explicit path to filevault.yaml. If None, auto-discovers.

    Returns:
        Validated PlatformConfig instance. Defaults if the file is absent.

    Raises:
        ConfigError: the file exists but is not valid YAML or fails validation.
    """
    global _platform_config

    if config_path is None:
        config_path = str(_find_project_root() / CONFIG_FILENAME)

    path = Path(config_path)
    if not path.exists():
        _platform_config = PlatformConfig()
        return _platform_config

    try:
        with open(path, "r", encoding="utf-8") as f:
            raw = yaml.safe_load(f) or {}
    except yaml.YAMLError as e:
        raise ConfigError(f"Invalid YAML in {path}: {e}", config_path=str(path)) from e

    # Allow an optional top-level "platform:" block for name/environment
    platform_data = raw.get("platform", {}) or {}
    config_data = {
        "name": platform_data.get("name", raw.get("name", "FileVault")),
        "environment": platform_data.get("environment", raw.get("environment", "dev")),
        "database": raw.get("database", {}) or {},
        "storage": raw.get("storage", {}) or {},
        "logging": raw.get("logging", {}) or {},
        "documents": raw.get("documents", {}) or {},
    }

    try:
        _platform_config = PlatformConfig(**config_data)
    except PydanticValidationError as e:
        raise ConfigError(
            f"Invalid configuration in {path}",
            config_path=str(path),
            validation_errors=e.errors(),
        ) from e
    return _platform_config


def get_platform_config() -> PlatformConfig:
    """Get the currently loaded platform config, loading if necessary."""
    global _platform_config
    if _platform_config is None:
        _platform_config = load_platform_config()
    return _platform_config


def get_environment() -> str:
    """Get the current platform environment."""
    return get_platform_config().environment
