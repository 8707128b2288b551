"""Configuration management using YAML and Pydantic."""

import os
import re
from pathlib import Path
from typing import Any, Optional

import yaml
from pydantic import BaseModel, Field, field_validator, model_validator

from migrator.exceptions import ConfigurationError

_ENV_PATTERN = re.compile(r"\$\{([^}:]+)(?::-([^}]*))?\}")

STRATEGIES = ("safe", "fast", "hybrid")


def _substitute_env_vars(value: str) -> str:
    """Substitute ${VAR} and ${VAR:-default} references in a string.

    Raises:
        ValueError: If a variable is unset and has no default
    """

    def replacer(match: re.Match[str]) -> str:
        var_name = match.group(1)
        default = match.group(2)
        env_value = os.getenv(var_name)
        if env_value is not None:
            return env_value
        if default is not None:
            return default
        raise ValueError(f"Environment variable {var_name} not set and no default provided")

    return _ENV_PATTERN.sub(replacer, value)


def _substitute_env_in_dict(data: Any) -> Any:
    """Recursively substitute environment variables in a parsed YAML document."""
    if isinstance(data, dict):
        return {key: _substitute_env_in_dict(value) for key, value in data.items()}
    if isinstance(data, list):
        return [_substitute_env_in_dict(item) for item in data]
    if isinstance(data, str):
        return _substitute_env_vars(data)
    return data


class LocalStoreConfig(BaseModel):
    """Local key-value store configuration."""

    path: str = Field(description="Path of the JSON document holding the local key-value store")
    create_if_missing: bool = Field(
        default=False,
        description="Create an empty store when the file does not exist",
    )


class RemoteConfig(BaseModel):
    """Remote PostgreSQL store configuration."""

    name: str = Field(description="Database name")
    host: str = Field(description="Database host")
    port: int = Field(default=5432, description="Database port", gt=0, lt=65536)
    user: str = Field(description="Database user")
    password_env: Optional[str] = Field(
        default=None,
        description="Environment variable name containing database password (preferred)",
    )
    password: Optional[str] = Field(
        default=None,
        description="Database password (development only - use password_env in production)",
    )
    pool_size: int = Field(default=5, description="Connection pool size", gt=0, le=50)
    command_timeout: Optional[float] = Field(
        default=None,
        description="Per-command timeout in seconds (None inherits the client default)",
        gt=0,
    )
    connect_attempts: int = Field(
        default=3,
        description="Connection attempts before giving up",
        ge=1,
        le=10,
    )

    @model_validator(mode="after")
    def validate_password_source(self) -> "RemoteConfig":
        """Validate that exactly one password source is provided."""
        if not self.password_env and not self.password:
            raise ValueError("Either 'password_env' or 'password' must be provided.")
        if self.password_env and self.password:
            raise ValueError("Cannot specify both 'password_env' and 'password'.")
        return self

    def get_password(self) -> str:
        """Get password from environment variable or config file.

        Raises:
            ValueError: If password cannot be retrieved
        """
        if self.password_env:
            password = os.getenv(self.password_env)
            if not password:
                raise ValueError(f"Environment variable {self.password_env} not set")
            return password
        if self.password:
            import warnings

            warnings.warn(
                f"Using password from config file for database '{self.name}'. "
                "Use 'password_env' instead.",
                UserWarning,
                stacklevel=2,
            )
            return self.password
        raise ValueError("No password source configured")


class S3BackupConfig(BaseModel):
    """Optional S3 destination for exported backup copies."""

    bucket: str = Field(description="S3 bucket name")
    prefix: str = Field(default="pomodoro-backups/", description="S3 key prefix")
    region: str = Field(default="us-east-1", description="AWS region")
    endpoint: Optional[str] = Field(
        default=None,
        description="Custom endpoint for S3-compatible storage (MinIO etc.)",
    )


class BackupConfig(BaseModel):
    """Backup and snapshot configuration."""

    download_dir: Optional[str] = Field(
        default=None,
        description="Directory receiving exported backup files (None disables local export)",
    )
    s3: Optional[S3BackupConfig] = Field(
        default=None,
        description="S3 destination for exported backup files",
    )
    compress: bool = Field(default=True, description="Gzip backup payloads")
    checksum: bool = Field(default=True, description="Store a SHA-256 checksum with each backup")
    compression_level: int = Field(
        default=6,
        description="Gzip compression level (1=fastest, 9=best compression)",
        ge=1,
        le=9,
    )
    max_snapshots: int = Field(default=10, description="Snapshot ring buffer capacity", ge=1)
    max_backup_history: int = Field(
        default=20,
        description="Number of backup metadata entries kept",
        ge=1,
    )


class MigrationDefaults(BaseModel):
    """Default options for migration runs."""

    strategy: str = Field(default="safe", description="Migration strategy (safe, fast, hybrid)")
    batch_size: int = Field(default=10, description="Users per migration batch", gt=0)
    auto_backup: bool = Field(default=True, description="Create a full backup before migrating")
    validate_data: bool = Field(default=True, description="Validate the export before migrating")
    ignore_validation_errors: bool = Field(
        default=False,
        description="Continue to remote writes even when export validation fails",
    )
    enable_hybrid_mode: bool = Field(
        default=True,
        description="Activate hybrid mode after a successful safe migration",
    )
    preflight_health_check: bool = Field(
        default=True,
        description="Run a health check before the safe strategy starts",
    )

    @field_validator("strategy")
    @classmethod
    def validate_strategy(cls, v: str) -> str:
        """Validate strategy name."""
        if v not in STRATEGIES:
            raise ValueError(f"strategy must be one of {', '.join(STRATEGIES)}")
        return v


class ValidationConfig(BaseModel):
    """Dataset validation limits."""

    batch_size: int = Field(default=100, description="Records validated per batch", gt=0)
    max_errors: int = Field(
        default=1000,
        description="Invalid records per entity type before validation of that type stops",
        gt=0,
    )
    large_dataset_bytes: int = Field(
        default=5 * 1024 * 1024,
        description="Dataset size above which batching is recommended",
        gt=0,
    )


class HybridConfig(BaseModel):
    """Hybrid (dual-store) mode configuration."""

    sync_interval_seconds: float = Field(
        default=300.0,
        description="Interval between periodic sync queue drains",
        gt=0,
    )
    max_attempts: int = Field(
        default=3,
        description="Attempts per sync queue item before it is permanently failed",
        ge=1,
    )


class MonitoringConfig(BaseModel):
    """Monitoring and metrics configuration."""

    metrics_enabled: bool = Field(default=False, description="Enable Prometheus metrics")
    metrics_port: int = Field(
        default=8000,
        description="Port for Prometheus metrics endpoint",
        gt=0,
        lt=65536,
    )


class MigratorConfig(BaseModel):
    """Root configuration model."""

    version: str = Field(description="Configuration version")
    local_store: LocalStoreConfig = Field(description="Local key-value store")
    remote: Optional[RemoteConfig] = Field(
        default=None,
        description="Remote PostgreSQL store (required for migration and hybrid mode)",
    )
    backup: BackupConfig = Field(default_factory=BackupConfig, description="Backups")
    migration: MigrationDefaults = Field(
        default_factory=MigrationDefaults,
        description="Migration defaults",
    )
    validation: ValidationConfig = Field(
        default_factory=ValidationConfig,
        description="Validation limits",
    )
    hybrid: HybridConfig = Field(default_factory=HybridConfig, description="Hybrid mode")
    monitoring: MonitoringConfig = Field(
        default_factory=MonitoringConfig,
        description="Monitoring and metrics configuration",
    )

    @field_validator("version")
    @classmethod
    def validate_version(cls, v: str) -> str:
        """Validate configuration version."""
        if v != "1.0":
            raise ValueError(f"Unsupported configuration version: {v}")
        return v

    def require_remote(self) -> RemoteConfig:
        """Return the remote configuration or fail.

        Raises:
            ConfigurationError: If no remote store is configured
        """
        if self.remote is None:
            raise ConfigurationError("Remote store is not configured ('remote' section missing)")
        return self.remote


def load_config(config_path: Path) -> MigratorConfig:
    """Load and validate configuration from YAML file.

    Args:
        config_path: Path to YAML configuration file

    Returns:
        Validated configuration object

    Raises:
        ConfigurationError: If configuration is missing or invalid
    """
    try:
        with open(config_path, encoding="utf-8") as f:
            raw_config = yaml.safe_load(f)

        if not raw_config:
            raise ValueError("Configuration file is empty")

        return MigratorConfig.model_validate(_substitute_env_in_dict(raw_config))

    except FileNotFoundError:
        raise ConfigurationError(
            f"Configuration file not found: {config_path}",
            context={"path": str(config_path)},
        ) from None
    except yaml.YAMLError as e:
        raise ConfigurationError(f"Invalid YAML in configuration file: {e}") from e
    except Exception as e:
        raise ConfigurationError(f"Configuration validation failed: {e}") from e
