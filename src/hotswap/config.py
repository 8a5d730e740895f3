"""Configuration management for Hotswap.

This module defines the configuration schema using Pydantic settings,
supporting TOML files, environment variables, and programmatic overrides.

Configuration loading priority (highest to lowest):
1. Values passed to the HotswapConfig constructor, including TOML file contents
2. Environment variables (HOTSWAP_* prefix)
3. Default values defined in this module

Example TOML configuration:
    [health]
    path = "/health"
    timeout_seconds = 90

    [gc]
    age_threshold_hours = 168
    keep_count = 5

Example environment variable override:
    HOTSWAP_HEALTH__TIMEOUT_SECONDS=30
    HOTSWAP_DEPLOY__LOCK_POLICY=queue
"""

from __future__ import annotations

from pathlib import Path
from typing import Any

import tomli
from pydantic import Field, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


class LoggingConfig(BaseSettings):
    """Logging configuration.

    Attributes:
        level: Log level (DEBUG, INFO, WARNING, ERROR, CRITICAL)
        format: Log format (json or console)
        file: Optional log file path (None for stdout only)
        rotation_size_mb: Log file rotation size in megabytes
        retention_count: Number of rotated log files to keep
    """

    model_config = SettingsConfigDict(
        env_prefix="HOTSWAP_LOGGING__",
        extra="forbid",
    )

    level: str = Field(default="INFO")
    format: str = Field(default="console")
    file: Path | None = Field(default=None)
    rotation_size_mb: int = Field(default=50, ge=1, le=1000)
    retention_count: int = Field(default=10, ge=1, le=100)

    @field_validator("level")
    @classmethod
    def validate_level(cls, v: str) -> str:
        """Validate log level is recognized."""
        valid_levels = {"DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"}
        v_upper = v.upper()
        if v_upper not in valid_levels:
            raise ValueError(f"Invalid log level: {v}. Must be one of {valid_levels}")
        return v_upper

    @field_validator("format")
    @classmethod
    def validate_format(cls, v: str) -> str:
        """Validate log format is recognized."""
        valid_formats = {"json", "console"}
        v_lower = v.lower()
        if v_lower not in valid_formats:
            raise ValueError(f"Invalid log format: {v}. Must be one of {valid_formats}")
        return v_lower


class DockerConfig(BaseSettings):
    """Container engine connection configuration.

    Attributes:
        base_url: Explicit engine URL (falls back to DOCKER_HOST, then the default socket)
        rootless: Use the rootless Docker socket under XDG_RUNTIME_DIR
        stop_timeout_seconds: Grace period before a stopped container is killed
        restart_policy: Restart policy applied to started containers
        label_prefix: Prefix for labels attached to managed containers
    """

    model_config = SettingsConfigDict(
        env_prefix="HOTSWAP_DOCKER__",
        extra="forbid",
    )

    base_url: str | None = Field(default=None)
    rootless: bool = Field(default=False)
    stop_timeout_seconds: int = Field(default=10, ge=0, le=600)
    restart_policy: str = Field(default="unless-stopped")
    label_prefix: str = Field(default="io.hotswap")

    @field_validator("restart_policy")
    @classmethod
    def validate_restart_policy(cls, v: str) -> str:
        """Validate restart policy is one the engine accepts."""
        valid_policies = {"no", "always", "unless-stopped", "on-failure"}
        if v not in valid_policies:
            raise ValueError(f"Invalid restart policy: {v}. Must be one of {valid_policies}")
        return v


class HealthConfig(BaseSettings):
    """Default health verification policy for new instances.

    Attributes:
        path: HTTP path of the health endpoint
        host: Host used to reach published ports
        timeout_seconds: Overall deadline for the new instance to become healthy
        interval_seconds: Pause between probe attempts
        request_timeout_seconds: Timeout of a single probe request
        initial_delay_seconds: Grace period before the first probe
    """

    model_config = SettingsConfigDict(
        env_prefix="HOTSWAP_HEALTH__",
        extra="forbid",
    )

    path: str = Field(default="/health")
    host: str = Field(default="localhost")
    timeout_seconds: float = Field(default=60.0, gt=0.0, le=3600.0)
    interval_seconds: float = Field(default=2.0, gt=0.0, le=300.0)
    request_timeout_seconds: float = Field(default=5.0, gt=0.0, le=300.0)
    initial_delay_seconds: float = Field(default=0.0, ge=0.0, le=600.0)

    @field_validator("path")
    @classmethod
    def validate_path(cls, v: str) -> str:
        """Ensure the health path is absolute."""
        return v if v.startswith("/") else f"/{v}"


class DeployConfig(BaseSettings):
    """Deployment run behaviour.

    Attributes:
        lock_policy: What a second deploy of a busy target does (reject or queue)
        recover_on_start: Resolve leftovers of an interrupted run before deploying
        keep_backup_on_success: Leave the stopped backup container after promotion
        deadline_seconds: Optional upper bound on the whole run
    """

    model_config = SettingsConfigDict(
        env_prefix="HOTSWAP_DEPLOY__",
        extra="forbid",
    )

    lock_policy: str = Field(default="reject")
    recover_on_start: bool = Field(default=True)
    keep_backup_on_success: bool = Field(default=False)
    deadline_seconds: float | None = Field(default=None, gt=0.0)

    @field_validator("lock_policy")
    @classmethod
    def validate_lock_policy(cls, v: str) -> str:
        """Validate lock policy is recognized."""
        valid_policies = {"reject", "queue"}
        v_lower = v.lower()
        if v_lower not in valid_policies:
            raise ValueError(f"Invalid lock policy: {v}. Must be one of {valid_policies}")
        return v_lower


class GarbageCollectionConfig(BaseSettings):
    """Image garbage collection policy.

    Attributes:
        enabled: Prune images after a successful promotion
        age_threshold_hours: Images younger than this are never pruned
        keep_count: Number of most recent images always retained
    """

    model_config = SettingsConfigDict(
        env_prefix="HOTSWAP_GC__",
        extra="forbid",
    )

    enabled: bool = Field(default=True)
    age_threshold_hours: float = Field(default=168.0, ge=0.0)
    keep_count: int = Field(default=5, ge=0, le=1000)


class HotswapConfig(BaseSettings):
    """Root configuration for Hotswap.

    Aggregates all subsystem configurations. Configuration can be loaded from:
    1. TOML files (using load_config function)
    2. Environment variables (HOTSWAP_* prefix)
    3. Direct instantiation with keyword arguments

    Environment variable format for nested config:
        HOTSWAP_<SECTION>__<KEY>=value

    Example:
        HOTSWAP_DOCKER__BASE_URL="unix:///var/run/docker.sock"
        HOTSWAP_GC__KEEP_COUNT=3
    """

    model_config = SettingsConfigDict(
        env_prefix="HOTSWAP_",
        env_nested_delimiter="__",
        extra="forbid",
    )

    logging: LoggingConfig = Field(default_factory=LoggingConfig)
    docker: DockerConfig = Field(default_factory=DockerConfig)
    health: HealthConfig = Field(default_factory=HealthConfig)
    deploy: DeployConfig = Field(default_factory=DeployConfig)
    gc: GarbageCollectionConfig = Field(default_factory=GarbageCollectionConfig)


def load_config(config_path: Path | None = None) -> HotswapConfig:
    """Load configuration from TOML file with environment variable overrides.

    Configuration search order (first found is used):
    1. config_path if explicitly provided
    2. ./hotswap.toml (current directory)
    3. ~/.config/hotswap/config.toml (user config directory)

    Args:
        config_path: Explicit path to TOML config file. If None, searches
                    default locations.

    Returns:
        HotswapConfig: Fully resolved configuration instance.

    Raises:
        FileNotFoundError: If config_path is explicitly provided but doesn't exist.
        ValueError: If TOML file contains invalid configuration.
    """
    toml_data: dict[str, Any] = {}

    if config_path is not None:
        if not config_path.exists():
            raise FileNotFoundError(f"Config file not found: {config_path}")
        selected_path = config_path
    else:
        search_paths = [
            Path.cwd() / "hotswap.toml",
            Path.home() / ".config" / "hotswap" / "config.toml",
        ]
        selected_path = None
        for path in search_paths:
            if path.exists():
                selected_path = path
                break

    if selected_path is not None:
        with open(selected_path, "rb") as f:
            toml_data = tomli.load(f)

    # Environment variables fill in keys the TOML file leaves unset
    try:
        return HotswapConfig(**toml_data)
    except Exception as e:
        if selected_path:
            raise ValueError(f"Invalid configuration in {selected_path}: {e}") from e
        else:
            raise ValueError(f"Invalid configuration: {e}") from e
