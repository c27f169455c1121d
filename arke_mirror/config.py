"""Configuration loading for the Arke mirror."""

import os
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any

import yaml

from .errors import ConfigError


@dataclass
class RemoteConfig:
    base_url: str = "http://localhost:3000"
    timeout_seconds: float = 30.0
    max_retries: int = 3


@dataclass
class StorageConfig:
    """Locations of the replica's local artifacts."""

    state_path: str = "~/.arke-mirror/mirror-state.json"
    log_path: str = "~/.arke-mirror/mirror-log.jsonl"

    @property
    def state_file(self) -> Path:
        return Path(self.state_path).expanduser()

    @property
    def log_file(self) -> Path:
        return Path(self.log_path).expanduser()


@dataclass
class SyncConfig:
    """Polling and compaction cadence."""

    page_size: int = 100
    min_backoff_seconds: float = 30
    max_backoff_seconds: float = 600
    snapshot_refresh_minutes: float = 60

    @property
    def snapshot_refresh_seconds(self) -> float:
        return self.snapshot_refresh_minutes * 60


@dataclass
class DashboardConfig:
    host: str = "127.0.0.1"
    port: int = 8090


@dataclass
class Config:
    remote: RemoteConfig = field(default_factory=RemoteConfig)
    storage: StorageConfig = field(default_factory=StorageConfig)
    sync: SyncConfig = field(default_factory=SyncConfig)
    dashboard: DashboardConfig = field(default_factory=DashboardConfig)


def _get_env(key: str, default: Any = None) -> Any:
    """Get environment variable with ARKE_MIRROR_ prefix."""
    return os.environ.get(f"ARKE_MIRROR_{key}", default)


def _get_env_number(key: str, cast: type) -> Any:
    """Get a numeric ARKE_MIRROR_ variable, or None if it is unset."""
    value = _get_env(key)
    if not value:
        return None
    try:
        return cast(value)
    except ValueError as e:
        raise ConfigError(f"ARKE_MIRROR_{key} must be a number, got {value!r}") from e


def _apply_env_overrides(config: Config) -> Config:
    """Apply environment variable overrides to config."""
    # Names used by the earlier deployment scripts
    if base_url := os.environ.get("ARKE_API_URL"):
        config.remote.base_url = base_url
    if state_path := os.environ.get("STATE_FILE_PATH"):
        config.storage.state_path = state_path

    # Remote overrides
    if base_url := _get_env("API_URL"):
        config.remote.base_url = base_url
    if (timeout := _get_env_number("TIMEOUT", float)) is not None:
        config.remote.timeout_seconds = timeout
    if (retries := _get_env_number("MAX_RETRIES", int)) is not None:
        config.remote.max_retries = retries

    # Storage overrides
    if state_path := _get_env("STATE_PATH"):
        config.storage.state_path = state_path
    if log_path := _get_env("LOG_PATH"):
        config.storage.log_path = log_path

    # Sync overrides
    if (page_size := _get_env_number("PAGE_SIZE", int)) is not None:
        config.sync.page_size = page_size
    if (min_backoff := _get_env_number("MIN_BACKOFF", float)) is not None:
        config.sync.min_backoff_seconds = min_backoff
    if (max_backoff := _get_env_number("MAX_BACKOFF", float)) is not None:
        config.sync.max_backoff_seconds = max_backoff
    if (refresh := _get_env_number("SNAPSHOT_REFRESH", float)) is not None:
        config.sync.snapshot_refresh_minutes = refresh

    # Dashboard overrides
    if host := _get_env("DASHBOARD_HOST"):
        config.dashboard.host = host
    if (port := _get_env_number("DASHBOARD_PORT", int)) is not None:
        config.dashboard.port = port

    return config


def validate_config(config: Config) -> None:
    """Check the values the sync engine relies on.

    Raises:
        ConfigError: If a value is out of range.
    """
    if not config.remote.base_url:
        raise ConfigError("remote.base_url must not be empty")
    if config.remote.max_retries < 1:
        raise ConfigError("remote.max_retries must be at least 1")
    if config.sync.page_size < 1:
        raise ConfigError("sync.page_size must be at least 1")
    if config.sync.min_backoff_seconds <= 0:
        raise ConfigError("sync.min_backoff_seconds must be positive")
    if config.sync.max_backoff_seconds < config.sync.min_backoff_seconds:
        raise ConfigError(
            "sync.max_backoff_seconds must be >= sync.min_backoff_seconds"
        )
    if config.sync.snapshot_refresh_minutes < 0:
        raise ConfigError("sync.snapshot_refresh_minutes must not be negative")


def load_config(config_path: str | Path | None = None) -> Config:
    """Load configuration from YAML file with environment variable overrides.

    Args:
        config_path: Path to YAML config file. If None, uses default config.

    Returns:
        Loaded and validated Config object.

    Raises:
        ConfigError: If the file is not valid YAML or a value is invalid.
    """
    config = Config()

    if config_path:
        path = Path(config_path)
        if path.exists():
            try:
                with open(path) as f:
                    data = yaml.safe_load(f) or {}
            except yaml.YAMLError as e:
                raise ConfigError(f"Invalid config file {path}: {e}") from e

            # Parse remote config
            if "remote" in data:
                remote_data = data["remote"]
                config.remote = RemoteConfig(
                    base_url=remote_data.get("base_url", config.remote.base_url),
                    timeout_seconds=remote_data.get(
                        "timeout_seconds", config.remote.timeout_seconds
                    ),
                    max_retries=remote_data.get(
                        "max_retries", config.remote.max_retries
                    ),
                )

            # Parse storage config
            if "storage" in data:
                storage_data = data["storage"]
                config.storage = StorageConfig(
                    state_path=storage_data.get(
                        "state_path", config.storage.state_path
                    ),
                    log_path=storage_data.get("log_path", config.storage.log_path),
                )

            # Parse sync config
            if "sync" in data:
                sync_data = data["sync"]
                config.sync = SyncConfig(
                    page_size=sync_data.get("page_size", config.sync.page_size),
                    min_backoff_seconds=sync_data.get(
                        "min_backoff_seconds", config.sync.min_backoff_seconds
                    ),
                    max_backoff_seconds=sync_data.get(
                        "max_backoff_seconds", config.sync.max_backoff_seconds
                    ),
                    snapshot_refresh_minutes=sync_data.get(
                        "snapshot_refresh_minutes",
                        config.sync.snapshot_refresh_minutes,
                    ),
                )

            # Parse dashboard config
            if "dashboard" in data:
                dash_data = data["dashboard"]
                config.dashboard = DashboardConfig(
                    host=dash_data.get("host", config.dashboard.host),
                    port=dash_data.get("port", config.dashboard.port),
                )

    # Apply environment variable overrides
    config = _apply_env_overrides(config)

    validate_config(config)
    return config
