"""
Configuration management for vibrary stores.

The configuration is stored as a TOML file in the store directory.  It
names the backend and the maintenance parameters (retention, quota
pressure relief, library removal policy).
"""

import os
import tomllib
from dataclasses import dataclass, field
from datetime import datetime, timezone
from pathlib import Path
from typing import Any

import tomli_w

from .types import parse_retention_policy


CONFIG_FILENAME = "vibrary.toml"
CONFIG_VERSION = 1

DEFAULT_STORE_DIRNAME = ".vibrary"

# Library removal policies for a record leaving its last playlist
REMOVAL_IMMEDIATE = "immediate"
REMOVAL_DEFERRED = "deferred"
REMOVAL_POLICIES = (REMOVAL_IMMEDIATE, REMOVAL_DEFERRED)


@dataclass
class StoreConfig:
    """Complete store configuration."""
    path: Path
    version: int = CONFIG_VERSION
    created: str = field(default_factory=lambda: datetime.now(timezone.utc).isoformat())
    backend: str = "sqlite"

    # Age-based retention ("off" or days) and its timers
    retention_policy: str | int = "off"
    min_cleanup_interval_minutes: int = 60
    cleanup_check_seconds: int = 3600

    # Quota pressure relief
    quota_bytes: int = 10 * 1024 * 1024
    quota_high_water: float = 0.9
    quota_poll_seconds: int = 60
    quota_min_evict: int = 10
    quota_evict_fraction: float = 0.3

    library_removal_policy: str = REMOVAL_IMMEDIATE
    extra_tracking_params: list[str] = field(default_factory=list)

    @property
    def config_path(self) -> Path:
        """Path to the TOML config file."""
        return self.path / CONFIG_FILENAME

    def exists(self) -> bool:
        """Check if config file exists."""
        return self.config_path.exists()


def get_config_dir() -> Path:
    """
    Resolve the store directory.

    Priority:
    1. VIBRARY_STORE_PATH environment variable
    2. ~/.vibrary
    """
    env = os.environ.get("VIBRARY_STORE_PATH")
    if env:
        return Path(env).expanduser().resolve()
    return Path.home() / DEFAULT_STORE_DIRNAME


def _validate(config: StoreConfig) -> StoreConfig:
    if config.library_removal_policy not in REMOVAL_POLICIES:
        raise ValueError(
            f"library.removal_policy must be one of {REMOVAL_POLICIES}: "
            f"{config.library_removal_policy!r}"
        )
    if not 0 < config.quota_high_water <= 1:
        raise ValueError(f"quota.high_water must be in (0, 1]: {config.quota_high_water}")
    if not 0 <= config.quota_evict_fraction <= 1:
        raise ValueError(f"quota.evict_fraction must be in [0, 1]: {config.quota_evict_fraction}")
    if config.quota_bytes < 0:
        raise ValueError(f"quota.bytes must not be negative: {config.quota_bytes}")
    return config


def load_config(store_path: Path) -> StoreConfig:
    """
    Load configuration from a store directory.

    Raises:
        FileNotFoundError: If config doesn't exist
        ValueError: If config is invalid
    """
    config_path = store_path / CONFIG_FILENAME

    if not config_path.exists():
        raise FileNotFoundError(f"Config not found: {config_path}")

    with open(config_path, "rb") as f:
        try:
            data = tomllib.load(f)
        except tomllib.TOMLDecodeError as e:
            raise ValueError(f"Invalid config {config_path}: {e}") from e

    store = data.get("store", {})
    version = store.get("version", 1)
    if version > CONFIG_VERSION:
        raise ValueError(f"Config version {version} is newer than supported ({CONFIG_VERSION})")

    retention = data.get("retention", {})
    quota = data.get("quota", {})
    library = data.get("library", {})
    identity = data.get("identity", {})
    defaults = StoreConfig(path=store_path)

    def pick(section: dict[str, Any], key: str, default: Any) -> Any:
        return section.get(key, default)

    return _validate(StoreConfig(
        path=store_path,
        version=version,
        created=store.get("created", ""),
        backend=store.get("backend", defaults.backend),
        retention_policy=parse_retention_policy(pick(retention, "policy", "off")),
        min_cleanup_interval_minutes=int(pick(retention, "min_interval_minutes",
                                              defaults.min_cleanup_interval_minutes)),
        cleanup_check_seconds=int(pick(retention, "check_interval_seconds",
                                       defaults.cleanup_check_seconds)),
        quota_bytes=int(pick(quota, "bytes", defaults.quota_bytes)),
        quota_high_water=float(pick(quota, "high_water", defaults.quota_high_water)),
        quota_poll_seconds=int(pick(quota, "poll_seconds", defaults.quota_poll_seconds)),
        quota_min_evict=int(pick(quota, "min_evict", defaults.quota_min_evict)),
        quota_evict_fraction=float(pick(quota, "evict_fraction", defaults.quota_evict_fraction)),
        library_removal_policy=pick(library, "removal_policy", defaults.library_removal_policy),
        extra_tracking_params=list(pick(identity, "extra_tracking_params", [])),
    ))


def save_config(config: StoreConfig) -> None:
    """
    Save configuration to the store directory.

    Creates the directory if it doesn't exist.
    """
    config.path.mkdir(parents=True, exist_ok=True)

    data = {
        "store": {
            "version": config.version,
            "created": config.created,
            "backend": config.backend,
        },
        "retention": {
            "policy": config.retention_policy,
            "min_interval_minutes": config.min_cleanup_interval_minutes,
            "check_interval_seconds": config.cleanup_check_seconds,
        },
        "quota": {
            "bytes": config.quota_bytes,
            "high_water": config.quota_high_water,
            "poll_seconds": config.quota_poll_seconds,
            "min_evict": config.quota_min_evict,
            "evict_fraction": config.quota_evict_fraction,
        },
        "library": {
            "removal_policy": config.library_removal_policy,
        },
        "identity": {
            "extra_tracking_params": list(config.extra_tracking_params),
        },
    }

    with open(config.config_path, "wb") as f:
        tomli_w.dump(data, f)


def load_or_create_config(store_path: Path) -> StoreConfig:
    """
    Load existing config or create a new one with defaults.

    This is the main entry point for config management.
    """
    config_path = store_path / CONFIG_FILENAME

    if config_path.exists():
        return load_config(store_path)
    config = StoreConfig(path=store_path)
    save_config(config)
    return config
