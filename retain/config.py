"""
Configuration management for retain stores.

The configuration is stored as a TOML file in the store directory.
It names the storage backend and the image and sync parameters.
"""

import os
import tomllib
from dataclasses import dataclass, field
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Optional

import tomli_w


CONFIG_FILENAME = "retain.toml"
CONFIG_VERSION = 1

DEFAULT_KV_FILENAME = "kvstore.db"
DEFAULT_LEGACY_FILENAME = "legacy.db"


def get_default_store_path() -> Path:
    """Store directory: RETAIN_STORE_PATH if set, else ~/.retain."""
    env = os.environ.get("RETAIN_STORE_PATH")
    if env:
        return Path(env).expanduser()
    return Path.home() / ".retain"


@dataclass
class ImageConfig:
    """Image pipeline parameters."""
    max_dimension: int = 2048
    thumbnail_size: int = 80
    original_quality: int = 80
    thumbnail_quality: int = 70


@dataclass
class SyncConfig:
    """Backend sync parameters."""
    # Seconds between background synchronize() calls; 0 disables polling
    poll_interval: float = 2.0
    # Per-key ceiling of the shared key-value store
    max_value_bytes: int = 1024 * 1024


@dataclass
class StoreConfig:
    """Complete store configuration."""
    path: Path
    version: int = CONFIG_VERSION
    created: str = field(default_factory=lambda: datetime.now(timezone.utc).isoformat())
    backend: str = "local"
    kv_filename: str = DEFAULT_KV_FILENAME
    legacy_path: Optional[Path] = None
    images: ImageConfig = field(default_factory=ImageConfig)
    sync: SyncConfig = field(default_factory=SyncConfig)

    @property
    def config_path(self) -> Path:
        """Path to the TOML config file."""
        return self.path / CONFIG_FILENAME

    @property
    def kv_path(self) -> Path:
        return self.path / self.kv_filename

    @property
    def assets_path(self) -> Path:
        return self.path / "assets"

    @property
    def resolved_legacy_path(self) -> Path:
        return self.legacy_path or (self.path / DEFAULT_LEGACY_FILENAME)

    def exists(self) -> bool:
        """Check if config file exists."""
        return self.config_path.exists()


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

    images = data.get("images", {})
    sync = data.get("sync", {})
    legacy = store.get("legacy_path")

    return StoreConfig(
        path=store_path,
        version=version,
        created=store.get("created", ""),
        backend=store.get("backend", "local"),
        kv_filename=store.get("kv_filename", DEFAULT_KV_FILENAME),
        legacy_path=Path(legacy).expanduser() if legacy else None,
        images=ImageConfig(
            max_dimension=int(images.get("max_dimension", 2048)),
            thumbnail_size=int(images.get("thumbnail_size", 80)),
            original_quality=int(images.get("original_quality", 80)),
            thumbnail_quality=int(images.get("thumbnail_quality", 70)),
        ),
        sync=SyncConfig(
            poll_interval=float(sync.get("poll_interval", 2.0)),
            max_value_bytes=int(sync.get("max_value_bytes", 1024 * 1024)),
        ),
    )


def save_config(config: StoreConfig) -> None:
    """
    Save configuration to the store directory.

    Creates the directory if it doesn't exist.
    """
    config.path.mkdir(parents=True, exist_ok=True)

    store: dict[str, Any] = {
        "version": config.version,
        "created": config.created,
        "backend": config.backend,
        "kv_filename": config.kv_filename,
    }
    # TOML has no null
    if config.legacy_path is not None:
        store["legacy_path"] = str(config.legacy_path)

    data = {
        "store": store,
        "images": {
            "max_dimension": config.images.max_dimension,
            "thumbnail_size": config.images.thumbnail_size,
            "original_quality": config.images.original_quality,
            "thumbnail_quality": config.images.thumbnail_quality,
        },
        "sync": {
            "poll_interval": config.sync.poll_interval,
            "max_value_bytes": config.sync.max_value_bytes,
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
