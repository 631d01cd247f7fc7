"""
Pluggable storage backend factory.

Creates the shared key-value backend based on configuration. The local
backend uses a SQLite file in the store directory. External backends
(for example a real cloud key-value service) register via the
``retain.backends`` entry point group.

External backend packages provide a factory function::

    def create_stores(config: StoreConfig) -> StoreBundle:
        ...

and register it in their pyproject.toml::

    [project.entry-points."retain.backends"]
    my-backend = "my_package.backend:create_stores"
"""

from pathlib import Path
from typing import NamedTuple, Optional

from .config import StoreConfig
from .protocol import KeyValueBackendProtocol


class StoreBundle(NamedTuple):
    """Storage resources returned by the factory."""
    kv: KeyValueBackendProtocol
    assets_root: Path
    legacy_path: Optional[Path]
    is_local: bool  # True for filesystem-backed stores


def create_stores(config: StoreConfig) -> StoreBundle:
    """
    Create storage backends from configuration.

    For ``backend = "local"`` (default), creates a SqliteKeyValueStore in
    the store directory.

    For other values, loads the backend via the ``retain.backends`` entry
    point group.
    """
    if config.backend == "local":
        return _create_local_stores(config)
    return _load_backend(config.backend, config)


def _create_local_stores(config: StoreConfig) -> StoreBundle:
    """Create the default local storage backends."""
    from .kv_store import SqliteKeyValueStore

    kv = SqliteKeyValueStore(
        config.kv_path,
        max_value_bytes=config.sync.max_value_bytes,
    )
    return StoreBundle(
        kv=kv,
        assets_root=config.assets_path,
        legacy_path=config.resolved_legacy_path,
        is_local=True,
    )


def _load_backend(name: str, config: StoreConfig) -> StoreBundle:
    """Load a backend by entry point name."""
    from importlib.metadata import entry_points

    eps = entry_points(group="retain.backends")
    for ep in eps:
        if ep.name == name:
            factory = ep.load()
            return factory(config)

    available = [ep.name for ep in eps]
    if available:
        raise ValueError(
            f"Unknown backend: {name!r}. Available: {available}"
        )
    raise ValueError(
        f"Unknown backend: {name!r}. No backends registered. "
        f"Install a backend package that provides a 'retain.backends' entry point."
    )
