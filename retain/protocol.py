"""
Protocol definitions for retain's storage seams.

Defines interface contracts for:
- KeyValueBackendProtocol: the shared, synchronized key-value namespace
  (SQLite locally, a cloud key-value store elsewhere)
- CollectionStoreProtocol: whole-collection load/replace
- AssetCleanupProtocol: what the coordinator needs from the asset store
"""

from typing import Callable, Optional, Protocol, Sequence, runtime_checkable

from .types import SavedItem


@runtime_checkable
class KeyValueBackendProtocol(Protocol):
    """
    Shared key-value namespace with last-write-wins semantics.

    Implemented by:
    - SqliteKeyValueStore (local file shared by all writer processes)
    - external backends registered under ``retain.backends``
    """

    def get_data(self, key: str) -> Optional[bytes]: ...

    def set_data(self, key: str, value: bytes) -> None: ...

    def remove(self, key: str) -> None: ...

    def get_bool(self, key: str) -> bool: ...

    def set_bool(self, key: str, value: bool) -> None: ...

    def keys(self) -> list[str]: ...

    def synchronize(self) -> bool: ...

    def add_observer(self, observer: Callable[[list[str]], None]) -> None: ...

    def remove_observer(self, observer: Callable[[list[str]], None]) -> None: ...

    def close(self) -> None: ...


@runtime_checkable
class CollectionStoreProtocol(Protocol):
    """Full-collection load and replace. No partial updates."""

    key: str

    def load(self) -> list[SavedItem]: ...

    def save(self, items: Sequence[SavedItem]) -> None: ...


@runtime_checkable
class AssetCleanupProtocol(Protocol):
    """Hard-delete cascade into the asset store."""

    def delete_all(self, item_id: str) -> int: ...
