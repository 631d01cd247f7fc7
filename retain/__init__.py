"""
retain: save links and images, read them later, offline.

Components:
    Library          Facade: capture, status changes, offline content
    SyncCoordinator  In-memory collection, serialized saves, external reloads
    CollectionStore  Whole-collection blob in the shared key-value backend
    AssetStore       Images, thumbnails and offline pages on disk
    LegacyMigrator   One-shot move of the legacy local collection
"""

from retain.api import Library
from retain.assets import AssetKind, AssetStore, ImageMetadata
from retain.collection_store import CollectionStore
from retain.coordinator import SyncCoordinator, SyncState
from retain.kv_store import SqliteKeyValueStore
from retain.migration import LegacyMigrator, MigrationResult
from retain.types import Category, ContentKind, SavedItem

__all__ = [
    "Library",
    "AssetKind",
    "AssetStore",
    "ImageMetadata",
    "CollectionStore",
    "SyncCoordinator",
    "SyncState",
    "SqliteKeyValueStore",
    "LegacyMigrator",
    "MigrationResult",
    "Category",
    "ContentKind",
    "SavedItem",
]
