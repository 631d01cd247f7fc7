"""
One-shot migration of the legacy local collection into the shared store.

Earlier versions kept the collection in a local, non-synchronized
key-value file. On first start against the shared backend the collection
is copied across. The run is idempotent through a boolean flag stored in
the destination backend.

Ordering matters: the new collection is written *before* the flag is
set. An interruption between the two leaves the flag unset, so the next
start migrates again; because legacy items are only added when their id
is not already present, re-running never duplicates anything.
"""

import logging
from dataclasses import dataclass
from pathlib import Path
from typing import Optional

from .collection_store import COLLECTION_KEY, CollectionStore
from .errors import DecodeError, StoreError
from .kv_store import SqliteKeyValueStore
from .protocol import KeyValueBackendProtocol
from .types import decode_items

logger = logging.getLogger(__name__)

MIGRATION_FLAG_KEY = "didMigrateToiCloud"
LEGACY_COLLECTION_KEY = COLLECTION_KEY


@dataclass
class MigrationResult:
    """What a migration run did."""
    status: str  # skipped | no-legacy-data | undecodable | migrated
    migrated: int = 0
    already_present: int = 0
    flag_written: bool = True
    legacy_cleared: bool = False


class LegacyMigrator:
    """Copies the legacy collection into the shared collection store."""

    def __init__(
        self,
        destination: CollectionStore,
        backend: KeyValueBackendProtocol,
        legacy_path: Optional[Path],
        *,
        clear_legacy: bool = False,
        legacy_key: str = LEGACY_COLLECTION_KEY,
    ):
        """
        Args:
            destination: Collection store in the shared backend
            backend: Shared backend that holds the migration flag
            legacy_path: Location of the legacy key-value file
            clear_legacy: Remove the legacy collection after migrating
            legacy_key: Key of the collection in the legacy file
        """
        self._destination = destination
        self._backend = backend
        self._legacy_path = legacy_path
        self._clear_legacy = clear_legacy
        self._legacy_key = legacy_key

    def is_migrated(self) -> bool:
        return self._backend.get_bool(MIGRATION_FLAG_KEY)

    def run(self) -> MigrationResult:
        """
        Migrate once.

        Raises:
            StoreError: The legacy store could not be read, or the
                destination could not be written. The flag is left unset
                so the next start retries.
        """
        if self.is_migrated():
            logger.debug("Legacy migration already done")
            return MigrationResult(status="skipped")

        data = self._read_legacy()
        if data is None:
            logger.info("No legacy collection found")
            return MigrationResult(status="no-legacy-data", flag_written=self._set_flag())

        try:
            legacy_items = decode_items(data)
        except DecodeError as e:
            logger.warning("Legacy collection is undecodable, skipping: %s", e)
            return MigrationResult(status="undecodable", flag_written=self._set_flag())

        try:
            existing = self._destination.load()
        except DecodeError as e:
            logger.warning("Destination collection undecodable, replacing: %s", e)
            existing = []

        present = {item.id for item in existing}
        to_add = [item for item in legacy_items if item.id not in present]
        if to_add:
            self._destination.save(existing + to_add)

        result = MigrationResult(
            status="migrated",
            migrated=len(to_add),
            already_present=len(legacy_items) - len(to_add),
            flag_written=self._set_flag(),
        )
        logger.info(
            "Migrated %d legacy items (%d already present)",
            result.migrated, result.already_present,
        )

        if self._clear_legacy and result.flag_written:
            result.legacy_cleared = self._clear()
        return result

    def _read_legacy(self) -> Optional[bytes]:
        """Legacy blob, or None if there is no legacy file or key.

        A legacy file that exists but cannot be read raises, so the flag
        stays unset and the next start tries again.
        """
        # Never create the legacy file just to find it empty
        if self._legacy_path is None or not self._legacy_path.exists():
            return None
        try:
            with SqliteKeyValueStore(self._legacy_path) as legacy:
                return legacy.get_data(self._legacy_key)
        except StoreError as e:
            logger.warning("Legacy store unreadable at %s, will retry: %s", self._legacy_path, e)
            raise

    def _set_flag(self) -> bool:
        try:
            self._backend.set_bool(MIGRATION_FLAG_KEY, True)
            self._backend.synchronize()
        except StoreError as e:
            logger.error("Could not record migration flag, will retry next start: %s", e)
            return False
        return True

    def _clear(self) -> bool:
        try:
            with SqliteKeyValueStore(self._legacy_path) as legacy:
                legacy.remove(self._legacy_key)
        except StoreError as e:
            logger.warning("Could not clear legacy collection: %s", e)
            return False
        logger.info("Cleared legacy collection at %s", self._legacy_path)
        return True


def legacy_item_count(legacy_path: Optional[Path], key: str = LEGACY_COLLECTION_KEY) -> Optional[int]:
    """Number of items still in the legacy store, or None if there is none."""
    if legacy_path is None or not legacy_path.exists():
        return None
    try:
        with SqliteKeyValueStore(legacy_path) as legacy:
            data = legacy.get_data(key)
    except StoreError:
        return None
    if data is None:
        return None
    try:
        return len(decode_items(data))
    except DecodeError:
        return None
