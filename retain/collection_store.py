"""
Collection store: the whole ordered collection as one blob.

The collection of saved items is stored as a single JSON array under one
fixed key of the shared key-value backend. The whole collection is the
unit of read and write; there is no partial update and no merge. This
store does not prune or deduplicate: keeping the collection under the
backend's size ceiling is a policy decision for callers.
"""

import logging
from typing import Optional, Sequence

from .errors import DecodeError
from .protocol import KeyValueBackendProtocol
from .types import SavedItem, decode_items, encode_items

logger = logging.getLogger(__name__)

COLLECTION_KEY = "savedLinks"


class CollectionStore:
    """Load and replace the collection blob in a key-value backend."""

    def __init__(self, backend: KeyValueBackendProtocol, key: str = COLLECTION_KEY):
        self._backend = backend
        self.key = key

    @property
    def backend(self) -> KeyValueBackendProtocol:
        return self._backend

    def load(self) -> list[SavedItem]:
        """
        Read the collection.

        Synchronizes with the backend first to minimize staleness.
        A missing key yields an empty list.

        Raises:
            DecodeError: The blob is present but malformed
            ContainerUnavailable: The backend could not be read
        """
        if not self._backend.synchronize():
            logger.info("Synchronize before load failed; reading local state")
        data = self._backend.get_data(self.key)
        if data is None:
            logger.debug("No collection under %r, starting empty", self.key)
            return []
        try:
            items = decode_items(data)
        except DecodeError as e:
            raise DecodeError(f"Collection {self.key!r} ({len(data)} bytes): {e}") from e
        logger.debug("Loaded %d items from %r", len(items), self.key)
        return items

    def save(self, items: Sequence[SavedItem]) -> None:
        """
        Replace the collection with ``items``, then synchronize.

        Raises:
            QuotaExceededError: The encoded collection is too large
            ContainerUnavailable: The backend could not be written
        """
        data = encode_items(items)
        self._backend.set_data(self.key, data)
        if not self._backend.synchronize():
            logger.info("Synchronize after save failed; change is stored locally")
        logger.debug("Saved %d items (%d bytes) to %r", len(items), len(data), self.key)

    def clear(self) -> None:
        """Remove the collection blob entirely."""
        self._backend.remove(self.key)
        self._backend.synchronize()
        logger.info("Cleared collection %r", self.key)

    def blob_size(self) -> Optional[int]:
        """Size in bytes of the stored blob, or None if absent."""
        data = self._backend.get_data(self.key)
        return None if data is None else len(data)
