"""
Core API for saved items.

Library wires the pieces together for one process:
- a shared key-value backend (from the configured backend factory)
- the collection store and its sync coordinator
- the asset store for images and offline pages
- the one-shot legacy migration, run on open()

Capture flows call save_link()/save_image(); reader and list views call
the status toggles, delete/restore/purge, items() and the asset lookups.
"""

import asyncio
import json
import logging
from pathlib import Path
from typing import Any, Optional

from .assets import AssetKind, AssetStore
from .backend import StoreBundle, create_stores
from .collection_store import CollectionStore
from .config import StoreConfig, get_default_store_path, load_or_create_config
from .coordinator import SyncCoordinator
from .errors import NotFoundError, StoreError
from .images import ImageProcessor
from .logging_config import configure_ops_log, remove_ops_log
from .migration import MIGRATION_FLAG_KEY, LegacyMigrator, MigrationResult, legacy_item_count
from .types import Category, SavedItem, make_image_item, make_link_item, new_item_id

logger = logging.getLogger(__name__)


class Library:
    """
    The saved-items library for one process.

    Explicitly constructed; tests and tools can open several libraries on
    the same store directory to act as independent writers.

    Usage::

        async with Library(store_path) as lib:
            item = await lib.save_link("https://example.com", "Example")
            await lib.toggle_read(item)
    """

    def __init__(
        self,
        store_path: Optional[Path] = None,
        *,
        config: Optional[StoreConfig] = None,
        bundle: Optional[StoreBundle] = None,
        ops_log: bool = True,
    ):
        """
        Args:
            store_path: Store directory (default: RETAIN_STORE_PATH or ~/.retain)
            config: Explicit configuration (skips reading retain.toml)
            bundle: Pre-built storage resources (skips the backend factory)
            ops_log: Write a rotating operations log into the store directory
        """
        if config is None:
            config = load_or_create_config(Path(store_path) if store_path else get_default_store_path())
        self.config = config
        self._bundle = bundle or create_stores(config)
        self.kv = self._bundle.kv
        self.collection = CollectionStore(self.kv)
        self.assets = AssetStore(
            self._bundle.assets_root,
            self.kv,
            ImageProcessor(
                max_dimension=config.images.max_dimension,
                thumbnail_size=config.images.thumbnail_size,
                original_quality=config.images.original_quality,
                thumbnail_quality=config.images.thumbnail_quality,
            ),
        )
        self.coordinator = SyncCoordinator(
            self.collection, backend=self.kv, asset_store=self.assets,
        )
        self.migrator = LegacyMigrator(self.collection, self.kv, self._bundle.legacy_path)
        self._ops_handler = configure_ops_log(config.path) if ops_log else None
        self._open = False

    # -------------------------------------------------------------------------
    # Lifecycle
    # -------------------------------------------------------------------------

    async def open(self, *, watch: bool = True) -> "Library":
        """Migrate legacy data if needed, then load and start watching.

        A failed migration leaves its flag unset and is retried on the next
        open; it does not stop the library from opening.

        Raises:
            ContainerUnavailable: The collection could not be loaded
        """
        try:
            result = await asyncio.to_thread(self.migrator.run)
        except StoreError as e:
            logger.error("Legacy migration failed, will retry next open: %s", e)
        else:
            if result.status == "migrated":
                logger.info("Legacy migration moved %d items", result.migrated)
        poll = self.config.sync.poll_interval if watch else None
        await self.coordinator.start(poll_interval=poll)
        self._open = True
        return self

    async def close(self) -> None:
        if self._open:
            await self.coordinator.stop()
            self._open = False
        self.kv.close()
        if self._ops_handler is not None:
            remove_ops_log(self._ops_handler)
            self._ops_handler = None

    async def __aenter__(self):
        try:
            return await self.open()
        except BaseException:
            await self.close()
            raise

    async def __aexit__(self, exc_type, exc, tb):
        await self.close()
        return False

    # -------------------------------------------------------------------------
    # Capture
    # -------------------------------------------------------------------------

    async def save_link(
        self,
        url: str,
        title: str,
        excerpt: str = "",
        *,
        thumbnail_url: Optional[str] = None,
    ) -> SavedItem:
        """Save a link whose metadata the capture flow already resolved."""
        item = make_link_item(url, title or url, excerpt, thumbnail_url=thumbnail_url)
        return await self.coordinator.add_item(item)

    async def save_image(
        self,
        data: bytes,
        *,
        title: Optional[str] = None,
        excerpt: Optional[str] = None,
    ) -> SavedItem:
        """
        Store an image's assets, then add its record.

        Assets are written first so the record never references missing
        files. If adding the record fails, the assets are removed again.
        """
        item_id = new_item_id()
        meta = await asyncio.to_thread(self.assets.store_image, item_id, data)
        item = make_image_item(
            id=item_id,
            image_path=meta.original_path,
            title=title or "Image",
            excerpt=excerpt,
            image_size=(float(meta.width), float(meta.height)),
            image_format=meta.format,
        )
        try:
            return await self.coordinator.add_item(item)
        except Exception:
            await asyncio.to_thread(self.assets.delete_all, item_id)
            raise

    async def cache_page(
        self,
        item: SavedItem,
        html: bytes,
        article: Optional[dict[str, Any]] = None,
    ) -> SavedItem:
        """Store downloaded page HTML (and extracted article) for offline reading."""
        self.get_item(item.id)
        await asyncio.to_thread(self.assets.store, item.id, AssetKind.CACHED_PAGE, html)
        if article is not None:
            payload = json.dumps(article, ensure_ascii=False).encode("utf-8")
            await asyncio.to_thread(self.assets.store, item.id, AssetKind.EXTRACTED_ARTICLE, payload)
        updated = await self.coordinator.modify(
            item.id, lambda current: current.with_changes(is_offline_cached=True),
        )
        if updated is None:
            raise NotFoundError(item.id)
        return updated

    def fetch_asset(self, item_id: str, kind: AssetKind) -> Optional[bytes]:
        return self.assets.fetch(item_id, kind)

    def fetch_article(self, item_id: str) -> Optional[dict[str, Any]]:
        """Extracted article JSON, or None if absent or unreadable."""
        data = self.assets.fetch(item_id, AssetKind.EXTRACTED_ARTICLE)
        if data is None:
            return None
        try:
            return json.loads(data)
        except ValueError as e:
            logger.warning("Extracted article for %s is unreadable: %s", item_id, e)
            return None

    def image_path(self, item_id: str, *, thumbnail: bool = False) -> Optional[Path]:
        kind = AssetKind.THUMBNAIL_IMAGE if thumbnail else AssetKind.ORIGINAL_IMAGE
        return self.assets.path_for(item_id, kind)

    # -------------------------------------------------------------------------
    # Status changes
    # -------------------------------------------------------------------------

    def get_item(self, item_id: str) -> SavedItem:
        item = self.coordinator.get(item_id)
        if item is None:
            raise NotFoundError(item_id)
        return item

    def items(self, category: Category = Category.ALL) -> list[SavedItem]:
        return self.coordinator.filtered_view(category)

    async def _toggle(self, item: SavedItem, field_name: str) -> SavedItem:
        def flip(current: SavedItem) -> SavedItem:
            return current.with_changes(**{field_name: not getattr(current, field_name)})

        updated = await self.coordinator.modify(item.id, flip)
        if updated is None:
            raise NotFoundError(item.id)
        return updated

    async def toggle_read(self, item: SavedItem) -> SavedItem:
        return await self._toggle(item, "is_read")

    async def toggle_star(self, item: SavedItem) -> SavedItem:
        return await self._toggle(item, "is_starred")

    async def toggle_highlight(self, item: SavedItem) -> SavedItem:
        return await self._toggle(item, "is_highlighted")

    async def delete(self, item: SavedItem) -> SavedItem:
        """Move to Recently Deleted."""
        deleted = await self.coordinator.soft_delete(self.get_item(item.id))
        if deleted is None:
            raise NotFoundError(item.id)
        return deleted

    async def restore(self, item: SavedItem) -> SavedItem:
        restored = await self.coordinator.restore(self.get_item(item.id))
        if restored is None:
            raise NotFoundError(item.id)
        return restored

    async def purge(self, item: SavedItem) -> None:
        """Delete permanently, including stored assets."""
        if not await self.coordinator.hard_delete(item):
            raise NotFoundError(item.id)

    async def reload(self) -> None:
        await self.coordinator.reload()

    async def migrate(self) -> MigrationResult:
        """Run the legacy migration now and reload if it changed anything."""
        result = await asyncio.to_thread(self.migrator.run)
        if result.migrated:
            await self.coordinator.reload()
        return result

    # -------------------------------------------------------------------------
    # Diagnostics
    # -------------------------------------------------------------------------

    def status(self) -> dict[str, Any]:
        """Storage diagnostics: backend keys, sizes, counts and migration state."""
        return {
            "store": str(self.config.path),
            "backend": self.config.backend,
            "keys": self.kv.keys(),
            "collection_bytes": self.collection.blob_size(),
            "counts": {c.value: self.coordinator.count(c) for c in Category},
            "migrated": self.kv.get_bool(MIGRATION_FLAG_KEY),
            "legacy_items": legacy_item_count(self._bundle.legacy_path),
            "offline_items": len(self.assets.offline_ids()),
            "asset_bytes": self.assets.total_size(),
            "sync_state": self.coordinator.state.value,
        }

    async def clear_all(self) -> None:
        """Remove the collection blob and reload. Assets are left in place."""
        await asyncio.to_thread(self.collection.clear)
        await self.coordinator.reload()
