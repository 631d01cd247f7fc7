"""
Sync coordinator: the in-memory authoritative collection.

One coordinator per process owns the list of saved items. Every mutation
and every reload goes through a single asyncio.Lock, so no two saves from
the same coordinator are ever in flight together; a request arriving
during a save waits behind it.

External changes (another process or device saved the collection) arrive
as backend observer callbacks. The callback only enqueues a reload
request; the watcher task performs the reload under the same lock. A
notification that lands while a save is running therefore produces a
reload after that save completes.

Until the first successful load the coordinator has nothing to fall back
on: an unreadable backend fails start() and every mutation, so a blank
list is never saved over a collection that could not be read.

There is no merge. The last writer to save wins; reloads only pull in
what other writers saved.
"""

import asyncio
import logging
from enum import Enum
from typing import Callable, Optional

from .errors import ContainerUnavailable, DecodeError
from .protocol import AssetCleanupProtocol, CollectionStoreProtocol, KeyValueBackendProtocol
from .types import Category, SavedItem, matches_category, utc_now

logger = logging.getLogger(__name__)


class SyncState(str, Enum):
    IDLE = "idle"
    LOADING = "loading"
    SAVING = "saving"


class SyncCoordinator:
    """
    Mediates all reads and writes of the collection for one process.

    Usage::

        coordinator = SyncCoordinator(store, backend=kv, asset_store=assets)
        await coordinator.start(poll_interval=2.0)
        await coordinator.add_item(item)
        unread = coordinator.filtered_view(Category.UNREAD)
        await coordinator.stop()
    """

    def __init__(
        self,
        store: CollectionStoreProtocol,
        *,
        backend: Optional[KeyValueBackendProtocol] = None,
        asset_store: Optional[AssetCleanupProtocol] = None,
    ):
        """
        Args:
            store: Collection store to load from and save to
            backend: Backend to observe for external changes (optional)
            asset_store: Receives hard-delete cleanup requests (optional)
        """
        self._store = store
        self._backend = backend
        self._assets = asset_store
        self._items: list[SavedItem] = []
        self._state = SyncState.IDLE
        self._mutex = asyncio.Lock()
        self._changes: asyncio.Queue[list[str]] = asyncio.Queue()
        self._loop: Optional[asyncio.AbstractEventLoop] = None
        self._tasks: list[asyncio.Task] = []
        self.reload_count = 0
        # False until one load has read the backend successfully
        self._loaded = False

    # -------------------------------------------------------------------------
    # Lifecycle
    # -------------------------------------------------------------------------

    async def start(self, poll_interval: Optional[float] = None) -> None:
        """Load the collection and begin watching for external changes.

        With a poll_interval, a background task calls synchronize() on
        the backend periodically so remote changes are noticed even when
        this process is otherwise idle.
        """
        self._loop = asyncio.get_running_loop()
        await self.reload()
        if self._backend is not None:
            self._backend.add_observer(self._on_external_change)
        self._tasks.append(asyncio.create_task(self._watch(), name="retain-watch"))
        if poll_interval and self._backend is not None:
            self._tasks.append(
                asyncio.create_task(self._poll(poll_interval), name="retain-poll")
            )

    async def stop(self) -> None:
        if self._backend is not None:
            self._backend.remove_observer(self._on_external_change)
        for task in self._tasks:
            task.cancel()
        for task in self._tasks:
            try:
                await task
            except asyncio.CancelledError:
                pass
        self._tasks.clear()

    async def __aenter__(self):
        await self.start()
        return self

    async def __aexit__(self, exc_type, exc, tb):
        await self.stop()
        return False

    # -------------------------------------------------------------------------
    # External change handling
    # -------------------------------------------------------------------------

    def _on_external_change(self, keys: list[str]) -> None:
        """Backend observer. May run on any thread; only enqueues."""
        if self._store.key not in keys or self._loop is None:
            return
        try:
            self._loop.call_soon_threadsafe(self._changes.put_nowait, list(keys))
        except RuntimeError:
            # Loop already closed during shutdown
            logger.debug("Dropped change notification after loop shutdown")

    def notify_external_change(self, keys: Optional[list[str]] = None) -> None:
        """Request a reload as if the backend had reported a change."""
        self._changes.put_nowait(list(keys) if keys else [self._store.key])

    async def _watch(self) -> None:
        while True:
            await self._changes.get()
            received = 1
            # Coalesce a burst of notifications into one reload
            while not self._changes.empty():
                self._changes.get_nowait()
                received += 1
            logger.info("External change to collection; reloading")
            try:
                await self.reload()
            finally:
                for _ in range(received):
                    self._changes.task_done()

    async def _poll(self, interval: float) -> None:
        while True:
            await asyncio.sleep(interval)
            await asyncio.to_thread(self._backend.synchronize)

    async def wait_idle(self) -> None:
        """Wait until queued reload requests have been processed."""
        # Let notifications scheduled from other threads land first
        await asyncio.sleep(0)
        await self._changes.join()

    # -------------------------------------------------------------------------
    # Reads
    # -------------------------------------------------------------------------

    @property
    def state(self) -> SyncState:
        return self._state

    @property
    def items(self) -> list[SavedItem]:
        return list(self._items)

    def get(self, item_id: str) -> Optional[SavedItem]:
        for item in self._items:
            if item.id == item_id:
                return item
        return None

    def filtered_view(self, category: Category) -> list[SavedItem]:
        """Items in a category, in collection order. No side effects."""
        return [item for item in self._items if matches_category(item, category)]

    def count(self, category: Category) -> int:
        return len(self.filtered_view(category))

    # -------------------------------------------------------------------------
    # Reload
    # -------------------------------------------------------------------------

    async def reload(self) -> None:
        """Replace the in-memory collection with the backend's.

        Raises:
            ContainerUnavailable: The backend could not be read and no
                earlier load succeeded. Later failures keep the cached list.
        """
        async with self._mutex:
            self._state = SyncState.LOADING
            try:
                items = await asyncio.to_thread(self._store.load)
            except DecodeError as e:
                logger.error("Collection could not be decoded, using empty list: %s", e)
                items = []
            except ContainerUnavailable as e:
                if not self._loaded:
                    logger.error("Collection unavailable on first load: %s", e)
                    raise
                logger.error("Collection unavailable, keeping %d cached items: %s",
                             len(self._items), e)
                return
            finally:
                self._state = SyncState.IDLE
            self._items = items
            self._loaded = True
            self.reload_count += 1
            logger.debug("Reloaded %d items", len(items))

    # -------------------------------------------------------------------------
    # Mutations
    # -------------------------------------------------------------------------

    async def _commit(self, items: list[SavedItem]) -> None:
        """Save ``items`` as the new collection. Caller holds the mutex.

        On failure the in-memory list is left unchanged and the error
        propagates to the caller.
        """
        if not self._loaded:
            raise ContainerUnavailable(
                "Collection has not been loaded; refusing to overwrite it"
            )
        self._state = SyncState.SAVING
        try:
            await asyncio.to_thread(self._store.save, items)
        finally:
            self._state = SyncState.IDLE
        self._items = items

    async def add_item(self, item: SavedItem) -> SavedItem:
        """Insert at the front (newest first) and save."""
        async with self._mutex:
            await self._commit([item] + self._items)
        logger.info("Added %s (%s)", item.id, item.url)
        return item

    async def modify(
        self,
        item_id: str,
        change: Callable[[SavedItem], SavedItem],
    ) -> Optional[SavedItem]:
        """Apply ``change`` to the current version of an item and save.

        The read, the change and the save happen under the mutex, so
        concurrent modifications of one item never start from the same
        snapshot. Returns None (and saves nothing) if the id is unknown.
        """
        async with self._mutex:
            for index, existing in enumerate(self._items):
                if existing.id == item_id:
                    break
            else:
                logger.warning("Update skipped, item not found: %s", item_id)
                return None
            updated = change(existing)
            items = list(self._items)
            items[index] = updated
            await self._commit(items)
        logger.debug("Updated %s", item_id)
        return updated

    async def update_item(self, item: SavedItem) -> Optional[SavedItem]:
        """Replace the item with the same id, keeping its position.

        Returns None (and saves nothing) if the id is unknown.
        """
        return await self.modify(item.id, lambda _current: item)

    async def soft_delete(self, item: SavedItem) -> Optional[SavedItem]:
        """Tombstone an item by setting deleted_at to now."""
        return await self.modify(item.id, lambda current: current.with_changes(deleted_at=utc_now()))

    async def restore(self, item: SavedItem) -> Optional[SavedItem]:
        """Undo a soft delete."""
        return await self.modify(item.id, lambda current: current.with_changes(deleted_at=None))

    async def hard_delete(self, item: SavedItem) -> bool:
        """Remove an item permanently, then clean up its assets.

        Asset cleanup is best-effort: its failure is logged and does not
        undo the removal.
        """
        async with self._mutex:
            items = [existing for existing in self._items if existing.id != item.id]
            if len(items) == len(self._items):
                logger.warning("Delete skipped, item not found: %s", item.id)
                return False
            await self._commit(items)
        logger.info("Permanently deleted %s", item.id)

        if self._assets is not None:
            try:
                await asyncio.to_thread(self._assets.delete_all, item.id)
            except Exception as e:
                logger.warning("Asset cleanup failed for %s: %s", item.id, e)
        return True
