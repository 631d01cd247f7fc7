"""
Asset store: binary content derived from saved items.

Large content never goes into the collection blob. It lives on disk,
addressed by item id plus kind:

    <root>/Images/<ID>_original.<jpg|png|heic>
    <root>/Images/<ID>_thumbnail.jpg
    <root>/OfflineContent/<ID>.html
    <root>/OfflineContent/<ID>.json

A small side index of offline content lives in the shared key-value
backend under ``offlineContent``, so "is this item cached?" can be
answered without touching the filesystem. Files are always written
before the index is updated; an index entry whose file has gone is read
as absent, never as an error.
"""

import json
import logging
import os
import tempfile
import threading
import time
from dataclasses import dataclass
from enum import Enum
from pathlib import Path
from typing import Optional

from .errors import AssetIOError, ContainerUnavailable, DecodeError
from .images import ImageFormat, ImageProcessor
from .protocol import KeyValueBackendProtocol

logger = logging.getLogger(__name__)

IMAGES_FOLDER = "Images"
OFFLINE_FOLDER = "OfflineContent"
OFFLINE_INDEX_KEY = "offlineContent"

# Lookup order when the stored original's format is unknown
_ORIGINAL_EXTENSIONS = ("jpg", "png", "heic")


class AssetKind(str, Enum):
    ORIGINAL_IMAGE = "original"
    THUMBNAIL_IMAGE = "thumbnail"
    CACHED_PAGE = "page"
    EXTRACTED_ARTICLE = "article"

    @property
    def is_offline_content(self) -> bool:
        return self in (AssetKind.CACHED_PAGE, AssetKind.EXTRACTED_ARTICLE)


@dataclass
class ImageMetadata:
    """Result of storing an image: relative paths plus what was stored."""
    original_path: str
    thumbnail_path: str
    width: int
    height: int
    format: str
    file_size: int


@dataclass
class OfflineEntry:
    """One row of the offline content index."""
    file_url: str
    saved_date: float
    has_article: bool = False


class AssetStore:
    """
    Content-addressed file storage for item assets.

    Directory operations are serialized by a lock, so one instance can be
    driven from several asyncio.to_thread workers.
    """

    def __init__(
        self,
        root: Path,
        backend: KeyValueBackendProtocol,
        image_processor: Optional[ImageProcessor] = None,
    ):
        """
        Args:
            root: Shared storage directory for asset files
            backend: Key-value backend holding the offline index
            image_processor: Pipeline used by store_image()
        """
        self._root = root
        self._backend = backend
        self._processor = image_processor or ImageProcessor()
        self._lock = threading.Lock()

    @property
    def root(self) -> Path:
        return self._root

    # -------------------------------------------------------------------------
    # Paths
    # -------------------------------------------------------------------------

    def _dir(self, kind: AssetKind) -> Path:
        """Directory for a kind, created on demand."""
        folder = IMAGES_FOLDER if kind in (AssetKind.ORIGINAL_IMAGE, AssetKind.THUMBNAIL_IMAGE) else OFFLINE_FOLDER
        path = self._root / folder
        try:
            path.mkdir(parents=True, exist_ok=True)
        except OSError as e:
            raise ContainerUnavailable(f"Asset directory unavailable: {path}: {e}") from e
        return path

    def _candidates(self, item_id: str, kind: AssetKind) -> list[Path]:
        d = self._dir(kind)
        if kind is AssetKind.ORIGINAL_IMAGE:
            return [d / f"{item_id}_original.{ext}" for ext in _ORIGINAL_EXTENSIONS]
        if kind is AssetKind.THUMBNAIL_IMAGE:
            return [d / f"{item_id}_thumbnail.jpg"]
        if kind is AssetKind.CACHED_PAGE:
            return [d / f"{item_id}.html"]
        return [d / f"{item_id}.json"]

    def path_for(self, item_id: str, kind: AssetKind) -> Optional[Path]:
        """Path of the stored file for (item, kind), or None if absent."""
        for candidate in self._candidates(item_id, kind):
            if candidate.is_file():
                return candidate
        return None

    def relative_path(self, path: Path) -> str:
        return path.relative_to(self._root).as_posix()

    # -------------------------------------------------------------------------
    # Generic operations
    # -------------------------------------------------------------------------

    def store(self, item_id: str, kind: AssetKind, data: bytes) -> Path:
        """
        Write the blob for (item, kind), replacing any existing one.

        An original image always goes through the image pipeline and is
        stored together with its thumbnail; thumbnails cannot be stored
        on their own.

        Raises:
            ValueError: kind is THUMBNAIL_IMAGE
            ImageStorageError: The image pipeline failed; nothing was written
            AssetIOError: The file could not be written
            ContainerUnavailable: The asset directory is unusable
        """
        if kind is AssetKind.THUMBNAIL_IMAGE:
            raise ValueError("Thumbnails are derived from the original; store the original image")
        if kind is AssetKind.ORIGINAL_IMAGE:
            meta = self.store_image(item_id, data)
            return self._root / meta.original_path
        with self._lock:
            target = self._candidates(item_id, kind)[0]
            self._write_atomic(target, data)
        self._index_add(item_id, kind, target)
        logger.info("Stored %s for %s (%d bytes)", kind.value, item_id, len(data))
        return target

    def fetch(self, item_id: str, kind: AssetKind) -> Optional[bytes]:
        """Content for (item, kind), or None if nothing is stored."""
        with self._lock:
            path = self.path_for(item_id, kind)
            if path is None:
                return None
            try:
                return path.read_bytes()
            except FileNotFoundError:
                return None
            except OSError as e:
                logger.warning("Could not read %s: %s", path, e)
                return None

    def exists(self, item_id: str, kind: AssetKind) -> bool:
        return self.path_for(item_id, kind) is not None

    def delete(self, item_id: str, kind: AssetKind) -> int:
        """Remove the file(s) for (item, kind). Returns files removed."""
        with self._lock:
            removed = self._unlink_all(self._candidates(item_id, kind))
        if kind.is_offline_content:
            self._index_remove(item_id, kind)
        return removed

    def delete_all(self, item_id: str) -> int:
        """Remove every asset of an item and its index entry."""
        with self._lock:
            paths: list[Path] = []
            for kind in AssetKind:
                paths.extend(self._candidates(item_id, kind))
            removed = self._unlink_all(paths)
        self._index_drop(item_id)
        logger.info("Deleted %d asset files for %s", removed, item_id)
        return removed

    def total_size(self) -> int:
        """Total bytes of all stored asset files."""
        total = 0
        if not self._root.exists():
            return 0
        for path in self._root.rglob("*"):
            try:
                if path.is_file():
                    total += path.stat().st_size
            except OSError:
                continue
        return total

    # -------------------------------------------------------------------------
    # Images
    # -------------------------------------------------------------------------

    def store_image(self, item_id: str, data: bytes) -> ImageMetadata:
        """
        Process and store an image's original and thumbnail together.

        Either both files are stored or neither is. When the item already
        has an image, a failed write leaves the previous pair in place.

        Raises:
            InvalidImageData, CompressionFailed, ThumbnailGenerationFailed:
                The pipeline failed; nothing was written
            AssetIOError: A file could not be written; nothing is left behind
        """
        processed = self._processor.process(data)
        with self._lock:
            images = self._dir(AssetKind.ORIGINAL_IMAGE)
            original = images / f"{item_id}_original.{processed.format.value}"
            thumbnail = images / f"{item_id}_thumbnail.jpg"
            original_tmp = self._write_temp(images, processed.original)
            try:
                thumbnail_tmp = self._write_temp(images, processed.thumbnail)
            except AssetIOError:
                _silent_unlink(original_tmp)
                raise
            previous = self._candidates(item_id, AssetKind.ORIGINAL_IMAGE) + [thumbnail]
            try:
                set_aside = self._set_aside(previous)
            except AssetIOError:
                _silent_unlink(original_tmp)
                _silent_unlink(thumbnail_tmp)
                raise
            try:
                os.replace(original_tmp, original)
                os.replace(thumbnail_tmp, thumbnail)
            except OSError as e:
                for path in (original_tmp, thumbnail_tmp, original, thumbnail):
                    _silent_unlink(path)
                self._put_back(set_aside)
                raise AssetIOError(f"Failed to save image for {item_id}: {e}") from e
            # Also drops an earlier original stored under another extension
            for _path, aside in set_aside:
                _silent_unlink(aside)

        logger.info("Saved image %s (%d bytes)", original.name, len(processed.original))
        return ImageMetadata(
            original_path=self.relative_path(original),
            thumbnail_path=self.relative_path(thumbnail),
            width=processed.width,
            height=processed.height,
            format=processed.format.value,
            file_size=len(processed.original),
        )

    def image_format(self, item_id: str) -> Optional[ImageFormat]:
        """Format of the stored original, from its extension."""
        path = self.path_for(item_id, AssetKind.ORIGINAL_IMAGE)
        return ImageFormat.from_filename(path.name) if path else None

    # -------------------------------------------------------------------------
    # Offline index
    # -------------------------------------------------------------------------

    def _load_index(self) -> dict[str, OfflineEntry]:
        data = self._backend.get_data(OFFLINE_INDEX_KEY)
        if data is None:
            return {}
        try:
            raw = json.loads(data)
            if not isinstance(raw, dict):
                raise DecodeError("offline index must be an object")
            return {
                item_id: OfflineEntry(
                    file_url=str(entry["fileURL"]),
                    saved_date=float(entry["savedDate"]),
                    has_article=bool(entry.get("hasArticle", False)),
                )
                for item_id, entry in raw.items()
            }
        except (ValueError, KeyError, TypeError, AttributeError, DecodeError) as e:
            logger.warning("Offline index is unreadable, treating as empty: %s", e)
            return {}

    def _save_index(self, index: dict[str, OfflineEntry]) -> None:
        raw = {
            item_id: {
                "fileURL": entry.file_url,
                "savedDate": entry.saved_date,
                "hasArticle": entry.has_article,
            }
            for item_id, entry in index.items()
        }
        self._backend.set_data(OFFLINE_INDEX_KEY, json.dumps(raw).encode("utf-8"))
        self._backend.synchronize()

    def _index_add(self, item_id: str, kind: AssetKind, path: Path) -> None:
        with self._lock:
            index = self._load_index()
            entry = index.get(item_id)
            if kind is AssetKind.CACHED_PAGE:
                index[item_id] = OfflineEntry(
                    file_url=str(path),
                    saved_date=time.time(),
                    has_article=entry.has_article if entry else False,
                )
            elif entry is not None:
                entry.has_article = True
            else:
                index[item_id] = OfflineEntry(
                    file_url=str(path), saved_date=time.time(), has_article=True,
                )
            self._save_index(index)

    def _index_remove(self, item_id: str, kind: AssetKind) -> None:
        with self._lock:
            index = self._load_index()
            entry = index.get(item_id)
            if entry is None:
                return
            if kind is AssetKind.CACHED_PAGE:
                del index[item_id]
            else:
                entry.has_article = False
            self._save_index(index)

    def _index_drop(self, item_id: str) -> None:
        with self._lock:
            index = self._load_index()
            if index.pop(item_id, None) is not None:
                self._save_index(index)

    def offline_entry(self, item_id: str) -> Optional[OfflineEntry]:
        """Index entry for an item, or None. Reads only the index."""
        with self._lock:
            return self._load_index().get(item_id)

    def has_offline_content(self, item_id: str) -> bool:
        """Whether the index records cached content whose file still exists."""
        entry = self.offline_entry(item_id)
        if entry is None:
            return False
        if not Path(entry.file_url).is_file():
            logger.debug("Offline index entry for %s points at a missing file", item_id)
            return False
        return True

    def offline_ids(self) -> list[str]:
        with self._lock:
            return sorted(self._load_index())

    def reconcile_index(self) -> list[str]:
        """Drop index entries whose files no longer exist. Returns dropped ids."""
        with self._lock:
            index = self._load_index()
            stale = [
                item_id for item_id, entry in index.items()
                if not Path(entry.file_url).is_file()
            ]
            for item_id in stale:
                del index[item_id]
            if stale:
                self._save_index(index)
        if stale:
            logger.info("Dropped %d stale offline index entries", len(stale))
        return stale

    # -------------------------------------------------------------------------
    # File helpers (callers hold the lock)
    # -------------------------------------------------------------------------

    def _write_temp(self, directory: Path, data: bytes) -> Path:
        try:
            fd, tmp = tempfile.mkstemp(dir=directory, prefix=".tmp-")
            with os.fdopen(fd, "wb") as f:
                f.write(data)
                f.flush()
                os.fsync(f.fileno())
        except OSError as e:
            raise AssetIOError(f"Failed to write to {directory}: {e}") from e
        return Path(tmp)

    def _write_atomic(self, target: Path, data: bytes) -> None:
        tmp = self._write_temp(target.parent, data)
        try:
            os.replace(tmp, target)
        except OSError as e:
            _silent_unlink(tmp)
            raise AssetIOError(f"Failed to save {target.name}: {e}") from e

    def _set_aside(self, paths: list[Path]) -> list[tuple[Path, Path]]:
        """Move existing files to hidden backups. Returns (path, backup) pairs."""
        moved: list[tuple[Path, Path]] = []
        for path in paths:
            if not path.is_file():
                continue
            aside = path.with_name(f".bak-{path.name}")
            try:
                os.replace(path, aside)
            except OSError as e:
                self._put_back(moved)
                raise AssetIOError(f"Failed to set aside {path.name}: {e}") from e
            moved.append((path, aside))
        return moved

    def _put_back(self, moved: list[tuple[Path, Path]]) -> None:
        for path, aside in moved:
            try:
                os.replace(aside, path)
            except OSError as e:
                logger.error("Could not restore %s from %s: %s", path.name, aside.name, e)

    def _unlink_all(self, paths: list[Path]) -> int:
        removed = 0
        for path in paths:
            try:
                path.unlink()
                removed += 1
            except FileNotFoundError:
                continue
            except OSError as e:
                raise AssetIOError(f"Failed to delete {path}: {e}") from e
        return removed


def _silent_unlink(path: Path) -> None:
    try:
        path.unlink()
    except OSError:
        pass
