"""
Error types and error logging for retain.

Logs full stack traces for debugging while showing clean messages to users.
"""

import os
import traceback
from datetime import datetime, timezone
from pathlib import Path


class RetainError(Exception):
    """Base class for all retain errors."""


class StoreError(RetainError):
    """A persistence-layer failure (backend or asset directory)."""


class DecodeError(StoreError):
    """A stored blob is present but could not be decoded."""


class ContainerUnavailable(StoreError):
    """The shared storage namespace could not be opened."""


class QuotaExceededError(StoreError):
    """A value is larger than the backend accepts for one key."""


class AssetIOError(StoreError):
    """Reading or writing an asset file failed."""


class NotFoundError(RetainError):
    """An operation referenced an item id that is not in the collection."""

    def __init__(self, item_id: str):
        super().__init__(f"Item not found: {item_id}")
        self.item_id = item_id


class ImageStorageError(RetainError):
    """Base class for image pipeline failures. Nothing is persisted."""


class InvalidImageData(ImageStorageError):
    """The bytes could not be decoded as an image."""


class CompressionFailed(ImageStorageError):
    """The processed original could not be encoded."""


class ThumbnailGenerationFailed(ImageStorageError):
    """The thumbnail could not be generated or encoded."""


def _error_log_path() -> Path:
    """Resolve error log path, respecting RETAIN_STORE_PATH."""
    store = os.environ.get("RETAIN_STORE_PATH")
    if store:
        return Path(store) / "retain-errors.log"
    return Path.home() / ".retain" / "retain-errors.log"


def log_exception(exc: Exception, context: str = "") -> Path:
    """
    Log exception with full traceback to file.

    Args:
        exc: The exception that occurred
        context: Optional context string (e.g., command name)

    Returns:
        Path to the error log file
    """
    log_path = _error_log_path()
    timestamp = datetime.now(timezone.utc).isoformat()
    try:
        log_path.parent.mkdir(parents=True, exist_ok=True)
        fd = os.open(log_path, os.O_WRONLY | os.O_CREAT | os.O_APPEND, 0o600)
        with os.fdopen(fd, "a") as f:
            f.write(f"\n{'='*60}\n")
            f.write(f"[{timestamp}]")
            if context:
                f.write(f" {context}")
            f.write("\n")
            f.write("".join(traceback.format_exception(exc)))
    except OSError:
        pass  # Nowhere to log; do not crash over it
    return log_path
