"""
Shared key-value store using SQLite.

This is the local stand-in for a cloud-synchronized key-value store.
Every writer (an extension process, the main application, another
device's sync agent) opens the same database file with its own
SqliteKeyValueStore instance. Writes are last-write-wins per key.

Change propagation works by revision numbers: every write bumps a global
counter and records the writer. synchronize() looks for rows written by
*other* writers since the last look, and notifies observers with the
changed keys. Like the cloud store it models, propagation is eventual:
a writer only learns about remote changes when it synchronizes.

Removed keys keep a row with a NULL value so that removals propagate too.
"""

import logging
import os
import socket
import sqlite3
import threading
import uuid
from datetime import datetime, timezone
from pathlib import Path
from typing import Callable, Optional

from .errors import ContainerUnavailable, QuotaExceededError

logger = logging.getLogger(__name__)

# Observers receive the list of keys changed by other writers
ChangeObserver = Callable[[list[str]], None]

DEFAULT_MAX_VALUE_BYTES = 1024 * 1024

_TRUE = b"true"
_FALSE = b"false"


def _new_writer_id() -> str:
    return f"{socket.gethostname()}:{os.getpid()}:{uuid.uuid4().hex[:8]}"


class SqliteKeyValueStore:
    """
    SQLite-backed key-value store shared by several writers.

    Thread-safe: one connection guarded by a lock, usable from
    asyncio.to_thread workers.
    """

    def __init__(
        self,
        store_path: Path,
        *,
        max_value_bytes: int = DEFAULT_MAX_VALUE_BYTES,
        writer_id: Optional[str] = None,
    ):
        """
        Args:
            store_path: Path to SQLite database file
            max_value_bytes: Largest value accepted for a single key
            writer_id: Identity of this writer (generated if omitted)
        """
        self._db_path = store_path
        self._max_value_bytes = max_value_bytes
        self.writer_id = writer_id or _new_writer_id()
        self._conn: Optional[sqlite3.Connection] = None
        self._lock = threading.Lock()
        self._observers: list[ChangeObserver] = []
        self._seen_revision = 0
        self._init_db()

    def _init_db(self) -> None:
        """Initialize the SQLite database."""
        try:
            self._db_path.parent.mkdir(parents=True, exist_ok=True)
            self._conn = sqlite3.connect(
                str(self._db_path), check_same_thread=False,
                isolation_level=None,
            )
            # Wait up to 5 seconds for locks instead of failing immediately
            self._conn.execute("PRAGMA busy_timeout=5000")
            # Enable WAL mode for better concurrent access across processes
            self._conn.execute("PRAGMA journal_mode=WAL")

            self._conn.execute("""
                CREATE TABLE IF NOT EXISTS kv (
                    key TEXT PRIMARY KEY,
                    value BLOB,
                    revision INTEGER NOT NULL,
                    writer TEXT NOT NULL,
                    updated_at TEXT NOT NULL
                )
            """)
            self._conn.execute("""
                CREATE INDEX IF NOT EXISTS idx_kv_revision
                ON kv(revision)
            """)
            row = self._conn.execute(
                "SELECT COALESCE(MAX(revision), 0) FROM kv"
            ).fetchone()
        except (OSError, sqlite3.Error) as e:
            raise ContainerUnavailable(
                f"Cannot open key-value store at {self._db_path}: {e}"
            ) from e
        # Everything already present is the starting state, not a change
        self._seen_revision = row[0]

    def _conn_or_raise(self) -> sqlite3.Connection:
        if self._conn is None:
            raise ContainerUnavailable(f"Key-value store is closed: {self._db_path}")
        return self._conn

    # -------------------------------------------------------------------------
    # Read Operations
    # -------------------------------------------------------------------------

    def get_data(self, key: str) -> Optional[bytes]:
        """Value for a key, or None if absent."""
        with self._lock:
            try:
                row = self._conn_or_raise().execute(
                    "SELECT value FROM kv WHERE key = ?", (key,)
                ).fetchone()
            except sqlite3.Error as e:
                raise ContainerUnavailable(f"Read of {key!r} failed: {e}") from e
        if row is None or row[0] is None:
            return None
        return bytes(row[0])

    def get_bool(self, key: str) -> bool:
        """Boolean value for a key; absent keys read as False."""
        return self.get_data(key) == _TRUE

    def keys(self) -> list[str]:
        """All present keys, sorted."""
        with self._lock:
            try:
                rows = self._conn_or_raise().execute(
                    "SELECT key FROM kv WHERE value IS NOT NULL ORDER BY key"
                ).fetchall()
            except sqlite3.Error as e:
                raise ContainerUnavailable(f"Listing keys failed: {e}") from e
        return [r[0] for r in rows]

    # -------------------------------------------------------------------------
    # Write Operations
    # -------------------------------------------------------------------------

    def set_data(self, key: str, value: bytes) -> None:
        """Replace the value for a key."""
        if len(value) > self._max_value_bytes:
            raise QuotaExceededError(
                f"Value for {key!r} is {len(value)} bytes; "
                f"limit is {self._max_value_bytes}"
            )
        self._write(key, bytes(value))

    def set_bool(self, key: str, value: bool) -> None:
        self._write(key, _TRUE if value else _FALSE)

    def remove(self, key: str) -> None:
        """Remove a key. Removing an absent key is a no-op."""
        if self.get_data(key) is None:
            return
        self._write(key, None)

    def _write(self, key: str, value: Optional[bytes]) -> None:
        now = datetime.now(timezone.utc).isoformat()
        with self._lock:
            conn = self._conn_or_raise()
            try:
                # IMMEDIATE so the revision read and the write are atomic
                # with respect to other writer processes
                conn.execute("BEGIN IMMEDIATE")
                try:
                    revision = conn.execute(
                        "SELECT COALESCE(MAX(revision), 0) + 1 FROM kv"
                    ).fetchone()[0]
                    conn.execute("""
                        INSERT OR REPLACE INTO kv (key, value, revision, writer, updated_at)
                        VALUES (?, ?, ?, ?, ?)
                    """, (key, value, revision, self.writer_id, now))
                    conn.execute("COMMIT")
                except BaseException:
                    conn.execute("ROLLBACK")
                    raise
            except sqlite3.Error as e:
                raise ContainerUnavailable(f"Write of {key!r} failed: {e}") from e

    # -------------------------------------------------------------------------
    # Change propagation
    # -------------------------------------------------------------------------

    def add_observer(self, observer: ChangeObserver) -> None:
        with self._lock:
            if observer not in self._observers:
                self._observers.append(observer)

    def remove_observer(self, observer: ChangeObserver) -> None:
        with self._lock:
            if observer in self._observers:
                self._observers.remove(observer)

    def synchronize(self) -> bool:
        """
        Pull in changes made by other writers.

        Observers are called (outside the lock) with the keys that other
        writers changed since the previous synchronize. Returns False if
        the store could not be read, mirroring the cloud store's API.
        """
        with self._lock:
            try:
                rows = self._conn_or_raise().execute("""
                    SELECT key, revision, writer FROM kv
                    WHERE revision > ?
                    ORDER BY revision
                """, (self._seen_revision,)).fetchall()
            except (sqlite3.Error, ContainerUnavailable) as e:
                logger.warning("Synchronize failed for %s: %s", self._db_path, e)
                return False
            if not rows:
                return True
            self._seen_revision = rows[-1][1]
            changed = list(dict.fromkeys(
                key for key, _rev, writer in rows if writer != self.writer_id
            ))
            observers = list(self._observers)

        if changed:
            logger.debug("External changes to %s: %s", self._db_path.name, changed)
            for observer in observers:
                try:
                    observer(changed)
                except Exception as e:
                    logger.warning("Change observer failed: %s", e)
        return True

    # -------------------------------------------------------------------------
    # Lifecycle
    # -------------------------------------------------------------------------

    @property
    def path(self) -> Path:
        return self._db_path

    def close(self) -> None:
        """Close the database connection."""
        with self._lock:
            if self._conn is not None:
                self._conn.close()
                self._conn = None

    def __enter__(self):
        return self

    def __exit__(self, exc_type, exc_val, exc_tb):
        self.close()
        return False

    def __del__(self):
        self.close()
