"""
Concurrency tests for the shared key-value store and collection.

Verifies that several processes can write the same store at once, the
real scenario when a share extension and the main application both save.

Uses multiprocessing (not threading) to simulate separate retain processes.
"""

import multiprocessing
import sqlite3
from pathlib import Path

from retain.collection_store import CollectionStore
from retain.kv_store import SqliteKeyValueStore
from retain.migration import MIGRATION_FLAG_KEY, LegacyMigrator
from retain.types import encode_items, make_link_item


# Worker functions must be top-level for multiprocessing spawn compatibility


def _worker_set_keys(db_path: str, worker_id: int, count: int):
    """Worker that writes unique keys."""
    from retain.kv_store import SqliteKeyValueStore
    with SqliteKeyValueStore(Path(db_path)) as kv:
        for i in range(count):
            kv.set_data(f"worker{worker_id}:key{i}", f"value {i}".encode())


def _worker_save_collection(db_path: str, worker_id: int, count: int):
    """Worker that repeatedly saves the whole collection from its own view."""
    from retain.collection_store import CollectionStore
    from retain.kv_store import SqliteKeyValueStore
    from retain.types import make_link_item
    with SqliteKeyValueStore(Path(db_path)) as kv:
        store = CollectionStore(kv)
        for i in range(count):
            items = store.load()
            items.insert(0, make_link_item(
                f"https://worker{worker_id}/{i}", f"Worker {worker_id} item {i}",
            ))
            store.save(items)


def _worker_migrate(db_path: str, legacy_path: str):
    """Worker that runs the legacy migration."""
    from retain.collection_store import CollectionStore
    from retain.kv_store import SqliteKeyValueStore
    from retain.migration import LegacyMigrator
    with SqliteKeyValueStore(Path(db_path)) as kv:
        LegacyMigrator(CollectionStore(kv), kv, Path(legacy_path)).run()


def _run_workers(target, args_list):
    ctx = multiprocessing.get_context("spawn")
    processes = [ctx.Process(target=target, args=args) for args in args_list]
    for p in processes:
        p.start()
    for p in processes:
        p.join(timeout=60)
    for p in processes:
        assert p.exitcode == 0, f"Worker exited with code {p.exitcode}"


class TestConcurrentWrites:

    def test_parallel_writers_no_lost_keys(self, tmp_path):
        """8 workers each write unique keys; all must be present after."""
        db_path = tmp_path / "kvstore.db"
        SqliteKeyValueStore(db_path).close()

        _run_workers(_worker_set_keys, [(str(db_path), w, 10) for w in range(8)])

        with SqliteKeyValueStore(db_path) as kv:
            assert len(kv.keys()) == 80

        # Every write got its own revision
        conn = sqlite3.connect(str(db_path))
        try:
            rows, distinct = conn.execute(
                "SELECT COUNT(*), COUNT(DISTINCT revision) FROM kv"
            ).fetchone()
        finally:
            conn.close()
        assert rows == distinct == 80

    def test_racing_collection_saves_stay_decodable(self, tmp_path):
        """Uncoordinated saves lose items but never corrupt the blob."""
        db_path = tmp_path / "kvstore.db"
        SqliteKeyValueStore(db_path).close()

        _run_workers(_worker_save_collection, [(str(db_path), w, 10) for w in range(4)])

        with SqliteKeyValueStore(db_path) as kv:
            items = CollectionStore(kv).load()
        assert 1 <= len(items) <= 40
        assert len({item.id for item in items}) == len(items)

    def test_observer_sees_changes_from_other_process(self, tmp_path):
        db_path = tmp_path / "kvstore.db"
        with SqliteKeyValueStore(db_path) as kv:
            seen = []
            kv.add_observer(seen.append)

            _run_workers(_worker_set_keys, [(str(db_path), 0, 3)])

            kv.synchronize()
            assert seen == [["worker0:key0", "worker0:key1", "worker0:key2"]]


class TestConcurrentMigration:

    def test_parallel_migration_never_duplicates(self, tmp_path):
        """N processes migrate at once; each legacy item lands exactly once."""
        db_path = tmp_path / "kvstore.db"
        legacy_path = tmp_path / "legacy.db"
        legacy = [make_link_item(f"https://legacy/{i}", f"Legacy {i}") for i in range(5)]
        with SqliteKeyValueStore(legacy_path) as kv:
            kv.set_data("savedLinks", encode_items(legacy))
        SqliteKeyValueStore(db_path).close()

        _run_workers(_worker_migrate, [(str(db_path), str(legacy_path)) for _ in range(4)])

        with SqliteKeyValueStore(db_path) as kv:
            assert kv.get_bool(MIGRATION_FLAG_KEY)
            assert CollectionStore(kv).load() == legacy
            # A later start is a no-op
            assert LegacyMigrator(CollectionStore(kv), kv, legacy_path).run().status == "skipped"
