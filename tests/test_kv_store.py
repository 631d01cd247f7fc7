"""
Tests for the shared SQLite key-value store: values, quota, and
change notifications between independent writers.
"""

import pytest

from retain.errors import ContainerUnavailable, QuotaExceededError
from retain.kv_store import SqliteKeyValueStore


class TestValues:

    def test_missing_key_is_none(self, kv):
        assert kv.get_data("nope") is None
        assert kv.get_bool("nope") is False

    def test_set_and_get(self, kv):
        kv.set_data("k", b"value")
        assert kv.get_data("k") == b"value"
        kv.set_data("k", b"replaced")
        assert kv.get_data("k") == b"replaced"

    def test_bool(self, kv):
        kv.set_bool("flag", True)
        assert kv.get_bool("flag") is True
        kv.set_bool("flag", False)
        assert kv.get_bool("flag") is False

    def test_remove_and_keys(self, kv):
        kv.set_data("a", b"1")
        kv.set_data("b", b"2")
        kv.remove("a")
        kv.remove("missing")
        assert kv.get_data("a") is None
        assert kv.keys() == ["b"]

    def test_quota(self, store_path):
        small = SqliteKeyValueStore(store_path / "small.db", max_value_bytes=10)
        try:
            small.set_data("ok", b"x" * 10)
            with pytest.raises(QuotaExceededError):
                small.set_data("big", b"x" * 11)
            assert small.get_data("big") is None
        finally:
            small.close()

    def test_values_visible_across_writers(self, kv, other_kv):
        kv.set_data("shared", b"from-a")
        assert other_kv.get_data("shared") == b"from-a"
        other_kv.set_data("shared", b"from-b")
        assert kv.get_data("shared") == b"from-b"

    def test_closed_store_raises(self, store_path):
        store = SqliteKeyValueStore(store_path / "closed.db")
        store.close()
        with pytest.raises(ContainerUnavailable):
            store.get_data("k")

    def test_unopenable_path_raises(self, tmp_path):
        blocker = tmp_path / "file"
        blocker.write_text("not a directory")
        with pytest.raises(ContainerUnavailable):
            SqliteKeyValueStore(blocker / "sub" / "kv.db")


class TestNotifications:

    def test_own_writes_do_not_notify(self, kv):
        seen = []
        kv.add_observer(seen.append)
        kv.set_data("k", b"1")
        assert kv.synchronize() is True
        assert seen == []

    def test_other_writer_changes_notify_once(self, kv, other_kv):
        seen = []
        kv.add_observer(seen.append)
        other_kv.set_data("savedLinks", b"[]")
        other_kv.set_data("offlineContent", b"{}")
        kv.synchronize()
        assert seen == [["savedLinks", "offlineContent"]]
        kv.synchronize()
        assert len(seen) == 1

    def test_removal_propagates(self, kv, other_kv):
        kv.set_data("k", b"1")
        seen = []
        kv.add_observer(seen.append)
        other_kv.remove("k")
        kv.synchronize()
        assert seen == [["k"]]
        assert kv.get_data("k") is None

    def test_existing_data_is_not_a_change(self, store_path, kv):
        kv.set_data("k", b"1")
        late = SqliteKeyValueStore(store_path / "kvstore.db")
        try:
            seen = []
            late.add_observer(seen.append)
            late.synchronize()
            assert seen == []
        finally:
            late.close()

    def test_remove_observer(self, kv, other_kv):
        seen = []
        kv.add_observer(seen.append)
        kv.remove_observer(seen.append)
        other_kv.set_data("k", b"1")
        kv.synchronize()
        assert seen == []

    def test_failing_observer_does_not_break_others(self, kv, other_kv):
        def broken(keys):
            raise RuntimeError("observer bug")

        seen = []
        kv.add_observer(broken)
        kv.add_observer(seen.append)
        other_kv.set_data("k", b"1")
        assert kv.synchronize() is True
        assert seen == [["k"]]

    def test_synchronize_on_closed_store_returns_false(self, store_path):
        store = SqliteKeyValueStore(store_path / "closed.db")
        store.close()
        assert store.synchronize() is False
