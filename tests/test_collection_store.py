"""
Tests for CollectionStore: whole-blob load/save semantics.
"""

import pytest

from retain.collection_store import COLLECTION_KEY, CollectionStore
from retain.errors import ContainerUnavailable, DecodeError, QuotaExceededError
from retain.kv_store import SqliteKeyValueStore
from retain.types import make_link_item


def test_missing_key_loads_empty(kv):
    assert CollectionStore(kv).load() == []


def test_save_then_load(kv):
    store = CollectionStore(kv)
    items = [make_link_item(f"https://example.com/{i}", f"Item {i}") for i in range(3)]
    store.save(items)
    assert store.load() == items
    assert kv.get_data(COLLECTION_KEY) is not None


def test_save_replaces_whole_collection(kv):
    store = CollectionStore(kv)
    store.save([make_link_item("https://a", "A"), make_link_item("https://b", "B")])
    only = [make_link_item("https://c", "C")]
    store.save(only)
    assert store.load() == only


def test_duplicates_are_not_removed(kv):
    store = CollectionStore(kv)
    item = make_link_item("https://a", "A")
    store.save([item, item])
    assert store.load() == [item, item]


def test_undecodable_blob_raises_decode_error(kv):
    kv.set_data(COLLECTION_KEY, b"{broken")
    with pytest.raises(DecodeError):
        CollectionStore(kv).load()


def test_load_sees_other_writer(kv, other_kv):
    CollectionStore(other_kv).save([make_link_item("https://remote", "Remote")])
    [item] = CollectionStore(kv).load()
    assert item.url == "https://remote"


def test_load_synchronizes_first(kv, other_kv):
    seen = []
    kv.add_observer(seen.append)
    other_kv.set_data(COLLECTION_KEY, b"[]")
    CollectionStore(kv).load()
    assert seen == [[COLLECTION_KEY]]


def test_write_failure_propagates(failing_kv):
    failing_kv.fail_set_data = True
    with pytest.raises(ContainerUnavailable):
        CollectionStore(failing_kv).save([make_link_item("https://a", "A")])


def test_oversized_collection_is_rejected(store_path):
    small = SqliteKeyValueStore(store_path / "small.db", max_value_bytes=200)
    try:
        store = CollectionStore(small)
        items = [make_link_item(f"https://example.com/{i}", "x" * 50) for i in range(5)]
        with pytest.raises(QuotaExceededError):
            store.save(items)
        assert store.load() == []
    finally:
        small.close()


def test_clear_and_blob_size(kv):
    store = CollectionStore(kv)
    assert store.blob_size() is None
    store.save([make_link_item("https://a", "A")])
    assert store.blob_size() > 0
    store.clear()
    assert store.blob_size() is None
    assert store.load() == []


def test_custom_key(kv):
    store = CollectionStore(kv, key="otherLinks")
    store.save([make_link_item("https://a", "A")])
    assert CollectionStore(kv).load() == []
    assert len(store.load()) == 1
