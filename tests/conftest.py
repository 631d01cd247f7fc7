"""
Shared pytest fixtures for retain tests.

Provides temp-directory backends, sample items and in-memory image
builders so tests never touch the real store or the network.
"""

import io
from datetime import datetime, timezone
from pathlib import Path

import pytest
from PIL import Image

from retain.errors import ContainerUnavailable
from retain.kv_store import SqliteKeyValueStore
from retain.types import SavedItem, make_link_item


class FailingKeyValueStore:
    """Wraps a real backend and fails chosen operations on demand."""

    def __init__(self, real):
        self._real = real
        self.fail_set_data = False
        self.fail_set_bool = False
        self.fail_get = False
        self.set_data_calls = 0

    def __getattr__(self, name):
        return getattr(self._real, name)

    def set_data(self, key, value):
        self.set_data_calls += 1
        if self.fail_set_data:
            raise ContainerUnavailable("simulated write failure")
        return self._real.set_data(key, value)

    def set_bool(self, key, value):
        if self.fail_set_bool:
            raise ContainerUnavailable("simulated flag write failure")
        return self._real.set_bool(key, value)

    def get_data(self, key):
        if self.fail_get:
            raise ContainerUnavailable("simulated read failure")
        return self._real.get_data(key)


def image_bytes(size=(64, 48), mode="RGB", fmt="PNG", color=None) -> bytes:
    """Encode a solid-colour test image."""
    if color is None:
        color = (200, 40, 40, 128) if "A" in mode else (200, 40, 40)
        if mode == "L":
            color = 128
    img = Image.new(mode, size, color)
    buf = io.BytesIO()
    img.save(buf, format=fmt)
    return buf.getvalue()


@pytest.fixture
def store_path(tmp_path) -> Path:
    """A fresh store directory."""
    path = tmp_path / "store"
    path.mkdir()
    return path


@pytest.fixture
def kv(store_path):
    """A SqliteKeyValueStore writer on the shared database."""
    store = SqliteKeyValueStore(store_path / "kvstore.db")
    yield store
    store.close()


@pytest.fixture
def other_kv(store_path):
    """A second, independent writer on the same shared database."""
    store = SqliteKeyValueStore(store_path / "kvstore.db")
    yield store
    store.close()


@pytest.fixture
def failing_kv(kv):
    return FailingKeyValueStore(kv)


@pytest.fixture
def sample_item() -> SavedItem:
    return make_link_item(
        "https://example.com/article",
        "An Example Article",
        "Short excerpt",
        thumbnail_url="https://example.com/thumb.jpg",
    )


@pytest.fixture
def fixed_time():
    return datetime(2026, 1, 12, 9, 30, 15, 123456, tzinfo=timezone.utc)


@pytest.fixture
def rgba_png() -> bytes:
    return image_bytes(mode="RGBA", fmt="PNG")


@pytest.fixture
def rgb_png() -> bytes:
    return image_bytes(mode="RGB", fmt="PNG")


@pytest.fixture
def jpeg_bytes() -> bytes:
    return image_bytes(mode="RGB", fmt="JPEG")
