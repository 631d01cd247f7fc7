"""Tests for retain.toml loading and saving."""

from pathlib import Path

import pytest

from retain.config import (
    CONFIG_FILENAME,
    StoreConfig,
    get_default_store_path,
    load_config,
    load_or_create_config,
    save_config,
)


def test_load_or_create_writes_defaults(tmp_path):
    config = load_or_create_config(tmp_path / "store")
    assert config.config_path.exists()
    assert config.backend == "local"
    assert config.images.max_dimension == 2048
    assert config.images.thumbnail_size == 80
    assert config.kv_path == tmp_path / "store" / "kvstore.db"
    assert config.resolved_legacy_path == tmp_path / "store" / "legacy.db"


def test_round_trip(tmp_path):
    config = StoreConfig(path=tmp_path, legacy_path=tmp_path / "old" / "links.db")
    config.images.max_dimension = 1024
    config.sync.poll_interval = 0.5
    save_config(config)

    loaded = load_config(tmp_path)
    assert loaded.legacy_path == tmp_path / "old" / "links.db"
    assert loaded.images.max_dimension == 1024
    assert loaded.sync.poll_interval == 0.5
    assert loaded.created == config.created


def test_existing_config_is_not_overwritten(tmp_path):
    config = StoreConfig(path=tmp_path, backend="custom")
    save_config(config)
    assert load_or_create_config(tmp_path).backend == "custom"


def test_missing_config_raises(tmp_path):
    with pytest.raises(FileNotFoundError):
        load_config(tmp_path)


def test_newer_version_is_rejected(tmp_path):
    (tmp_path / CONFIG_FILENAME).write_text("[store]\nversion = 99\n")
    with pytest.raises(ValueError, match="newer"):
        load_config(tmp_path)


def test_invalid_toml_is_rejected(tmp_path):
    (tmp_path / CONFIG_FILENAME).write_text("[store\nversion = ")
    with pytest.raises(ValueError, match="Invalid config"):
        load_config(tmp_path)


def test_partial_config_uses_defaults(tmp_path):
    (tmp_path / CONFIG_FILENAME).write_text("[images]\nthumbnail_size = 120\n")
    config = load_config(tmp_path)
    assert config.images.thumbnail_size == 120
    assert config.images.max_dimension == 2048
    assert config.sync.max_value_bytes == 1024 * 1024


def test_default_store_path_from_env(monkeypatch, tmp_path):
    monkeypatch.setenv("RETAIN_STORE_PATH", str(tmp_path / "env-store"))
    assert get_default_store_path() == tmp_path / "env-store"
    monkeypatch.delenv("RETAIN_STORE_PATH")
    assert get_default_store_path() == Path.home() / ".retain"
