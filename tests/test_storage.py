import sqlite3

import pytest

from dqmp.shard import MAX_PAYLOAD_SIZE, ShardError
from dqmp.storage import (
    DB_FILE_NAME,
    DEFAULT_BUCKET,
    CorruptDataError,
    DataManager,
    NotFoundError,
)


@pytest.fixture
def manager(tmp_path):
    with DataManager(tmp_path / "store") as dm:
        yield dm


def test_put_get_round_trip(manager):
    manager.put("alpha", b"hello world")
    assert manager.get("alpha") == b"hello world"


def test_put_replaces_value(manager):
    manager.put("k", b"first")
    manager.put("k", b"second")
    assert manager.get("k") == b"second"
    assert manager.list_keys() == ["k"]


def test_empty_payload_round_trip(manager):
    manager.put("empty", b"")
    assert manager.get("empty") == b""


def test_max_payload_accepted(manager):
    payload = bytes(range(MAX_PAYLOAD_SIZE))
    manager.put("full", payload)
    assert manager.get("full") == payload


def test_oversized_payload_rejected(manager):
    with pytest.raises(ShardError):
        manager.put("big", bytes(MAX_PAYLOAD_SIZE + 1))
    with pytest.raises(NotFoundError):
        manager.get("big")


def test_empty_key_rejected(manager):
    with pytest.raises(ValueError):
        manager.put("", b"x")


def test_get_missing_raises(manager):
    with pytest.raises(NotFoundError):
        manager.get("missing")


def test_delete_removes_and_is_idempotent(manager):
    manager.put("gone", b"x")
    manager.delete("gone")
    with pytest.raises(NotFoundError):
        manager.get("gone")
    manager.delete("gone")
    assert manager.list_keys() == []


def test_list_keys_sorted(manager):
    for key in ["b", "a", "c/d", "_metadata_/x"]:
        manager.put(key, key.encode())
    keys = manager.list_keys()
    assert keys == sorted(keys, key=lambda k: k.encode())
    assert set(keys) == {"b", "a", "c/d", "_metadata_/x"}


def test_persistence_across_reopen(tmp_path):
    directory = tmp_path / "persist"
    with DataManager(directory) as dm:
        dm.put("stay", b"value")
    with DataManager(directory) as dm:
        assert dm.get("stay") == b"value"
    assert (directory / DB_FILE_NAME).is_file()


def test_corrupt_value_detected(tmp_path):
    directory = tmp_path / "corrupt"
    with DataManager(directory) as dm:
        dm.put("k", b"payload")
    conn = sqlite3.connect(str(directory / DB_FILE_NAME))
    with conn:
        (value,) = conn.execute(
            f"SELECT value FROM {DEFAULT_BUCKET} WHERE key = ?", (b"k",)
        ).fetchone()
        damaged = bytes(value[:-1]) + bytes([value[-1] ^ 0xFF])
        conn.execute(f"UPDATE {DEFAULT_BUCKET} SET value = ? WHERE key = ?", (damaged, b"k"))
    conn.close()
    with DataManager(directory) as dm:
        with pytest.raises(CorruptDataError):
            dm.get("k")


def test_closed_manager_refuses_operations(tmp_path):
    dm = DataManager(tmp_path / "closed")
    dm.close()
    dm.close()
    assert dm.closed
    with pytest.raises(RuntimeError):
        dm.get("k")


def test_default_directory_is_current(tmp_path, monkeypatch):
    monkeypatch.chdir(tmp_path)
    with DataManager("") as dm:
        dm.put("here", b"1")
        assert dm.get("here") == b"1"
    assert (tmp_path / DB_FILE_NAME).is_file()


def test_unicode_keys(manager):
    manager.put("clé/été", b"v")
    assert manager.get("clé/été") == b"v"
    assert manager.list_keys() == ["clé/été"]