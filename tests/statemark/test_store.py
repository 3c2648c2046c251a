import json
import os
import threading
import time
from concurrent.futures import ThreadPoolExecutor

import pytest

from statemark.errors import NotFoundError, StorageError
from statemark.store import (
    RECORD_FILE,
    FileBookmarkStore,
    MemoryBookmarkStore,
    make_store,
    valid_id,
)

TOKEN = "_inputs_&omega=1.0&delta=1.5708"


def test_memory_store_and_resolve():
    store = MemoryBookmarkStore()
    id1 = store.store(TOKEN)
    assert valid_id(id1)
    assert store.resolve(id1) == TOKEN
    with pytest.raises(NotFoundError):
        store.resolve("nonexistent")
    with pytest.raises(NotFoundError):
        store.resolve("0123456789abcdef")


def test_memory_store_records_have_timestamps():
    store = MemoryBookmarkStore()
    record = store.record(store.store(TOKEN))
    assert record.token == TOKEN
    assert record.created.tzinfo is not None


def test_concurrent_memory_stores_are_unique():
    store = MemoryBookmarkStore()
    with ThreadPoolExecutor(max_workers=8) as pool:
        ids = list(pool.map(store.store, [f"t{i}" for i in range(200)]))
    assert len(set(ids)) == 200
    assert len(store) == 200
    assert all(store.resolve(id) == f"t{i}" for i, id in enumerate(ids))


def test_file_store_and_resolve(tmp_path):
    store = FileBookmarkStore(tmp_path)
    id1 = store.store(TOKEN)
    assert store.resolve(id1) == TOKEN
    payload = json.loads((tmp_path / id1 / RECORD_FILE).read_text())
    assert payload["token"] == TOKEN
    assert "created" in payload
    with pytest.raises(NotFoundError):
        store.resolve("nonexistent")


def test_file_store_rejects_foreign_ids(tmp_path):
    store = FileBookmarkStore(tmp_path)
    for id in ["../etc/passwd", "", "ABCDEF0123456789", "0123/4567"]:
        with pytest.raises(NotFoundError):
            store.resolve(id)


def test_file_store_corrupted_record(tmp_path):
    store = FileBookmarkStore(tmp_path)
    id1 = store.store(TOKEN)
    (tmp_path / id1 / RECORD_FILE).write_text("{not json")
    with pytest.raises(NotFoundError):
        store.resolve(id1)
    (tmp_path / id1 / RECORD_FILE).write_text(json.dumps({"created": "x"}))
    with pytest.raises(NotFoundError):
        store.resolve(id1)


def test_concurrent_file_stores_are_unique(tmp_path):
    store = FileBookmarkStore(tmp_path, max_workers=8)
    with ThreadPoolExecutor(max_workers=8) as pool:
        ids = list(pool.map(store.store, [f"t{i}" for i in range(50)]))
    assert len(set(ids)) == 50
    assert sorted(os.listdir(tmp_path)) == sorted(ids)


def test_file_store_io_failure(tmp_path):
    blocker = tmp_path / "not-a-dir"
    blocker.write_text("")
    store = FileBookmarkStore(blocker)
    with pytest.raises(StorageError):
        store.store(TOKEN)


def test_file_store_timeout(tmp_path, monkeypatch):
    store = FileBookmarkStore(tmp_path, timeout=0.05)
    release = threading.Event()

    def slow_write(token):
        release.wait(2)
        return "0123456789abcdef"

    monkeypatch.setattr(store, "_write", slow_write)
    start = time.monotonic()
    with pytest.raises(StorageError):
        store.store(TOKEN)
    assert time.monotonic() - start < 1
    release.set()
    store.close()


def test_make_store(tmp_path):
    assert make_store("url") is None
    assert make_store("disable") is None
    memory = MemoryBookmarkStore()
    assert make_store(memory) is memory
    assert isinstance(make_store("server"), FileBookmarkStore)
    with pytest.raises(ValueError):
        make_store("cloud")
