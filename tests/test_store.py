import gc
import os
import sqlite3
import threading
import time

import pytest

from smartcache.errors import StoreOpenError, StoreTransactionError
from smartcache.services import store as store_module
from smartcache.services.store import CacheStore, _transaction, default_cache_path, get_store, open_store


def test_lookup_of_missing_key_is_absent(store):
    assert store.lookup(b"nope") is None
    assert len(store) == 0


def test_store_then_lookup(store):
    store.store(b"k", b"v1")
    assert store.lookup(b"k") == b"v1"
    assert b"k" in store


def test_store_overwrites_whole_value(store):
    store.store(b"k", b"first")
    store.store(b"k", b"second")
    assert store.lookup(b"k") == b"second"
    assert len(store) == 1


def test_entries_survive_reopening(tmp_path):
    path = tmp_path / "cache.sqlite3"
    first = CacheStore(path)
    first.store(b"k", b"v")
    first.close()
    second = CacheStore(path)
    assert second.lookup(b"k") == b"v"
    second.close()


def test_lookup_degrades_to_absent_when_table_is_missing(tmp_path):
    path = tmp_path / "cache.sqlite3"
    s = CacheStore(path)
    s.store(b"k", b"v")
    conn = sqlite3.connect(str(path))
    conn.execute("DROP TABLE cache")
    conn.commit()
    conn.close()
    assert s.lookup(b"k") is None
    s.close()


def test_lookup_after_close_is_absent(tmp_path):
    s = CacheStore(tmp_path / "cache.sqlite3")
    s.store(b"k", b"v")
    s.close()
    assert s.lookup(b"k") is None
    with pytest.raises(StoreTransactionError):
        s.store(b"k", b"v")


def test_read_only_store_rejects_writes(tmp_path):
    path = tmp_path / "cache.sqlite3"
    writer = CacheStore(path)
    writer.store(b"k", b"v")
    reader = CacheStore(path, read_only=True)
    assert reader.lookup(b"k") == b"v"
    with pytest.raises(StoreTransactionError):
        reader.store(b"k2", b"v2")
    assert reader.lookup(b"k2") is None
    reader.close()
    writer.close()


def test_open_failure_is_store_open_error(tmp_path):
    garbage = tmp_path / "cache.sqlite3"
    garbage.write_bytes(b"this is not a database" * 100)
    with pytest.raises(StoreOpenError):
        CacheStore(garbage)


def test_open_store_creates_missing_directories(tmp_path):
    path = tmp_path / "a" / "b" / "cache.sqlite3"
    s = open_store(path)
    assert path.exists()
    s.close()


def test_open_store_fails_when_directory_cannot_be_created(tmp_path):
    blocker = tmp_path / "file"
    blocker.write_text("x")
    with pytest.raises(StoreOpenError):
        open_store(blocker / "sub" / "cache.sqlite3")


def test_default_cache_path_uses_app_name(default_store_dir):
    path = default_cache_path()
    assert path == default_store_dir / "smart-cache" / "cache.sqlite3"


def test_get_store_is_a_single_lazy_handle(default_store_dir):
    assert store_module._store is None
    handles = []

    def grab():
        handles.append(get_store())

    threads = [threading.Thread(target=grab) for _ in range(8)]
    for t in threads:
        t.start()
    for t in threads:
        t.join()
    assert len({id(h) for h in handles}) == 1
    assert get_store() is handles[0]
    assert (default_store_dir / "smart-cache" / "cache.sqlite3").exists()


def test_concurrent_writers_each_commit(store):
    def write(i):
        store.store(b"key-%d" % i, b"value-%d" % i)

    threads = [threading.Thread(target=write, args=(i,)) for i in range(16)]
    for t in threads:
        t.start()
    for t in threads:
        t.join()
    assert len(store) == 16
    assert store.lookup(b"key-7") == b"value-7"


def test_failed_commit_rolls_back(tmp_path):
    conn = sqlite3.connect(str(tmp_path / "fk.sqlite3"), isolation_level=None)
    conn.execute("PRAGMA foreign_keys=ON")
    conn.execute("CREATE TABLE parent (id INTEGER PRIMARY KEY)")
    conn.execute(
        "CREATE TABLE child (parent_id INTEGER REFERENCES parent(id) DEFERRABLE INITIALLY DEFERRED)"
    )
    # the deferred foreign key is only checked, and fails, at COMMIT
    with pytest.raises(sqlite3.IntegrityError):
        with _transaction(conn, "BEGIN IMMEDIATE"):
            conn.execute("INSERT INTO child VALUES (42)")
    assert not conn.in_transaction
    with _transaction(conn):
        assert conn.execute("SELECT COUNT(*) FROM child").fetchone()[0] == 0
    conn.close()


def test_thread_connections_are_released_on_thread_exit(store):
    def touch():
        store.lookup(b"k")

    for _ in range(50):
        t = threading.Thread(target=touch)
        t.start()
        t.join()

    deadline = time.monotonic() + 5
    while store.connection_count > 1 and time.monotonic() < deadline:
        gc.collect()
        time.sleep(0.01)
    assert store.connection_count == 1


def test_existing_file_that_cannot_be_written_opens_read_only(tmp_path, monkeypatch):
    path = tmp_path / "cache.sqlite3"
    writer = CacheStore(path)
    writer.store(b"k", b"v")
    writer.close()

    def refuse_writes(self):
        raise sqlite3.OperationalError("attempt to write a readonly database")

    monkeypatch.setattr(CacheStore, "_initialize", refuse_writes)
    s = CacheStore(path)
    assert s.read_only
    assert s.lookup(b"k") == b"v"
    with pytest.raises(StoreTransactionError):
        s.store(b"k2", b"v2")
    s.close()


def test_missing_file_that_cannot_be_created_is_fatal(tmp_path, monkeypatch):
    def refuse_writes(self):
        raise sqlite3.OperationalError("attempt to write a readonly database")

    monkeypatch.setattr(CacheStore, "_initialize", refuse_writes)
    with pytest.raises(StoreOpenError):
        CacheStore(tmp_path / "absent.sqlite3")


@pytest.mark.skipif(not hasattr(os, "geteuid") or os.geteuid() == 0,
                    reason="file permissions do not bind root")
def test_read_only_directory_falls_back_to_lookups(default_store_dir):
    path = default_store_dir / "smart-cache" / "cache.sqlite3"
    writer = open_store(path)
    writer.store(b"k", b"v")
    writer.close()
    path.chmod(0o444)
    path.parent.chmod(0o555)
    try:
        s = get_store()
        assert s.read_only
        assert s.lookup(b"k") == b"v"
        with pytest.raises(StoreTransactionError):
            s.store(b"k2", b"v2")
    finally:
        path.parent.chmod(0o755)
        path.chmod(0o644)
