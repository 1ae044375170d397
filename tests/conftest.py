import pytest

from smartcache.config import SETTINGS
from smartcache.services import store as store_module
from smartcache.services.store import CacheStore


@pytest.fixture
def store(tmp_path):
    s = CacheStore(tmp_path / "cache.sqlite3")
    yield s
    s.close()


@pytest.fixture
def default_store_dir(tmp_path, monkeypatch):
    """Point the process-wide store at a temp dir and forget any open handle."""
    monkeypatch.setattr(SETTINGS, "CACHE_DIR", str(tmp_path / "cache-home"))
    monkeypatch.setattr(store_module, "_store", None)
    yield tmp_path / "cache-home"
    if store_module._store is not None:
        store_module._store.close()
