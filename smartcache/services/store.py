"""
Durable key/value store for cache entries, backed by a single sqlite file.

The file holds one table mapping opaque key bytes to opaque value bytes. The
database runs in WAL mode: readers never block on the writer and always see a
committed snapshot, while sqlite's lock manager serializes writers.
"""
import logging
import os
import sqlite3
import sys
import threading
import weakref
from contextlib import contextmanager
from pathlib import Path
from typing import Iterator, Optional

from smartcache.config import SETTINGS, Settings
from smartcache.errors import StoreOpenError, StoreTransactionError

logger = logging.getLogger(__name__)

TABLE = "cache"

_SCHEMA = f"CREATE TABLE IF NOT EXISTS {TABLE} (key BLOB PRIMARY KEY, value BLOB NOT NULL) WITHOUT ROWID"

# failures that mean "this file exists but we may not write it"
_READ_ONLY_CODES = {getattr(sqlite3, "SQLITE_READONLY", 8), getattr(sqlite3, "SQLITE_CANTOPEN", 14)}


@contextmanager
def _transaction(conn: sqlite3.Connection, begin: str = "BEGIN") -> Iterator[sqlite3.Connection]:
    conn.execute(begin)
    try:
        yield conn
        conn.execute("COMMIT")
    except BaseException:
        # a failed COMMIT leaves the transaction open; close it so the
        # connection can start the next one
        if conn.in_transaction:
            try:
                conn.execute("ROLLBACK")
            except sqlite3.Error as e:
                logger.debug("Rollback failed: %s", e)
        raise


def _is_read_only_error(e: sqlite3.Error) -> bool:
    code = getattr(e, "sqlite_errorcode", None)
    if code is not None:
        return code & 0xFF in _READ_ONLY_CODES
    message = str(e)
    return "readonly" in message or "unable to open" in message


class _ThreadConnection:
    """Holds one thread's connection; the connection closes when the holder is collected."""

    def __init__(self, conn: sqlite3.Connection):
        self.conn = conn
        self.finalizer = weakref.finalize(self, conn.close)


class CacheStore:
    def __init__(self, path, timeout: float = SETTINGS.TIMEOUT, read_only: bool = False):
        """
        Open (creating if needed) the store at `path`.

        If the file exists but cannot be written (read-only file or directory),
        the store is reopened read-only: lookups work and every store fails.

        Arguments:
        path: database file; its directory must already exist

        Keyword arguments:
        timeout: seconds to wait for another writer's lock
        read_only: refuse every write; lookups still work

        Raises StoreOpenError if the file cannot be opened or initialized.
        """
        self.path = Path(path)
        self.timeout = timeout
        self.read_only = read_only
        self._uri: Optional[str] = None
        self._local = threading.local()
        self._holders: "weakref.WeakSet[_ThreadConnection]" = weakref.WeakSet()
        self._lock = threading.Lock()
        self._closed = False
        try:
            self._initialize()
        except sqlite3.OperationalError as e:
            if not (self.path.is_file() and _is_read_only_error(e)):
                self.close()
                raise StoreOpenError(f"failed to open cache store at {self.path}: {e}", self.path) from e
            logger.warning("Cache store at %s is not writable (%s); opening it read-only", self.path, e)
            self._open_read_only()
        except sqlite3.Error as e:
            self.close()
            raise StoreOpenError(f"failed to open cache store at {self.path}: {e}", self.path) from e
        logger.debug("Opened cache store at %s", self.path)

    def _initialize(self) -> None:
        conn = self._connect()
        conn.execute("PRAGMA journal_mode=WAL")
        conn.execute(_SCHEMA)
        if self.read_only:
            conn.execute("PRAGMA query_only=ON")

    def _open_read_only(self) -> None:
        # a WAL database without its -shm file can only be read as immutable
        # when the directory does not let sqlite create one
        base = self.path.resolve().as_uri() + "?mode=ro"
        error = None
        for uri in (base, base + "&immutable=1"):
            self._release_connections()
            self._uri = uri
            try:
                self._connect().execute("SELECT COUNT(*) FROM sqlite_master").fetchone()
            except sqlite3.Error as e:
                error = e
                continue
            self.read_only = True
            return
        self.close()
        raise StoreOpenError(f"failed to open cache store at {self.path} read-only: {error}", self.path) from error

    # sqlite connections stay on the thread that made them
    def _connect(self) -> sqlite3.Connection:
        conn = sqlite3.connect(
            self._uri or str(self.path),
            timeout=self.timeout,
            isolation_level=None,
            check_same_thread=False,
            uri=self._uri is not None,
        )
        holder = _ThreadConnection(conn)
        with self._lock:
            self._holders.add(holder)
        # the thread-local is the only strong reference; thread exit releases it
        self._local.holder = holder
        return conn

    def _connection(self) -> sqlite3.Connection:
        if self._closed:
            raise StoreTransactionError(f"cache store at {self.path} is closed")
        holder = getattr(self._local, "holder", None)
        if holder is None:
            conn = self._connect()
            if self.read_only:
                conn.execute("PRAGMA query_only=ON")
            return conn
        return holder.conn

    def _release_connections(self) -> None:
        with self._lock:
            holders = list(self._holders)
            self._holders = weakref.WeakSet()
        for holder in holders:
            holder.finalizer()
        self._local = threading.local()

    @property
    def connection_count(self) -> int:
        """Open per-thread connections."""
        with self._lock:
            return sum(1 for h in self._holders if h.finalizer.alive)

    def lookup(self, key: bytes) -> Optional[bytes]:
        """Return the value stored under `key`, or None if absent or unreadable."""
        try:
            with _transaction(self._connection()) as conn:
                row = conn.execute(f"SELECT value FROM {TABLE} WHERE key = ?", (key,)).fetchone()
        except (sqlite3.Error, StoreTransactionError) as e:
            logger.debug("Cache lookup failed: %s", e)
            return None
        if row is None:
            logger.debug("Cache miss")
            return None
        logger.debug("Cache hit")
        return row[0]

    def store(self, key: bytes, value: bytes) -> None:
        """Insert or overwrite one entry in a single atomic write transaction."""
        logger.debug("Caching value (%d bytes)", len(value))
        try:
            with _transaction(self._connection(), "BEGIN IMMEDIATE") as conn:
                conn.execute(
                    f"INSERT OR REPLACE INTO {TABLE} (key, value) VALUES (?, ?)",
                    (key, value),
                )
        except sqlite3.Error as e:
            raise StoreTransactionError(f"failed to store cache entry: {e}") from e
        logger.debug("Successfully cached value")

    def __len__(self) -> int:
        try:
            with _transaction(self._connection()) as conn:
                return conn.execute(f"SELECT COUNT(*) FROM {TABLE}").fetchone()[0]
        except sqlite3.Error as e:
            raise StoreTransactionError(f"failed to count cache entries: {e}") from e

    def __contains__(self, key: bytes) -> bool:
        return self.lookup(key) is not None

    def close(self) -> None:
        self._closed = True
        self._release_connections()

    def __repr__(self) -> str:
        return f"CacheStore({str(self.path)!r}, read_only={self.read_only})"


# ------------------------------ Process handle -------------------------------

_store: Optional[CacheStore] = None
_store_lock = threading.Lock()


def _platform_cache_dir() -> Path:
    try:
        home = Path.home()
    except RuntimeError:
        return Path(".cache")
    if sys.platform == "win32":
        return Path(os.environ.get("LOCALAPPDATA") or home / "AppData" / "Local")
    if sys.platform == "darwin":
        return home / "Library" / "Caches"
    return Path(os.environ.get("XDG_CACHE_HOME") or home / ".cache")


def default_cache_path(settings: Settings = SETTINGS) -> Path:
    base = Path(settings.CACHE_DIR) if settings.CACHE_DIR else _platform_cache_dir()
    return base / settings.APP_NAME / settings.FILENAME


def open_store(path, timeout: float = SETTINGS.TIMEOUT) -> CacheStore:
    """Create the store's directory if absent and open the store."""
    path = Path(path)
    try:
        path.parent.mkdir(parents=True, exist_ok=True)
    except OSError as e:
        raise StoreOpenError(f"failed to create cache directory {path.parent}: {e}", path) from e
    return CacheStore(path, timeout=timeout)


def get_store() -> CacheStore:
    """
    The process-wide store. Opened on first use and reused afterwards;
    StoreOpenError from the first open propagates to the caller.
    """
    global _store
    if _store is None:
        with _store_lock:
            if _store is None:
                _store = open_store(default_cache_path(SETTINGS), timeout=SETTINGS.TIMEOUT)
    return _store
