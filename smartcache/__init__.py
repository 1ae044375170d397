"""Persistent, content-addressed memoization of pure functions."""
from smartcache.errors import (
    DecodeError,
    EncodingError,
    PurityViolation,
    SmartCacheError,
    StoreError,
    StoreOpenError,
    StoreTransactionError,
)
from smartcache.services.memoize import cached, memoize
from smartcache.services.store import CacheStore, get_store
from smartcache.utils.fingerprint import FunctionFingerprint, fingerprint

__version__ = "0.2.0"

__all__ = [
    "cached",
    "memoize",
    "CacheStore",
    "get_store",
    "FunctionFingerprint",
    "fingerprint",
    "SmartCacheError",
    "EncodingError",
    "DecodeError",
    "StoreError",
    "StoreOpenError",
    "StoreTransactionError",
    "PurityViolation",
]
