"""
Persistent memoization decorator.

    @cached
    def fibonacci(n: int) -> int:
        if n <= 1:
            return n
        return fibonacci(n - 1) + fibonacci(n - 2)

Each call builds a key from the function's fingerprint and its arguments,
returns the stored result when one decodes cleanly, and otherwise runs the
function once and stores what it returned. The cache is advisory: store and
decode failures cost a recomputation, never a wrong result.

There is no lock around lookup, compute and store. Two threads missing on the
same key both compute and both write the same bytes.
"""
import functools
import inspect
import logging
import typing
from typing import Any, Callable, Optional

from smartcache.config import SETTINGS
from smartcache.errors import DecodeError, StoreTransactionError
from smartcache.services.store import CacheStore, get_store
from smartcache.utils.cache import (
    argument_pairs,
    build_key,
    resolved_annotations,
    stable_key,
    validate_purity,
)
from smartcache.utils.codec import decode, encode
from smartcache.utils.fingerprint import fingerprint

logger = logging.getLogger(__name__)

# on_error(exception, key_id) for failures the cache absorbs
ErrorCallback = Callable[[Exception, str], None]


def _checkable(ann: Any) -> bool:
    if ann is inspect.Signature.empty or ann is typing.Any:
        return False
    if typing.get_origin(ann) is not None or not isinstance(ann, type):
        return False
    if typing.is_typeddict(ann):
        return False
    # Protocols without @runtime_checkable and other special forms refuse isinstance
    try:
        isinstance(None, ann)
    except TypeError:
        return False
    return True


def _return_type(func: Callable) -> Optional[type]:
    """The return annotation when it is a plain class that decode() can check."""
    ann = resolved_annotations(func).get("return", inspect.Signature.empty)
    return ann if _checkable(ann) else None


def memoize(
    func: Optional[Callable] = None,
    *,
    version: Optional[str] = None,
    store: Optional[CacheStore] = None,
    on_error: Optional[ErrorCallback] = None,
) -> Callable:
    """
    Memoize `func` in the persistent cache. Usable bare or with options::

        @memoize
        def f(x): ...

        @memoize(version="2")
        def g(x): ...

    Keyword arguments:
    version: explicit identity tag; replaces the source-derived fingerprint
    store: CacheStore to use instead of the process-wide one
    on_error: called with (exception, key_id) when a lookup entry fails to
        decode or a store fails; the result is returned regardless

    Raises PurityViolation at registration if a parameter is a mutable alias.
    Calls raise EncodingError if an argument or the result has no canonical
    encoding.
    """
    if func is None:
        return functools.partial(memoize, version=version, store=store, on_error=on_error)

    signature = validate_purity(func)
    fp = fingerprint(func, version)
    expected = _return_type(func)
    name = getattr(func, "__qualname__", repr(func))
    logger.debug("Registered %s (fingerprint %s)", name, fp)

    def report(exc: Exception, key_id: str) -> None:
        if on_error is None:
            return
        try:
            on_error(exc, key_id)
        except Exception:
            logger.exception("on_error callback raised for %s", name)

    @functools.wraps(func)
    def wrapper(*args, **kwargs) -> Any:
        key = build_key(argument_pairs(signature, args, kwargs), fp)
        key_id = stable_key(key)[:16]
        if SETTINGS.LOG_KEYS:
            logger.debug("%s key %s", name, key_id)
        handle = store if store is not None else get_store()

        entry = handle.lookup(key)
        if entry is not None:
            try:
                return decode(entry, expected)
            except DecodeError as e:
                # stale or corrupt entries fall through to recomputation
                logger.debug("Ignoring unreadable entry %s for %s: %s", key_id, name, e)
                report(e, key_id)

        result = func(*args, **kwargs)

        value = encode(result)
        try:
            handle.store(key, value)
        except StoreTransactionError as e:
            logger.warning("Could not cache result of %s: %s", name, e)
            report(e, key_id)
        return result

    wrapper.fingerprint = fp
    wrapper.signature = signature
    return wrapper


cached = memoize
