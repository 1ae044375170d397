"""
Exception types raised by the memoization engine.

Only EncodingError and PurityViolation ever reach a caller of a memoized
function. The rest are raised by the lower layers and absorbed by the
orchestrator, except StoreOpenError which is fatal.
"""


class SmartCacheError(Exception):
    """Base class for every error raised by smartcache."""


class EncodingError(SmartCacheError, TypeError):
    """A value has no canonical encoding (argument or return value)."""


class DecodeError(SmartCacheError, ValueError):
    """Stored bytes do not match the expected frame or shape."""


class StoreError(SmartCacheError):
    """Base class for cache store failures."""


class StoreOpenError(StoreError):
    """The cache store could not be opened or created."""

    def __init__(self, message: str, path=None):
        self.path = path
        super().__init__(message)


class StoreTransactionError(StoreError):
    """A read or write transaction against the store failed."""


class PurityViolation(SmartCacheError, TypeError):
    """A function was registered with a parameter that is a mutable alias."""

    def __init__(self, func_name: str, param: str, reason: str):
        self.func_name = func_name
        self.param = param
        self.reason = reason
        super().__init__(
            f"cached functions must be pure - parameter {param!r} of {func_name} {reason}"
        )
