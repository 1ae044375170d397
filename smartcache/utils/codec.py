"""
Canonical msgpack encoding for cache keys and cached values.

The same logical value always packs to the same bytes: dict entries and set
members are ordered by their own encoding, floats are always 64-bit and every
NaN collapses to one bit pattern. Python types that msgpack has no native
form for (tuple, set, frozenset, big ints, enums, dataclasses) travel as
extension types so they decode back to the type they were encoded from.

Stored values are framed with a small header so a read can check integrity on
a memoryview before any object is materialized.
"""
import dataclasses
import importlib
import math
import struct
import zlib
from enum import Enum
from typing import Any, Optional

import msgpack

from smartcache.errors import DecodeError, EncodingError

# Extension type codes
EXT_TUPLE = 1
EXT_SET = 2
EXT_FROZENSET = 3
EXT_BIGINT = 4
EXT_ENUM = 5
EXT_DATACLASS = 6

# magic (format version is the last byte) + payload length + crc32
MAGIC = b"SMC1"
HEADER = struct.Struct(">4sII")

_CANONICAL_NAN = struct.unpack(">d", b"\x7f\xf8\x00\x00\x00\x00\x00\x00")[0]
_INT_MIN = -(2 ** 63)
_INT_MAX = 2 ** 64 - 1

# int is acceptable wherever float or complex is expected
_NUMERIC_TOWER = {float: (int, float), complex: (int, float, complex)}


# ------------------------------- Encoding ------------------------------------

def _qualified(cls: type) -> list:
    return [cls.__module__, cls.__qualname__]


def _packb(tree: Any) -> bytes:
    return msgpack.packb(tree, use_bin_type=True, use_single_float=False)


def _sorted_by_encoding(items: list) -> list:
    return sorted(items, key=_packb)


def _to_tree(value: Any, path: set) -> Any:
    """Convert a Python value into a msgpack-native tree with canonical ordering."""
    if value is None or type(value) is bool or type(value) is str or type(value) is bytes:
        return value
    # Enum before int/str so IntEnum and StrEnum members keep their identity
    if isinstance(value, Enum):
        return msgpack.ExtType(EXT_ENUM, _packb(_qualified(type(value)) + [value.name]))
    if type(value) is int:
        if _INT_MIN <= value <= _INT_MAX:
            return value
        size = (value.bit_length() + 8) // 8
        return msgpack.ExtType(EXT_BIGINT, value.to_bytes(size, "big", signed=True))
    if type(value) is float:
        return _CANONICAL_NAN if math.isnan(value) else value

    marker = id(value)
    if marker in path:
        raise EncodingError(f"cannot canonically encode a cyclic {type(value).__name__}")
    path.add(marker)
    try:
        if type(value) is list:
            return [_to_tree(v, path) for v in value]
        if type(value) is tuple:
            return msgpack.ExtType(EXT_TUPLE, _packb([_to_tree(v, path) for v in value]))
        if type(value) is dict:
            entries = [[_to_tree(k, path), _to_tree(v, path)] for k, v in value.items()]
            entries.sort(key=lambda kv: _packb(kv[0]))
            tree = {k: v for k, v in entries}
            if len(tree) != len(entries):
                # distinct keys (e.g. two NaN objects) that share one encoding
                raise EncodingError("dict keys collide after canonical encoding")
            return tree
        if type(value) in (set, frozenset):
            code = EXT_SET if type(value) is set else EXT_FROZENSET
            members = _sorted_by_encoding([_to_tree(v, path) for v in value])
            return msgpack.ExtType(code, _packb(members))
        if dataclasses.is_dataclass(value) and not isinstance(value, type):
            fields = [
                [f.name, _to_tree(getattr(value, f.name), path)]
                for f in dataclasses.fields(value)
                if f.init
            ]
            return msgpack.ExtType(EXT_DATACLASS, _packb(_qualified(type(value)) + [fields]))
    finally:
        path.discard(marker)

    raise EncodingError(f"cannot canonically encode value of type {type(value).__qualname__}")


def pack(value: Any) -> bytes:
    """Canonical bytes for `value`. Raises EncodingError for unsupported types."""
    tree = _to_tree(value, set())
    try:
        return _packb(tree)
    except (TypeError, ValueError, OverflowError) as e:
        raise EncodingError(f"msgpack rejected value: {e}") from e


def encode(value: Any) -> bytes:
    """Framed encoding used for stored cache entries."""
    payload = pack(value)
    return HEADER.pack(MAGIC, len(payload), zlib.crc32(payload)) + payload


# ------------------------------- Decoding ------------------------------------

def _resolve(module: str, qualname: str) -> Any:
    if "<locals>" in qualname:
        raise DecodeError(f"cannot resolve local type {module}.{qualname}")
    obj = importlib.import_module(module)
    for part in qualname.split("."):
        obj = getattr(obj, part)
    return obj


def _ext_hook(code: int, data: bytes) -> Any:
    if code == EXT_BIGINT:
        return int.from_bytes(data, "big", signed=True)
    inner = _unpackb(data)
    if code == EXT_TUPLE:
        return tuple(inner)
    if code == EXT_SET:
        return set(inner)
    if code == EXT_FROZENSET:
        return frozenset(inner)
    if code == EXT_ENUM:
        module, qualname, name = inner
        cls = _resolve(module, qualname)
        if not (isinstance(cls, type) and issubclass(cls, Enum)):
            raise DecodeError(f"{module}.{qualname} is not an Enum")
        return cls[name]
    if code == EXT_DATACLASS:
        module, qualname, fields = inner
        cls = _resolve(module, qualname)
        if not (isinstance(cls, type) and dataclasses.is_dataclass(cls)):
            raise DecodeError(f"{module}.{qualname} is not a dataclass")
        return cls(**{name: v for name, v in fields})
    raise DecodeError(f"unknown extension type {code}")


def _unpackb(data) -> Any:
    return msgpack.unpackb(data, raw=False, strict_map_key=False, ext_hook=_ext_hook)


def unpack(data) -> Any:
    """Inverse of pack(). Accepts bytes or any buffer such as a memoryview."""
    try:
        return _unpackb(data)
    except DecodeError:
        raise
    except Exception as e:
        raise DecodeError(f"malformed payload: {e}") from e


def decode(data, expected: Optional[type] = None) -> Any:
    """
    Validate a framed entry and materialize its value.

    The header and checksum are checked against a memoryview of `data`, so the
    payload is never copied before it is unpacked.

    Args:
        data: bytes produced by encode()
        expected: if given, the decoded value must be an instance of it

    Raises:
        DecodeError: bad magic, length, checksum, payload or type
    """
    view = memoryview(data)
    if len(view) < HEADER.size:
        raise DecodeError(f"entry too short: {len(view)} < {HEADER.size} bytes")
    magic, length, checksum = HEADER.unpack_from(view)
    if magic != MAGIC:
        raise DecodeError(f"bad magic {magic!r}")
    payload = view[HEADER.size:]
    if len(payload) != length:
        raise DecodeError(f"payload length {len(payload)} != {length}")
    if zlib.crc32(payload) != checksum:
        raise DecodeError("checksum mismatch")
    value = unpack(payload)
    if expected is not None:
        try:
            matches = isinstance(value, _NUMERIC_TOWER.get(expected, expected))
        except TypeError as e:
            raise DecodeError(f"cannot check decoded value against {expected!r}: {e}") from e
        if not matches:
            raise DecodeError(
                f"expected {expected.__qualname__}, decoded {type(value).__qualname__}"
            )
    return value
