import collections.abc
import hashlib
import inspect
import re
import types
import typing
from typing import Any, Callable, Dict, Tuple

from smartcache.errors import EncodingError, PurityViolation
from smartcache.utils import codec
from smartcache.utils.fingerprint import FunctionFingerprint

# Bumped whenever the key layout changes; old entries simply stop matching.
KEY_TAG = "smart-cache/key/v1"

_MUTABLE_BASES = (
    collections.abc.MutableSequence,
    collections.abc.MutableMapping,
    collections.abc.MutableSet,
    bytearray,
    memoryview,
)
# for annotations that could not be resolved and are still strings
_MUTABLE_NAMES = re.compile(
    r"^(typing\.|collections\.abc\.)?"
    r"(list|dict|set|bytearray|memoryview|List|Dict|Set|DefaultDict|OrderedDict|Deque|"
    r"MutableSequence|MutableMapping|MutableSet)\b"
)

ArgumentPairs = Tuple[Tuple[str, Any], ...]


def stable_key(*parts: Any) -> str:
    b = b"::".join(p if isinstance(p, bytes) else str(p).encode() for p in parts)
    return hashlib.sha256(b).hexdigest()


# ------------------------------ Key building ---------------------------------

def argument_pairs(signature: inspect.Signature, args: tuple, kwargs: Dict[str, Any]) -> ArgumentPairs:
    """Bind one call to `signature` and return (name, value) pairs in declaration order."""
    bound = signature.bind(*args, **kwargs)
    bound.apply_defaults()
    return tuple(bound.arguments.items())


def build_key(pairs: ArgumentPairs, fp: FunctionFingerprint) -> bytes:
    """
    Canonical key bytes for one call.

    Each argument is packed on its own so an unsupported value is reported
    against the parameter that carried it.
    """
    slots = []
    for name, value in pairs:
        try:
            slots.append([name, codec.pack(value)])
        except EncodingError as e:
            raise EncodingError(f"argument {name!r}: {e}") from e
    return codec.pack([KEY_TAG, fp.digest, slots])


# ---------------------------- Purity validation ------------------------------

def _is_mutable_annotation(ann: Any) -> bool:
    if ann is inspect.Parameter.empty:
        return False
    if isinstance(ann, str):
        return bool(_MUTABLE_NAMES.match(ann.strip()))
    origin = typing.get_origin(ann)
    if origin is typing.Annotated:
        return _is_mutable_annotation(typing.get_args(ann)[0])
    if origin is typing.Union or origin is types.UnionType:
        return any(_is_mutable_annotation(a) for a in typing.get_args(ann))
    target = origin or ann
    return isinstance(target, type) and issubclass(target, _MUTABLE_BASES)


def resolved_annotations(func: Callable) -> Dict[str, Any]:
    try:
        return typing.get_type_hints(func, include_extras=True)
    except Exception:
        # unresolvable forward references; fall back to the raw annotations
        return {}


def validate_purity(func: Callable) -> inspect.Signature:
    """
    Reject functions that take a parameter as a mutable alias.

    A parameter is a mutable alias when it is annotated with a mutable
    container type or has a mutable default value. Either way the caller (or an
    earlier call) could change the value between key construction and the
    computation, so the stored result would no longer match its key.

    Returns the function's signature for use at call time.

    Raises:
        PurityViolation: on the first offending parameter
    """
    signature = inspect.signature(func)
    hints = resolved_annotations(func)
    name = getattr(func, "__qualname__", repr(func))
    for param in signature.parameters.values():
        ann = hints.get(param.name, param.annotation)
        if _is_mutable_annotation(ann):
            raise PurityViolation(name, param.name, f"is annotated as mutable ({ann!r})")
        if param.default is not inspect.Parameter.empty and isinstance(param.default, _MUTABLE_BASES):
            raise PurityViolation(name, param.name, "has a mutable default value")
    return signature
