"""
Identity digests for memoized function implementations.

A fingerprint is the SHA-256 of a canonical representation of the function:
its qualified name followed by its source tokens with comments, blank lines
and indentation widths stripped out. Reformatting a function leaves the
fingerprint alone; editing any token changes it.
"""
import hashlib
import inspect
import io
import textwrap
import tokenize
from dataclasses import dataclass
from typing import Callable, List, Optional

_SKIPPED = {tokenize.COMMENT, tokenize.NL, tokenize.ENCODING, tokenize.ENDMARKER}
# whitespace-only tokens whose text carries no structure beyond their type
_BLANKED = {tokenize.INDENT, tokenize.DEDENT, tokenize.NEWLINE}


@dataclass(frozen=True)
class FunctionFingerprint:
    digest: bytes

    def hex(self) -> str:
        return self.digest.hex()

    def __str__(self) -> str:
        return self.hex()[:16]


def _scope(func: Callable) -> str:
    module = getattr(func, "__module__", None) or "?"
    qualname = getattr(func, "__qualname__", None) or getattr(func, "__name__", "?")
    return f"{module}.{qualname}"


def _strip_decorators(tokens: List[tokenize.TokenInfo]) -> List[tokenize.TokenInfo]:
    """Drop everything before the first top-level `def` (decorator lines)."""
    for i, tok in enumerate(tokens):
        if tok.type == tokenize.NAME and tok.string == "def":
            if i > 0 and tokens[i - 1].type == tokenize.NAME and tokens[i - 1].string == "async":
                return tokens[i - 1:]
            return tokens[i:]
    # lambdas have no def; keep the whole statement
    return tokens


def _token_text(source: str) -> str:
    readline = io.StringIO(textwrap.dedent(source)).readline
    tokens = [t for t in tokenize.generate_tokens(readline) if t.type not in _SKIPPED]
    lines = []
    for tok in _strip_decorators(tokens):
        text = "" if tok.type in _BLANKED else tok.string
        lines.append(f"{tokenize.tok_name[tok.type]} {text!r}")
    return "\n".join(lines)


def _const_repr(const) -> str:
    if inspect.iscode(const):
        return "<code>\n" + _code_text(const) + "\n</code>"
    if isinstance(const, frozenset):
        # set iteration order depends on hash randomization
        return "frozenset(" + ", ".join(sorted(_const_repr(c) for c in const)) + ")"
    if isinstance(const, tuple):
        return "(" + ", ".join(_const_repr(c) for c in const) + ")"
    return repr(const)


def _code_text(code) -> str:
    parts = [
        f"argcount {code.co_argcount}",
        f"posonlyargcount {code.co_posonlyargcount}",
        f"kwonlyargcount {code.co_kwonlyargcount}",
        f"flags {code.co_flags}",
        f"code {code.co_code.hex()}",
        f"names {code.co_names!r}",
        f"varnames {code.co_varnames!r}",
        f"freevars {code.co_freevars!r}",
        f"cellvars {code.co_cellvars!r}",
    ]
    parts.extend(f"const {_const_repr(c)}" for c in code.co_consts)
    return "\n".join(parts)


def canonical_source(func: Callable) -> str:
    """
    Canonical textual form of a function's implementation.

    Uses the source tokens when the source is available and falls back to the
    compiled code object otherwise (functions built with exec, REPL sessions).
    """
    func = inspect.unwrap(func)
    try:
        body = _token_text(inspect.getsource(func))
    except (OSError, TypeError, tokenize.TokenError, IndentationError, SyntaxError):
        code = getattr(func, "__code__", None)
        body = _code_text(code) if code is not None else repr(func)
    return f"scope {_scope(func)}\n{body}"


def fingerprint(func: Callable, version: Optional[str] = None) -> FunctionFingerprint:
    """
    Fingerprint `func`. An explicit `version` tag replaces the source text as
    the identity, so the fingerprint only changes when the tag does.
    """
    if version is not None:
        text = f"scope {_scope(inspect.unwrap(func))}\nversion {version!r}"
    else:
        text = canonical_source(func)
    return FunctionFingerprint(hashlib.sha256(text.encode("utf-8")).digest())
