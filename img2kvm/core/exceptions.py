# SPDX-License-Identifier: LGPL-3.0-or-later
# img2kvm/core/exceptions.py
from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Dict, Optional, Sequence, Tuple


def _safe_int(x: Any, default: int = 1) -> int:
    try:
        return int(x)
    except (TypeError, ValueError):
        return default


def _clamp_exit_code(code: int) -> int:
    # Exit codes are 0..255.
    if code < 0:
        return 1
    if code > 255:
        return 255
    return code


def _one_line(s: str, limit: int = 600) -> str:
    s = (s or "").strip().replace("\r", " ").replace("\n", " ")
    s = " ".join(s.split())
    return s if len(s) <= limit else (s[: limit - 3] + "...")


_SECRET_KEY_PARTS = (
    "pass",
    "secret",
    "token",
    "apikey",
    "api_key",
    "auth",
    "cookie",
    "private",
)

REDACTED = "***REDACTED***"


def _is_secret_key(k: str) -> bool:
    ks = (k or "").lower()
    return any(p in ks for p in _SECRET_KEY_PARTS)


def _redact(value: Any) -> Any:
    if isinstance(value, dict):
        return {k: (REDACTED if _is_secret_key(str(k)) else _redact(v)) for k, v in value.items()}
    return value


def _format_context_compact(ctx: Dict[str, Any]) -> str:
    # Stable order, redaction, single-line.
    parts = []
    for k in sorted(ctx.keys()):
        v = ctx.get(k)
        if _is_secret_key(str(k)):
            parts.append(f"{k}=<redacted>")
        else:
            parts.append(f"{k}={v!r}")
    return ", ".join(parts)


@dataclass(eq=False)
class Img2KvmError(Exception):
    """
    Base project error with:
      - stable fields for reporting/JSON
      - readable __str__ (what users see)
      - safe code handling (never crashes on int())
    """
    code: int = 1
    msg: str = "error"
    cause: Optional[BaseException] = None
    context: Optional[Dict[str, Any]] = None

    def __post_init__(self) -> None:
        self.code = _clamp_exit_code(_safe_int(self.code, default=1))
        self.msg = _one_line(self.msg) or self.__class__.__name__
        if self.context is None:
            self.context = {}
        super().__init__(self.msg)
        self.args = (self.msg,)

    def with_context(self, **ctx: Any) -> "Img2KvmError":
        self.context.update(ctx)
        return self

    def user_message(self, *, include_context: bool = False, include_cause: bool = False) -> str:
        """
        Human-friendly message for CLI output/logs.
        """
        parts = [self.msg or self.__class__.__name__]

        if include_context and self.context:
            parts.append(f"[{_one_line(_format_context_compact(self.context), limit=600)}]")

        if include_cause and self.cause is not None:
            parts.append(f"(cause: {type(self.cause).__name__}: {_one_line(str(self.cause))})")

        return " ".join(parts)

    def __str__(self) -> str:
        return self.user_message(include_context=False, include_cause=False)

    def to_dict(self, *, include_cause: bool = False) -> Dict[str, Any]:
        d: Dict[str, Any] = {
            "type": self.__class__.__name__,
            "code": self.code,
            "message": self.msg,
            "context": _redact(self.context or {}),
        }
        if include_cause and self.cause is not None:
            d["cause"] = {"type": type(self.cause).__name__, "message": _one_line(str(self.cause))}
        return d


class Fatal(Img2KvmError):
    """
    User-facing fatal error (exit code is honored by main()).
    """
    pass


@dataclass(eq=False)
class ExternalCommandError(Img2KvmError):
    """qemu-img / qm (or another external tool) failed."""
    code: int = 5
    cmd: Tuple[str, ...] = ()
    returncode: Optional[int] = None
    stderr: str = ""


# ---------------------------------------------------------------------------
# Decompression core
# ---------------------------------------------------------------------------

class DecompressError(Img2KvmError):
    """Base for every failure of the decompression pipeline."""
    pass


@dataclass(eq=False)
class UnrecognizedFormat(DecompressError):
    # Reserved: RAW is the fallback for unknown content, so the current
    # container kinds never raise this.
    code: int = 3


class DecodeErrorKind(str, Enum):
    CORRUPT_HEADER = "corrupt-header"
    TRUNCATED_STREAM = "truncated-stream"
    UNSUPPORTED_METHOD = "unsupported-method"
    IO_FAILURE = "io-failure"
    CORRUPT_DATA = "corrupt-data"


@dataclass(eq=False)
class DecodeError(DecompressError):
    code: int = 3
    kind: DecodeErrorKind = DecodeErrorKind.CORRUPT_DATA

    def __post_init__(self) -> None:
        self.kind = DecodeErrorKind(self.kind)
        super().__post_init__()

    def to_dict(self, *, include_cause: bool = False) -> Dict[str, Any]:
        d = super().to_dict(include_cause=include_cause)
        d["kind"] = self.kind.value
        return d


@dataclass(eq=False)
class AmbiguousOrEmptyArchive(DecompressError):
    code: int = 4
    names: Sequence[str] = field(default_factory=tuple)

    def __post_init__(self) -> None:
        self.names = tuple(self.names)
        super().__post_init__()


def decode_error(
    kind: DecodeErrorKind,
    msg: str,
    exc: Optional[BaseException] = None,
    **context: Any,
) -> DecodeError:
    return DecodeError(msg=msg, cause=exc, context=context or None, kind=kind)


def format_exception_for_cli(e: BaseException, *, verbose: int = 0) -> str:
    """
    One-liner output for CLI.

    verbose=0: just message
    verbose=1: message + compact context (if any)
    verbose>=2: message + context + cause
    """
    if isinstance(e, Img2KvmError):
        return e.user_message(
            include_context=(verbose >= 1),
            include_cause=(verbose >= 2),
        )

    if verbose >= 2:
        return f"{type(e).__name__}: {_one_line(str(e))}"
    return _one_line(str(e)) or type(e).__name__
