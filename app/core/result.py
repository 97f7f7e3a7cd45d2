"""
Explicit results for best-effort operations.

Best-effort work (ban enforcement, notification sends, Panel cleanup after a
local delete) must never change the caller's control flow, but its failures
still have to be visible in logs and metrics. Such operations return a Result
instead of raising or silently swallowing the exception.
"""

from dataclasses import dataclass
from enum import Enum
from typing import Any, Generic, Optional, TypeVar

T = TypeVar("T")


class ErrorKind(str, Enum):
    """Failure taxonomy shared by all services"""
    TRANSIENT = "transient"        # Panel/provider timeout, 5xx, network, DB hiccup
    DESYNC = "desync"              # local reference points to a missing Panel account
    CONFLICT = "conflict"          # lost a claim / cooldown / usage-cap race
    PRECONDITION = "precondition"  # misconfiguration or a rule the caller violated
    PARTIAL = "partial"            # some effects applied, retry is safe
    UNEXPECTED = "unexpected"      # bug


@dataclass(frozen=True)
class Result(Generic[T]):
    ok: bool
    value: Optional[T] = None
    error_kind: Optional[ErrorKind] = None
    detail: Optional[str] = None

    @classmethod
    def success(cls, value: Any = None) -> "Result":
        return cls(ok=True, value=value)

    @classmethod
    def failure(cls, kind: ErrorKind, detail: Optional[str] = None, value: Any = None) -> "Result":
        return cls(ok=False, value=value, error_kind=kind, detail=detail)

    @classmethod
    def from_exception(cls, exc: BaseException, value: Any = None) -> "Result":
        from app.utils.logging_helpers import classify_error
        return cls.failure(classify_error(exc), f"{type(exc).__name__}: {exc}", value=value)
