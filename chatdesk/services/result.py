"""Outcome of a call across an unreliable boundary.

Media relocation and the ticketing client return a ``Result`` instead of
raising, so callers can degrade (keep the gateway URL, fall back to a
local ticket reference) and still log why through ``error_code``.
"""

from dataclasses import dataclass
from typing import Generic, Optional, TypeVar

T = TypeVar("T")


@dataclass
class Result(Generic[T]):
    ok: bool
    value: Optional[T] = None
    error: Optional[str] = None
    # Machine-readable reason, e.g. "fetch_failed", "too_large", "bad_status"
    error_code: Optional[str] = None

    @staticmethod
    def success(value: T) -> "Result[T]":
        return Result(ok=True, value=value)

    @staticmethod
    def failure(error: str, code: str = "unknown") -> "Result[T]":
        return Result(ok=False, error=error, error_code=code)

    def unwrap_or(self, default: T) -> T:
        """Value on success, ``default`` otherwise (a successful ``None`` stays ``None``)."""
        return self.value if self.ok else default
