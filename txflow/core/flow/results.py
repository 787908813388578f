"""
Result type returned by every public flow operation.
"""

from dataclasses import dataclass
from typing import Any, Dict, Generic, Optional, TypeVar

from .errors import ErrorCode, TransactionError, TransactionFailure

T = TypeVar("T")


@dataclass
class Result(Generic[T]):
    """Outcome of an operation: either a value or a TransactionError."""

    ok: bool
    value: Optional[T] = None
    error: Optional[TransactionError] = None

    @classmethod
    def success(cls, value: Optional[T] = None) -> "Result[T]":
        return cls(ok=True, value=value)

    @classmethod
    def failure(cls, error: TransactionError) -> "Result[T]":
        return cls(ok=False, error=error)

    @classmethod
    def fail(cls, code: ErrorCode, message: str, **details: Any) -> "Result[T]":
        return cls(ok=False, error=TransactionError.create(code, message, **details))

    def unwrap(self) -> T:
        """Return the value or raise TransactionFailure."""
        if not self.ok:
            raise TransactionFailure(self.error)
        return self.value

    def to_dict(self) -> Dict[str, Any]:
        value = self.value
        if hasattr(value, "to_dict"):
            value = value.to_dict()
        return {
            "ok": self.ok,
            "value": value,
            "error": self.error.to_dict() if self.error else None,
        }
