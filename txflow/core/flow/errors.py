"""
Error Classification

Typed error values for the transaction flow pipeline. Every component
reports expected failures as a TransactionError inside a Result; whether a
failure may be retried automatically is derived from its code.
"""

from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Dict, Optional


class ErrorCode(str, Enum):
    """Error codes surfaced by flow components."""

    VALIDATION_FAILED = "VALIDATION_FAILED"
    INVALID_REQUEST = "INVALID_REQUEST"
    NO_WALLET = "NO_WALLET"
    NOT_CONNECTED = "NOT_CONNECTED"
    ADDRESS_MISMATCH = "ADDRESS_MISMATCH"
    CHAIN_MISMATCH = "CHAIN_MISMATCH"
    NO_PREPARED_TX = "NO_PREPARED_TX"
    NO_SIGNED_TX = "NO_SIGNED_TX"
    INVALID_STATE = "INVALID_STATE"
    FLOW_NOT_FOUND = "FLOW_NOT_FOUND"
    PROTOCOL_NOT_REGISTERED = "PROTOCOL_NOT_REGISTERED"
    ENCODING_FAILED = "ENCODING_FAILED"
    GAS_ESTIMATION_FAILED = "GAS_ESTIMATION_FAILED"
    SIGNING_FAILED = "SIGNING_FAILED"
    SIGNING_REJECTED = "SIGNING_REJECTED"
    TRANSACTION_REVERTED = "TRANSACTION_REVERTED"
    QUEUE_FULL = "QUEUE_FULL"
    DUPLICATE_REQUEST = "DUPLICATE_REQUEST"
    STORAGE_FAILED = "STORAGE_FAILED"
    CANCELLED = "CANCELLED"
    BROADCAST_FAILED = "BROADCAST_FAILED"
    RECEIPT_FAILED = "RECEIPT_FAILED"
    TIMEOUT = "TIMEOUT"
    NONCE_TOO_LOW = "NONCE_TOO_LOW"
    NETWORK_ERROR = "NETWORK_ERROR"


# Only these trigger an automatic retry.
RECOVERABLE_CODES = frozenset({
    ErrorCode.BROADCAST_FAILED,
    ErrorCode.RECEIPT_FAILED,
    ErrorCode.TIMEOUT,
    ErrorCode.NONCE_TOO_LOW,
    ErrorCode.NETWORK_ERROR,
})


def is_recoverable(code: ErrorCode) -> bool:
    return code in RECOVERABLE_CODES


@dataclass
class TransactionError:
    """A failure reported by a flow component."""

    code: ErrorCode
    message: str
    details: Dict[str, Any] = field(default_factory=dict)
    recoverable: Optional[bool] = None

    def __post_init__(self):
        self.code = ErrorCode(self.code)
        if self.recoverable is None:
            self.recoverable = is_recoverable(self.code)

    @classmethod
    def create(cls, code: ErrorCode, message: str, **details: Any) -> "TransactionError":
        return cls(code=code, message=message, details=details)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "code": self.code.value,
            "message": self.message,
            "details": self.details,
            "recoverable": self.recoverable,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "TransactionError":
        return cls(
            code=ErrorCode(data["code"]),
            message=data.get("message", ""),
            details=dict(data.get("details") or {}),
            recoverable=data.get("recoverable"),
        )

    def __str__(self) -> str:
        return f"[{self.code.value}] {self.message}"


class TransactionFailure(Exception):
    """
    Raised by internal helpers to abort a pipeline step.

    Always converted back into a Result at the component boundary.
    """

    def __init__(self, error: TransactionError):
        super().__init__(str(error))
        self.error = error


_NONCE_PATTERNS = [
    "nonce too low",
    "nonce has already been used",
    "replacement transaction underpriced",
    "already known",
]
_TIMEOUT_PATTERNS = ["timeout", "timed out", "deadline"]
_NETWORK_PATTERNS = [
    "connection",
    "network",
    "unreachable",
    "refused",
    "dns",
    "socket",
    "ssl",
]
_REVERT_PATTERNS = ["execution reverted", "revert"]


def classify_exception(
    error: Exception,
    default_code: ErrorCode,
    **details: Any,
) -> TransactionError:
    """
    Turn an exception raised at an I/O boundary into a TransactionError.

    The message is matched against known node/transport patterns; anything
    unrecognised gets ``default_code``.
    """
    if isinstance(error, TransactionFailure):
        return error.error

    message = str(error) or error.__class__.__name__
    lowered = message.lower()

    if any(p in lowered for p in _NONCE_PATTERNS):
        code = ErrorCode.NONCE_TOO_LOW
    elif isinstance(error, TimeoutError) or any(p in lowered for p in _TIMEOUT_PATTERNS):
        code = ErrorCode.TIMEOUT
    elif isinstance(error, ConnectionError) or any(p in lowered for p in _NETWORK_PATTERNS):
        code = ErrorCode.NETWORK_ERROR
    elif default_code == ErrorCode.BROADCAST_FAILED and any(p in lowered for p in _REVERT_PATTERNS):
        code = ErrorCode.TRANSACTION_REVERTED
    else:
        code = default_code

    return TransactionError(code=code, message=message, details=details)
