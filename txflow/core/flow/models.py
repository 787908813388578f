"""
Transaction flow models and types.
"""

import uuid
from dataclasses import dataclass, field, replace
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, List, Optional, Tuple

from .errors import TransactionError


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def _iso(value: Optional[datetime]) -> Optional[str]:
    return value.isoformat() if value else None


def _parse_dt(value: Optional[str]) -> Optional[datetime]:
    return datetime.fromisoformat(value) if value else None


class TransactionType(str, Enum):
    """Kinds of actions a flow can carry."""
    LENDING_SUPPLY = "lending_supply"
    LENDING_WITHDRAW = "lending_withdraw"
    LENDING_BORROW = "lending_borrow"
    LENDING_REPAY = "lending_repay"
    LIQUIDITY_ADD = "liquidity_add"
    LIQUIDITY_REMOVE = "liquidity_remove"
    SWAP = "swap"
    STAKE = "stake"
    UNSTAKE = "unstake"
    CLAIM_REWARDS = "claim_rewards"
    APPROVE = "approve"
    TRANSFER = "transfer"
    BATCH = "batch"


class TransactionStatus(str, Enum):
    """Flow lifecycle status."""
    PREPARING = "preparing"                          # Validating, encoding, estimating
    AWAITING_CONFIRMATION = "awaiting_confirmation"  # Paused for the user
    SIGNING = "signing"                              # Wallet asked to sign
    BROADCASTING = "broadcasting"                    # Submitting to the network
    CONFIRMING = "confirming"                        # Waiting for a receipt
    COMPLETED = "completed"
    FAILED = "failed"
    CANCELLED = "cancelled"


TERMINAL_STATUSES = frozenset({
    TransactionStatus.COMPLETED,
    TransactionStatus.FAILED,
    TransactionStatus.CANCELLED,
})


class RiskLevel(str, Enum):
    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"


@dataclass(frozen=True)
class TransactionMetadata:
    """Caller supplied context for a request."""
    description: str = ""
    risk_level: RiskLevel = RiskLevel.LOW
    requires_confirmation: bool = True
    priority: int = 0
    user_id: Optional[str] = None
    session_id: Optional[str] = None
    tags: Tuple[str, ...] = ()

    def to_dict(self) -> Dict[str, Any]:
        return {
            "description": self.description,
            "riskLevel": self.risk_level.value,
            "requiresConfirmation": self.requires_confirmation,
            "priority": self.priority,
            "userId": self.user_id,
            "sessionId": self.session_id,
            "tags": list(self.tags),
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "TransactionMetadata":
        return cls(
            description=data.get("description", ""),
            risk_level=RiskLevel(data.get("riskLevel", RiskLevel.LOW.value)),
            requires_confirmation=bool(data.get("requiresConfirmation", True)),
            priority=int(data.get("priority", 0)),
            user_id=data.get("userId"),
            session_id=data.get("sessionId"),
            tags=tuple(data.get("tags") or ()),
        )


@dataclass(frozen=True)
class TransactionRequest:
    """
    An immutable request to perform an on-chain action.

    ``params`` is interpreted by the encoder registered for (protocol, type).
    ``to``, ``value`` and ``data`` override what the encoder would produce.
    """
    id: str
    type: TransactionType
    protocol: str
    action: str
    from_address: str
    chain_id: int
    params: Dict[str, Any] = field(default_factory=dict)
    metadata: TransactionMetadata = field(default_factory=TransactionMetadata)
    to: Optional[str] = None
    value: Optional[int] = None
    data: Optional[str] = None
    created_at: datetime = field(default_factory=utcnow)
    expires_at: Optional[datetime] = None

    @classmethod
    def create(
        cls,
        type: TransactionType,
        protocol: str,
        action: str,
        from_address: str,
        chain_id: int,
        params: Optional[Dict[str, Any]] = None,
        metadata: Optional[TransactionMetadata] = None,
        **kwargs: Any,
    ) -> "TransactionRequest":
        """Build a request with a fresh id."""
        return cls(
            id=kwargs.pop("id", None) or f"req_{uuid.uuid4().hex}",
            type=TransactionType(type),
            protocol=protocol,
            action=action,
            from_address=from_address,
            chain_id=chain_id,
            params=dict(params or {}),
            metadata=metadata or TransactionMetadata(),
            **kwargs,
        )

    @property
    def user_id(self) -> Optional[str]:
        return self.metadata.user_id

    def is_expired(self, now: Optional[datetime] = None) -> bool:
        return self.expires_at is not None and (now or utcnow()) >= self.expires_at

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "type": self.type.value,
            "protocol": self.protocol,
            "action": self.action,
            "params": self.params,
            "from": self.from_address,
            "to": self.to,
            "value": self.value,
            "data": self.data,
            "chainId": self.chain_id,
            "metadata": self.metadata.to_dict(),
            "createdAt": _iso(self.created_at),
            "expiresAt": _iso(self.expires_at),
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "TransactionRequest":
        return cls(
            id=data["id"],
            type=TransactionType(data["type"]),
            protocol=data["protocol"],
            action=data["action"],
            params=dict(data.get("params") or {}),
            from_address=data["from"],
            to=data.get("to"),
            value=data.get("value"),
            data=data.get("data"),
            chain_id=int(data["chainId"]),
            metadata=TransactionMetadata.from_dict(data.get("metadata") or {}),
            created_at=_parse_dt(data.get("createdAt")) or utcnow(),
            expires_at=_parse_dt(data.get("expiresAt")),
        )


@dataclass(frozen=True)
class PreparedTransaction:
    """A fully encoded transaction ready to be signed."""
    request_id: str
    tx_type: TransactionType
    chain_id: int
    from_address: str
    to: str
    data: str                                   # Encoded calldata (hex)
    gas_limit: int
    nonce: int
    value: int = 0                              # Wei to send
    gas_price: Optional[int] = None             # Legacy
    max_fee_per_gas: Optional[int] = None       # EIP-1559
    max_priority_fee_per_gas: Optional[int] = None

    @property
    def is_eip1559(self) -> bool:
        return self.max_fee_per_gas is not None

    @property
    def type(self) -> int:
        """Envelope type: 2 for EIP-1559, 0 for legacy."""
        return 2 if self.is_eip1559 else 0

    @property
    def fee_per_gas(self) -> int:
        """Worst-case price per gas unit."""
        if self.gas_price is not None:
            return self.gas_price
        return self.max_fee_per_gas or 0

    @property
    def max_cost_wei(self) -> int:
        return self.gas_limit * self.fee_per_gas

    def with_nonce(self, nonce: int) -> "PreparedTransaction":
        return replace(self, nonce=nonce)

    def to_rpc_dict(self) -> Dict[str, Any]:
        """Hex-quantity form for JSON-RPC (eth_signTransaction, eth_estimateGas)."""
        tx = {
            "from": self.from_address,
            "to": self.to,
            "data": self.data,
            "value": hex(self.value),
            "chainId": hex(self.chain_id),
            "nonce": hex(self.nonce),
            "gas": hex(self.gas_limit),
            "type": hex(self.type),
        }
        if self.is_eip1559:
            tx["maxFeePerGas"] = hex(self.max_fee_per_gas)
            tx["maxPriorityFeePerGas"] = hex(self.max_priority_fee_per_gas or 0)
        else:
            tx["gasPrice"] = hex(self.gas_price or 0)
        return tx

    def to_signable(self) -> Dict[str, Any]:
        """Integer form accepted by local signers."""
        tx = {
            "to": self.to,
            "value": self.value,
            "data": self.data,
            "gas": self.gas_limit,
            "nonce": self.nonce,
            "chainId": self.chain_id,
        }
        if self.is_eip1559:
            tx["type"] = 2
            tx["maxFeePerGas"] = self.max_fee_per_gas
            tx["maxPriorityFeePerGas"] = self.max_priority_fee_per_gas or 0
        else:
            tx["gasPrice"] = self.gas_price or 0
        return tx

    def to_dict(self) -> Dict[str, Any]:
        return {
            "requestId": self.request_id,
            "txType": self.tx_type.value,
            "chainId": self.chain_id,
            "from": self.from_address,
            "to": self.to,
            "data": self.data,
            "value": self.value,
            "gasLimit": self.gas_limit,
            "nonce": self.nonce,
            "gasPrice": self.gas_price,
            "maxFeePerGas": self.max_fee_per_gas,
            "maxPriorityFeePerGas": self.max_priority_fee_per_gas,
            "type": self.type,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "PreparedTransaction":
        return cls(
            request_id=data["requestId"],
            tx_type=TransactionType(data["txType"]),
            chain_id=int(data["chainId"]),
            from_address=data["from"],
            to=data["to"],
            data=data["data"],
            value=int(data.get("value") or 0),
            gas_limit=int(data["gasLimit"]),
            nonce=int(data["nonce"]),
            gas_price=data.get("gasPrice"),
            max_fee_per_gas=data.get("maxFeePerGas"),
            max_priority_fee_per_gas=data.get("maxPriorityFeePerGas"),
        )


@dataclass(frozen=True)
class SignedTransaction:
    """Raw signed bytes produced by a wallet."""
    raw_transaction: str                        # 0x-prefixed hex
    hash: str
    from_address: str
    nonce: int
    chain_id: int

    def to_dict(self) -> Dict[str, Any]:
        return {
            "rawTransaction": self.raw_transaction,
            "hash": self.hash,
            "from": self.from_address,
            "nonce": self.nonce,
            "chainId": self.chain_id,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "SignedTransaction":
        return cls(
            raw_transaction=data["rawTransaction"],
            hash=data["hash"],
            from_address=data["from"],
            nonce=int(data["nonce"]),
            chain_id=int(data["chainId"]),
        )


def _quantity(value: Any, default: int = 0) -> int:
    if value is None:
        return default
    if isinstance(value, str):
        return int(value, 16) if value.startswith("0x") else int(value)
    return int(value)


@dataclass
class TransactionLog:
    address: str
    topics: List[str]
    data: str
    log_index: int = 0

    def to_dict(self) -> Dict[str, Any]:
        return {
            "address": self.address,
            "topics": list(self.topics),
            "data": self.data,
            "logIndex": self.log_index,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "TransactionLog":
        return cls(
            address=data.get("address", ""),
            topics=list(data.get("topics") or []),
            data=data.get("data", "0x"),
            log_index=_quantity(data.get("logIndex")),
        )


@dataclass
class TransactionReceipt:
    """Network evidence of inclusion."""
    transaction_hash: str
    transaction_index: int
    block_hash: str
    block_number: int
    from_address: str
    to: Optional[str]
    gas_used: int
    effective_gas_price: int
    status: str                                 # "success" | "failed"
    logs: List[TransactionLog] = field(default_factory=list)
    contract_address: Optional[str] = None

    @property
    def succeeded(self) -> bool:
        return self.status == "success"

    @property
    def gas_cost_wei(self) -> int:
        return self.gas_used * self.effective_gas_price

    @classmethod
    def from_rpc(cls, receipt: Dict[str, Any]) -> "TransactionReceipt":
        """Convert an eth_getTransactionReceipt payload."""
        return cls(
            transaction_hash=receipt["transactionHash"],
            transaction_index=_quantity(receipt.get("transactionIndex")),
            block_hash=receipt.get("blockHash", ""),
            block_number=_quantity(receipt.get("blockNumber")),
            from_address=receipt.get("from", ""),
            to=receipt.get("to"),
            gas_used=_quantity(receipt.get("gasUsed")),
            effective_gas_price=_quantity(receipt.get("effectiveGasPrice")),
            status="success" if _quantity(receipt.get("status"), 1) == 1 else "failed",
            logs=[TransactionLog.from_dict(log) for log in receipt.get("logs") or []],
            contract_address=receipt.get("contractAddress"),
        )

    def to_dict(self) -> Dict[str, Any]:
        return {
            "transactionHash": self.transaction_hash,
            "transactionIndex": self.transaction_index,
            "blockHash": self.block_hash,
            "blockNumber": self.block_number,
            "from": self.from_address,
            "to": self.to,
            "gasUsed": self.gas_used,
            "effectiveGasPrice": self.effective_gas_price,
            "status": self.status,
            "logs": [log.to_dict() for log in self.logs],
            "contractAddress": self.contract_address,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "TransactionReceipt":
        return cls(
            transaction_hash=data["transactionHash"],
            transaction_index=int(data.get("transactionIndex") or 0),
            block_hash=data.get("blockHash", ""),
            block_number=int(data.get("blockNumber") or 0),
            from_address=data.get("from", ""),
            to=data.get("to"),
            gas_used=int(data.get("gasUsed") or 0),
            effective_gas_price=int(data.get("effectiveGasPrice") or 0),
            status=data.get("status", "success"),
            logs=[TransactionLog.from_dict(log) for log in data.get("logs") or []],
            contract_address=data.get("contractAddress"),
        )


@dataclass
class TransactionEvent:
    """One entry in a flow's append-only history."""
    status: TransactionStatus
    message: str
    timestamp: datetime = field(default_factory=utcnow)
    details: Optional[Dict[str, Any]] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "timestamp": _iso(self.timestamp),
            "status": self.status.value,
            "message": self.message,
            "details": self.details,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "TransactionEvent":
        return cls(
            status=TransactionStatus(data["status"]),
            message=data.get("message", ""),
            timestamp=_parse_dt(data.get("timestamp")) or utcnow(),
            details=data.get("details"),
        )


@dataclass
class FlowAttempt:
    """Snapshot of an attempt that was superseded by a retry."""
    attempt: int
    prepared_tx: Optional[PreparedTransaction] = None
    signed_tx: Optional[SignedTransaction] = None
    tx_hash: Optional[str] = None
    receipt: Optional[TransactionReceipt] = None
    error: Optional[TransactionError] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "attempt": self.attempt,
            "preparedTx": self.prepared_tx.to_dict() if self.prepared_tx else None,
            "signedTx": self.signed_tx.to_dict() if self.signed_tx else None,
            "txHash": self.tx_hash,
            "receipt": self.receipt.to_dict() if self.receipt else None,
            "error": self.error.to_dict() if self.error else None,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "FlowAttempt":
        return cls(
            attempt=int(data["attempt"]),
            prepared_tx=PreparedTransaction.from_dict(data["preparedTx"]) if data.get("preparedTx") else None,
            signed_tx=SignedTransaction.from_dict(data["signedTx"]) if data.get("signedTx") else None,
            tx_hash=data.get("txHash"),
            receipt=TransactionReceipt.from_dict(data["receipt"]) if data.get("receipt") else None,
            error=TransactionError.from_dict(data["error"]) if data.get("error") else None,
        )


@dataclass
class TransactionFlow:
    """
    Aggregate root for one request's journey to the chain.

    Mutated only by the flow manager. ``signed_tx`` is written once per
    attempt; a retry archives the attempt into ``previous_attempts`` and
    starts clean.
    """
    id: str
    request: TransactionRequest
    status: TransactionStatus = TransactionStatus.PREPARING
    prepared_tx: Optional[PreparedTransaction] = None
    signed_tx: Optional[SignedTransaction] = None
    tx_hash: Optional[str] = None
    receipt: Optional[TransactionReceipt] = None
    error: Optional[TransactionError] = None
    attempt: int = 1
    previous_attempts: List[FlowAttempt] = field(default_factory=list)
    history: List[TransactionEvent] = field(default_factory=list)
    created_at: datetime = field(default_factory=utcnow)
    updated_at: datetime = field(default_factory=utcnow)
    completed_at: Optional[datetime] = None

    @classmethod
    def new(cls, request: TransactionRequest) -> "TransactionFlow":
        return cls(id=f"flow_{uuid.uuid4().hex}", request=request)

    @property
    def user_id(self) -> Optional[str]:
        return self.request.metadata.user_id

    @property
    def is_terminal(self) -> bool:
        return self.status in TERMINAL_STATUSES

    @property
    def retry_count(self) -> int:
        return self.attempt - 1

    def add_event(
        self,
        status: TransactionStatus,
        message: str,
        details: Optional[Dict[str, Any]] = None,
    ) -> TransactionEvent:
        event = TransactionEvent(status=status, message=message, details=details)
        self.history.append(event)
        self.updated_at = event.timestamp
        return event

    def archive_attempt(self) -> FlowAttempt:
        """Move the current attempt's artefacts into history and clear them."""
        snapshot = FlowAttempt(
            attempt=self.attempt,
            prepared_tx=self.prepared_tx,
            signed_tx=self.signed_tx,
            tx_hash=self.tx_hash,
            receipt=self.receipt,
            error=self.error,
        )
        self.previous_attempts.append(snapshot)
        self.prepared_tx = None
        self.signed_tx = None
        self.tx_hash = None
        self.receipt = None
        self.error = None
        self.completed_at = None
        self.attempt += 1
        return snapshot

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "request": self.request.to_dict(),
            "status": self.status.value,
            "preparedTx": self.prepared_tx.to_dict() if self.prepared_tx else None,
            "signedTx": self.signed_tx.to_dict() if self.signed_tx else None,
            "txHash": self.tx_hash,
            "receipt": self.receipt.to_dict() if self.receipt else None,
            "error": self.error.to_dict() if self.error else None,
            "attempt": self.attempt,
            "previousAttempts": [a.to_dict() for a in self.previous_attempts],
            "history": [e.to_dict() for e in self.history],
            "createdAt": _iso(self.created_at),
            "updatedAt": _iso(self.updated_at),
            "completedAt": _iso(self.completed_at),
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "TransactionFlow":
        return cls(
            id=data["id"],
            request=TransactionRequest.from_dict(data["request"]),
            status=TransactionStatus(data["status"]),
            prepared_tx=PreparedTransaction.from_dict(data["preparedTx"]) if data.get("preparedTx") else None,
            signed_tx=SignedTransaction.from_dict(data["signedTx"]) if data.get("signedTx") else None,
            tx_hash=data.get("txHash"),
            receipt=TransactionReceipt.from_dict(data["receipt"]) if data.get("receipt") else None,
            error=TransactionError.from_dict(data["error"]) if data.get("error") else None,
            attempt=int(data.get("attempt") or 1),
            previous_attempts=[FlowAttempt.from_dict(a) for a in data.get("previousAttempts") or []],
            history=[TransactionEvent.from_dict(e) for e in data.get("history") or []],
            created_at=_parse_dt(data.get("createdAt")) or utcnow(),
            updated_at=_parse_dt(data.get("updatedAt")) or utcnow(),
            completed_at=_parse_dt(data.get("completedAt")),
        )


@dataclass
class TransactionStatistics:
    """Aggregate counters. Callers always receive a copy."""
    total: int = 0
    successful: int = 0
    failed: int = 0
    cancelled: int = 0
    pending: int = 0
    by_type: Dict[str, int] = field(default_factory=dict)
    total_gas_used: int = 0
    total_gas_spent_wei: int = 0
    total_confirmation_seconds: float = 0.0

    @property
    def average_gas_used(self) -> float:
        return self.total_gas_used / self.successful if self.successful else 0.0

    @property
    def average_confirmation_seconds(self) -> float:
        return self.total_confirmation_seconds / self.successful if self.successful else 0.0

    def copy(self) -> "TransactionStatistics":
        return replace(self, by_type=dict(self.by_type))

    def to_dict(self) -> Dict[str, Any]:
        return {
            "total": self.total,
            "successful": self.successful,
            "failed": self.failed,
            "cancelled": self.cancelled,
            "pending": self.pending,
            "byType": dict(self.by_type),
            "averageGasUsed": self.average_gas_used,
            "averageConfirmationSeconds": self.average_confirmation_seconds,
            "totalGasSpentWei": str(self.total_gas_spent_wei),
        }


@dataclass
class ConfirmationRequest:
    """Sent to the user before signing."""
    flow_id: str
    transaction: PreparedTransaction
    metadata: TransactionMetadata
    estimated_gas: int
    estimated_cost: str                         # Native units, 6 decimals
    timeout_seconds: float
    expires_at: datetime

    def to_dict(self) -> Dict[str, Any]:
        return {
            "flowId": self.flow_id,
            "transaction": self.transaction.to_dict(),
            "metadata": self.metadata.to_dict(),
            "estimatedGas": self.estimated_gas,
            "estimatedCost": self.estimated_cost,
            "timeout": self.timeout_seconds,
            "expiresAt": _iso(self.expires_at),
        }


@dataclass
class ConfirmationResponse:
    """The user's answer to a ConfirmationRequest."""
    approved: bool
    signed_transaction: Optional[SignedTransaction] = None
    rejection_reason: Optional[str] = None
    timestamp: datetime = field(default_factory=utcnow)
