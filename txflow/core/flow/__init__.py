"""
Transaction Flow Orchestration

Tracks each transaction from request to receipt:
- TransactionFlowManager: state machine driver (confirm, sign, broadcast, confirm on-chain)
- TransactionValidator: per-type request rules
- TransactionQueue / TransactionStore: pending requests and flow persistence
- EventBus: lifecycle notifications

Usage:
    from txflow.core.flow import TransactionFlowManager, TransactionRequest, TransactionType

    request = TransactionRequest.create(
        type=TransactionType.LENDING_SUPPLY,
        protocol="aave",
        action="supply",
        from_address="0x...",
        chain_id=1,
        params={"asset": "0x...", "amount": "1000000"},
    )
    result = await manager.create_flow(request)
"""

from .errors import ErrorCode, TransactionError, TransactionFailure, classify_exception
from .events import EventBus, FlowEvent, FlowEventType, Subscription
from .manager import FlowConfig, TransactionFlowManager
from .models import (
    ConfirmationRequest,
    ConfirmationResponse,
    PreparedTransaction,
    RiskLevel,
    SignedTransaction,
    TransactionFlow,
    TransactionMetadata,
    TransactionReceipt,
    TransactionRequest,
    TransactionStatistics,
    TransactionStatus,
    TransactionType,
)
from .queue import InMemoryTransactionQueue, TransactionQueue
from .results import Result
from .retry import RetryPolicy
from .sqlite_store import SQLiteTransactionStore
from .state_machine import FlowStateMachine, InvalidTransitionError
from .store import InMemoryTransactionStore, TransactionStore
from .validator import TransactionValidator, ValidationRule

__all__ = [
    # Manager
    "TransactionFlowManager",
    "FlowConfig",
    # Models
    "TransactionType",
    "TransactionStatus",
    "RiskLevel",
    "TransactionMetadata",
    "TransactionRequest",
    "PreparedTransaction",
    "SignedTransaction",
    "TransactionReceipt",
    "TransactionFlow",
    "TransactionStatistics",
    "ConfirmationRequest",
    "ConfirmationResponse",
    # Errors
    "ErrorCode",
    "TransactionError",
    "TransactionFailure",
    "classify_exception",
    "Result",
    # State machine
    "FlowStateMachine",
    "InvalidTransitionError",
    # Events
    "EventBus",
    "FlowEvent",
    "FlowEventType",
    "Subscription",
    # Queue / storage
    "TransactionQueue",
    "InMemoryTransactionQueue",
    "TransactionStore",
    "InMemoryTransactionStore",
    "SQLiteTransactionStore",
    # Validation / retry
    "TransactionValidator",
    "ValidationRule",
    "RetryPolicy",
]
