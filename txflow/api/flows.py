"""
Transaction Flow API Endpoints

REST surface over the TransactionFlowManager: create or queue requests,
answer confirmation prompts, cancel and retry flows, read statistics.
"""

from datetime import datetime
from typing import Any, Dict, List, Optional

import structlog
from fastapi import APIRouter, Depends, HTTPException, Query
from pydantic import BaseModel, Field

from txflow.config import Settings, settings
from txflow.core.execution import (
    GasEstimationStrategy,
    JsonRpcNetworkClient,
    TransactionBroadcaster,
    TransactionBuilder,
)
from txflow.core.flow import (
    ConfirmationResponse,
    ErrorCode,
    FlowConfig,
    InMemoryTransactionQueue,
    InMemoryTransactionStore,
    RiskLevel,
    SQLiteTransactionStore,
    SignedTransaction,
    TransactionError,
    TransactionFlowManager,
    TransactionMetadata,
    TransactionRequest,
    TransactionStatus,
    TransactionType,
)
from txflow.core.flow.results import Result

logger = structlog.stdlib.get_logger(__name__)

router = APIRouter(prefix="/flows", tags=["Transaction Flows"])


# =============================================================================
# Request/Response Models
# =============================================================================


class MetadataRequest(BaseModel):
    """Caller context attached to a transaction request."""
    description: str = ""
    risk_level: RiskLevel = Field(RiskLevel.LOW, alias="riskLevel")
    requires_confirmation: bool = Field(True, alias="requiresConfirmation")
    priority: int = 0
    user_id: Optional[str] = Field(None, alias="userId")
    session_id: Optional[str] = Field(None, alias="sessionId")
    tags: List[str] = Field(default_factory=list)

    class Config:
        populate_by_name = True


class CreateFlowRequest(BaseModel):
    """Request to start a transaction flow."""
    id: Optional[str] = Field(None, description="Client supplied request id")
    type: TransactionType = Field(..., description="Transaction type")
    protocol: str = Field(..., min_length=1, description="Registered protocol name")
    action: str = Field(..., min_length=1, description="Protocol action")
    from_address: str = Field(..., alias="from", description="Sender address")
    chain_id: int = Field(..., alias="chainId", ge=1, description="Chain ID")
    params: Dict[str, Any] = Field(default_factory=dict)
    metadata: MetadataRequest = Field(default_factory=MetadataRequest)
    to: Optional[str] = Field(None, description="Target override")
    value: Optional[int] = Field(None, ge=0, description="Value override in wei")
    data: Optional[str] = Field(None, description="Calldata override")
    expires_at: Optional[datetime] = Field(None, alias="expiresAt")

    class Config:
        populate_by_name = True

    def to_request(self) -> TransactionRequest:
        meta = self.metadata
        kwargs: Dict[str, Any] = {
            "to": self.to,
            "value": self.value,
            "data": self.data,
            "expires_at": self.expires_at,
        }
        if self.id:
            kwargs["id"] = self.id
        return TransactionRequest.create(
            type=self.type,
            protocol=self.protocol,
            action=self.action,
            from_address=self.from_address,
            chain_id=self.chain_id,
            params=self.params,
            metadata=TransactionMetadata(
                description=meta.description,
                risk_level=meta.risk_level,
                requires_confirmation=meta.requires_confirmation,
                priority=meta.priority,
                user_id=meta.user_id,
                session_id=meta.session_id,
                tags=tuple(meta.tags),
            ),
            **kwargs,
        )


class SignedTransactionRequest(BaseModel):
    """A transaction the user signed outside this service."""
    raw_transaction: str = Field(..., alias="rawTransaction")
    hash: str
    from_address: str = Field(..., alias="from")
    nonce: int = Field(..., ge=0)
    chain_id: int = Field(..., alias="chainId")

    class Config:
        populate_by_name = True


class ConfirmationBody(BaseModel):
    """The user's answer to a confirmation prompt."""
    approved: bool
    signed_transaction: Optional[SignedTransactionRequest] = Field(None, alias="signedTransaction")
    rejection_reason: Optional[str] = Field(None, alias="rejectionReason")

    class Config:
        populate_by_name = True


class CancelBody(BaseModel):
    reason: Optional[str] = None


# =============================================================================
# Dependencies
# =============================================================================


_flow_manager: Optional[TransactionFlowManager] = None


def build_flow_manager(config: Optional[Settings] = None) -> TransactionFlowManager:
    """Wire a manager from settings."""
    config = config or settings
    network = JsonRpcNetworkClient(config.rpc_url, timeout=config.rpc_timeout_seconds)
    builder = TransactionBuilder(
        network,
        gas_strategy=GasEstimationStrategy(network, buffer_percent=config.gas_buffer_percent),
    )
    broadcaster = TransactionBroadcaster(
        network,
        receipt_timeout_seconds=config.receipt_timeout_seconds,
        poll_interval_seconds=config.receipt_poll_interval_seconds,
    )
    if config.uses_sqlite_store:
        store = SQLiteTransactionStore(config.store_path or "data/txflow.db")
    else:
        store = InMemoryTransactionStore()

    return TransactionFlowManager(
        builder,
        broadcaster,
        store=store,
        queue=InMemoryTransactionQueue(max_size=config.queue_max_size),
        config=FlowConfig.from_settings(config),
    )


def get_flow_manager() -> TransactionFlowManager:
    """Get the process-wide flow manager."""
    global _flow_manager
    if _flow_manager is None:
        _flow_manager = build_flow_manager()
    return _flow_manager


async def start_flow_manager() -> TransactionFlowManager:
    manager = get_flow_manager()
    if isinstance(manager.store, SQLiteTransactionStore):
        await manager.store.connect()
    if manager.wallet is not None and not manager.wallet.is_connected():
        await manager.wallet.connect()
    await manager.start()
    return manager


async def stop_flow_manager() -> None:
    global _flow_manager
    if _flow_manager is None:
        return
    await _flow_manager.shutdown()
    await _flow_manager.store.close()
    network = _flow_manager.builder.network
    if isinstance(network, JsonRpcNetworkClient):
        await network.close()
    _flow_manager = None


# =============================================================================
# Helper Functions
# =============================================================================


_STATUS_BY_CODE = {
    ErrorCode.FLOW_NOT_FOUND: 404,
    ErrorCode.INVALID_STATE: 409,
    ErrorCode.DUPLICATE_REQUEST: 409,
    ErrorCode.NO_PREPARED_TX: 409,
    ErrorCode.NO_SIGNED_TX: 409,
    ErrorCode.NO_WALLET: 409,
    ErrorCode.NOT_CONNECTED: 409,
    ErrorCode.SIGNING_REJECTED: 409,
    ErrorCode.CANCELLED: 409,
    ErrorCode.VALIDATION_FAILED: 422,
    ErrorCode.INVALID_REQUEST: 422,
    ErrorCode.PROTOCOL_NOT_REGISTERED: 422,
    ErrorCode.ENCODING_FAILED: 422,
    ErrorCode.ADDRESS_MISMATCH: 422,
    ErrorCode.CHAIN_MISMATCH: 422,
    ErrorCode.QUEUE_FULL: 429,
    ErrorCode.STORAGE_FAILED: 500,
    ErrorCode.SIGNING_FAILED: 500,
    ErrorCode.GAS_ESTIMATION_FAILED: 502,
    ErrorCode.BROADCAST_FAILED: 502,
    ErrorCode.RECEIPT_FAILED: 502,
    ErrorCode.NONCE_TOO_LOW: 502,
    ErrorCode.NETWORK_ERROR: 502,
    ErrorCode.TIMEOUT: 504,
    ErrorCode.TRANSACTION_REVERTED: 502,
}


def http_status_for(error: TransactionError) -> int:
    return _STATUS_BY_CODE.get(error.code, 400)


def _unwrap(result: Result) -> Any:
    """Return the value or raise the HTTPException for the error."""
    if result.ok:
        return result.value
    error = result.error
    logger.info("flow_request_failed", code=error.code.value, message=error.message)
    raise HTTPException(status_code=http_status_for(error), detail=error.to_dict())


# =============================================================================
# Endpoints
# =============================================================================


@router.post("", status_code=201)
async def create_flow(
    body: CreateFlowRequest,
    manager: TransactionFlowManager = Depends(get_flow_manager),
) -> Dict[str, Any]:
    """Validate and prepare a transaction; returns the flow."""
    flow = _unwrap(await manager.create_flow(body.to_request()))
    return flow.to_dict()


@router.post("/queue", status_code=202)
async def queue_flow(
    body: CreateFlowRequest,
    manager: TransactionFlowManager = Depends(get_flow_manager),
) -> Dict[str, Any]:
    """Queue a request for the background drain."""
    request_id = _unwrap(await manager.queue_transaction(body.to_request()))
    return {"requestId": request_id, "queued": await manager.queue.size()}


@router.get("/statistics")
async def get_statistics(
    manager: TransactionFlowManager = Depends(get_flow_manager),
) -> Dict[str, Any]:
    return manager.get_statistics().to_dict()


@router.get("/users/{user_id}")
async def get_user_flows(
    user_id: str,
    status: Optional[TransactionStatus] = Query(None, description="Filter by status"),
    manager: TransactionFlowManager = Depends(get_flow_manager),
) -> Dict[str, Any]:
    flows = _unwrap(await manager.get_user_flows(user_id))
    if status is not None:
        flows = [f for f in flows if f.status == status]
    return {"flows": [f.to_dict() for f in flows], "total": len(flows)}


@router.get("/{flow_id}")
async def get_flow(
    flow_id: str,
    manager: TransactionFlowManager = Depends(get_flow_manager),
) -> Dict[str, Any]:
    flow = _unwrap(await manager.get_flow_status(flow_id))
    return flow.to_dict()


@router.post("/{flow_id}/confirmation-request")
async def request_confirmation(
    flow_id: str,
    manager: TransactionFlowManager = Depends(get_flow_manager),
) -> Dict[str, Any]:
    confirmation = _unwrap(await manager.request_confirmation(flow_id))
    return confirmation.to_dict()


@router.post("/{flow_id}/confirmation")
async def confirm_flow(
    flow_id: str,
    body: ConfirmationBody,
    manager: TransactionFlowManager = Depends(get_flow_manager),
) -> Dict[str, Any]:
    """Approve (optionally with a pre-signed transaction) or reject a flow."""
    signed = None
    if body.signed_transaction is not None:
        s = body.signed_transaction
        signed = SignedTransaction(
            raw_transaction=s.raw_transaction,
            hash=s.hash,
            from_address=s.from_address,
            nonce=s.nonce,
            chain_id=s.chain_id,
        )
    response = ConfirmationResponse(
        approved=body.approved,
        signed_transaction=signed,
        rejection_reason=body.rejection_reason,
    )
    flow = _unwrap(await manager.handle_confirmation(flow_id, response))
    return flow.to_dict()


@router.post("/{flow_id}/cancel")
async def cancel_flow(
    flow_id: str,
    body: Optional[CancelBody] = None,
    manager: TransactionFlowManager = Depends(get_flow_manager),
) -> Dict[str, Any]:
    reason = body.reason if body else None
    flow = _unwrap(await manager.cancel_flow(flow_id, reason))
    return flow.to_dict()


@router.post("/{flow_id}/retry")
async def retry_flow(
    flow_id: str,
    manager: TransactionFlowManager = Depends(get_flow_manager),
) -> Dict[str, Any]:
    flow = _unwrap(await manager.retry_transaction(flow_id))
    return flow.to_dict()
