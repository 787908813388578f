"""
Transaction Flow Manager

Drives each TransactionFlow from request to receipt: validation, building,
user confirmation, wallet signing, broadcasting and confirmation tracking,
with cancellation, retries, persistence, events and statistics.
"""

import asyncio
from dataclasses import dataclass
from datetime import timedelta
from typing import TYPE_CHECKING, Any, Dict, List, Optional

import structlog
from eth_utils import from_wei

from txflow.config import Settings, settings as default_settings

from .errors import ErrorCode, TransactionError, classify_exception
from .events import EventBus, FlowEventType
from .models import (
    ConfirmationRequest,
    ConfirmationResponse,
    PreparedTransaction,
    SignedTransaction,
    TransactionFlow,
    TransactionRequest,
    TransactionStatistics,
    TransactionStatus,
    utcnow,
)
from .queue import InMemoryTransactionQueue, TransactionQueue
from .results import Result
from .retry import NONCE_RESYNC_CODES, RetryPolicy
from .state_machine import FlowStateMachine, InvalidTransitionError
from .store import InMemoryTransactionStore, TransactionStore
from .validator import TransactionValidator

if TYPE_CHECKING:
    from txflow.core.execution.broadcaster import TransactionBroadcaster
    from txflow.core.execution.builder import TransactionBuilder
    from txflow.core.wallet.base import WalletInterface


logger = structlog.stdlib.get_logger(__name__)

S = TransactionStatus


@dataclass
class FlowConfig:
    """Runtime knobs for the manager."""

    confirmation_timeout_seconds: float = 300.0
    retry_delay_seconds: float = 5.0
    retry_max_delay_seconds: float = 60.0
    max_retry_attempts: int = 3
    auto_retry: bool = True
    enable_batching: bool = True
    batch_size: int = 10
    batch_interval_seconds: float = 5.0
    flow_eviction_seconds: float = 300.0
    required_confirmations: int = 1

    @classmethod
    def from_settings(cls, s: Optional[Settings] = None, **overrides: Any) -> "FlowConfig":
        s = s or default_settings
        values = dict(
            confirmation_timeout_seconds=s.confirmation_timeout_seconds,
            retry_delay_seconds=s.retry_delay_seconds,
            retry_max_delay_seconds=s.retry_max_delay_seconds,
            max_retry_attempts=s.max_retry_attempts,
            enable_batching=s.enable_batching,
            batch_size=s.batch_size,
            batch_interval_seconds=s.batch_interval_seconds,
            flow_eviction_seconds=s.flow_eviction_seconds,
            required_confirmations=s.required_confirmations,
        )
        values.update(overrides)
        return cls(**values)

    def retry_policy(self) -> RetryPolicy:
        return RetryPolicy(
            max_retries=self.max_retry_attempts,
            initial_delay_seconds=self.retry_delay_seconds,
            max_delay_seconds=self.retry_max_delay_seconds,
        )


def estimate_cost(tx: PreparedTransaction) -> str:
    """Worst-case fee in native units with 6 decimals."""
    return f"{from_wei(tx.max_cost_wei, 'ether'):.6f}"


class TransactionFlowManager:
    """
    Orchestrates transaction flows.

    Public operations return Result values and never raise for expected
    failures. Work after the user's go-ahead (signing, broadcasting,
    confirmation) runs in a background task per flow; ``wait_for_flow``
    awaits it.
    """

    def __init__(
        self,
        builder: "TransactionBuilder",
        broadcaster: "TransactionBroadcaster",
        store: Optional[TransactionStore] = None,
        queue: Optional[TransactionQueue] = None,
        validator: Optional[TransactionValidator] = None,
        wallet: Optional["WalletInterface"] = None,
        events: Optional[EventBus] = None,
        config: Optional[FlowConfig] = None,
        retry_policy: Optional[RetryPolicy] = None,
    ):
        self.builder = builder
        self.broadcaster = broadcaster
        self.store = store or InMemoryTransactionStore()
        self.queue = queue or InMemoryTransactionQueue()
        self.validator = validator or TransactionValidator()
        self.wallet = wallet
        self.events = events or EventBus()
        self.config = config or FlowConfig()
        self.retry_policy = retry_policy or self.config.retry_policy()

        self._flows: Dict[str, TransactionFlow] = {}
        self._statistics = TransactionStatistics()
        self._persist_locks: Dict[str, asyncio.Lock] = {}
        self._confirmations: Dict[str, ConfirmationRequest] = {}

        # Background work, keyed by flow id
        self._pipelines: Dict[str, asyncio.Task] = {}
        self._confirmation_timers: Dict[str, asyncio.Task] = {}
        self._retry_timers: Dict[str, asyncio.Task] = {}
        self._eviction_timers: Dict[str, asyncio.Task] = {}

        self._queue_task: Optional[asyncio.Task] = None
        self._processing_queue = False
        self._running = False

    # =========================================================================
    # Lifecycle
    # =========================================================================

    async def set_wallet(self, wallet: "WalletInterface") -> None:
        self.wallet = wallet
        await self.events.emit(FlowEventType.WALLET_CONNECTED, address=wallet.get_address())

    async def start(self) -> None:
        """Start the background queue drain."""
        if self._running:
            return
        self._running = True
        if self.config.enable_batching:
            self._queue_task = asyncio.create_task(self._queue_loop())
        logger.info("flow_manager_started", batching=self.config.enable_batching)

    async def stop(self) -> None:
        self._running = False
        if self._queue_task:
            self._queue_task.cancel()
            try:
                await self._queue_task
            except asyncio.CancelledError:
                pass
            self._queue_task = None

    async def shutdown(self) -> None:
        """Stop loops and timers and persist every flow still in memory."""
        await self.stop()

        timers = [
            *self._confirmation_timers.values(),
            *self._retry_timers.values(),
            *self._eviction_timers.values(),
            *self._pipelines.values(),
        ]
        for task in timers:
            task.cancel()
        if timers:
            await asyncio.gather(*timers, return_exceptions=True)
        self._confirmation_timers.clear()
        self._retry_timers.clear()
        self._eviction_timers.clear()
        self._pipelines.clear()

        for flow in list(self._flows.values()):
            await self._persist(flow)
        logger.info("flow_manager_shutdown", flows_persisted=len(self._flows))

    # =========================================================================
    # Public operations
    # =========================================================================

    async def create_flow(self, request: TransactionRequest) -> Result[TransactionFlow]:
        """Validate, persist and prepare a new flow."""
        valid = self.validator.validate(request)
        if not valid.ok:
            return Result.failure(valid.error)

        flow = TransactionFlow.new(request)
        flow.add_event(S.PREPARING, "Transaction flow initialized")
        self._flows[flow.id] = flow

        try:
            await self.store.save(flow)
        except Exception as e:  # noqa: BLE001
            self._flows.pop(flow.id, None)
            logger.error("flow_persist_failed", flow_id=flow.id, error=str(e))
            return Result.fail(ErrorCode.STORAGE_FAILED, f"Failed to persist flow: {e}", flow_id=flow.id)

        self._statistics.total += 1
        type_key = request.type.value
        self._statistics.by_type[type_key] = self._statistics.by_type.get(type_key, 0) + 1
        self._statistics.pending += 1

        await self.events.emit(FlowEventType.FLOW_CREATED, flow.id, request_id=request.id)
        await self._emit_statistics()

        return await self._process(flow)

    async def queue_transaction(self, request: TransactionRequest) -> Result[str]:
        valid = self.validator.validate(request)
        if not valid.ok:
            return Result.failure(valid.error)

        queued = await self.queue.enqueue(request)
        if queued.ok:
            await self.events.emit(FlowEventType.TRANSACTION_QUEUED, id=queued.value)
        return queued

    async def request_confirmation(self, flow_id: str) -> Result[ConfirmationRequest]:
        found = await self._get_flow(flow_id)
        if not found.ok:
            return Result.failure(found.error)
        flow = found.value

        if flow.prepared_tx is None:
            return Result.fail(ErrorCode.NO_PREPARED_TX, "No prepared transaction found", flow_id=flow_id)

        if flow.status == S.AWAITING_CONFIRMATION:
            existing = self._confirmations.get(flow_id)
            if existing is not None:
                return Result.success(existing)
            confirmation = self._build_confirmation(flow)
            self._arm_confirmation_timer(flow_id)
            return Result.success(confirmation)

        if not FlowStateMachine.is_allowed(flow.status, S.AWAITING_CONFIRMATION):
            return Result.fail(
                ErrorCode.INVALID_STATE,
                f"Cannot request confirmation in state {flow.status.value}",
                flow_id=flow_id,
                status=flow.status.value,
            )

        confirmation = self._build_confirmation(flow)
        await self._transition(flow, S.AWAITING_CONFIRMATION, "Transaction prepared, awaiting confirmation")
        self._arm_confirmation_timer(flow_id)
        await self.events.emit(
            FlowEventType.CONFIRMATION_REQUESTED,
            flow_id,
            request=confirmation.to_dict(),
        )
        return Result.success(confirmation)

    async def handle_confirmation(
        self,
        flow_id: str,
        response: ConfirmationResponse,
    ) -> Result[TransactionFlow]:
        found = await self._get_flow(flow_id)
        if not found.ok:
            return Result.failure(found.error)
        flow = found.value

        if flow.status != S.AWAITING_CONFIRMATION:
            return Result.fail(
                ErrorCode.INVALID_STATE,
                "Flow not awaiting confirmation",
                flow_id=flow_id,
                status=flow.status.value,
            )

        if not response.approved:
            return await self.cancel_flow(flow_id, response.rejection_reason or "Rejected by user")

        if response.signed_transaction is not None:
            signed = response.signed_transaction
            checked = self._check_presigned(flow, signed)
            if not checked.ok:
                return Result.failure(checked.error)
            self._clear_confirmation(flow_id)
            flow.signed_tx = signed
            await self._transition(flow, S.BROADCASTING, "Signed transaction supplied by user")
            self._spawn_pipeline(flow)
            return Result.success(flow)

        ready = self._check_signer(flow)
        if not ready.ok:
            # Stays awaiting so the user can connect or switch network and approve again.
            return Result.failure(ready.error)

        self._clear_confirmation(flow_id)
        await self._transition(flow, S.SIGNING, "Confirmed by user")
        self._spawn_pipeline(flow)
        return Result.success(flow)

    async def cancel_flow(self, flow_id: str, reason: Optional[str] = None) -> Result[TransactionFlow]:
        found = await self._get_flow(flow_id)
        if not found.ok:
            return Result.failure(found.error)
        flow = found.value

        if flow.is_terminal:
            return Result.fail(
                ErrorCode.INVALID_STATE,
                f"Cannot cancel flow in state {flow.status.value}",
                flow_id=flow_id,
                status=flow.status.value,
            )

        reason = reason or "Transaction cancelled by user"
        previous = flow.status
        flow.error = TransactionError.create(ErrorCode.CANCELLED, reason)
        await self._transition(flow, S.CANCELLED, reason)

        self._clear_confirmation(flow_id)
        self._cancel_task(self._retry_timers.pop(flow_id, None))

        if flow.tx_hash:
            # Already on the network; we only stop tracking it.
            logger.warning("cancelled_after_broadcast", flow_id=flow_id, tx_hash=flow.tx_hash)
            if previous == S.CONFIRMING:
                self._cancel_task(self._pipelines.get(flow_id))
        elif flow.prepared_tx is not None and previous != S.BROADCASTING:
            await self.builder.release_nonce(flow.prepared_tx)

        self._statistics.cancelled += 1
        self._statistics.pending = max(0, self._statistics.pending - 1)

        await self.events.emit(FlowEventType.FLOW_CANCELLED, flow_id, reason=reason)
        await self._emit_statistics()
        self._schedule_eviction(flow_id)
        return Result.success(flow)

    async def retry_transaction(self, flow_id: str) -> Result[TransactionFlow]:
        found = await self._get_flow(flow_id)
        if not found.ok:
            return Result.failure(found.error)
        flow = found.value

        if flow.status != S.FAILED or flow.error is None or not flow.error.recoverable:
            return Result.fail(ErrorCode.INVALID_STATE, "Cannot retry transaction", flow_id=flow_id)
        if not self.retry_policy.allows(flow.retry_count):
            return Result.fail(
                ErrorCode.INVALID_STATE,
                f"Retry limit reached ({self.retry_policy.max_retries})",
                flow_id=flow_id,
                attempts=flow.attempt,
            )

        self._cancel_task(self._retry_timers.pop(flow_id, None))
        self._cancel_task(self._eviction_timers.pop(flow_id, None))

        flow.archive_attempt()
        await self._transition(flow, S.PREPARING, f"Retrying (attempt {flow.attempt})")

        self._statistics.failed = max(0, self._statistics.failed - 1)
        self._statistics.pending += 1
        await self._emit_statistics()

        return await self._process(flow)

    async def get_flow_status(self, flow_id: str) -> Result[TransactionFlow]:
        return await self._get_flow(flow_id)

    async def get_user_flows(self, user_id: str) -> Result[List[TransactionFlow]]:
        try:
            stored = await self.store.find_by_user(user_id)
        except Exception as e:  # noqa: BLE001
            return Result.fail(ErrorCode.STORAGE_FAILED, f"Failed to load flows: {e}", user_id=user_id)
        return Result.success(self._overlay(stored))

    async def get_flows_by_status(self, status: TransactionStatus) -> Result[List[TransactionFlow]]:
        try:
            stored = await self.store.find_by_status(TransactionStatus(status))
        except Exception as e:  # noqa: BLE001
            return Result.fail(ErrorCode.STORAGE_FAILED, f"Failed to load flows: {e}", status=str(status))
        return Result.success([f for f in self._overlay(stored) if f.status == status])

    def get_statistics(self) -> TransactionStatistics:
        return self._statistics.copy()

    async def wait_for_flow(self, flow_id: str, timeout: Optional[float] = None) -> Optional[TransactionFlow]:
        """Wait for the flow's background pipeline (if any) and return the flow."""
        task = self._pipelines.get(flow_id)
        if task is not None:
            try:
                await asyncio.wait_for(asyncio.shield(task), timeout)
            except asyncio.CancelledError:
                # Pipeline stopped by cancel_flow.
                if not task.cancelled():
                    raise
        return self._flows.get(flow_id)

    async def process_queue(self) -> List[Result[TransactionFlow]]:
        """Turn up to ``batch_size`` queued requests into flows."""
        if self._processing_queue:
            return []

        self._processing_queue = True
        results = []
        try:
            batch = []
            for _ in range(self.config.batch_size):
                request = await self.queue.dequeue()
                if request is None:
                    break
                batch.append(request)

            for request in batch:
                result = await self.create_flow(request)
                if not result.ok:
                    logger.warning("queued_request_failed", request_id=request.id, error=str(result.error))
                results.append(result)
        finally:
            self._processing_queue = False
        return results

    async def _queue_loop(self) -> None:
        while self._running:
            try:
                if await self.queue.size() > 0:
                    await self.process_queue()
            except asyncio.CancelledError:
                raise
            except Exception as e:  # noqa: BLE001
                logger.error("queue_processing_error", error=str(e))
            await asyncio.sleep(self.config.batch_interval_seconds)

    # =========================================================================
    # Pipeline
    # =========================================================================

    async def _process(self, flow: TransactionFlow) -> Result[TransactionFlow]:
        """Build the transaction, then ask for confirmation or proceed to signing."""
        with structlog.contextvars.bound_contextvars(flow_id=flow.id):
            built = await self.builder.build_transaction(flow.request)
            if not built.ok:
                await self._fail(flow, built.error)
                return Result.failure(self._with_flow(built.error, flow))

            if flow.status != S.PREPARING:
                # Cancelled while building.
                await self.builder.release_nonce(built.value)
                return Result.success(flow)

            flow.prepared_tx = built.value
            flow.add_event(S.PREPARING, "Transaction prepared", {"nonce": built.value.nonce})

            if flow.request.metadata.requires_confirmation:
                await self.events.emit(FlowEventType.CONFIRMATION_NEEDED, flow.id)
                confirmation = await self.request_confirmation(flow.id)
                if not confirmation.ok:
                    return Result.failure(confirmation.error)
                return Result.success(flow)

            ready = self._check_signer(flow)
            if not ready.ok:
                await self._fail(flow, ready.error)
                return Result.failure(self._with_flow(ready.error, flow))

            await self._transition(flow, S.SIGNING, "No confirmation required")
            self._spawn_pipeline(flow)
            return Result.success(flow)

    def _spawn_pipeline(self, flow: TransactionFlow) -> None:
        task = asyncio.create_task(self._run_pipeline(flow.id))
        self._pipelines[flow.id] = task

        def _done(t: asyncio.Task, flow_id: str = flow.id) -> None:
            if self._pipelines.get(flow_id) is t:
                del self._pipelines[flow_id]

        task.add_done_callback(_done)

    async def _run_pipeline(self, flow_id: str) -> None:
        flow = self._flows[flow_id]
        with structlog.contextvars.bound_contextvars(flow_id=flow_id):
            try:
                await self._sign_and_send(flow)
            except asyncio.CancelledError:
                raise
            except Exception as e:  # noqa: BLE001
                logger.exception("flow_pipeline_error", error=str(e))
                await self._fail(flow, classify_exception(e, ErrorCode.NETWORK_ERROR))

    async def _sign_and_send(self, flow: TransactionFlow) -> None:
        if flow.status == S.SIGNING:
            if self.wallet is None:
                await self._fail(flow, TransactionError.create(ErrorCode.NO_WALLET, "No wallet connected"))
                return
            signed = await self.wallet.sign_transaction(flow.prepared_tx)
            if flow.status == S.CANCELLED:
                return
            if not signed.ok:
                await self._fail(flow, signed.error)
                return
            flow.signed_tx = signed.value
            await self._transition(flow, S.BROADCASTING, "Transaction signed", {"hash": signed.value.hash})

        if flow.status != S.BROADCASTING:
            return
        if flow.signed_tx is None:
            await self._fail(flow, TransactionError.create(ErrorCode.NO_SIGNED_TX, "No signed transaction"))
            return

        broadcast = await self.broadcaster.broadcast_transaction(flow.signed_tx)
        if flow.status == S.CANCELLED:
            if broadcast.ok:
                logger.warning("cancelled_after_broadcast", tx_hash=broadcast.value)
                flow.tx_hash = broadcast.value
                await self._persist(flow)
            else:
                await self.builder.release_nonce(flow.prepared_tx)
            return
        if not broadcast.ok:
            await self._fail(flow, broadcast.error)
            return

        flow.tx_hash = broadcast.value
        await self._transition(flow, S.CONFIRMING, f"Transaction broadcast: {flow.tx_hash}", {"txHash": flow.tx_hash})

        receipt = await self.broadcaster.wait_for_receipt(flow.tx_hash, self.config.required_confirmations)
        if flow.status == S.CANCELLED:
            return
        if not receipt.ok:
            await self._fail(flow, receipt.error)
            return

        flow.receipt = receipt.value
        if not receipt.value.succeeded:
            await self._fail(flow, TransactionError.create(
                ErrorCode.TRANSACTION_REVERTED,
                "Transaction reverted on-chain",
                tx_hash=flow.tx_hash,
                block_number=receipt.value.block_number,
            ))
            return

        await self._complete(flow)

    async def _complete(self, flow: TransactionFlow) -> None:
        receipt = flow.receipt
        await self._transition(flow, S.COMPLETED, "Transaction confirmed", {"blockNumber": receipt.block_number})
        await self.builder.confirm_nonce(flow.prepared_tx)

        stats = self._statistics
        stats.successful += 1
        stats.pending = max(0, stats.pending - 1)
        stats.total_gas_used += receipt.gas_used
        stats.total_gas_spent_wei += receipt.gas_cost_wei
        stats.total_confirmation_seconds += (flow.completed_at - flow.created_at).total_seconds()

        await self.events.emit(FlowEventType.FLOW_COMPLETED, flow.id, receipt=receipt.to_dict())
        await self._emit_statistics()
        self._schedule_eviction(flow.id)

    async def _fail(self, flow: TransactionFlow, error: TransactionError) -> None:
        if not FlowStateMachine.is_allowed(flow.status, S.FAILED):
            logger.info("flow_failure_ignored", status=flow.status.value, error=str(error))
            return

        flow.error = error
        await self._transition(flow, S.FAILED, error.message, {"code": error.code.value})
        self._clear_confirmation(flow.id)

        prepared = flow.prepared_tx
        if prepared is not None:
            if error.code in NONCE_RESYNC_CODES:
                try:
                    await self.builder.resync_nonce(prepared)
                except Exception as e:  # noqa: BLE001
                    logger.warning("nonce_resync_failed", flow_id=flow.id, error=str(e))
            elif flow.tx_hash is None:
                await self.builder.release_nonce(prepared)

        self._statistics.failed += 1
        self._statistics.pending = max(0, self._statistics.pending - 1)

        logger.error("flow_failed", flow_id=flow.id, code=error.code.value, message=error.message)
        await self.events.emit(FlowEventType.FLOW_FAILED, flow.id, error=error.to_dict())
        await self._emit_statistics()

        if self.config.auto_retry and self.retry_policy.should_retry(error, flow.retry_count):
            await self._schedule_retry(flow)
        else:
            self._schedule_eviction(flow.id)

    # =========================================================================
    # Helpers
    # =========================================================================

    async def _transition(
        self,
        flow: TransactionFlow,
        to_status: TransactionStatus,
        message: str,
        details: Optional[Dict[str, Any]] = None,
    ) -> None:
        previous = flow.status
        try:
            FlowStateMachine(flow).transition_to(to_status, message, details)
        except InvalidTransitionError as e:
            logger.error("invalid_transition", flow_id=flow.id, error=e.message)
            raise
        await self._persist(flow)
        await self.events.emit(
            FlowEventType.STATUS_CHANGED,
            flow.id,
            status=to_status.value,
            previous=previous.value,
        )

    def _lock_for(self, flow_id: str) -> asyncio.Lock:
        if flow_id not in self._persist_locks:
            self._persist_locks[flow_id] = asyncio.Lock()
        return self._persist_locks[flow_id]

    async def _persist(self, flow: TransactionFlow) -> None:
        async with self._lock_for(flow.id):
            try:
                await self.store.save(flow)
            except Exception as e:  # noqa: BLE001
                logger.error("flow_persist_failed", flow_id=flow.id, error=str(e))

    async def _get_flow(self, flow_id: str) -> Result[TransactionFlow]:
        flow = self._flows.get(flow_id)
        if flow is not None:
            return Result.success(flow)

        try:
            flow = await self.store.load(flow_id)
        except Exception as e:  # noqa: BLE001
            return Result.fail(ErrorCode.STORAGE_FAILED, f"Failed to load flow: {e}", flow_id=flow_id)
        if flow is None:
            return Result.fail(ErrorCode.FLOW_NOT_FOUND, f"Flow {flow_id} not found", flow_id=flow_id)

        self._flows[flow_id] = flow
        if flow.is_terminal:
            self._schedule_eviction(flow_id)
        return Result.success(flow)

    def _overlay(self, stored: List[TransactionFlow]) -> List[TransactionFlow]:
        return [self._flows.get(f.id, f) for f in stored]

    def _check_signer(self, flow: TransactionFlow) -> Result[None]:
        if self.wallet is None:
            return Result.fail(ErrorCode.NO_WALLET, "No wallet connected", flow_id=flow.id)
        if flow.prepared_tx is None:
            return Result.fail(ErrorCode.NO_PREPARED_TX, "No prepared transaction", flow_id=flow.id)
        return self.wallet.check_can_sign(flow.prepared_tx)

    def _check_presigned(self, flow: TransactionFlow, signed: SignedTransaction) -> Result[None]:
        prepared = flow.prepared_tx
        if prepared is None:
            return Result.fail(ErrorCode.NO_PREPARED_TX, "No prepared transaction", flow_id=flow.id)
        problems = []
        if signed.from_address.lower() != prepared.from_address.lower():
            problems.append("sender does not match the prepared transaction")
        if signed.chain_id != prepared.chain_id:
            problems.append("chain id does not match the prepared transaction")
        if signed.nonce != prepared.nonce:
            problems.append("nonce does not match the prepared transaction")
        if not signed.raw_transaction or not signed.raw_transaction.startswith("0x"):
            problems.append("raw transaction is missing")
        if problems:
            return Result.fail(
                ErrorCode.VALIDATION_FAILED,
                "Signed transaction rejected: " + "; ".join(problems),
                flow_id=flow.id,
            )
        return Result.success(None)

    def _build_confirmation(self, flow: TransactionFlow) -> ConfirmationRequest:
        tx = flow.prepared_tx
        timeout = self.config.confirmation_timeout_seconds
        confirmation = ConfirmationRequest(
            flow_id=flow.id,
            transaction=tx,
            metadata=flow.request.metadata,
            estimated_gas=tx.gas_limit,
            estimated_cost=estimate_cost(tx),
            timeout_seconds=timeout,
            expires_at=utcnow() + timedelta(seconds=timeout),
        )
        self._confirmations[flow.id] = confirmation
        return confirmation

    @staticmethod
    def _with_flow(error: TransactionError, flow: TransactionFlow) -> TransactionError:
        return TransactionError(
            code=error.code,
            message=error.message,
            details={**error.details, "flow_id": flow.id},
            recoverable=error.recoverable,
        )

    async def _emit_statistics(self) -> None:
        await self.events.emit(FlowEventType.STATISTICS_UPDATED, statistics=self._statistics.to_dict())

    # -------------------------------------------------------------------------
    # Timers
    # -------------------------------------------------------------------------

    @staticmethod
    def _cancel_task(task: Optional[asyncio.Task]) -> None:
        if task is not None and not task.done() and task is not asyncio.current_task():
            task.cancel()

    def _arm_confirmation_timer(self, flow_id: str) -> None:
        existing = self._confirmation_timers.get(flow_id)
        if existing is not None and not existing.done():
            return
        self._confirmation_timers[flow_id] = asyncio.create_task(
            self._confirmation_timeout(flow_id, self.config.confirmation_timeout_seconds)
        )

    def _clear_confirmation(self, flow_id: str) -> None:
        self._confirmations.pop(flow_id, None)
        self._cancel_task(self._confirmation_timers.pop(flow_id, None))

    async def _confirmation_timeout(self, flow_id: str, seconds: float) -> None:
        await asyncio.sleep(seconds)
        flow = self._flows.get(flow_id)
        if flow is not None and flow.status == S.AWAITING_CONFIRMATION:
            logger.warning("confirmation_timed_out", flow_id=flow_id, seconds=seconds)
            await self.cancel_flow(flow_id, "Confirmation timed out")

    async def _schedule_retry(self, flow: TransactionFlow) -> None:
        delay = self.retry_policy.get_delay(flow.attempt)
        self._cancel_task(self._retry_timers.pop(flow.id, None))
        self._retry_timers[flow.id] = asyncio.create_task(self._retry_later(flow.id, delay))
        logger.info("flow_retry_scheduled", flow_id=flow.id, attempt=flow.attempt + 1, delay=round(delay, 2))
        await self.events.emit(
            FlowEventType.RETRY_SCHEDULED,
            flow.id,
            attempt=flow.attempt + 1,
            delay=delay,
        )

    async def _retry_later(self, flow_id: str, delay: float) -> None:
        await asyncio.sleep(delay)
        self._retry_timers.pop(flow_id, None)
        result = await self.retry_transaction(flow_id)
        if not result.ok:
            logger.warning("flow_retry_failed", flow_id=flow_id, error=str(result.error))

    def _schedule_eviction(self, flow_id: str) -> None:
        self._cancel_task(self._eviction_timers.pop(flow_id, None))
        self._eviction_timers[flow_id] = asyncio.create_task(
            self._evict_later(flow_id, self.config.flow_eviction_seconds)
        )

    async def _evict_later(self, flow_id: str, seconds: float) -> None:
        await asyncio.sleep(seconds)
        self._eviction_timers.pop(flow_id, None)
        flow = self._flows.get(flow_id)
        if flow is not None and flow.is_terminal and flow_id not in self._retry_timers:
            del self._flows[flow_id]
            self._persist_locks.pop(flow_id, None)
            logger.debug("flow_evicted", flow_id=flow_id)
