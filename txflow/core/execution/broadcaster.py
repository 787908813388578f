"""
Transaction broadcaster.

Submits signed transactions and follows them until they have the required
number of confirmations.
"""

import asyncio
import logging
import time
from typing import Optional

from txflow.core.flow.errors import ErrorCode, classify_exception
from txflow.core.flow.models import SignedTransaction, TransactionReceipt
from txflow.core.flow.results import Result

from .network import NetworkClient


logger = logging.getLogger(__name__)


class TransactionBroadcaster:
    """
    Network submission and receipt tracking.

    Every exception raised by the network client is caught here and turned
    into a typed error.
    """

    def __init__(
        self,
        network: NetworkClient,
        receipt_timeout_seconds: float = 300.0,
        poll_interval_seconds: float = 2.0,
        max_consecutive_errors: int = 5,
    ):
        self.network = network
        self.receipt_timeout_seconds = receipt_timeout_seconds
        self.poll_interval_seconds = poll_interval_seconds
        self.max_consecutive_errors = max_consecutive_errors

    async def broadcast_transaction(self, signed: SignedTransaction) -> Result[str]:
        try:
            tx_hash = await self.network.send_raw_transaction(signed.raw_transaction)
        except Exception as e:  # noqa: BLE001
            error = classify_exception(e, ErrorCode.BROADCAST_FAILED, nonce=signed.nonce)
            if error.code not in (ErrorCode.NONCE_TOO_LOW, ErrorCode.TRANSACTION_REVERTED):
                # Any other node/transport failure is reported as a broadcast failure.
                error.code = ErrorCode.BROADCAST_FAILED
                error.recoverable = True
            logger.error(f"Broadcast failed for nonce {signed.nonce} from {signed.from_address}: {e}")
            return Result.failure(error)

        tx_hash = tx_hash or signed.hash
        logger.info(f"Broadcast transaction {tx_hash}")
        return Result.success(tx_hash)

    async def wait_for_receipt(
        self,
        tx_hash: str,
        confirmations: int = 1,
        timeout_seconds: Optional[float] = None,
    ) -> Result[TransactionReceipt]:
        """
        Poll until the receipt has ``confirmations`` blocks on top of it.

        Returns a receipt with status ``failed`` for reverted transactions;
        deciding what a revert means is up to the caller.
        """
        timeout = timeout_seconds if timeout_seconds is not None else self.receipt_timeout_seconds
        deadline = time.monotonic() + timeout
        consecutive_errors = 0

        while True:
            try:
                raw = await self.network.get_transaction_receipt(tx_hash)
                consecutive_errors = 0
                if raw:
                    receipt = TransactionReceipt.from_rpc(raw)
                    if not receipt.succeeded:
                        return Result.success(receipt)

                    current_block = await self.network.get_block_number()
                    confirmed = current_block - receipt.block_number + 1
                    if confirmed >= confirmations:
                        logger.info(
                            f"Transaction confirmed: {tx_hash} "
                            f"(block {receipt.block_number}, {confirmed} confirmations)"
                        )
                        return Result.success(receipt)
            except Exception as e:  # noqa: BLE001
                consecutive_errors += 1
                logger.warning(f"Error checking transaction status: {e}")
                if consecutive_errors >= self.max_consecutive_errors:
                    return Result.fail(
                        ErrorCode.RECEIPT_FAILED,
                        f"Failed to fetch receipt for {tx_hash}: {e}",
                        tx_hash=tx_hash,
                    )

            if time.monotonic() >= deadline:
                return Result.fail(
                    ErrorCode.TIMEOUT,
                    f"Confirmation timeout after {timeout}s",
                    tx_hash=tx_hash,
                )

            await asyncio.sleep(self.poll_interval_seconds)

    async def get_transaction_status(self, tx_hash: str) -> Result[Optional[TransactionReceipt]]:
        """Current receipt, or None while the transaction is pending."""
        try:
            raw = await self.network.get_transaction_receipt(tx_hash)
        except Exception as e:  # noqa: BLE001
            return Result.failure(classify_exception(e, ErrorCode.NETWORK_ERROR, tx_hash=tx_hash))
        return Result.success(TransactionReceipt.from_rpc(raw) if raw else None)
