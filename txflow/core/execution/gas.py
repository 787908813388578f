"""
Gas estimation.

Live estimates get a safety buffer; when the node cannot estimate (the call
would revert against current state, the node is flaky) a static per-type
limit is used instead.
"""

import logging
from dataclasses import dataclass
from typing import Any, Dict, Mapping, Optional

from txflow.core.flow.errors import ErrorCode
from txflow.core.flow.models import TransactionType
from txflow.core.flow.results import Result

from .network import FeeData, NetworkClient


logger = logging.getLogger(__name__)


DEFAULT_GAS_LIMITS: Dict[TransactionType, int] = {
    TransactionType.LENDING_SUPPLY: 250_000,
    TransactionType.LENDING_WITHDRAW: 220_000,
    TransactionType.LENDING_BORROW: 280_000,
    TransactionType.LENDING_REPAY: 200_000,
    TransactionType.LIQUIDITY_ADD: 350_000,
    TransactionType.LIQUIDITY_REMOVE: 300_000,
    TransactionType.SWAP: 200_000,
    TransactionType.STAKE: 150_000,
    TransactionType.UNSTAKE: 150_000,
    TransactionType.CLAIM_REWARDS: 100_000,
    TransactionType.APPROVE: 50_000,
    TransactionType.TRANSFER: 21_000,
    TransactionType.BATCH: 500_000,
}


@dataclass(frozen=True)
class GasEstimate:
    """Gas limit plus fee fields for a transaction."""
    gas_limit: int
    gas_price: Optional[int] = None
    max_fee_per_gas: Optional[int] = None
    max_priority_fee_per_gas: Optional[int] = None

    @property
    def fee_per_gas(self) -> int:
        return self.gas_price if self.gas_price is not None else (self.max_fee_per_gas or 0)

    @property
    def max_cost_wei(self) -> int:
        return self.gas_limit * self.fee_per_gas


def apply_buffer(raw: int, buffer_percent: int) -> int:
    """Integer ceiling of raw * (100 + buffer_percent) / 100."""
    return -(-raw * (100 + buffer_percent) // 100)


class GasEstimationStrategy:
    """Estimates gas limits and fee fields for prepared transactions."""

    def __init__(
        self,
        network: NetworkClient,
        buffer_percent: int = 20,
        default_limits: Optional[Mapping[TransactionType, int]] = None,
    ):
        self.network = network
        self.buffer_percent = buffer_percent
        self.default_limits: Dict[TransactionType, int] = dict(
            DEFAULT_GAS_LIMITS if default_limits is None else default_limits
        )

    def default_limit(self, tx_type: TransactionType) -> Optional[int]:
        return self.default_limits.get(TransactionType(tx_type))

    async def estimate_gas_limit(self, tx: Dict[str, Any], tx_type: TransactionType) -> Result[int]:
        try:
            raw = await self.network.estimate_gas(tx)
            return Result.success(apply_buffer(raw, self.buffer_percent))
        except Exception as e:  # noqa: BLE001
            fallback = self.default_limit(tx_type)
            if fallback is None:
                logger.error(f"Gas estimation failed for {tx_type.value} with no default limit: {e}")
                return Result.fail(
                    ErrorCode.GAS_ESTIMATION_FAILED,
                    f"Failed to estimate gas: {e}",
                    tx_type=tx_type.value,
                )
            logger.warning(f"Gas estimation failed for {tx_type.value}, using default {fallback}: {e}")
            return Result.success(fallback)

    async def get_fee_data(self) -> Result[FeeData]:
        try:
            return Result.success(await self.network.get_fee_data())
        except Exception as e:  # noqa: BLE001
            logger.error(f"Fee data fetch failed: {e}")
            return Result.fail(ErrorCode.GAS_ESTIMATION_FAILED, f"Failed to fetch fee data: {e}")

    async def estimate(self, tx: Dict[str, Any], tx_type: TransactionType) -> Result[GasEstimate]:
        """
        Estimate limit and fees.

        Args:
            tx: Call object with from, to, data and value
            tx_type: Used for the static fallback limit

        Returns:
            EIP-1559 fee fields when the chain reports a base fee, else a
            legacy gas price.
        """
        tx_type = TransactionType(tx_type)
        limit = await self.estimate_gas_limit(tx, tx_type)
        if not limit.ok:
            return Result.failure(limit.error)

        fees = await self.get_fee_data()
        if not fees.ok:
            return Result.failure(fees.error)

        fee_data = fees.value
        if fee_data.supports_eip1559:
            return Result.success(GasEstimate(
                gas_limit=limit.value,
                max_fee_per_gas=fee_data.max_fee_per_gas,
                max_priority_fee_per_gas=fee_data.max_priority_fee_per_gas,
            ))

        if fee_data.gas_price is None:
            return Result.fail(ErrorCode.GAS_ESTIMATION_FAILED, "Network returned no gas price")

        return Result.success(GasEstimate(
            gas_limit=limit.value,
            gas_price=fee_data.gas_price,
        ))
