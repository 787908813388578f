"""
Tests for GasEstimationStrategy and NonceManager.
"""

import asyncio

import pytest

from txflow.core.execution import DEFAULT_GAS_LIMITS, FeeData, GasEstimationStrategy, NonceManager
from txflow.core.execution.gas import apply_buffer
from txflow.core.flow import ErrorCode, TransactionType

from conftest import GWEI, TEST_ADDRESS, FakeNetworkClient


CALL = {"from": TEST_ADDRESS, "to": TEST_ADDRESS, "data": "0x", "value": 0}


# =============================================================================
# Gas Tests
# =============================================================================

class TestGasEstimation:

    def test_buffer_rounds_up(self):
        assert apply_buffer(100_000, 20) == 120_000
        assert apply_buffer(21_001, 20) == 25_202
        assert apply_buffer(50_000, 0) == 50_000

    @pytest.mark.asyncio
    async def test_eip1559_estimate(self, network: FakeNetworkClient):
        strategy = GasEstimationStrategy(network, buffer_percent=20)
        estimate = (await strategy.estimate(CALL, TransactionType.LENDING_SUPPLY)).unwrap()

        assert estimate.gas_limit == 120_000
        assert estimate.max_fee_per_gas == 21 * GWEI
        assert estimate.max_priority_fee_per_gas == 1 * GWEI
        assert estimate.gas_price is None

    @pytest.mark.asyncio
    async def test_legacy_estimate(self, network: FakeNetworkClient):
        network.fee_data = FeeData(gas_price=30 * GWEI)
        strategy = GasEstimationStrategy(network)
        estimate = (await strategy.estimate(CALL, TransactionType.TRANSFER)).unwrap()

        assert estimate.gas_price == 30 * GWEI
        assert estimate.max_fee_per_gas is None

    @pytest.mark.asyncio
    async def test_falls_back_to_default_limit(self, network: FakeNetworkClient):
        network.estimate_error = Exception("execution reverted")
        strategy = GasEstimationStrategy(network)
        estimate = (await strategy.estimate(CALL, TransactionType.SWAP)).unwrap()

        assert estimate.gas_limit == DEFAULT_GAS_LIMITS[TransactionType.SWAP]

    @pytest.mark.asyncio
    async def test_no_default_limit_fails(self, network: FakeNetworkClient):
        network.estimate_error = Exception("boom")
        strategy = GasEstimationStrategy(network, default_limits={})
        result = await strategy.estimate(CALL, TransactionType.SWAP)

        assert result.ok is False
        assert result.error.code == ErrorCode.GAS_ESTIMATION_FAILED

    @pytest.mark.asyncio
    async def test_fee_data_failure(self, network: FakeNetworkClient):
        network.fee_error = Exception("rpc down")
        result = await GasEstimationStrategy(network).estimate(CALL, TransactionType.SWAP)
        assert result.error.code == ErrorCode.GAS_ESTIMATION_FAILED


# =============================================================================
# Nonce Tests
# =============================================================================

class TestNonceManager:

    @pytest.mark.asyncio
    async def test_sequential_nonces(self, network: FakeNetworkClient):
        network.nonces[TEST_ADDRESS.lower()] = 5
        manager = NonceManager(network)

        assert await manager.get_next_nonce(TEST_ADDRESS, 1) == 5
        assert await manager.get_next_nonce(TEST_ADDRESS, 1) == 6
        assert manager.get_state(TEST_ADDRESS, 1).reserved_nonces == {5, 6}

    @pytest.mark.asyncio
    async def test_concurrent_allocation_is_unique(self, network: FakeNetworkClient):
        manager = NonceManager(network)
        nonces = await asyncio.gather(*[manager.get_next_nonce(TEST_ADDRESS, 1) for _ in range(20)])
        assert sorted(nonces) == list(range(20))

    @pytest.mark.asyncio
    async def test_chains_are_independent(self, network: FakeNetworkClient):
        manager = NonceManager(network)
        assert await manager.get_next_nonce(TEST_ADDRESS, 1) == 0
        assert await manager.get_next_nonce(TEST_ADDRESS, 10) == 0

    @pytest.mark.asyncio
    async def test_release_rolls_back_tail(self, network: FakeNetworkClient):
        manager = NonceManager(network)
        first = await manager.get_next_nonce(TEST_ADDRESS, 1)
        second = await manager.get_next_nonce(TEST_ADDRESS, 1)

        await manager.release_nonce(TEST_ADDRESS, 1, second)
        assert await manager.get_next_nonce(TEST_ADDRESS, 1) == second

        await manager.release_nonce(TEST_ADDRESS, 1, first)
        # ``first`` is a gap below a live reservation; it is not reused past it.
        assert manager.get_state(TEST_ADDRESS, 1).reserved_nonces == {second}

    @pytest.mark.asyncio
    async def test_chain_ahead_of_cache_wins(self, network: FakeNetworkClient):
        manager = NonceManager(network)
        await manager.get_next_nonce(TEST_ADDRESS, 1)

        network.nonces[TEST_ADDRESS.lower()] = 10
        assert await manager.get_next_nonce(TEST_ADDRESS, 1) == 10
        assert manager.get_state(TEST_ADDRESS, 1).reserved_nonces == {10}

    @pytest.mark.asyncio
    async def test_confirm_advances_confirmed_nonce(self, network: FakeNetworkClient):
        manager = NonceManager(network)
        nonce = await manager.get_next_nonce(TEST_ADDRESS, 1)
        await manager.confirm_nonce(TEST_ADDRESS, 1, nonce)

        state = manager.get_state(TEST_ADDRESS, 1)
        assert state.confirmed_nonce == nonce + 1
        assert nonce not in state.reserved_nonces

    @pytest.mark.asyncio
    async def test_reset_drops_cached_state(self, network: FakeNetworkClient):
        manager = NonceManager(network)
        await manager.get_next_nonce(TEST_ADDRESS, 1)
        await manager.get_next_nonce(TEST_ADDRESS, 10)

        await manager.reset(TEST_ADDRESS, 1)
        assert manager.get_state(TEST_ADDRESS, 1) is None
        assert manager.get_state(TEST_ADDRESS, 10) is not None

        await manager.reset(TEST_ADDRESS.lower())
        assert manager.get_state(TEST_ADDRESS, 10) is None

    @pytest.mark.asyncio
    async def test_sync_with_chain(self, network: FakeNetworkClient):
        network.nonces[TEST_ADDRESS.lower()] = 3
        manager = NonceManager(network)
        assert await manager.sync_with_chain(TEST_ADDRESS, 1) == 3
        assert manager.get_state(TEST_ADDRESS, 1).pending_nonce == 3
