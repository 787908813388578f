"""
Shared fixtures for the transaction flow tests.

FakeNetworkClient stands in for a node: nonces, gas, fees, broadcasting and
receipts are scripted per test.
"""

import asyncio
from typing import Any, Dict, List, Optional

import pytest
import pytest_asyncio
from eth_account import Account
from eth_utils import keccak, to_checksum_address, to_hex

from txflow.core.execution import (
    FeeData,
    GasEstimationStrategy,
    TransactionBroadcaster,
    TransactionBuilder,
)
from txflow.core.flow import (
    TransactionMetadata,
    TransactionRequest,
    TransactionType,
)
from txflow.core.wallet import LocalAccountWallet


CHAIN_ID = 1
GWEI = 10 ** 9

# Well-known test key (hardhat account #0)
TEST_PRIVATE_KEY = "0xac0974bec39a17e36ba4a6b4d238ff944bacb478cbed5efcae784d7bf4f2ff80"
TEST_ADDRESS = Account.from_key(TEST_PRIVATE_KEY).address

POOL_ADDRESS = to_checksum_address("0x87870bca3f3fd6335c3f4ce8392d69350b4fa4e2")
ASSET_ADDRESS = to_checksum_address("0xa0b86991c6218b36c1d19d4a2e9eb0ce3606eb48")
OTHER_ADDRESS = to_checksum_address("0x1111111111111111111111111111111111111111")


class FakeNetworkClient:
    """In-memory NetworkClient with failure injection."""

    def __init__(self, chain_id: int = CHAIN_ID):
        self.chain_id = chain_id
        self.nonces: Dict[str, int] = {}
        self.gas_estimate = 100_000
        self.estimate_error: Optional[Exception] = None
        self.fee_data = FeeData(
            gas_price=20 * GWEI,
            base_fee_per_gas=10 * GWEI,
            max_fee_per_gas=21 * GWEI,
            max_priority_fee_per_gas=1 * GWEI,
        )
        self.fee_error: Optional[Exception] = None
        self.nonce_error: Optional[Exception] = None
        self.send_errors: List[Exception] = []
        # Sends wait on this event when set.
        self.send_gate: Optional[asyncio.Event] = None
        self.receipt_errors: List[Exception] = []
        self.block_number = 100
        self.receipt_status = 1
        self.auto_mine = True
        self.gas_used = 21_000

        self.sent: List[str] = []
        self.receipts: Dict[str, Dict[str, Any]] = {}
        self.count_calls = 0
        self.receipt_polls = 0

    async def estimate_gas(self, tx: Dict[str, Any]) -> int:
        if self.estimate_error:
            raise self.estimate_error
        return self.gas_estimate

    async def get_fee_data(self) -> FeeData:
        if self.fee_error:
            raise self.fee_error
        return self.fee_data

    async def get_transaction_count(self, address: str, block: str = "pending") -> int:
        self.count_calls += 1
        if self.nonce_error:
            raise self.nonce_error
        return self.nonces.get(address.lower(), 0)

    async def send_raw_transaction(self, raw_transaction: str) -> str:
        if self.send_gate is not None:
            await self.send_gate.wait()
        if self.send_errors:
            raise self.send_errors.pop(0)
        tx_hash = to_hex(keccak(hexstr=raw_transaction))
        self.sent.append(raw_transaction)
        if self.auto_mine:
            self.mine(tx_hash)
        return tx_hash

    def mine(self, tx_hash: str, status: Optional[int] = None) -> None:
        self.receipts[tx_hash] = {
            "transactionHash": tx_hash,
            "transactionIndex": "0x0",
            "blockHash": "0x" + "ab" * 32,
            "blockNumber": hex(self.block_number),
            "from": TEST_ADDRESS,
            "to": POOL_ADDRESS,
            "gasUsed": hex(self.gas_used),
            "effectiveGasPrice": hex(11 * GWEI),
            "status": hex(self.receipt_status if status is None else status),
            "logs": [],
        }

    async def get_transaction_receipt(self, tx_hash: str) -> Optional[Dict[str, Any]]:
        self.receipt_polls += 1
        if self.receipt_errors:
            raise self.receipt_errors.pop(0)
        return self.receipts.get(tx_hash)

    async def get_block_number(self) -> int:
        return self.block_number

    async def get_chain_id(self) -> int:
        return self.chain_id


def make_request(
    tx_type: TransactionType = TransactionType.LENDING_SUPPLY,
    requires_confirmation: bool = True,
    user_id: Optional[str] = "user-1",
    from_address: str = TEST_ADDRESS,
    chain_id: int = CHAIN_ID,
    params: Optional[Dict[str, Any]] = None,
    protocol: str = "aave",
    action: str = "supply",
    **kwargs: Any,
) -> TransactionRequest:
    """A valid lending supply request unless told otherwise."""
    return TransactionRequest.create(
        type=tx_type,
        protocol=protocol,
        action=action,
        from_address=from_address,
        chain_id=chain_id,
        params=params if params is not None else {"asset": ASSET_ADDRESS, "amount": "1000000"},
        metadata=TransactionMetadata(
            description="Supply USDC",
            requires_confirmation=requires_confirmation,
            user_id=user_id,
        ),
        **kwargs,
    )


# =============================================================================
# Fixtures
# =============================================================================

@pytest.fixture
def network() -> FakeNetworkClient:
    return FakeNetworkClient()


@pytest.fixture
def builder(network: FakeNetworkClient) -> TransactionBuilder:
    b = TransactionBuilder(network, gas_strategy=GasEstimationStrategy(network, buffer_percent=20))
    b.register_protocol("aave", [], POOL_ADDRESS)
    return b


@pytest.fixture
def broadcaster(network: FakeNetworkClient) -> TransactionBroadcaster:
    return TransactionBroadcaster(network, receipt_timeout_seconds=1.0, poll_interval_seconds=0.01)


@pytest_asyncio.fixture
async def wallet(network: FakeNetworkClient) -> LocalAccountWallet:
    w = LocalAccountWallet(TEST_PRIVATE_KEY, CHAIN_ID, network)
    await w.connect()
    return w


@pytest.fixture
def supply_request() -> TransactionRequest:
    return make_request()
