"""
Deterministic local signer backed by eth_account.

Intended for integration tests and headless agents: no human rendezvous,
the key never leaves this process.
"""

import logging
from typing import Optional

from eth_account import Account
from eth_utils import to_hex

from txflow.core.execution.network import NetworkClient
from txflow.core.flow.errors import ErrorCode, classify_exception
from txflow.core.flow.models import PreparedTransaction, SignedTransaction
from txflow.core.flow.results import Result

from .base import WalletInterface


logger = logging.getLogger(__name__)


class LocalAccountWallet(WalletInterface):
    name = "local"

    def __init__(
        self,
        private_key: str,
        chain_id: int,
        network: Optional[NetworkClient] = None,
    ):
        super().__init__()
        self._account = Account.from_key(private_key)
        self._configured_chain_id = chain_id
        self.network = network

    @classmethod
    def create_random(cls, chain_id: int, network: Optional[NetworkClient] = None) -> "LocalAccountWallet":
        account = Account.create()
        return cls(to_hex(account.key), chain_id, network)

    @property
    def account_address(self) -> str:
        return self._account.address

    async def connect(self) -> Result[str]:
        self._address = self._account.address
        self._chain_id = self._configured_chain_id
        self._connected = True
        logger.info(f"Local wallet connected: {self._address} on chain {self._chain_id}")
        return Result.success(self._address)

    async def _sign(self, tx: PreparedTransaction) -> Result[SignedTransaction]:
        try:
            signed = self._account.sign_transaction(tx.to_signable())
        except Exception as e:  # noqa: BLE001
            logger.error(f"Local signing failed: {e}")
            return Result.fail(ErrorCode.SIGNING_FAILED, f"Signing failed: {e}")

        return Result.success(SignedTransaction(
            raw_transaction=to_hex(signed.raw_transaction),
            hash=to_hex(signed.hash),
            from_address=self._account.address,
            nonce=tx.nonce,
            chain_id=tx.chain_id,
        ))

    async def send_transaction(self, signed: SignedTransaction) -> Result[str]:
        if self.network is None:
            return Result.fail(ErrorCode.NETWORK_ERROR, "Local wallet has no network client")
        try:
            return Result.success(await self.network.send_raw_transaction(signed.raw_transaction))
        except Exception as e:  # noqa: BLE001
            return Result.failure(classify_exception(e, ErrorCode.BROADCAST_FAILED))
