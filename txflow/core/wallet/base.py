"""
Wallet abstraction.

The orchestrator never holds keys; signing is delegated to a WalletInterface
backend. The base class owns the checks every backend must apply before it
signs anything.
"""

import logging
from abc import ABC, abstractmethod
from typing import Optional

from txflow.core.flow.errors import ErrorCode
from txflow.core.flow.models import PreparedTransaction, SignedTransaction
from txflow.core.flow.results import Result


logger = logging.getLogger(__name__)


class WalletInterface(ABC):
    """Capability interface for signing backends."""

    name: str = "wallet"

    def __init__(self):
        self._address: Optional[str] = None
        self._chain_id: Optional[int] = None
        self._connected = False

    @abstractmethod
    async def connect(self) -> Result[str]:
        """Connect and return the active address."""

    async def disconnect(self) -> None:
        self._clear()

    def _clear(self) -> None:
        self._connected = False
        self._address = None
        self._chain_id = None

    def is_connected(self) -> bool:
        return self._connected and self._address is not None

    def get_address(self) -> Optional[str]:
        return self._address

    def get_chain_id(self) -> Optional[int]:
        return self._chain_id

    def check_can_sign(self, tx: PreparedTransaction) -> Result[None]:
        if not self.is_connected():
            return Result.fail(ErrorCode.NOT_CONNECTED, f"{self.name} wallet is not connected")
        if tx.from_address.lower() != self._address.lower():
            return Result.fail(
                ErrorCode.ADDRESS_MISMATCH,
                "Transaction sender does not match the connected wallet",
                expected=self._address,
                actual=tx.from_address,
            )
        if self._chain_id is not None and tx.chain_id != self._chain_id:
            return Result.fail(
                ErrorCode.CHAIN_MISMATCH,
                f"Wallet is on chain {self._chain_id}, transaction targets {tx.chain_id}",
                wallet_chain_id=self._chain_id,
                tx_chain_id=tx.chain_id,
            )
        return Result.success(None)

    async def sign_transaction(self, tx: PreparedTransaction) -> Result[SignedTransaction]:
        """Sign ``tx`` after the connection, sender and chain checks pass."""
        allowed = self.check_can_sign(tx)
        if not allowed.ok:
            logger.warning(f"{self.name} refused to sign: {allowed.error}")
            return Result.failure(allowed.error)
        return await self._sign(tx)

    @abstractmethod
    async def _sign(self, tx: PreparedTransaction) -> Result[SignedTransaction]:
        ...

    @abstractmethod
    async def send_transaction(self, signed: SignedTransaction) -> Result[str]:
        """Submit through the wallet's own transport."""
