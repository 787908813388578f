"""
Injected (EIP-1193) wallet backend.

Wraps a provider object exposing ``request(method, params)`` and ``on(event,
handler)``, the shape browser extensions inject. Signing is an interactive
rendezvous with the user; a rejection (code 4001) is reported as
SIGNING_REJECTED.
"""

import logging
from typing import Any, Callable, List, Optional, Protocol

from eth_utils import keccak, to_checksum_address, to_hex

from txflow.core.flow.errors import ErrorCode, classify_exception
from txflow.core.flow.models import PreparedTransaction, SignedTransaction
from txflow.core.flow.results import Result

from .base import WalletInterface


logger = logging.getLogger(__name__)

USER_REJECTED_CODE = 4001
UNAUTHORIZED_CODE = 4100


class ProviderRpcError(Exception):
    """Error raised by an EIP-1193 provider."""

    def __init__(self, message: str, code: int):
        super().__init__(message)
        self.code = code


class EIP1193Provider(Protocol):
    async def request(self, method: str, params: Optional[List[Any]] = None) -> Any: ...

    def on(self, event: str, handler: Callable[[Any], None]) -> None: ...

    def remove_listener(self, event: str, handler: Callable[[Any], None]) -> None: ...


def _parse_chain_id(value: Any) -> int:
    if isinstance(value, str):
        return int(value, 16) if value.startswith("0x") else int(value)
    return int(value)


class InjectedWallet(WalletInterface):
    name = "injected"

    def __init__(self, provider: EIP1193Provider):
        super().__init__()
        self.provider = provider
        self._subscribed = False

    # ------------------------------------------------------------------
    # Provider events
    # ------------------------------------------------------------------

    def _subscribe(self) -> None:
        if self._subscribed:
            return
        self.provider.on("accountsChanged", self._on_accounts_changed)
        self.provider.on("chainChanged", self._on_chain_changed)
        self.provider.on("disconnect", self._on_disconnect)
        self._subscribed = True

    def _unsubscribe(self) -> None:
        if not self._subscribed:
            return
        self.provider.remove_listener("accountsChanged", self._on_accounts_changed)
        self.provider.remove_listener("chainChanged", self._on_chain_changed)
        self.provider.remove_listener("disconnect", self._on_disconnect)
        self._subscribed = False

    def _on_accounts_changed(self, accounts: List[str]) -> None:
        if not accounts:
            logger.info("Injected wallet locked or all accounts removed")
            self._clear()
            return
        self._address = to_checksum_address(accounts[0])
        self._connected = True
        logger.info(f"Injected wallet account changed to {self._address}")

    def _on_chain_changed(self, chain_id: Any) -> None:
        self._chain_id = _parse_chain_id(chain_id)
        logger.info(f"Injected wallet switched to chain {self._chain_id}")

    def _on_disconnect(self, _error: Any = None) -> None:
        logger.info("Injected wallet disconnected by provider")
        self._clear()

    # ------------------------------------------------------------------
    # WalletInterface
    # ------------------------------------------------------------------

    async def connect(self) -> Result[str]:
        try:
            accounts = await self.provider.request("eth_requestAccounts", [])
            chain_id = await self.provider.request("eth_chainId", [])
        except ProviderRpcError as e:
            code = ErrorCode.SIGNING_REJECTED if e.code == USER_REJECTED_CODE else ErrorCode.NOT_CONNECTED
            return Result.fail(code, f"Wallet connection failed: {e}", provider_code=e.code)
        except Exception as e:  # noqa: BLE001
            return Result.failure(classify_exception(e, ErrorCode.NOT_CONNECTED))

        if not accounts:
            return Result.fail(ErrorCode.NOT_CONNECTED, "Wallet returned no accounts")

        self._address = to_checksum_address(accounts[0])
        self._chain_id = _parse_chain_id(chain_id)
        self._connected = True
        self._subscribe()
        logger.info(f"Injected wallet connected: {self._address} on chain {self._chain_id}")
        return Result.success(self._address)

    async def disconnect(self) -> None:
        self._unsubscribe()
        self._clear()

    async def _sign(self, tx: PreparedTransaction) -> Result[SignedTransaction]:
        try:
            raw = await self.provider.request("eth_signTransaction", [tx.to_rpc_dict()])
        except ProviderRpcError as e:
            if e.code == USER_REJECTED_CODE:
                return Result.fail(ErrorCode.SIGNING_REJECTED, "User rejected the signature request")
            if e.code == UNAUTHORIZED_CODE:
                return Result.fail(ErrorCode.NOT_CONNECTED, f"Wallet not authorized: {e}")
            return Result.fail(ErrorCode.SIGNING_FAILED, f"Signing failed: {e}", provider_code=e.code)
        except Exception as e:  # noqa: BLE001
            return Result.fail(ErrorCode.SIGNING_FAILED, f"Signing failed: {e}")

        # Account or chain may have changed while the prompt was open.
        recheck = self.check_can_sign(tx)
        if not recheck.ok:
            return Result.failure(recheck.error)

        if isinstance(raw, dict):
            raw = raw.get("raw") or raw.get("rawTransaction")
        if not isinstance(raw, str) or not raw.startswith("0x"):
            return Result.fail(ErrorCode.SIGNING_FAILED, "Wallet returned no raw transaction")

        return Result.success(SignedTransaction(
            raw_transaction=raw,
            hash=to_hex(keccak(hexstr=raw)),
            from_address=self._address,
            nonce=tx.nonce,
            chain_id=tx.chain_id,
        ))

    async def send_transaction(self, signed: SignedTransaction) -> Result[str]:
        if not self.is_connected():
            return Result.fail(ErrorCode.NOT_CONNECTED, "Injected wallet is not connected")
        try:
            tx_hash = await self.provider.request("eth_sendRawTransaction", [signed.raw_transaction])
        except ProviderRpcError as e:
            if e.code == USER_REJECTED_CODE:
                return Result.fail(ErrorCode.SIGNING_REJECTED, "User rejected the transaction")
            return Result.fail(ErrorCode.BROADCAST_FAILED, f"Broadcast failed: {e}", provider_code=e.code)
        except Exception as e:  # noqa: BLE001
            return Result.failure(classify_exception(e, ErrorCode.BROADCAST_FAILED))
        return Result.success(tx_hash)
