"""
Network client boundary.

Everything that talks to a node goes through a NetworkClient. The flow
layer never opens connections itself; a client is injected. The JSON-RPC
implementation speaks plain HTTP via httpx.
"""

import logging
from dataclasses import dataclass
from typing import Any, Dict, List, Optional, Protocol, runtime_checkable

import httpx


logger = logging.getLogger(__name__)

DEFAULT_PRIORITY_FEE_WEI = 1_000_000_000


class RpcError(Exception):
    """The node answered with a JSON-RPC error object."""

    def __init__(self, message: str, code: Optional[int] = None, data: Any = None):
        super().__init__(message)
        self.code = code
        self.data = data


@dataclass(frozen=True)
class FeeData:
    """Current fee market. ``base_fee_per_gas`` is None on legacy chains."""
    gas_price: Optional[int] = None
    base_fee_per_gas: Optional[int] = None
    max_fee_per_gas: Optional[int] = None
    max_priority_fee_per_gas: Optional[int] = None

    @property
    def supports_eip1559(self) -> bool:
        return self.base_fee_per_gas is not None and self.max_fee_per_gas is not None


@runtime_checkable
class NetworkClient(Protocol):
    async def estimate_gas(self, tx: Dict[str, Any]) -> int: ...

    async def get_fee_data(self) -> FeeData: ...

    async def get_transaction_count(self, address: str, block: str = "pending") -> int: ...

    async def send_raw_transaction(self, raw_transaction: str) -> str: ...

    async def get_transaction_receipt(self, tx_hash: str) -> Optional[Dict[str, Any]]: ...

    async def get_block_number(self) -> int: ...

    async def get_chain_id(self) -> int: ...


class JsonRpcNetworkClient:
    """NetworkClient over an HTTP JSON-RPC endpoint."""

    def __init__(
        self,
        rpc_url: str,
        timeout: float = 30.0,
        client: Optional[httpx.AsyncClient] = None,
    ):
        self.rpc_url = rpc_url
        self._client = client or httpx.AsyncClient(timeout=timeout)
        self._request_id = 0

    async def _rpc_call(self, method: str, params: List[Any]) -> Any:
        """Make an RPC call to the node."""
        self._request_id += 1
        payload = {
            "jsonrpc": "2.0",
            "method": method,
            "params": params,
            "id": self._request_id,
        }

        response = await self._client.post(self.rpc_url, json=payload)
        response.raise_for_status()
        result = response.json()

        if "error" in result:
            error = result["error"] or {}
            raise RpcError(
                error.get("message", f"RPC error calling {method}"),
                code=error.get("code"),
                data=error.get("data"),
            )

        return result.get("result")

    async def estimate_gas(self, tx: Dict[str, Any]) -> int:
        call_obj = {k: v for k, v in tx.items() if k in ("from", "to", "data", "value") and v is not None}
        if isinstance(call_obj.get("value"), int):
            call_obj["value"] = hex(call_obj["value"])
        return int(await self._rpc_call("eth_estimateGas", [call_obj]), 16)

    async def get_fee_data(self) -> FeeData:
        try:
            fee_history = await self._rpc_call("eth_feeHistory", [1, "latest", [50]])
        except RpcError as e:
            logger.debug(f"eth_feeHistory unavailable, using legacy gas price: {e}")
            fee_history = None

        base_fees = (fee_history or {}).get("baseFeePerGas") or []
        if base_fees and int(base_fees[-1], 16) > 0:
            base_fee = int(base_fees[-1], 16)
            reward = fee_history.get("reward") or []
            priority_fee = int(reward[0][0], 16) if reward and reward[0] else DEFAULT_PRIORITY_FEE_WEI
            return FeeData(
                base_fee_per_gas=base_fee,
                max_priority_fee_per_gas=priority_fee,
                max_fee_per_gas=base_fee * 2 + priority_fee,
            )

        gas_price = int(await self._rpc_call("eth_gasPrice", []), 16)
        return FeeData(gas_price=gas_price)

    async def get_transaction_count(self, address: str, block: str = "pending") -> int:
        return int(await self._rpc_call("eth_getTransactionCount", [address, block]), 16)

    async def send_raw_transaction(self, raw_transaction: str) -> str:
        return await self._rpc_call("eth_sendRawTransaction", [raw_transaction])

    async def get_transaction_receipt(self, tx_hash: str) -> Optional[Dict[str, Any]]:
        return await self._rpc_call("eth_getTransactionReceipt", [tx_hash])

    async def get_block_number(self) -> int:
        return int(await self._rpc_call("eth_blockNumber", []), 16)

    async def get_chain_id(self) -> int:
        return int(await self._rpc_call("eth_chainId", []), 16)

    async def close(self) -> None:
        """Close HTTP client."""
        await self._client.aclose()
