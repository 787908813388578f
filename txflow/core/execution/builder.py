"""
Transaction builder.

Turns a TransactionRequest into a PreparedTransaction: structural checks,
calldata encoding, target resolution, nonce reservation and gas.
"""

import logging
from typing import Any, List, Optional

from eth_utils import is_address

from txflow.core.flow.errors import ErrorCode, TransactionFailure, classify_exception
from txflow.core.flow.models import PreparedTransaction, TransactionRequest, TransactionType
from txflow.core.flow.results import Result

from .encoders import (
    EncodedCall,
    Encoder,
    EncodingContext,
    ProtocolRegistry,
    RegisteredProtocol,
    default_encoder_registry,
)
from .gas import GasEstimationStrategy
from .network import NetworkClient
from .nonce_manager import NonceManager


logger = logging.getLogger(__name__)


class TransactionBuilder:
    """
    Builds prepared transactions for registered protocols.

    Handles:
    - Lending (supply, withdraw, borrow, repay)
    - Liquidity add/remove and swaps
    - Staking and reward claims
    - ERC20 approvals and transfers, native transfers
    - Multicall batches
    """

    def __init__(
        self,
        network: NetworkClient,
        gas_strategy: Optional[GasEstimationStrategy] = None,
        nonce_manager: Optional[NonceManager] = None,
        protocols: Optional[ProtocolRegistry] = None,
    ):
        self.network = network
        self.gas_strategy = gas_strategy or GasEstimationStrategy(network)
        self.nonce_manager = nonce_manager or NonceManager(network)
        self.protocols = protocols or ProtocolRegistry()
        self.encoders = default_encoder_registry()
        self._encoding = EncodingContext(protocols=self.protocols, encoders=self.encoders)

    # ------------------------------------------------------------------
    # Registration
    # ------------------------------------------------------------------

    def register_protocol(self, name: str, abi: List[Any], address: str) -> RegisteredProtocol:
        """Register (or replace) a protocol's ABI and contract address."""
        protocol = self.protocols.register(name, abi, address)
        logger.info(f"Registered protocol {name} at {address}")
        return protocol

    def register_encoder(
        self,
        tx_type: TransactionType,
        encoder: Encoder,
        protocol: Optional[str] = None,
    ) -> None:
        self.encoders.register(tx_type, encoder, protocol)

    # ------------------------------------------------------------------
    # Nonces
    # ------------------------------------------------------------------

    async def reset_nonce(self, address: str, chain_id: Optional[int] = None) -> None:
        """Forget cached nonce state so the next build reads the chain."""
        await self.nonce_manager.reset(address, chain_id)

    async def release_nonce(self, tx: PreparedTransaction) -> None:
        await self.nonce_manager.release_nonce(tx.from_address, tx.chain_id, tx.nonce)

    async def resync_nonce(self, tx: PreparedTransaction) -> int:
        """
        Give back a nonce the node refused and catch up with the chain.

        Reservations held by other flows at or above the chain's pending
        count are kept.
        """
        await self.release_nonce(tx)
        return await self.nonce_manager.sync_with_chain(tx.from_address, tx.chain_id)

    async def confirm_nonce(self, tx: PreparedTransaction) -> None:
        await self.nonce_manager.confirm_nonce(tx.from_address, tx.chain_id, tx.nonce)

    # ------------------------------------------------------------------
    # Building
    # ------------------------------------------------------------------

    def _check_request(self, request: TransactionRequest) -> Result[None]:
        if not isinstance(request.from_address, str) or not is_address(request.from_address):
            return Result.fail(ErrorCode.INVALID_REQUEST, "Invalid from address", field="from_address")
        if not request.protocol:
            return Result.fail(ErrorCode.INVALID_REQUEST, "Protocol is required", field="protocol")
        if not request.action:
            return Result.fail(ErrorCode.INVALID_REQUEST, "Action is required", field="action")
        return Result.success(None)

    def encode(self, request: TransactionRequest) -> Result[EncodedCall]:
        """Encode calldata and resolve target and value."""
        try:
            if request.data:
                encoded = EncodedCall(data=request.data, to=request.to, value=request.value or 0)
                if encoded.to is None and request.protocol in self.protocols:
                    encoded = EncodedCall(
                        data=encoded.data,
                        to=self.protocols.require(request.protocol).address,
                        value=encoded.value,
                    )
            else:
                encoded = self._encoding.encode(request)
        except TransactionFailure as e:
            return Result.failure(e.error)

        to = request.to or encoded.to
        value = request.value if request.value is not None else encoded.value
        if not to or not is_address(to):
            return Result.fail(ErrorCode.INVALID_REQUEST, "Could not resolve a valid target address", to=to)
        return Result.success(EncodedCall(data=encoded.data, to=to, value=int(value)))

    async def build_transaction(self, request: TransactionRequest) -> Result[PreparedTransaction]:
        """
        Build a PreparedTransaction for a request.

        A nonce reserved here is released again if any later step fails.
        """
        checked = self._check_request(request)
        if not checked.ok:
            return Result.failure(checked.error)

        encoded = self.encode(request)
        if not encoded.ok:
            return Result.failure(encoded.error)
        call = encoded.value

        try:
            nonce = await self.nonce_manager.get_next_nonce(request.from_address, request.chain_id)
        except Exception as e:  # noqa: BLE001
            logger.error(f"Nonce lookup failed for {request.from_address}: {e}")
            return Result.failure(classify_exception(e, ErrorCode.NETWORK_ERROR, stage="nonce"))

        gas = await self.gas_strategy.estimate(
            {"from": request.from_address, "to": call.to, "data": call.data, "value": call.value},
            request.type,
        )
        if not gas.ok:
            await self.nonce_manager.release_nonce(request.from_address, request.chain_id, nonce)
            return Result.failure(gas.error)

        estimate = gas.value
        tx = PreparedTransaction(
            request_id=request.id,
            tx_type=request.type,
            chain_id=request.chain_id,
            from_address=request.from_address,
            to=call.to,
            data=call.data,
            value=call.value,
            gas_limit=estimate.gas_limit,
            nonce=nonce,
            gas_price=estimate.gas_price,
            max_fee_per_gas=estimate.max_fee_per_gas,
            max_priority_fee_per_gas=estimate.max_priority_fee_per_gas,
        )

        valid = self.validate_transaction(tx)
        if not valid.ok:
            await self.nonce_manager.release_nonce(request.from_address, request.chain_id, nonce)
            return Result.failure(valid.error)

        logger.info(
            f"Built {request.type.value} for {request.from_address} "
            f"(nonce {nonce}, gas {estimate.gas_limit})"
        )
        return Result.success(tx)

    def validate_transaction(self, tx: PreparedTransaction) -> Result[None]:
        """Check a prepared transaction before it goes to a signer."""
        errors = []
        if not is_address(tx.from_address):
            errors.append("Invalid from address")
        if not is_address(tx.to):
            errors.append("Invalid to address")
        if not tx.data:
            errors.append("Transaction data is empty")
        if tx.gas_limit <= 0:
            errors.append("Gas limit must be greater than 0")
        if tx.is_eip1559:
            if (tx.max_priority_fee_per_gas or 0) > tx.max_fee_per_gas:
                errors.append("Max priority fee cannot exceed max fee")
        elif not tx.gas_price or tx.gas_price <= 0:
            errors.append("Gas price must be greater than 0")

        if errors:
            return Result.fail(ErrorCode.VALIDATION_FAILED, "; ".join(errors), errors=errors)
        return Result.success(None)
