"""
Transaction Execution Layer

Infrastructure for getting a request on-chain:
- TransactionBuilder: encodes calldata, reserves nonces, estimates gas
- GasEstimationStrategy: gas limits with a safety buffer, EIP-1559 or legacy fees
- NonceManager: per-address nonce serialization
- TransactionBroadcaster: submission and receipt tracking
- JsonRpcNetworkClient: the node connection
"""

from .abi import AbiFunction, ContractInterface, ERC20_INTERFACE
from .broadcaster import TransactionBroadcaster
from .builder import TransactionBuilder
from .encoders import EncodedCall, ProtocolRegistry, RegisteredProtocol
from .gas import DEFAULT_GAS_LIMITS, GasEstimate, GasEstimationStrategy
from .network import FeeData, JsonRpcNetworkClient, NetworkClient, RpcError
from .nonce_manager import NonceManager

__all__ = [
    "TransactionBuilder",
    "TransactionBroadcaster",
    "GasEstimationStrategy",
    "GasEstimate",
    "DEFAULT_GAS_LIMITS",
    "NonceManager",
    "NetworkClient",
    "JsonRpcNetworkClient",
    "FeeData",
    "RpcError",
    "AbiFunction",
    "ContractInterface",
    "ERC20_INTERFACE",
    "EncodedCall",
    "ProtocolRegistry",
    "RegisteredProtocol",
]
