"""
Calldata encoders.

An encoder turns a TransactionRequest into an EncodedCall. Encoders are
looked up by (protocol, transaction type); a protocol-specific encoder wins
over the generic one registered for the type.
"""

import time
from dataclasses import dataclass
from typing import Any, Callable, Dict, List, Optional, Tuple

from txflow.core.flow.errors import ErrorCode, TransactionError, TransactionFailure
from txflow.core.flow.models import TransactionRequest, TransactionType

from .abi import ERC20_INTERFACE, AbiError, AbiFunction, ContractInterface


DEFAULT_DEADLINE_SECONDS = 20 * 60
VARIABLE_RATE_MODE = 2

# Canonical fragments used when a registered ABI does not declare the function.
STANDARD_FRAGMENTS: Dict[str, str] = {
    "supply": "function supply(address asset, uint256 amount, address onBehalfOf, uint16 referralCode)",
    "deposit": "function deposit(address asset, uint256 amount, address onBehalfOf, uint16 referralCode)",
    "mint": "function mint(uint256 mintAmount)",
    "withdraw": "function withdraw(address asset, uint256 amount, address to)",
    "redeem": "function redeem(uint256 redeemTokens)",
    "borrow": "function borrow(address asset, uint256 amount, uint256 interestRateMode, uint16 referralCode, address onBehalfOf)",
    "repay": "function repay(address asset, uint256 amount, uint256 interestRateMode, address onBehalfOf)",
    "addLiquidity": (
        "function addLiquidity(address tokenA, address tokenB, uint256 amountADesired, uint256 amountBDesired, "
        "uint256 amountAMin, uint256 amountBMin, address to, uint256 deadline)"
    ),
    "removeLiquidity": (
        "function removeLiquidity(address tokenA, address tokenB, uint256 liquidity, "
        "uint256 amountAMin, uint256 amountBMin, address to, uint256 deadline)"
    ),
    "swapExactTokensForTokens": (
        "function swapExactTokensForTokens(uint256 amountIn, uint256 amountOutMin, address[] path, "
        "address to, uint256 deadline)"
    ),
    "swap": (
        "function swap(address tokenIn, address tokenOut, uint256 amountIn, uint256 amountOutMin, "
        "address to, uint256 deadline)"
    ),
    "stake": "function stake(uint256 amount)",
    "unstake": "function unstake(uint256 amount)",
    "claimRewards": "function claimRewards(address[] assets, address to)",
    "claimAllRewards": "function claimAllRewards()",
    "multicall": "function multicall((address target, bytes callData)[] calls)",
}


@dataclass(frozen=True)
class RegisteredProtocol:
    name: str
    address: str
    interface: ContractInterface


@dataclass(frozen=True)
class EncodedCall:
    """Calldata plus the target and value an encoder decided on."""
    data: str
    to: Optional[str] = None
    value: int = 0


class ProtocolRegistry:
    """Known protocols by (case-insensitive) name."""

    def __init__(self):
        self._protocols: Dict[str, RegisteredProtocol] = {}

    def register(self, name: str, abi: List[Any], address: str) -> RegisteredProtocol:
        protocol = RegisteredProtocol(name=name, address=address, interface=ContractInterface(abi))
        self._protocols[name.lower()] = protocol
        return protocol

    def get(self, name: str) -> Optional[RegisteredProtocol]:
        return self._protocols.get((name or "").lower())

    def require(self, name: str) -> RegisteredProtocol:
        protocol = self.get(name)
        if protocol is None:
            raise TransactionFailure(TransactionError.create(
                ErrorCode.PROTOCOL_NOT_REGISTERED,
                f"Protocol {name} not registered",
                protocol=name,
            ))
        return protocol

    def __contains__(self, name: str) -> bool:
        return self.get(name) is not None

    @property
    def names(self) -> List[str]:
        return sorted(p.name for p in self._protocols.values())


Encoder = Callable[[TransactionRequest, "EncodingContext"], EncodedCall]


class EncoderRegistry:
    def __init__(self):
        self._encoders: Dict[Tuple[Optional[str], TransactionType], Encoder] = {}

    def register(
        self,
        tx_type: TransactionType,
        encoder: Encoder,
        protocol: Optional[str] = None,
    ) -> None:
        key = (protocol.lower() if protocol else None, TransactionType(tx_type))
        self._encoders[key] = encoder

    def resolve(self, protocol: Optional[str], tx_type: TransactionType) -> Optional[Encoder]:
        tx_type = TransactionType(tx_type)
        if protocol:
            specific = self._encoders.get((protocol.lower(), tx_type))
            if specific is not None:
                return specific
        return self._encoders.get((None, tx_type))


@dataclass
class EncodingContext:
    """What an encoder may consult besides the request itself."""
    protocols: ProtocolRegistry
    encoders: EncoderRegistry

    def call(self, request: TransactionRequest, function: str, args: List[Any]) -> str:
        """Encode ``function`` against the request's protocol ABI."""
        protocol = self.protocols.require(request.protocol)
        try:
            if protocol.interface.has_function(function):
                return protocol.interface.encode_function_data(function, args)
            if function in STANDARD_FRAGMENTS:
                return AbiFunction.from_fragment(STANDARD_FRAGMENTS[function]).encode(args)
            raise AbiError(f"Protocol {protocol.name} has no function '{function}'")
        except AbiError as e:
            raise TransactionFailure(TransactionError.create(
                ErrorCode.ENCODING_FAILED,
                str(e),
                protocol=request.protocol,
                function=function,
            )) from e

    def target(self, request: TransactionRequest) -> str:
        return self.protocols.require(request.protocol).address

    def encode(self, request: TransactionRequest) -> EncodedCall:
        encoder = self.encoders.resolve(request.protocol, request.type)
        if encoder is None:
            raise TransactionFailure(TransactionError.create(
                ErrorCode.ENCODING_FAILED,
                f"No encoder for {request.type.value}",
                protocol=request.protocol,
                tx_type=request.type.value,
            ))
        return encoder(request, self)


def _param(request: TransactionRequest, name: str, default: Any = None, required: bool = True) -> Any:
    value = request.params.get(name, default)
    if value is None and required:
        raise TransactionFailure(TransactionError.create(
            ErrorCode.ENCODING_FAILED,
            f"Missing parameter '{name}' for {request.type.value}",
            param=name,
        ))
    return value


def _deadline(request: TransactionRequest) -> int:
    return int(request.params.get("deadline") or int(time.time()) + DEFAULT_DEADLINE_SECONDS)


# =============================================================================
# Default encoders
# =============================================================================

def encode_lending_supply(request: TransactionRequest, ctx: EncodingContext) -> EncodedCall:
    asset = _param(request, "asset")
    amount = _param(request, "amount")
    protocol = request.protocol.lower()
    if protocol == "compound":
        data = ctx.call(request, "mint", [amount])
    else:
        function = "supply" if protocol in ("takara", "aave") else "deposit"
        referral = request.params.get("referral_code", 0)
        data = ctx.call(request, function, [asset, amount, request.from_address, referral])
    return EncodedCall(data=data, to=ctx.target(request))


def encode_lending_withdraw(request: TransactionRequest, ctx: EncodingContext) -> EncodedCall:
    amount = _param(request, "amount")
    if request.protocol.lower() == "compound":
        data = ctx.call(request, "redeem", [amount])
    else:
        data = ctx.call(request, "withdraw", [_param(request, "asset"), amount, request.from_address])
    return EncodedCall(data=data, to=ctx.target(request))


def encode_lending_borrow(request: TransactionRequest, ctx: EncodingContext) -> EncodedCall:
    data = ctx.call(request, "borrow", [
        _param(request, "asset"),
        _param(request, "amount"),
        request.params.get("interest_rate_mode", VARIABLE_RATE_MODE),
        request.params.get("referral_code", 0),
        request.from_address,
    ])
    return EncodedCall(data=data, to=ctx.target(request))


def encode_lending_repay(request: TransactionRequest, ctx: EncodingContext) -> EncodedCall:
    data = ctx.call(request, "repay", [
        _param(request, "asset"),
        _param(request, "amount"),
        request.params.get("interest_rate_mode", VARIABLE_RATE_MODE),
        request.from_address,
    ])
    return EncodedCall(data=data, to=ctx.target(request))


def encode_liquidity_add(request: TransactionRequest, ctx: EncodingContext) -> EncodedCall:
    data = ctx.call(request, "addLiquidity", [
        _param(request, "token_a"),
        _param(request, "token_b"),
        _param(request, "amount_a"),
        _param(request, "amount_b"),
        request.params.get("amount_a_min", 0),
        request.params.get("amount_b_min", 0),
        request.from_address,
        _deadline(request),
    ])
    return EncodedCall(data=data, to=ctx.target(request))


def encode_liquidity_remove(request: TransactionRequest, ctx: EncodingContext) -> EncodedCall:
    data = ctx.call(request, "removeLiquidity", [
        _param(request, "token_a"),
        _param(request, "token_b"),
        _param(request, "liquidity"),
        request.params.get("amount_a_min", 0),
        request.params.get("amount_b_min", 0),
        request.from_address,
        _deadline(request),
    ])
    return EncodedCall(data=data, to=ctx.target(request))


def encode_swap(request: TransactionRequest, ctx: EncodingContext) -> EncodedCall:
    amount_in = _param(request, "amount_in")
    amount_out_min = request.params.get("amount_out_min", 0)
    path = request.params.get("path") or []
    if len(path) > 2:
        data = ctx.call(request, "swapExactTokensForTokens", [
            amount_in,
            amount_out_min,
            list(path),
            request.from_address,
            _deadline(request),
        ])
    else:
        token_in = request.params.get("token_in") or (path[0] if path else None)
        token_out = request.params.get("token_out") or (path[-1] if len(path) > 1 else None)
        if not token_in or not token_out:
            raise TransactionFailure(TransactionError.create(
                ErrorCode.ENCODING_FAILED,
                "Swap requires token_in and token_out or a path",
            ))
        data = ctx.call(request, "swap", [
            token_in,
            token_out,
            amount_in,
            amount_out_min,
            request.from_address,
            _deadline(request),
        ])
    return EncodedCall(data=data, to=ctx.target(request))


def encode_stake(request: TransactionRequest, ctx: EncodingContext) -> EncodedCall:
    return EncodedCall(data=ctx.call(request, "stake", [_param(request, "amount")]), to=ctx.target(request))


def encode_unstake(request: TransactionRequest, ctx: EncodingContext) -> EncodedCall:
    return EncodedCall(data=ctx.call(request, "unstake", [_param(request, "amount")]), to=ctx.target(request))


def encode_claim_rewards(request: TransactionRequest, ctx: EncodingContext) -> EncodedCall:
    assets = request.params.get("assets") or []
    if assets:
        data = ctx.call(request, "claimRewards", [list(assets), request.from_address])
    else:
        data = ctx.call(request, "claimAllRewards", [])
    return EncodedCall(data=data, to=ctx.target(request))


def _erc20(function: str, args: List[Any]) -> str:
    try:
        return ERC20_INTERFACE.encode_function_data(function, args)
    except AbiError as e:
        raise TransactionFailure(TransactionError.create(ErrorCode.ENCODING_FAILED, str(e))) from e


def encode_approve(request: TransactionRequest, ctx: EncodingContext) -> EncodedCall:
    data = _erc20("approve", [_param(request, "spender"), _param(request, "amount")])
    return EncodedCall(data=data, to=_param(request, "token"))


def encode_transfer(request: TransactionRequest, ctx: EncodingContext) -> EncodedCall:
    recipient = _param(request, "recipient")
    amount = _param(request, "amount")
    token = request.params.get("token")
    if token:
        return EncodedCall(data=_erc20("transfer", [recipient, amount]), to=token)
    # Native transfer: value moves, no calldata.
    return EncodedCall(data="0x", to=recipient, value=int(amount))


def encode_batch(request: TransactionRequest, ctx: EncodingContext) -> EncodedCall:
    calls = []
    for index, call in enumerate(_param(request, "calls")):
        try:
            inner = TransactionRequest.create(
                type=TransactionType(call["type"]),
                protocol=call.get("protocol", request.protocol),
                action=call.get("action", call["type"]),
                from_address=request.from_address,
                chain_id=request.chain_id,
                params=call.get("params") or {},
            )
        except (KeyError, ValueError) as e:
            raise TransactionFailure(TransactionError.create(
                ErrorCode.ENCODING_FAILED,
                f"Invalid batch call at index {index}: {e}",
                index=index,
            )) from e
        encoded = ctx.encode(inner)
        target = call.get("target") or encoded.to
        calls.append((target, encoded.data))
    return EncodedCall(data=ctx.call(request, "multicall", [calls]), to=ctx.target(request))


DEFAULT_ENCODERS: Dict[TransactionType, Encoder] = {
    TransactionType.LENDING_SUPPLY: encode_lending_supply,
    TransactionType.LENDING_WITHDRAW: encode_lending_withdraw,
    TransactionType.LENDING_BORROW: encode_lending_borrow,
    TransactionType.LENDING_REPAY: encode_lending_repay,
    TransactionType.LIQUIDITY_ADD: encode_liquidity_add,
    TransactionType.LIQUIDITY_REMOVE: encode_liquidity_remove,
    TransactionType.SWAP: encode_swap,
    TransactionType.STAKE: encode_stake,
    TransactionType.UNSTAKE: encode_unstake,
    TransactionType.CLAIM_REWARDS: encode_claim_rewards,
    TransactionType.APPROVE: encode_approve,
    TransactionType.TRANSFER: encode_transfer,
    TransactionType.BATCH: encode_batch,
}


def default_encoder_registry() -> EncoderRegistry:
    registry = EncoderRegistry()
    for tx_type, encoder in DEFAULT_ENCODERS.items():
        registry.register(tx_type, encoder)
    return registry
