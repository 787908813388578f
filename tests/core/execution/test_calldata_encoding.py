"""
Tests for ABI handling and the default calldata encoders.
"""

import pytest
from eth_abi import decode
from eth_utils import function_signature_to_4byte_selector, to_hex

from txflow.core.execution import AbiFunction, ContractInterface, ERC20_INTERFACE, TransactionBuilder
from txflow.core.execution.abi import AbiError, parse_param, split_top_level
from txflow.core.flow import ErrorCode, TransactionType

from conftest import ASSET_ADDRESS, OTHER_ADDRESS, POOL_ADDRESS, TEST_ADDRESS, make_request


def selector(signature: str) -> str:
    return to_hex(function_signature_to_4byte_selector(signature))


def args_of(data: str, types):
    return decode(types, bytes.fromhex(data[10:]))


# =============================================================================
# ABI Tests
# =============================================================================

class TestAbiParsing:

    def test_split_top_level_respects_tuples(self):
        assert split_top_level("address a, (address, bytes)[] calls, uint256") == [
            "address a", "(address, bytes)[] calls", "uint256",
        ]

    def test_parse_param_drops_locations(self):
        assert parse_param("bytes memory data") == ("bytes", "data")
        assert parse_param("uint amount") == ("uint256", "amount")

    def test_fragment_signature(self):
        fn = AbiFunction.from_fragment(
            "function supply(address asset, uint256 amount, address onBehalfOf, uint16 referralCode)"
        )
        assert fn.signature == "supply(address,uint256,address,uint16)"
        assert to_hex(fn.selector) == "0x617ba037"

    def test_json_abi_entry(self):
        interface = ContractInterface([
            {"type": "event", "name": "Transfer", "inputs": []},
            {
                "type": "function",
                "name": "deposit",
                "inputs": [{"name": "amount", "type": "uint256"}],
            },
        ])
        assert interface.function_names == ["deposit"]
        assert interface.encode_function_data("deposit", [5]).startswith(selector("deposit(uint256)"))

    def test_wrong_argument_count(self):
        with pytest.raises(AbiError):
            ERC20_INTERFACE.encode_function_data("approve", [OTHER_ADDRESS])

    def test_unknown_function(self):
        with pytest.raises(AbiError):
            ERC20_INTERFACE.get_function("burn")

    def test_digit_strings_and_lowercase_addresses(self):
        data = ERC20_INTERFACE.encode_function_data("transfer", [OTHER_ADDRESS.lower(), "250"])
        assert data.startswith(selector("transfer(address,uint256)"))
        recipient, amount = args_of(data, ["address", "uint256"])
        assert recipient.lower() == OTHER_ADDRESS.lower()
        assert amount == 250


# =============================================================================
# Encoder Tests
# =============================================================================

@pytest.fixture
def encoding_builder(network) -> TransactionBuilder:
    b = TransactionBuilder(network)
    b.register_protocol("aave", [], POOL_ADDRESS)
    b.register_protocol("compound", [], POOL_ADDRESS)
    b.register_protocol("sushi", [], POOL_ADDRESS)
    return b


class TestDefaultEncoders:

    def test_aave_supply(self, encoding_builder: TransactionBuilder):
        call = encoding_builder.encode(make_request()).unwrap()
        assert call.to == POOL_ADDRESS
        assert call.value == 0
        assert call.data.startswith("0x617ba037")
        asset, amount, on_behalf, referral = args_of(call.data, ["address", "uint256", "address", "uint16"])
        assert asset.lower() == ASSET_ADDRESS.lower()
        assert amount == 1_000_000
        assert on_behalf.lower() == TEST_ADDRESS.lower()
        assert referral == 0

    def test_other_lending_protocols_use_deposit(self, encoding_builder: TransactionBuilder):
        call = encoding_builder.encode(make_request(protocol="sushi")).unwrap()
        assert call.data.startswith(selector("deposit(address,uint256,address,uint16)"))

    def test_compound_uses_mint_and_redeem(self, encoding_builder: TransactionBuilder):
        supply = encoding_builder.encode(make_request(protocol="compound")).unwrap()
        assert supply.data.startswith(selector("mint(uint256)"))

        withdraw = encoding_builder.encode(
            make_request(TransactionType.LENDING_WITHDRAW, protocol="compound")
        ).unwrap()
        assert withdraw.data.startswith(selector("redeem(uint256)"))

    def test_borrow_uses_variable_rate(self, encoding_builder: TransactionBuilder):
        call = encoding_builder.encode(make_request(TransactionType.LENDING_BORROW)).unwrap()
        _, _, mode, _, _ = args_of(call.data, ["address", "uint256", "uint256", "uint16", "address"])
        assert mode == 2

    def test_approve_targets_token(self, encoding_builder: TransactionBuilder):
        request = make_request(
            TransactionType.APPROVE,
            params={"token": ASSET_ADDRESS, "spender": POOL_ADDRESS, "amount": 10},
        )
        call = encoding_builder.encode(request).unwrap()
        assert call.to == ASSET_ADDRESS
        assert call.data.startswith(selector("approve(address,uint256)"))

    def test_native_transfer(self, encoding_builder: TransactionBuilder):
        request = make_request(TransactionType.TRANSFER, params={"recipient": OTHER_ADDRESS, "amount": 7})
        call = encoding_builder.encode(request).unwrap()
        assert call.to == OTHER_ADDRESS
        assert call.value == 7
        assert call.data == "0x"

    def test_claim_all_rewards_without_assets(self, encoding_builder: TransactionBuilder):
        call = encoding_builder.encode(make_request(TransactionType.CLAIM_REWARDS, params={})).unwrap()
        assert call.data == selector("claimAllRewards()")

    def test_batch_wraps_calls_in_multicall(self, encoding_builder: TransactionBuilder):
        request = make_request(TransactionType.BATCH, params={"calls": [
            {"type": "approve", "params": {"token": ASSET_ADDRESS, "spender": POOL_ADDRESS, "amount": 1}},
            {"type": "lending_supply", "params": {"asset": ASSET_ADDRESS, "amount": 1}},
        ]})
        call = encoding_builder.encode(request).unwrap()
        assert call.data.startswith(selector("multicall((address,bytes)[])"))
        (calls,) = args_of(call.data, ["(address,bytes)[]"])
        assert [target.lower() for target, _ in calls] == [ASSET_ADDRESS.lower(), POOL_ADDRESS.lower()]

    def test_registered_abi_takes_precedence(self, encoding_builder: TransactionBuilder):
        encoding_builder.register_protocol("vault", ["function stake(uint256 amount, address receiver)"], POOL_ADDRESS)
        request = make_request(TransactionType.STAKE, protocol="vault", params={"amount": 1})
        result = encoding_builder.encode(request)
        # Registered stake takes two arguments; the encoder passes one.
        assert result.ok is False
        assert result.error.code == ErrorCode.ENCODING_FAILED

    def test_custom_encoder_for_protocol(self, encoding_builder: TransactionBuilder):
        from txflow.core.execution.encoders import EncodedCall

        encoding_builder.register_protocol("lido", [], POOL_ADDRESS)
        encoding_builder.register_encoder(
            TransactionType.STAKE,
            lambda request, ctx: EncodedCall(data="0xa1903eab" + "00" * 32, to=ctx.target(request), value=5),
            protocol="lido",
        )
        call = encoding_builder.encode(
            make_request(TransactionType.STAKE, protocol="lido", params={"amount": 5})
        ).unwrap()
        assert call.data.startswith("0xa1903eab")
        assert call.value == 5

    def test_unregistered_protocol(self, encoding_builder: TransactionBuilder):
        result = encoding_builder.encode(make_request(protocol="unknown"))
        assert result.error.code == ErrorCode.PROTOCOL_NOT_REGISTERED

    def test_missing_parameter(self, encoding_builder: TransactionBuilder):
        result = encoding_builder.encode(make_request(params={"asset": ASSET_ADDRESS}))
        assert result.error.code == ErrorCode.ENCODING_FAILED
        assert result.error.details["param"] == "amount"

    def test_calldata_override(self, encoding_builder: TransactionBuilder):
        request = make_request(data="0xdeadbeef", to=OTHER_ADDRESS, value=3)
        call = encoding_builder.encode(request).unwrap()
        assert (call.data, call.to, call.value) == ("0xdeadbeef", OTHER_ADDRESS, 3)


class TestSwapEncoding:

    SWAP_TYPES = ["address", "address", "uint256", "uint256", "address", "uint256"]

    def test_single_hop_from_token_pair(self, encoding_builder: TransactionBuilder):
        request = make_request(TransactionType.SWAP, protocol="sushi", params={
            "token_in": ASSET_ADDRESS,
            "token_out": OTHER_ADDRESS,
            "amount_in": 500,
            "amount_out_min": 490,
            "deadline": 1_700_000_000,
        })
        call = encoding_builder.encode(request).unwrap()

        assert call.to == POOL_ADDRESS
        assert call.data.startswith(selector("swap(address,address,uint256,uint256,address,uint256)"))
        token_in, token_out, amount_in, amount_out_min, to, deadline = args_of(call.data, self.SWAP_TYPES)
        assert (token_in.lower(), token_out.lower()) == (ASSET_ADDRESS.lower(), OTHER_ADDRESS.lower())
        assert (amount_in, amount_out_min) == (500, 490)
        assert to.lower() == TEST_ADDRESS.lower()
        assert deadline == 1_700_000_000

    def test_two_token_path_is_single_hop(self, encoding_builder: TransactionBuilder):
        request = make_request(TransactionType.SWAP, protocol="sushi", params={
            "path": [ASSET_ADDRESS, OTHER_ADDRESS],
            "amount_in": 500,
        })
        call = encoding_builder.encode(request).unwrap()

        assert call.data.startswith(selector("swap(address,address,uint256,uint256,address,uint256)"))
        token_in, token_out, _, amount_out_min, _, _ = args_of(call.data, self.SWAP_TYPES)
        assert (token_in.lower(), token_out.lower()) == (ASSET_ADDRESS.lower(), OTHER_ADDRESS.lower())
        assert amount_out_min == 0

    def test_longer_path_is_multi_hop(self, encoding_builder: TransactionBuilder):
        path = [ASSET_ADDRESS, POOL_ADDRESS, OTHER_ADDRESS]
        request = make_request(TransactionType.SWAP, protocol="sushi", params={
            "path": path,
            "amount_in": 500,
            "amount_out_min": 1,
            "deadline": 1_700_000_000,
        })
        call = encoding_builder.encode(request).unwrap()

        assert call.data.startswith(
            selector("swapExactTokensForTokens(uint256,uint256,address[],address,uint256)")
        )
        amount_in, amount_out_min, hops, to, deadline = args_of(
            call.data, ["uint256", "uint256", "address[]", "address", "uint256"]
        )
        assert (amount_in, amount_out_min) == (500, 1)
        assert [h.lower() for h in hops] == [a.lower() for a in path]
        assert to.lower() == TEST_ADDRESS.lower()
        assert deadline == 1_700_000_000

    def test_missing_tokens(self, encoding_builder: TransactionBuilder):
        for params in [
            {"amount_in": 500},
            {"amount_in": 500, "token_in": ASSET_ADDRESS},
            {"amount_in": 500, "path": [ASSET_ADDRESS]},
        ]:
            result = encoding_builder.encode(make_request(TransactionType.SWAP, protocol="sushi", params=params))
            assert result.ok is False
            assert result.error.code == ErrorCode.ENCODING_FAILED

    def test_missing_amount(self, encoding_builder: TransactionBuilder):
        result = encoding_builder.encode(make_request(TransactionType.SWAP, protocol="sushi", params={
            "token_in": ASSET_ADDRESS,
            "token_out": OTHER_ADDRESS,
        }))
        assert result.error.code == ErrorCode.ENCODING_FAILED
        assert result.error.details["param"] == "amount_in"
