"""
Minimal contract interface for calldata encoding.

Accepts either JSON ABI entries or human-readable fragments such as
``"function supply(address asset, uint256 amount, address onBehalfOf, uint16 referralCode)"``
and encodes calls with eth_abi.
"""

import re
from dataclasses import dataclass
from typing import Any, Dict, Iterable, List, Optional, Sequence, Tuple, Union

from eth_abi import encode as abi_encode
from eth_utils import function_signature_to_4byte_selector, to_bytes, to_checksum_address


AbiEntry = Union[str, Dict[str, Any]]

_ARRAY_SUFFIX = re.compile(r"^((?:\[\d*\])*)\s*(.*)$")
_DATA_LOCATIONS = {"memory", "calldata", "storage", "indexed", "payable"}


class AbiError(ValueError):
    """Raised for malformed fragments or arguments that cannot be encoded."""


def _canonical_type(type_str: str) -> str:
    if type_str == "uint":
        return "uint256"
    if type_str == "int":
        return "int256"
    m = re.match(r"^(u?int)(\[.*)$", type_str)
    if m:
        return f"{m.group(1)}256{m.group(2)}"
    return type_str


def _matching_paren(text: str, start: int) -> int:
    depth = 0
    for i in range(start, len(text)):
        if text[i] == "(":
            depth += 1
        elif text[i] == ")":
            depth -= 1
            if depth == 0:
                return i
    raise AbiError(f"Unbalanced parentheses in '{text}'")


def split_top_level(text: str) -> List[str]:
    """Split on commas that are not nested inside parentheses."""
    parts, depth, current = [], 0, []
    for ch in text:
        if ch == "(":
            depth += 1
        elif ch == ")":
            depth -= 1
        if ch == "," and depth == 0:
            parts.append("".join(current).strip())
            current = []
        else:
            current.append(ch)
    tail = "".join(current).strip()
    if tail:
        parts.append(tail)
    return parts


def parse_param(param: str) -> Tuple[str, str]:
    """Return (canonical type, name) for one human-readable parameter."""
    param = param.strip()
    if param.startswith("tuple("):
        param = param[len("tuple"):]
    if param.startswith("("):
        end = _matching_paren(param, 0)
        inner = ",".join(parse_param(p)[0] for p in split_top_level(param[1:end]))
        m = _ARRAY_SUFFIX.match(param[end + 1:].strip())
        suffix, rest = m.group(1), m.group(2)
        names = [t for t in rest.split() if t not in _DATA_LOCATIONS]
        return f"({inner}){suffix}", names[-1] if names else ""

    tokens = [t for t in param.split() if t not in _DATA_LOCATIONS]
    if not tokens:
        raise AbiError("Empty parameter")
    return _canonical_type(tokens[0]), tokens[1] if len(tokens) > 1 else ""


def _json_param_type(param: Dict[str, Any]) -> str:
    type_str = param["type"]
    if type_str.startswith("tuple"):
        inner = ",".join(_json_param_type(c) for c in param.get("components", []))
        return f"({inner}){type_str[len('tuple'):]}"
    return _canonical_type(type_str)


@dataclass(frozen=True)
class AbiFunction:
    name: str
    input_types: Tuple[str, ...]
    input_names: Tuple[str, ...] = ()

    @property
    def signature(self) -> str:
        return f"{self.name}({','.join(self.input_types)})"

    @property
    def selector(self) -> bytes:
        return function_signature_to_4byte_selector(self.signature)

    @classmethod
    def from_fragment(cls, fragment: str) -> "AbiFunction":
        text = fragment.strip()
        if text.startswith("function "):
            text = text[len("function "):].strip()
        open_idx = text.find("(")
        if open_idx <= 0:
            raise AbiError(f"Malformed function fragment: '{fragment}'")
        name = text[:open_idx].strip()
        close_idx = _matching_paren(text, open_idx)
        params = [parse_param(p) for p in split_top_level(text[open_idx + 1:close_idx])]
        return cls(
            name=name,
            input_types=tuple(t for t, _ in params),
            input_names=tuple(n for _, n in params),
        )

    @classmethod
    def from_json(cls, entry: Dict[str, Any]) -> "AbiFunction":
        inputs = entry.get("inputs", [])
        return cls(
            name=entry["name"],
            input_types=tuple(_json_param_type(p) for p in inputs),
            input_names=tuple(p.get("name", "") for p in inputs),
        )

    def encode(self, args: Sequence[Any]) -> str:
        if len(args) != len(self.input_types):
            raise AbiError(
                f"{self.signature} expects {len(self.input_types)} arguments, got {len(args)}"
            )
        try:
            values = [normalize_value(t, v) for t, v in zip(self.input_types, args)]
            encoded = abi_encode(list(self.input_types), values)
        except AbiError:
            raise
        except Exception as e:  # noqa: BLE001
            raise AbiError(f"Cannot encode {self.signature}: {e}") from e
        return "0x" + (self.selector + encoded).hex()


def _tuple_components(type_str: str) -> List[str]:
    end = _matching_paren(type_str, 0)
    return split_top_level(type_str[1:end])


def normalize_value(type_str: str, value: Any) -> Any:
    """Coerce JSON-friendly values (hex strings, digit strings) to what eth_abi expects."""
    if type_str.endswith("]"):
        element_type = type_str[:type_str.rfind("[")]
        if not isinstance(value, (list, tuple)):
            raise AbiError(f"Expected a list for {type_str}")
        return [normalize_value(element_type, v) for v in value]

    if type_str.startswith("("):
        components = _tuple_components(type_str)
        if isinstance(value, dict):
            value = list(value.values())
        if len(value) != len(components):
            raise AbiError(f"Expected {len(components)} tuple fields for {type_str}")
        return tuple(normalize_value(t, v) for t, v in zip(components, value))

    if type_str == "address":
        if not isinstance(value, str):
            raise AbiError(f"Expected an address string, got {type(value).__name__}")
        return to_checksum_address(value)

    if type_str.startswith("bytes"):
        if isinstance(value, str):
            return to_bytes(hexstr=value)
        return bytes(value)

    if type_str.startswith(("uint", "int")):
        if isinstance(value, bool):
            raise AbiError(f"Expected an integer for {type_str}, got bool")
        return int(value)

    return value


class ContractInterface:
    """Function table built from an ABI."""

    def __init__(self, abi: Iterable[AbiEntry]):
        self._functions: Dict[str, List[AbiFunction]] = {}
        for entry in abi:
            if isinstance(entry, str):
                if not entry.strip().startswith("function"):
                    continue
                fn = AbiFunction.from_fragment(entry)
            elif entry.get("type", "function") == "function":
                fn = AbiFunction.from_json(entry)
            else:
                continue
            self._functions.setdefault(fn.name, []).append(fn)

    def has_function(self, name: str) -> bool:
        return name in self._functions

    @property
    def function_names(self) -> List[str]:
        return sorted(self._functions)

    def get_function(self, name: str, arg_count: Optional[int] = None) -> AbiFunction:
        overloads = self._functions.get(name)
        if not overloads:
            raise AbiError(f"Function '{name}' not found in interface")
        if arg_count is None:
            return overloads[0]
        for fn in overloads:
            if len(fn.input_types) == arg_count:
                return fn
        raise AbiError(f"No overload of '{name}' takes {arg_count} arguments")

    def encode_function_data(self, name: str, args: Sequence[Any] = ()) -> str:
        return self.get_function(name, len(args)).encode(args)


ERC20_INTERFACE = ContractInterface([
    "function approve(address spender, uint256 amount) returns (bool)",
    "function transfer(address recipient, uint256 amount) returns (bool)",
])
