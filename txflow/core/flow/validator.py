"""
Request validation.

A TransactionValidator holds per-type tables of ValidationRules. Each rule
addresses a dotted field path on the request (``from_address``,
``params.asset``) and returns every violation instead of stopping at the
first one.
"""

from dataclasses import dataclass
from typing import Any, Callable, Dict, List, Optional

from eth_utils import is_address

from .errors import ErrorCode
from .models import TransactionRequest, TransactionType, utcnow
from .results import Result


_MISSING = object()


def resolve_field(request: TransactionRequest, path: str) -> Any:
    """Walk a dotted path through request attributes and param dicts."""
    current: Any = request
    for part in path.split("."):
        if isinstance(current, dict):
            current = current.get(part, _MISSING)
        else:
            current = getattr(current, part, _MISSING)
        if current is _MISSING:
            return None
    return current


def is_valid_address(value: Any) -> bool:
    return isinstance(value, str) and is_address(value)


def is_positive_amount(value: Any) -> bool:
    if isinstance(value, bool):
        return False
    if isinstance(value, str) and value.isdigit():
        value = int(value)
    return isinstance(value, int) and value > 0


def is_non_negative_amount(value: Any) -> bool:
    return value == 0 or is_positive_amount(value)


@dataclass(frozen=True)
class ValidationRule:
    field: str
    predicate: Callable[[Any], bool]
    message: str
    name: Optional[str] = None

    @property
    def key(self) -> str:
        return self.name or self.field

    def check(self, request: TransactionRequest) -> Optional[Dict[str, str]]:
        try:
            ok = self.predicate(resolve_field(request, self.field))
        except (TypeError, ValueError, AttributeError):
            ok = False
        if ok:
            return None
        return {"field": self.field, "rule": self.key, "message": self.message}


COMMON = "*"


def _default_rules() -> Dict[str, List[ValidationRule]]:
    T = TransactionType
    rules: Dict[str, List[ValidationRule]] = {
        COMMON: [
            ValidationRule("from_address", is_valid_address, "Invalid sender address"),
            ValidationRule("chain_id", lambda v: isinstance(v, int) and v > 0, "Invalid chain ID"),
            ValidationRule("protocol", lambda v: bool(v), "Protocol is required"),
            ValidationRule("action", lambda v: bool(v), "Action is required"),
            ValidationRule(
                "expires_at",
                lambda v: v is None or v > utcnow(),
                "Request has expired",
            ),
        ],
        T.LENDING_SUPPLY.value: [
            ValidationRule("params.asset", is_valid_address, "Invalid asset address"),
            ValidationRule("params.amount", is_positive_amount, "Amount must be greater than 0"),
        ],
        T.LENDING_WITHDRAW.value: [
            ValidationRule("params.asset", is_valid_address, "Invalid asset address"),
            ValidationRule("params.amount", is_positive_amount, "Amount must be greater than 0"),
        ],
        T.LENDING_BORROW.value: [
            ValidationRule("params.asset", is_valid_address, "Invalid asset address"),
            ValidationRule("params.amount", is_positive_amount, "Amount must be greater than 0"),
        ],
        T.LENDING_REPAY.value: [
            ValidationRule("params.asset", is_valid_address, "Invalid asset address"),
            ValidationRule("params.amount", is_positive_amount, "Amount must be greater than 0"),
        ],
        T.SWAP.value: [
            ValidationRule("params.amount_in", is_positive_amount, "Amount in must be greater than 0"),
            ValidationRule(
                "params.amount_out_min",
                lambda v: v is None or is_non_negative_amount(v),
                "Minimum output must not be negative",
            ),
        ],
        T.APPROVE.value: [
            ValidationRule("params.token", is_valid_address, "Invalid token address"),
            ValidationRule("params.spender", is_valid_address, "Invalid spender address"),
            ValidationRule("params.amount", is_non_negative_amount, "Invalid approval amount"),
        ],
        T.TRANSFER.value: [
            ValidationRule("params.recipient", is_valid_address, "Invalid recipient address"),
            ValidationRule("params.amount", is_positive_amount, "Amount must be greater than 0"),
        ],
        T.STAKE.value: [
            ValidationRule("params.amount", is_positive_amount, "Amount must be greater than 0"),
        ],
        T.UNSTAKE.value: [
            ValidationRule("params.amount", is_positive_amount, "Amount must be greater than 0"),
        ],
        T.BATCH.value: [
            ValidationRule(
                "params.calls",
                lambda v: isinstance(v, list) and len(v) > 0,
                "Batch requires at least one call",
            ),
        ],
    }
    return rules


class TransactionValidator:
    """Rule-table validator for TransactionRequests."""

    def __init__(self, rules: Optional[Dict[str, List[ValidationRule]]] = None):
        self._rules = rules if rules is not None else _default_rules()

    def rules_for(self, tx_type: Optional[TransactionType]) -> List[ValidationRule]:
        key = COMMON if tx_type is None else TransactionType(tx_type).value
        return list(self._rules.get(key, []))

    def add_rule(self, tx_type: Optional[TransactionType], rule: ValidationRule) -> None:
        """Add a rule for a type, or for every request when ``tx_type`` is None."""
        key = COMMON if tx_type is None else TransactionType(tx_type).value
        self._rules.setdefault(key, []).append(rule)

    def remove_rule(self, tx_type: Optional[TransactionType], key: str) -> bool:
        """Remove rules matched by name (or field path when unnamed)."""
        table_key = COMMON if tx_type is None else TransactionType(tx_type).value
        rules = self._rules.get(table_key, [])
        kept = [r for r in rules if r.key != key]
        self._rules[table_key] = kept
        return len(kept) != len(rules)

    def collect_errors(self, request: TransactionRequest) -> List[Dict[str, str]]:
        errors = []
        for rule in [*self._rules.get(COMMON, []), *self._rules.get(request.type.value, [])]:
            violation = rule.check(request)
            if violation:
                errors.append(violation)
        return errors

    def validate(self, request: TransactionRequest) -> Result[None]:
        errors = self.collect_errors(request)
        if errors:
            return Result.fail(
                ErrorCode.VALIDATION_FAILED,
                "; ".join(e["message"] for e in errors),
                errors=errors,
            )
        return Result.success(None)
