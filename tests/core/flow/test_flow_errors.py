"""
Tests for error classification, Result and RetryPolicy.
"""

import pytest

from txflow.core.flow import (
    ErrorCode,
    Result,
    RetryPolicy,
    TransactionError,
    TransactionFailure,
    classify_exception,
)


class TestClassifyException:

    @pytest.mark.parametrize("message,expected", [
        ("nonce too low: next nonce 5, tx nonce 4", ErrorCode.NONCE_TOO_LOW),
        ("replacement transaction underpriced", ErrorCode.NONCE_TOO_LOW),
        ("request timed out", ErrorCode.TIMEOUT),
        ("Connection refused", ErrorCode.NETWORK_ERROR),
        ("something odd", ErrorCode.BROADCAST_FAILED),
    ])
    def test_message_patterns(self, message: str, expected: ErrorCode):
        error = classify_exception(Exception(message), ErrorCode.BROADCAST_FAILED)
        assert error.code == expected
        assert error.message == message

    def test_exception_types(self):
        assert classify_exception(TimeoutError(), ErrorCode.SIGNING_FAILED).code == ErrorCode.TIMEOUT
        assert classify_exception(ConnectionResetError("x"), ErrorCode.SIGNING_FAILED).code == ErrorCode.NETWORK_ERROR

    def test_revert_only_during_broadcast(self):
        revert = Exception("execution reverted: insufficient balance")
        assert classify_exception(revert, ErrorCode.BROADCAST_FAILED).code == ErrorCode.TRANSACTION_REVERTED
        assert classify_exception(revert, ErrorCode.GAS_ESTIMATION_FAILED).code == ErrorCode.GAS_ESTIMATION_FAILED

    def test_transaction_failure_passes_through(self):
        original = TransactionError.create(ErrorCode.ENCODING_FAILED, "bad args", param="amount")
        assert classify_exception(TransactionFailure(original), ErrorCode.NETWORK_ERROR) is original

    def test_details_are_attached(self):
        error = classify_exception(Exception("boom"), ErrorCode.NETWORK_ERROR, stage="nonce")
        assert error.details == {"stage": "nonce"}


class TestTransactionError:

    def test_recoverable_derived_from_code(self):
        assert TransactionError.create(ErrorCode.BROADCAST_FAILED, "x").recoverable is True
        assert TransactionError.create(ErrorCode.NONCE_TOO_LOW, "x").recoverable is True
        assert TransactionError.create(ErrorCode.VALIDATION_FAILED, "x").recoverable is False
        assert TransactionError.create(ErrorCode.TRANSACTION_REVERTED, "x").recoverable is False
        assert TransactionError.create(ErrorCode.SIGNING_REJECTED, "x").recoverable is False

    def test_explicit_recoverable_wins(self):
        error = TransactionError(ErrorCode.VALIDATION_FAILED, "x", recoverable=True)
        assert error.recoverable is True

    def test_dict_form(self):
        error = TransactionError.create(ErrorCode.TIMEOUT, "slow", tx_hash="0x1")
        assert error.to_dict() == {
            "code": "TIMEOUT",
            "message": "slow",
            "details": {"tx_hash": "0x1"},
            "recoverable": True,
        }
        assert TransactionError.from_dict(error.to_dict()) == error
        assert str(error) == "[TIMEOUT] slow"


class TestResult:

    def test_success_and_unwrap(self):
        result = Result.success(5)
        assert result.ok is True
        assert result.unwrap() == 5

    def test_failure_unwrap_raises(self):
        result = Result.fail(ErrorCode.FLOW_NOT_FOUND, "missing", flow_id="f1")
        with pytest.raises(TransactionFailure) as exc_info:
            result.unwrap()
        assert exc_info.value.error.code == ErrorCode.FLOW_NOT_FOUND
        assert result.to_dict()["error"]["details"] == {"flow_id": "f1"}


class TestRetryPolicy:

    def test_exponential_backoff_without_jitter(self):
        policy = RetryPolicy(initial_delay_seconds=5, max_delay_seconds=60, jitter=False)
        assert [policy.get_delay(n) for n in (1, 2, 3, 4, 5)] == [5, 10, 20, 40, 60]

    def test_jitter_stays_within_ten_percent(self):
        policy = RetryPolicy(initial_delay_seconds=10, jitter=True)
        for _ in range(50):
            assert 9.0 <= policy.get_delay(1) <= 11.0

    def test_should_retry_respects_budget_and_recoverability(self):
        policy = RetryPolicy(max_retries=2)
        recoverable = TransactionError.create(ErrorCode.BROADCAST_FAILED, "x")
        fatal = TransactionError.create(ErrorCode.TRANSACTION_REVERTED, "x")

        assert policy.should_retry(recoverable, 0) is True
        assert policy.should_retry(recoverable, 1) is True
        assert policy.should_retry(recoverable, 2) is False
        assert policy.should_retry(fatal, 0) is False
