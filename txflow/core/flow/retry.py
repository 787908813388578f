"""
Retry policy for recoverable flow failures.
"""

import random
from dataclasses import dataclass

from .errors import ErrorCode, TransactionError


@dataclass
class RetryPolicy:
    """Exponential backoff with a ceiling and a per-flow attempt cap."""

    max_retries: int = 3
    initial_delay_seconds: float = 5.0
    max_delay_seconds: float = 60.0
    exponential_base: float = 2.0
    jitter: bool = True
    jitter_factor: float = 0.1

    def get_delay(self, retry_number: int) -> float:
        """Delay before the ``retry_number``-th retry (1-based)."""
        delay = min(
            self.initial_delay_seconds * (self.exponential_base ** max(retry_number - 1, 0)),
            self.max_delay_seconds,
        )
        if self.jitter:
            jitter_range = delay * self.jitter_factor
            delay += random.uniform(-jitter_range, jitter_range)
        return max(delay, 0)

    def allows(self, retries_so_far: int) -> bool:
        return retries_so_far < self.max_retries

    def should_retry(self, error: TransactionError, retries_so_far: int) -> bool:
        return bool(error.recoverable) and self.allows(retries_so_far)


# Errors after which the sender's nonces are resynced with the chain.
NONCE_RESYNC_CODES = frozenset({ErrorCode.NONCE_TOO_LOW})
