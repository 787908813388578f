"""
Flow State Machine

Holds the allowed status transitions for a TransactionFlow and applies
them, recording every change in the flow's history.
"""

import logging
from typing import Any, Dict, FrozenSet, Optional

from .models import TERMINAL_STATUSES, TransactionEvent, TransactionFlow, TransactionStatus


S = TransactionStatus


class InvalidTransitionError(Exception):
    """Raised when an invalid status transition is attempted."""

    def __init__(
        self,
        from_status: TransactionStatus,
        to_status: TransactionStatus,
        message: Optional[str] = None,
    ):
        self.from_status = from_status
        self.to_status = to_status
        self.message = message or f"Cannot transition from {from_status.value} to {to_status.value}"
        super().__init__(self.message)


class FlowStateMachine:
    """
    Validates and applies status transitions for a single flow.

    Transitions are applied synchronously so that a check-and-set can never
    interleave with another coroutine touching the same flow.
    """

    TRANSITIONS: Dict[TransactionStatus, FrozenSet[TransactionStatus]] = {
        S.PREPARING: frozenset({
            S.AWAITING_CONFIRMATION,
            S.SIGNING,              # No confirmation required
            S.FAILED,
            S.CANCELLED,
        }),
        S.AWAITING_CONFIRMATION: frozenset({
            S.SIGNING,
            S.BROADCASTING,         # Caller supplied a signed transaction
            S.CANCELLED,
        }),
        S.SIGNING: frozenset({
            S.BROADCASTING,
            S.FAILED,
            S.CANCELLED,
        }),
        S.BROADCASTING: frozenset({
            S.CONFIRMING,
            S.FAILED,
            S.CANCELLED,
        }),
        S.CONFIRMING: frozenset({
            S.COMPLETED,
            S.FAILED,
            S.CANCELLED,
        }),
        S.FAILED: frozenset({
            S.PREPARING,            # Explicit retry only
        }),
        S.COMPLETED: frozenset(),
        S.CANCELLED: frozenset(),
    }

    def __init__(self, flow: TransactionFlow, logger: Optional[logging.Logger] = None):
        self.flow = flow
        self.logger = logger or logging.getLogger(__name__)

    @property
    def current_status(self) -> TransactionStatus:
        return self.flow.status

    @classmethod
    def allowed_from(cls, status: TransactionStatus) -> FrozenSet[TransactionStatus]:
        return cls.TRANSITIONS.get(status, frozenset())

    @classmethod
    def is_allowed(cls, from_status: TransactionStatus, to_status: TransactionStatus) -> bool:
        return to_status in cls.allowed_from(from_status)

    def can_transition_to(self, to_status: TransactionStatus) -> bool:
        return self.is_allowed(self.current_status, to_status)

    def can_cancel(self) -> bool:
        return self.current_status not in TERMINAL_STATUSES

    def transition_to(
        self,
        to_status: TransactionStatus,
        message: str,
        details: Optional[Dict[str, Any]] = None,
    ) -> TransactionEvent:
        """
        Move the flow to ``to_status`` and append a history event.

        Raises:
            InvalidTransitionError: If the transition is not in the table
        """
        from_status = self.current_status
        if not self.can_transition_to(to_status):
            raise InvalidTransitionError(
                from_status=from_status,
                to_status=to_status,
                message=f"Invalid transition from {from_status.value} to {to_status.value}. "
                        f"Allowed: {sorted(s.value for s in self.allowed_from(from_status))}",
            )

        self.flow.status = to_status
        event = self.flow.add_event(to_status, message, details)

        if to_status in TERMINAL_STATUSES:
            self.flow.completed_at = event.timestamp
        elif from_status in TERMINAL_STATUSES:
            self.flow.completed_at = None

        self.logger.info(f"Flow {self.flow.id}: {from_status.value} -> {to_status.value} ({message})")
        return event


def check_invariants(flow: TransactionFlow) -> None:
    """Assert the artefacts a status requires are present."""
    if flow.status in (S.SIGNING, S.BROADCASTING, S.CONFIRMING, S.COMPLETED) and flow.prepared_tx is None:
        raise AssertionError(f"Flow {flow.id} is {flow.status.value} without a prepared transaction")
    if flow.status in (S.BROADCASTING, S.CONFIRMING, S.COMPLETED) and flow.signed_tx is None:
        raise AssertionError(f"Flow {flow.id} is {flow.status.value} without a signed transaction")
    if flow.status == S.COMPLETED and flow.receipt is None:
        raise AssertionError(f"Flow {flow.id} is completed without a receipt")
