"""
Flow persistence.

TransactionStore is the durable record of every flow. The in-memory
implementation keeps secondary indices and statistics counters up to date
on every write so that queries never scan the whole table.
"""

import copy
from abc import ABC, abstractmethod
from dataclasses import dataclass
from typing import Dict, List, Optional, Set

from .models import TransactionFlow, TransactionStatistics, TransactionStatus


class TransactionStore(ABC):
    """Persistence port for TransactionFlow records keyed by flow id."""

    @abstractmethod
    async def save(self, flow: TransactionFlow) -> None:
        """Insert or replace a flow."""

    @abstractmethod
    async def load(self, flow_id: str) -> Optional[TransactionFlow]:
        ...

    @abstractmethod
    async def update(self, flow: TransactionFlow) -> bool:
        """Replace an existing flow. Returns False if it was never saved."""

    @abstractmethod
    async def delete(self, flow_id: str) -> bool:
        ...

    @abstractmethod
    async def find_by_status(self, status: TransactionStatus) -> List[TransactionFlow]:
        ...

    @abstractmethod
    async def find_by_user(self, user_id: str) -> List[TransactionFlow]:
        ...

    @abstractmethod
    async def get_statistics(self) -> TransactionStatistics:
        ...

    async def close(self) -> None:
        return None


@dataclass(frozen=True)
class FlowContribution:
    """What one stored flow adds to the aggregate counters."""
    status: TransactionStatus
    tx_type: str
    user_id: Optional[str]
    gas_used: int
    gas_cost_wei: int
    latency_seconds: float

    @classmethod
    def of(cls, flow: TransactionFlow) -> "FlowContribution":
        gas_used = gas_cost = 0
        latency = 0.0
        if flow.status == TransactionStatus.COMPLETED and flow.receipt is not None:
            gas_used = flow.receipt.gas_used
            gas_cost = flow.receipt.gas_cost_wei
            if flow.completed_at:
                latency = (flow.completed_at - flow.created_at).total_seconds()
        return cls(
            status=flow.status,
            tx_type=flow.request.type.value,
            user_id=flow.user_id,
            gas_used=gas_used,
            gas_cost_wei=gas_cost,
            latency_seconds=latency,
        )


def apply_contribution(stats: TransactionStatistics, item: FlowContribution, sign: int) -> None:
    stats.total += sign
    stats.by_type[item.tx_type] = stats.by_type.get(item.tx_type, 0) + sign
    if stats.by_type[item.tx_type] == 0:
        del stats.by_type[item.tx_type]

    if item.status == TransactionStatus.COMPLETED:
        stats.successful += sign
        stats.total_gas_used += sign * item.gas_used
        stats.total_gas_spent_wei += sign * item.gas_cost_wei
        stats.total_confirmation_seconds += sign * item.latency_seconds
    elif item.status == TransactionStatus.FAILED:
        stats.failed += sign
    elif item.status == TransactionStatus.CANCELLED:
        stats.cancelled += sign
    else:
        stats.pending += sign


class InMemoryTransactionStore(TransactionStore):
    """Dictionary-backed store with by-user and by-status indices."""

    def __init__(self):
        self._flows: Dict[str, TransactionFlow] = {}
        self._contributions: Dict[str, FlowContribution] = {}
        self._by_user: Dict[str, Set[str]] = {}
        self._by_status: Dict[TransactionStatus, Set[str]] = {}
        self._stats = TransactionStatistics()

    def _unindex(self, flow_id: str) -> None:
        previous = self._contributions.pop(flow_id, None)
        if previous is None:
            return
        apply_contribution(self._stats, previous, -1)
        self._by_status.get(previous.status, set()).discard(flow_id)
        if previous.user_id:
            ids = self._by_user.get(previous.user_id)
            if ids is not None:
                ids.discard(flow_id)
                if not ids:
                    del self._by_user[previous.user_id]

    def _index(self, flow: TransactionFlow) -> None:
        item = FlowContribution.of(flow)
        self._contributions[flow.id] = item
        apply_contribution(self._stats, item, 1)
        self._by_status.setdefault(item.status, set()).add(flow.id)
        if item.user_id:
            self._by_user.setdefault(item.user_id, set()).add(flow.id)

    async def save(self, flow: TransactionFlow) -> None:
        self._unindex(flow.id)
        self._flows[flow.id] = copy.deepcopy(flow)
        self._index(flow)

    async def load(self, flow_id: str) -> Optional[TransactionFlow]:
        flow = self._flows.get(flow_id)
        return copy.deepcopy(flow) if flow is not None else None

    async def update(self, flow: TransactionFlow) -> bool:
        if flow.id not in self._flows:
            return False
        await self.save(flow)
        return True

    async def delete(self, flow_id: str) -> bool:
        if flow_id not in self._flows:
            return False
        self._unindex(flow_id)
        del self._flows[flow_id]
        return True

    def _collect(self, ids: Set[str]) -> List[TransactionFlow]:
        flows = [copy.deepcopy(self._flows[i]) for i in ids]
        flows.sort(key=lambda f: f.created_at)
        return flows

    async def find_by_status(self, status: TransactionStatus) -> List[TransactionFlow]:
        return self._collect(self._by_status.get(status, set()))

    async def find_by_user(self, user_id: str) -> List[TransactionFlow]:
        return self._collect(self._by_user.get(user_id, set()))

    async def get_statistics(self) -> TransactionStatistics:
        return self._stats.copy()

    def __len__(self) -> int:
        return len(self._flows)
