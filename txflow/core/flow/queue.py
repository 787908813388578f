"""
Transaction queue.

Holds validated requests waiting to be turned into flows by the manager's
background drain.
"""

from abc import ABC, abstractmethod
from collections import OrderedDict
from typing import Dict, List, Optional

from .errors import ErrorCode
from .models import TransactionRequest
from .results import Result


class TransactionQueue(ABC):
    """FIFO of pending requests, keyed by request id."""

    @abstractmethod
    async def enqueue(self, request: TransactionRequest) -> Result[str]:
        ...

    @abstractmethod
    async def dequeue(self) -> Optional[TransactionRequest]:
        ...

    @abstractmethod
    async def peek(self) -> Optional[TransactionRequest]:
        ...

    @abstractmethod
    async def remove(self, request_id: str) -> bool:
        ...

    @abstractmethod
    async def size(self) -> int:
        ...

    @abstractmethod
    async def snapshot(self) -> List[TransactionRequest]:
        ...


class InMemoryTransactionQueue(TransactionQueue):
    """
    Bounded in-memory queue.

    An OrderedDict gives FIFO order with O(1) removal by id. A full queue
    rejects new work with QUEUE_FULL rather than dropping anything.
    """

    def __init__(self, max_size: int = 100):
        self.max_size = max_size
        self._items: "OrderedDict[str, TransactionRequest]" = OrderedDict()

    async def enqueue(self, request: TransactionRequest) -> Result[str]:
        if request.id in self._items:
            return Result.fail(
                ErrorCode.DUPLICATE_REQUEST,
                f"Request {request.id} is already queued",
                request_id=request.id,
            )
        if len(self._items) >= self.max_size:
            return Result.fail(
                ErrorCode.QUEUE_FULL,
                f"Transaction queue is full ({self.max_size})",
                max_size=self.max_size,
            )
        self._items[request.id] = request
        return Result.success(request.id)

    async def dequeue(self) -> Optional[TransactionRequest]:
        if not self._items:
            return None
        _, request = self._items.popitem(last=False)
        return request

    async def peek(self) -> Optional[TransactionRequest]:
        if not self._items:
            return None
        return next(iter(self._items.values()))

    async def remove(self, request_id: str) -> bool:
        return self._items.pop(request_id, None) is not None

    async def size(self) -> int:
        return len(self._items)

    async def snapshot(self) -> List[TransactionRequest]:
        return list(self._items.values())

    def stats(self) -> Dict[str, int]:
        return {"size": len(self._items), "maxSize": self.max_size}
