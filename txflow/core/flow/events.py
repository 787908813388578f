"""In-process event bus for flow lifecycle notifications."""

import asyncio
import inspect
import logging
from collections import deque
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any, Awaitable, Callable, Deque, Dict, Iterable, List, Optional, Set, Union

from .models import utcnow


logger = logging.getLogger(__name__)


class FlowEventType(str, Enum):
    FLOW_CREATED = "flow:created"
    CONFIRMATION_NEEDED = "confirmation:needed"
    CONFIRMATION_REQUESTED = "confirmation:requested"
    STATUS_CHANGED = "flow:status:changed"
    FLOW_COMPLETED = "flow:completed"
    FLOW_FAILED = "flow:failed"
    FLOW_CANCELLED = "flow:cancelled"
    RETRY_SCHEDULED = "flow:retry:scheduled"
    STATISTICS_UPDATED = "statistics:updated"
    WALLET_CONNECTED = "wallet:connected"
    TRANSACTION_QUEUED = "transaction:queued"


@dataclass
class FlowEvent:
    type: FlowEventType
    payload: Dict[str, Any] = field(default_factory=dict)
    flow_id: Optional[str] = None
    timestamp: datetime = field(default_factory=utcnow)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "type": self.type.value,
            "flowId": self.flow_id,
            "payload": self.payload,
            "timestamp": self.timestamp.isoformat(),
        }


Listener = Callable[[FlowEvent], Union[None, Awaitable[None]]]


class Subscription:
    """A bounded channel of events for one consumer."""

    def __init__(self, event_types: Optional[Iterable[FlowEventType]], maxsize: int):
        self.event_types: Optional[Set[FlowEventType]] = set(event_types) if event_types else None
        self.queue: asyncio.Queue = asyncio.Queue(maxsize=maxsize)
        self.dropped = 0

    def wants(self, event: FlowEvent) -> bool:
        return self.event_types is None or event.type in self.event_types

    def deliver(self, event: FlowEvent) -> None:
        # A full channel sheds its oldest event; publishers never block.
        if self.queue.full():
            self.queue.get_nowait()
            self.dropped += 1
            logger.warning(f"Event subscriber lagging, dropped oldest event ({self.dropped} total)")
        self.queue.put_nowait(event)

    async def get(self) -> FlowEvent:
        return await self.queue.get()

    def get_nowait(self) -> FlowEvent:
        return self.queue.get_nowait()

    def drain(self) -> List[FlowEvent]:
        events = []
        while not self.queue.empty():
            events.append(self.queue.get_nowait())
        return events


class EventBus:
    """
    Publishes FlowEvents to listeners and subscriber channels.

    Listeners registered with ``on`` run in registration order; a failing
    listener is logged and does not affect the others or the publisher.
    """

    def __init__(self, history_size: int = 1000):
        self._listeners: Dict[FlowEventType, List[Listener]] = {}
        self._any_listeners: List[Listener] = []
        self._subscriptions: List[Subscription] = []
        self._history: Deque[FlowEvent] = deque(maxlen=history_size)

    def on(self, event_type: Optional[FlowEventType], callback: Listener) -> None:
        """Register a listener for one event type, or all when ``None``."""
        if event_type is None:
            self._any_listeners.append(callback)
        else:
            self._listeners.setdefault(FlowEventType(event_type), []).append(callback)

    def off(self, event_type: Optional[FlowEventType], callback: Listener) -> None:
        listeners = self._any_listeners if event_type is None else self._listeners.get(event_type, [])
        if callback in listeners:
            listeners.remove(callback)

    def subscribe(
        self,
        event_types: Optional[Iterable[FlowEventType]] = None,
        maxsize: int = 256,
    ) -> Subscription:
        subscription = Subscription(event_types, maxsize)
        self._subscriptions.append(subscription)
        return subscription

    def unsubscribe(self, subscription: Subscription) -> None:
        if subscription in self._subscriptions:
            self._subscriptions.remove(subscription)

    async def publish(self, event: FlowEvent) -> None:
        self._history.append(event)

        for subscription in self._subscriptions:
            if subscription.wants(event):
                subscription.deliver(event)

        for callback in [*self._listeners.get(event.type, []), *self._any_listeners]:
            try:
                outcome = callback(event)
                if inspect.isawaitable(outcome):
                    await outcome
            except Exception as e:  # noqa: BLE001
                logger.error(f"Event listener error on '{event.type.value}': {e}")

    async def emit(
        self,
        event_type: FlowEventType,
        flow_id: Optional[str] = None,
        **payload: Any,
    ) -> FlowEvent:
        event = FlowEvent(type=event_type, payload=payload, flow_id=flow_id)
        await self.publish(event)
        return event

    def history(self, limit: int = 50, event_type: Optional[FlowEventType] = None) -> List[FlowEvent]:
        events = list(self._history)
        if event_type:
            events = [e for e in events if e.type == event_type]
        return events[-limit:]
