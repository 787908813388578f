"""
Tests for the EventBus.
"""

from unittest.mock import AsyncMock

import pytest

from txflow.core.flow import EventBus, FlowEventType


@pytest.fixture
def bus() -> EventBus:
    return EventBus(history_size=10)


class TestListeners:

    @pytest.mark.asyncio
    async def test_sync_and_async_listeners_in_order(self, bus: EventBus):
        calls = []
        async_listener = AsyncMock(side_effect=lambda e: calls.append("async"))

        bus.on(FlowEventType.FLOW_CREATED, lambda e: calls.append("sync"))
        bus.on(FlowEventType.FLOW_CREATED, async_listener)
        bus.on(None, lambda e: calls.append("any"))

        event = await bus.emit(FlowEventType.FLOW_CREATED, "flow_1", request_id="req_1")

        assert calls == ["sync", "async", "any"]
        async_listener.assert_awaited_once_with(event)
        assert event.flow_id == "flow_1"
        assert event.payload == {"request_id": "req_1"}

    @pytest.mark.asyncio
    async def test_listener_filtered_by_type(self, bus: EventBus):
        seen = []
        bus.on(FlowEventType.FLOW_FAILED, seen.append)

        await bus.emit(FlowEventType.FLOW_CREATED, "flow_1")
        assert seen == []

    @pytest.mark.asyncio
    async def test_failing_listener_does_not_stop_others(self, bus: EventBus):
        seen = []

        def broken(event):
            raise RuntimeError("listener bug")

        bus.on(FlowEventType.FLOW_COMPLETED, broken)
        bus.on(FlowEventType.FLOW_COMPLETED, seen.append)

        await bus.emit(FlowEventType.FLOW_COMPLETED, "flow_1")
        assert len(seen) == 1

    @pytest.mark.asyncio
    async def test_off_removes_listener(self, bus: EventBus):
        seen = []
        bus.on(FlowEventType.FLOW_CREATED, seen.append)
        bus.off(FlowEventType.FLOW_CREATED, seen.append)

        await bus.emit(FlowEventType.FLOW_CREATED)
        assert seen == []


class TestSubscriptions:

    @pytest.mark.asyncio
    async def test_subscription_receives_matching_events(self, bus: EventBus):
        sub = bus.subscribe([FlowEventType.FLOW_CANCELLED])

        await bus.emit(FlowEventType.FLOW_CREATED, "flow_1")
        await bus.emit(FlowEventType.FLOW_CANCELLED, "flow_1", reason="no")

        event = await sub.get()
        assert event.type == FlowEventType.FLOW_CANCELLED
        assert sub.drain() == []

    @pytest.mark.asyncio
    async def test_full_subscription_drops_oldest(self, bus: EventBus):
        sub = bus.subscribe(maxsize=2)
        for i in range(3):
            await bus.emit(FlowEventType.STATUS_CHANGED, f"flow_{i}")

        assert sub.dropped == 1
        assert [e.flow_id for e in sub.drain()] == ["flow_1", "flow_2"]

    @pytest.mark.asyncio
    async def test_unsubscribe(self, bus: EventBus):
        sub = bus.subscribe()
        bus.unsubscribe(sub)

        await bus.emit(FlowEventType.FLOW_CREATED)
        assert sub.drain() == []


class TestHistory:

    @pytest.mark.asyncio
    async def test_history_is_bounded_and_filterable(self, bus: EventBus):
        for i in range(12):
            await bus.emit(FlowEventType.STATUS_CHANGED, f"flow_{i}")
        await bus.emit(FlowEventType.FLOW_FAILED, "flow_x")

        assert len(bus.history(limit=100)) == 10
        failed = bus.history(event_type=FlowEventType.FLOW_FAILED)
        assert [e.flow_id for e in failed] == ["flow_x"]
        assert failed[0].to_dict()["type"] == "flow:failed"
