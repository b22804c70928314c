"""Unit tests for event streaming."""

import asyncio
import json
from datetime import datetime
from unittest.mock import MagicMock

import pytest

from events import (
    EventBus,
    EventRecorder,
    EventSubscription,
    EventType,
    ReconcileEvent,
)


def make_event(event_type=EventType.UPDATED, name="backend-listener", timestamp="t"):
    return ReconcileEvent(
        event_type=event_type,
        kind="Deployment",
        namespace="3scale",
        name=name,
        reason="ObjectUpdated",
        message="",
        timestamp=timestamp,
    )


# ==================== EventType tests ====================


class TestEventType:
    """Tests for the EventType enum."""

    def test_values_match_names(self):
        for member in EventType:
            assert member.value == member.name

    def test_all_members(self):
        assert {e.value for e in EventType} == {
            "CREATED",
            "UPDATED",
            "RECONCILED",
            "REQUEUED",
            "FAILED",
        }


# ==================== ReconcileEvent tests ====================


class TestReconcileEvent:
    """Tests for the ReconcileEvent dataclass."""

    @pytest.fixture
    def sample_event(self):
        return ReconcileEvent(
            event_type=EventType.CREATED,
            kind="ServiceAccount",
            namespace="3scale",
            name="amp",
            reason="ObjectCreated",
            message="",
            timestamp="2024-01-15T10:30:00Z",
        )

    def test_to_sse_format(self, sample_event):
        sse = sample_event.to_sse()
        lines = sse.split("\n")
        assert lines[0] == "event: CREATED"
        assert lines[1].startswith("data: ")
        # Ends with double newline
        assert sse.endswith("\n\n")

    def test_to_sse_json_valid(self, sample_event):
        sse = sample_event.to_sse()
        data_line = sse.split("\n")[1]
        parsed = json.loads(data_line[len("data: ") :])
        assert parsed == {
            "event_type": "CREATED",
            "kind": "ServiceAccount",
            "namespace": "3scale",
            "name": "amp",
            "reason": "ObjectCreated",
            "message": "",
            "timestamp": "2024-01-15T10:30:00Z",
        }

    def test_create(self):
        event = ReconcileEvent.create(
            EventType.FAILED, "APIManager", "3scale", "example", "ReconcileFailed", "boom"
        )
        assert event.event_type == EventType.FAILED
        assert event.kind == "APIManager"
        assert event.message == "boom"
        assert event.timestamp.endswith("Z")

    def test_create_timestamp_iso8601(self):
        event = ReconcileEvent.create(EventType.UPDATED, "Deployment", "ns", "d", "r")
        # Should be parseable as ISO 8601 (strip trailing Z)
        datetime.fromisoformat(event.timestamp.rstrip("Z"))


# ==================== EventSubscription tests ====================


@pytest.mark.asyncio
class TestEventSubscription:
    """Tests for the EventSubscription async iterator."""

    async def test_async_iteration(self):
        queue = asyncio.Queue()
        sub = EventSubscription(queue)

        event = make_event()
        await queue.put(event)
        await queue.put(None)  # Sentinel to stop

        received = [e async for e in sub]

        assert received == [event]

    async def test_filter_fn_applied(self):
        queue = asyncio.Queue()
        sub = EventSubscription(
            queue, filter_fn=lambda e: e.event_type == EventType.FAILED
        )

        await queue.put(make_event(EventType.UPDATED))
        await queue.put(make_event(EventType.FAILED))
        await queue.put(None)

        received = [e async for e in sub]

        assert len(received) == 1
        assert received[0].event_type == EventType.FAILED

    async def test_sentinel_stops_iteration(self):
        queue = asyncio.Queue()
        sub = EventSubscription(queue)
        await queue.put(None)

        received = [e async for e in sub]

        assert received == []


# ==================== EventBus tests ====================


@pytest.mark.asyncio
class TestEventBus:
    """Tests for the EventBus pub/sub system."""

    @pytest.fixture
    def bus(self):
        return EventBus(queue_size=16)

    async def test_publish_no_subscribers(self, bus):
        """Publishing with no subscribers does not raise."""
        bus.publish(make_event())

    async def test_subscribe_returns_id_and_subscription(self, bus):
        subscriber_id, subscription = bus.subscribe()
        assert isinstance(subscriber_id, str)
        assert isinstance(subscription, EventSubscription)

    async def test_multiple_subscribers_all_receive(self, bus):
        event = make_event()
        _, sub1 = bus.subscribe()
        _, sub2 = bus.subscribe()

        bus.publish(event)

        e1 = await asyncio.wait_for(sub1.__anext__(), timeout=1.0)
        e2 = await asyncio.wait_for(sub2.__anext__(), timeout=1.0)
        assert e1 is event
        assert e2 is event

    async def test_unsubscribe_sends_sentinel(self, bus):
        sid, sub = bus.subscribe()
        bus.unsubscribe(sid)

        received = [e async for e in sub]

        assert received == []
        assert bus.subscriber_count() == 0

    async def test_full_queue_drops_event(self):
        bus = EventBus(queue_size=1)
        _, sub = bus.subscribe()
        first = make_event(timestamp="t1")

        bus.publish(first)
        # This should be dropped silently
        bus.publish(make_event(timestamp="t2"))

        event = await asyncio.wait_for(sub.__anext__(), timeout=1.0)
        assert event is first

    async def test_subscriber_count(self, bus):
        assert bus.subscriber_count() == 0

        sid1, _ = bus.subscribe()
        sid2, _ = bus.subscribe()
        assert bus.subscriber_count() == 2

        bus.unsubscribe(sid1)
        assert bus.subscriber_count() == 1

        bus.unsubscribe(sid2)
        assert bus.subscriber_count() == 0

    async def test_filtered_subscription(self, bus):
        _, sub = bus.subscribe(filter_fn=lambda e: e.name == "system-app")

        bus.publish(make_event(name="backend-worker"))
        bus.publish(make_event(name="system-app"))

        received = await asyncio.wait_for(sub.__anext__(), timeout=1.0)
        assert received.name == "system-app"

    async def test_unsubscribe_nonexistent_is_noop(self, bus):
        bus.unsubscribe("nonexistent-id")
        assert bus.subscriber_count() == 0


# ==================== EventRecorder tests ====================


@pytest.mark.asyncio
class TestEventRecorder:
    """Tests for the write-only recorder handed to reconcilers."""

    async def test_records_to_bus(self):
        bus = EventBus()
        _, sub = bus.subscribe()
        recorder = EventRecorder(bus)

        recorder.record(EventType.CREATED, "ConfigMap", "3scale", "cm", "ObjectCreated")

        event = await asyncio.wait_for(sub.__anext__(), timeout=1.0)
        assert event.event_type == EventType.CREATED
        assert event.kind == "ConfigMap"
        assert event.reason == "ObjectCreated"

    async def test_without_bus_is_noop(self):
        EventRecorder().record(EventType.FAILED, "APIManager", "ns", "n", "Failed")

    async def test_publish_failure_does_not_raise(self):
        bus = MagicMock()
        bus.publish.side_effect = RuntimeError("closed")

        EventRecorder(bus).record(EventType.UPDATED, "Deployment", "ns", "d", "r")

        bus.publish.assert_called_once()
