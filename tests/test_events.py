"""Unit tests for propagation events."""

import asyncio
import json
from datetime import datetime

import pytest

from events import EventAction, EventBus, PolicyEvent

# ==================== EventAction tests ====================


class TestEventAction:
    """Tests for the EventAction enum."""

    def test_values(self):
        assert EventAction.DISABLED.value == "DISABLED"
        assert EventAction.PROPAGATED.value == "PROPAGATED"
        assert EventAction.UPDATED.value == "UPDATED"

    def test_all_members(self):
        assert len(EventAction) == 3


# ==================== PolicyEvent tests ====================


class TestPolicyEvent:
    """Tests for the PolicyEvent dataclass."""

    def test_disabled(self):
        event = PolicyEvent.disabled("ns1", "pol-a")
        assert event.action == EventAction.DISABLED
        assert event.message == "Policy ns1/pol-a was disabled"
        assert event.cluster_name is None
        assert event.cluster_namespace is None
        assert event.event_type == "Normal"
        assert event.reason == "PolicyPropagation"

    def test_propagated(self):
        event = PolicyEvent.propagated("ns1", "pol-a", "c1-ns", "c1")
        assert event.action == EventAction.PROPAGATED
        assert event.message == "Policy ns1/pol-a was propagated to cluster c1-ns/c1"
        assert event.cluster_name == "c1"
        assert event.cluster_namespace == "c1-ns"

    def test_updated(self):
        event = PolicyEvent.updated("ns1", "pol-a", "c1-ns", "c1")
        assert event.action == EventAction.UPDATED
        assert event.message == "Policy ns1/pol-a was updated for cluster c1-ns/c1"

    def test_timestamp_iso8601(self):
        event = PolicyEvent.disabled("ns1", "pol-a")
        assert event.timestamp.endswith("Z")
        datetime.fromisoformat(event.timestamp.rstrip("Z"))

    def test_to_json(self):
        event = PolicyEvent.propagated("ns1", "pol-a", "c1", "c1")
        parsed = json.loads(event.to_json())
        assert parsed["action"] == "PROPAGATED"
        assert parsed["policy_namespace"] == "ns1"
        assert parsed["policy_name"] == "pol-a"
        assert parsed["cluster_name"] == "c1"
        assert parsed["message"] == event.message


# ==================== EventBus tests ====================


async def read_all(stream):
    return [event async for event in stream]


@pytest.mark.asyncio
class TestEventBus:
    """Tests for delivering propagation events to listeners."""

    async def test_record_without_listeners(self):
        await EventBus().record(PolicyEvent.disabled("ns1", "pol-a"))

    async def test_listener_reads_events_in_order(self):
        bus = EventBus()
        listener_id, stream = await bus.subscribe()

        await bus.record(PolicyEvent.propagated("ns1", "pol-a", "c1", "c1"))
        await bus.record(PolicyEvent.updated("ns1", "pol-a", "c2", "c2"))
        await bus.unsubscribe(listener_id)

        events = await read_all(stream)
        assert [e.action for e in events] == [
            EventAction.PROPAGATED,
            EventAction.UPDATED,
        ]
        assert events[1].cluster_name == "c2"

    async def test_every_listener_gets_a_copy(self):
        bus = EventBus()
        first_id, first = await bus.subscribe()
        second_id, second = await bus.subscribe()

        await bus.record(PolicyEvent.disabled("ns1", "pol-a"))
        await bus.unsubscribe(first_id)
        await bus.unsubscribe(second_id)

        assert len(await read_all(first)) == 1
        assert len(await read_all(second)) == 1

    async def test_unsubscribed_listener_gets_nothing_new(self):
        bus = EventBus()
        listener_id, stream = await bus.subscribe()
        await bus.unsubscribe(listener_id)

        await bus.record(PolicyEvent.disabled("ns1", "pol-a"))

        assert await read_all(stream) == []

    async def test_full_listener_drops_new_events(self, caplog):
        bus = EventBus(queue_size=2)
        listener_id, stream = await bus.subscribe()

        for cluster in ("c1", "c2", "c3"):
            await bus.record(PolicyEvent.propagated("ns1", "pol-a", cluster, cluster))

        assert "dropped event: Policy ns1/pol-a was propagated to cluster c3/c3" in (
            caplog.text
        )
        await bus.unsubscribe(listener_id)
        events = await read_all(stream)
        assert [e.cluster_name for e in events] == ["c1", "c2"]

    async def test_unsubscribe_on_full_queue_keeps_queued_events(self):
        bus = EventBus(queue_size=1)
        listener_id, stream = await bus.subscribe()
        await bus.record(PolicyEvent.disabled("ns1", "pol-a"))

        await asyncio.wait_for(bus.unsubscribe(listener_id), timeout=1)

        events = await asyncio.wait_for(read_all(stream), timeout=1)
        assert [e.message for e in events] == ["Policy ns1/pol-a was disabled"]

    async def test_unsubscribe_unknown_listener(self):
        await EventBus().unsubscribe("missing")
