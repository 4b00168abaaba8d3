"""
Tests for the event bus: publish, listeners, replay, snapshots.
"""

from __future__ import annotations

from nodestack.core.services.event_bus import EventBus


class TestPublish:
    def test_sequence_increases(self, event_bus):
        a = event_bus.publish("task:progress", key="t1", data={"percentage": 1})
        b = event_bus.publish("task:progress", key="t1", data={"percentage": 2})
        assert b["seq"] == a["seq"] + 1
        assert a["v"] == 1
        assert a["data"] == {"percentage": 1}

    def test_recent_filters(self, event_bus):
        event_bus.publish("task:progress", key="t1")
        first = event_bus.publish("install:phase", data={"phase": "starting"})
        event_bus.publish("install:phase", data={"phase": "validating"})
        assert len(event_bus.recent("install:phase")) == 2
        assert [e["data"]["phase"] for e in event_bus.recent(since=first["seq"])] == ["validating"]

    def test_listener_called_and_removed(self, event_bus):
        seen = []
        remove = event_bus.add_listener(seen.append)
        event_bus.publish("install:start")
        remove()
        event_bus.publish("install:complete")
        assert [e["type"] for e in seen] == ["install:start"]

    def test_failing_listener_does_not_stop_publish(self, event_bus):
        def broken(event):
            raise RuntimeError("nope")

        seen = []
        event_bus.add_listener(broken)
        event_bus.add_listener(seen.append)
        event_bus.publish("install:start")
        assert len(seen) == 1


class TestSnapshot:
    def test_latest_per_key(self, event_bus):
        event_bus.publish("task:progress", key="t1", data={"percentage": 1})
        event_bus.publish("task:progress", key="t1", data={"percentage": 5})
        event_bus.publish("node:ready", key="kaspa-node", data={"endpoint": "x"})
        event_bus.publish("install:phase", key="install-1")
        snap = event_bus.snapshot()
        assert set(snap) == {"t1", "kaspa-node"}
        assert snap["t1"]["data"]["percentage"] == 5


class TestSubscribe:
    def test_fresh_subscriber_gets_snapshot_then_events(self, event_bus):
        stream = event_bus.subscribe(heartbeat_interval=0.05)
        assert next(stream)["type"] == "sys:ready"
        assert next(stream)["type"] == "state:snapshot"
        event_bus.publish("install:start", key="install-1")
        assert next(stream)["type"] == "install:start"
        assert next(stream)["type"] == "sys:heartbeat"
        assert event_bus.subscriber_count == 1
        stream.close()
        assert event_bus.subscriber_count == 0

    def test_heartbeat_delivered_once(self, event_bus):
        stream = event_bus.subscribe(heartbeat_interval=0.05)
        other = event_bus.subscribe(heartbeat_interval=60)
        next(stream), next(stream)
        next(other), next(other)

        beat = next(stream)
        assert beat["type"] == "sys:heartbeat"
        event_bus.publish("install:start", key="install-1")
        # the stream that produced the heartbeat does not see it again
        assert next(stream)["type"] == "install:start"
        assert next(stream)["seq"] > beat["seq"]
        # everyone else still hears it
        assert next(other)["seq"] == beat["seq"]
        stream.close()
        other.close()

    def test_reconnect_replays_missed(self, event_bus):
        first = event_bus.publish("task:progress", key="t1")
        event_bus.publish("task:progress", key="t1")
        event_bus.publish("task:complete", key="t1")
        stream = event_bus.subscribe(since=first["seq"])
        assert next(stream)["type"] == "sys:ready"
        replay = [next(stream)["type"], next(stream)["type"]]
        assert replay == ["task:progress", "task:complete"]
        stream.close()

    def test_too_far_behind_gets_snapshot(self):
        bus = EventBus(buffer_size=2)
        first = bus.publish("task:progress", key="t1")
        for _ in range(4):
            bus.publish("task:progress", key="t1")
        stream = bus.subscribe(since=first["seq"])
        next(stream)
        assert next(stream)["type"] == "state:snapshot"
        stream.close()
