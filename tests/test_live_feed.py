"""Tests for the manager live feed broadcaster."""

import asyncio
import json

import pytest

from qc_monitor.live_feed import LiveFeedBroadcaster, StreamConnection, encode_event


class StatusProvider:
    def __init__(self, fail=False):
        self.calls = 0
        self.fail = fail

    async def __call__(self, connections):
        self.calls += 1
        if self.fail:
            raise RuntimeError("datastore down")
        return {"summary": {"active_tests": 0}, "connections": connections}


def parse(frame):
    event_line, data_line = frame.strip().split("\n")
    return event_line.removeprefix("event: "), json.loads(data_line.removeprefix("data: "))


@pytest.fixture
def status():
    return StatusProvider()


@pytest.fixture
async def feed(status):
    broadcaster = LiveFeedBroadcaster(status, snapshot_interval=0.05, heartbeat_interval=0.05)
    yield broadcaster
    broadcaster.close_all()


# ============================================================
# FRAMES AND CONNECTIONS
# ============================================================


class TestEncoding:
    def test_encode_event(self):
        frame = encode_event("heartbeat", {"timestamp": "2024-01-01T00:00:00Z"})
        assert frame == 'event: heartbeat\ndata: {"timestamp": "2024-01-01T00:00:00Z"}\n\n'


class TestStreamConnection:
    async def test_full_queue_rejects_writes(self):
        connection = StreamConnection("c1", "mgr1", "Mia", queue_size=2)
        assert connection.write("a")
        assert connection.write("b")
        assert not connection.write("c")

    async def test_closed_connection_rejects_writes(self):
        connection = StreamConnection("c1", "mgr1", "Mia")
        connection.close()
        assert not connection.write("a")

    async def test_stream_ends_on_close(self):
        connection = StreamConnection("c1", "mgr1", "Mia")
        connection.write("one")
        connection.write("two")

        async def consume():
            return [frame async for frame in connection.stream()]

        task = asyncio.create_task(consume())
        await asyncio.sleep(0.01)
        connection.close()
        frames = await asyncio.wait_for(task, timeout=1)
        assert frames == ["one", "two"]


# ============================================================
# SUBSCRIBERS AND SERVICE LIFECYCLE
# ============================================================


class TestSubscribe:
    async def test_first_subscriber_starts_service(self, feed):
        assert not feed.is_running
        await feed.subscribe("c1", "mgr1", "Mia")
        assert feed.is_running

    async def test_initial_frame_carries_status(self, feed):
        connection = await feed.subscribe("c1", "mgr1", "Mia")
        event, data = parse(connection.drain()[0])
        assert event == "initial"
        assert data["connections"] == 1

    async def test_last_unsubscribe_stops_service(self, feed):
        await feed.subscribe("c1", "mgr1", "Mia")
        await feed.subscribe("c2", "adm1", "Ada")

        assert feed.unsubscribe("c1")
        assert feed.is_running
        assert feed.unsubscribe("c2")
        assert not feed.is_running
        assert not feed.unsubscribe("c2")

    async def test_resubscribe_replaces_connection(self, feed):
        first = await feed.subscribe("c1", "mgr1", "Mia")
        second = await feed.subscribe("c1", "mgr1", "Mia")
        assert first.closed
        assert feed.connections["c1"] is second

    async def test_stale_stream_cannot_remove_its_replacement(self, feed):
        first = await feed.subscribe("c1", "mgr1", "Mia")
        second = await feed.subscribe("c1", "mgr1", "Mia")

        assert not feed.unsubscribe("c1", first)
        assert feed.connections["c1"] is second
        assert not second.closed
        assert feed.is_running

        assert feed.unsubscribe("c1", second)
        assert not feed.is_running

    async def test_initial_failure_keeps_connection(self):
        feed = LiveFeedBroadcaster(StatusProvider(fail=True), snapshot_interval=60)
        connection = await feed.subscribe("c1", "mgr1", "Mia")
        assert connection.drain() == []
        assert "c1" in feed.connections
        feed.close_all()


# ============================================================
# BROADCASTING
# ============================================================


class TestBroadcast:
    async def test_periodic_updates_and_heartbeats(self, feed):
        connection = await feed.subscribe("c1", "mgr1", "Mia")
        await asyncio.sleep(0.18)
        events = [parse(frame)[0] for frame in connection.drain()]
        assert events[0] == "initial"
        assert events.count("update") >= 2
        assert events.count("heartbeat") >= 2

    async def test_no_updates_after_service_stops(self, feed, status):
        await feed.subscribe("c1", "mgr1", "Mia")
        feed.unsubscribe("c1")
        calls = status.calls
        await asyncio.sleep(0.15)
        assert status.calls == calls

    async def test_dead_connection_is_dropped(self, feed):
        alive = await feed.subscribe("c1", "mgr1", "Mia")
        dead = await feed.subscribe("c2", "adm1", "Ada")
        dead.closed = True

        written = feed.broadcast("update", {"x": 1})

        assert written == 1
        assert "c2" not in feed.connections
        assert "c1" in feed.connections
        assert alive.pending == 2

    async def test_notify_event(self, feed):
        connection = await feed.subscribe("c1", "mgr1", "Mia")
        connection.drain()

        written = feed.notify_event("test_overdue", {"title": "Quality test overdue"})

        assert written == 1
        event, data = parse(connection.drain()[0])
        assert event == "event"
        assert data["type"] == "test_overdue"
        assert data["data"]["title"] == "Quality test overdue"
        assert data["timestamp"].endswith("Z")

    async def test_notify_without_subscribers(self, feed):
        assert feed.notify_event("test_overdue", {}) == 0

    async def test_heartbeat_updates_timestamp(self, feed):
        connection = await feed.subscribe("c1", "mgr1", "Mia")
        before = connection.last_heartbeat
        await asyncio.sleep(0.01)
        feed.send_heartbeat()
        assert connection.last_heartbeat > before

    async def test_update_loop_survives_errors(self, status):
        status.fail = True
        feed = LiveFeedBroadcaster(status, snapshot_interval=0.03, heartbeat_interval=60)
        await feed.subscribe("c1", "mgr1", "Mia")
        await asyncio.sleep(0.12)
        assert status.calls >= 3
        assert feed.is_running
        feed.close_all()

    async def test_stats(self, feed):
        await feed.subscribe("c1", "mgr1", "Mia")
        stats = feed.stats()
        assert stats["connections_active"] == 1
        assert stats["is_running"] is True
        assert stats["connections"][0]["subscriber_name"] == "Mia"
