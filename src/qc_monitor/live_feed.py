"""
Manager live feed over Server-Sent Events.

Each open stream is a ``StreamConnection`` backed by a bounded queue of
encoded frames. While at least one stream is open the broadcaster pushes a
full system snapshot every few seconds plus a periodic heartbeat; the last
disconnect stops both loops.
"""

import asyncio
import contextlib
import json
import logging
from collections.abc import AsyncIterator, Awaitable, Callable
from datetime import datetime
from typing import Any

from .models import format_ts, utcnow

logger = logging.getLogger(__name__)

StatusProvider = Callable[[int], Awaitable[dict[str, Any]]]

DEFAULT_SNAPSHOT_INTERVAL = 5
DEFAULT_HEARTBEAT_INTERVAL = 30
DEFAULT_QUEUE_SIZE = 100


def encode_event(event: str, data: Any) -> str:
    return f"event: {event}\ndata: {json.dumps(data, default=str)}\n\n"


# ============================================================
# CONNECTION
# ============================================================


class StreamConnection:
    def __init__(
        self,
        connection_id: str,
        subscriber_id: str,
        subscriber_name: str,
        queue_size: int = DEFAULT_QUEUE_SIZE,
    ):
        self.id = connection_id
        self.subscriber_id = subscriber_id
        self.subscriber_name = subscriber_name
        self.connected_at: datetime = utcnow()
        self.last_heartbeat: datetime = self.connected_at
        self.closed = False
        self._queue: asyncio.Queue[str | None] = asyncio.Queue(maxsize=queue_size)

    @property
    def pending(self) -> int:
        return self._queue.qsize()

    def write(self, frame: str) -> bool:
        """Queue a frame. False means the stream is gone or not keeping up."""
        if self.closed:
            return False
        try:
            self._queue.put_nowait(frame)
        except asyncio.QueueFull:
            return False
        return True

    def close(self):
        if self.closed:
            return
        self.closed = True
        with contextlib.suppress(asyncio.QueueFull):
            self._queue.put_nowait(None)

    def drain(self) -> list[str]:
        """Frames queued but not yet streamed."""
        frames = []
        while not self._queue.empty():
            frame = self._queue.get_nowait()
            if frame is not None:
                frames.append(frame)
        return frames

    async def stream(self) -> AsyncIterator[str]:
        try:
            while True:
                frame = await self._queue.get()
                if frame is None or self.closed:
                    break
                yield frame
        finally:
            self.closed = True


# ============================================================
# BROADCASTER
# ============================================================


class LiveFeedBroadcaster:
    """Owns the set of open live-feed streams."""

    def __init__(
        self,
        status_provider: StatusProvider,
        snapshot_interval: float = DEFAULT_SNAPSHOT_INTERVAL,
        heartbeat_interval: float = DEFAULT_HEARTBEAT_INTERVAL,
        queue_size: int = DEFAULT_QUEUE_SIZE,
    ):
        self._status_provider = status_provider
        self.snapshot_interval = snapshot_interval
        self.heartbeat_interval = heartbeat_interval
        self.queue_size = queue_size
        self.connections: dict[str, StreamConnection] = {}
        self._update_task: asyncio.Task | None = None
        self._heartbeat_task: asyncio.Task | None = None

    @property
    def is_running(self) -> bool:
        return self._update_task is not None

    async def subscribe(
        self, connection_id: str, subscriber_id: str, subscriber_name: str
    ) -> StreamConnection:
        connection = StreamConnection(
            connection_id, subscriber_id, subscriber_name, queue_size=self.queue_size
        )
        previous = self.connections.pop(connection_id, None)
        if previous is not None:
            previous.close()
        self.connections[connection_id] = connection
        logger.info(
            "Live feed: %s connected (%d active)", subscriber_name, len(self.connections)
        )

        if not self.is_running:
            self.start_service()

        await self.send_initial(connection_id)
        return connection

    def unsubscribe(
        self, connection_id: str, connection: StreamConnection | None = None
    ) -> bool:
        """Drop a stream. When ``connection`` is given, only that exact stream is removed."""
        current = self.connections.get(connection_id)
        if current is None or (connection is not None and current is not connection):
            if connection is not None:
                connection.close()
            return False
        connection = self.connections.pop(connection_id)
        connection.close()
        logger.info("Live feed: %s disconnected", connection.subscriber_name)
        if not self.connections:
            self.stop_service()
        return True

    def start_service(self):
        if self.is_running:
            return
        self._update_task = asyncio.create_task(self._update_loop())
        self._heartbeat_task = asyncio.create_task(self._heartbeat_loop())
        logger.info("Live feed broadcaster started")

    def stop_service(self):
        if not self.is_running:
            return
        for task in (self._update_task, self._heartbeat_task):
            if task is not None and not task.done():
                task.cancel()
        self._update_task = None
        self._heartbeat_task = None
        logger.info("Live feed broadcaster stopped")

    def close_all(self):
        for connection_id in list(self.connections):
            self.unsubscribe(connection_id)
        self.stop_service()

    async def send_initial(self, connection_id: str) -> bool:
        try:
            status = await self._status_provider(len(self.connections))
        except Exception:
            logger.exception("Failed to build initial live feed data")
            return False
        return self.send_to_connection(connection_id, "initial", status)

    def send_to_connection(self, connection_id: str, event: str, data: Any) -> bool:
        connection = self.connections.get(connection_id)
        if connection is None:
            return False
        if not connection.write(encode_event(event, data)):
            self.unsubscribe(connection_id)
            return False
        return True

    def broadcast(self, event: str, data: Any) -> int:
        """Write to every stream; closed or backed-up streams are dropped."""
        frame = encode_event(event, data)
        written = 0
        dead = []
        for connection_id, connection in self.connections.items():
            if connection.write(frame):
                written += 1
            else:
                dead.append(connection_id)
        for connection_id in dead:
            self.unsubscribe(connection_id)
        return written

    async def broadcast_system_update(self) -> int:
        if not self.connections:
            return 0
        status = await self._status_provider(len(self.connections))
        return self.broadcast("update", status)

    def send_heartbeat(self) -> int:
        now = utcnow()
        written = self.broadcast("heartbeat", {"timestamp": format_ts(now)})
        for connection in self.connections.values():
            connection.last_heartbeat = now
        return written

    def notify_event(self, event_type: str, data: Any) -> int:
        return self.broadcast(
            "event", {"type": event_type, "data": data, "timestamp": format_ts(utcnow())}
        )

    def stats(self) -> dict[str, Any]:
        return {
            "connections_active": len(self.connections),
            "is_running": self.is_running,
            "connections": [
                {
                    "id": c.id,
                    "subscriber_id": c.subscriber_id,
                    "subscriber_name": c.subscriber_name,
                    "connected_at": format_ts(c.connected_at),
                    "last_heartbeat": format_ts(c.last_heartbeat),
                }
                for c in self.connections.values()
            ],
        }

    async def _update_loop(self):
        while True:
            await asyncio.sleep(self.snapshot_interval)
            try:
                await self.broadcast_system_update()
            except Exception:
                logger.exception("Live feed update failed")

    async def _heartbeat_loop(self):
        while True:
            await asyncio.sleep(self.heartbeat_interval)
            try:
                self.send_heartbeat()
            except Exception:
                logger.exception("Live feed heartbeat failed")
