"""
Live socket presence.

The WebSocket endpoint registers a connection once the client authenticates.
A user is "present" while at least one of their sockets is registered.
"""

import logging
from typing import Any

from fastapi import WebSocket

logger = logging.getLogger(__name__)


async def send(connection: WebSocket, event: str, payload: Any):
    """Send one named event over a live socket."""
    await connection.send_json({"type": event, "data": payload})


class PresenceRegistry:
    def __init__(self):
        self._connections: dict[str, dict[str, WebSocket]] = {}
        self._owners: dict[str, str] = {}

    def register(self, user_id: str, client_id: str, websocket: WebSocket):
        # A client re-authenticating as someone else drops its old identity
        self.unregister(client_id)
        self._connections.setdefault(user_id, {})[client_id] = websocket
        self._owners[client_id] = user_id
        logger.info("User %s online via %s", user_id, client_id)

    def unregister(self, client_id: str) -> str | None:
        user_id = self._owners.pop(client_id, None)
        if user_id is None:
            return None
        sockets = self._connections.get(user_id, {})
        sockets.pop(client_id, None)
        if not sockets:
            self._connections.pop(user_id, None)
        logger.info("User %s socket %s closed", user_id, client_id)
        return user_id

    def user_for(self, client_id: str) -> str | None:
        return self._owners.get(client_id)

    def is_present(self, user_id: str) -> bool:
        return bool(self._connections.get(user_id))

    def connections(self, user_id: str) -> list[WebSocket]:
        return list(self._connections.get(user_id, {}).values())

    def online_users(self) -> list[str]:
        return list(self._connections)

    def clear(self):
        self._connections.clear()
        self._owners.clear()

    async def send_to_user(self, user_id: str, event: str, payload: Any) -> int:
        """Send to every socket of a user. Sockets that fail are dropped."""
        delivered = 0
        failed = []
        for client_id, ws in list(self._connections.get(user_id, {}).items()):
            try:
                await send(ws, event, payload)
                delivered += 1
            except Exception:
                logger.warning("Live push to %s (%s) failed", user_id, client_id)
                failed.append(client_id)
        for client_id in failed:
            self.unregister(client_id)
        return delivered
