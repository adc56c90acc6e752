import logging
import uuid
from typing import Any

from fastapi import WebSocket
from starlette.websockets import WebSocketDisconnect, WebSocketState

logger = logging.getLogger(__name__)


class ConnectionManager:
    """Tracks open sockets by connection id and fans events out to them."""

    def __init__(self) -> None:
        self.active_connections: dict[str, WebSocket] = {}

    async def connect(self, websocket: WebSocket) -> str:
        """Accept the socket, register it and tell the client its id."""
        await websocket.accept()
        connection_id = uuid.uuid4().hex
        self.active_connections[connection_id] = websocket
        await self.send(connection_id, "connect", {"id": connection_id})
        return connection_id

    def disconnect(self, connection_id: str) -> None:
        self.active_connections.pop(connection_id, None)

    def __len__(self) -> int:
        return len(self.active_connections)

    def __contains__(self, connection_id: object) -> bool:
        return connection_id in self.active_connections

    async def send(self, connection_id: str, event: str, data: Any) -> bool:
        """Send one event to a single connection.

        Returns False when the connection is unknown or the send failed; a
        failed socket is dropped from the registry.
        """
        websocket = self.active_connections.get(connection_id)
        if websocket is None:
            return False
        if websocket.application_state != WebSocketState.CONNECTED:
            self.disconnect(connection_id)
            return False
        try:
            await websocket.send_json({"event": event, "data": data})
        except (WebSocketDisconnect, RuntimeError, OSError) as exc:
            logger.debug("Dropping connection %s after failed send: %s", connection_id, exc)
            self.disconnect(connection_id)
            return False
        return True

    async def broadcast(
        self, event: str, data: Any, exclude: str | None = None
    ) -> None:
        """Send an event to every connection, optionally skipping one."""
        for connection_id in list(self.active_connections):
            if connection_id == exclude:
                continue
            await self.send(connection_id, event, data)
