from __future__ import annotations

import uuid
from typing import Any, Iterable, Protocol

from .log import logger
from .models import ConnectionBinding, Message

_log = logger(tag="connections")


class Connection(Protocol):
    connection_id: str

    async def send(self, event: str, data: dict[str, Any]) -> None: ...


class WebSocketConnection:
    """Adapts a FastAPI WebSocket to the `{"event", "data"}` frame format."""

    def __init__(self, websocket: Any, connection_id: str | None = None) -> None:
        self.websocket = websocket
        self.connection_id = connection_id or uuid.uuid4().hex

    async def send(self, event: str, data: dict[str, Any]) -> None:
        await self.websocket.send_json({"event": event, "data": data})


class ConnectionDirectory:
    def __init__(self) -> None:
        self._connections: dict[str, Connection] = {}
        self._bindings: dict[str, ConnectionBinding] = {}

    def bind(self, connection: Connection, binding: ConnectionBinding) -> None:
        self._connections[connection.connection_id] = connection
        self._bindings[connection.connection_id] = binding

    def unbind(self, connection_id: str) -> ConnectionBinding | None:
        self._connections.pop(connection_id, None)
        return self._bindings.pop(connection_id, None)

    def binding(self, connection_id: str) -> ConnectionBinding | None:
        return self._bindings.get(connection_id)

    def members(self, room_id: str) -> list[tuple[Connection, ConnectionBinding]]:
        return [
            (self._connections[connection_id], binding)
            for connection_id, binding in list(self._bindings.items())
            if binding.room_id == room_id and connection_id in self._connections
        ]

    def members_with_role(self, room_id: str, role: str) -> list[tuple[Connection, ConnectionBinding]]:
        return [(connection, binding) for connection, binding in self.members(room_id) if binding.role == role]

    async def emit(self, connection: Connection, event: str, data: dict[str, Any]) -> bool:
        try:
            await connection.send(event, data)
        except Exception as exc:
            # Delivery is checked at emission only; dropped connections are cleaned up on disconnect.
            _log.warning("Dropped %s for connection %s: %s", event, connection.connection_id, exc)
            return False
        return True

    async def emit_to_room(
        self,
        room_id: str,
        event: str,
        data: dict[str, Any],
        *,
        exclude: str | None = None,
    ) -> int:
        delivered = 0
        for connection, _binding in self.members(room_id):
            if connection.connection_id == exclude:
                continue
            if await self.emit(connection, event, data):
                delivered += 1
        return delivered

    async def deliver_message(
        self,
        room_id: str,
        message: Message,
        *,
        event: str = "chat-message",
        data: dict[str, Any] | None = None,
        recipients: Iterable[str] | None = None,
    ) -> int:
        """Send a logged message to room members allowed to see it.

        `recipients` narrows delivery to specific connection ids; the message's
        own `for_role` restriction is applied regardless.
        """
        allowed = set(recipients) if recipients is not None else None
        payload = data if data is not None else message.as_payload()
        delivered = 0
        for connection, binding in self.members(room_id):
            if allowed is not None and connection.connection_id not in allowed:
                continue
            if not message.visible_to(binding.role):
                continue
            if await self.emit(connection, event, payload):
                delivered += 1
        return delivered
