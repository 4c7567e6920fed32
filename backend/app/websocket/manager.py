import logging
import uuid
from dataclasses import dataclass, field

from fastapi import WebSocket
from fastapi.encoders import jsonable_encoder

from app.services.rooms import RoomAddress, room_name

logger = logging.getLogger(__name__)


@dataclass
class ConnectionManager:
    """Live websocket connections grouped into named rooms.

    A user may hold several connections (tabs, devices); every connection
    joins the rooms of its user. Frames are ``{**payload, "type": event}``.
    """

    connections: dict[str, WebSocket] = field(default_factory=dict)
    connection_users: dict[str, str] = field(default_factory=dict)
    rooms: dict[str, set[str]] = field(default_factory=dict)

    def register(self, websocket: WebSocket, user_id: uuid.UUID | str) -> str:
        connection_id = uuid.uuid4().hex
        self.connections[connection_id] = websocket
        self.connection_users[connection_id] = str(user_id)
        return connection_id

    def disconnect(self, connection_id: str) -> str | None:
        """Forget a connection and leave all its rooms. Returns the owning user id."""
        self.connections.pop(connection_id, None)
        for name in list(self.rooms):
            members = self.rooms[name]
            members.discard(connection_id)
            if not members:
                del self.rooms[name]
        return self.connection_users.pop(connection_id, None)

    def join(self, connection_id: str, room: RoomAddress) -> None:
        self.rooms.setdefault(room_name(room), set()).add(connection_id)

    def leave(self, connection_id: str, room: RoomAddress) -> None:
        name = room_name(room)
        members = self.rooms.get(name)
        if members is None:
            return
        members.discard(connection_id)
        if not members:
            del self.rooms[name]

    def room_connections(self, room: RoomAddress) -> set[str]:
        return set(self.rooms.get(room_name(room), set()))

    def user_connections(self, user_id: uuid.UUID | str) -> list[str]:
        key = str(user_id)
        return [cid for cid, uid in self.connection_users.items() if uid == key]

    async def _send(self, connection_id: str, frame: dict) -> None:
        ws = self.connections.get(connection_id)
        if ws is None:
            return
        try:
            await ws.send_json(frame)
        except Exception:
            logger.warning("Dropping frame for connection %s", connection_id, exc_info=True)

    async def emit(
        self,
        room: RoomAddress,
        event: str,
        payload: dict,
        exclude_connection: str | None = None,
    ) -> None:
        frame = jsonable_encoder({**payload, "type": event})
        for connection_id in self.room_connections(room):
            if connection_id != exclude_connection:
                await self._send(connection_id, frame)

    async def emit_to_connection(self, connection_id: str, event: str, payload: dict) -> None:
        await self._send(connection_id, jsonable_encoder({**payload, "type": event}))

    async def broadcast(
        self, event: str, payload: dict, exclude_user: uuid.UUID | str | None = None
    ) -> None:
        frame = jsonable_encoder({**payload, "type": event})
        excluded = str(exclude_user) if exclude_user is not None else None
        for connection_id, uid in list(self.connection_users.items()):
            if uid != excluded:
                await self._send(connection_id, frame)


manager = ConnectionManager()
