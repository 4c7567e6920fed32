import uuid
from dataclasses import dataclass, field
from datetime import datetime, timezone


@dataclass
class PresenceRecord:
    connections: set[str] = field(default_factory=set)
    since: datetime = field(default_factory=lambda: datetime.now(timezone.utc))


@dataclass
class PresenceTracker:
    """Process-wide user id -> live connection map.

    Holds no business logic so it can be swapped for a shared store (e.g.
    Redis) when several worker processes need a common view. A user stays
    online while at least one connection is registered.
    """

    online: dict[str, PresenceRecord] = field(default_factory=dict)
    last_seen_at: dict[str, datetime] = field(default_factory=dict)

    def set_online(self, user_id: uuid.UUID | str, connection_id: str) -> bool:
        """Register a connection. Returns True if the user just came online."""
        key = str(user_id)
        record = self.online.get(key)
        if record is None:
            self.online[key] = PresenceRecord(connections={connection_id})
            self.last_seen_at.pop(key, None)
            return True
        record.connections.add(connection_id)
        return False

    def set_offline(
        self, user_id: uuid.UUID | str, connection_id: str | None = None
    ) -> bool:
        """Drop one connection (or all of them). Returns True if the user went offline."""
        key = str(user_id)
        record = self.online.get(key)
        if record is None:
            return False
        if connection_id is not None:
            record.connections.discard(connection_id)
            if record.connections:
                return False
        del self.online[key]
        self.last_seen_at[key] = datetime.now(timezone.utc)
        return True

    def is_online(self, user_id: uuid.UUID | str) -> bool:
        return str(user_id) in self.online

    def online_user_ids(self) -> list[str]:
        return list(self.online.keys())

    def count_online(self, user_ids) -> int:
        return sum(1 for uid in user_ids if self.is_online(uid))

    def last_seen(self, user_id: uuid.UUID | str) -> datetime | None:
        return self.last_seen_at.get(str(user_id))

    def snapshot(self, user_ids=None) -> dict[str, bool]:
        if user_ids:
            return {str(uid): self.is_online(uid) for uid in user_ids}
        return {uid: True for uid in self.online}


presence = PresenceTracker()
