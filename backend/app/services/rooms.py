import uuid
from dataclasses import dataclass


@dataclass(frozen=True)
class IndividualRoom:
    user_id: uuid.UUID | str


@dataclass(frozen=True)
class EventRoom:
    event_id: uuid.UUID | str


@dataclass(frozen=True)
class AdminRoom:
    pass


RoomAddress = IndividualRoom | EventRoom | AdminRoom

ADMIN = AdminRoom()


def room_name(address: RoomAddress) -> str:
    """Render the wire-level room identifier."""
    if isinstance(address, IndividualRoom):
        return f"user-{address.user_id}"
    if isinstance(address, EventRoom):
        return f"event-{address.event_id}"
    if isinstance(address, AdminRoom):
        return "admin"
    raise TypeError(f"Unknown room address: {address!r}")


def chat_room(chat_type: str, chat_id: uuid.UUID | str) -> RoomAddress:
    """Room for a chat addressed as ('individual', user id) or ('event', event id)."""
    if chat_type == "individual":
        return IndividualRoom(chat_id)
    if chat_type == "event":
        return EventRoom(chat_id)
    raise ValueError(f"Invalid chat type: {chat_type}")


def message_room(message) -> RoomAddress:
    """Target room of a persisted message: recipient's personal room or the event room."""
    if message.event_id is not None:
        return EventRoom(message.event_id)
    return IndividualRoom(message.recipient_id)
