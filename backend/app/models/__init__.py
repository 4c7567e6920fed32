from app.models.user import User
from app.models.event import Event, EventParticipant
from app.models.message import (
    Message,
    MessageDeletion,
    MessageLabel,
    MessageNote,
    MessageReaction,
    MessageReceipt,
    MessageReport,
    MessageStar,
)
from app.models.notification import Notification

__all__ = [
    "User",
    "Event",
    "EventParticipant",
    "Message",
    "MessageReaction",
    "MessageStar",
    "MessageDeletion",
    "MessageReceipt",
    "MessageLabel",
    "MessageNote",
    "MessageReport",
    "Notification",
]
