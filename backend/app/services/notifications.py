import logging
import uuid

from sqlalchemy.ext.asyncio import AsyncSession

from app import database
from app.models.message import Message
from app.models.notification import Notification
from app.services import membership, message_store
from app.services.presence import presence

logger = logging.getLogger(__name__)

PREVIEW_LENGTH = 100


def _preview(message: Message) -> str:
    if message.body:
        return message.body[:PREVIEW_LENGTH]
    if message.type == "voice":
        return "Voice message"
    if message.attachments:
        return f"{len(message.attachments)} attachment(s)"
    return "New message"


async def create_message_notifications(db: AsyncSession, message: Message) -> list[Notification]:
    """In-app notifications for recipients without a live connection."""
    if message.event_id is not None:
        recipient_ids = [
            uid
            for uid in await membership.event_participant_ids(db, message.event_id)
            if uid != message.sender_id
        ]
        notification_type = "group_message"
        title = f"New message in {message.event.name}" if message.event else "New group message"
    elif message.recipient_id is not None:
        recipient_ids = [message.recipient_id]
        notification_type = "message"
        sender_name = message.sender.display_name if message.sender else "someone"
        title = f"New message from {sender_name}"
    else:
        return []

    notifications = []
    for uid in recipient_ids:
        if presence.is_online(uid):
            continue
        notification = Notification(
            user_id=uid,
            sender_id=message.sender_id,
            event_id=message.event_id,
            message_id=message.id,
            notification_type=notification_type,
            title=title,
            preview=_preview(message),
        )
        db.add(notification)
        notifications.append(notification)

    await db.flush()
    return notifications


async def notify_offline_recipients(message_id: uuid.UUID) -> None:
    """Background task; runs after the request session has committed."""
    try:
        async with database.async_session() as db:
            message = await message_store.get_message(db, message_id)
            if message is None:
                return
            notifications = await create_message_notifications(db, message)
            await db.commit()
        if notifications:
            logger.info(
                "Created %d notification(s) for message %s", len(notifications), message_id
            )
    except Exception:
        logger.warning("Notification fan-out failed for message %s", message_id, exc_info=True)
