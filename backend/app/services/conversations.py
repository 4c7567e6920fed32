import uuid
from datetime import timezone

from sqlalchemy import and_, case, func, or_, select
from sqlalchemy.ext.asyncio import AsyncSession

from app.models.message import Message, MessageDeletion, MessageReceipt
from app.schemas.message import serialize_message
from app.services import membership, message_store
from app.services.message_store import MessageFilter
from app.services.messaging import paginate
from app.services.presence import presence


def _user_summary(user) -> dict:
    return {
        "id": user.id,
        "name": user.name,
        "email": user.email,
        "avatar": user.avatar,
        "is_online": presence.is_online(user.id),
        "last_seen": presence.last_seen(user.id) or user.last_seen,
    }


async def _last_message(db: AsyncSession, f: MessageFilter) -> Message | None:
    messages, _ = await message_store.find_messages(db, f, page=1, limit=1)
    return messages[0] if messages else None


async def individual_conversations(db: AsyncSession, user_id: uuid.UUID) -> list[dict]:
    partner = case(
        (Message.sender_id == user_id, Message.recipient_id), else_=Message.sender_id
    ).label("partner_id")
    unread = func.sum(
        case(
            (and_(Message.recipient_id == user_id, Message.is_read.is_(False)), 1),
            else_=0,
        )
    )
    hidden = select(MessageDeletion.message_id).where(MessageDeletion.user_id == user_id)
    result = await db.execute(
        select(partner, unread.label("unread_count"))
        .where(
            and_(
                or_(Message.sender_id == user_id, Message.recipient_id == user_id),
                Message.event_id.is_(None),
                Message.recipient_id.is_not(None),
                Message.id.not_in(hidden),
            )
        )
        .group_by(partner)
    )
    rows = result.all()
    users = await membership.get_users(db, [row.partner_id for row in rows])

    conversations = []
    for row in rows:
        other = users.get(row.partner_id)
        if other is None:
            continue
        last = await _last_message(
            db, MessageFilter(between=(user_id, other.id), hidden_for=user_id)
        )
        conversations.append(
            {
                "id": other.id,
                "type": "individual",
                "user": _user_summary(other),
                "last_message": serialize_message(last) if last else None,
                "unread_count": int(row.unread_count or 0),
                "last_activity": last.created_at if last else other.created_at,
            }
        )
    return conversations


async def _event_unread_count(db: AsyncSession, event_id: uuid.UUID, user_id: uuid.UUID) -> int:
    read = select(MessageReceipt.message_id).where(
        and_(MessageReceipt.user_id == user_id, MessageReceipt.kind == "read")
    )
    result = await db.execute(
        select(func.count(Message.id)).where(
            and_(
                Message.event_id == event_id,
                Message.sender_id != user_id,
                Message.id.not_in(read),
            )
        )
    )
    return result.scalar_one()


async def event_conversations(db: AsyncSession, user_id: uuid.UUID) -> list[dict]:
    # Seeded from membership so events without messages still show up
    conversations = []
    for event_id in await membership.user_event_ids(db, user_id):
        event = await membership.get_event(db, event_id)
        if event is None:
            continue
        participant_ids = await membership.event_participant_ids(db, event_id)
        last = await _last_message(db, MessageFilter(event_id=event_id, hidden_for=user_id))
        conversations.append(
            {
                "id": event.id,
                "type": "event",
                "event": {"id": event.id, "name": event.name, "date": event.date},
                "last_message": serialize_message(last) if last else None,
                "unread_count": await _event_unread_count(db, event_id, user_id),
                "participant_count": len(participant_ids),
                "online_count": presence.count_online(participant_ids),
                "last_activity": last.created_at if last else event.created_at,
            }
        )
    return conversations


def _activity_key(conversation: dict):
    # SQLite hands back naive datetimes
    at = conversation["last_activity"]
    return at if at.tzinfo else at.replace(tzinfo=timezone.utc)


def _conversation_name(conversation: dict) -> str:
    if conversation["type"] == "event":
        return conversation["event"]["name"] or ""
    user = conversation["user"]
    return f"{user['name'] or ''} {user['email'] or ''}"


async def get_conversations(
    db: AsyncSession,
    user_id: uuid.UUID,
    page: int = 1,
    limit: int = 20,
    search: str | None = None,
) -> dict:
    conversations = await individual_conversations(db, user_id)
    conversations += await event_conversations(db, user_id)
    conversations.sort(key=_activity_key, reverse=True)

    if search:
        needle = search.lower()
        conversations = [c for c in conversations if needle in _conversation_name(c).lower()]

    total = len(conversations)
    start = (page - 1) * limit
    return {
        "conversations": conversations[start:start + limit],
        "pagination": paginate(page, limit, total),
    }
