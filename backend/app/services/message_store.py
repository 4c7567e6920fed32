"""Persistence and query surface for messages.

Mutations on the per-user sets of a message (reactions, stars, soft
deletions, receipts) are single-row upserts/deletes guarded by unique
constraints, never a read-modify-write of the whole message, so concurrent
updates from different users cannot overwrite each other.
"""
import uuid
from dataclasses import dataclass, field
from datetime import datetime

from sqlalchemy import and_, delete, func, or_, select, update
from sqlalchemy.ext.asyncio import AsyncSession

from app.exceptions import Forbidden, NotFound, ValidationError
from app.models.base import utcnow
from app.models.message import (
    ADMIN_LABELS,
    ATTACHMENT_TYPES,
    CALL_STATUSES,
    MAX_BODY_LENGTH,
    MAX_NOTE_LENGTH,
    MAX_REPORT_LENGTH,
    MESSAGE_STATUSES,
    MESSAGE_TYPES,
    REPORT_REASONS,
    SNIPPET_LENGTH,
    Message,
    MessageDeletion,
    MessageLabel,
    MessageNote,
    MessageReaction,
    MessageReceipt,
    MessageReport,
    MessageStar,
)

STATUS_RANK = {status: rank for rank, status in enumerate(MESSAGE_STATUSES)}
UNADDRESSED_TYPES = ("system",)
CONTENTLESS_TYPES = ("system", "call")


@dataclass
class MessageDraft:
    sender_id: uuid.UUID
    recipient_id: uuid.UUID | None = None
    event_id: uuid.UUID | None = None
    body: str | None = ""
    type: str = "text"
    attachments: list[dict] = field(default_factory=list)
    reply_to_id: uuid.UUID | None = None
    reply_to_snippet: str | None = None
    reply_to_sender_name: str | None = None
    forwarded_from_id: uuid.UUID | None = None
    forwarded_from_sender_id: uuid.UUID | None = None
    forward_count: int = 0
    call_id: str | None = None
    call_type: str | None = None
    call_status: str | None = None
    client_message_id: str | None = None


@dataclass
class MessageFilter:
    # Direct conversation between two users (group messages excluded)
    between: tuple[uuid.UUID, uuid.UUID] | None = None
    event_id: uuid.UUID | None = None
    # Everything visible to a user: own direct messages plus their events
    visible_to: uuid.UUID | None = None
    visible_event_ids: list[uuid.UUID] = field(default_factory=list)
    text: str | None = None
    starred_by: uuid.UUID | None = None
    label: str | None = None
    types: list[str] | None = None
    before: datetime | None = None
    hidden_for: uuid.UUID | None = None


def make_snippet(body: str | None) -> str:
    return (body or "")[:SNIPPET_LENGTH]


def validate_draft(draft: MessageDraft) -> None:
    if draft.type not in MESSAGE_TYPES:
        raise ValidationError(f"Invalid message type: {draft.type}")

    if draft.recipient_id is not None and draft.event_id is not None:
        raise ValidationError("Message cannot target both a recipient and an event")
    if (
        draft.recipient_id is None
        and draft.event_id is None
        and draft.type not in UNADDRESSED_TYPES
    ):
        raise ValidationError("recipientId or eventId required")

    body = (draft.body or "").strip()
    if len(body) > MAX_BODY_LENGTH:
        raise ValidationError(f"Message body exceeds {MAX_BODY_LENGTH} characters")
    if not body and not draft.attachments and draft.type not in CONTENTLESS_TYPES:
        raise ValidationError("Message body or attachments required")

    for attachment in draft.attachments:
        if attachment.get("type") not in ATTACHMENT_TYPES:
            raise ValidationError(f"Invalid attachment type: {attachment.get('type')}")
        if not attachment.get("url"):
            raise ValidationError("Attachment url is required")


def _insert(db: AsyncSession):
    """Dialect-specific INSERT supporting ON CONFLICT (PostgreSQL and SQLite)."""
    if db.get_bind().dialect.name == "postgresql":
        from sqlalchemy.dialects.postgresql import insert
    else:
        from sqlalchemy.dialects.sqlite import insert
    return insert


async def _insert_ignore(db: AsyncSession, model, index_elements: list[str], **values) -> bool:
    insert = _insert(db)
    stmt = insert(model).values(**values).on_conflict_do_nothing(index_elements=index_elements)
    result = await db.execute(stmt)
    return result.rowcount > 0


# ---------------------------------------------------------------------------
# Create / read
# ---------------------------------------------------------------------------

async def create_message(db: AsyncSession, draft: MessageDraft) -> Message:
    validate_draft(draft)
    now = utcnow()
    message = Message(
        sender_id=draft.sender_id,
        recipient_id=draft.recipient_id,
        event_id=draft.event_id,
        body=(draft.body or "").strip(),
        type=draft.type,
        attachments=list(draft.attachments),
        status="sent",
        sent_at=now,
        created_at=now,
        updated_at=now,
        is_read=False,
        reply_to_id=draft.reply_to_id,
        reply_to_snippet=draft.reply_to_snippet,
        reply_to_sender_name=draft.reply_to_sender_name,
        forwarded_from_id=draft.forwarded_from_id,
        forwarded_from_sender_id=draft.forwarded_from_sender_id,
        forwarded_at=now if draft.forwarded_from_id else None,
        forward_count=draft.forward_count,
        call_id=draft.call_id,
        call_type=draft.call_type,
        call_status=draft.call_status,
        client_message_id=draft.client_message_id,
    )
    db.add(message)
    await db.flush()
    return await get_message(db, message.id)


async def get_message(db: AsyncSession, message_id: uuid.UUID) -> Message | None:
    result = await db.execute(
        select(Message)
        .where(Message.id == message_id)
        .execution_options(populate_existing=True)
    )
    return result.scalar_one_or_none()


async def require_message(db: AsyncSession, message_id: uuid.UUID) -> Message:
    message = await get_message(db, message_id)
    if message is None:
        raise NotFound("Message not found")
    return message


def _filter_clauses(f: MessageFilter) -> list:
    clauses = []
    if f.between is not None:
        a, b = f.between
        clauses.append(
            or_(
                and_(Message.sender_id == a, Message.recipient_id == b),
                and_(Message.sender_id == b, Message.recipient_id == a),
            )
        )
        clauses.append(Message.event_id.is_(None))
    if f.event_id is not None:
        clauses.append(Message.event_id == f.event_id)
    if f.visible_to is not None:
        scope = [Message.sender_id == f.visible_to, Message.recipient_id == f.visible_to]
        if f.visible_event_ids:
            scope.append(Message.event_id.in_(f.visible_event_ids))
        clauses.append(or_(*scope))
    if f.text:
        clauses.append(Message.body.icontains(f.text, autoescape=True))
    if f.starred_by is not None:
        clauses.append(
            Message.id.in_(
                select(MessageStar.message_id).where(MessageStar.user_id == f.starred_by)
            )
        )
    if f.label:
        clauses.append(
            Message.id.in_(
                select(MessageLabel.message_id).where(MessageLabel.label == f.label)
            )
        )
    if f.types:
        clauses.append(Message.type.in_(f.types))
    if f.before is not None:
        clauses.append(Message.created_at < f.before)
    if f.hidden_for is not None:
        clauses.append(
            Message.id.not_in(
                select(MessageDeletion.message_id).where(MessageDeletion.user_id == f.hidden_for)
            )
        )
    return clauses


async def find_messages(
    db: AsyncSession,
    f: MessageFilter,
    page: int = 1,
    limit: int = 50,
) -> tuple[list[Message], int]:
    """Newest first. Returns the requested page and the total match count."""
    clauses = _filter_clauses(f)

    total = (
        await db.execute(select(func.count(Message.id)).where(*clauses))
    ).scalar_one()

    result = await db.execute(
        select(Message)
        .where(*clauses)
        .order_by(Message.created_at.desc())
        .offset((page - 1) * limit)
        .limit(limit)
    )
    return list(result.scalars().all()), total


# ---------------------------------------------------------------------------
# Delivery state
# ---------------------------------------------------------------------------

async def _add_receipt(db: AsyncSession, message_id: uuid.UUID, user_id: uuid.UUID, kind: str) -> bool:
    return await _insert_ignore(
        db,
        MessageReceipt,
        ["message_id", "user_id", "kind"],
        message_id=message_id,
        user_id=user_id,
        kind=kind,
        at=utcnow(),
    )


async def update_status(
    db: AsyncSession,
    message_id: uuid.UUID,
    new_status: str,
    actor_id: uuid.UUID,
) -> bool:
    """Advance sent -> delivered -> read. Backward or repeated moves are no-ops.

    Group messages only record the actor's receipt; their scalar status
    belongs to the sender's own send confirmation. Returns True if the
    receipt (group) or the scalar status (direct) advanced.
    """
    if new_status not in STATUS_RANK:
        raise ValidationError(f"Invalid status: {new_status}")
    message = await require_message(db, message_id)
    if new_status == "sent":
        return False

    receipt_added = await _add_receipt(db, message_id, actor_id, new_status)
    if new_status == "read":
        await _add_receipt(db, message_id, actor_id, "delivered")
    if message.is_group:
        return receipt_added

    lower = [s for s, rank in STATUS_RANK.items() if rank < STATUS_RANK[new_status]]
    now = utcnow()
    values = {"status": new_status, "delivered_at": func.coalesce(Message.delivered_at, now)}
    if new_status == "read":
        values.update(is_read=True, read_at=now)
    result = await db.execute(
        update(Message)
        .where(and_(Message.id == message_id, Message.status.in_(lower)))
        .values(**values)
        .execution_options(synchronize_session=False)
    )
    return result.rowcount > 0


async def mark_read(
    db: AsyncSession,
    reader_id: uuid.UUID,
    chat_type: str,
    chat_id: uuid.UUID,
    message_ids: list[uuid.UUID] | None = None,
) -> list[Message]:
    """Bulk read transition. Returns the messages that became read for the reader."""
    if chat_type == "individual":
        clauses = [
            Message.sender_id == chat_id,
            Message.recipient_id == reader_id,
            Message.event_id.is_(None),
            Message.is_read.is_(False),
        ]
    elif chat_type == "event":
        clauses = [
            Message.event_id == chat_id,
            Message.sender_id != reader_id,
            Message.id.not_in(
                select(MessageReceipt.message_id).where(
                    and_(MessageReceipt.user_id == reader_id, MessageReceipt.kind == "read")
                )
            ),
        ]
    else:
        raise ValidationError('Invalid chat type. Must be either "individual" or "event".')
    if message_ids:
        clauses.append(Message.id.in_(message_ids))

    result = await db.execute(select(Message).where(*clauses).order_by(Message.created_at))
    messages = list(result.scalars().all())
    if not messages:
        return []

    ids = [m.id for m in messages]
    now = utcnow()
    if chat_type == "individual":
        await db.execute(
            update(Message)
            .where(and_(Message.id.in_(ids), Message.is_read.is_(False)))
            .values(
                status="read",
                is_read=True,
                read_at=now,
                delivered_at=func.coalesce(Message.delivered_at, now),
            )
            .execution_options(synchronize_session=False)
        )
    for message_id in ids:
        await _add_receipt(db, message_id, reader_id, "delivered")
        await _add_receipt(db, message_id, reader_id, "read")
    return messages


async def pending_deliveries(db: AsyncSession, recipient_id: uuid.UUID) -> list[Message]:
    """Direct messages addressed to the user that are still only 'sent'."""
    result = await db.execute(
        select(Message).where(
            and_(
                Message.recipient_id == recipient_id,
                Message.event_id.is_(None),
                Message.status == "sent",
            )
        )
    )
    return list(result.scalars().all())


# ---------------------------------------------------------------------------
# Reactions, stars, deletion
# ---------------------------------------------------------------------------

async def add_reaction(
    db: AsyncSession, message_id: uuid.UUID, user_id: uuid.UUID, emoji: str
) -> Message:
    if not emoji or len(emoji) > 32:
        raise ValidationError("A valid emoji is required")
    insert = _insert(db)
    now = utcnow()
    stmt = (
        insert(MessageReaction)
        .values(message_id=message_id, user_id=user_id, emoji=emoji, reacted_at=now)
        .on_conflict_do_update(
            index_elements=["message_id", "user_id"],
            set_={"emoji": emoji, "reacted_at": now},
        )
    )
    await db.execute(stmt)
    return await require_message(db, message_id)


async def remove_reaction(db: AsyncSession, message_id: uuid.UUID, user_id: uuid.UUID) -> bool:
    result = await db.execute(
        delete(MessageReaction).where(
            and_(MessageReaction.message_id == message_id, MessageReaction.user_id == user_id)
        )
    )
    return result.rowcount > 0


async def star(db: AsyncSession, message_id: uuid.UUID, user_id: uuid.UUID) -> bool:
    return await _insert_ignore(
        db, MessageStar, ["message_id", "user_id"],
        message_id=message_id, user_id=user_id, starred_at=utcnow(),
    )


async def unstar(db: AsyncSession, message_id: uuid.UUID, user_id: uuid.UUID) -> bool:
    result = await db.execute(
        delete(MessageStar).where(
            and_(MessageStar.message_id == message_id, MessageStar.user_id == user_id)
        )
    )
    return result.rowcount > 0


async def soft_delete_for_user(db: AsyncSession, message_id: uuid.UUID, user_id: uuid.UUID) -> bool:
    return await _insert_ignore(
        db, MessageDeletion, ["message_id", "user_id"],
        message_id=message_id, user_id=user_id, deleted_at=utcnow(),
    )


async def hard_delete(db: AsyncSession, message: Message, actor_id: uuid.UUID) -> None:
    if message.sender_id != actor_id:
        raise Forbidden("Only the sender can delete a message for everyone")
    await db.delete(message)
    await db.flush()


async def increment_forward_count(db: AsyncSession, message_id: uuid.UUID, by: int) -> None:
    await db.execute(
        update(Message)
        .where(Message.id == message_id)
        .values(forward_count=Message.forward_count + by)
        .execution_options(synchronize_session=False)
    )


# ---------------------------------------------------------------------------
# Moderation
# ---------------------------------------------------------------------------

async def add_internal_note(
    db: AsyncSession,
    message_id: uuid.UUID,
    admin_id: uuid.UUID,
    note: str,
    is_private: bool = True,
) -> MessageNote:
    note = (note or "").strip()
    if not note:
        raise ValidationError("Note is required")
    if len(note) > MAX_NOTE_LENGTH:
        raise ValidationError(f"Note exceeds {MAX_NOTE_LENGTH} characters")
    row = MessageNote(message_id=message_id, admin_id=admin_id, note=note, is_private=is_private)
    db.add(row)
    await db.flush()
    return row


async def add_label(
    db: AsyncSession, message_id: uuid.UUID, admin_id: uuid.UUID, label: str
) -> bool:
    if label not in ADMIN_LABELS:
        raise ValidationError(f"Invalid label: {label}")
    return await _insert_ignore(
        db, MessageLabel, ["message_id", "label"],
        message_id=message_id, label=label, added_by=admin_id, added_at=utcnow(),
    )


async def add_report(
    db: AsyncSession,
    message_id: uuid.UUID,
    user_id: uuid.UUID,
    reason: str,
    description: str | None = None,
) -> bool:
    if reason not in REPORT_REASONS:
        raise ValidationError(f"Invalid report reason: {reason}")
    if description and len(description) > MAX_REPORT_LENGTH:
        raise ValidationError(f"Description exceeds {MAX_REPORT_LENGTH} characters")
    return await _insert_ignore(
        db, MessageReport, ["message_id", "reported_by"],
        message_id=message_id, reported_by=user_id, reason=reason,
        description=description, status="pending", reported_at=utcnow(),
    )


# ---------------------------------------------------------------------------
# Aggregates
# ---------------------------------------------------------------------------

async def message_stats(
    db: AsyncSession, user_id: uuid.UUID, event_ids: list[uuid.UUID]
) -> dict:
    scope = _filter_clauses(MessageFilter(visible_to=user_id, visible_event_ids=event_ids))

    total = (await db.execute(select(func.count(Message.id)).where(*scope))).scalar_one()
    unread = (
        await db.execute(
            select(func.count(Message.id)).where(
                and_(
                    Message.recipient_id == user_id,
                    Message.event_id.is_(None),
                    Message.is_read.is_(False),
                )
            )
        )
    ).scalar_one()
    starred = (
        await db.execute(
            select(func.count(MessageStar.id)).where(MessageStar.user_id == user_id)
        )
    ).scalar_one()
    by_type = await db.execute(
        select(Message.type, func.count(Message.id)).where(*scope).group_by(Message.type)
    )
    recent = await db.execute(
        select(Message).where(*scope).order_by(Message.created_at.desc()).limit(10)
    )
    return {
        "total_messages": total,
        "unread_messages": unread,
        "starred_messages": starred,
        "messages_by_type": {t: c for t, c in by_type.all()},
        "recent_activity": [
            {
                "id": m.id,
                "type": m.type,
                "body": m.body,
                "status": m.status,
                "created_at": m.created_at,
            }
            for m in recent.scalars().all()
        ],
    }


async def update_call_log(
    db: AsyncSession,
    message_id: uuid.UUID,
    call_status: str,
    duration: int | None = None,
) -> None:
    if call_status not in CALL_STATUSES:
        raise ValidationError(f"Invalid call status: {call_status}")
    values = {"call_status": call_status, "updated_at": utcnow()}
    if duration is not None:
        values["call_duration"] = duration
    await db.execute(
        update(Message)
        .where(Message.id == message_id)
        .values(**values)
        .execution_options(synchronize_session=False)
    )
