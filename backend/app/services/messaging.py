import asyncio
import logging
import math
import uuid
from collections import defaultdict
from datetime import datetime

from fastapi import BackgroundTasks, UploadFile
from sqlalchemy.ext.asyncio import AsyncSession

from app.config import settings
from app.exceptions import Forbidden, NotFound, ValidationError
from app.models.base import utcnow
from app.models.message import Message
from app.models.user import User
from app.schemas.message import ReactionOut, serialize_message
from app.services import delivery, file_store, membership, message_store, notifications
from app.services.message_store import MessageDraft, MessageFilter, make_snippet
from app.services.presence import presence
from app.services.rooms import EventRoom, IndividualRoom, RoomAddress, chat_room, message_room
from app.websocket.manager import manager

logger = logging.getLogger(__name__)

USER_MESSAGE_TYPES = ("text", "image", "audio", "video", "document", "voice", "multiple")

_background: set[asyncio.Task] = set()


def paginate(page: int, limit: int, total: int) -> dict:
    return {
        "page": page,
        "limit": limit,
        "total": total,
        "pages": math.ceil(total / limit) if limit else 0,
    }


def clamp_limit(limit: int | None) -> int:
    if not limit or limit < 1:
        return settings.default_page_size
    return min(limit, settings.max_page_size)


class MessagingService:
    """Message operations on behalf of one authenticated user.

    Every mutation is committed before anything is emitted, so a failed
    write never reaches a room.
    """

    def __init__(
        self,
        db: AsyncSession,
        user: User,
        broadcaster=None,
        background_tasks: BackgroundTasks | None = None,
    ):
        self.db = db
        self.user = user
        self.user_id = user.id
        self.broadcaster = broadcaster or manager
        self.background_tasks = background_tasks

    # -- helpers ----------------------------------------------------------

    def _schedule(self, func, *args) -> None:
        if self.background_tasks is not None:
            self.background_tasks.add_task(func, *args)
            return
        task = asyncio.create_task(func(*args))
        _background.add(task)
        task.add_done_callback(_background.discard)

    async def _emit(self, room: RoomAddress, event: str, payload: dict) -> None:
        await self.broadcaster.emit(room, event, payload)

    async def _require_participant(self, event_id: uuid.UUID) -> None:
        if await membership.get_event(self.db, event_id) is None:
            raise NotFound("Event not found")
        if not await membership.is_event_participant(self.db, event_id, self.user_id):
            raise Forbidden("You are not a participant of this event")

    async def _ensure_access(self, message: Message) -> None:
        if message.is_group:
            if not await membership.is_event_participant(self.db, message.event_id, self.user_id):
                raise Forbidden("Access denied")
        elif not message.is_participant(self.user_id):
            raise Forbidden("Access denied")

    async def _load_accessible(self, message_id: uuid.UUID) -> Message:
        message = await message_store.require_message(self.db, message_id)
        await self._ensure_access(message)
        return message

    def _message_rooms(self, message: Message) -> list[RoomAddress]:
        if message.is_group:
            return [EventRoom(message.event_id)]
        rooms = [IndividualRoom(message.sender_id)]
        if message.recipient_id is not None and message.recipient_id != message.sender_id:
            rooms.append(IndividualRoom(message.recipient_id))
        return rooms

    async def _validate_target(
        self, recipient_id: uuid.UUID | None, event_id: uuid.UUID | None
    ) -> None:
        if recipient_id is not None and event_id is not None:
            raise ValidationError("Message cannot target both a recipient and an event")
        if recipient_id is not None:
            if await membership.get_user(self.db, recipient_id) is None:
                raise NotFound("Recipient not found")
        elif event_id is not None:
            await self._require_participant(event_id)
        else:
            raise ValidationError("recipientId or eventId required")

    async def _scope_filter(self, chat_id: uuid.UUID | None, chat_type: str | None) -> MessageFilter:
        if chat_id is not None and chat_type == "individual":
            return MessageFilter(between=(self.user_id, chat_id), hidden_for=self.user_id)
        if chat_id is not None and chat_type == "event":
            await self._require_participant(chat_id)
            return MessageFilter(event_id=chat_id, hidden_for=self.user_id)
        if chat_id is not None:
            raise ValidationError('Invalid chat type. Must be either "individual" or "event".')
        return MessageFilter(
            visible_to=self.user_id,
            visible_event_ids=await membership.user_event_ids(self.db, self.user_id),
            hidden_for=self.user_id,
        )

    async def _publish(self, message: Message) -> dict:
        """Fan out a freshly committed message."""
        data = serialize_message(message)
        await self._emit(message_room(message), "newMessage", {"message": data})
        await self._emit(
            IndividualRoom(message.sender_id),
            "messageSent",
            {"message": data, "client_message_id": message.client_message_id},
        )
        if not message.is_group and message.recipient_id != message.sender_id:
            delivery.schedule_delivery_check(
                message.id, message.recipient_id, message.sender_id, self.broadcaster
            )
        self._schedule(notifications.notify_offline_recipients, message.id)
        return data

    async def _create_and_publish(self, draft: MessageDraft) -> dict:
        message = await message_store.create_message(self.db, draft)
        await self.db.commit()
        logger.info("Message %s sent by %s", message.id, self.user_id)
        return await self._publish(message)

    # -- sending ----------------------------------------------------------

    async def send_message(
        self,
        recipient_id: uuid.UUID | None = None,
        event_id: uuid.UUID | None = None,
        body: str = "",
        type: str = "text",
        attachments: list[dict] | None = None,
        client_message_id: str | None = None,
    ) -> dict:
        if type not in USER_MESSAGE_TYPES:
            raise ValidationError(f"Invalid message type: {type}")
        await self._validate_target(recipient_id, event_id)
        return await self._create_and_publish(
            MessageDraft(
                sender_id=self.user_id,
                recipient_id=recipient_id,
                event_id=event_id,
                body=body,
                type=type,
                attachments=attachments or [],
                client_message_id=client_message_id,
            )
        )

    async def _send_stored(
        self,
        stored: list[file_store.StoredFile],
        draft: MessageDraft,
    ) -> dict:
        try:
            message = await message_store.create_message(self.db, draft)
            await self.db.commit()
        except Exception:
            await self.db.rollback()
            await file_store.remove_files(stored)
            raise
        return await self._publish(message)

    async def send_with_files(
        self,
        files: list[UploadFile],
        recipient_id: uuid.UUID | None = None,
        event_id: uuid.UUID | None = None,
        body: str = "",
    ) -> dict:
        await self._validate_target(recipient_id, event_id)
        stored = await file_store.store_uploads(files, file_store.ATTACHMENTS_DIR)
        attachments = [f.as_attachment() for f in stored]
        if len(attachments) == 1:
            kind = attachments[0]["type"]
            message_type = kind if kind in USER_MESSAGE_TYPES else "document"
        else:
            message_type = "multiple"
        return await self._send_stored(
            stored,
            MessageDraft(
                sender_id=self.user_id,
                recipient_id=recipient_id,
                event_id=event_id,
                body=body,
                type=message_type,
                attachments=attachments,
            ),
        )

    async def send_audio(
        self,
        audio: UploadFile,
        recipient_id: uuid.UUID | None = None,
        event_id: uuid.UUID | None = None,
        body: str = "",
        duration: float | None = None,
    ) -> dict:
        await self._validate_target(recipient_id, event_id)
        stored = await file_store.store_upload(
            audio, file_store.AUDIO_DIR, settings.max_audio_size, mime_prefix="audio/"
        )
        return await self._send_stored(
            [stored],
            MessageDraft(
                sender_id=self.user_id,
                recipient_id=recipient_id,
                event_id=event_id,
                body=body,
                type="audio",
                attachments=[stored.as_attachment("audio", duration=duration)],
            ),
        )

    async def send_voice(
        self,
        audio: UploadFile,
        recipient_id: uuid.UUID | None = None,
        event_id: uuid.UUID | None = None,
        duration: float | None = None,
        waveform: list[float] | None = None,
    ) -> dict:
        await self._validate_target(recipient_id, event_id)
        stored = await file_store.store_upload(
            audio, file_store.VOICE_DIR, settings.max_audio_size, mime_prefix="audio/"
        )
        return await self._send_stored(
            [stored],
            MessageDraft(
                sender_id=self.user_id,
                recipient_id=recipient_id,
                event_id=event_id,
                type="voice",
                attachments=[stored.as_attachment("voice", duration=duration, waveform=waveform)],
            ),
        )

    async def reply_to_message(
        self,
        message_id: uuid.UUID,
        body: str = "",
        type: str = "text",
        attachments: list[dict] | None = None,
    ) -> dict:
        original = await self._load_accessible(message_id)

        recipient_id = None
        event_id = None
        if original.event_id is not None:
            event_id = original.event_id
        elif original.recipient_id is None:
            raise ValidationError("Cannot determine reply target for this message")
        elif original.sender_id != self.user_id:
            recipient_id = original.sender_id
        else:
            recipient_id = original.recipient_id

        if type not in USER_MESSAGE_TYPES:
            raise ValidationError(f"Invalid message type: {type}")
        return await self._create_and_publish(
            MessageDraft(
                sender_id=self.user_id,
                recipient_id=recipient_id,
                event_id=event_id,
                body=body,
                type=type,
                attachments=attachments or [],
                reply_to_id=original.id,
                reply_to_snippet=make_snippet(original.body),
                reply_to_sender_name=original.sender.display_name if original.sender else "",
            )
        )

    async def forward_message(
        self,
        message_id: uuid.UUID,
        recipients: list[uuid.UUID] | None = None,
        events: list[uuid.UUID] | None = None,
    ) -> dict:
        """Clone a message to each target. Targets succeed or fail independently."""
        original = await self._load_accessible(message_id)
        targets = [("individual", uid) for uid in recipients or []]
        targets += [("event", eid) for eid in events or []]
        if not targets:
            raise ValidationError("At least one recipient or event is required")

        template = {
            "body": original.body,
            "type": original.type,
            "attachments": list(original.attachments or []),
            "forwarded_from_id": original.id,
            "forwarded_from_sender_id": original.sender_id,
            "forward_count": original.forward_count + 1,
        }
        original_id = original.id

        created_ids: list[uuid.UUID] = []
        failed: list[dict] = []
        for chat_type, target_id in targets:
            try:
                if chat_type == "individual":
                    await self._validate_target(target_id, None)
                    draft = MessageDraft(sender_id=self.user_id, recipient_id=target_id, **template)
                else:
                    await self._validate_target(None, target_id)
                    draft = MessageDraft(sender_id=self.user_id, event_id=target_id, **template)
            except (Forbidden, NotFound, ValidationError) as exc:
                failed.append({"type": chat_type, "target_id": target_id, "message": exc.message})
                continue
            try:
                message = await message_store.create_message(self.db, draft)
                await self.db.commit()
            except Exception:
                logger.exception("Forward of %s to %s %s failed", original_id, chat_type, target_id)
                await self.db.rollback()
                failed.append({"type": chat_type, "target_id": target_id, "message": "Forward failed"})
                continue
            created_ids.append(message.id)

        if created_ids:
            await message_store.increment_forward_count(self.db, original_id, len(created_ids))
            await self.db.commit()

        # Reloaded: a rollback above expires everything held by the session
        published = []
        for created_id in created_ids:
            message = await message_store.require_message(self.db, created_id)
            published.append(await self._publish(message))
        return {
            "forwarded_count": len(created_ids),
            "messages": published,
            "failed": failed,
        }

    # -- per-message actions ----------------------------------------------

    async def _emit_reactions(self, message: Message, emoji: str | None) -> list[dict]:
        reactions = [ReactionOut.model_validate(r).model_dump() for r in message.reactions]
        payload = {
            "message_id": message.id,
            "reactions": reactions,
            "user_id": self.user_id,
            "emoji": emoji,
        }
        for room in self._message_rooms(message):
            await self._emit(room, "messageReaction", payload)
        return reactions

    async def react_to_message(self, message_id: uuid.UUID, emoji: str) -> list[dict]:
        await self._load_accessible(message_id)
        message = await message_store.add_reaction(self.db, message_id, self.user_id, emoji)
        await self.db.commit()
        return await self._emit_reactions(message, emoji)

    async def remove_reaction(self, message_id: uuid.UUID) -> list[dict]:
        await self._load_accessible(message_id)
        if not await message_store.remove_reaction(self.db, message_id, self.user_id):
            raise NotFound("Reaction not found")
        await self.db.commit()
        message = await message_store.require_message(self.db, message_id)
        return await self._emit_reactions(message, None)

    async def toggle_star(self, message_id: uuid.UUID, action: str = "star") -> dict:
        await self._load_accessible(message_id)
        if action == "star":
            await message_store.star(self.db, message_id, self.user_id)
        elif action == "unstar":
            await message_store.unstar(self.db, message_id, self.user_id)
        else:
            raise ValidationError('Invalid action. Must be "star" or "unstar".')
        await self.db.commit()
        return {"message_id": message_id, "starred": action == "star"}

    async def delete_message(self, message_id: uuid.UUID, for_everyone: bool = False) -> dict:
        message = await self._load_accessible(message_id)
        if not for_everyone:
            await message_store.soft_delete_for_user(self.db, message_id, self.user_id)
            await self.db.commit()
            return {"message_id": message_id, "deleted_for_everyone": False}

        if message.sender_id != self.user_id:
            raise Forbidden("Only the sender can delete a message for everyone")
        rooms = self._message_rooms(message)
        await message_store.hard_delete(self.db, message, self.user_id)
        await self.db.commit()

        payload = {
            "message_id": message_id,
            "deleted_for_everyone": True,
            "deleted_by": self.user_id,
        }
        for room in rooms:
            await self._emit(room, "messageDeleted", payload)
        return payload

    async def report_message(
        self, message_id: uuid.UUID, reason: str, description: str | None = None
    ) -> None:
        message = await self._load_accessible(message_id)
        if message.sender_id == self.user_id:
            raise ValidationError("You cannot report your own message")
        if not await message_store.add_report(self.db, message_id, self.user_id, reason, description):
            raise ValidationError("You have already reported this message")
        await self.db.commit()

    # -- read state ---------------------------------------------------------

    async def get_history(
        self,
        chat_type: str,
        chat_id: uuid.UUID,
        page: int = 1,
        limit: int | None = None,
        before: datetime | None = None,
    ) -> dict:
        limit = clamp_limit(limit)
        page = max(page, 1)
        if chat_type == "individual":
            if await membership.get_user(self.db, chat_id) is None:
                raise NotFound("User not found")
            f = MessageFilter(between=(self.user_id, chat_id), hidden_for=self.user_id, before=before)
        elif chat_type == "event":
            await self._require_participant(chat_id)
            f = MessageFilter(event_id=chat_id, hidden_for=self.user_id, before=before)
        else:
            raise ValidationError('Invalid chat type. Must be either "individual" or "event".')

        messages, total = await message_store.find_messages(self.db, f, page, limit)
        # Serialized before the bulk read below touches the rows
        data = [serialize_message(m) for m in reversed(messages)]

        if chat_type == "individual":
            await self._mark_read_and_notify(chat_type, chat_id)

        return {
            "messages": data,
            "pagination": paginate(page, limit, total),
            "has_more": page * limit < total,
        }

    async def _mark_read_and_notify(
        self,
        chat_type: str,
        chat_id: uuid.UUID,
        message_ids: list[uuid.UUID] | None = None,
    ) -> list[Message]:
        messages = await message_store.mark_read(
            self.db, self.user_id, chat_type, chat_id, message_ids
        )
        if not messages:
            return []
        await self.db.commit()

        by_sender: dict[uuid.UUID, list[uuid.UUID]] = defaultdict(list)
        for message in messages:
            by_sender[message.sender_id].append(message.id)

        # From the sender's side a direct chat is keyed by the reader
        read_chat_id = self.user_id if chat_type == "individual" else chat_id
        read_at = utcnow()
        for sender_id, ids in by_sender.items():
            await self._emit(
                IndividualRoom(sender_id),
                "messagesRead",
                {
                    "chat_id": read_chat_id,
                    "chat_type": chat_type,
                    "message_ids": ids,
                    "read_at": read_at,
                    "read_by": self.user_id,
                },
            )
        return messages

    async def mark_as_read(
        self,
        chat_id: uuid.UUID,
        chat_type: str,
        message_ids: list[uuid.UUID] | None = None,
    ) -> dict:
        if chat_type == "event":
            await self._require_participant(chat_id)
        messages = await self._mark_read_and_notify(chat_type, chat_id, message_ids)
        return {
            "marked_count": len(messages),
            "message_ids": [m.id for m in messages],
        }

    async def update_message_status(self, message_id: uuid.UUID, status: str) -> dict:
        message = await self._load_accessible(message_id)
        if message.sender_id == self.user_id:
            raise Forbidden("Only recipients can acknowledge a message")
        changed = await message_store.update_status(self.db, message_id, status, self.user_id)
        await self.db.commit()

        message = await message_store.require_message(self.db, message_id)
        if changed:
            await self._emit(
                IndividualRoom(message.sender_id),
                "messageStatus",
                {
                    "message_id": message_id,
                    "message_ids": [message_id],
                    "status": status,
                    "user_id": self.user_id,
                    "at": utcnow(),
                },
            )
        return {"message_id": message_id, "status": message.status, "changed": changed}

    # -- queries ----------------------------------------------------------

    async def _paged(self, f: MessageFilter, page: int, limit: int | None) -> dict:
        limit = clamp_limit(limit)
        page = max(page, 1)
        messages, total = await message_store.find_messages(self.db, f, page, limit)
        return {
            "messages": [serialize_message(m) for m in messages],
            "pagination": paginate(page, limit, total),
        }

    async def search_messages(
        self,
        query: str,
        chat_id: uuid.UUID | None = None,
        chat_type: str | None = None,
        page: int = 1,
        limit: int | None = None,
    ) -> dict:
        query = (query or "").strip()
        if not query:
            raise ValidationError("Search query is required")
        f = await self._scope_filter(chat_id, chat_type)
        f.text = query
        return await self._paged(f, page, limit)

    async def get_starred_messages(self, page: int = 1, limit: int | None = None) -> dict:
        f = await self._scope_filter(None, None)
        f.starred_by = self.user_id
        return await self._paged(f, page, limit)

    async def get_voice_messages(
        self,
        chat_id: uuid.UUID | None = None,
        chat_type: str | None = None,
        page: int = 1,
        limit: int | None = None,
    ) -> dict:
        f = await self._scope_filter(chat_id, chat_type)
        f.types = ["voice"]
        return await self._paged(f, page, limit)

    async def handle_typing(self, chat_id: uuid.UUID, chat_type: str, is_typing: bool = True) -> None:
        if chat_type == "event":
            await self._require_participant(chat_id)
        room = chat_room(chat_type, chat_id)
        await self._emit(
            room,
            "typing",
            {
                "chat_id": self.user_id if chat_type == "individual" else chat_id,
                "chat_type": chat_type,
                "user_id": self.user_id,
                "user_name": self.user.display_name,
                "is_typing": is_typing,
            },
        )

    def get_online_users(self, user_ids: list[str] | None = None) -> dict[str, bool]:
        return presence.snapshot(user_ids)

    async def get_stats(self) -> dict:
        event_ids = await membership.user_event_ids(self.db, self.user_id)
        return await message_store.message_stats(self.db, self.user_id, event_ids)

    # -- moderation ---------------------------------------------------------

    async def add_internal_note(self, chat_id: uuid.UUID, note: str, is_private: bool = True) -> dict:
        messages, _ = await message_store.find_messages(
            self.db, MessageFilter(between=(self.user_id, chat_id)), limit=1
        )
        if not messages:
            messages, _ = await message_store.find_messages(
                self.db, MessageFilter(event_id=chat_id), limit=1
            )
        if not messages:
            raise NotFound("Conversation not found")

        row = await message_store.add_internal_note(
            self.db, messages[0].id, self.user_id, note, is_private
        )
        await self.db.commit()
        return {
            "id": row.id,
            "message_id": row.message_id,
            "note": row.note,
            "is_private": row.is_private,
            "created_at": row.created_at,
        }

    async def add_label(self, message_id: uuid.UUID, label: str) -> dict:
        await message_store.require_message(self.db, message_id)
        added = await message_store.add_label(self.db, message_id, self.user_id, label)
        await self.db.commit()
        return {"message_id": message_id, "label": label, "added": added}
