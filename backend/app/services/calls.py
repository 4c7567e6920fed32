import asyncio
import logging
import secrets
import uuid
from dataclasses import dataclass, field
from datetime import datetime, timezone

from sqlalchemy.ext.asyncio import AsyncSession

from app import database
from app.config import settings
from app.exceptions import Forbidden, NotFound, ValidationError
from app.models.user import User
from app.schemas.message import serialize_message
from app.services import membership, message_store
from app.services.message_store import MessageDraft, MessageFilter
from app.services.messaging import clamp_limit, paginate
from app.services.presence import presence
from app.services.rooms import IndividualRoom
from app.websocket.manager import manager

logger = logging.getLogger(__name__)


def generate_call_id() -> str:
    return f"call_{int(datetime.now(timezone.utc).timestamp() * 1000)}_{secrets.token_hex(4)}"


@dataclass
class CallSession:
    call_id: str
    call_type: str
    caller_id: uuid.UUID
    recipient_id: uuid.UUID
    message_id: uuid.UUID
    status: str = "initiated"
    started_at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))
    answered_at: datetime | None = None
    # user id -> {"joined_at": ..., "left_at": ...}
    participants: dict[uuid.UUID, dict] = field(default_factory=dict)

    def is_party(self, user_id: uuid.UUID) -> bool:
        return user_id in (self.caller_id, self.recipient_id)

    def to_dict(self) -> dict:
        return {
            "call_id": self.call_id,
            "call_type": self.call_type,
            "caller_id": self.caller_id,
            "recipient_id": self.recipient_id,
            "message_id": self.message_id,
            "status": self.status,
            "started_at": self.started_at,
            "answered_at": self.answered_at,
            "participants": [
                {"user_id": uid, **times} for uid, times in self.participants.items()
            ],
        }


@dataclass
class CallRegistry:
    """In-memory table of calls that have not ended yet."""

    calls: dict[str, CallSession] = field(default_factory=dict)

    def start(self, session: CallSession) -> CallSession:
        session.participants[session.caller_id] = {
            "joined_at": session.started_at,
            "left_at": None,
        }
        self.calls[session.call_id] = session
        return session

    def get(self, call_id: str) -> CallSession | None:
        return self.calls.get(call_id)

    def join(self, call_id: str, user_id: uuid.UUID) -> CallSession | None:
        session = self.calls.get(call_id)
        if session is None:
            return None
        now = datetime.now(timezone.utc)
        session.participants[user_id] = {"joined_at": now, "left_at": None}
        session.status = "ongoing"
        session.answered_at = now
        return session

    def finish(self, call_id: str) -> tuple[CallSession, int] | None:
        """Close a call. Returns the session and its talk time in seconds."""
        session = self.calls.pop(call_id, None)
        if session is None:
            return None
        now = datetime.now(timezone.utc)
        for times in session.participants.values():
            times["left_at"] = times["left_at"] or now
        duration = 0
        if session.answered_at is not None:
            duration = int((now - session.answered_at).total_seconds())
        return session, duration

    def active_for(self, user_id: uuid.UUID) -> list[CallSession]:
        return [
            s for s in self.calls.values()
            if s.status == "ongoing" and user_id in s.participants
        ]

    def for_user(self, user_id: uuid.UUID) -> list[CallSession]:
        return [s for s in self.calls.values() if s.is_party(user_id)]


registry = CallRegistry()

_pending_timeouts: set[asyncio.Task] = set()


async def expire_call(
    call_id: str, broadcaster, delay: float = 0, calls: CallRegistry | None = None
) -> bool:
    """Turn a call that is still ringing into a missed call."""
    calls = calls or registry
    if delay:
        await asyncio.sleep(delay)
    session = calls.get(call_id)
    if session is None or session.status != "initiated":
        return False

    calls.finish(call_id)
    try:
        async with database.async_session() as db:
            await message_store.update_call_log(db, session.message_id, "missed", 0)
            await db.commit()
    except Exception:
        logger.warning("Could not mark call %s as missed", call_id, exc_info=True)

    logger.info("Call %s missed", call_id)
    payload = {"call_id": call_id, "reason": "No answer", "status": "missed"}
    for uid in (session.caller_id, session.recipient_id):
        await broadcaster.emit(IndividualRoom(uid), "callMissed", payload)
    return True


def schedule_call_timeout(
    call_id: str,
    broadcaster,
    delay: float | None = None,
    calls: CallRegistry | None = None,
) -> asyncio.Task:
    delay = settings.call_ring_timeout if delay is None else delay
    task = asyncio.create_task(expire_call(call_id, broadcaster, delay, calls))
    _pending_timeouts.add(task)
    task.add_done_callback(_pending_timeouts.discard)
    return task


async def close_calls_for(
    user_id: uuid.UUID, broadcaster, calls: CallRegistry | None = None
) -> list[str]:
    """Close every call ``user_id`` is party to. Runs when their last connection drops."""
    calls = calls or registry
    closed = []
    for session in calls.for_user(user_id):
        _, duration = calls.finish(session.call_id)
        if session.answered_at is not None:
            status = "completed"
        elif user_id == session.caller_id:
            status = "cancelled"
        else:
            status = "missed"
        try:
            async with database.async_session() as db:
                await message_store.update_call_log(db, session.message_id, status, duration)
                await db.commit()
        except Exception:
            logger.warning("Could not close call %s", session.call_id, exc_info=True)

        other = session.recipient_id if user_id == session.caller_id else session.caller_id
        await broadcaster.emit(
            IndividualRoom(other),
            "callEnded",
            {
                "call_id": session.call_id,
                "ended_by": user_id,
                "duration": duration,
                "status": status,
                "reason": "disconnected",
            },
        )
        closed.append(session.call_id)
    if closed:
        logger.info("Closed %d call(s) of disconnected user %s", len(closed), user_id)
    return closed


class CallService:
    def __init__(self, db: AsyncSession, user: User, broadcaster=None, calls: CallRegistry | None = None):
        self.db = db
        self.user = user
        self.user_id = user.id
        self.broadcaster = broadcaster or manager
        self.calls = calls or registry

    def _require_session(self, call_id: str) -> CallSession:
        session = self.calls.get(call_id)
        if session is None:
            raise NotFound("Call not found or expired")
        return session

    async def _log_message(self, session: CallSession) -> dict | None:
        message = await message_store.get_message(self.db, session.message_id)
        return serialize_message(message) if message else None

    async def initiate_call(self, recipient_id: uuid.UUID, call_type: str = "audio") -> dict:
        if call_type not in ("audio", "video"):
            raise ValidationError('Invalid call type. Must be "audio" or "video".')
        if recipient_id == self.user_id:
            raise ValidationError("You cannot call yourself")
        if await membership.get_user(self.db, recipient_id) is None:
            raise NotFound("Recipient not found")
        if not presence.is_online(recipient_id):
            raise ValidationError("Recipient is offline")

        call_id = generate_call_id()
        message = await message_store.create_message(
            self.db,
            MessageDraft(
                sender_id=self.user_id,
                recipient_id=recipient_id,
                type="call",
                call_id=call_id,
                call_type=call_type,
                call_status="initiated",
            ),
        )
        await self.db.commit()
        session = self.calls.start(
            CallSession(
                call_id=call_id,
                call_type=call_type,
                caller_id=self.user_id,
                recipient_id=recipient_id,
                message_id=message.id,
            )
        )
        schedule_call_timeout(call_id, self.broadcaster, calls=self.calls)
        logger.info("Call %s initiated by %s", call_id, self.user_id)

        data = serialize_message(message)
        await self.broadcaster.emit(
            IndividualRoom(recipient_id),
            "incomingCall",
            {"call_id": call_id, "call_type": call_type, "caller": data["sender"], "message_id": message.id},
        )
        await self.broadcaster.emit(
            IndividualRoom(self.user_id),
            "callInitiated",
            {"call_id": call_id, "call_type": call_type, "recipient": data["recipient"], "message_id": message.id},
        )
        return {"call": session.to_dict(), "message": data}

    async def accept_call(self, call_id: str) -> dict:
        session = self._require_session(call_id)
        if session.recipient_id != self.user_id:
            raise Forbidden("Not authorized to accept this call")

        self.calls.join(call_id, self.user_id)
        await message_store.update_call_log(self.db, session.message_id, "ongoing")
        await self.db.commit()

        payload = {"call_id": call_id, "accepted_by": self.user_id, "call_type": session.call_type}
        for uid in (session.caller_id, session.recipient_id):
            await self.broadcaster.emit(IndividualRoom(uid), "callAccepted", payload)
        return session.to_dict()

    async def reject_call(self, call_id: str, reason: str = "rejected") -> dict:
        session = self._require_session(call_id)
        if not session.is_party(self.user_id):
            raise Forbidden("Not a participant in this call")

        # The caller hanging up before an answer cancels rather than rejects
        status = "cancelled" if self.user_id == session.caller_id else "rejected"
        self.calls.finish(call_id)
        await message_store.update_call_log(self.db, session.message_id, status)
        await self.db.commit()

        other = session.recipient_id if self.user_id == session.caller_id else session.caller_id
        await self.broadcaster.emit(
            IndividualRoom(other),
            "callRejected",
            {"call_id": call_id, "rejected_by": self.user_id, "reason": reason, "status": status},
        )
        return {"call_id": call_id, "status": status}

    async def end_call(self, call_id: str) -> dict:
        session = self._require_session(call_id)
        if self.user_id not in session.participants:
            raise Forbidden("Not a participant in this call")

        session, duration = self.calls.finish(call_id)
        status = "completed" if session.answered_at else "cancelled"
        await message_store.update_call_log(self.db, session.message_id, status, duration)
        await self.db.commit()

        call_message = await self._log_message(session)
        payload = {
            "call_id": call_id,
            "ended_by": self.user_id,
            "duration": duration,
            "status": status,
            "call_message": call_message,
        }
        for uid in session.participants:
            await self.broadcaster.emit(IndividualRoom(uid), "callEnded", payload)
        return payload

    async def get_call_history(self, page: int = 1, limit: int | None = None) -> dict:
        limit = clamp_limit(limit)
        page = max(page, 1)
        messages, total = await message_store.find_messages(
            self.db,
            MessageFilter(visible_to=self.user_id, types=["call"], hidden_for=self.user_id),
            page,
            limit,
        )
        return {
            "calls": [serialize_message(m) for m in messages],
            "pagination": paginate(page, limit, total),
        }

    def get_active_calls(self) -> list[dict]:
        return [s.to_dict() for s in self.calls.active_for(self.user_id)]
