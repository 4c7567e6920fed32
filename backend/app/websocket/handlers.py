import logging
import uuid

from fastapi import WebSocket, WebSocketDisconnect
from sqlalchemy import update

from app import database
from app.exceptions import Forbidden, MessagingError, NotFound, ValidationError
from app.models.base import utcnow
from app.models.user import User
from app.schemas.message import serialize_message
from app.services import calls, delivery, membership, message_store
from app.services.auth import authenticate_token
from app.services.messaging import MessagingService
from app.services.presence import presence
from app.services.rooms import ADMIN, EventRoom, IndividualRoom, message_room
from app.websocket.manager import manager

logger = logging.getLogger(__name__)

SIGNALING_EVENTS = ("rtc-signal", "ice-candidate", "call-offer", "call-answer", "call-end")


def _uuid(value, field: str) -> uuid.UUID:
    try:
        return uuid.UUID(str(value))
    except (TypeError, ValueError):
        raise ValidationError(f"Invalid {field}")


def _uuid_list(data: dict, plural: str, singular: str) -> list[uuid.UUID]:
    values = data.get(plural) or ([data[singular]] if data.get(singular) else [])
    return [_uuid(v, singular) for v in values]


async def authenticate_ws(websocket: WebSocket) -> User:
    token = websocket.query_params.get("token")
    if not token:
        header = websocket.headers.get("authorization", "")
        if header.lower().startswith("bearer "):
            token = header[7:].strip()
    async with database.async_session() as db:
        return await authenticate_token(db, token)


async def on_connect(websocket: WebSocket, user: User) -> str:
    connection_id = manager.register(websocket, user.id)
    manager.join(connection_id, IndividualRoom(user.id))
    if user.is_admin:
        manager.join(connection_id, ADMIN)
    try:
        async with database.async_session() as db:
            event_ids = await membership.user_event_ids(db, user.id)
    except Exception:
        # Not announced yet, so dropping the registration is enough
        manager.disconnect(connection_id)
        raise
    for event_id in event_ids:
        manager.join(connection_id, EventRoom(event_id))

    if presence.set_online(user.id, connection_id):
        logger.info("User %s online", user.id)
        await manager.broadcast(
            "userOnline",
            {"user_id": user.id, "user_name": user.display_name},
            exclude_user=user.id,
        )
        try:
            await delivery.reconcile_on_connect(user.id, manager)
        except Exception:
            logger.warning("Delivery reconciliation failed for user %s", user.id, exc_info=True)
    return connection_id


async def on_disconnect(connection_id: str, user: User) -> None:
    manager.disconnect(connection_id)
    if not presence.set_offline(user.id, connection_id):
        return

    await calls.close_calls_for(user.id, manager)

    last_seen = presence.last_seen(user.id) or utcnow()
    try:
        async with database.async_session() as db:
            await db.execute(update(User).where(User.id == user.id).values(last_seen=last_seen))
            await db.commit()
    except Exception:
        logger.warning("Could not persist last_seen for user %s", user.id, exc_info=True)

    logger.info("User %s offline", user.id)
    await manager.broadcast(
        "userOffline", {"user_id": user.id, "last_seen": last_seen}, exclude_user=user.id
    )


# ---------------------------------------------------------------------------
# Client events
# ---------------------------------------------------------------------------

async def handle_typing(connection_id: str, user: User, data: dict) -> None:
    chat_type = data.get("chat_type", "individual")
    if chat_type not in ("individual", "event"):
        raise ValidationError('Invalid chat type. Must be either "individual" or "event".')
    chat_id = _uuid(data.get("chat_id"), "chat_id")
    async with database.async_session() as db:
        await MessagingService(db, user, manager).handle_typing(
            chat_id, chat_type, bool(data.get("is_typing", True))
        )


async def handle_online(connection_id: str, user: User, data: dict) -> None:
    presence.set_online(user.id, connection_id)
    await manager.broadcast(
        "userOnline",
        {"user_id": user.id, "user_name": user.display_name},
        exclude_user=user.id,
    )


async def handle_join_event(connection_id: str, user: User, data: dict) -> None:
    event_id = _uuid(data.get("event_id"), "event_id")
    async with database.async_session() as db:
        if not await membership.is_event_participant(db, event_id, user.id):
            raise Forbidden("You are not a participant of this event")
    manager.join(connection_id, EventRoom(event_id))


async def handle_leave_event(connection_id: str, user: User, data: dict) -> None:
    manager.leave(connection_id, EventRoom(_uuid(data.get("event_id"), "event_id")))


async def _forward(connection_id: str, user: User, data: dict, event: str) -> None:
    async with database.async_session() as db:
        if data.get("forwarded_message_id"):
            # Already persisted over HTTP; receivers must tolerate the duplicate
            message = await message_store.require_message(
                db, _uuid(data["forwarded_message_id"], "forwarded_message_id")
            )
            if message.sender_id != user.id or message.forwarded_from_id is None:
                raise Forbidden("Not a forward you sent")
            messages = [serialize_message(message)]
            rooms = [message_room(message)]
        else:
            message_id = _uuid(data.get("message_id"), "message_id")
            if event == "forwardedToGroup":
                targets = {"events": _uuid_list(data, "event_ids", "event_id")}
            else:
                targets = {"recipients": _uuid_list(data, "recipient_ids", "recipient_id")}
            result = await MessagingService(db, user, manager).forward_message(message_id, **targets)
            if not result["forwarded_count"]:
                reason = result["failed"][0]["message"] if result["failed"] else "Forward failed"
                raise ValidationError(reason)
            messages = result["messages"]
            rooms = [
                EventRoom(m["event_id"]) if m["event_id"] else IndividualRoom(m["recipient"]["id"])
                for m in messages
            ]

    for room, payload in zip(rooms, messages):
        await manager.emit(room, event, {"message": payload, "forwarded_by": user.id})
    await manager.emit_to_connection(
        connection_id,
        "forwardSuccess",
        {"forwarded_count": len(messages), "message_ids": [m["id"] for m in messages]},
    )


async def handle_forward(connection_id: str, user: User, data: dict) -> None:
    event = data.get("type")
    try:
        await _forward(connection_id, user, data, event)
    except MessagingError as exc:
        await manager.emit_to_connection(
            connection_id, "forwardError", {"message": exc.message, "event": event}
        )


async def handle_signal(connection_id: str, user: User, data: dict) -> None:
    """Relay WebRTC signaling between the two parties of a live call."""
    target = _uuid(data.get("target_user_id"), "target_user_id")
    session = calls.registry.get(data.get("call_id"))
    if session is None:
        raise NotFound("Call not found or expired")
    if not session.is_party(user.id) or not session.is_party(target) or target == user.id:
        raise Forbidden("Not a participant in this call")
    payload = {k: v for k, v in data.items() if k not in ("type", "target_user_id")}
    await manager.emit(
        IndividualRoom(target),
        data["type"],
        {**payload, "from_user_id": user.id, "from_user_name": user.display_name},
    )


async def handle_ping(connection_id: str, user: User, data: dict) -> None:
    await manager.emit_to_connection(connection_id, "pong", {"at": utcnow()})


HANDLERS = {
    "typing": handle_typing,
    "online": handle_online,
    "joinEvent": handle_join_event,
    "leaveEvent": handle_leave_event,
    "forwardedMessage": handle_forward,
    "forwardedToGroup": handle_forward,
    "ping": handle_ping,
    **{name: handle_signal for name in SIGNALING_EVENTS},
}


async def dispatch(connection_id: str, user: User, data: dict) -> None:
    """Route one client frame. Errors only ever go back to the acting connection."""
    event = data.get("type") if isinstance(data, dict) else None
    handler = HANDLERS.get(event)
    if handler is None:
        await manager.emit_to_connection(
            connection_id, "error", {"message": f"Unknown event: {event}"}
        )
        return
    try:
        await handler(connection_id, user, data)
    except MessagingError as exc:
        await manager.emit_to_connection(
            connection_id, "error", {"message": exc.message, "event": event}
        )
    except Exception:
        logger.exception("Socket event %s from user %s failed", event, user.id)
        await manager.emit_to_connection(
            connection_id, "error", {"message": "Internal server error", "event": event}
        )


async def websocket_endpoint(websocket: WebSocket):
    await websocket.accept()
    try:
        user = await authenticate_ws(websocket)
    except MessagingError as exc:
        await websocket.send_json({"type": "error", "message": f"Authentication error: {exc.message}"})
        await websocket.close(code=4001, reason="Unauthorized")
        return

    connection_id = await on_connect(websocket, user)
    try:
        while True:
            try:
                data = await websocket.receive_json()
            except (ValueError, TypeError):
                await manager.emit_to_connection(
                    connection_id, "error", {"message": "Invalid frame: expected a JSON object"}
                )
                continue
            await dispatch(connection_id, user, data)
    except WebSocketDisconnect:
        pass
    finally:
        await on_disconnect(connection_id, user)
