import json
import uuid
from datetime import datetime

from fastapi import APIRouter, BackgroundTasks, Depends, File, Form, Query, UploadFile
from sqlalchemy.ext.asyncio import AsyncSession

from app.database import get_db
from app.exceptions import ValidationError
from app.models.user import User
from app.schemas.message import (
    ChatType,
    DeleteRequest,
    ForwardRequest,
    InternalNoteRequest,
    LabelRequest,
    MarkReadRequest,
    ReactionRequest,
    ReplyRequest,
    ReportRequest,
    SendMessageRequest,
    StarRequest,
    StatusRequest,
    TypingRequest,
)
from app.services import conversations
from app.services.auth import get_current_user, require_admin
from app.services.messaging import MessagingService, clamp_limit
from app.websocket.manager import manager

router = APIRouter(prefix="/api/messages", tags=["messages"])


def _ok(message: str, data=None) -> dict:
    return {"success": True, "message": message, "data": data}


def get_messaging(
    background_tasks: BackgroundTasks,
    db: AsyncSession = Depends(get_db),
    current_user: User = Depends(get_current_user),
) -> MessagingService:
    return MessagingService(db, current_user, manager, background_tasks)


def get_admin_messaging(
    background_tasks: BackgroundTasks,
    db: AsyncSession = Depends(get_db),
    current_user: User = Depends(require_admin),
) -> MessagingService:
    return MessagingService(db, current_user, manager, background_tasks)


# -- queries ----------------------------------------------------------------

@router.get("/conversations")
async def list_conversations(
    page: int = Query(1, ge=1),
    limit: int = Query(20, ge=1),
    search: str | None = None,
    db: AsyncSession = Depends(get_db),
    current_user: User = Depends(get_current_user),
):
    result = await conversations.get_conversations(
        db, current_user.id, page, clamp_limit(limit), search
    )
    return _ok("Conversations fetched", result)


@router.get("/history/{chat_type}/{chat_id}")
async def chat_history(
    chat_type: str,
    chat_id: uuid.UUID,
    page: int = Query(1, ge=1),
    limit: int | None = Query(None, ge=1),
    before: datetime | None = None,
    service: MessagingService = Depends(get_messaging),
):
    result = await service.get_history(chat_type, chat_id, page, limit, before)
    return _ok("Chat history fetched", result)


@router.get("/search")
async def search_messages(
    query: str = "",
    chat_id: uuid.UUID | None = None,
    type: ChatType | None = None,
    page: int = Query(1, ge=1),
    limit: int | None = Query(None, ge=1),
    service: MessagingService = Depends(get_messaging),
):
    result = await service.search_messages(query, chat_id, type, page, limit)
    return _ok("Search completed", result)


@router.get("/starred")
async def starred_messages(
    page: int = Query(1, ge=1),
    limit: int | None = Query(None, ge=1),
    service: MessagingService = Depends(get_messaging),
):
    return _ok("Starred messages fetched", await service.get_starred_messages(page, limit))


@router.get("/voice")
async def voice_messages(
    chat_id: uuid.UUID | None = None,
    type: ChatType | None = None,
    page: int = Query(1, ge=1),
    limit: int | None = Query(None, ge=1),
    service: MessagingService = Depends(get_messaging),
):
    result = await service.get_voice_messages(chat_id, type, page, limit)
    return _ok("Voice messages fetched", result)


@router.get("/online")
async def online_users(
    user_ids: list[str] = Query(default=[]),
    service: MessagingService = Depends(get_messaging),
):
    # Accept both ?user_ids=a&user_ids=b and ?user_ids=a,b
    ids = [uid for value in user_ids for uid in value.split(",") if uid]
    return _ok("Online status fetched", service.get_online_users(ids))


@router.get("/stats")
async def message_stats(service: MessagingService = Depends(get_messaging)):
    return _ok("Message stats fetched", await service.get_stats())


# -- sending ----------------------------------------------------------------

@router.post("/send", status_code=201)
async def send_message(
    body: SendMessageRequest,
    service: MessagingService = Depends(get_messaging),
):
    message = await service.send_message(
        recipient_id=body.recipient_id,
        event_id=body.event_id,
        body=body.body,
        type=body.type,
        attachments=body.attachments,
        client_message_id=body.client_message_id,
    )
    return _ok("Message sent", message)


@router.post("/send-with-files", status_code=201)
async def send_with_files(
    files: list[UploadFile] = File(...),
    recipient_id: uuid.UUID | None = Form(None),
    event_id: uuid.UUID | None = Form(None),
    body: str = Form(""),
    service: MessagingService = Depends(get_messaging),
):
    message = await service.send_with_files(files, recipient_id, event_id, body)
    return _ok("Message with files sent", message)


@router.post("/send-audio", status_code=201)
async def send_audio(
    audio: UploadFile = File(...),
    recipient_id: uuid.UUID | None = Form(None),
    event_id: uuid.UUID | None = Form(None),
    body: str = Form(""),
    duration: float | None = Form(None),
    service: MessagingService = Depends(get_messaging),
):
    message = await service.send_audio(audio, recipient_id, event_id, body, duration)
    return _ok("Audio message sent", message)


@router.post("/send-voice", status_code=201)
async def send_voice(
    audio: UploadFile = File(...),
    recipient_id: uuid.UUID | None = Form(None),
    event_id: uuid.UUID | None = Form(None),
    duration: float | None = Form(None),
    waveform: str | None = Form(None),
    service: MessagingService = Depends(get_messaging),
):
    try:
        samples = json.loads(waveform) if waveform else None
    except ValueError:
        raise ValidationError("waveform must be a JSON array")
    message = await service.send_voice(audio, recipient_id, event_id, duration, samples)
    return _ok("Voice message sent", message)


# -- read state -------------------------------------------------------------

@router.post("/mark-read")
async def mark_read(
    body: MarkReadRequest,
    service: MessagingService = Depends(get_messaging),
):
    result = await service.mark_as_read(body.chat_id, body.type, body.message_ids)
    return _ok(f"{result['marked_count']} message(s) marked as read", result)


@router.post("/status")
async def update_status(
    body: StatusRequest,
    service: MessagingService = Depends(get_messaging),
):
    result = await service.update_message_status(body.message_id, body.status)
    return _ok("Message status updated", result)


@router.post("/typing")
async def typing(
    body: TypingRequest,
    service: MessagingService = Depends(get_messaging),
):
    await service.handle_typing(body.chat_id, body.type, body.is_typing)
    return _ok("Typing status sent")


@router.post("/internal-note", status_code=201)
async def internal_note(
    body: InternalNoteRequest,
    service: MessagingService = Depends(get_admin_messaging),
):
    note = await service.add_internal_note(body.chat_id, body.note, body.is_private)
    return _ok("Internal note added successfully", note)


# -- per-message actions ------------------------------------------------------

@router.post("/{message_id}/react")
async def react(
    message_id: uuid.UUID,
    body: ReactionRequest,
    service: MessagingService = Depends(get_messaging),
):
    reactions = await service.react_to_message(message_id, body.emoji)
    return _ok("Reaction added", {"message_id": message_id, "reactions": reactions})


@router.delete("/{message_id}/react")
async def remove_reaction(
    message_id: uuid.UUID,
    service: MessagingService = Depends(get_messaging),
):
    reactions = await service.remove_reaction(message_id)
    return _ok("Reaction removed", {"message_id": message_id, "reactions": reactions})


@router.post("/{message_id}/reply", status_code=201)
async def reply(
    message_id: uuid.UUID,
    body: ReplyRequest,
    service: MessagingService = Depends(get_messaging),
):
    message = await service.reply_to_message(message_id, body.body, body.type, body.attachments)
    return _ok("Reply sent", message)


@router.post("/{message_id}/forward")
async def forward(
    message_id: uuid.UUID,
    body: ForwardRequest,
    service: MessagingService = Depends(get_messaging),
):
    result = await service.forward_message(message_id, body.recipients, body.events)
    return _ok(f"Message forwarded to {result['forwarded_count']} chat(s)", result)


@router.post("/{message_id}/star")
async def star(
    message_id: uuid.UUID,
    body: StarRequest,
    service: MessagingService = Depends(get_messaging),
):
    result = await service.toggle_star(message_id, body.action)
    return _ok("Message starred" if result["starred"] else "Message unstarred", result)


@router.post("/{message_id}/labels")
async def add_label(
    message_id: uuid.UUID,
    body: LabelRequest,
    service: MessagingService = Depends(get_admin_messaging),
):
    return _ok("Label added", await service.add_label(message_id, body.label))


@router.post("/{message_id}/report", status_code=201)
async def report(
    message_id: uuid.UUID,
    body: ReportRequest,
    service: MessagingService = Depends(get_messaging),
):
    await service.report_message(message_id, body.reason, body.description)
    return _ok("Message reported")


@router.delete("/{message_id}")
async def delete_message(
    message_id: uuid.UUID,
    body: DeleteRequest | None = None,
    service: MessagingService = Depends(get_messaging),
):
    for_everyone = body.delete_for_everyone if body else False
    result = await service.delete_message(message_id, for_everyone)
    return _ok("Message deleted for everyone" if for_everyone else "Message deleted", result)
