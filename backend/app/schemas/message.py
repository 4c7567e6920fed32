import uuid
from datetime import datetime
from typing import Literal

from pydantic import BaseModel, Field

ChatType = Literal["individual", "event"]


class UserBrief(BaseModel):
    id: uuid.UUID
    name: str | None = None
    email: str
    avatar: str | None = None

    model_config = {"from_attributes": True}


class ReactionOut(BaseModel):
    user_id: uuid.UUID
    emoji: str
    reacted_at: datetime

    model_config = {"from_attributes": True}


class StarOut(BaseModel):
    user_id: uuid.UUID
    starred_at: datetime

    model_config = {"from_attributes": True}


class DeletionOut(BaseModel):
    user_id: uuid.UUID
    deleted_at: datetime

    model_config = {"from_attributes": True}


class MessageOut(BaseModel):
    """End-user view of a message. Admin notes, labels and reports are never included."""

    id: uuid.UUID
    sender: UserBrief
    recipient: UserBrief | None = None
    event_id: uuid.UUID | None = None
    body: str
    type: str
    attachments: list[dict] = []
    status: str
    sent_at: datetime
    delivered_at: datetime | None = None
    read_at: datetime | None = None
    is_read: bool
    delivered_to: list[uuid.UUID] = []
    read_by: list[uuid.UUID] = []
    reactions: list[ReactionOut] = []
    starred_by: list[StarOut] = []
    deleted_for: list[DeletionOut] = []
    reply_to: dict | None = None
    forwarded_from: dict | None = None
    forward_count: int = 0
    call: dict | None = None
    client_message_id: str | None = None
    created_at: datetime
    updated_at: datetime

    model_config = {"from_attributes": True}


def serialize_message(message) -> dict:
    return MessageOut.model_validate(message).model_dump()


class SendMessageRequest(BaseModel):
    recipient_id: uuid.UUID | None = None
    event_id: uuid.UUID | None = None
    body: str = ""
    type: str = "text"
    attachments: list[dict] = []
    client_message_id: str | None = None


class ReplyRequest(BaseModel):
    body: str = ""
    type: str = "text"
    attachments: list[dict] = []


class ForwardRequest(BaseModel):
    recipients: list[uuid.UUID] = []
    events: list[uuid.UUID] = []


class ReactionRequest(BaseModel):
    emoji: str = Field(min_length=1, max_length=32)


class StarRequest(BaseModel):
    action: Literal["star", "unstar"] = "star"


class DeleteRequest(BaseModel):
    delete_for_everyone: bool = False


class MarkReadRequest(BaseModel):
    chat_id: uuid.UUID
    type: ChatType
    message_ids: list[uuid.UUID] | None = None


class StatusRequest(BaseModel):
    message_id: uuid.UUID
    status: Literal["delivered", "read"]


class TypingRequest(BaseModel):
    chat_id: uuid.UUID
    type: ChatType
    is_typing: bool = True


class InternalNoteRequest(BaseModel):
    chat_id: uuid.UUID
    note: str = Field(min_length=1, max_length=1000)
    is_private: bool = True


class LabelRequest(BaseModel):
    label: str


class ReportRequest(BaseModel):
    reason: str
    description: str | None = Field(default=None, max_length=2000)


class CallInitiateRequest(BaseModel):
    recipient_id: uuid.UUID
    call_type: Literal["audio", "video"] = "audio"


class CallActionRequest(BaseModel):
    call_id: str


class CallRejectRequest(CallActionRequest):
    reason: str = "rejected"
