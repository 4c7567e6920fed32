import uuid
from datetime import datetime

from sqlalchemy import (
    JSON,
    Boolean,
    DateTime,
    ForeignKey,
    Integer,
    String,
    Text,
    UniqueConstraint,
)
from sqlalchemy.orm import Mapped, mapped_column, relationship

from app.models.base import Base, TimestampMixin, UUIDPrimaryKey, UUIDType, utcnow

MESSAGE_TYPES = (
    "text",
    "image",
    "audio",
    "video",
    "document",
    "voice",
    "multiple",
    "system",
    "call",
)
ATTACHMENT_TYPES = ("image", "audio", "video", "document", "voice", "other")
MESSAGE_STATUSES = ("sent", "delivered", "read")
ADMIN_LABELS = ("urgent", "follow-up", "billing", "verification", "complaint")
REPORT_REASONS = ("spam", "harassment", "inappropriate", "other")
CALL_STATUSES = (
    "initiated",
    "ongoing",
    "completed",
    "missed",
    "rejected",
    "cancelled",
    "failed",
)

MAX_BODY_LENGTH = 10000
MAX_NOTE_LENGTH = 1000
MAX_REPORT_LENGTH = 2000
SNIPPET_LENGTH = 100


class Message(Base, UUIDPrimaryKey, TimestampMixin):
    __tablename__ = "messages"

    sender_id: Mapped[uuid.UUID] = mapped_column(
        UUIDType(), ForeignKey("users.id"), nullable=False, index=True
    )
    # Exactly one of recipient_id / event_id is set, except for system messages
    recipient_id: Mapped[uuid.UUID | None] = mapped_column(
        UUIDType(), ForeignKey("users.id"), nullable=True, index=True
    )
    event_id: Mapped[uuid.UUID | None] = mapped_column(
        UUIDType(), ForeignKey("events.id"), nullable=True, index=True
    )

    body: Mapped[str] = mapped_column(Text, nullable=False, default="")
    type: Mapped[str] = mapped_column(String(20), nullable=False, default="text")
    attachments: Mapped[list] = mapped_column(JSON, nullable=False, default=list)

    # Delivery state
    status: Mapped[str] = mapped_column(
        String(20), nullable=False, default="sent", index=True
    )
    sent_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=utcnow
    )
    delivered_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True))
    read_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True))
    is_read: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)

    # Reply snippet is copied at write time and never re-synced
    reply_to_id: Mapped[uuid.UUID | None] = mapped_column(UUIDType(), index=True)
    reply_to_snippet: Mapped[str | None] = mapped_column(String(SNIPPET_LENGTH))
    reply_to_sender_name: Mapped[str | None] = mapped_column(String(100))

    forwarded_from_id: Mapped[uuid.UUID | None] = mapped_column(UUIDType())
    forwarded_from_sender_id: Mapped[uuid.UUID | None] = mapped_column(UUIDType())
    forwarded_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True))
    forward_count: Mapped[int] = mapped_column(Integer, nullable=False, default=0)

    # Call log (type == 'call')
    call_id: Mapped[str | None] = mapped_column(String(64), index=True)
    call_type: Mapped[str | None] = mapped_column(String(10))  # 'audio' or 'video'
    call_status: Mapped[str | None] = mapped_column(String(20))
    call_duration: Mapped[int | None] = mapped_column(Integer)

    client_message_id: Mapped[str | None] = mapped_column(String(64))

    sender = relationship("User", foreign_keys=[sender_id], lazy="selectin")
    recipient = relationship("User", foreign_keys=[recipient_id], lazy="selectin")
    event = relationship("Event", lazy="selectin")

    reactions = relationship(
        "MessageReaction",
        back_populates="message",
        cascade="all, delete-orphan",
        lazy="selectin",
        order_by="MessageReaction.reacted_at",
    )
    stars = relationship(
        "MessageStar", back_populates="message", cascade="all, delete-orphan", lazy="selectin"
    )
    deletions = relationship(
        "MessageDeletion", back_populates="message", cascade="all, delete-orphan", lazy="selectin"
    )
    receipts = relationship(
        "MessageReceipt", back_populates="message", cascade="all, delete-orphan", lazy="selectin"
    )
    labels = relationship(
        "MessageLabel", back_populates="message", cascade="all, delete-orphan"
    )
    notes = relationship(
        "MessageNote", back_populates="message", cascade="all, delete-orphan"
    )
    reports = relationship(
        "MessageReport", back_populates="message", cascade="all, delete-orphan"
    )

    @property
    def is_group(self) -> bool:
        return self.event_id is not None

    @property
    def reply_to(self) -> dict | None:
        if self.reply_to_id is None:
            return None
        return {
            "message_id": self.reply_to_id,
            "snippet": self.reply_to_snippet or "",
            "sender_name": self.reply_to_sender_name or "",
        }

    @property
    def forwarded_from(self) -> dict | None:
        if self.forwarded_from_id is None:
            return None
        return {
            "message_id": self.forwarded_from_id,
            "original_sender_id": self.forwarded_from_sender_id,
            "forwarded_at": self.forwarded_at,
        }

    @property
    def call(self) -> dict | None:
        if self.type != "call":
            return None
        return {
            "call_id": self.call_id,
            "call_type": self.call_type,
            "status": self.call_status,
            "duration": self.call_duration or 0,
        }

    @property
    def delivered_to(self) -> list[uuid.UUID]:
        return [r.user_id for r in self.receipts if r.kind == "delivered"]

    @property
    def read_by(self) -> list[uuid.UUID]:
        return [r.user_id for r in self.receipts if r.kind == "read"]

    @property
    def starred_by(self) -> list["MessageStar"]:
        return list(self.stars)

    @property
    def deleted_for(self) -> list["MessageDeletion"]:
        return list(self.deletions)

    def is_participant(self, user_id: uuid.UUID) -> bool:
        """Direct-chat participation only; event membership lives elsewhere."""
        return user_id in (self.sender_id, self.recipient_id)

    def is_deleted_for(self, user_id: uuid.UUID) -> bool:
        return any(d.user_id == user_id for d in self.deletions)


class MessageReaction(Base):
    __tablename__ = "message_reactions"
    # At most one active reaction per user and message
    __table_args__ = (UniqueConstraint("message_id", "user_id"),)

    id: Mapped[int] = mapped_column(primary_key=True, autoincrement=True)
    message_id: Mapped[uuid.UUID] = mapped_column(
        UUIDType(), ForeignKey("messages.id", ondelete="CASCADE"), nullable=False, index=True
    )
    user_id: Mapped[uuid.UUID] = mapped_column(UUIDType(), ForeignKey("users.id"), nullable=False)
    emoji: Mapped[str] = mapped_column(String(32), nullable=False)
    reacted_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=utcnow
    )

    message = relationship("Message", back_populates="reactions")


class MessageStar(Base):
    __tablename__ = "message_stars"
    __table_args__ = (UniqueConstraint("message_id", "user_id"),)

    id: Mapped[int] = mapped_column(primary_key=True, autoincrement=True)
    message_id: Mapped[uuid.UUID] = mapped_column(
        UUIDType(), ForeignKey("messages.id", ondelete="CASCADE"), nullable=False, index=True
    )
    user_id: Mapped[uuid.UUID] = mapped_column(
        UUIDType(), ForeignKey("users.id"), nullable=False, index=True
    )
    starred_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=utcnow
    )

    message = relationship("Message", back_populates="stars")


class MessageDeletion(Base):
    __tablename__ = "message_deletions"
    __table_args__ = (UniqueConstraint("message_id", "user_id"),)

    id: Mapped[int] = mapped_column(primary_key=True, autoincrement=True)
    message_id: Mapped[uuid.UUID] = mapped_column(
        UUIDType(), ForeignKey("messages.id", ondelete="CASCADE"), nullable=False, index=True
    )
    user_id: Mapped[uuid.UUID] = mapped_column(
        UUIDType(), ForeignKey("users.id"), nullable=False, index=True
    )
    deleted_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=utcnow
    )

    message = relationship("Message", back_populates="deletions")


class MessageReceipt(Base):
    """Per-user delivered/read marks; the deliveredTo / readBy sets of a message."""

    __tablename__ = "message_receipts"
    __table_args__ = (UniqueConstraint("message_id", "user_id", "kind"),)

    id: Mapped[int] = mapped_column(primary_key=True, autoincrement=True)
    message_id: Mapped[uuid.UUID] = mapped_column(
        UUIDType(), ForeignKey("messages.id", ondelete="CASCADE"), nullable=False, index=True
    )
    user_id: Mapped[uuid.UUID] = mapped_column(
        UUIDType(), ForeignKey("users.id"), nullable=False, index=True
    )
    kind: Mapped[str] = mapped_column(String(10), nullable=False)  # 'delivered' or 'read'
    at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, default=utcnow)

    message = relationship("Message", back_populates="receipts")


class MessageLabel(Base):
    __tablename__ = "message_labels"
    __table_args__ = (UniqueConstraint("message_id", "label"),)

    id: Mapped[int] = mapped_column(primary_key=True, autoincrement=True)
    message_id: Mapped[uuid.UUID] = mapped_column(
        UUIDType(), ForeignKey("messages.id", ondelete="CASCADE"), nullable=False, index=True
    )
    label: Mapped[str] = mapped_column(String(20), nullable=False)
    added_by: Mapped[uuid.UUID] = mapped_column(UUIDType(), ForeignKey("users.id"), nullable=False)
    added_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=utcnow
    )

    message = relationship("Message", back_populates="labels")


class MessageNote(Base):
    """Admin-only annotation, never serialized to end users."""

    __tablename__ = "message_notes"

    id: Mapped[int] = mapped_column(primary_key=True, autoincrement=True)
    message_id: Mapped[uuid.UUID] = mapped_column(
        UUIDType(), ForeignKey("messages.id", ondelete="CASCADE"), nullable=False, index=True
    )
    admin_id: Mapped[uuid.UUID] = mapped_column(UUIDType(), ForeignKey("users.id"), nullable=False)
    note: Mapped[str] = mapped_column(String(MAX_NOTE_LENGTH), nullable=False)
    is_private: Mapped[bool] = mapped_column(Boolean, nullable=False, default=True)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=utcnow
    )

    message = relationship("Message", back_populates="notes")


class MessageReport(Base):
    __tablename__ = "message_reports"
    __table_args__ = (UniqueConstraint("message_id", "reported_by"),)

    id: Mapped[int] = mapped_column(primary_key=True, autoincrement=True)
    message_id: Mapped[uuid.UUID] = mapped_column(
        UUIDType(), ForeignKey("messages.id", ondelete="CASCADE"), nullable=False, index=True
    )
    reported_by: Mapped[uuid.UUID] = mapped_column(
        UUIDType(), ForeignKey("users.id"), nullable=False
    )
    reason: Mapped[str] = mapped_column(String(20), nullable=False)
    description: Mapped[str | None] = mapped_column(Text)
    status: Mapped[str] = mapped_column(String(20), nullable=False, default="pending")
    reported_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=utcnow
    )

    message = relationship("Message", back_populates="reports")
