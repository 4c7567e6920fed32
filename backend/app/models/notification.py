import uuid

from sqlalchemy import Boolean, ForeignKey, String, Text
from sqlalchemy.orm import Mapped, mapped_column

from app.models.base import Base, TimestampMixin, UUIDPrimaryKey, UUIDType


class Notification(Base, UUIDPrimaryKey, TimestampMixin):
    __tablename__ = "notifications"

    user_id: Mapped[uuid.UUID] = mapped_column(
        UUIDType(), ForeignKey("users.id"), nullable=False, index=True
    )
    sender_id: Mapped[uuid.UUID] = mapped_column(
        UUIDType(), ForeignKey("users.id"), nullable=False
    )
    event_id: Mapped[uuid.UUID | None] = mapped_column(
        UUIDType(), ForeignKey("events.id"), nullable=True
    )
    message_id: Mapped[uuid.UUID | None] = mapped_column(UUIDType(), nullable=True)
    notification_type: Mapped[str] = mapped_column(
        String(20), nullable=False, default="message"
    )  # 'message' or 'group_message'
    title: Mapped[str] = mapped_column(String(200), nullable=False)
    preview: Mapped[str | None] = mapped_column(Text, nullable=True)
    is_read: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False)
