"""Read-only access to users and event participation owned by the event module."""
import uuid

from sqlalchemy import and_, select
from sqlalchemy.ext.asyncio import AsyncSession

from app.models.event import Event, EventParticipant
from app.models.user import User


async def get_user(db: AsyncSession, user_id: uuid.UUID) -> User | None:
    result = await db.execute(select(User).where(User.id == user_id))
    return result.scalar_one_or_none()


async def get_users(db: AsyncSession, user_ids) -> dict[uuid.UUID, User]:
    ids = {uid for uid in user_ids if uid is not None}
    if not ids:
        return {}
    result = await db.execute(select(User).where(User.id.in_(ids)))
    return {u.id: u for u in result.scalars().all()}


async def get_event(db: AsyncSession, event_id: uuid.UUID) -> Event | None:
    result = await db.execute(select(Event).where(Event.id == event_id))
    return result.scalar_one_or_none()


async def is_event_participant(
    db: AsyncSession, event_id: uuid.UUID, user_id: uuid.UUID
) -> bool:
    result = await db.execute(
        select(EventParticipant.id).where(
            and_(
                EventParticipant.event_id == event_id,
                EventParticipant.user_id == user_id,
                EventParticipant.status == "active",
            )
        )
    )
    return result.first() is not None


async def user_event_ids(db: AsyncSession, user_id: uuid.UUID) -> list[uuid.UUID]:
    result = await db.execute(
        select(EventParticipant.event_id).where(
            and_(
                EventParticipant.user_id == user_id,
                EventParticipant.status == "active",
            )
        )
    )
    return [row[0] for row in result.all()]


async def event_participant_ids(db: AsyncSession, event_id: uuid.UUID) -> list[uuid.UUID]:
    result = await db.execute(
        select(EventParticipant.user_id).where(
            and_(
                EventParticipant.event_id == event_id,
                EventParticipant.status == "active",
            )
        )
    )
    return [row[0] for row in result.all()]
