"""sent -> delivered transitions driven by presence.

Two paths: a one-shot deferred check shortly after a direct message is
sent, and a reconciliation pass when a recipient's first connection comes
up. Neither is durable; a restart simply leaves messages at ``sent`` until
they are read or the recipient reconnects.
"""
import asyncio
import logging
import uuid
from collections import defaultdict

from app import database
from app.config import settings
from app.exceptions import NotFound
from app.models.base import utcnow
from app.services import message_store
from app.services.presence import presence
from app.services.rooms import IndividualRoom

logger = logging.getLogger(__name__)

_pending_checks: set[asyncio.Task] = set()


async def run_delivery_check(
    message_id: uuid.UUID,
    recipient_id: uuid.UUID,
    sender_id: uuid.UUID,
    broadcaster,
    delay: float = 0,
) -> bool:
    if delay:
        await asyncio.sleep(delay)
    if not presence.is_online(recipient_id):
        return False

    try:
        async with database.async_session() as db:
            changed = await message_store.update_status(db, message_id, "delivered", recipient_id)
            await db.commit()
    except NotFound:
        # Deleted for everyone before the check fired
        return False
    except Exception:
        logger.warning("Delivery check failed for message %s", message_id, exc_info=True)
        return False

    if changed:
        await broadcaster.emit(
            IndividualRoom(sender_id),
            "messageStatus",
            {
                "message_id": message_id,
                "message_ids": [message_id],
                "status": "delivered",
                "delivered_at": utcnow(),
            },
        )
    return changed


def schedule_delivery_check(
    message_id: uuid.UUID,
    recipient_id: uuid.UUID,
    sender_id: uuid.UUID,
    broadcaster,
    delay: float | None = None,
) -> asyncio.Task:
    delay = settings.delivery_check_delay if delay is None else delay
    task = asyncio.create_task(
        run_delivery_check(message_id, recipient_id, sender_id, broadcaster, delay)
    )
    _pending_checks.add(task)
    task.add_done_callback(_pending_checks.discard)
    return task


async def reconcile_on_connect(user_id: uuid.UUID, broadcaster) -> dict[uuid.UUID, list[uuid.UUID]]:
    """Mark every direct message still waiting for ``user_id`` as delivered.

    Each sender gets one consolidated ``messageStatus`` event.
    """
    by_sender: dict[uuid.UUID, list[uuid.UUID]] = defaultdict(list)
    async with database.async_session() as db:
        for message in await message_store.pending_deliveries(db, user_id):
            if await message_store.update_status(db, message.id, "delivered", user_id):
                by_sender[message.sender_id].append(message.id)
        await db.commit()

    delivered_at = utcnow()
    for sender_id, message_ids in by_sender.items():
        await broadcaster.emit(
            IndividualRoom(sender_id),
            "messageStatus",
            {"message_ids": message_ids, "status": "delivered", "delivered_at": delivered_at},
        )
    if by_sender:
        logger.info(
            "Reconciled %d pending deliveries for user %s",
            sum(len(ids) for ids in by_sender.values()),
            user_id,
        )
    return dict(by_sender)
