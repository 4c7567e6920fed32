"""Tests fuer In-App-Benachrichtigungen an nicht verbundene Empfaenger."""
import uuid

import pytest
from httpx import AsyncClient
from sqlalchemy import select

from app.models.notification import Notification
from app.services import message_store, notifications
from app.services.message_store import MessageDraft
from tests.conftest import auth_headers, connect, create_event, create_user


async def _users(session_maker, *names: str):
    return [
        await create_user(session_maker, name=name, email=f"{name.lower()}@huddle.local")
        for name in names
    ]


async def _notifications(session_maker) -> list[Notification]:
    async with session_maker() as db:
        result = await db.execute(select(Notification).order_by(Notification.created_at))
        return list(result.scalars().all())


@pytest.mark.asyncio
async def test_offline_recipient_is_notified(client: AsyncClient, session_maker):
    alice, bob = await _users(session_maker, "Alice", "Bob")
    resp = await client.post(
        "/api/messages/send",
        json={"recipient_id": str(bob.id), "body": "Bist du morgen dabei?"},
        headers=auth_headers(alice),
    )
    assert resp.status_code == 201

    (notification,) = await _notifications(session_maker)
    assert notification.user_id == bob.id
    assert notification.sender_id == alice.id
    assert notification.notification_type == "message"
    assert notification.title == "New message from Alice"
    assert notification.preview == "Bist du morgen dabei?"
    assert str(notification.message_id) == resp.json()["data"]["id"]


@pytest.mark.asyncio
async def test_online_recipient_is_not_notified(client: AsyncClient, session_maker):
    alice, bob = await _users(session_maker, "Alice", "Bob")
    await connect(bob)
    await client.post(
        "/api/messages/send",
        json={"recipient_id": str(bob.id), "body": "Hallo"},
        headers=auth_headers(alice),
    )
    assert await _notifications(session_maker) == []


@pytest.mark.asyncio
async def test_group_message_notifies_offline_members(client: AsyncClient, session_maker):
    alice, bob, carol = await _users(session_maker, "Alice", "Bob", "Carol")
    event = await create_event(session_maker, alice, [bob, carol], name="Flohmarkt")
    await connect(carol)

    await client.post(
        "/api/messages/send",
        json={"event_id": str(event.id), "body": "Aufbau um 7 Uhr"},
        headers=auth_headers(alice),
    )

    (notification,) = await _notifications(session_maker)
    assert notification.user_id == bob.id
    assert notification.notification_type == "group_message"
    assert notification.event_id == event.id
    assert notification.title == "New message in Flohmarkt"


@pytest.mark.asyncio
async def test_preview_for_messages_without_text(session_maker, db_session):
    alice, bob = await _users(session_maker, "Alice", "Bob")
    message = await message_store.create_message(
        db_session,
        MessageDraft(
            sender_id=alice.id,
            recipient_id=bob.id,
            type="voice",
            attachments=[{"type": "voice", "url": "/uploads/voice-messages/a.webm"}],
        ),
    )
    (notification,) = await notifications.create_message_notifications(db_session, message)
    assert notification.preview == "Voice message"


@pytest.mark.asyncio
async def test_system_message_creates_no_notification(session_maker, db_session):
    (alice,) = await _users(session_maker, "Alice")
    message = await message_store.create_message(
        db_session, MessageDraft(sender_id=alice.id, type="system", body="Wartung")
    )
    assert await notifications.create_message_notifications(db_session, message) == []


@pytest.mark.asyncio
async def test_background_task_tolerates_missing_message(session_maker):
    await notifications.notify_offline_recipients(uuid.uuid4())
    assert await _notifications(session_maker) == []
