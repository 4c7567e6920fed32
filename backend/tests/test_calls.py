"""Tests fuer Audio-/Videoanrufe (Signalisierung und Anruf-Log)."""
import asyncio
import uuid

import pytest
from httpx import AsyncClient

from app.services import calls
from app.websocket import handlers
from app.websocket.manager import manager
from tests.conftest import auth_headers, connect, create_user


async def _users(session_maker):
    alice = await create_user(session_maker, name="Alice", email="alice@huddle.local")
    bob = await create_user(session_maker, name="Bob", email="bob@huddle.local")
    return alice, bob


async def _initiate(client: AsyncClient, caller, recipient, call_type="audio") -> dict:
    resp = await client.post(
        "/api/messages/calls/initiate",
        json={"recipient_id": str(recipient.id), "call_type": call_type},
        headers=auth_headers(caller),
    )
    assert resp.status_code == 201, resp.text
    return resp.json()["data"]


@pytest.mark.asyncio
async def test_call_lifecycle(client: AsyncClient, session_maker):
    alice, bob = await _users(session_maker)
    _, alice_ws = await connect(alice)
    _, bob_ws = await connect(bob)

    data = await _initiate(client, alice, bob, "video")
    call_id = data["call"]["call_id"]
    assert call_id.startswith("call_")
    assert data["call"]["status"] == "initiated"
    assert data["message"]["type"] == "call"
    assert data["message"]["call"]["status"] == "initiated"

    (incoming,) = bob_ws.of_type("incomingCall")
    assert incoming["call_id"] == call_id
    assert incoming["call_type"] == "video"
    assert incoming["caller"]["id"] == str(alice.id)
    assert len(alice_ws.of_type("callInitiated")) == 1

    # Nur der Angerufene darf annehmen
    resp = await client.post(
        "/api/messages/calls/accept", json={"call_id": call_id}, headers=auth_headers(alice)
    )
    assert resp.status_code == 403

    resp = await client.post(
        "/api/messages/calls/accept", json={"call_id": call_id}, headers=auth_headers(bob)
    )
    assert resp.status_code == 200
    assert resp.json()["data"]["status"] == "ongoing"
    assert len(alice_ws.of_type("callAccepted")) == 1
    assert len(bob_ws.of_type("callAccepted")) == 1

    resp = await client.get("/api/messages/calls/active", headers=auth_headers(alice))
    assert [c["call_id"] for c in resp.json()["data"]] == [call_id]

    resp = await client.post(
        "/api/messages/calls/end", json={"call_id": call_id}, headers=auth_headers(alice)
    )
    assert resp.status_code == 200
    ended = resp.json()["data"]
    assert ended["status"] == "completed"
    assert ended["duration"] >= 0
    assert ended["call_message"]["call"]["status"] == "completed"
    assert len(bob_ws.of_type("callEnded")) == 1

    resp = await client.get("/api/messages/calls/active", headers=auth_headers(alice))
    assert resp.json()["data"] == []

    resp = await client.get("/api/messages/calls/history", headers=auth_headers(bob))
    history = resp.json()["data"]
    assert [m["call"]["call_id"] for m in history["calls"]] == [call_id]
    assert history["pagination"]["total"] == 1

    # Beendete Anrufe sind nicht mehr bekannt
    resp = await client.post(
        "/api/messages/calls/end", json={"call_id": call_id}, headers=auth_headers(alice)
    )
    assert resp.status_code == 404


@pytest.mark.asyncio
async def test_recipient_rejects_call(client: AsyncClient, session_maker):
    alice, bob = await _users(session_maker)
    _, alice_ws = await connect(alice)
    await connect(bob)
    call_id = (await _initiate(client, alice, bob))["call"]["call_id"]

    resp = await client.post(
        "/api/messages/calls/reject",
        json={"call_id": call_id, "reason": "busy"},
        headers=auth_headers(bob),
    )
    assert resp.status_code == 200
    assert resp.json()["data"]["status"] == "rejected"

    (frame,) = alice_ws.of_type("callRejected")
    assert frame["reason"] == "busy"
    assert frame["rejected_by"] == str(bob.id)

    resp = await client.get("/api/messages/calls/history", headers=auth_headers(alice))
    assert resp.json()["data"]["calls"][0]["call"]["status"] == "rejected"


@pytest.mark.asyncio
async def test_caller_cancels_before_answer(client: AsyncClient, session_maker):
    alice, bob = await _users(session_maker)
    _, bob_ws = await connect(bob)
    call_id = (await _initiate(client, alice, bob))["call"]["call_id"]

    resp = await client.post(
        "/api/messages/calls/reject", json={"call_id": call_id}, headers=auth_headers(alice)
    )
    assert resp.json()["data"]["status"] == "cancelled"
    assert bob_ws.of_type("callRejected")[0]["status"] == "cancelled"


@pytest.mark.asyncio
async def test_unanswered_call_ended_by_caller_is_cancelled(client: AsyncClient, session_maker):
    alice, bob = await _users(session_maker)
    await connect(bob)
    call_id = (await _initiate(client, alice, bob))["call"]["call_id"]

    resp = await client.post(
        "/api/messages/calls/end", json={"call_id": call_id}, headers=auth_headers(alice)
    )
    ended = resp.json()["data"]
    assert ended["status"] == "cancelled"
    assert ended["duration"] == 0


@pytest.mark.asyncio
async def test_initiate_validation(client: AsyncClient, session_maker):
    alice, bob = await _users(session_maker)

    resp = await client.post(
        "/api/messages/calls/initiate",
        json={"recipient_id": str(bob.id)},
        headers=auth_headers(alice),
    )
    assert resp.status_code == 400
    assert resp.json()["message"] == "Recipient is offline"

    resp = await client.post(
        "/api/messages/calls/initiate",
        json={"recipient_id": str(alice.id)},
        headers=auth_headers(alice),
    )
    assert resp.status_code == 400

    resp = await client.post(
        "/api/messages/calls/initiate",
        json={"recipient_id": str(uuid.uuid4())},
        headers=auth_headers(alice),
    )
    assert resp.status_code == 404

    resp = await client.post(
        "/api/messages/calls/initiate",
        json={"recipient_id": str(bob.id), "call_type": "hologram"},
        headers=auth_headers(alice),
    )
    assert resp.status_code == 422


@pytest.mark.asyncio
async def test_outsider_cannot_touch_call(client: AsyncClient, session_maker):
    alice, bob = await _users(session_maker)
    carol = await create_user(session_maker, name="Carol", email="carol@huddle.local")
    await connect(bob)
    call_id = (await _initiate(client, alice, bob))["call"]["call_id"]

    for action in ("accept", "reject", "end"):
        resp = await client.post(
            f"/api/messages/calls/{action}", json={"call_id": call_id}, headers=auth_headers(carol)
        )
        assert resp.status_code == 403, action

    resp = await client.post(
        "/api/messages/calls/accept", json={"call_id": "call_0_dead"}, headers=auth_headers(bob)
    )
    assert resp.status_code == 404


async def _call_status(client: AsyncClient, user, call_id: str) -> str:
    resp = await client.get("/api/messages/calls/history", headers=auth_headers(user))
    (entry,) = [m for m in resp.json()["data"]["calls"] if m["call"]["call_id"] == call_id]
    return entry["call"]["status"]


@pytest.mark.asyncio
async def test_unanswered_call_becomes_missed(client: AsyncClient, session_maker):
    alice, bob = await _users(session_maker)
    _, alice_ws = await connect(alice)
    _, bob_ws = await connect(bob)
    call_id = (await _initiate(client, alice, bob))["call"]["call_id"]

    assert await calls.expire_call(call_id, manager) is True
    assert calls.registry.get(call_id) is None
    (missed,) = alice_ws.of_type("callMissed")
    assert missed["call_id"] == call_id
    assert missed["reason"] == "No answer"
    assert len(bob_ws.of_type("callMissed")) == 1
    assert await _call_status(client, alice, call_id) == "missed"

    # Ein zweiter Timeout findet nichts mehr
    assert await calls.expire_call(call_id, manager) is False


@pytest.mark.asyncio
async def test_answered_call_does_not_expire(client: AsyncClient, session_maker):
    alice, bob = await _users(session_maker)
    _, alice_ws = await connect(alice)
    await connect(bob)
    call_id = (await _initiate(client, alice, bob))["call"]["call_id"]
    await client.post(
        "/api/messages/calls/accept", json={"call_id": call_id}, headers=auth_headers(bob)
    )

    assert await calls.expire_call(call_id, manager) is False
    assert calls.registry.get(call_id).status == "ongoing"
    assert alice_ws.of_type("callMissed") == []


@pytest.mark.asyncio
async def test_ring_timeout_is_scheduled(client: AsyncClient, session_maker, monkeypatch):
    monkeypatch.setattr("app.config.settings.call_ring_timeout", 0.01)
    alice, bob = await _users(session_maker)
    _, alice_ws = await connect(alice)
    await connect(bob)
    call_id = (await _initiate(client, alice, bob))["call"]["call_id"]

    await asyncio.gather(*calls._pending_timeouts)

    assert calls.registry.calls == {}
    assert [f["call_id"] for f in alice_ws.of_type("callMissed")] == [call_id]


@pytest.mark.asyncio
async def test_disconnect_ends_ongoing_call(client: AsyncClient, session_maker):
    alice, bob = await _users(session_maker)
    alice_cid, _ = await connect(alice)
    _, bob_ws = await connect(bob)
    call_id = (await _initiate(client, alice, bob))["call"]["call_id"]
    await client.post(
        "/api/messages/calls/accept", json={"call_id": call_id}, headers=auth_headers(bob)
    )

    await handlers.on_disconnect(alice_cid, alice)

    assert calls.registry.calls == {}
    (ended,) = bob_ws.of_type("callEnded")
    assert ended["call_id"] == call_id
    assert ended["status"] == "completed"
    assert ended["reason"] == "disconnected"
    assert await _call_status(client, bob, call_id) == "completed"


@pytest.mark.asyncio
async def test_recipient_disconnect_while_ringing_is_missed(client: AsyncClient, session_maker):
    alice, bob = await _users(session_maker)
    _, alice_ws = await connect(alice)
    bob_cid, _ = await connect(bob)
    second_cid, _ = await connect(bob)
    call_id = (await _initiate(client, alice, bob))["call"]["call_id"]

    # Solange noch eine Verbindung offen ist, klingelt es weiter
    await handlers.on_disconnect(second_cid, bob)
    assert calls.registry.get(call_id) is not None

    await handlers.on_disconnect(bob_cid, bob)
    assert calls.registry.calls == {}
    (ended,) = alice_ws.of_type("callEnded")
    assert ended["status"] == "missed"
    assert ended["duration"] == 0
    assert await _call_status(client, alice, call_id) == "missed"
