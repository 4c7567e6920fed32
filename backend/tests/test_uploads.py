"""Tests fuer Datei-, Audio- und Sprachnachrichten."""
import os
import uuid

import pytest
from httpx import AsyncClient

from app.exceptions import ValidationError
from app.services import message_store
from app.services.file_store import get_attachment_type
from tests.conftest import auth_headers, create_user


async def _users(session_maker):
    alice = await create_user(session_maker, name="Alice", email="alice@huddle.local")
    bob = await create_user(session_maker, name="Bob", email="bob@huddle.local")
    return alice, bob


def _stored(upload_dir: str, subdir: str) -> list[str]:
    path = os.path.join(upload_dir, subdir)
    return os.listdir(path) if os.path.isdir(path) else []


def test_attachment_type_from_mime():
    assert get_attachment_type("image/png") == "image"
    assert get_attachment_type("video/mp4") == "video"
    assert get_attachment_type("audio/ogg") == "audio"
    assert get_attachment_type("application/pdf") == "document"
    assert get_attachment_type("text/plain") == "document"
    assert get_attachment_type("application/zip") == "other"
    assert get_attachment_type(None) == "other"


@pytest.mark.asyncio
async def test_send_multiple_files(client: AsyncClient, session_maker, tmp_upload_dir):
    alice, bob = await _users(session_maker)
    resp = await client.post(
        "/api/messages/send-with-files",
        data={"recipient_id": str(bob.id), "body": "Fotos vom Fest"},
        files=[
            ("files", ("fest.png", b"\x89PNG fake", "image/png")),
            ("files", ("programm.pdf", b"%PDF-1.4 fake", "application/pdf")),
        ],
        headers=auth_headers(alice),
    )
    assert resp.status_code == 201, resp.text
    message = resp.json()["data"]
    assert message["type"] == "multiple"
    assert message["body"] == "Fotos vom Fest"
    assert [a["type"] for a in message["attachments"]] == ["image", "document"]
    assert message["attachments"][0]["original_name"] == "fest.png"
    assert message["attachments"][0]["url"].startswith("/uploads/attachments/")
    assert message["attachments"][0]["url"].endswith(".png")
    assert len(_stored(tmp_upload_dir, "attachments")) == 2


@pytest.mark.asyncio
async def test_single_image_sets_message_type(client: AsyncClient, session_maker, tmp_upload_dir):
    alice, bob = await _users(session_maker)
    resp = await client.post(
        "/api/messages/send-with-files",
        data={"recipient_id": str(bob.id)},
        files=[("files", ("bild.jpg", b"jpeg bytes", "image/jpeg"))],
        headers=auth_headers(alice),
    )
    assert resp.status_code == 201
    message = resp.json()["data"]
    assert message["type"] == "image"
    assert message["body"] == ""
    assert message["attachments"][0]["size"] == len(b"jpeg bytes")


@pytest.mark.asyncio
async def test_too_many_files(client: AsyncClient, session_maker, tmp_upload_dir):
    alice, bob = await _users(session_maker)
    files = [("files", (f"f{i}.txt", b"x", "text/plain")) for i in range(13)]
    resp = await client.post(
        "/api/messages/send-with-files",
        data={"recipient_id": str(bob.id)},
        files=files,
        headers=auth_headers(alice),
    )
    assert resp.status_code == 400
    assert resp.json()["message"] == "Too many files (max 12)"
    assert _stored(tmp_upload_dir, "attachments") == []


@pytest.mark.asyncio
async def test_oversized_file_is_rejected_and_removed(
    client: AsyncClient, session_maker, tmp_upload_dir, monkeypatch
):
    alice, bob = await _users(session_maker)
    monkeypatch.setattr("app.config.settings.max_upload_size", 10)
    resp = await client.post(
        "/api/messages/send-with-files",
        data={"recipient_id": str(bob.id)},
        files=[("files", ("gross.bin", b"x" * 50, "application/octet-stream"))],
        headers=auth_headers(alice),
    )
    assert resp.status_code == 400
    assert _stored(tmp_upload_dir, "attachments") == []


@pytest.mark.asyncio
async def test_unknown_recipient_stores_nothing(client: AsyncClient, session_maker, tmp_upload_dir):
    alice, _ = await _users(session_maker)
    resp = await client.post(
        "/api/messages/send-with-files",
        data={"recipient_id": str(uuid.uuid4())},
        files=[("files", ("a.txt", b"x", "text/plain"))],
        headers=auth_headers(alice),
    )
    assert resp.status_code == 404
    assert _stored(tmp_upload_dir, "attachments") == []


@pytest.mark.asyncio
async def test_files_removed_when_message_cannot_be_saved(
    client: AsyncClient, session_maker, tmp_upload_dir, monkeypatch
):
    alice, bob = await _users(session_maker)

    async def fail(db, draft):
        raise ValidationError("Message could not be stored")

    monkeypatch.setattr(message_store, "create_message", fail)
    resp = await client.post(
        "/api/messages/send-with-files",
        data={"recipient_id": str(bob.id)},
        files=[("files", ("a.png", b"png", "image/png"))],
        headers=auth_headers(alice),
    )
    assert resp.status_code == 400
    assert _stored(tmp_upload_dir, "attachments") == []


@pytest.mark.asyncio
async def test_send_audio(client: AsyncClient, session_maker, tmp_upload_dir):
    alice, bob = await _users(session_maker)
    resp = await client.post(
        "/api/messages/send-audio",
        data={"recipient_id": str(bob.id), "duration": "12.5"},
        files={"audio": ("song.mp3", b"ID3 fake", "audio/mpeg")},
        headers=auth_headers(alice),
    )
    assert resp.status_code == 201, resp.text
    message = resp.json()["data"]
    assert message["type"] == "audio"
    assert message["attachments"][0]["duration"] == 12.5
    assert message["attachments"][0]["url"].startswith("/uploads/audio/")
    assert len(_stored(tmp_upload_dir, "audio")) == 1


@pytest.mark.asyncio
async def test_send_audio_rejects_non_audio(client: AsyncClient, session_maker, tmp_upload_dir):
    alice, bob = await _users(session_maker)
    resp = await client.post(
        "/api/messages/send-audio",
        data={"recipient_id": str(bob.id)},
        files={"audio": ("notiz.txt", b"hallo", "text/plain")},
        headers=auth_headers(alice),
    )
    assert resp.status_code == 400
    assert resp.json()["message"] == "Only audio files allowed"
    assert _stored(tmp_upload_dir, "audio") == []


@pytest.mark.asyncio
async def test_send_voice_and_list(client: AsyncClient, session_maker, tmp_upload_dir):
    alice, bob = await _users(session_maker)
    resp = await client.post(
        "/api/messages/send-voice",
        data={"recipient_id": str(bob.id), "duration": "3", "waveform": "[0.1, 0.5, 0.2]"},
        files={"audio": ("voice.webm", b"webm fake", "audio/webm")},
        headers=auth_headers(alice),
    )
    assert resp.status_code == 201, resp.text
    message = resp.json()["data"]
    assert message["type"] == "voice"
    attachment = message["attachments"][0]
    assert attachment["type"] == "voice"
    assert attachment["waveform"] == [0.1, 0.5, 0.2]
    assert attachment["url"].startswith("/uploads/voice-messages/")

    resp = await client.get(
        "/api/messages/voice",
        params={"chat_id": str(alice.id), "type": "individual"},
        headers=auth_headers(bob),
    )
    assert [m["id"] for m in resp.json()["data"]["messages"]] == [message["id"]]


@pytest.mark.asyncio
async def test_send_voice_rejects_bad_waveform(client: AsyncClient, session_maker, tmp_upload_dir):
    alice, bob = await _users(session_maker)
    resp = await client.post(
        "/api/messages/send-voice",
        data={"recipient_id": str(bob.id), "waveform": "nicht json"},
        files={"audio": ("voice.webm", b"webm fake", "audio/webm")},
        headers=auth_headers(alice),
    )
    assert resp.status_code == 400
    assert _stored(tmp_upload_dir, "voice-messages") == []
