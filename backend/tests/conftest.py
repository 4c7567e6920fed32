"""
Pytest-Konfiguration mit In-Memory SQLite fuer die PostgreSQL-Models,
temporaerem Upload-Verzeichnis und aufgezeichneten Websocket-Verbindungen.
"""
import asyncio
import os
from dataclasses import dataclass, field

import pytest
import pytest_asyncio
from httpx import ASGITransport, AsyncClient
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine
from sqlalchemy.pool import StaticPool

from app.database import get_db
from app.main import app
from app.models.base import Base
from app.models.event import Event, EventParticipant
from app.models.user import User
from app.services import calls, delivery, messaging
from app.services.auth import create_access_token
from app.services.presence import presence
from app.services.rooms import room_name
from app.websocket import handlers
from app.websocket.manager import manager

# In-memory SQLite fuer PostgreSQL-Ersatz im Test
TEST_DB_URL = "sqlite+aiosqlite:///:memory:"


@pytest_asyncio.fixture
async def db_engine():
    engine = create_async_engine(TEST_DB_URL, echo=False, poolclass=StaticPool)
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    yield engine
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.drop_all)
    await engine.dispose()


@pytest_asyncio.fixture
async def session_maker(db_engine, monkeypatch):
    """Sessionmaker auf der Test-DB, auch fuer Hintergrund-Tasks und den Websocket."""
    maker = async_sessionmaker(db_engine, class_=AsyncSession, expire_on_commit=False)
    monkeypatch.setattr("app.database.async_session", maker)
    yield maker
    # Offene Hintergrund-Tasks abschliessen, bevor die DB verschwindet
    timers = list(delivery._pending_checks) + list(calls._pending_timeouts)
    for task in timers:
        task.cancel()
    pending = timers + list(messaging._background)
    if pending:
        await asyncio.gather(*pending, return_exceptions=True)


@pytest_asyncio.fixture
async def db_session(session_maker):
    async with session_maker() as session:
        yield session


@pytest.fixture(autouse=True)
def realtime_state(monkeypatch):
    """Presence, Verbindungen und Anrufe sind prozessweit und werden pro Test geleert."""
    # Zustellpruefung und Klingel-Timeout feuern im Test nie von selbst
    monkeypatch.setattr("app.config.settings.delivery_check_delay", 60.0)
    monkeypatch.setattr("app.config.settings.call_ring_timeout", 60.0)
    presence.online.clear()
    presence.last_seen_at.clear()
    manager.connections.clear()
    manager.connection_users.clear()
    manager.rooms.clear()
    calls.registry.calls.clear()
    yield


@pytest.fixture
def tmp_upload_dir(tmp_path, monkeypatch):
    upload_dir = str(tmp_path / "uploads")
    os.makedirs(upload_dir, exist_ok=True)
    monkeypatch.setattr("app.config.settings.upload_dir", upload_dir)
    return upload_dir


@pytest_asyncio.fixture
async def client(session_maker):
    """AsyncClient der FastAPI-App mit ueberschriebener DB-Dependency."""

    async def override_get_db():
        async with session_maker() as session:
            try:
                yield session
                await session.commit()
            except Exception:
                await session.rollback()
                raise

    app.dependency_overrides[get_db] = override_get_db
    transport = ASGITransport(app=app)
    async with AsyncClient(transport=transport, base_url="http://test") as ac:
        yield ac
    app.dependency_overrides.clear()


async def create_user(
    session_maker,
    name: str = "Test User",
    email: str = "test@huddle.local",
    role: str = "user",
    is_blocked: bool = False,
) -> User:
    """Hilfsfunktion: Legt einen Benutzer direkt in der DB an."""
    async with session_maker() as db:
        user = User(name=name, email=email, role=role, is_blocked=is_blocked)
        db.add(user)
        await db.commit()
        return user


async def create_event(
    session_maker,
    creator: User,
    participants: list[User] = (),
    name: str = "Sommerfest",
    status: str = "active",
) -> Event:
    """Hilfsfunktion: Legt ein Event an; der Ersteller ist immer aktiver Teilnehmer."""
    async with session_maker() as db:
        event = Event(name=name, created_by=creator.id)
        db.add(event)
        await db.flush()
        db.add(EventParticipant(event_id=event.id, user_id=creator.id, status="active"))
        for user in participants:
            if user.id != creator.id:
                db.add(EventParticipant(event_id=event.id, user_id=user.id, status=status))
        await db.commit()
        return event


def auth_headers(user: User) -> dict:
    return {"Authorization": f"Bearer {create_access_token(user.id)}"}


@dataclass
class FakeWebSocket:
    """Zeichnet alle gesendeten Frames auf; ersetzt eine echte Verbindung."""

    sent: list[dict] = field(default_factory=list)
    closed_with: int | None = None
    fail: bool = False

    async def send_json(self, data: dict):
        if self.fail:
            raise RuntimeError("connection lost")
        self.sent.append(data)

    async def close(self, code: int = 1000, reason: str | None = None):
        self.closed_with = code

    def of_type(self, event: str) -> list[dict]:
        return [frame for frame in self.sent if frame["type"] == event]


async def connect(user: User) -> tuple[str, FakeWebSocket]:
    """Hilfsfunktion: Verbindet einen Benutzer ueber den Gateway-Handshake."""
    ws = FakeWebSocket()
    connection_id = await handlers.on_connect(ws, user)
    return connection_id, ws


@dataclass
class RecordingBroadcaster:
    events: list[tuple[str, str, dict]] = field(default_factory=list)

    async def emit(self, room, event: str, payload: dict, exclude_connection: str | None = None):
        self.events.append((room_name(room), event, payload))

    def of_type(self, event: str) -> list[tuple[str, dict]]:
        return [(room, payload) for room, name, payload in self.events if name == event]
