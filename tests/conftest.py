from datetime import datetime

import pytest
from fastapi.testclient import TestClient
from sqlalchemy.orm import sessionmaker

from supportchat.db.base import Base
from supportchat.db.session import build_engine, get_db
from supportchat.main import app
from supportchat.services import get_realtime_hub, set_realtime_hub
from supportchat.services.chat_service import ChatService
from supportchat.ws.manager import RealtimeHub

TENANT = "acme"
# Monday 2024-03-04 12:00 UTC
T0 = datetime(2024, 3, 4, 12, 0)


@pytest.fixture
def engine():
    engine = build_engine("sqlite://")
    Base.metadata.create_all(engine)
    yield engine
    engine.dispose()


@pytest.fixture
def session_factory(engine):
    return sessionmaker(bind=engine, autocommit=False, autoflush=False)


@pytest.fixture
def db(session_factory):
    session = session_factory()
    yield session
    session.close()


@pytest.fixture
def file_engine(tmp_path):
    """Separate connections per session, for races between sessions"""
    engine = build_engine(f"sqlite:///{tmp_path / 'chat.db'}")
    Base.metadata.create_all(engine)
    yield engine
    engine.dispose()


@pytest.fixture
def hub():
    return RealtimeHub(buffer_size=50)


@pytest.fixture
def service(hub):
    return ChatService(hub)


@pytest.fixture
def attendant_a(db, service):
    attendant = service.get_or_create_attendant(db, TENANT, "u-a", "Alice", max_conversations=3)
    return service.update_attendant(db, TENANT, attendant.id, status="online")


@pytest.fixture
def attendant_b(db, service):
    attendant = service.get_or_create_attendant(db, TENANT, "u-b", "Bob", max_conversations=3)
    return service.update_attendant(db, TENANT, attendant.id, status="online")


@pytest.fixture
def room(db, service):
    return service.create_room(db, TENANT, "visitor-1", name="Vera", now=T0)


# ────────────────────────────────────────────
# HTTP / websocket client
# ────────────────────────────────────────────

WIDGET = {"X-Tenant-Id": TENANT}


def staff(user_id, tenant_id=TENANT):
    return {"X-Tenant-Id": tenant_id, "X-User-Id": user_id}


def open_room(client, token="visitor-1", **extra):
    response = client.post("/api/rooms", json={"visitor_token": token, "name": "Vera", **extra}, headers=WIDGET)
    assert response.status_code == 201, response.text
    return response.json()


@pytest.fixture
def client(session_factory, hub):
    def override_get_db():
        db = session_factory()
        try:
            yield db
        finally:
            db.close()

    previous_hub = get_realtime_hub()
    app.dependency_overrides[get_db] = override_get_db
    set_realtime_hub(hub)
    # no context manager: the lifespan (database init, scheduler) is not started
    yield TestClient(app)
    app.dependency_overrides.clear()
    set_realtime_hub(previous_hub)


@pytest.fixture
def attendants(client):
    ids = {}
    for user_id, name in (("u-1", "Alice"), ("u-2", "Bob")):
        response = client.post("/api/attendants", json={"user_id": user_id, "display_name": name}, headers=staff(user_id))
        assert response.status_code == 201
        ids[user_id] = response.json()["id"]
        client.patch(f"/api/attendants/{ids[user_id]}", json={"status": "online"}, headers=staff(user_id))
    return ids
