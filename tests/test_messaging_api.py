from __future__ import annotations

import uuid
from collections.abc import Callable, Generator

import pytest
from fastapi import Request
from fastapi.testclient import TestClient
from sqlalchemy import create_engine, func, select
from sqlalchemy.orm import Session, sessionmaker
from sqlalchemy.pool import StaticPool

from app import audit, events
from app.accounts.models import User
from app.api.deps import get_current_user
from app.core.auth import ActorUser
from app.core.config import get_settings
from app.core.database import Base, get_db
from app.main import app
from app.messaging.models import Conversation
from app.middleware.rate_limit import reset_rate_limiter


@pytest.fixture()
def db_session() -> Generator[Session, None, None]:
    engine = create_engine(
        "sqlite+pysqlite:///:memory:",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )
    SessionLocal = sessionmaker(bind=engine, autocommit=False, autoflush=False)
    Base.metadata.create_all(bind=engine)
    session = SessionLocal()
    try:
        yield session
    finally:
        session.close()
        Base.metadata.drop_all(bind=engine)


@pytest.fixture(autouse=True)
def clear_stubs(monkeypatch: pytest.MonkeyPatch) -> Generator[None, None, None]:
    monkeypatch.setenv("RATE_LIMIT_DISABLED", "true")
    audit.audit_entries.clear()
    events.published_events.clear()
    get_settings.cache_clear()
    reset_rate_limiter()
    yield
    audit.audit_entries.clear()
    events.published_events.clear()
    get_settings.cache_clear()
    reset_rate_limiter()


@pytest.fixture()
def users(db_session: Session) -> dict[str, User]:
    seeded = {
        "admin": User(name="Avery Admin", email="admin@example.com", role="ADMIN"),
        "rep": User(name="Riley Rep", email="rep@example.com", role="SALES_REP"),
        "concierge": User(name=None, email="concierge@example.com", role="CONCIERGE"),
    }
    db_session.add_all(seeded.values())
    db_session.commit()
    return seeded


@pytest.fixture()
def client(
    db_session: Session,
    users: dict[str, User],
) -> Generator[tuple[TestClient, Callable[[str], None]], None, None]:
    def override_get_db() -> Generator[Session, None, None]:
        yield db_session

    state = {"current": "admin"}

    def override_get_current_user(request: Request) -> ActorUser:
        user = users[state["current"]]
        return ActorUser(
            user_id=user.id,
            role=user.role,
            email=user.email,
            name=user.name,
            correlation_id=getattr(request.state, "correlation_id", None),
        )

    def set_actor(name: str) -> None:
        state["current"] = name

    app.dependency_overrides[get_db] = override_get_db
    app.dependency_overrides[get_current_user] = override_get_current_user
    with TestClient(app) as test_client:
        yield test_client, set_actor
    app.dependency_overrides.clear()


def test_direct_conversation_is_reused(
    client: tuple[TestClient, Callable[[str], None]],
    db_session: Session,
    users: dict[str, User],
) -> None:
    test_client, set_actor = client

    created = test_client.post("/api/messages", json={"participantIds": [str(users["rep"].id)]})
    assert created.status_code == 201
    assert created.json()["type"] == "DIRECT"
    assert created.json()["existing"] is False
    assert audit.audit_entries[-1]["entity_type"] == "messaging.conversation"

    set_actor("rep")
    again = test_client.post("/api/messages", json={"participantIds": [str(users["admin"].id)]})
    assert again.status_code == 200
    assert again.json()["id"] == created.json()["id"]
    assert again.json()["existing"] is True
    assert db_session.scalar(select(func.count(Conversation.id))) == 1


@pytest.mark.parametrize(
    ("participants", "message"),
    [
        ([], "At least one participant is required"),
        (["self"], "At least one participant is required"),
        ([str(uuid.UUID(int=7))], "One or more participants not found"),
    ],
)
def test_create_conversation_validation(
    client: tuple[TestClient, Callable[[str], None]],
    users: dict[str, User],
    participants: list[str],
    message: str,
) -> None:
    test_client, _ = client
    ids = [str(users["admin"].id) if item == "self" else item for item in participants]
    response = test_client.post("/api/messages", json={"participantIds": ids})
    assert response.status_code == 400
    assert response.json()["error"] == message
    assert response.json()["code"] == "messaging_conversation_create_failed"


def test_group_conversation_rename_and_display_names(
    client: tuple[TestClient, Callable[[str], None]],
    users: dict[str, User],
) -> None:
    test_client, set_actor = client

    group = test_client.post(
        "/api/messages",
        json={"participantIds": [str(users["rep"].id), str(users["concierge"].id)], "name": "  Install crew  "},
    )
    assert group.status_code == 201
    assert group.json()["type"] == "GROUP"
    assert group.json()["name"] == "Install crew"
    assert len(group.json()["participants"]) == 3
    group_id = group.json()["id"]

    direct = test_client.post("/api/messages", json={"participantIds": [str(users["concierge"].id)]})
    direct_id = direct.json()["id"]

    renamed = test_client.patch(f"/api/messages/{group_id}", json={"name": "Roofing team"})
    assert renamed.status_code == 200
    assert renamed.json() == {"id": group_id, "name": "Roofing team"}

    cannot = test_client.patch(f"/api/messages/{direct_id}", json={"name": "Nope"})
    assert cannot.status_code == 400
    assert cannot.json()["error"] == "Cannot rename a direct message conversation"

    names = {item["id"]: item["name"] for item in test_client.get("/api/messages").json()}
    assert names[group_id] == "Roofing team"
    assert names[direct_id] == "concierge@example.com"

    set_actor("concierge")
    names = {item["id"]: item["name"] for item in test_client.get("/api/messages").json()}
    assert names[direct_id] == "Avery Admin"

    set_actor("rep")
    assert [item["id"] for item in test_client.get("/api/messages").json()] == [group_id]


def test_messages_unread_counts_and_access(
    client: tuple[TestClient, Callable[[str], None]],
    users: dict[str, User],
) -> None:
    test_client, set_actor = client
    conversation_id = test_client.post(
        "/api/messages", json={"participantIds": [str(users["rep"].id)]}
    ).json()["id"]

    set_actor("rep")
    blank = test_client.post(f"/api/messages/{conversation_id}", json={"content": "   "})
    assert blank.status_code == 400
    assert blank.json()["error"] == "Message content is required"

    for text in ("Hi there", "Appointment moved to Friday"):
        sent = test_client.post(f"/api/messages/{conversation_id}", json={"content": text})
        assert sent.status_code == 201
        assert sent.json()["sender"]["email"] == "rep@example.com"
    assert events.published_events[-1]["event_type"] == "messaging.message.sent"

    rep_view = test_client.get("/api/messages").json()[0]
    assert rep_view["unreadCount"] == 0
    assert rep_view["lastMessage"]["content"] == "Appointment moved to Friday"

    set_actor("admin")
    assert test_client.get("/api/messages").json()[0]["unreadCount"] == 2

    page = test_client.get(f"/api/messages/{conversation_id}", params={"limit": 1})
    assert page.status_code == 200
    assert [item["content"] for item in page.json()["messages"]] == ["Hi there"]
    assert page.json()["pagination"] == {"total": 2, "limit": 1, "offset": 0, "hasMore": True}

    marked = test_client.post(f"/api/messages/{conversation_id}/read")
    assert marked.json() == {"success": True, "message": "Conversation marked as read"}
    assert test_client.get("/api/messages").json()[0]["unreadCount"] == 0

    set_actor("concierge")
    outsider = test_client.get(f"/api/messages/{conversation_id}")
    assert outsider.status_code == 404
    assert outsider.json()["error"] == "Conversation not found or access denied"
    assert test_client.post(f"/api/messages/{conversation_id}", json={"content": "hello"}).status_code == 404
    assert test_client.patch(f"/api/messages/{conversation_id}/read").status_code == 404
