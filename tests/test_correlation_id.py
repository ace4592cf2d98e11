from __future__ import annotations

import logging
import uuid
from collections.abc import Generator

import pytest
from fastapi import Request
from fastapi.testclient import TestClient
from sqlalchemy import create_engine
from sqlalchemy.orm import Session, sessionmaker
from sqlalchemy.pool import StaticPool

from app import audit, events
from app.accounts.models import User
from app.api.deps import get_current_user
from app.core.auth import ActorUser
from app.core.config import get_settings
from app.core.database import Base, get_db
from app.main import app
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
    reset_rate_limiter()
    get_settings.cache_clear()
    yield
    audit.audit_entries.clear()
    events.published_events.clear()
    reset_rate_limiter()
    get_settings.cache_clear()


@pytest.fixture()
def admin(db_session: Session) -> User:
    user = User(name="Avery Admin", email="admin@example.com", role="ADMIN")
    db_session.add(user)
    db_session.commit()
    return user


@pytest.fixture()
def client(db_session: Session, admin: User) -> Generator[TestClient, None, None]:
    def override_get_db() -> Generator[Session, None, None]:
        yield db_session

    def override_get_current_user(request: Request) -> ActorUser:
        return ActorUser(
            user_id=admin.id,
            role=admin.role,
            email=admin.email,
            name=admin.name,
            correlation_id=getattr(request.state, "correlation_id", None),
        )

    app.dependency_overrides[get_db] = override_get_db
    app.dependency_overrides[get_current_user] = override_get_current_user
    with TestClient(app) as test_client:
        yield test_client
    app.dependency_overrides.clear()


def _create_lead(client: TestClient, correlation_id: str) -> dict:
    response = client.post(
        "/api/leads",
        json={"firstName": "Corr", "lastName": "Lead", "sourceType": "CALL_IN", "leadTypes": ["ROOFING"]},
        headers={"X-Correlation-Id": correlation_id},
    )
    assert response.status_code == 201
    return response.json()


def test_generated_correlation_id_returned_in_header_and_error_envelope(client: TestClient) -> None:
    response = client.get(f"/api/leads/{uuid.uuid4()}")
    assert response.status_code == 404
    header_value = response.headers.get("x-correlation-id")
    assert header_value
    body = response.json()
    assert body["correlation_id"] == header_value
    assert body["code"] == "crm_lead_get_failed"


def test_correlation_id_respected_when_provided(client: TestClient) -> None:
    response = client.get(f"/api/leads/{uuid.uuid4()}", headers={"X-Correlation-Id": "abc-123"})
    assert response.status_code == 404
    assert response.headers.get("x-correlation-id") == "abc-123"
    assert response.json()["correlation_id"] == "abc-123"


def test_audit_uses_request_correlation_id(client: TestClient) -> None:
    _create_lead(client, "corr-audit-1")

    lead_audits = [entry for entry in audit.audit_entries if entry.get("entity_type") == "crm.lead"]
    assert lead_audits
    assert lead_audits[-1]["correlation_id"] == "corr-audit-1"


def test_event_envelope_includes_correlation_id(client: TestClient) -> None:
    _create_lead(client, "corr-event-1")

    created_events = [item for item in events.published_events if item.get("event_type") == "crm.lead.created"]
    assert created_events
    assert created_events[-1].get("correlation_id") == "corr-event-1"


def test_public_intake_events_use_request_correlation_id(client: TestClient) -> None:
    response = client.post(
        "/api/public/leads",
        json={"firstName": "Web", "lastName": "Visitor", "leadTypes": ["STUCCO"]},
        headers={"X-Correlation-Id": "corr-public-1"},
    )
    assert response.status_code == 201

    assert audit.audit_entries[-1]["correlation_id"] == "corr-public-1"
    assert events.published_events[-1]["correlation_id"] == "corr-public-1"


def test_rate_limited_response_includes_correlation_id(
    client: TestClient,
    monkeypatch: pytest.MonkeyPatch,
) -> None:
    monkeypatch.setenv("RATE_LIMIT_DISABLED", "false")
    monkeypatch.setenv("RATE_LIMIT_MUTATIONS_PER_MINUTE", "1")
    get_settings.cache_clear()
    reset_rate_limiter()

    first = client.post("/api/crews", json={"name": "Crew 1"}, headers={"X-Correlation-Id": "corr-rate-1"})
    assert first.status_code == 201

    second = client.post("/api/crews", json={"name": "Crew 2"}, headers={"X-Correlation-Id": "corr-rate-1"})
    assert second.status_code == 429
    payload = second.json()
    assert payload["correlation_id"] == "corr-rate-1"
    assert second.headers.get("x-correlation-id") == "corr-rate-1"


@pytest.mark.parametrize("raw", ["has spaces in it", "x" * 129, "bad/id"])
def test_malformed_correlation_id_is_replaced(client: TestClient, raw: str) -> None:
    response = client.get(f"/api/leads/{uuid.uuid4()}", headers={"X-Correlation-Id": raw})
    assert response.status_code == 404
    generated = response.headers.get("x-correlation-id")
    assert generated != raw
    assert uuid.UUID(generated)
    assert response.json()["correlation_id"] == generated


def test_audit_entries_are_logged_per_entity(client: TestClient, caplog: pytest.LogCaptureFixture) -> None:
    caplog.set_level(logging.INFO, logger="app.audit")
    lead = _create_lead(client, "corr-audit-log-1")

    entries = audit.entries_for("crm.lead", lead["id"])
    assert [entry["action"] for entry in entries] == ["create"]

    records = [record for record in caplog.records if record.getMessage() == "audit.recorded"]
    assert any(
        getattr(record, "entity_id", None) == lead["id"]
        and getattr(record, "action", None) == "create"
        and getattr(record, "correlation_id", None) == "corr-audit-log-1"
        for record in records
    )
