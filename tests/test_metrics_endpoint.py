from __future__ import annotations

import uuid
from collections.abc import Callable, Generator

import pytest
from fastapi import Request
from fastapi.testclient import TestClient
from sqlalchemy import create_engine
from sqlalchemy.orm import Session, sessionmaker
from sqlalchemy.pool import StaticPool

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
def configure_env(monkeypatch: pytest.MonkeyPatch) -> Generator[None, None, None]:
    monkeypatch.setenv("METRICS_ENABLED", "true")
    monkeypatch.setenv("RATE_LIMIT_DISABLED", "true")
    monkeypatch.setenv("CRON_SECRET", "metrics-cron-secret")
    get_settings.cache_clear()
    reset_rate_limiter()
    yield
    get_settings.cache_clear()
    reset_rate_limiter()


@pytest.fixture()
def users(db_session: Session) -> dict[str, User]:
    seeded = {
        "admin": User(name="Avery Admin", email="admin@example.com", role="ADMIN"),
        "rep": User(name="Riley Rep", email="rep@example.com", role="SALES_REP"),
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
            correlation_id="metrics-corr-1",
        )

    def set_actor(name: str) -> None:
        state["current"] = name

    app.dependency_overrides[get_db] = override_get_db
    app.dependency_overrides[get_current_user] = override_get_current_user

    with TestClient(app) as test_client:
        yield test_client, set_actor

    app.dependency_overrides.clear()


def test_metrics_endpoint_exposes_http_and_sweep_metrics(
    client: tuple[TestClient, Callable[[str], None]],
) -> None:
    test_client, _ = client
    assert test_client.get("/health").status_code == 200

    lead = test_client.post(
        "/api/leads",
        json={
            "firstName": "Metrics",
            "lastName": "Lead",
            "sourceType": "CALL_IN",
            "leadTypes": ["PAINTING"],
        },
    )
    assert lead.status_code == 201
    assert test_client.get(f"/api/leads/{lead.json()['id']}").status_code == 200
    assert test_client.get(f"/api/leads/{uuid.uuid4()}").status_code == 404

    sweep = test_client.post("/api/cron/check-inactivity", headers={"X-Cron-Secret": "metrics-cron-secret"})
    assert sweep.status_code == 200

    metrics = test_client.get("/metrics")
    assert metrics.status_code == 200
    body = metrics.text

    assert "http_requests_total" in body
    assert "http_request_duration_seconds" in body
    assert "crm_inactivity_sweeps_total" in body
    assert "crm_inactivity_sweep_duration_seconds" in body

    assert 'path="/health"' in body
    assert 'path="/api/leads/{id}"' in body
    assert 'trigger="cron"' in body


def test_metrics_endpoint_requires_admin(client: tuple[TestClient, Callable[[str], None]]) -> None:
    test_client, set_actor = client
    set_actor("rep")

    assert test_client.get("/metrics").status_code == 403


def test_metrics_endpoint_hidden_when_disabled(
    client: tuple[TestClient, Callable[[str], None]],
    monkeypatch: pytest.MonkeyPatch,
) -> None:
    test_client, _ = client
    monkeypatch.setenv("METRICS_ENABLED", "false")
    get_settings.cache_clear()

    assert test_client.get("/metrics").status_code == 404
