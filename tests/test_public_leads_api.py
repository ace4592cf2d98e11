from __future__ import annotations

from collections.abc import Generator

import pytest
from fastapi.testclient import TestClient
from sqlalchemy import create_engine, select
from sqlalchemy.orm import Session, sessionmaker
from sqlalchemy.pool import StaticPool

from app import audit, events
from app.core.config import get_settings
from app.core.database import Base, get_db
from app.crm.models import Customer, Lead
from app.main import app
from app.metrics import public_lead_rate_limited_total
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
def client(db_session: Session) -> Generator[TestClient, None, None]:
    def override_get_db() -> Generator[Session, None, None]:
        yield db_session

    app.dependency_overrides[get_db] = override_get_db
    with TestClient(app) as test_client:
        yield test_client
    app.dependency_overrides.clear()


def _payload(**overrides: object) -> dict[str, object]:
    payload: dict[str, object] = {
        "firstName": "Morgan",
        "lastName": "Lee",
        "phone": "555-0200",
        "email": "morgan@example.com",
        "leadTypes": ["ROOFING"],
        "hearAboutUs": "OTHER",
        "hearAboutUsOther": "  Neighbor  ",
    }
    payload.update(overrides)
    return payload


def test_public_lead_is_created_unassigned_without_auth(client: TestClient, db_session: Session) -> None:
    response = client.post("/api/public/leads", json=_payload())
    assert response.status_code == 201
    body = response.json()
    assert body["success"] is True
    assert body["lead"]["customerNumber"] == "105-000001"
    assert body["lead"]["status"] == "NEW"

    lead = db_session.scalar(select(Lead))
    assert lead.assigned_sales_rep_id is None
    assert lead.created_by is None
    assert lead.hear_about_us_other == "Neighbor"
    assert lead.customer.source_type == "CALL_IN"
    assert audit.audit_entries[-1]["actor_user_id"] == "public"
    assert events.published_events[-1]["payload"]["public"] is True


def test_public_lead_keeps_existing_customer_source(client: TestClient, db_session: Session) -> None:
    db_session.add(
        Customer(first_name="Morgan", last_name="Lee", phone="555-0200", source_type="REFERRAL")
    )
    db_session.commit()

    response = client.post("/api/public/leads", json=_payload(city="Austin"))
    assert response.status_code == 201

    customers = db_session.scalars(select(Customer)).all()
    assert len(customers) == 1
    assert customers[0].source_type == "REFERRAL"
    assert customers[0].city == "Austin"
    assert customers[0].email == "morgan@example.com"


@pytest.mark.parametrize(
    ("overrides", "status_code", "message"),
    [
        ({"leadTypes": []}, 400, "Missing required fields: firstName, lastName, and at least one leadType"),
        ({"leadTypes": ["OTHER"]}, 400, "Description is required when 'Other' is selected"),
        ({"leadTypes": ["HOVERCRAFT"]}, 400, "Invalid lead types: HOVERCRAFT"),
    ],
)
def test_public_lead_validation(
    client: TestClient,
    overrides: dict[str, object],
    status_code: int,
    message: str,
) -> None:
    response = client.post("/api/public/leads", json=_payload(**overrides))
    assert response.status_code == status_code
    assert response.json()["error"] == message
    assert response.json()["code"] == "crm_public_lead_create_failed"


def test_public_lead_requires_names(client: TestClient) -> None:
    response = client.post("/api/public/leads", json=_payload(firstName=""))
    assert response.status_code == 422


def test_public_lead_rate_limit_per_client_ip(client: TestClient) -> None:
    before = public_lead_rate_limited_total._value.get()
    headers = {"X-Forwarded-For": "203.0.113.7, 10.0.0.1"}

    for index in range(5):
        response = client.post(
            "/api/public/leads",
            json=_payload(phone=f"555-10{index}", email=f"p{index}@example.com"),
            headers=headers,
        )
        assert response.status_code == 201

    limited = client.post("/api/public/leads", json=_payload(), headers=headers)
    assert limited.status_code == 429
    assert limited.json()["code"] == "RATE_LIMITED"
    assert limited.json()["error"] == "Too many requests. Please try again later."
    assert int(limited.headers["Retry-After"]) > 0
    assert limited.json()["details"]["retryAfter"] == int(limited.headers["Retry-After"])
    assert public_lead_rate_limited_total._value.get() == before + 1

    other_ip = client.post("/api/public/leads", json=_payload(), headers={"X-Forwarded-For": "198.51.100.2"})
    assert other_ip.status_code == 201


def test_public_lead_limit_is_configurable(client: TestClient, monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.setenv("PUBLIC_LEAD_RATE_LIMIT", "1")
    get_settings.cache_clear()

    assert client.post("/api/public/leads", json=_payload()).status_code == 201
    assert client.post("/api/public/leads", json=_payload()).status_code == 429
