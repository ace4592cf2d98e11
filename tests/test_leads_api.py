from __future__ import annotations

from collections.abc import Callable, Generator

import pytest
from fastapi import Request
from fastapi.testclient import TestClient
from sqlalchemy import create_engine, select
from sqlalchemy.orm import Session, sessionmaker
from sqlalchemy.pool import StaticPool

from app import audit, events
from app.accounts.models import User
from app.api.deps import get_current_user
from app.core.auth import ActorUser
from app.core.config import get_settings
from app.core.database import Base, get_db
from app.crm.models import Customer, Lead, LeadNote, Notification
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
        "rep1": User(name="Riley Rep", email="rep1@example.com", role="SALES_REP"),
        "rep2": User(name="Sam Rep", email="rep2@example.com", role="SALES_REP"),
        "concierge": User(name="Casey Concierge", email="concierge@example.com", role="CONCIERGE"),
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


def _lead_payload(**overrides: object) -> dict[str, object]:
    payload: dict[str, object] = {
        "firstName": "Jamie",
        "lastName": "Smith",
        "phone": "555-0100",
        "email": "jamie@example.com",
        "sourceType": "CALL_IN",
        "leadTypes": ["KITCHEN"],
        "description": "Full kitchen remodel",
    }
    payload.update(overrides)
    return payload


def test_create_lead_assigns_customer_number_and_auto_assigns_admin(
    client: tuple[TestClient, Callable[[str], None]],
    users: dict[str, User],
) -> None:
    test_client, _ = client

    first = test_client.post("/api/leads", json=_lead_payload())
    assert first.status_code == 201
    body = first.json()
    assert body["customerNumber"] == "105-000001"
    assert body["status"] == "ASSIGNED"
    assert body["assignedSalesRepId"] == str(users["admin"].id)
    assert body["customer"]["firstName"] == "Jamie"

    second = test_client.post("/api/leads", json=_lead_payload(phone="555-0199", email="other@example.com"))
    assert second.status_code == 201
    assert second.json()["customerNumber"] == "105-000002"

    created_events = [item for item in events.published_events if item["event_type"] == "crm.lead.created"]
    assert len(created_events) == 2


def test_concierge_leads_start_unassigned(client: tuple[TestClient, Callable[[str], None]]) -> None:
    test_client, set_actor = client
    set_actor("concierge")

    response = test_client.post("/api/leads", json=_lead_payload())
    assert response.status_code == 201
    assert response.json()["status"] == "NEW"
    assert response.json()["assignedSalesRepId"] is None


def test_create_lead_reuses_customer_matched_by_phone(
    client: tuple[TestClient, Callable[[str], None]],
    db_session: Session,
) -> None:
    test_client, _ = client

    assert test_client.post("/api/leads", json=_lead_payload()).status_code == 201
    again = test_client.post(
        "/api/leads",
        json=_lead_payload(email="", leadTypes=["BATH"], description=None, address_line1="1 Main St"),
    )
    assert again.status_code == 201

    customers = db_session.scalars(select(Customer)).all()
    assert len(customers) == 1
    assert customers[0].email == "jamie@example.com"
    assert len(db_session.scalars(select(Lead)).all()) == 2


@pytest.mark.parametrize(
    ("overrides", "message"),
    [
        ({"leadTypes": []}, "Missing required fields"),
        ({"sourceType": "BILLBOARD"}, "Invalid source type"),
        ({"leadTypes": ["SPACESHIP"]}, "Invalid lead types: SPACESHIP"),
        ({"leadTypes": ["OTHER"], "description": "  "}, "Description is required when 'Other' is selected"),
        (
            {"isContractor": True, "contractorLicenseNumber": ""},
            "Contractor License Number is required when 'Contractor' is selected",
        ),
    ],
)
def test_create_lead_validation_errors(
    client: tuple[TestClient, Callable[[str], None]],
    overrides: dict[str, object],
    message: str,
) -> None:
    test_client, _ = client
    response = test_client.post("/api/leads", json=_lead_payload(**overrides))
    assert response.status_code == 400
    assert response.json()["error"] == message
    assert response.json()["code"] == "crm_lead_create_failed"


def test_referral_links_existing_customer(client: tuple[TestClient, Callable[[str], None]]) -> None:
    test_client, _ = client
    assert test_client.post("/api/leads", json=_lead_payload()).status_code == 201

    referral = test_client.post(
        "/api/leads",
        json=_lead_payload(
            firstName="Pat",
            lastName="Jones",
            phone="555-0300",
            email="pat@example.com",
            sourceType="REFERRAL",
            referrerFirstName="Jamie",
            referrerLastName="Smith",
            referrerPhone="555-0100",
        ),
    )
    assert referral.status_code == 201
    body = referral.json()
    assert body["referrerIsCustomer"] is True
    assert body["referrerCustomerId"] is not None


def test_referrer_fields_in_lead_lists_follow_viewer_role(
    client: tuple[TestClient, Callable[[str], None]],
) -> None:
    test_client, set_actor = client
    referral = {
        "sourceType": "REFERRAL",
        "referrerFirstName": "Jamie",
        "referrerLastName": "Smith",
        "referrerPhone": "555-0100",
    }
    set_actor("rep1")
    owned = test_client.post("/api/leads", json=_lead_payload(phone="555-0500", email="o@example.com", **referral)).json()
    set_actor("concierge")
    open_lead = test_client.post(
        "/api/leads", json=_lead_payload(phone="555-0600", email="u@example.com", **referral)
    ).json()
    assert open_lead["assignedSalesRepId"] is None

    set_actor("admin")
    admin_rows = {row["id"]: row for row in test_client.get("/api/leads").json()}
    assert admin_rows[owned["id"]]["referrerFirstName"] == "Jamie"
    assert admin_rows[open_lead["id"]]["referrerPhone"] == "555-0100"

    set_actor("rep1")
    mine = test_client.get("/api/leads", params={"myLeads": "true"}).json()
    assert [row["id"] for row in mine] == [owned["id"]]
    assert mine[0]["referrerLastName"] == "Smith"
    claimable = test_client.get("/api/leads", params={"unassigned": "true"}).json()
    assert [row["id"] for row in claimable] == [open_lead["id"]]
    assert claimable[0]["referrerPhone"] == "555-0100"
    browsing = {row["id"]: row for row in test_client.get("/api/leads").json()}
    assert all(not key.startswith("referrer") for row in browsing.values() for key in row)

    set_actor("concierge")
    concierge_rows = test_client.get("/api/leads").json()
    assert {row["id"] for row in concierge_rows} == {owned["id"], open_lead["id"]}
    assert all(not key.startswith("referrer") for row in concierge_rows for key in row)
    concierge_open = test_client.get("/api/leads", params={"unassigned": "true"}).json()
    assert all(not key.startswith("referrer") for row in concierge_open for key in row)


def test_sales_rep_sees_limited_view_of_other_reps_leads(
    client: tuple[TestClient, Callable[[str], None]],
    users: dict[str, User],
) -> None:
    test_client, set_actor = client
    set_actor("rep1")
    own = test_client.post("/api/leads", json=_lead_payload()).json()
    set_actor("rep2")
    other = test_client.post("/api/leads", json=_lead_payload(phone="555-0400", email="b@example.com")).json()

    set_actor("rep1")
    listing = test_client.get("/api/leads")
    assert listing.status_code == 200
    rows = {row["id"]: row for row in listing.json()}
    assert "description" not in rows[other["id"]]
    assert rows[other["id"]]["customer"] == {
        "id": other["customerId"],
        "firstName": "Jamie",
        "lastName": "Smith",
    }

    mine = test_client.get("/api/leads", params={"myLeads": "true"})
    assert [row["id"] for row in mine.json()] == [own["id"]]
    assert mine.json()[0]["description"] == "Full kitchen remodel"

    detail = test_client.get(f"/api/leads/{other['id']}")
    assert detail.status_code == 200
    assert detail.json()["_readOnly"] is True
    assert detail.json()["assignedSalesRepId"] == str(users["rep2"].id)


def test_rep_cannot_update_other_reps_lead_or_assign(
    client: tuple[TestClient, Callable[[str], None]],
    users: dict[str, User],
) -> None:
    test_client, set_actor = client
    set_actor("rep2")
    lead = test_client.post("/api/leads", json=_lead_payload()).json()

    set_actor("rep1")
    forbidden = test_client.patch(f"/api/leads/{lead['id']}", json={"description": "mine now"})
    assert forbidden.status_code == 403

    set_actor("rep2")
    reassign = test_client.patch(
        f"/api/leads/{lead['id']}",
        json={"assignedSalesRepId": str(users["rep1"].id)},
    )
    assert reassign.status_code == 403
    assert reassign.json()["error"] == "Only admins can assign sales reps"

    closing = test_client.patch(f"/api/leads/{lead['id']}", json={"status": "WON"})
    assert closing.status_code == 403
    assert closing.json()["error"] == "Only admins can set lead status to Lost or Won"


def test_admin_assigns_lead_and_validates_job_status(
    client: tuple[TestClient, Callable[[str], None]],
    users: dict[str, User],
) -> None:
    test_client, set_actor = client
    set_actor("concierge")
    lead = test_client.post("/api/leads", json=_lead_payload()).json()

    set_actor("admin")
    assigned = test_client.patch(
        f"/api/leads/{lead['id']}",
        json={"assignedSalesRepId": str(users["rep1"].id), "status": "ASSIGNED"},
    )
    assert assigned.status_code == 200
    assert assigned.json()["assignedSalesRep"]["email"] == "rep1@example.com"

    job_status = test_client.patch(f"/api/leads/{lead['id']}", json={"jobStatus": "SCHEDULED"})
    assert job_status.status_code == 400
    assert job_status.json()["error"] == "Job status can only be set for leads with WON status"

    won = test_client.patch(f"/api/leads/{lead['id']}", json={"status": "WON", "jobStatus": "IN_PROGRESS"})
    assert won.status_code == 200
    assert won.json()["jobStatus"] == "IN_PROGRESS"


def test_close_lead_lost_requires_reason_and_writes_note(
    client: tuple[TestClient, Callable[[str], None]],
    db_session: Session,
) -> None:
    test_client, _ = client
    lead = test_client.post("/api/leads", json=_lead_payload()).json()

    missing = test_client.patch(f"/api/leads/{lead['id']}/close", json={"status": "LOST"})
    assert missing.status_code == 400
    assert missing.json()["error"] == "Loss reason is required when marking a lead as lost"

    invalid = test_client.patch(f"/api/leads/{lead['id']}/close", json={"status": "QUOTED"})
    assert invalid.status_code == 400

    lost = test_client.patch(f"/api/leads/{lead['id']}/close", json={"status": "LOST", "reason": "Price too high"})
    assert lost.status_code == 200
    assert lost.json()["status"] == "LOST"
    assert lost.json()["closedDate"] is not None

    notes = db_session.scalars(select(LeadNote)).all()
    assert [note.content for note in notes] == ["Lead marked as lost. Reason: Price too high"]


def test_close_lead_won_sets_job_fields_and_note_once(
    client: tuple[TestClient, Callable[[str], None]],
    db_session: Session,
) -> None:
    test_client, _ = client
    lead = test_client.post("/api/leads", json=_lead_payload()).json()

    won = test_client.patch(
        f"/api/leads/{lead['id']}/close",
        json={"status": "WON", "jobStatus": "DONE", "jobCompletedDate": "2026-03-15", "jobScheduledDate": "2026-03-01"},
    )
    assert won.status_code == 200
    body = won.json()
    assert body["jobStatus"] == "DONE"
    assert body["jobCompletedDate"].startswith("2026-03-15")
    assert body["jobScheduledDate"].startswith("2026-03-01")

    again = test_client.patch(f"/api/leads/{lead['id']}/close", json={"status": "WON", "jobStatus": "IN_PROGRESS"})
    assert again.status_code == 200
    assert again.json()["jobCompletedDate"] is None

    won_notes = [note for note in db_session.scalars(select(LeadNote)).all() if note.content == "Lead marked as won."]
    assert len(won_notes) == 1

    bad_date = test_client.patch(
        f"/api/leads/{lead['id']}/close",
        json={"status": "WON", "jobStatus": "DONE", "jobCompletedDate": "15/03/2026"},
    )
    assert bad_date.status_code == 400


def test_delete_lead_requires_admin(client: tuple[TestClient, Callable[[str], None]]) -> None:
    test_client, set_actor = client
    set_actor("rep1")
    lead = test_client.post("/api/leads", json=_lead_payload()).json()

    forbidden = test_client.delete(f"/api/leads/{lead['id']}")
    assert forbidden.status_code == 403
    assert forbidden.json()["error"] == "Only admins can delete leads"

    set_actor("admin")
    deleted = test_client.delete(f"/api/leads/{lead['id']}")
    assert deleted.status_code == 200
    assert test_client.get(f"/api/leads/{lead['id']}").status_code == 404


def test_admin_note_on_rep_lead_notifies_assigned_rep(
    client: tuple[TestClient, Callable[[str], None]],
    db_session: Session,
    users: dict[str, User],
) -> None:
    test_client, set_actor = client
    set_actor("rep1")
    lead = test_client.post("/api/leads", json=_lead_payload()).json()

    own_note = test_client.post(f"/api/leads/{lead['id']}/notes", json={"content": "Called the customer"})
    assert own_note.status_code == 201
    assert db_session.scalars(select(Notification)).all() == []

    set_actor("admin")
    blank = test_client.post(f"/api/leads/{lead['id']}/notes", json={"content": "   "})
    assert blank.status_code == 400

    note = test_client.post(f"/api/leads/{lead['id']}/notes", json={"content": "Please follow up today"})
    assert note.status_code == 201
    assert note.json()["author"]["email"] == "admin@example.com"

    notifications = db_session.scalars(select(Notification)).all()
    assert len(notifications) == 1
    assert notifications[0].user_id == users["rep1"].id
    assert notifications[0].type == "ADMIN_COMMENT"
    assert str(notifications[0].note_id) == note.json()["id"]

    set_actor("rep2")
    assert test_client.get(f"/api/leads/{lead['id']}/notes").status_code == 403
    set_actor("rep1")
    listed = test_client.get(f"/api/leads/{lead['id']}/notes")
    assert [item["content"] for item in listed.json()] == ["Please follow up today", "Called the customer"]


def test_won_and_lost_lists_report_deal_value_and_loss_reason(
    client: tuple[TestClient, Callable[[str], None]],
    users: dict[str, User],
) -> None:
    test_client, set_actor = client
    set_actor("rep1")
    won_lead = test_client.post("/api/leads", json=_lead_payload()).json()
    lost_lead = test_client.post(
        "/api/leads",
        json=_lead_payload(firstName="Alex", phone="555-0500", email="alex@example.com", leadTypes=["ROOFING"]),
    ).json()

    assert test_client.post("/api/quotes", json={"leadId": won_lead["id"], "amount": 1000, "status": "ACCEPTED"}).status_code == 201
    assert test_client.post("/api/quotes", json={"leadId": won_lead["id"], "amount": 5000, "status": "DECLINED"}).status_code == 201
    assert test_client.post("/api/quotes", json={"leadId": lost_lead["id"], "amount": 700}).status_code == 201

    set_actor("admin")
    assert test_client.patch(f"/api/leads/{won_lead['id']}/close", json={"status": "WON"}).status_code == 200
    assert (
        test_client.patch(f"/api/leads/{lost_lead['id']}/close", json={"status": "LOST", "reason": "Went with competitor"}).status_code
        == 200
    )

    won = test_client.get("/api/leads/won")
    assert won.status_code == 200
    assert [row["id"] for row in won.json()] == [won_lead["id"]]
    assert won.json()[0]["dealValue"] == 1000
    assert won.json()[0]["daysToClose"] in (0, 1)

    lost = test_client.get("/api/leads/lost", params={"leadType": "ROOFING", "search": "alex"})
    assert lost.status_code == 200
    assert lost.json()[0]["lossReason"] == "Went with competitor"
    assert lost.json()[0]["dealValue"] == 700

    assert test_client.get("/api/leads/lost", params={"repId": str(users["rep2"].id)}).json() == []
    assert test_client.get("/api/leads/won", params={"startDate": "not-a-date"}).status_code == 400

    set_actor("rep1")
    assert test_client.get("/api/leads/won").status_code == 403
