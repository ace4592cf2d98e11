from __future__ import annotations

from collections.abc import Callable, Generator
from datetime import datetime, timedelta, timezone

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
from app.crm.analytics import AnalyticsService, percentage
from app.crm.models import Appointment, Customer, Lead, LeadNote, Quote, QuoteFile
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
        "rep": User(name="Riley Rep", email="rep@example.com", role="SALES_REP"),
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


def _lead(
    session: Session,
    *,
    status: str,
    rep: User | None,
    creator: User | None = None,
    lead_types: list[str] | None = None,
    created_days_ago: float = 0,
    closed_days_ago: float | None = None,
    number: int,
    job_status: str | None = None,
) -> Lead:
    now = datetime.now(timezone.utc)
    customer = Customer(
        first_name=f"Customer{number}",
        last_name="Test",
        phone=f"555-{number:04d}",
        source_type="CALL_IN",
    )
    session.add(customer)
    session.flush()
    lead = Lead(
        customer_id=customer.id,
        customer_number=f"105-{number:06d}",
        lead_types=lead_types or ["KITCHEN"],
        status=status,
        assigned_sales_rep_id=rep.id if rep else None,
        created_by=creator.id if creator else None,
        created_at=now - timedelta(days=created_days_ago),
        updated_at=now - timedelta(days=created_days_ago),
        closed_date=now - timedelta(days=closed_days_ago) if closed_days_ago is not None else None,
        job_status=job_status,
    )
    session.add(lead)
    session.flush()
    return lead


def test_percentage_rounds_to_one_decimal() -> None:
    assert percentage(1, 3) == 33.3
    assert percentage(2, 3) == 66.7
    assert percentage(5, 0) == 0.0


def test_admin_dashboard_stats(
    client: tuple[TestClient, Callable[[str], None]],
    db_session: Session,
    users: dict[str, User],
) -> None:
    test_client, _ = client
    now = datetime.now(timezone.utc)
    _lead(db_session, status="NEW", rep=None, number=1)
    stale = _lead(db_session, status="APPOINTMENT_SET", rep=users["rep"], created_days_ago=5, number=2)
    _lead(db_session, status="QUOTED", rep=users["rep"], number=3)
    won = _lead(db_session, status="WON", rep=users["rep"], closed_days_ago=1, job_status="DONE", number=4)
    db_session.add_all(
        [
            Appointment(lead_id=stale.id, sales_rep_id=users["rep"].id, scheduled_for=now + timedelta(days=2), created_at=now - timedelta(days=5)),
            Appointment(lead_id=stale.id, sales_rep_id=users["rep"].id, scheduled_for=now - timedelta(days=4), created_at=now - timedelta(days=5)),
            Quote(lead_id=won.id, sales_rep_id=users["rep"].id, amount=5000, status="ACCEPTED"),
        ]
    )
    db_session.commit()

    response = test_client.get("/api/dashboard/stats")
    assert response.status_code == 200
    stats = response.json()["stats"]
    assert stats["totalLeads"] == 4
    assert stats["newLeads"] == 1
    assert stats["appointmentSetLeads"] == 1
    assert stats["quotedLeads"] == 1
    assert stats["wonLeads"] == 1
    assert stats["unassignedLeads"] == 1
    assert stats["overdueFollowUps"] == 1
    assert stats["jobsPendingFinancials"] == 1
    assert stats["totalAppointments"] == 2
    assert stats["scheduledAppointments"] == 1
    assert stats["pastDueAppointments"] == 1
    assert stats["leadToAppointmentRate"] == 25.0
    assert stats["winRate"] == 25.0
    assert "leadsWithAppointments" not in stats

    quote = db_session.query(Quote).one()
    db_session.add(QuoteFile(quote_id=quote.id, file_url="https://x/pl.xlsx", is_profit_loss=True))
    db_session.commit()
    assert test_client.get("/api/dashboard/stats").json()["stats"]["jobsPendingFinancials"] == 0


def test_pending_financials_ignore_lead_status(
    client: tuple[TestClient, Callable[[str], None]],
    db_session: Session,
    users: dict[str, User],
) -> None:
    test_client, _ = client
    reopened = _lead(db_session, status="QUOTED", rep=users["rep"], job_status="DONE", number=1)
    pending = _lead(db_session, status="WON", rep=users["rep"], closed_days_ago=1, job_status="IN_PROGRESS", number=2)
    db_session.add_all(
        [
            Quote(lead_id=reopened.id, sales_rep_id=users["rep"].id, amount=1200, status="ACCEPTED"),
            Quote(lead_id=pending.id, sales_rep_id=users["rep"].id, amount=900, status="ACCEPTED"),
        ]
    )
    db_session.commit()

    stats = test_client.get("/api/dashboard/stats").json()["stats"]
    assert stats["jobsPendingFinancials"] == 1


def test_rep_dashboard_is_scoped_to_own_leads(
    client: tuple[TestClient, Callable[[str], None]],
    db_session: Session,
    users: dict[str, User],
) -> None:
    test_client, set_actor = client
    now = datetime.now(timezone.utc)
    mine = _lead(db_session, status="APPOINTMENT_SET", rep=users["rep"], number=1)
    _lead(db_session, status="ASSIGNED", rep=users["rep"], number=2)
    _lead(db_session, status="QUOTED", rep=users["rep2"], number=3)
    db_session.add(Appointment(lead_id=mine.id, sales_rep_id=users["rep"].id, scheduled_for=now + timedelta(days=1)))
    db_session.commit()

    set_actor("rep")
    stats = test_client.get("/api/dashboard/stats").json()["stats"]
    assert stats["totalLeads"] == 2
    assert stats["quotedLeads"] == 0
    assert stats["leadsWithAppointments"] == 1
    assert stats["leadToAppointmentRate"] == 50.0
    assert stats["scheduledAppointments"] == 1
    assert "unassignedLeads" not in stats
    assert "jobsPendingFinancials" not in stats


def test_team_performance_visibility(
    client: tuple[TestClient, Callable[[str], None]],
    db_session: Session,
    users: dict[str, User],
) -> None:
    test_client, set_actor = client
    _lead(db_session, status="WON", rep=users["rep2"], closed_days_ago=1, number=1)
    _lead(db_session, status="WON", rep=users["rep2"], closed_days_ago=1, number=2)
    _lead(db_session, status="LOST", rep=users["rep2"], closed_days_ago=1, number=3)
    _lead(db_session, status="APPOINTMENT_SET", rep=users["rep"], number=4)
    db_session.commit()

    admin_view = test_client.get("/api/analytics/team-performance")
    assert admin_view.status_code == 200
    stats = admin_view.json()["stats"]
    assert {item["userEmail"] for item in stats} == {
        "admin@example.com",
        "rep@example.com",
        "rep2@example.com",
        "concierge@example.com",
    }
    assert stats[0]["userEmail"] == "rep2@example.com"
    assert stats[0]["winRate"] == 66.7
    rep_row = next(item for item in stats if item["userEmail"] == "rep@example.com")
    assert rep_row["conversionRate"] == 100.0

    set_actor("rep")
    rep_view = test_client.get("/api/analytics/team-performance").json()["stats"]
    assert {item["userRole"] for item in rep_view} == {"SALES_REP", "CONCIERGE"}


def test_win_rate_summary_and_by_service(
    client: tuple[TestClient, Callable[[str], None]],
    db_session: Session,
    users: dict[str, User],
) -> None:
    test_client, _ = client
    won = _lead(
        db_session,
        status="WON",
        rep=users["rep"],
        lead_types=["KITCHEN", "BATH"],
        created_days_ago=4,
        closed_days_ago=0,
        number=1,
    )
    _lead(db_session, status="LOST", rep=users["rep"], lead_types=["KITCHEN"], created_days_ago=2, closed_days_ago=0, number=2)
    _lead(db_session, status="LOST", rep=users["rep"], lead_types=["ROOFING"], created_days_ago=400, closed_days_ago=380, number=3)
    db_session.add_all(
        [
            Quote(lead_id=won.id, sales_rep_id=users["rep"].id, amount=3000, status="ACCEPTED"),
            Quote(lead_id=won.id, sales_rep_id=users["rep"].id, amount=4500, status="DECLINED"),
        ]
    )
    db_session.commit()

    response = test_client.get("/api/analytics/win-rate")
    assert response.status_code == 200
    body = response.json()
    summary = body["summary"]
    assert summary["wonCountMonth"] == 1
    assert summary["wonValueMonth"] == 4500
    assert summary["lostCountMonth"] == 1
    assert summary["winRatePercent"] == 33.3
    assert summary["avgDaysToClose"] == 4.0

    by_type = {item["leadType"]: item for item in body["winRateByService"]}
    assert by_type["KITCHEN"] == {"leadType": "KITCHEN", "winCount": 1, "lostCount": 1, "winRatePercent": 50.0}
    assert by_type["BATH"]["winRatePercent"] == 100.0
    assert by_type["ROOFING"]["winRatePercent"] == 0.0


def test_win_rate_month_window_is_computed_in_utc(db_session: Session, users: dict[str, User]) -> None:
    lead = _lead(db_session, status="WON", rep=users["rep"], number=1)
    lead.closed_date = datetime(2026, 3, 1, 0, 30, tzinfo=timezone.utc)
    other = _lead(db_session, status="WON", rep=users["rep"], number=2)
    other.closed_date = datetime(2026, 2, 28, 23, 30, tzinfo=timezone.utc)
    db_session.commit()

    actor = ActorUser(user_id=users["admin"].id, role="ADMIN")
    result = AnalyticsService().win_rate(db_session, actor, now=datetime(2026, 3, 15, 12, 0, tzinfo=timezone.utc))
    assert result.summary.won_count_month == 1
    assert result.summary.win_rate_percent == 100.0


def test_loss_reasons_are_grouped_from_notes(
    client: tuple[TestClient, Callable[[str], None]],
    db_session: Session,
    users: dict[str, User],
) -> None:
    test_client, _ = client
    for number, reason in enumerate(["Price too high", "Price too high", "Timing"], start=1):
        lead = _lead(db_session, status="LOST", rep=users["rep"], closed_days_ago=1, number=number)
        db_session.add(LeadNote(lead_id=lead.id, content=f"Lead marked as lost. Reason: {reason}"))
    reopened = _lead(db_session, status="QUOTED", rep=users["rep"], number=9)
    db_session.add(LeadNote(lead_id=reopened.id, content="Lead marked as lost. Reason: Ignored"))
    db_session.commit()

    response = test_client.get("/api/analytics/loss-reasons")
    assert response.status_code == 200
    assert response.json()["reasons"] == [
        {"reason": "Price too high", "count": 2},
        {"reason": "Timing", "count": 1},
    ]


def test_lead_creation_counts_by_creator(
    client: tuple[TestClient, Callable[[str], None]],
    db_session: Session,
    users: dict[str, User],
) -> None:
    test_client, set_actor = client
    _lead(db_session, status="NEW", rep=None, creator=users["concierge"], number=1)
    _lead(db_session, status="NEW", rep=None, creator=users["concierge"], number=2)
    _lead(db_session, status="ASSIGNED", rep=users["rep"], creator=users["rep"], number=3)
    _lead(db_session, status="NEW", rep=None, creator=None, number=4)
    db_session.commit()

    response = test_client.get("/api/analytics/lead-creation")
    assert response.status_code == 200
    stats = response.json()["stats"]
    assert [(item["userEmail"], item["leadCount"]) for item in stats] == [
        ("concierge@example.com", 2),
        ("rep@example.com", 1),
    ]

    set_actor("rep")
    assert test_client.get("/api/analytics/lead-creation").status_code == 403


def test_customer_search_and_lookup(
    client: tuple[TestClient, Callable[[str], None]],
    db_session: Session,
    users: dict[str, User],
) -> None:
    test_client, _ = client
    db_session.add_all(
        [
            Customer(first_name="Jamie", last_name="Smith", phone="555-0100", email="jamie@example.com", source_type="CALL_IN"),
            Customer(first_name="Jordan", last_name="Smithers", phone="555-0101", source_type="WALK_IN"),
            Customer(first_name="Alex", last_name="Brown", phone="555-0200", source_type="REFERRAL"),
        ]
    )
    db_session.commit()

    assert test_client.get("/api/search", params={"q": "s"}).json() == []
    assert {item["lastName"] for item in test_client.get("/api/search", params={"q": "smith"}).json()} == {
        "Smith",
        "Smithers",
    }
    full_name = test_client.get("/api/search", params={"q": "Jamie Smith"}).json()
    assert [item["firstName"] for item in full_name] == ["Jamie"]
    assert full_name[0]["mostRecentLead"] is None

    missing = test_client.get("/api/customers/search")
    assert missing.status_code == 400
    assert missing.json()["error"] == "Phone or email is required"

    found = test_client.get("/api/customers/search", params={"email": "jamie@example.com"})
    assert found.json()["found"] is True
    assert found.json()["customer"]["phone"] == "555-0100"

    not_found = test_client.get("/api/referrers/search", params={"phone": "555-9999"})
    assert not_found.json() == {"found": False, "isCustomer": False, "customer": None}
