from __future__ import annotations

from collections.abc import Generator
from datetime import datetime, timedelta, timezone

import pytest
from fastapi import HTTPException
from sqlalchemy import create_engine, select
from sqlalchemy.orm import Session, sessionmaker
from sqlalchemy.pool import StaticPool

from app.core.config import get_settings
from app.core.database import Base
from app.crm import numbering
from app.crm.models import Customer, Lead
from app.metrics import crm_customer_number_retries_total


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
def clear_settings() -> Generator[None, None, None]:
    get_settings.cache_clear()
    yield
    get_settings.cache_clear()


@pytest.fixture()
def customer(db_session: Session) -> Customer:
    row = Customer(first_name="Jamie", last_name="Smith", source_type="CALL_IN")
    db_session.add(row)
    db_session.flush()
    return row


def _lead(customer: Customer, number: str | None = None, created_at: datetime | None = None) -> Lead:
    return Lead(
        customer_id=customer.id,
        lead_types=["KITCHEN"],
        status="NEW",
        customer_number=number,
        created_at=created_at or datetime.now(timezone.utc),
    )


def test_format_and_parse_customer_numbers() -> None:
    assert numbering.format_customer_number("105", 7) == "105-000007"
    assert numbering.format_customer_number("105", 1234567) == "105-1234567"
    assert numbering.parse_customer_number("105", "105-000042") == 42
    assert numbering.parse_customer_number("105", "205-000042") is None
    assert numbering.parse_customer_number("105", "105-abc") is None
    assert numbering.parse_customer_number("105", None) is None


def test_next_number_follows_highest_existing(db_session: Session, customer: Customer) -> None:
    assert numbering.next_customer_number(db_session) == "105-000001"

    db_session.add_all([_lead(customer, "105-000009"), _lead(customer, "105-000010"), _lead(customer, "999-999999")])
    db_session.flush()
    assert numbering.next_customer_number(db_session) == "105-000011"


def test_next_number_rolls_past_six_digits(db_session: Session, customer: Customer) -> None:
    db_session.add(_lead(customer, "105-999999"))
    db_session.flush()

    first = numbering.insert_lead_with_customer_number(db_session, _lead(customer))
    assert first == "105-1000000"
    second = numbering.insert_lead_with_customer_number(db_session, _lead(customer))
    assert second == "105-1000001"
    assert numbering.next_customer_number(db_session) == "105-1000002"


def test_prefix_comes_from_settings(
    db_session: Session,
    customer: Customer,
    monkeypatch: pytest.MonkeyPatch,
) -> None:
    monkeypatch.setenv("CUSTOMER_NUMBER_PREFIX", "220")
    get_settings.cache_clear()
    db_session.add(_lead(customer, "105-000050"))
    db_session.flush()

    assert numbering.next_customer_number(db_session) == "220-000001"


def test_insert_retries_after_unique_conflict(
    db_session: Session,
    customer: Customer,
    monkeypatch: pytest.MonkeyPatch,
) -> None:
    db_session.add(_lead(customer, "105-000001"))
    db_session.flush()
    before = crm_customer_number_retries_total._value.get()

    proposals = iter(["105-000001", "105-000002"])
    monkeypatch.setattr(numbering, "next_customer_number", lambda session: next(proposals))

    lead = _lead(customer)
    assert numbering.insert_lead_with_customer_number(db_session, lead) == "105-000002"
    db_session.commit()

    assert crm_customer_number_retries_total._value.get() == before + 1
    numbers = db_session.scalars(select(Lead.customer_number).order_by(Lead.customer_number)).all()
    assert numbers == ["105-000001", "105-000002"]


def test_insert_gives_up_after_max_attempts(
    db_session: Session,
    customer: Customer,
    monkeypatch: pytest.MonkeyPatch,
) -> None:
    monkeypatch.setenv("CUSTOMER_NUMBER_MAX_ATTEMPTS", "2")
    get_settings.cache_clear()
    db_session.add(_lead(customer, "105-000001"))
    db_session.flush()
    monkeypatch.setattr(numbering, "next_customer_number", lambda session: "105-000001")

    with pytest.raises(HTTPException) as exc_info:
        numbering.insert_lead_with_customer_number(db_session, _lead(customer))
    assert exc_info.value.status_code == 409


def test_backfill_numbers_leads_in_creation_order(db_session: Session, customer: Customer) -> None:
    now = datetime.now(timezone.utc)
    db_session.add(_lead(customer, "105-000004", created_at=now - timedelta(days=10)))
    later = _lead(customer, created_at=now - timedelta(days=1))
    earlier = _lead(customer, created_at=now - timedelta(days=3))
    db_session.add_all([later, earlier])
    db_session.commit()

    assert numbering.backfill_customer_numbers(db_session) == 2
    assert earlier.customer_number == "105-000005"
    assert later.customer_number == "105-000006"
    assert numbering.backfill_customer_numbers(db_session) == 0
