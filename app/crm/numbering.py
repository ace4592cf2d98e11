from __future__ import annotations

import logging
import re

from fastapi import HTTPException, status
from sqlalchemy import func, select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from app.core.config import get_settings
from app.crm.models import Lead
from app.metrics import observe_customer_number_retry


logger = logging.getLogger("app.crm.numbering")


def format_customer_number(prefix: str, sequence: int) -> str:
    return f"{prefix}-{sequence:06d}"


def parse_customer_number(prefix: str, value: str | None) -> int | None:
    if not value:
        return None
    match = re.fullmatch(rf"{re.escape(prefix)}-(\d+)", value)
    if match is None:
        return None
    return int(match.group(1))


def highest_sequence(session: Session, prefix: str) -> int:
    latest = session.scalar(
        select(Lead.customer_number)
        .where(Lead.customer_number.like(f"{prefix}-%"))
        .order_by(func.length(Lead.customer_number).desc(), Lead.customer_number.desc())
        .limit(1)
    )
    return parse_customer_number(prefix, latest) or 0


def next_customer_number(session: Session) -> str:
    prefix = get_settings().customer_number_prefix
    return format_customer_number(prefix, highest_sequence(session, prefix) + 1)


def insert_lead_with_customer_number(session: Session, lead: Lead) -> str:
    """Flush a new lead with the next free customer number.

    Two writers can compute the same number; the loser hits the unique
    constraint, rolls back its savepoint and recomputes.
    """

    max_attempts = max(1, get_settings().customer_number_max_attempts)
    for attempt in range(1, max_attempts + 1):
        lead.customer_number = next_customer_number(session)
        savepoint = session.begin_nested()
        try:
            session.add(lead)
            session.flush()
        except IntegrityError as exc:
            savepoint.rollback()
            observe_customer_number_retry()
            logger.warning(
                "customer_number_conflict",
                extra={"customer_number": lead.customer_number, "attempt": attempt, "error": str(exc.orig)},
            )
            continue
        savepoint.commit()
        return lead.customer_number

    logger.error("customer_number_exhausted", extra={"attempt": max_attempts})
    raise HTTPException(status_code=status.HTTP_409_CONFLICT, detail="Could not allocate a unique customer number")


def backfill_customer_numbers(session: Session) -> int:
    prefix = get_settings().customer_number_prefix
    leads = session.scalars(
        select(Lead).where(Lead.customer_number.is_(None)).order_by(Lead.created_at.asc())
    ).all()
    if not leads:
        return 0

    start = highest_sequence(session, prefix) + 1
    for offset, lead in enumerate(leads):
        lead.customer_number = format_customer_number(prefix, start + offset)
    session.commit()
    logger.info("customer_numbers_backfilled", extra={"count": len(leads)})
    return len(leads)


if __name__ == "__main__":
    from app.core.database import SessionLocal
    from app.logging import configure_logging

    configure_logging()
    with SessionLocal() as backfill_session:
        backfill_customer_numbers(backfill_session)
