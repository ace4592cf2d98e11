from __future__ import annotations

import uuid
from datetime import datetime, timezone

from sqlalchemy import func, select
from sqlalchemy.orm import Session

from app.core.config import get_settings
from app.crm.models import Appointment, Lead, LeadNote, Quote


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def as_utc(value: datetime) -> datetime:
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


def get_last_activity(session: Session, lead_id: uuid.UUID) -> datetime | None:
    """Latest of the lead's own update and the newest note, appointment or quote on it."""

    lead_updated_at = session.scalar(select(Lead.updated_at).where(Lead.id == lead_id))
    if lead_updated_at is None:
        return None

    timestamps = [as_utc(lead_updated_at)]
    for model in (LeadNote, Appointment, Quote):
        latest = session.scalar(select(func.max(model.created_at)).where(model.lead_id == lead_id))
        if latest is not None:
            timestamps.append(as_utc(latest))
    return max(timestamps)


def hours_since(timestamp: datetime, now: datetime | None = None) -> float:
    reference = now or utcnow()
    return (as_utc(reference) - as_utc(timestamp)).total_seconds() / 3600


def inactivity_threshold_hours() -> int:
    return get_settings().lead_inactivity_hours


def is_lead_inactive(
    session: Session,
    lead_id: uuid.UUID,
    hours: float | None = None,
    *,
    now: datetime | None = None,
) -> bool:
    threshold = inactivity_threshold_hours() if hours is None else hours
    last_activity = get_last_activity(session, lead_id)
    if last_activity is None:
        return True
    return hours_since(last_activity, now) > threshold
