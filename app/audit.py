from __future__ import annotations

import logging
import uuid
from datetime import datetime, timezone
from typing import Any

from app.context import get_correlation_id

logger = logging.getLogger("app.audit")

audit_entries: list[dict[str, Any]] = []


def record(
    actor_user_id: str | uuid.UUID,
    entity_type: str,
    entity_id: str | uuid.UUID,
    action: str,
    before: dict[str, Any] | None,
    after: dict[str, Any] | None,
    correlation_id: str | None = None,
) -> dict[str, Any]:
    """Append an audit entry and emit it on the ``app.audit`` logger.

    Entries stay in process memory; the log line is what operators ship.
    """

    entry = {
        "id": str(uuid.uuid4()),
        "actor_user_id": str(actor_user_id),
        "entity_type": entity_type,
        "entity_id": str(entity_id),
        "action": action,
        "before": before,
        "after": after,
        "correlation_id": correlation_id or get_correlation_id(),
        "occurred_at": datetime.now(timezone.utc).isoformat(),
    }
    audit_entries.append(entry)
    logger.info(
        "audit.recorded",
        extra={
            "actor_user_id": entry["actor_user_id"],
            "entity_type": entity_type,
            "entity_id": entry["entity_id"],
            "action": action,
        },
    )
    return entry


def entries_for(entity_type: str, entity_id: str | uuid.UUID) -> list[dict[str, Any]]:
    return [
        entry
        for entry in audit_entries
        if entry["entity_type"] == entity_type and entry["entity_id"] == str(entity_id)
    ]
