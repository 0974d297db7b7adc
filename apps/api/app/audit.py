from __future__ import annotations

import uuid
from collections import deque
from datetime import datetime, timezone
from typing import Any

from app.context import get_correlation_id

AUDIT_BUFFER_SIZE = 1000

# Bounded; only the most recent entries are kept in process.
audit_entries: deque[dict[str, Any]] = deque(maxlen=AUDIT_BUFFER_SIZE)


def record(
    actor_user_id: int | str | None,
    entity_type: str,
    entity_id: str,
    action: str,
    before: dict[str, Any] | None,
    after: dict[str, Any] | None,
    correlation_id: str | None = None,
) -> None:
    audit_entries.append(
        {
            "id": str(uuid.uuid4()),
            "actor_user_id": None if actor_user_id is None else str(actor_user_id),
            "entity_type": entity_type,
            "entity_id": entity_id,
            "action": action,
            "before": before,
            "after": after,
            "correlation_id": correlation_id or get_correlation_id(),
            "occurred_at": datetime.now(timezone.utc).isoformat(),
        }
    )
