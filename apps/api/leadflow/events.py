from __future__ import annotations

import uuid
from collections import deque
from datetime import datetime, timezone
from typing import Any

from leadflow.context import get_correlation_id
from leadflow.core.events import event_bus

ENVELOPE_VERSION = 1
RECENT_EVENTS_LIMIT = 200

# most recent envelopes, oldest dropped first
published_events: deque[dict[str, Any]] = deque(maxlen=RECENT_EVENTS_LIMIT)


def build_envelope(
    event_type: str,
    payload: dict[str, Any],
    *,
    actor_user_id: str,
    correlation_id: str | None = None,
) -> dict[str, Any]:
    return {
        "event_id": str(uuid.uuid4()),
        "event_type": event_type,
        "occurred_at": datetime.now(timezone.utc).isoformat(),
        "actor_user_id": actor_user_id,
        "version": ENVELOPE_VERSION,
        "payload": payload,
        "correlation_id": correlation_id or get_correlation_id(),
    }


def publish(envelope: dict[str, Any]) -> None:
    published_events.append(envelope)
    event_bus.publish(envelope["event_type"], envelope)
