from __future__ import annotations

from datetime import datetime, timezone
from typing import Any

from portal_crm.context import get_correlation_id
from portal_crm.core.events import event_bus

published_events: list[dict[str, Any]] = []


def build_envelope(event_type: str, client_id: Any, payload: dict[str, Any]) -> dict[str, Any]:
    return {
        "event_type": event_type,
        "client_id": str(client_id) if client_id is not None else None,
        "occurred_at": datetime.now(timezone.utc).isoformat(),
        "payload": payload,
    }


def publish(envelope: dict[str, Any]) -> None:
    if envelope.get("correlation_id") is None:
        envelope["correlation_id"] = get_correlation_id()

    published_events.append(envelope)
    event_type = envelope.get("event_type")
    if isinstance(event_type, str) and event_type:
        event_bus.publish(event_type, envelope)
