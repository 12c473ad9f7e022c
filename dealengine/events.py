from __future__ import annotations

from collections import deque
from typing import Any

from dealengine.context import get_correlation_id
from dealengine.core.events import event_bus

PUBLISHED_EVENTS_LIMIT = 1000

# Recent envelopes only; subscribers on the bus see every one.
published_events: deque[dict[str, Any]] = deque(maxlen=PUBLISHED_EVENTS_LIMIT)

DEAL_CREATED = "deals.deal.created"
DEAL_CLOSED = "deals.deal.closed"
DEAL_AT_RISK = "deals.deal.at_risk"
DEAL_AUTO_CLOSED = "deals.deal.auto_closed"


def publish(envelope: dict[str, Any]) -> None:
    """Record a domain envelope and hand it to in-process subscribers.

    Subscribers (notification dispatch, analytics) run after the unit of work
    that produced the envelope has committed.
    """
    if envelope.get("correlation_id") is None:
        envelope["correlation_id"] = get_correlation_id()

    published_events.append(envelope)
    event_type = envelope.get("event_type")
    if isinstance(event_type, str) and event_type:
        event_bus.publish(event_type, envelope)
