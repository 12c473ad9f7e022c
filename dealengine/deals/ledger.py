"""Append-only DealEvent log.

Rows are only ever inserted. Each (source_event_id, event_type) pair appears at
most once, so a redelivered inbound event can never produce a second record.
"""

from __future__ import annotations

import uuid
from datetime import datetime

from sqlalchemy import func, select
from sqlalchemy.orm import Session

from dealengine.context import get_correlation_id
from dealengine.deals.models import DealEvent, as_utc
from dealengine.deals.schemas import DEAL_EVENT_CHANGE_ADAPTER, DealEventChange, DealEventRead


def append(
    session: Session,
    *,
    deal_id: uuid.UUID,
    change: DealEventChange,
    actor_ref: str,
    source_event_id: str,
    occurred_at: datetime,
    correlation_id: str | None = None,
) -> DealEvent:
    next_seq = session.scalar(select(func.coalesce(func.max(DealEvent.seq), 0)).where(DealEvent.deal_id == deal_id)) or 0
    row = DealEvent(
        deal_id=deal_id,
        event_type=change.event_type,
        old_value=change.old_value.model_dump(mode="json") if change.old_value is not None else None,
        new_value=change.new_value.model_dump(mode="json"),
        actor_ref=actor_ref,
        source_event_id=source_event_id,
        correlation_id=correlation_id or get_correlation_id(),
        occurred_at=occurred_at,
        seq=next_seq + 1,
    )
    session.add(row)
    session.flush()
    return row


def find_by_source(session: Session, source_event_id: str) -> DealEvent | None:
    return session.scalar(
        select(DealEvent).where(DealEvent.source_event_id == source_event_id).order_by(DealEvent.seq.asc()).limit(1)
    )


def list_for_deal(session: Session, deal_id: uuid.UUID) -> list[DealEventRead]:
    rows = session.scalars(
        select(DealEvent).where(DealEvent.deal_id == deal_id).order_by(DealEvent.seq.asc())
    ).all()
    return [to_read(row) for row in rows]


def to_read(row: DealEvent) -> DealEventRead:
    change = DEAL_EVENT_CHANGE_ADAPTER.validate_python(
        {"event_type": row.event_type, "old_value": row.old_value, "new_value": row.new_value}
    )
    return DealEventRead(
        id=row.id,
        deal_id=row.deal_id,
        actor_ref=row.actor_ref,
        source_event_id=row.source_event_id,
        correlation_id=row.correlation_id,
        occurred_at=as_utc(row.occurred_at),
        change=change,
    )
