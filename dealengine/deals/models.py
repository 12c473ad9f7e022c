from __future__ import annotations

import uuid
from datetime import datetime, timezone
from decimal import Decimal
from typing import Any

from sqlalchemy import (
    Boolean,
    DateTime,
    Float,
    ForeignKey,
    Index,
    Integer,
    JSON,
    Numeric,
    String,
    Text,
    UniqueConstraint,
    Uuid,
    text,
)
from sqlalchemy.orm import Mapped, mapped_column

from dealengine.core.database import Base


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


class Deal(Base):
    __tablename__ = "deal"

    id: Mapped[uuid.UUID] = mapped_column(Uuid(as_uuid=True), primary_key=True, default=uuid.uuid4)
    stage: Mapped[str] = mapped_column(String(32), nullable=False, default="prospecting")
    value_amount: Mapped[Decimal | None] = mapped_column(Numeric(14, 2), nullable=True)
    value_kind: Mapped[str] = mapped_column(String(32), nullable=False, default="unknown", server_default="unknown")
    range_low: Mapped[Decimal | None] = mapped_column(Numeric(14, 2), nullable=True)
    range_high: Mapped[Decimal | None] = mapped_column(Numeric(14, 2), nullable=True)
    currency: Mapped[str] = mapped_column(String(8), nullable=False, default="CAD", server_default="CAD")
    probability: Mapped[int] = mapped_column(Integer, nullable=False, default=0, server_default="0")

    account_ref: Mapped[str] = mapped_column(String(128), nullable=False)
    contact_ref: Mapped[str | None] = mapped_column(String(128), nullable=True)
    owner_ref: Mapped[str | None] = mapped_column(String(128), nullable=True)
    source: Mapped[str] = mapped_column(String(32), nullable=False, default="quote_auto", server_default="quote_auto")

    is_closed: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False, server_default="false")
    closed_reason: Mapped[str | None] = mapped_column(String(255), nullable=True)
    lost_reason: Mapped[str | None] = mapped_column(Text, nullable=True)
    closed_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)

    touch_count: Mapped[int] = mapped_column(Integer, nullable=False, default=0, server_default="0")
    last_touch_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    last_activity_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    next_action_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    at_risk: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False, server_default="false")

    no_contact_streak: Mapped[int] = mapped_column(Integer, nullable=False, default=0, server_default="0")
    total_contact_attempts: Mapped[int] = mapped_column(Integer, nullable=False, default=0, server_default="0")
    last_contact_result: Mapped[str | None] = mapped_column(String(32), nullable=True)
    last_contact_attempt_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)

    latest_quote_id: Mapped[str | None] = mapped_column(String(128), nullable=True)
    latest_quote_revision_number: Mapped[int | None] = mapped_column(Integer, nullable=True)
    quote_sent_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    final_quote_sent_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    walkthrough_completed_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)

    priority_score: Mapped[float] = mapped_column(Float, nullable=False, default=0.0, server_default="0")
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, default=utcnow)
    updated_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, default=utcnow, onupdate=utcnow)
    stage_entered_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, default=utcnow)
    row_version: Mapped[int] = mapped_column(Integer, nullable=False, default=1, server_default="1")

    __table_args__ = (
        # At most one open deal per (account, contact); concurrent creators collide here.
        Index(
            "uq_deal_open_account_contact",
            "account_ref",
            "contact_ref",
            unique=True,
            sqlite_where=text("NOT is_closed"),
            postgresql_where=text("NOT is_closed"),
        ),
        Index("ix_deal_account_open", "account_ref", "is_closed", "created_at"),
        Index("ix_deal_owner_open", "owner_ref", "is_closed"),
    )


class QuoteRevision(Base):
    __tablename__ = "deal_quote_revision"

    id: Mapped[uuid.UUID] = mapped_column(Uuid(as_uuid=True), primary_key=True, default=uuid.uuid4)
    revision_id: Mapped[str] = mapped_column(String(128), nullable=False, unique=True)
    quote_id: Mapped[str] = mapped_column(String(128), nullable=False, index=True)
    revision_number: Mapped[int] = mapped_column(Integer, nullable=False)
    revision_type: Mapped[str] = mapped_column(String(32), nullable=False)
    status: Mapped[str] = mapped_column(String(32), nullable=False, default="sent", server_default="sent")
    value_kind: Mapped[str] = mapped_column(String(32), nullable=False, default="unknown", server_default="unknown")
    total: Mapped[Decimal | None] = mapped_column(Numeric(14, 2), nullable=True)
    range_low: Mapped[Decimal | None] = mapped_column(Numeric(14, 2), nullable=True)
    range_high: Mapped[Decimal | None] = mapped_column(Numeric(14, 2), nullable=True)
    contact_ref: Mapped[str | None] = mapped_column(String(128), nullable=True, index=True)
    deal_id: Mapped[uuid.UUID | None] = mapped_column(Uuid(as_uuid=True), ForeignKey("deal.id"), nullable=True, index=True)
    sent_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, default=utcnow)
    viewed_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    accepted_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    declined_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    expired_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, default=utcnow)


class DealEvent(Base):
    __tablename__ = "deal_event"

    id: Mapped[uuid.UUID] = mapped_column(Uuid(as_uuid=True), primary_key=True, default=uuid.uuid4)
    deal_id: Mapped[uuid.UUID] = mapped_column(Uuid(as_uuid=True), ForeignKey("deal.id"), nullable=False)
    event_type: Mapped[str] = mapped_column(String(64), nullable=False)
    old_value: Mapped[dict[str, Any] | None] = mapped_column(JSON, nullable=True)
    new_value: Mapped[dict[str, Any] | None] = mapped_column(JSON, nullable=True)
    actor_ref: Mapped[str] = mapped_column(String(128), nullable=False)
    source_event_id: Mapped[str] = mapped_column(String(255), nullable=False)
    correlation_id: Mapped[str | None] = mapped_column(String(128), nullable=True)
    occurred_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, default=utcnow)
    seq: Mapped[int] = mapped_column(Integer, nullable=False, default=0)

    __table_args__ = (
        UniqueConstraint("source_event_id", "event_type", name="uq_deal_event_source_type"),
        Index("ix_deal_event_deal_time", "deal_id", "occurred_at"),
    )


class IdempotencyRecord(Base):
    __tablename__ = "deal_idempotency_record"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    key: Mapped[str] = mapped_column(String(255), nullable=False, unique=True)
    event_type: Mapped[str] = mapped_column(String(64), nullable=False)
    request_hash: Mapped[str] = mapped_column(String(128), nullable=False)
    status: Mapped[str] = mapped_column(String(16), nullable=False, default="pending", server_default="pending")
    deal_id: Mapped[uuid.UUID | None] = mapped_column(Uuid(as_uuid=True), nullable=True)
    outcome: Mapped[str | None] = mapped_column(String(32), nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, default=utcnow)
    completed_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    expires_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, index=True)


def as_utc(value: datetime | None) -> datetime | None:
    """Normalize to aware UTC; naive values come back from backends without tz support."""
    if value is None:
        return None
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)
