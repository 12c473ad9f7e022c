"""Idempotency guard for inbound deal events.

The guard reserves a key by inserting its record inside the caller's unit of
work (insert+claim). The reservation becomes visible to other writers only when
the caller commits, at which point the result is already recorded on it. A
rollback releases the key so a corrected retry can proceed.
"""

from __future__ import annotations

import hashlib
import json
import logging
import time
import uuid
from collections.abc import Callable
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Any

from sqlalchemy import delete, select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from dealengine.deals.errors import IdempotencyConflictError, IdempotencyInFlightError
from dealengine.deals.models import IdempotencyRecord, as_utc
from dealengine.metrics import observe_idempotency_purged


logger = logging.getLogger("dealengine.deals.idempotency")

STATUS_PENDING = "pending"
STATUS_COMPLETED = "completed"


def quote_event_key(quote_id: str, revision_number: int, event_type: str) -> str:
    return f"deal_link:quote:{quote_id}:rev:{revision_number}:event:{event_type}"


def contact_attempt_key(contact_attempt_id: str) -> str:
    return f"contact_attempt:{contact_attempt_id}"


def request_hash(payload: dict[str, Any]) -> str:
    return hashlib.sha256(json.dumps(payload, sort_keys=True, default=str).encode("utf-8")).hexdigest()


@dataclass
class Admission:
    key: str
    fresh: bool
    record: IdempotencyRecord

    @property
    def deal_id(self) -> uuid.UUID | None:
        return self.record.deal_id

    @property
    def outcome(self) -> str | None:
        return self.record.outcome


@dataclass
class IdempotencyGuard:
    retention: timedelta
    wait_attempts: int = 5
    wait_seconds: float = 0.05
    sleep: Callable[[float], None] = time.sleep

    def admit(
        self,
        session: Session,
        key: str,
        *,
        event_type: str,
        payload: dict[str, Any],
        now: datetime,
        retention: timedelta | None = None,
    ) -> Admission:
        """Reserve ``key`` or return the result stored for it.

        Raises IdempotencyConflictError when the key was first seen with a
        different payload.
        """
        payload_hash = request_hash(payload)
        existing = self._load_live(session, key, now)
        if existing is not None:
            return self._cached(existing, key, payload_hash)

        record = IdempotencyRecord(
            key=key,
            event_type=event_type,
            request_hash=payload_hash,
            status=STATUS_PENDING,
            created_at=now,
            expires_at=now + (retention or self.retention),
        )
        session.add(record)
        try:
            session.flush()
        except IntegrityError:
            # Another writer committed this key between our read and insert.
            session.rollback()
            return self._cached(self._wait_for_result(session, key, now), key, payload_hash)
        return Admission(key=key, fresh=True, record=record)

    def complete(
        self,
        session: Session,
        admission: Admission,
        *,
        deal_id: uuid.UUID | None,
        outcome: str,
        now: datetime,
    ) -> None:
        record = admission.record
        record.status = STATUS_COMPLETED
        record.deal_id = deal_id
        record.outcome = outcome
        record.completed_at = now
        session.flush()

    def release(self, session: Session) -> None:
        session.rollback()

    def purge_expired(self, session: Session, now: datetime) -> int:
        result = session.execute(delete(IdempotencyRecord).where(IdempotencyRecord.expires_at <= now))
        session.commit()
        purged = result.rowcount or 0
        observe_idempotency_purged(purged)
        logger.info("deals.idempotency.purged", extra={"purged": purged})
        return purged

    def _load_live(self, session: Session, key: str, now: datetime) -> IdempotencyRecord | None:
        existing = session.scalar(select(IdempotencyRecord).where(IdempotencyRecord.key == key))
        if existing is None:
            return None
        if as_utc(existing.expires_at) <= now:
            session.delete(existing)
            session.flush()
            return None
        return existing

    def _wait_for_result(self, session: Session, key: str, now: datetime) -> IdempotencyRecord:
        for attempt in range(self.wait_attempts):
            existing = self._load_live(session, key, now)
            if existing is not None and existing.status == STATUS_COMPLETED:
                return existing
            session.rollback()
            logger.info("deals.idempotency.waiting", extra={"idempotency_key": key, "attempt": attempt + 1})
            self.sleep(self.wait_seconds)
        raise IdempotencyInFlightError(key)

    def _cached(self, record: IdempotencyRecord, key: str, payload_hash: str) -> Admission:
        if record.request_hash != payload_hash:
            raise IdempotencyConflictError(key)
        if record.status != STATUS_COMPLETED:
            raise IdempotencyInFlightError(key)
        return Admission(key=key, fresh=False, record=record)
