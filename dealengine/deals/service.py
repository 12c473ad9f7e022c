from __future__ import annotations

import logging
import time
import uuid
from collections.abc import Callable
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import Any

from opentelemetry import trace
from opentelemetry.trace import Status, StatusCode
from sqlalchemy import select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from dealengine import events
from dealengine.core.config import Settings, get_settings
from dealengine.deals import dedupe, ledger
from dealengine.deals.cadence import apply_contact_attempt
from dealengine.deals.errors import (
    DealCreateConflictError,
    DealEngineError,
    DealNotFoundError,
    DealValidationError,
    QuoteRevisionNotFoundError,
)
from dealengine.deals.idempotency import Admission, IdempotencyGuard, contact_attempt_key, quote_event_key
from dealengine.deals.lifecycle import (
    Transition,
    apply_quote_accepted,
    apply_quote_declined,
    apply_quote_expired,
    apply_quote_sent,
    apply_quote_viewed,
    new_deal,
    noop,
)
from dealengine.deals.locks import KeyedLocks
from dealengine.deals.models import Deal, QuoteRevision, as_utc, utcnow
from dealengine.deals.schemas import (
    ContactAttemptLoggedEvent,
    DealEventChange,
    DealEventRead,
    DealRead,
    EventResult,
    QuoteAcceptedEvent,
    QuoteDeclinedEvent,
    QuoteExpiredEvent,
    QuoteSentEvent,
    QuoteViewedEvent,
    WorklistItem,
)
from dealengine.deals.scoring import deal_value, score_deal
from dealengine.deals.worklist import WorklistPolicy, assemble
from dealengine.metrics import (
    observe_auto_closed,
    observe_create_conflict,
    observe_deal_event,
    observe_dedupe_resolution,
)


logger = logging.getLogger("dealengine.deals")
tracer = trace.get_tracer("dealengine.deals")

# Suffixes used in idempotency keys for quote revision events.
QUOTE_KEY_EVENTS = {
    "quote_sent": "revision_sent",
    "quote_viewed": "viewed",
    "quote_accepted": "accepted",
    "quote_declined": "declined",
    "quote_expired": "expired",
}
_DATETIME_FIELDS = (
    "closed_at",
    "last_touch_at",
    "last_activity_at",
    "next_action_at",
    "last_contact_attempt_at",
    "quote_sent_at",
    "final_quote_sent_at",
    "walkthrough_completed_at",
    "created_at",
    "stage_entered_at",
)


def deal_to_read(deal: Deal, priority_score: float | None = None) -> DealRead:
    timestamps = {name: as_utc(getattr(deal, name)) for name in _DATETIME_FIELDS}
    return DealRead(
        id=deal.id,
        stage=deal.stage,
        value=deal_value(deal),
        currency=deal.currency,
        probability=deal.probability,
        account_ref=deal.account_ref,
        contact_ref=deal.contact_ref,
        owner_ref=deal.owner_ref,
        source=deal.source,
        is_closed=deal.is_closed,
        closed_reason=deal.closed_reason,
        lost_reason=deal.lost_reason,
        touch_count=deal.touch_count,
        at_risk=deal.at_risk,
        no_contact_streak=deal.no_contact_streak,
        total_contact_attempts=deal.total_contact_attempts,
        last_contact_result=deal.last_contact_result,
        latest_quote_id=deal.latest_quote_id,
        latest_quote_revision_number=deal.latest_quote_revision_number,
        priority_score=deal.priority_score if priority_score is None else priority_score,
        row_version=deal.row_version,
        **timestamps,
    )


def _event_payload(event: Any) -> dict[str, Any]:
    # Delivery timestamps may be restamped by the transport; the facts may not.
    return event.model_dump(mode="json", exclude={"occurred_at"})


@dataclass
class _Applied:
    deal: Deal
    admission: Admission
    outcome: str
    created: bool = False
    auto_closed: bool = False
    envelopes: list[dict[str, Any]] = field(default_factory=list)


@dataclass
class DealEventService:
    """Applies inbound quote and contact events to deals.

    Each call is one unit of work: idempotency reservation, deal resolution,
    state transition, rescoring and ledger writes commit together or not at all.
    """

    locks: KeyedLocks = field(default_factory=KeyedLocks)
    clock: Callable[[], datetime] = utcnow
    sleep: Callable[[float], None] = time.sleep

    def quote_sent(
        self,
        session: Session,
        actor_ref: str,
        event: QuoteSentEvent,
        *,
        now: datetime | None = None,
    ) -> EventResult:
        at = self._now(now)
        settings = get_settings()
        key = quote_event_key(event.effective_quote_id, event.revision_number, QUOTE_KEY_EVENTS["quote_sent"])
        lock_key = f"account:{event.account_ref}" if event.account_ref else f"quote:{event.effective_quote_id}"

        def run() -> EventResult:
            with self.locks.hold(lock_key):
                for attempt in range(settings.create_conflict_retries + 1):
                    try:
                        return self._apply_quote_sent(session, actor_ref, event, key, at, settings)
                    except DealCreateConflictError as exc:
                        session.rollback()
                        observe_create_conflict()
                        logger.info(
                            "deals.create_conflict_retry",
                            extra={"idempotency_key": key, "attempt": attempt + 1, "error": str(exc)},
                        )
                        last_conflict = exc
                raise last_conflict

        return self._run(session, "quote_sent", key, run)

    def quote_viewed(
        self,
        session: Session,
        actor_ref: str,
        event: QuoteViewedEvent,
        *,
        now: datetime | None = None,
    ) -> EventResult:
        return self._revision_event(session, actor_ref, "quote_viewed", event, now)

    def quote_accepted(
        self,
        session: Session,
        actor_ref: str,
        event: QuoteAcceptedEvent,
        *,
        now: datetime | None = None,
    ) -> EventResult:
        return self._revision_event(session, actor_ref, "quote_accepted", event, now)

    def quote_declined(
        self,
        session: Session,
        actor_ref: str,
        event: QuoteDeclinedEvent,
        *,
        now: datetime | None = None,
    ) -> EventResult:
        return self._revision_event(session, actor_ref, "quote_declined", event, now)

    def quote_expired(
        self,
        session: Session,
        actor_ref: str,
        event: QuoteExpiredEvent,
        *,
        now: datetime | None = None,
    ) -> EventResult:
        return self._revision_event(session, actor_ref, "quote_expired", event, now)

    def contact_attempt_logged(
        self,
        session: Session,
        actor_ref: str,
        event: ContactAttemptLoggedEvent,
        *,
        now: datetime | None = None,
    ) -> EventResult:
        at = self._now(now)
        settings = get_settings()
        key = contact_attempt_key(event.contact_attempt_id)

        def run() -> EventResult:
            if event.deal_ref is None and not event.contact_ref:
                raise DealValidationError("contact_attempt_logged", "deal_ref or contact_ref is required")

            admission = self._guard(settings).admit(
                session,
                key,
                event_type="contact_attempt_logged",
                payload=_event_payload(event),
                now=at,
            )
            if not admission.fresh:
                return self._replayed(session, admission, "contact_attempt_logged")
            stale = self._stale_replay(session, admission, key, at, settings)
            if stale is not None:
                return stale

            deal_id = event.deal_ref or self._deal_for_contact(session, event.contact_ref)
            with self.locks.hold(f"deal:{deal_id}"):
                deal = self._lock_deal(session, deal_id)
                when = as_utc(event.occurred_at)
                cadence = apply_contact_attempt(
                    deal,
                    event,
                    at=when,
                    threshold=settings.cadence_threshold,
                    close_reason=settings.cadence_close_reason,
                )
                applied = self._record(
                    session,
                    deal,
                    admission,
                    Transition(applied=cadence.applied, changes=cadence.changes),
                    actor_ref=actor_ref,
                    source_event_id=key,
                    occurred_at=when,
                    now=at,
                    settings=settings,
                    outcome="auto_closed" if cadence.auto_closed else None,
                )
                if cadence.auto_closed:
                    applied.auto_closed = True
                    applied.envelopes.append(
                        self._envelope(events.DEAL_AUTO_CLOSED, deal, actor_ref, closed_reason=deal.closed_reason)
                    )
                return self._finish(session, applied)

        return self._run(session, "contact_attempt_logged", key, run)

    def get_deal(self, session: Session, deal_id: uuid.UUID, *, now: datetime | None = None) -> DealRead:
        deal = session.get(Deal, deal_id)
        if deal is None:
            raise DealNotFoundError(deal_id)
        return deal_to_read(deal, score_deal(deal, self._now(now)))

    def list_events(self, session: Session, deal_id: uuid.UUID) -> list[DealEventRead]:
        if session.get(Deal, deal_id) is None:
            raise DealNotFoundError(deal_id)
        return ledger.list_for_deal(session, deal_id)

    def worklist(
        self,
        session: Session,
        owner_ref: str,
        *,
        now: datetime | None = None,
        include_tier4: bool = False,
        limit: int | None = None,
    ) -> list[WorklistItem]:
        settings = get_settings()
        policy = WorklistPolicy(
            cadence_threshold=settings.cadence_threshold,
            warm_quote_days=settings.worklist_warm_quote_days,
            idle_days=settings.worklist_idle_days,
        )
        return assemble(
            session,
            owner_ref,
            now=self._now(now),
            to_read=deal_to_read,
            policy=policy,
            include_tier4=include_tier4,
            limit=limit,
        )

    def purge_idempotency(self, session: Session, *, now: datetime | None = None) -> int:
        return self._guard(get_settings()).purge_expired(session, self._now(now))

    def _apply_quote_sent(
        self,
        session: Session,
        actor_ref: str,
        event: QuoteSentEvent,
        key: str,
        at: datetime,
        settings: Settings,
    ) -> EventResult:
        admission = self._guard(settings).admit(
            session,
            key,
            event_type="quote_sent",
            payload=_event_payload(event),
            now=at,
        )
        if not admission.fresh:
            return self._replayed(session, admission, "quote_sent")
        stale = self._stale_replay(session, admission, key, at, settings)
        if stale is not None:
            return stale

        when = as_utc(event.occurred_at) or at
        revision = session.scalar(select(QuoteRevision).where(QuoteRevision.revision_id == event.revision_id))
        deal = self._linked_deal(session, event, revision)
        if deal is not None and deal.is_closed:
            self._guard(settings).complete(session, admission, deal_id=deal.id, outcome="noop", now=at)
            return self._finish(session, _Applied(deal=deal, admission=admission, outcome="noop"))

        created_change: DealEventChange | None = None
        if deal is None:
            if not event.account_ref or not event.contact_ref:
                raise DealValidationError("quote_sent", "account_ref and contact_ref are required for an unlinked quote")
            resolution = dedupe.resolve(
                session,
                event.account_ref,
                event.contact_ref,
                event.owner_ref,
                now=when,
                dedupe_window_days=settings.dedupe_window_days,
            )
            observe_dedupe_resolution(resolution.match)
            deal = resolution.deal
            if deal is None:
                deal, created_change = new_deal(event, at=when, default_currency=settings.default_currency)
                self._insert_deal(session, deal, event)

        with self.locks.hold(f"deal:{deal.id}"):
            deal = self._lock_deal(session, deal.id)
            transition = apply_quote_sent(deal, event, at=when, follow_up=timedelta(hours=settings.follow_up_hours))
            if created_change is not None:
                transition.changes.insert(0, created_change)
            self._link_revision(session, revision, event, deal, when)
            applied = self._record(
                session,
                deal,
                admission,
                transition,
                actor_ref=actor_ref,
                source_event_id=key,
                occurred_at=when,
                now=at,
                settings=settings,
                outcome="created" if created_change is not None else None,
            )
            if created_change is not None:
                applied.created = True
                applied.envelopes.append(self._envelope(events.DEAL_CREATED, deal, actor_ref))
            return self._finish(session, applied)

    def _revision_event(
        self,
        session: Session,
        actor_ref: str,
        event_type: str,
        event: QuoteViewedEvent | QuoteAcceptedEvent | QuoteDeclinedEvent | QuoteExpiredEvent,
        now: datetime | None,
    ) -> EventResult:
        at = self._now(now)
        settings = get_settings()
        revision = session.scalar(select(QuoteRevision).where(QuoteRevision.revision_id == event.revision_id))
        if revision is None:
            observe_deal_event(event_type, "rejected", 0.0)
            logger.warning("deals.event.rejected", extra={"event_type": event_type, "error": "unknown revision"})
            raise QuoteRevisionNotFoundError(event.revision_id)
        key = quote_event_key(revision.quote_id, revision.revision_number, QUOTE_KEY_EVENTS[event_type])

        def run() -> EventResult:
            when = as_utc(event.occurred_at) or at
            retention = None
            source_event_id = key
            if event_type == "quote_viewed":
                # Views are debounced per revision; each debounce window is its own source event.
                retention = timedelta(hours=settings.idempotency_view_retention_hours)
                source_event_id = f"{key}:at:{when.isoformat()}"

            admission = self._guard(settings).admit(
                session,
                key,
                event_type=event_type,
                payload=_event_payload(event),
                now=at,
                retention=retention,
            )
            if not admission.fresh:
                return self._replayed(session, admission, event_type)
            stale = self._stale_replay(session, admission, source_event_id, at, settings)
            if stale is not None:
                return stale

            if revision.deal_id is None:
                raise DealNotFoundError(revision.revision_id)
            with self.locks.hold(f"deal:{revision.deal_id}"):
                deal = self._lock_deal(session, revision.deal_id)
                transition = self._apply_revision_transition(event_type, deal, revision, event, when)
                self._stamp_revision(revision, event_type, when)
                applied = self._record(
                    session,
                    deal,
                    admission,
                    transition,
                    actor_ref=actor_ref,
                    source_event_id=source_event_id,
                    occurred_at=when,
                    now=at,
                    settings=settings,
                )
                if transition.applied and event_type in {"quote_accepted", "quote_declined"}:
                    applied.envelopes.append(
                        self._envelope(events.DEAL_CLOSED, deal, actor_ref, closed_reason=deal.closed_reason)
                    )
                elif transition.applied and event_type == "quote_expired":
                    applied.envelopes.append(self._envelope(events.DEAL_AT_RISK, deal, actor_ref))
                return self._finish(session, applied)

        return self._run(session, event_type, key, run)

    def _apply_revision_transition(
        self,
        event_type: str,
        deal: Deal,
        revision: QuoteRevision,
        event: Any,
        when: datetime,
    ) -> Transition:
        if event_type == "quote_viewed":
            return apply_quote_viewed(deal, revision, at=when)
        if event_type == "quote_accepted":
            return apply_quote_accepted(deal, revision, event, at=when)
        if event_type == "quote_declined":
            return apply_quote_declined(deal, revision, event, at=when)
        if event_type == "quote_expired":
            return apply_quote_expired(deal, revision, at=when)
        return noop()

    def _stamp_revision(self, revision: QuoteRevision, event_type: str, when: datetime) -> None:
        if event_type == "quote_viewed":
            revision.viewed_at = revision.viewed_at or when
            if revision.status == "sent":
                revision.status = "viewed"
        elif event_type == "quote_accepted":
            revision.status = "accepted"
            revision.accepted_at = when
        elif event_type == "quote_declined":
            revision.status = "declined"
            revision.declined_at = when
        elif event_type == "quote_expired":
            revision.status = "expired"
            revision.expired_at = when

    def _record(
        self,
        session: Session,
        deal: Deal,
        admission: Admission,
        transition: Transition,
        *,
        actor_ref: str,
        source_event_id: str,
        occurred_at: datetime,
        now: datetime,
        settings: Settings,
        outcome: str | None = None,
    ) -> _Applied:
        if not transition.applied:
            self._guard(settings).complete(session, admission, deal_id=deal.id, outcome="noop", now=now)
            return _Applied(deal=deal, admission=admission, outcome="noop")

        deal.priority_score = score_deal(deal, now)
        deal.updated_at = now
        deal.row_version += 1
        session.flush()
        for change in transition.changes:
            ledger.append(
                session,
                deal_id=deal.id,
                change=change,
                actor_ref=actor_ref,
                source_event_id=source_event_id,
                occurred_at=occurred_at,
            )
        resolved_outcome = outcome or "applied"
        self._guard(settings).complete(session, admission, deal_id=deal.id, outcome=resolved_outcome, now=now)
        return _Applied(deal=deal, admission=admission, outcome=resolved_outcome)

    def _finish(self, session: Session, result: EventResult | _Applied) -> EventResult:
        if isinstance(result, EventResult):
            return result
        session.commit()
        session.refresh(result.deal)
        for envelope in result.envelopes:
            events.publish(envelope)
        if result.auto_closed:
            observe_auto_closed()
            logger.info(
                "deals.auto_closed",
                extra={"deal_id": str(result.deal.id), "idempotency_key": result.admission.key},
            )
        return EventResult(
            deal=deal_to_read(result.deal),
            outcome=result.outcome,
            idempotency_key=result.admission.key,
            replayed=False,
            applied=result.outcome != "noop",
            created=result.created,
            auto_closed=result.auto_closed,
        )

    def _run(self, session: Session, event_type: str, key: str, handler: Callable[[], EventResult]) -> EventResult:
        started = time.perf_counter()
        with tracer.start_as_current_span(f"deals.{event_type}") as span:
            span.set_attribute("event_type", event_type)
            span.set_attribute("idempotency_key", key)
            try:
                result = handler()
            except DealEngineError as exc:
                session.rollback()
                span.set_status(Status(StatusCode.ERROR, str(exc)))
                observe_deal_event(event_type, "rejected", time.perf_counter() - started)
                logger.warning(
                    "deals.event.rejected",
                    extra={"event_type": event_type, "idempotency_key": key, "error": str(exc)},
                )
                raise
            except Exception:
                session.rollback()
                span.set_status(Status(StatusCode.ERROR, "unexpected failure"))
                raise

            outcome = "replayed" if result.replayed else result.outcome
            if result.deal is not None:
                span.set_attribute("deal_id", str(result.deal.id))
            span.set_attribute("outcome", outcome)
            observe_deal_event(event_type, outcome, time.perf_counter() - started)
            logger.info(
                "deals.event.replayed" if result.replayed else "deals.event.applied",
                extra={
                    "event_type": event_type,
                    "idempotency_key": key,
                    "deal_id": str(result.deal.id) if result.deal is not None else None,
                    "outcome": outcome,
                },
            )
            return result

    def _replayed(self, session: Session, admission: Admission, event_type: str) -> EventResult:
        deal = session.get(Deal, admission.deal_id) if admission.deal_id is not None else None
        deal_read = deal_to_read(deal) if deal is not None else None
        # Nothing was written; end the read transaction before answering.
        session.rollback()
        return EventResult(
            deal=deal_read,
            outcome=admission.outcome or "noop",
            idempotency_key=admission.key,
            replayed=True,
            applied=False,
        )

    def _stale_replay(
        self,
        session: Session,
        admission: Admission,
        source_event_id: str,
        at: datetime,
        settings: Settings,
    ) -> EventResult | None:
        """Catch redeliveries that arrive after their idempotency record expired."""
        previous = ledger.find_by_source(session, source_event_id)
        if previous is None:
            return None
        self._guard(settings).complete(session, admission, deal_id=previous.deal_id, outcome="noop", now=at)
        session.commit()
        deal = session.get(Deal, previous.deal_id)
        return EventResult(
            deal=deal_to_read(deal) if deal is not None else None,
            outcome="noop",
            idempotency_key=admission.key,
            replayed=True,
            applied=False,
        )

    def _linked_deal(self, session: Session, event: QuoteSentEvent, revision: QuoteRevision | None) -> Deal | None:
        if revision is not None and revision.deal_id is not None:
            return session.get(Deal, revision.deal_id)
        return session.scalar(
            select(Deal)
            .join(QuoteRevision, QuoteRevision.deal_id == Deal.id)
            .where(QuoteRevision.quote_id == event.effective_quote_id, Deal.is_closed.is_(False))
            .order_by(QuoteRevision.revision_number.desc())
            .limit(1)
        )

    def _link_revision(
        self,
        session: Session,
        revision: QuoteRevision | None,
        event: QuoteSentEvent,
        deal: Deal,
        when: datetime,
    ) -> None:
        if revision is None:
            session.add(
                QuoteRevision(
                    revision_id=event.revision_id,
                    quote_id=event.effective_quote_id,
                    revision_number=event.revision_number,
                    revision_type=event.revision_type,
                    status="sent",
                    value_kind=event.value.kind,
                    total=event.value.amount if event.value.kind == "binding" else None,
                    range_low=event.value.range_low,
                    range_high=event.value.range_high,
                    contact_ref=event.contact_ref,
                    deal_id=deal.id,
                    sent_at=when,
                    created_at=when,
                )
            )
            return
        # A revision's deal link is set once and never moved.
        if revision.deal_id is None:
            revision.deal_id = deal.id
        if revision.contact_ref is None:
            revision.contact_ref = event.contact_ref
        revision.sent_at = when

    def _insert_deal(self, session: Session, deal: Deal, event: QuoteSentEvent) -> None:
        session.add(deal)
        try:
            session.flush()
        except IntegrityError as exc:
            raise DealCreateConflictError(event.account_ref or "", event.contact_ref) from exc

    def _lock_deal(self, session: Session, deal_id: uuid.UUID) -> Deal:
        deal = session.scalar(
            select(Deal)
            .where(Deal.id == deal_id)
            .with_for_update()
            .execution_options(populate_existing=True)
        )
        if deal is None:
            raise DealNotFoundError(deal_id)
        return deal

    def _deal_for_contact(self, session: Session, contact_ref: str | None) -> uuid.UUID:
        """Pick the deal a contact-only attempt applies to.

        Open deals win over closed ones; a closed match still receives the
        attempt so it resolves as a no-op. A contact may be on the deal itself
        or only on a quote revision linked to it.
        """
        for is_closed in (False, True):
            order = Deal.closed_at.desc() if is_closed else Deal.updated_at.desc()
            direct = session.scalar(
                select(Deal.id)
                .where(Deal.contact_ref == contact_ref, Deal.is_closed.is_(is_closed))
                .order_by(order)
                .limit(1)
            )
            if direct is not None:
                return direct
            linked = session.scalar(
                select(Deal.id)
                .join(QuoteRevision, QuoteRevision.deal_id == Deal.id)
                .where(QuoteRevision.contact_ref == contact_ref, Deal.is_closed.is_(is_closed))
                .order_by(order, QuoteRevision.sent_at.desc())
                .limit(1)
            )
            if linked is not None:
                return linked
        raise DealNotFoundError(contact_ref or "")

    def _envelope(self, event_type: str, deal: Deal, actor_ref: str, **extra: Any) -> dict[str, Any]:
        envelope: dict[str, Any] = {
            "event_type": event_type,
            "deal_id": str(deal.id),
            "account_ref": deal.account_ref,
            "contact_ref": deal.contact_ref,
            "owner_ref": deal.owner_ref,
            "stage": deal.stage,
            "actor_ref": actor_ref,
        }
        envelope.update(extra)
        return envelope

    def _guard(self, settings: Settings) -> IdempotencyGuard:
        return IdempotencyGuard(
            retention=timedelta(days=settings.idempotency_retention_days),
            wait_attempts=settings.idempotency_wait_attempts,
            wait_seconds=settings.idempotency_wait_seconds,
            sleep=self.sleep,
        )

    def _now(self, now: datetime | None) -> datetime:
        return as_utc(now) if now is not None else self.clock()


deal_event_service = DealEventService()
