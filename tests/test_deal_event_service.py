from __future__ import annotations

import uuid
from collections.abc import Generator
from datetime import datetime, timedelta, timezone
from decimal import Decimal

import pytest
from sqlalchemy import create_engine, func, select
from sqlalchemy.orm import Session, sessionmaker
from sqlalchemy.pool import StaticPool

from dealengine import events
from dealengine.core.config import get_settings
from dealengine.core.database import Base
from dealengine.deals import dedupe
from dealengine.deals.errors import (
    DealNotFoundError,
    DealValidationError,
    IdempotencyConflictError,
    QuoteRevisionNotFoundError,
)
from dealengine.deals.models import Deal, DealEvent, IdempotencyRecord, QuoteRevision
from dealengine.deals.schemas import (
    ContactAttemptLoggedEvent,
    DealValue,
    QuoteAcceptedEvent,
    QuoteDeclinedEvent,
    QuoteExpiredEvent,
    QuoteSentEvent,
    QuoteViewedEvent,
)
from dealengine.deals.service import DealEventService


NOW = datetime(2026, 3, 1, 12, 0, tzinfo=timezone.utc)
ACTOR = "rep-1"


@pytest.fixture()
def db_session() -> Generator[Session, None, None]:
    engine = create_engine(
        "sqlite+pysqlite:///:memory:",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )
    SessionLocal = sessionmaker(bind=engine, autocommit=False, autoflush=False)
    Base.metadata.create_all(bind=engine)
    session = SessionLocal()
    try:
        yield session
    finally:
        session.close()
        Base.metadata.drop_all(bind=engine)


@pytest.fixture(autouse=True)
def clear_stubs() -> Generator[None, None, None]:
    events.published_events.clear()
    get_settings.cache_clear()
    yield
    events.published_events.clear()
    get_settings.cache_clear()


@pytest.fixture()
def service() -> DealEventService:
    return DealEventService(clock=lambda: NOW, sleep=lambda _: None)


def _sent(
    revision_id: str = "rev-1",
    *,
    quote_id: str = "quote-1",
    revision_number: int = 1,
    revision_type: str = "final_quote",
    account_ref: str | None = "acct-1",
    contact_ref: str | None = "contact-1",
    value: DealValue | None = None,
) -> QuoteSentEvent:
    return QuoteSentEvent(
        revision_id=revision_id,
        quote_id=quote_id,
        revision_number=revision_number,
        revision_type=revision_type,
        account_ref=account_ref,
        contact_ref=contact_ref,
        owner_ref=ACTOR,
        value=value or DealValue(),
    )


def _attempt(deal_id: uuid.UUID, attempt_id: str, outcome: str = "no_contact") -> ContactAttemptLoggedEvent:
    return ContactAttemptLoggedEvent(contact_attempt_id=attempt_id, deal_ref=deal_id, outcome=outcome, occurred_at=NOW)


def _events_of(session: Session, deal_id: uuid.UUID, event_type: str) -> int:
    return session.scalar(
        select(func.count()).select_from(DealEvent).where(DealEvent.deal_id == deal_id, DealEvent.event_type == event_type)
    )


def test_final_quote_for_new_pair_creates_deal_at_proposal(db_session: Session, service: DealEventService) -> None:
    result = service.quote_sent(db_session, ACTOR, _sent(value=DealValue(kind="binding", amount=Decimal("12000"))))

    assert result.created is True
    assert result.outcome == "created"
    assert result.deal.stage == "proposal"
    assert result.deal.source == "quote_auto"
    assert result.deal.currency == "CAD"
    assert result.deal.value.kind == "binding"
    assert result.deal.next_action_at == NOW + timedelta(hours=24)
    assert result.deal.priority_score > 0
    revision = db_session.scalar(select(QuoteRevision).where(QuoteRevision.revision_id == "rev-1"))
    assert revision.deal_id == result.deal.id
    assert [event["event_type"] for event in events.published_events] == [events.DEAL_CREATED]


def test_replaying_quote_sent_yields_one_deal_and_one_event(db_session: Session, service: DealEventService) -> None:
    results = [service.quote_sent(db_session, ACTOR, _sent()) for _ in range(4)]

    assert {result.deal.id for result in results} == {results[0].deal.id}
    assert [result.replayed for result in results] == [False, True, True, True]
    assert db_session.scalar(select(func.count()).select_from(Deal)) == 1
    assert _events_of(db_session, results[0].deal.id, "quote_sent") == 1
    assert _events_of(db_session, results[0].deal.id, "deal_created") == 1


def test_same_key_with_different_facts_is_rejected(db_session: Session, service: DealEventService) -> None:
    service.quote_sent(db_session, ACTOR, _sent(value=DealValue(kind="binding", amount=Decimal("100"))))

    with pytest.raises(IdempotencyConflictError):
        service.quote_sent(db_session, ACTOR, _sent(value=DealValue(kind="binding", amount=Decimal("999"))))

    deal = db_session.scalar(select(Deal))
    assert deal.value_amount == Decimal("100")


def test_dedupe_links_within_window_and_splits_beyond_it(db_session: Session, service: DealEventService) -> None:
    first = service.quote_sent(db_session, ACTOR, _sent("rev-1", quote_id="q-1"))
    second = service.quote_sent(db_session, ACTOR, _sent("rev-2", quote_id="q-2", revision_type="walkthrough_proposal"))
    third = service.quote_sent(
        db_session,
        ACTOR,
        _sent("rev-3", quote_id="q-3", contact_ref="contact-2"),
        now=NOW + timedelta(days=40),
    )

    assert second.deal.id == first.deal.id
    assert second.created is False
    assert third.deal.id != first.deal.id
    assert third.created is True
    assert db_session.scalar(select(func.count()).select_from(Deal)) == 2


def test_account_only_match_inside_window(db_session: Session, service: DealEventService) -> None:
    first = service.quote_sent(db_session, ACTOR, _sent("rev-1", quote_id="q-1"))
    other_contact = service.quote_sent(
        db_session,
        ACTOR,
        _sent("rev-2", quote_id="q-2", contact_ref="contact-2"),
        now=NOW + timedelta(days=5),
    )

    assert other_contact.deal.id == first.deal.id
    assert other_contact.deal.contact_ref == "contact-1"


def test_range_does_not_overwrite_binding_value(db_session: Session, service: DealEventService) -> None:
    service.quote_sent(db_session, ACTOR, _sent("rev-1", value=DealValue(kind="binding", amount=Decimal("1000"))))
    result = service.quote_sent(
        db_session,
        ACTOR,
        _sent(
            "rev-2",
            revision_number=2,
            value=DealValue(kind="non_binding_range", range_low=Decimal("800"), range_high=Decimal("1200")),
        ),
    )

    assert result.deal.value.kind == "binding"
    assert result.deal.value.amount == Decimal("1000")
    assert _events_of(db_session, result.deal.id, "value_updated") == 1


def test_new_revision_of_linked_quote_reuses_its_deal(db_session: Session, service: DealEventService) -> None:
    first = service.quote_sent(db_session, ACTOR, _sent("rev-1", quote_id="q-1"))
    # The revision carries no account/contact; the quote link is enough.
    second = service.quote_sent(
        db_session,
        ACTOR,
        _sent("rev-2", quote_id="q-1", revision_number=2, account_ref=None, contact_ref=None),
    )

    assert second.deal.id == first.deal.id
    assert second.deal.latest_quote_revision_number == 2


def test_unlinked_quote_without_account_is_rejected_and_retryable(db_session: Session, service: DealEventService) -> None:
    with pytest.raises(DealValidationError):
        service.quote_sent(db_session, ACTOR, _sent(contact_ref=None))

    assert db_session.scalar(select(func.count()).select_from(Deal)) == 0
    assert db_session.scalar(select(func.count()).select_from(IdempotencyRecord)) == 0

    corrected = service.quote_sent(db_session, ACTOR, _sent())
    assert corrected.created is True


def test_accept_after_decline_is_a_noop(db_session: Session, service: DealEventService) -> None:
    sent = service.quote_sent(db_session, ACTOR, _sent())
    declined = service.quote_declined(db_session, ACTOR, QuoteDeclinedEvent(revision_id="rev-1", reason="price"))
    stage_changes = _events_of(db_session, sent.deal.id, "stage_changed")

    accepted = service.quote_accepted(db_session, ACTOR, QuoteAcceptedEvent(revision_id="rev-1", binding_value=Decimal("5000")))

    assert declined.deal.stage == "closed_lost"
    assert declined.deal.lost_reason == "price"
    assert accepted.outcome == "noop"
    assert accepted.applied is False
    assert accepted.deal.stage == "closed_lost"
    assert accepted.deal.row_version == declined.deal.row_version
    assert _events_of(db_session, sent.deal.id, "stage_changed") == stage_changes
    assert _events_of(db_session, sent.deal.id, "quote_accepted") == 0


def test_accepted_closes_won_and_publishes(db_session: Session, service: DealEventService) -> None:
    service.quote_sent(db_session, ACTOR, _sent(value=DealValue(kind="binding", amount=Decimal("4000"))))
    events.published_events.clear()

    result = service.quote_accepted(db_session, ACTOR, QuoteAcceptedEvent(revision_id="rev-1", signer_name="Pat"))

    assert result.deal.stage == "closed_won"
    assert result.deal.closed_reason == "won"
    assert result.deal.is_closed is True
    revision = db_session.scalar(select(QuoteRevision).where(QuoteRevision.revision_id == "rev-1"))
    assert revision.status == "accepted"
    assert [event["event_type"] for event in events.published_events] == [events.DEAL_CLOSED]


def test_quote_sent_on_closed_linked_deal_is_a_noop(db_session: Session, service: DealEventService) -> None:
    service.quote_sent(db_session, ACTOR, _sent())
    service.quote_declined(db_session, ACTOR, QuoteDeclinedEvent(revision_id="rev-1", reason=None))

    again = service.quote_sent(db_session, ACTOR, _sent(revision_number=2))

    assert again.outcome == "noop"
    assert again.deal.stage == "closed_lost"
    assert db_session.scalar(select(func.count()).select_from(Deal)) == 1


def test_expired_marks_risk_without_closing(db_session: Session, service: DealEventService) -> None:
    service.quote_sent(db_session, ACTOR, _sent())
    later = NOW + timedelta(days=3)

    result = service.quote_expired(db_session, ACTOR, QuoteExpiredEvent(revision_id="rev-1"), now=later)

    assert result.deal.is_closed is False
    assert result.deal.at_risk is True
    assert result.deal.next_action_at == later


def test_viewed_updates_activity_and_is_debounced(db_session: Session, service: DealEventService) -> None:
    sent = service.quote_sent(db_session, ACTOR, _sent())
    first = service.quote_viewed(db_session, ACTOR, QuoteViewedEvent(revision_id="rev-1"), now=NOW + timedelta(minutes=10))
    repeat = service.quote_viewed(db_session, ACTOR, QuoteViewedEvent(revision_id="rev-1"), now=NOW + timedelta(minutes=20))
    next_day = service.quote_viewed(db_session, ACTOR, QuoteViewedEvent(revision_id="rev-1"), now=NOW + timedelta(days=1))

    assert first.deal.last_activity_at == NOW + timedelta(minutes=10)
    assert first.deal.stage == sent.deal.stage
    assert repeat.replayed is True
    assert next_day.replayed is False
    assert _events_of(db_session, sent.deal.id, "quote_viewed") == 2


def test_unknown_revision_is_rejected(db_session: Session, service: DealEventService) -> None:
    with pytest.raises(QuoteRevisionNotFoundError):
        service.quote_viewed(db_session, ACTOR, QuoteViewedEvent(revision_id="missing"))


def test_three_no_contacts_close_the_deal_and_fourth_is_noop(db_session: Session, service: DealEventService) -> None:
    deal_id = service.quote_sent(db_session, ACTOR, _sent()).deal.id
    events.published_events.clear()

    results = [service.contact_attempt_logged(db_session, ACTOR, _attempt(deal_id, f"att-{n}")) for n in range(1, 4)]
    fourth = service.contact_attempt_logged(db_session, ACTOR, _attempt(deal_id, "att-4"))

    assert [result.auto_closed for result in results] == [False, False, True]
    closed = results[-1].deal
    assert closed.stage == "closed_lost"
    assert "3 attempts" in closed.closed_reason
    assert fourth.outcome == "noop"
    assert fourth.auto_closed is False
    assert fourth.deal.total_contact_attempts == 3
    assert _events_of(db_session, deal_id, "auto_closed") == 1
    assert [event["event_type"] for event in events.published_events] == [events.DEAL_AUTO_CLOSED]


def test_replayed_third_strike_reports_auto_close_only_once(db_session: Session, service: DealEventService) -> None:
    deal_id = service.quote_sent(db_session, ACTOR, _sent()).deal.id
    for n in range(1, 4):
        service.contact_attempt_logged(db_session, ACTOR, _attempt(deal_id, f"att-{n}"))

    replay = service.contact_attempt_logged(db_session, ACTOR, _attempt(deal_id, "att-3"))

    assert replay.replayed is True
    assert replay.auto_closed is False
    assert replay.outcome == "auto_closed"


def test_contact_ref_attempts_after_auto_close_are_noops(db_session: Session, service: DealEventService) -> None:
    deal_id = service.quote_sent(db_session, ACTOR, _sent()).deal.id

    def by_contact(attempt_id: str) -> ContactAttemptLoggedEvent:
        return ContactAttemptLoggedEvent(
            contact_attempt_id=attempt_id, contact_ref="contact-1", outcome="no_contact", occurred_at=NOW
        )

    results = [service.contact_attempt_logged(db_session, ACTOR, by_contact(f"att-{n}")) for n in range(1, 4)]
    fourth = service.contact_attempt_logged(db_session, ACTOR, by_contact("att-4"))

    assert results[-1].auto_closed is True
    assert fourth.outcome == "noop"
    assert fourth.deal.id == deal_id
    assert fourth.deal.stage == "closed_lost"
    assert fourth.deal.total_contact_attempts == 3


def test_contact_linked_through_account_window_can_log_attempts(db_session: Session, service: DealEventService) -> None:
    first = service.quote_sent(db_session, ACTOR, _sent("rev-1", quote_id="q-1"))
    second = service.quote_sent(
        db_session,
        ACTOR,
        _sent("rev-2", quote_id="q-2", contact_ref="contact-2"),
        now=NOW + timedelta(days=1),
    )
    assert second.deal.id == first.deal.id

    result = service.contact_attempt_logged(
        db_session,
        ACTOR,
        ContactAttemptLoggedEvent(contact_attempt_id="att-1", contact_ref="contact-2", outcome="contact_made", occurred_at=NOW),
    )

    assert result.deal.id == first.deal.id
    assert result.deal.touch_count == 1
    revision = db_session.scalar(select(QuoteRevision).where(QuoteRevision.revision_id == "rev-2"))
    assert revision.contact_ref == "contact-2"


def test_contact_attempt_by_contact_ref_uses_open_deal(db_session: Session, service: DealEventService) -> None:
    deal_id = service.quote_sent(db_session, ACTOR, _sent()).deal.id

    result = service.contact_attempt_logged(
        db_session,
        ACTOR,
        ContactAttemptLoggedEvent(contact_attempt_id="att-1", contact_ref="contact-1", outcome="contact_made", occurred_at=NOW),
    )

    assert result.deal.id == deal_id
    assert result.deal.touch_count == 1
    assert result.deal.last_touch_at == NOW


def test_contact_attempt_needs_a_target(db_session: Session, service: DealEventService) -> None:
    with pytest.raises(DealValidationError):
        service.contact_attempt_logged(
            db_session,
            ACTOR,
            ContactAttemptLoggedEvent(contact_attempt_id="att-1", outcome="no_contact", occurred_at=NOW),
        )
    with pytest.raises(DealNotFoundError):
        service.contact_attempt_logged(
            db_session,
            ACTOR,
            ContactAttemptLoggedEvent(contact_attempt_id="att-2", contact_ref="nobody", outcome="no_contact", occurred_at=NOW),
        )


def test_create_conflict_is_resolved_by_retry(
    db_session: Session,
    service: DealEventService,
    monkeypatch: pytest.MonkeyPatch,
) -> None:
    existing = service.quote_sent(db_session, ACTOR, _sent("rev-1", quote_id="q-1")).deal.id
    real_resolve = dedupe.resolve
    calls: list[int] = []

    def racing_resolve(*args, **kwargs):  # type: ignore[no-untyped-def]
        calls.append(1)
        if len(calls) == 1:
            # Simulates a writer that looked before the other deal committed.
            return dedupe.Resolution(deal=None, match="none")
        return real_resolve(*args, **kwargs)

    monkeypatch.setattr(dedupe, "resolve", racing_resolve)

    result = service.quote_sent(db_session, ACTOR, _sent("rev-2", quote_id="q-2"))

    assert len(calls) == 2
    assert result.deal.id == existing
    assert result.created is False
    assert db_session.scalar(select(func.count()).select_from(Deal)) == 1


def test_deal_timeline_is_typed(db_session: Session, service: DealEventService) -> None:
    deal_id = service.quote_sent(db_session, ACTOR, _sent(value=DealValue(kind="binding", amount=Decimal("900")))).deal.id
    service.quote_expired(db_session, ACTOR, QuoteExpiredEvent(revision_id="rev-1"))

    timeline = service.list_events(db_session, deal_id)

    assert [item.change.event_type for item in timeline] == ["deal_created", "quote_sent", "value_updated", "quote_expired"]
    assert timeline[1].change.new_value.revision_type == "final_quote"
    assert timeline[2].change.new_value.amount == Decimal("900")
    assert all(item.actor_ref == ACTOR for item in timeline)


def test_get_deal_recomputes_score(db_session: Session, service: DealEventService) -> None:
    deal_id = service.quote_sent(db_session, ACTOR, _sent(value=DealValue(kind="binding", amount=Decimal("50000")))).deal.id
    service.contact_attempt_logged(db_session, ACTOR, _attempt(deal_id, "att-1", outcome="contact_made"))

    fresh = service.get_deal(db_session, deal_id, now=NOW)
    aged = service.get_deal(db_session, deal_id, now=NOW + timedelta(days=20))

    assert aged.priority_score < fresh.priority_score
    with pytest.raises(DealNotFoundError):
        service.get_deal(db_session, uuid.uuid4())
