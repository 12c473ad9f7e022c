from __future__ import annotations

from datetime import datetime, timedelta, timezone
from decimal import Decimal

from dealengine.deals.lifecycle import (
    apply_quote_accepted,
    apply_quote_declined,
    apply_quote_expired,
    apply_quote_sent,
    apply_quote_viewed,
    is_later_stage,
    new_deal,
    resolve_value,
    target_stage_for,
)
from dealengine.deals.models import Deal, QuoteRevision
from dealengine.deals.schemas import (
    DealValue,
    QuoteAcceptedEvent,
    QuoteDeclinedEvent,
    QuoteSentEvent,
    StageChangedChange,
    ValueUpdatedChange,
)


NOW = datetime(2026, 3, 1, 12, 0, tzinfo=timezone.utc)
FOLLOW_UP = timedelta(hours=24)

BINDING_1000 = DealValue(kind="binding", amount=Decimal("1000"))
RANGE_800_1200 = DealValue(kind="non_binding_range", range_low=Decimal("800"), range_high=Decimal("1200"))


def _deal(**overrides: object) -> Deal:
    fields: dict[str, object] = {
        "stage": "qualification",
        "value_kind": "unknown",
        "value_amount": None,
        "range_low": None,
        "range_high": None,
        "currency": "CAD",
        "probability": 0,
        "account_ref": "acct-1",
        "contact_ref": "contact-1",
        "owner_ref": "rep-1",
        "source": "quote_auto",
        "is_closed": False,
        "closed_reason": None,
        "at_risk": False,
        "touch_count": 0,
        "no_contact_streak": 0,
        "total_contact_attempts": 0,
        "next_action_at": None,
        "stage_entered_at": NOW - timedelta(days=3),
    }
    fields.update(overrides)
    return Deal(**fields)


def _sent(revision_type: str = "final_quote", value: DealValue | None = None) -> QuoteSentEvent:
    return QuoteSentEvent(
        revision_id="rev-1",
        quote_id="quote-1",
        revision_number=1,
        revision_type=revision_type,
        account_ref="acct-1",
        contact_ref="contact-1",
        owner_ref="rep-1",
        value=value or DealValue(),
    )


def _revision(**overrides: object) -> QuoteRevision:
    fields: dict[str, object] = {
        "revision_id": "rev-1",
        "quote_id": "quote-1",
        "revision_number": 1,
        "revision_type": "final_quote",
        "value_kind": "unknown",
        "total": None,
    }
    fields.update(overrides)
    return QuoteRevision(**fields)


def test_revision_type_maps_to_target_stage() -> None:
    assert target_stage_for("walkthrough_proposal") == "prospecting"
    assert target_stage_for("final_quote") == "proposal"
    assert target_stage_for("change_order") == "qualification"


def test_stage_ordering_treats_terminal_stages_as_latest() -> None:
    assert is_later_stage("proposal", "qualification")
    assert not is_later_stage("prospecting", "proposal")
    assert not is_later_stage("proposal", "proposal")
    assert is_later_stage("closed_won", "negotiation")


def test_new_deal_starts_at_revision_stage_from_quote() -> None:
    deal, change = new_deal(_sent("final_quote"), at=NOW, default_currency="CAD")

    assert deal.stage == "proposal"
    assert deal.source == "quote_auto"
    assert deal.currency == "CAD"
    assert change.new_value.stage == "proposal"
    assert change.new_value.account_ref == "acct-1"


def test_quote_sent_advances_but_never_regresses_stage() -> None:
    deal = _deal(stage="negotiation")

    transition = apply_quote_sent(deal, _sent("walkthrough_proposal"), at=NOW, follow_up=FOLLOW_UP)

    assert deal.stage == "negotiation"
    assert not any(isinstance(change, StageChangedChange) for change in transition.changes)

    advancing = _deal(stage="prospecting")
    transition = apply_quote_sent(advancing, _sent("final_quote"), at=NOW, follow_up=FOLLOW_UP)

    assert advancing.stage == "proposal"
    assert advancing.stage_entered_at == NOW
    stage_changes = [change for change in transition.changes if isinstance(change, StageChangedChange)]
    assert [(c.old_value.stage, c.new_value.stage) for c in stage_changes] == [("prospecting", "proposal")]


def test_quote_sent_schedules_follow_up_and_tracks_latest_quote() -> None:
    deal = _deal(next_action_at=NOW + timedelta(days=10))

    apply_quote_sent(deal, _sent(), at=NOW, follow_up=FOLLOW_UP)

    assert deal.last_activity_at == NOW
    assert deal.next_action_at == NOW + FOLLOW_UP
    assert deal.latest_quote_id == "quote-1"
    assert deal.latest_quote_revision_number == 1
    assert deal.final_quote_sent_at == NOW


def test_range_never_overwrites_binding_value() -> None:
    deal = _deal(value_kind="binding", value_amount=Decimal("1000"))

    transition = apply_quote_sent(deal, _sent(value=RANGE_800_1200), at=NOW, follow_up=FOLLOW_UP)

    assert deal.value_kind == "binding"
    assert deal.value_amount == Decimal("1000")
    assert not any(isinstance(change, ValueUpdatedChange) for change in transition.changes)


def test_value_precedence_rules() -> None:
    unknown = DealValue()
    other_range = DealValue(kind="non_binding_range", range_low=Decimal("500"), range_high=Decimal("700"))

    assert resolve_value(BINDING_1000, DealValue(kind="binding", amount=Decimal("900"))).amount == Decimal("900")
    assert resolve_value(RANGE_800_1200, BINDING_1000) == BINDING_1000
    assert resolve_value(unknown, RANGE_800_1200) == RANGE_800_1200
    assert resolve_value(RANGE_800_1200, other_range) == other_range
    assert resolve_value(BINDING_1000, RANGE_800_1200) is None
    assert resolve_value(BINDING_1000, unknown) is None
    assert resolve_value(BINDING_1000, DealValue(kind="binding", amount=Decimal("1000.00"))) is None


def test_binding_value_overwrites_range_on_deal() -> None:
    deal = _deal(value_kind="non_binding_range", range_low=Decimal("800"), range_high=Decimal("1200"))

    transition = apply_quote_sent(deal, _sent(value=BINDING_1000), at=NOW, follow_up=FOLLOW_UP)

    assert deal.value_kind == "binding"
    assert deal.value_amount == Decimal("1000")
    assert deal.range_low is None and deal.range_high is None
    value_change = next(change for change in transition.changes if isinstance(change, ValueUpdatedChange))
    assert value_change.old_value.kind == "non_binding_range"


def test_viewed_touches_activity_only() -> None:
    deal = _deal(stage="proposal")

    transition = apply_quote_viewed(deal, _revision(), at=NOW)

    assert transition.applied
    assert deal.stage == "proposal"
    assert deal.last_activity_at == NOW
    assert transition.changes[0].event_type == "quote_viewed"


def test_accepted_closes_won_and_takes_revision_total() -> None:
    deal = _deal(stage="proposal", value_kind="non_binding_range", range_low=Decimal("800"), range_high=Decimal("1200"))
    revision = _revision(value_kind="binding", total=Decimal("1100"))

    transition = apply_quote_accepted(
        deal,
        revision,
        QuoteAcceptedEvent(revision_id="rev-1", signer_name="Pat Lee", signer_email="pat@example.com"),
        at=NOW,
    )

    assert deal.stage == "closed_won"
    assert deal.is_closed is True
    assert deal.closed_reason == "won"
    assert deal.value_kind == "binding"
    assert deal.value_amount == Decimal("1100")
    accepted = transition.changes[0]
    assert accepted.event_type == "quote_accepted"
    assert accepted.new_value.signer_name == "Pat Lee"


def test_accepted_binding_value_on_event_wins_over_revision_total() -> None:
    deal = _deal(stage="proposal")

    apply_quote_accepted(
        deal,
        _revision(value_kind="binding", total=Decimal("1100")),
        QuoteAcceptedEvent(revision_id="rev-1", binding_value=Decimal("1250")),
        at=NOW,
    )

    assert deal.value_amount == Decimal("1250")


def test_closed_deal_ignores_every_quote_event() -> None:
    deal = _deal(stage="closed_lost", is_closed=True, closed_reason="lost")
    revision = _revision()

    results = [
        apply_quote_sent(deal, _sent(value=BINDING_1000), at=NOW, follow_up=FOLLOW_UP),
        apply_quote_viewed(deal, revision, at=NOW),
        apply_quote_accepted(deal, revision, QuoteAcceptedEvent(revision_id="rev-1", binding_value=Decimal("5")), at=NOW),
        apply_quote_declined(deal, revision, QuoteDeclinedEvent(revision_id="rev-1", reason="price"), at=NOW),
        apply_quote_expired(deal, revision, at=NOW),
    ]

    assert all(not result.applied and result.changes == [] for result in results)
    assert deal.stage == "closed_lost"
    assert deal.closed_reason == "lost"
    assert deal.value_kind == "unknown"
    assert deal.at_risk is False
    assert deal.last_activity_at is None


def test_declined_closes_lost_with_reason() -> None:
    deal = _deal(stage="proposal")

    transition = apply_quote_declined(deal, _revision(), QuoteDeclinedEvent(revision_id="rev-1", reason="went with competitor"), at=NOW)

    assert deal.stage == "closed_lost"
    assert deal.closed_reason == "lost"
    assert deal.lost_reason == "went with competitor"
    assert [change.event_type for change in transition.changes] == ["quote_declined", "stage_changed"]


def test_expired_flags_risk_without_closing() -> None:
    deal = _deal(stage="proposal", next_action_at=NOW + timedelta(days=2))

    transition = apply_quote_expired(deal, _revision(), at=NOW)

    assert deal.is_closed is False
    assert deal.stage == "proposal"
    assert deal.at_risk is True
    assert deal.next_action_at == NOW
    expired = transition.changes[0]
    assert expired.old_value.at_risk is False
    assert expired.new_value.at_risk is True
