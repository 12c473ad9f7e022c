"""Deal stage, value and closure transitions driven by quote events.

Handlers mutate the Deal in place and return the DealEvent changes they
produced. A closed deal is never touched: every handler returns an empty,
non-applied transition for it.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime, timedelta
from decimal import Decimal

from dealengine.deals.models import Deal, QuoteRevision
from dealengine.deals.schemas import (
    DealCreatedChange,
    DealCreatedState,
    DealEventChange,
    DealValue,
    QuoteAcceptedChange,
    QuoteAcceptedEvent,
    QuoteAcceptedState,
    QuoteDeclinedChange,
    QuoteDeclinedEvent,
    QuoteDeclinedState,
    QuoteExpiredChange,
    QuoteExpiredState,
    QuoteSentChange,
    QuoteSentEvent,
    QuoteSentState,
    QuoteViewedChange,
    QuoteViewedState,
    RiskState,
    StageChangedChange,
    StageState,
    ValueUpdatedChange,
)
from dealengine.deals.scoring import deal_value


_STAGE_RANK = {
    "prospecting": 0,
    "qualification": 1,
    "proposal": 2,
    "negotiation": 3,
    "closed_won": 4,
    "closed_lost": 4,
}
REVISION_TYPE_STAGES = {
    "walkthrough_proposal": "prospecting",
    "final_quote": "proposal",
}
DEFAULT_REVISION_STAGE = "qualification"


@dataclass
class Transition:
    applied: bool = True
    changes: list[DealEventChange] = field(default_factory=list)


def noop() -> Transition:
    return Transition(applied=False)


def target_stage_for(revision_type: str) -> str:
    return REVISION_TYPE_STAGES.get(revision_type, DEFAULT_REVISION_STAGE)


def is_later_stage(target: str, current: str) -> bool:
    return _STAGE_RANK.get(target, -1) > _STAGE_RANK.get(current, -1)


def _same_value(left: DealValue, right: DealValue) -> bool:
    if left.kind != right.kind:
        return False
    if left.kind == "binding":
        return left.amount == right.amount
    return (left.range_low, left.range_high) == (right.range_low, right.range_high)


def resolve_value(current: DealValue, incoming: DealValue) -> DealValue | None:
    """Return the value the deal should take, or None to keep ``current``.

    A binding total always wins. A range never replaces a binding value.
    """
    if incoming.kind == "binding":
        return None if _same_value(incoming, current) else incoming
    if incoming.kind == "non_binding_range":
        if current.kind == "binding" or _same_value(incoming, current):
            return None
        return incoming
    return None


def set_value(deal: Deal, value: DealValue) -> None:
    deal.value_kind = value.kind
    deal.value_amount = value.amount if value.kind == "binding" else None
    deal.range_low = value.range_low if value.kind == "non_binding_range" else None
    deal.range_high = value.range_high if value.kind == "non_binding_range" else None


def apply_value(deal: Deal, incoming: DealValue) -> ValueUpdatedChange | None:
    current = deal_value(deal)
    replacement = resolve_value(current, incoming)
    if replacement is None:
        return None
    set_value(deal, replacement)
    return ValueUpdatedChange(old_value=current, new_value=replacement)


def move_stage(deal: Deal, stage: str, at: datetime) -> StageChangedChange | None:
    if deal.stage == stage:
        return None
    change = StageChangedChange(old_value=StageState(stage=deal.stage), new_value=StageState(stage=stage))
    deal.stage = stage
    deal.stage_entered_at = at
    return change


def close(deal: Deal, stage: str, reason: str, at: datetime) -> StageChangedChange | None:
    change = move_stage(deal, stage, at)
    deal.is_closed = True
    deal.closed_reason = reason
    deal.closed_at = at
    return change


def new_deal(event: QuoteSentEvent, *, at: datetime, default_currency: str) -> tuple[Deal, DealCreatedChange]:
    stage = target_stage_for(event.revision_type)
    deal = Deal(
        stage=stage,
        value_kind="unknown",
        currency=event.currency or default_currency,
        probability=0,
        account_ref=event.account_ref,
        contact_ref=event.contact_ref,
        owner_ref=event.owner_ref,
        source="quote_auto",
        is_closed=False,
        touch_count=0,
        at_risk=False,
        no_contact_streak=0,
        total_contact_attempts=0,
        priority_score=0.0,
        created_at=at,
        updated_at=at,
        stage_entered_at=at,
        row_version=1,
    )
    change = DealCreatedChange(
        new_value=DealCreatedState(
            stage=stage,
            value=DealValue(),
            account_ref=event.account_ref,
            contact_ref=event.contact_ref,
            owner_ref=event.owner_ref,
            source="quote_auto",
        )
    )
    return deal, change


def apply_quote_sent(
    deal: Deal,
    event: QuoteSentEvent,
    *,
    at: datetime,
    follow_up: timedelta,
) -> Transition:
    if deal.is_closed:
        return noop()

    transition = Transition()
    transition.changes.append(
        QuoteSentChange(
            new_value=QuoteSentState(
                revision_id=event.revision_id,
                quote_id=event.effective_quote_id,
                revision_number=event.revision_number,
                revision_type=event.revision_type,
                value=event.value,
            )
        )
    )

    target = target_stage_for(event.revision_type)
    if is_later_stage(target, deal.stage):
        stage_change = move_stage(deal, target, at)
        if stage_change is not None:
            transition.changes.append(stage_change)

    value_change = apply_value(deal, event.value)
    if value_change is not None:
        transition.changes.append(value_change)

    if event.currency:
        deal.currency = event.currency
    deal.latest_quote_id = event.effective_quote_id
    deal.latest_quote_revision_number = event.revision_number
    deal.quote_sent_at = at
    if event.revision_type == "final_quote":
        deal.final_quote_sent_at = at
    deal.last_activity_at = at
    deal.next_action_at = at + follow_up
    return transition


def apply_quote_viewed(deal: Deal, revision: QuoteRevision, *, at: datetime) -> Transition:
    if deal.is_closed:
        return noop()
    deal.last_activity_at = at
    return Transition(changes=[QuoteViewedChange(new_value=QuoteViewedState(revision_id=revision.revision_id, viewed_at=at))])


def accepted_binding_value(revision: QuoteRevision, event: QuoteAcceptedEvent) -> Decimal | None:
    if event.binding_value is not None:
        return event.binding_value
    if revision.value_kind == "binding" and revision.total is not None:
        return revision.total
    return None


def apply_quote_accepted(deal: Deal, revision: QuoteRevision, event: QuoteAcceptedEvent, *, at: datetime) -> Transition:
    if deal.is_closed:
        return noop()

    old_stage = deal.stage
    binding = accepted_binding_value(revision, event)
    transition = Transition(
        changes=[
            QuoteAcceptedChange(
                old_value=StageState(stage=old_stage),
                new_value=QuoteAcceptedState(
                    stage="closed_won",
                    revision_id=revision.revision_id,
                    binding_value=binding,
                    signer_name=event.signer_name,
                    signer_email=event.signer_email,
                ),
            )
        ]
    )
    stage_change = close(deal, "closed_won", "won", at)
    if stage_change is not None:
        transition.changes.append(stage_change)
    if binding is not None:
        value_change = apply_value(deal, DealValue(kind="binding", amount=binding))
        if value_change is not None:
            transition.changes.append(value_change)
    deal.at_risk = False
    deal.last_activity_at = at
    return transition


def apply_quote_declined(deal: Deal, revision: QuoteRevision, event: QuoteDeclinedEvent, *, at: datetime) -> Transition:
    if deal.is_closed:
        return noop()

    transition = Transition(
        changes=[
            QuoteDeclinedChange(
                old_value=StageState(stage=deal.stage),
                new_value=QuoteDeclinedState(stage="closed_lost", revision_id=revision.revision_id, reason=event.reason),
            )
        ]
    )
    stage_change = close(deal, "closed_lost", "lost", at)
    if stage_change is not None:
        transition.changes.append(stage_change)
    deal.lost_reason = event.reason
    deal.last_activity_at = at
    return transition


def apply_quote_expired(deal: Deal, revision: QuoteRevision, *, at: datetime) -> Transition:
    # Expiry flags the deal for follow-up; it never closes it.
    if deal.is_closed:
        return noop()

    old = RiskState(at_risk=deal.at_risk, next_action_at=deal.next_action_at)
    deal.at_risk = True
    deal.next_action_at = at
    return Transition(
        changes=[
            QuoteExpiredChange(
                old_value=old,
                new_value=QuoteExpiredState(at_risk=True, next_action_at=at, revision_id=revision.revision_id),
            )
        ]
    )
