"""Three-strikes contact cadence, tracked per deal."""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime

from dealengine.deals.lifecycle import close
from dealengine.deals.models import Deal
from dealengine.deals.schemas import (
    AutoClosedChange,
    AutoClosedState,
    CadenceState,
    ContactAttemptChange,
    ContactAttemptLoggedEvent,
    ContactAttemptState,
    DealEventChange,
    StageState,
)


RESET_OUTCOMES = frozenset({"contact_made", "completed", "scheduled"})
STRIKE_OUTCOMES = frozenset({"no_contact", "voicemail"})


@dataclass
class CadenceResult:
    applied: bool = True
    auto_closed: bool = False
    changes: list[DealEventChange] = field(default_factory=list)


def next_streak(current: int, outcome: str) -> int:
    if outcome in RESET_OUTCOMES:
        return 0
    if outcome in STRIKE_OUTCOMES:
        return current + 1
    return current


def apply_contact_attempt(
    deal: Deal,
    event: ContactAttemptLoggedEvent,
    *,
    at: datetime,
    threshold: int,
    close_reason: str,
) -> CadenceResult:
    if deal.is_closed:
        return CadenceResult(applied=False)

    before = CadenceState(
        no_contact_streak=deal.no_contact_streak,
        total_contact_attempts=deal.total_contact_attempts,
        last_contact_result=deal.last_contact_result,
    )
    deal.no_contact_streak = next_streak(deal.no_contact_streak, event.outcome)
    deal.total_contact_attempts += 1
    deal.last_contact_result = event.outcome
    deal.last_contact_attempt_at = at
    deal.touch_count += 1
    deal.last_touch_at = at
    deal.last_activity_at = at
    if event.next_action_at is not None:
        deal.next_action_at = event.next_action_at
    if event.activity_type == "walkthrough" and event.outcome == "completed":
        deal.walkthrough_completed_at = at

    result = CadenceResult(
        changes=[
            ContactAttemptChange(
                old_value=before,
                new_value=ContactAttemptState(
                    no_contact_streak=deal.no_contact_streak,
                    total_contact_attempts=deal.total_contact_attempts,
                    last_contact_result=event.outcome,
                    contact_attempt_id=event.contact_attempt_id,
                    activity_type=event.activity_type,
                ),
            )
        ]
    )

    if deal.no_contact_streak >= threshold:
        old_stage = deal.stage
        stage_change = close(deal, "closed_lost", close_reason, at)
        result.auto_closed = True
        result.changes.append(
            AutoClosedChange(
                old_value=StageState(stage=old_stage),
                new_value=AutoClosedState(
                    stage="closed_lost",
                    closed_reason=close_reason,
                    no_contact_streak=deal.no_contact_streak,
                ),
            )
        )
        if stage_change is not None:
            result.changes.append(stage_change)
    return result
