from __future__ import annotations

from collections.abc import Callable
from dataclasses import dataclass
from datetime import datetime, timedelta

from sqlalchemy import select
from sqlalchemy.orm import Session

from dealengine.deals.models import Deal, as_utc
from dealengine.deals.schemas import DealRead, WorklistItem
from dealengine.deals.scoring import score_deal


@dataclass(frozen=True)
class WorklistPolicy:
    cadence_threshold: int = 3
    warm_quote_days: int = 7
    idle_days: int = 7


def classify(deal: Deal, now: datetime, policy: WorklistPolicy) -> tuple[int, str]:
    """Return (tier, action_reason) for an open deal. Tier 1 is most urgent."""
    streak = deal.no_contact_streak
    final_attempt_streak = policy.cadence_threshold - 1
    next_action_at = as_utc(deal.next_action_at)
    last_touch_at = as_utc(deal.last_touch_at)
    quote_sent_at = as_utc(deal.quote_sent_at)
    walkthrough_at = as_utc(deal.walkthrough_completed_at)
    final_quote_at = as_utc(deal.final_quote_sent_at)

    if final_attempt_streak > 0 and streak == final_attempt_streak:
        return 1, f"FINAL ATTEMPT - {streak} no contacts in a row"
    if next_action_at is not None and next_action_at < now:
        return 1, "Missed follow-up"

    if streak == 1:
        return 2, f"Follow up - 1 no contact (attempt 2 of {policy.cadence_threshold})"
    if walkthrough_at is not None and (final_quote_at is None or final_quote_at < walkthrough_at):
        return 2, "Send quote after walkthrough"
    if quote_sent_at is not None and quote_sent_at >= now - timedelta(days=policy.warm_quote_days):
        return 2, f"Quote follow-up - day {(now - quote_sent_at).days}"

    if deal.total_contact_attempts == 0:
        return 3, "New deal - make first contact"
    if last_touch_at is not None and now - last_touch_at > timedelta(days=policy.idle_days):
        return 3, f"Re-engage - idle {(now - last_touch_at).days} days"

    return 4, "On track"


def _sort_key(item: WorklistItem) -> tuple[int, float, int, datetime]:
    attempted_at = item.deal.last_contact_attempt_at
    # Never-attempted deals sort ahead of stale ones within the same score.
    if attempted_at is None:
        return item.tier, -item.priority_score, 0, datetime.min
    return item.tier, -item.priority_score, 1, as_utc(attempted_at).replace(tzinfo=None)


def assemble(
    session: Session,
    owner_ref: str,
    *,
    now: datetime,
    to_read: Callable[[Deal, float], DealRead],
    policy: WorklistPolicy | None = None,
    include_tier4: bool = False,
    limit: int | None = None,
) -> list[WorklistItem]:
    """Rank the owner's open deals into tiers. Reads only; scores are computed, not stored."""
    resolved_policy = policy or WorklistPolicy()
    deals = session.scalars(
        select(Deal).where(Deal.owner_ref == owner_ref, Deal.is_closed.is_(False))
    ).all()

    items: list[WorklistItem] = []
    for deal in deals:
        tier, reason = classify(deal, now, resolved_policy)
        if tier == 4 and not include_tier4:
            continue
        score = score_deal(deal, now)
        items.append(WorklistItem(tier=tier, action_reason=reason, priority_score=score, deal=to_read(deal, score)))

    items.sort(key=_sort_key)
    if limit is not None:
        return items[:limit]
    return items
