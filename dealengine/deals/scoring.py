"""Priority score for ranking open deals.

    value_weighted   = min(amount_or_midpoint / 100_000, 1.0)
    close_likelihood = stage_multiplier * 0.6 + probability / 100 * 0.2 + min(touch_count / 10, 1.0) * 0.2
    urgency_decay    = exp(-days_since_touch / 10), days_since_touch = 30 when never touched
    priority_score   = value_weighted * close_likelihood * urgency_decay * 100

The result stays within [0, 100] and falls strictly as time since the last
touch grows.
"""

from __future__ import annotations

import math
from datetime import datetime
from decimal import Decimal

from dealengine.deals.models import Deal, as_utc
from dealengine.deals.schemas import DealValue


STAGE_MULTIPLIERS: dict[str, float] = {
    "prospecting": 0.2,
    "qualification": 0.4,
    "proposal": 0.6,
    "negotiation": 0.8,
    "closed_won": 1.0,
    "closed_lost": 0.0,
}
DEFAULT_STAGE_MULTIPLIER = 0.3
VALUE_SCALE = 100_000.0
UNTOUCHED_DAYS = 30.0
DECAY_DAYS = 10.0
_SECONDS_PER_DAY = 86_400.0


def amount_or_midpoint(value: DealValue) -> float:
    if value.kind == "binding" and value.amount is not None:
        return float(value.amount)
    midpoint = value.midpoint
    if midpoint is not None:
        return float(midpoint)
    return 0.0


def days_since(last_touch_at: datetime | None, now: datetime) -> float:
    if last_touch_at is None:
        return UNTOUCHED_DAYS
    elapsed = (as_utc(now) - as_utc(last_touch_at)).total_seconds() / _SECONDS_PER_DAY
    return max(elapsed, 0.0)


def compute_priority_score(
    *,
    amount: float | Decimal,
    stage: str,
    probability: int,
    touch_count: int,
    last_touch_at: datetime | None,
    now: datetime,
) -> float:
    value_weighted = min(max(float(amount), 0.0) / VALUE_SCALE, 1.0)
    stage_multiplier = STAGE_MULTIPLIERS.get(stage, DEFAULT_STAGE_MULTIPLIER)
    bounded_probability = min(max(probability, 0), 100)
    touch_bonus = min(max(touch_count, 0) / 10, 1.0) * 0.2
    close_likelihood = stage_multiplier * 0.6 + (bounded_probability / 100) * 0.2 + touch_bonus
    urgency_decay = math.exp(-days_since(last_touch_at, now) / DECAY_DAYS)
    return value_weighted * close_likelihood * urgency_decay * 100


def deal_value(deal: Deal) -> DealValue:
    return DealValue.model_construct(
        kind=deal.value_kind,
        amount=deal.value_amount,
        range_low=deal.range_low,
        range_high=deal.range_high,
    )


def score_deal(deal: Deal, now: datetime) -> float:
    return compute_priority_score(
        amount=amount_or_midpoint(deal_value(deal)),
        stage=deal.stage,
        probability=deal.probability,
        touch_count=deal.touch_count,
        last_touch_at=deal.last_touch_at,
        now=now,
    )
