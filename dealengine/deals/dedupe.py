from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Literal

from sqlalchemy import select
from sqlalchemy.orm import Session

from dealengine.deals.models import Deal


MatchRule = Literal["account_contact", "account_window", "none"]


@dataclass
class Resolution:
    deal: Deal | None
    match: MatchRule


def resolve(
    session: Session,
    account_ref: str,
    contact_ref: str | None,
    owner_ref: str | None,
    *,
    now: datetime,
    dedupe_window_days: int = 30,
) -> Resolution:
    """Find the open deal that quote activity for this account/contact belongs to.

    An exact account+contact match wins. Otherwise the newest open deal on the
    same account created inside the window is used. ``owner_ref`` does not
    narrow the search; it is only applied to a deal the caller creates.
    """
    if contact_ref is not None:
        exact = session.scalar(
            select(Deal)
            .where(
                Deal.is_closed.is_(False),
                Deal.account_ref == account_ref,
                Deal.contact_ref == contact_ref,
            )
            .order_by(Deal.updated_at.desc(), Deal.value_amount.desc())
            .limit(1)
        )
        if exact is not None:
            return Resolution(deal=exact, match="account_contact")

    window_start = now - timedelta(days=dedupe_window_days)
    windowed = session.scalar(
        select(Deal)
        .where(
            Deal.is_closed.is_(False),
            Deal.account_ref == account_ref,
            Deal.created_at >= window_start,
        )
        .order_by(Deal.created_at.desc(), Deal.id.asc())
        .limit(1)
    )
    if windowed is not None:
        return Resolution(deal=windowed, match="account_window")
    return Resolution(deal=None, match="none")
