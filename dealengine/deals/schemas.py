from __future__ import annotations

from datetime import datetime
from decimal import Decimal
from typing import Annotated, Literal
from uuid import UUID

from pydantic import BaseModel, Field, TypeAdapter, model_validator


DealStage = Literal["prospecting", "qualification", "proposal", "negotiation", "closed_won", "closed_lost"]
ValueKind = Literal["binding", "non_binding_range", "unknown"]
DealSource = Literal["quote_auto", "manual"]
ContactOutcome = Literal[
    "contact_made",
    "no_contact",
    "voicemail",
    "email_sent",
    "scheduled",
    "completed",
    "cancelled",
    "rescheduled",
]
ActivityType = Literal[
    "call",
    "email",
    "meeting",
    "walkthrough",
    "quote_sent",
    "voicemail",
    "text",
    "site_visit",
    "follow_up",
    "other",
]


class DealValue(BaseModel):
    kind: ValueKind = "unknown"
    amount: Decimal | None = None
    range_low: Decimal | None = None
    range_high: Decimal | None = None

    @model_validator(mode="after")
    def validate_kind_fields(self) -> "DealValue":
        if self.kind == "binding" and self.amount is None:
            raise ValueError("binding value requires amount")
        if self.kind == "non_binding_range":
            if self.range_low is None or self.range_high is None:
                raise ValueError("non_binding_range value requires range_low and range_high")
            if self.range_low > self.range_high:
                raise ValueError("range_low must not exceed range_high")
        return self

    @property
    def midpoint(self) -> Decimal | None:
        if self.range_low is None or self.range_high is None:
            return None
        return (self.range_low + self.range_high) / 2


class QuoteSentEvent(BaseModel):
    revision_id: str = Field(min_length=1)
    quote_id: str | None = None
    revision_number: int = Field(ge=0)
    revision_type: str = Field(min_length=1)
    account_ref: str | None = None
    contact_ref: str | None = None
    owner_ref: str | None = None
    value: DealValue = Field(default_factory=DealValue)
    currency: str | None = Field(default=None, min_length=3, max_length=8)
    occurred_at: datetime | None = None

    @property
    def effective_quote_id(self) -> str:
        return self.quote_id or self.revision_id


class QuoteViewedEvent(BaseModel):
    revision_id: str = Field(min_length=1)
    occurred_at: datetime | None = None


class QuoteAcceptedEvent(BaseModel):
    revision_id: str = Field(min_length=1)
    binding_value: Decimal | None = Field(default=None, ge=0)
    signer_name: str | None = None
    signer_email: str | None = None
    occurred_at: datetime | None = None


class QuoteDeclinedEvent(BaseModel):
    revision_id: str = Field(min_length=1)
    reason: str | None = None
    occurred_at: datetime | None = None


class QuoteExpiredEvent(BaseModel):
    revision_id: str = Field(min_length=1)
    occurred_at: datetime | None = None



class ContactAttemptLoggedEvent(BaseModel):
    contact_attempt_id: str = Field(min_length=1)
    deal_ref: UUID | None = None
    contact_ref: str | None = None
    outcome: ContactOutcome
    activity_type: ActivityType = "call"
    occurred_at: datetime
    next_action_at: datetime | None = None


class DealRead(BaseModel):
    id: UUID
    stage: DealStage
    value: DealValue
    currency: str
    probability: int
    account_ref: str
    contact_ref: str | None
    owner_ref: str | None
    source: DealSource
    is_closed: bool
    closed_reason: str | None
    lost_reason: str | None
    closed_at: datetime | None
    touch_count: int
    last_touch_at: datetime | None
    last_activity_at: datetime | None
    next_action_at: datetime | None
    at_risk: bool
    no_contact_streak: int
    total_contact_attempts: int
    last_contact_result: str | None
    last_contact_attempt_at: datetime | None
    latest_quote_id: str | None
    latest_quote_revision_number: int | None
    quote_sent_at: datetime | None
    final_quote_sent_at: datetime | None
    walkthrough_completed_at: datetime | None
    priority_score: float
    created_at: datetime
    stage_entered_at: datetime
    row_version: int


EventOutcome = Literal["created", "applied", "noop", "auto_closed"]


class EventResult(BaseModel):
    deal: DealRead | None
    outcome: EventOutcome
    idempotency_key: str
    replayed: bool = False
    applied: bool = True
    created: bool = False
    auto_closed: bool = False


class StageState(BaseModel):
    stage: DealStage


class DealCreatedState(BaseModel):
    stage: DealStage
    value: DealValue
    account_ref: str
    contact_ref: str | None = None
    owner_ref: str | None = None
    source: DealSource = "quote_auto"


class QuoteSentState(BaseModel):
    revision_id: str
    quote_id: str
    revision_number: int
    revision_type: str
    value: DealValue


class QuoteViewedState(BaseModel):
    revision_id: str
    viewed_at: datetime


class QuoteAcceptedState(BaseModel):
    stage: DealStage
    revision_id: str
    binding_value: Decimal | None = None
    signer_name: str | None = None
    signer_email: str | None = None


class QuoteDeclinedState(BaseModel):
    stage: DealStage
    revision_id: str
    reason: str | None = None


class RiskState(BaseModel):
    at_risk: bool
    next_action_at: datetime | None = None


class QuoteExpiredState(RiskState):
    revision_id: str


class CadenceState(BaseModel):
    no_contact_streak: int
    total_contact_attempts: int
    last_contact_result: str | None = None


class ContactAttemptState(CadenceState):
    contact_attempt_id: str
    activity_type: ActivityType


class AutoClosedState(BaseModel):
    stage: DealStage
    closed_reason: str
    no_contact_streak: int


class DealCreatedChange(BaseModel):
    event_type: Literal["deal_created"] = "deal_created"
    old_value: None = None
    new_value: DealCreatedState


class QuoteSentChange(BaseModel):
    event_type: Literal["quote_sent"] = "quote_sent"
    old_value: None = None
    new_value: QuoteSentState


class QuoteViewedChange(BaseModel):
    event_type: Literal["quote_viewed"] = "quote_viewed"
    old_value: None = None
    new_value: QuoteViewedState


class QuoteAcceptedChange(BaseModel):
    event_type: Literal["quote_accepted"] = "quote_accepted"
    old_value: StageState
    new_value: QuoteAcceptedState


class QuoteDeclinedChange(BaseModel):
    event_type: Literal["quote_declined"] = "quote_declined"
    old_value: StageState
    new_value: QuoteDeclinedState


class QuoteExpiredChange(BaseModel):
    event_type: Literal["quote_expired"] = "quote_expired"
    old_value: RiskState
    new_value: QuoteExpiredState


class StageChangedChange(BaseModel):
    event_type: Literal["stage_changed"] = "stage_changed"
    old_value: StageState
    new_value: StageState


class ValueUpdatedChange(BaseModel):
    event_type: Literal["value_updated"] = "value_updated"
    old_value: DealValue
    new_value: DealValue


class ContactAttemptChange(BaseModel):
    event_type: Literal["contact_attempt_logged"] = "contact_attempt_logged"
    old_value: CadenceState
    new_value: ContactAttemptState


class AutoClosedChange(BaseModel):
    event_type: Literal["auto_closed"] = "auto_closed"
    old_value: StageState
    new_value: AutoClosedState


DealEventChange = Annotated[
    DealCreatedChange
    | QuoteSentChange
    | QuoteViewedChange
    | QuoteAcceptedChange
    | QuoteDeclinedChange
    | QuoteExpiredChange
    | StageChangedChange
    | ValueUpdatedChange
    | ContactAttemptChange
    | AutoClosedChange,
    Field(discriminator="event_type"),
]
DEAL_EVENT_CHANGE_ADAPTER = TypeAdapter(DealEventChange)


class DealEventRead(BaseModel):
    id: UUID
    deal_id: UUID
    actor_ref: str
    source_event_id: str
    correlation_id: str | None
    occurred_at: datetime
    change: DealEventChange

    @property
    def event_type(self) -> str:
        return self.change.event_type


WorklistTier = Literal[1, 2, 3, 4]


class WorklistItem(BaseModel):
    tier: WorklistTier
    action_reason: str
    priority_score: float
    deal: DealRead
