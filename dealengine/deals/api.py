from __future__ import annotations

import uuid
from dataclasses import dataclass
from typing import Any

from fastapi import APIRouter, Depends, Query, Request, status
from fastapi.responses import JSONResponse
from sqlalchemy.orm import Session

from dealengine.context import get_correlation_id
from dealengine.core.auth import AuthUser, get_current_user
from dealengine.core.database import get_db
from dealengine.deals.errors import (
    DealCreateConflictError,
    DealEngineError,
    DealNotFoundError,
    DealValidationError,
    IdempotencyConflictError,
    IdempotencyInFlightError,
    QuoteRevisionNotFoundError,
)
from dealengine.deals.schemas import (
    ContactAttemptLoggedEvent,
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
from dealengine.deals.service import deal_event_service


router = APIRouter(prefix="/api/deals", tags=["deals"])

PURGE_ROLE = "deals.admin"

_ERROR_MAP: dict[type[DealEngineError], tuple[int, str]] = {
    DealValidationError: (status.HTTP_422_UNPROCESSABLE_CONTENT, "deal_event_invalid"),
    QuoteRevisionNotFoundError: (status.HTTP_404_NOT_FOUND, "quote_revision_not_found"),
    DealNotFoundError: (status.HTTP_404_NOT_FOUND, "deal_not_found"),
    IdempotencyConflictError: (status.HTTP_409_CONFLICT, "idempotency_key_conflict"),
    IdempotencyInFlightError: (status.HTTP_409_CONFLICT, "idempotency_key_in_flight"),
    DealCreateConflictError: (status.HTTP_409_CONFLICT, "deal_create_conflict"),
}


@dataclass
class ErrorEnvelope:
    code: str
    message: str
    details: Any
    correlation_id: str | None


def error_response(
    request: Request,
    *,
    status_code: int,
    code: str,
    message: str,
    details: Any = None,
) -> JSONResponse:
    correlation_id = get_correlation_id() or getattr(request.state, "correlation_id", None)
    payload = ErrorEnvelope(code=code, message=message, details=details, correlation_id=correlation_id)
    return JSONResponse(status_code=status_code, content=payload.__dict__)


def domain_error_response(request: Request, exc: DealEngineError) -> JSONResponse:
    status_code, code = _ERROR_MAP.get(type(exc), (status.HTTP_400_BAD_REQUEST, "deal_event_failed"))
    return error_response(request, status_code=status_code, code=code, message=str(exc))


@router.post("/events/quote-sent", response_model=EventResult)
def quote_sent(
    request: Request,
    dto: QuoteSentEvent,
    db: Session = Depends(get_db),
    user: AuthUser = Depends(get_current_user),
) -> EventResult | JSONResponse:
    try:
        return deal_event_service.quote_sent(db, user.actor_ref, dto)
    except DealEngineError as exc:
        return domain_error_response(request, exc)


@router.post("/events/quote-viewed", response_model=EventResult)
def quote_viewed(
    request: Request,
    dto: QuoteViewedEvent,
    db: Session = Depends(get_db),
    user: AuthUser = Depends(get_current_user),
) -> EventResult | JSONResponse:
    try:
        return deal_event_service.quote_viewed(db, user.actor_ref, dto)
    except DealEngineError as exc:
        return domain_error_response(request, exc)


@router.post("/events/quote-accepted", response_model=EventResult)
def quote_accepted(
    request: Request,
    dto: QuoteAcceptedEvent,
    db: Session = Depends(get_db),
    user: AuthUser = Depends(get_current_user),
) -> EventResult | JSONResponse:
    try:
        return deal_event_service.quote_accepted(db, user.actor_ref, dto)
    except DealEngineError as exc:
        return domain_error_response(request, exc)


@router.post("/events/quote-declined", response_model=EventResult)
def quote_declined(
    request: Request,
    dto: QuoteDeclinedEvent,
    db: Session = Depends(get_db),
    user: AuthUser = Depends(get_current_user),
) -> EventResult | JSONResponse:
    try:
        return deal_event_service.quote_declined(db, user.actor_ref, dto)
    except DealEngineError as exc:
        return domain_error_response(request, exc)


@router.post("/events/quote-expired", response_model=EventResult)
def quote_expired(
    request: Request,
    dto: QuoteExpiredEvent,
    db: Session = Depends(get_db),
    user: AuthUser = Depends(get_current_user),
) -> EventResult | JSONResponse:
    try:
        return deal_event_service.quote_expired(db, user.actor_ref, dto)
    except DealEngineError as exc:
        return domain_error_response(request, exc)


@router.post("/contact-attempts", response_model=EventResult)
def log_contact_attempt(
    request: Request,
    dto: ContactAttemptLoggedEvent,
    db: Session = Depends(get_db),
    user: AuthUser = Depends(get_current_user),
) -> EventResult | JSONResponse:
    try:
        return deal_event_service.contact_attempt_logged(db, user.actor_ref, dto)
    except DealEngineError as exc:
        return domain_error_response(request, exc)


@router.get("/worklist", response_model=list[WorklistItem])
def get_worklist(
    owner_ref: str | None = Query(default=None),
    include_tier4: bool = Query(default=False),
    limit: int | None = Query(default=None, ge=1, le=500),
    db: Session = Depends(get_db),
    user: AuthUser = Depends(get_current_user),
) -> list[WorklistItem]:
    return deal_event_service.worklist(
        db,
        owner_ref or user.actor_ref,
        include_tier4=include_tier4,
        limit=limit,
    )


@router.post("/idempotency/purge", response_model=None)
def purge_idempotency_records(
    request: Request,
    db: Session = Depends(get_db),
    user: AuthUser = Depends(get_current_user),
) -> dict[str, int] | JSONResponse:
    if PURGE_ROLE not in user.roles:
        return error_response(
            request,
            status_code=status.HTTP_403_FORBIDDEN,
            code="forbidden",
            message=f"Missing permission: {PURGE_ROLE}",
        )
    return {"purged": deal_event_service.purge_idempotency(db)}


@router.get("/{deal_id}", response_model=DealRead)
def get_deal(
    request: Request,
    deal_id: uuid.UUID,
    db: Session = Depends(get_db),
    _: AuthUser = Depends(get_current_user),
) -> DealRead | JSONResponse:
    try:
        return deal_event_service.get_deal(db, deal_id)
    except DealEngineError as exc:
        return domain_error_response(request, exc)


@router.get("/{deal_id}/events", response_model=list[DealEventRead])
def list_deal_events(
    request: Request,
    deal_id: uuid.UUID,
    db: Session = Depends(get_db),
    _: AuthUser = Depends(get_current_user),
) -> list[DealEventRead] | JSONResponse:
    try:
        return deal_event_service.list_events(db, deal_id)
    except DealEngineError as exc:
        return domain_error_response(request, exc)
