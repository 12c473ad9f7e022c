from __future__ import annotations

import uuid


class DealEngineError(Exception):
    """Base error for deal event handling failures."""


class DealValidationError(DealEngineError):
    """Raised when an inbound event is missing facts needed to apply it."""

    def __init__(self, event_type: str, message: str) -> None:
        self.event_type = event_type
        super().__init__(f"{event_type}: {message}")


class QuoteRevisionNotFoundError(DealEngineError):
    def __init__(self, revision_id: str) -> None:
        self.revision_id = revision_id
        super().__init__(f"quote revision '{revision_id}' has not been sent")


class DealNotFoundError(DealEngineError):
    def __init__(self, reference: uuid.UUID | str) -> None:
        self.reference = str(reference)
        super().__init__(f"no deal found for '{self.reference}'")


class IdempotencyConflictError(DealEngineError):
    """Raised when a key is reused with a payload that differs from the first delivery."""

    def __init__(self, key: str) -> None:
        self.key = key
        super().__init__(f"idempotency key payload mismatch for '{key}'")


class IdempotencyInFlightError(DealEngineError):
    def __init__(self, key: str) -> None:
        self.key = key
        super().__init__(f"idempotency key '{key}' is still being processed")


class DealCreateConflictError(DealEngineError):
    """Another writer created the open deal for this account/contact first."""

    def __init__(self, account_ref: str, contact_ref: str | None) -> None:
        self.account_ref = account_ref
        self.contact_ref = contact_ref
        super().__init__(f"open deal already exists for account '{account_ref}' contact '{contact_ref}'")
