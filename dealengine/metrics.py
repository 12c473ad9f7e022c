from __future__ import annotations

import re

from prometheus_client import CONTENT_TYPE_LATEST, Counter, Histogram, generate_latest
from starlette.requests import Request


http_requests_total = Counter(
    "http_requests_total",
    "Total HTTP requests",
    ["method", "path", "status"],
)

http_request_duration_seconds = Histogram(
    "http_request_duration_seconds",
    "HTTP request duration in seconds",
    ["method", "path"],
)

deal_events_total = Counter(
    "deal_events_total",
    "Inbound deal events by type and outcome",
    ["event_type", "outcome"],
)

deal_event_duration_seconds = Histogram(
    "deal_event_duration_seconds",
    "Time spent applying an inbound deal event",
    ["event_type"],
)

deal_dedupe_resolutions_total = Counter(
    "deal_dedupe_resolutions_total",
    "Deal resolution results for quote_sent by match rule",
    ["match"],
)

deal_create_conflicts_total = Counter(
    "deal_create_conflicts_total",
    "Concurrent deal creations resolved by retry",
)

deal_auto_closed_total = Counter(
    "deal_auto_closed_total",
    "Deals closed by the contact cadence policy",
)

idempotency_purged_total = Counter(
    "idempotency_purged_total",
    "Expired idempotency records removed",
)


_UUID_RE = re.compile(
    r"\b[0-9a-fA-F]{8}-[0-9a-fA-F]{4}-[1-5][0-9a-fA-F]{3}-[89abAB][0-9a-fA-F]{3}-[0-9a-fA-F]{12}\b"
)
_INT_RE = re.compile(r"/\d+\b")
_PATH_PARAM_RE = re.compile(r"\{[^{}]+\}")


def _sanitize_path(path: str) -> str:
    without_uuids = _UUID_RE.sub("{id}", path)
    return _INT_RE.sub("/{id}", without_uuids)


def resolve_http_path_label(request: Request) -> str:
    route = request.scope.get("route")
    if route is not None:
        path_format = getattr(route, "path_format", None) or getattr(route, "path", None)
        if isinstance(path_format, str) and path_format:
            return _PATH_PARAM_RE.sub("{id}", path_format)
    return _sanitize_path(request.url.path)


def observe_http_request(method: str, path: str, status: int, duration: float) -> None:
    http_requests_total.labels(method=method, path=path, status=str(status)).inc()
    http_request_duration_seconds.labels(method=method, path=path).observe(duration)


def observe_deal_event(event_type: str, outcome: str, duration: float) -> None:
    deal_events_total.labels(event_type=event_type, outcome=outcome).inc()
    deal_event_duration_seconds.labels(event_type=event_type).observe(duration)


def observe_dedupe_resolution(match: str) -> None:
    deal_dedupe_resolutions_total.labels(match=match).inc()


def observe_create_conflict() -> None:
    deal_create_conflicts_total.inc()


def observe_auto_closed() -> None:
    deal_auto_closed_total.inc()


def observe_idempotency_purged(count: int) -> None:
    if count > 0:
        idempotency_purged_total.inc(count)


def generate_metrics_payload() -> bytes:
    return generate_latest()


def metrics_content_type() -> str:
    return CONTENT_TYPE_LATEST
