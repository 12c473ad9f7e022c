from contextlib import asynccontextmanager
import logging

from fastapi import FastAPI
from opentelemetry.instrumentation.fastapi import FastAPIInstrumentor

from dealengine import events
from dealengine.api.routes import router as api_router
from dealengine.core.config import get_settings
from dealengine.core.events import InternalEvent, event_bus
from dealengine.logging import configure_logging
from dealengine.middleware.correlation_id import CorrelationIdMiddleware
from dealengine.middleware.request_logging import RequestLoggingMiddleware
from dealengine.otel import get_fastapi_server_request_hook, setup_otel


configure_logging()
logger = logging.getLogger("dealengine.lifecycle")
_subscriptions_registered = False

_observed_event_types = [
    events.DEAL_CREATED,
    events.DEAL_CLOSED,
    events.DEAL_AT_RISK,
    events.DEAL_AUTO_CLOSED,
]


def _on_system_started(event: InternalEvent) -> None:
    logger.info("system_event", extra={"event_type": event.name})


def _on_deal_event(event: InternalEvent) -> None:
    # Notification dispatch subscribes to the same names; this only records them.
    logger.info(
        "deals.domain_event",
        extra={"event_type": event.name, "deal_id": event.payload.get("deal_id")},
    )


@asynccontextmanager
async def lifespan(app: FastAPI):
    global _subscriptions_registered
    if not _subscriptions_registered:
        event_bus.subscribe("system.started", _on_system_started)
        for event_name in _observed_event_types:
            event_bus.subscribe(event_name, _on_deal_event)
        _subscriptions_registered = True
    event_bus.publish("system.started", {"service": "deal-engine"})
    yield


app = FastAPI(title="Deal Engine API", version="0.1.0", lifespan=lifespan)
app.add_middleware(RequestLoggingMiddleware)
app.add_middleware(CorrelationIdMiddleware)
app.include_router(api_router)

settings = get_settings()
if settings.otel_enabled:
    setup_otel("deal-engine", True)

if not getattr(app, "_is_instrumented_by_opentelemetry", False):
    FastAPIInstrumentor().instrument_app(app, server_request_hook=get_fastapi_server_request_hook())
