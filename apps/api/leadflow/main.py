from contextlib import asynccontextmanager
import logging

from fastapi import FastAPI, Request
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse
from opentelemetry.instrumentation.fastapi import FastAPIInstrumentor

from leadflow.api.routes import router as api_router
from leadflow.buyers.api import field_errors_from, lead_flow_error_response
from leadflow.core.config import get_settings
from leadflow.core.errors import LeadFlowError, ValidationFailed
from leadflow.core.events import InternalEvent, event_bus
from leadflow.logging import configure_logging
from leadflow.middleware.correlation_id import CorrelationIdMiddleware
from leadflow.middleware.request_logging import RequestLoggingMiddleware
from leadflow.otel import get_fastapi_server_request_hook, setup_otel


configure_logging()
logger = logging.getLogger("leadflow.lifecycle")
_subscriptions_registered = False

_buyer_event_types = [
    "buyers.buyer.created",
    "buyers.buyer.updated",
    "buyers.buyer.status_changed",
    "buyers.import.completed",
]


def _on_system_started(event: InternalEvent) -> None:
    logger.info("system_event", extra={"event_name": event.name})


def _on_buyer_event(event: InternalEvent) -> None:
    payload = event.payload.get("payload") if isinstance(event.payload, dict) else None
    buyer_id = payload.get("buyer_id") if isinstance(payload, dict) else None
    logger.info("buyer_event", extra={"event_name": event.name, "buyer_id": buyer_id})


@asynccontextmanager
async def lifespan(app: FastAPI):
    global _subscriptions_registered
    if not _subscriptions_registered:
        event_bus.subscribe("system.started", _on_system_started)
        for event_name in _buyer_event_types:
            event_bus.subscribe(event_name, _on_buyer_event)
        _subscriptions_registered = True
    event_bus.publish("system.started", {"service": "api"})
    yield


settings = get_settings()

app = FastAPI(title=settings.app_name, version=settings.app_version, lifespan=lifespan)
app.add_middleware(RequestLoggingMiddleware)
app.add_middleware(CorrelationIdMiddleware)
app.include_router(api_router)


@app.exception_handler(LeadFlowError)
async def handle_lead_flow_error(request: Request, exc: LeadFlowError) -> JSONResponse:
    return lead_flow_error_response(request, exc)


@app.exception_handler(RequestValidationError)
async def handle_request_validation_error(request: Request, exc: RequestValidationError) -> JSONResponse:
    return lead_flow_error_response(request, ValidationFailed(field_errors_from(exc.errors())))


setup_otel(settings)

if not getattr(app, "_is_instrumented_by_opentelemetry", False):
    FastAPIInstrumentor().instrument_app(app, server_request_hook=get_fastapi_server_request_hook())
