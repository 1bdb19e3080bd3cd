from contextlib import asynccontextmanager
import logging

from fastapi import FastAPI
from opentelemetry.instrumentation.fastapi import FastAPIInstrumentor

from portal_crm.api.errors import ActorResolutionError, actor_resolution_error_handler
from portal_crm.api.routes import router as api_router
from portal_crm.core.config import get_settings
from portal_crm.core.events import InternalEvent, event_bus
from portal_crm.logging import configure_logging
from portal_crm.middleware.correlation_id import CorrelationIdMiddleware
from portal_crm.middleware.rate_limit import CrmMutationRateLimitMiddleware
from portal_crm.middleware.request_logging import RequestLoggingMiddleware
from portal_crm.otel import get_fastapi_server_request_hook, setup_otel


configure_logging()
logger = logging.getLogger("portal_crm.lifecycle")
_subscriptions_registered = False

_lifecycle_event_types = [
    "system.started",
    "tenancy.license.created",
    "tenancy.collaborator.created",
    "tenancy.invite.accepted",
]


def _on_system_event(event: InternalEvent) -> None:
    client_id = event.payload.get("client_id") if isinstance(event.payload, dict) else None
    logger.info("system_event", extra={"event_name": event.name, "client_id": client_id})


@asynccontextmanager
async def lifespan(app: FastAPI):
    global _subscriptions_registered
    if not _subscriptions_registered:
        for event_name in _lifecycle_event_types:
            event_bus.subscribe(event_name, _on_system_event)
        _subscriptions_registered = True
    event_bus.publish("system.started", {"service": "api"})
    yield


settings = get_settings()
app = FastAPI(title=settings.app_name, version=settings.app_version, lifespan=lifespan)
app.add_middleware(CrmMutationRateLimitMiddleware)
app.add_middleware(RequestLoggingMiddleware)
app.add_middleware(CorrelationIdMiddleware)
app.add_exception_handler(ActorResolutionError, actor_resolution_error_handler)
app.include_router(api_router)

setup_otel()

if not getattr(app, "_is_instrumented_by_opentelemetry", False):
    FastAPIInstrumentor().instrument_app(app, server_request_hook=get_fastapi_server_request_hook())
