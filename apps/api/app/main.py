from contextlib import asynccontextmanager
import logging

from fastapi import FastAPI
from opentelemetry.instrumentation.fastapi import FastAPIInstrumentor

from app.api.routes import router as api_router
from app.core.config import get_settings
from app.core.database import SessionLocal
from app.core.events import InternalEvent, event_bus
from app.crm.seed import seed_reference_data
from app.logging import configure_logging
from app.middleware.correlation_id import CorrelationIdMiddleware
from app.middleware.rate_limit import CrmMutationRateLimitMiddleware
from app.middleware.request_logging import RequestLoggingMiddleware
from app.otel import get_fastapi_server_request_hook, setup_otel


configure_logging()
logger = logging.getLogger("app.lifecycle")
_subscriptions_registered = False


def _on_system_started(event: InternalEvent) -> None:
    logger.info("system_event", extra={"event_name": event.name})


def _on_deal_event(event: InternalEvent) -> None:
    # board views cache per pipeline; any deal change invalidates the affected ones
    payload = event.payload.get("payload") if isinstance(event.payload, dict) else None
    if not isinstance(payload, dict):
        return
    pipeline_ids = {payload.get("pipeline_id"), payload.get("from_pipeline_id")} - {None}
    for pipeline_id in sorted(pipeline_ids):
        logger.info(
            "board.invalidated",
            extra={"event_name": event.name, "deal_id": payload.get("deal_id"), "pipeline_id": pipeline_id},
        )


def _register_subscriptions() -> None:
    global _subscriptions_registered
    if _subscriptions_registered:
        return
    event_bus.subscribe("system.started", _on_system_started)
    event_bus.subscribe("crm.deal.*", _on_deal_event)
    _subscriptions_registered = True


@asynccontextmanager
async def lifespan(app: FastAPI):
    _register_subscriptions()
    if get_settings().seed_reference_data:
        with SessionLocal() as session:
            seed_reference_data(session)
    event_bus.publish("system.started", {"service": "api"})
    yield


app = FastAPI(title="Pipeline CRM API", version="0.1.0", lifespan=lifespan)
app.add_middleware(CrmMutationRateLimitMiddleware)
app.add_middleware(RequestLoggingMiddleware)
app.add_middleware(CorrelationIdMiddleware)
app.include_router(api_router)

setup_otel()

if not getattr(app, "_is_instrumented_by_opentelemetry", False):
    FastAPIInstrumentor().instrument_app(app, server_request_hook=get_fastapi_server_request_hook())
