from contextlib import asynccontextmanager
import logging

from fastapi import FastAPI, Request, status
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse
from opentelemetry.instrumentation.fastapi import FastAPIInstrumentor

from app.api.routes import router as api_router
from app.core.config import get_settings
from app.core.context import RequestContextMiddleware
from app.core.events import InternalEvent, event_bus
from app.logging import configure_logging
from app.middleware.correlation_id import CorrelationIdMiddleware
from app.middleware.request_logging import RequestLoggingMiddleware
from app.otel import get_fastapi_server_request_hook, setup_otel
from app.pipeline.analytics import invalidate_analytics
from app.pipeline.api import error_response
from app.pipeline.cache import CacheBackend, get_cache_backend
from app.pipeline.coordinator import STAGE_CHANGED_EVENT


configure_logging()
logger = logging.getLogger("app.lifecycle")
_subscriptions_registered = False


def _on_system_started(event: InternalEvent) -> None:
    logger.info("system_event", extra={"event_name": event.name})


def _resolve_cache_backend() -> CacheBackend:
    override = app.dependency_overrides.get(get_cache_backend)
    if override is None:
        return get_cache_backend()
    return override()


def _on_deal_stage_changed(event: InternalEvent) -> None:
    if not get_settings().analytics_invalidate_on_transition:
        return
    owner_id = event.payload.get("payload", {}).get("assigned_user_id")
    invalidate_analytics(_resolve_cache_backend(), [owner_id] if owner_id is not None else None)
    logger.info("analytics_cache_invalidated", extra={"event_name": event.name})


@asynccontextmanager
async def lifespan(app: FastAPI):
    global _subscriptions_registered
    if not _subscriptions_registered:
        event_bus.subscribe("system.started", _on_system_started)
        event_bus.subscribe(STAGE_CHANGED_EVENT, _on_deal_stage_changed)
        _subscriptions_registered = True
    event_bus.publish("system.started", {"service": "api"})
    yield


app = FastAPI(title="Salesbase Pipeline API", version="0.1.0", lifespan=lifespan)
app.add_middleware(RequestContextMiddleware)
app.add_middleware(RequestLoggingMiddleware)
app.add_middleware(CorrelationIdMiddleware)
app.include_router(api_router)


@app.exception_handler(RequestValidationError)
async def request_validation_error_handler(request: Request, exc: RequestValidationError) -> JSONResponse:
    details = [
        {"loc": list(error.get("loc", ())), "msg": error.get("msg"), "type": error.get("type")}
        for error in exc.errors()
    ]
    return error_response(
        request,
        status_code=status.HTTP_400_BAD_REQUEST,
        code="validation_error",
        message="request validation failed",
        details=details,
    )


settings = get_settings()
if settings.otel_enabled:
    setup_otel("pipeline-api", True)

if not getattr(app, "_is_instrumented_by_opentelemetry", False):
    FastAPIInstrumentor().instrument_app(app, server_request_hook=get_fastapi_server_request_hook())
