import logging
from contextlib import asynccontextmanager

from fastapi import FastAPI
from opentelemetry.instrumentation.fastapi import FastAPIInstrumentor

from repairdesk.api.routes import router as api_router
from repairdesk.core.cache import get_reference_cache
from repairdesk.core.config import get_settings
from repairdesk.logging import configure_logging
from repairdesk.middleware.correlation_id import CorrelationIdMiddleware
from repairdesk.middleware.rate_limit import RepairMutationRateLimitMiddleware
from repairdesk.middleware.request_logging import RequestLoggingMiddleware
from repairdesk.otel import get_fastapi_server_request_hook, setup_otel


configure_logging()
logger = logging.getLogger("repairdesk.lifecycle")
_cache_hook_registered = False


def _on_reference_cache_invalidated(key: str | None) -> None:
    logger.info("reference_cache_invalidated", extra={"cache_key": key or "*"})


@asynccontextmanager
async def lifespan(app: FastAPI):
    global _cache_hook_registered
    if not _cache_hook_registered:
        get_reference_cache().on_invalidate(_on_reference_cache_invalidated)
        _cache_hook_registered = True
    logger.info("system_started", extra={"environment": get_settings().app_env})
    yield
    get_reference_cache().clear()


app = FastAPI(title="RepairDesk API", version="0.1.0", lifespan=lifespan)
app.add_middleware(RepairMutationRateLimitMiddleware)
app.add_middleware(RequestLoggingMiddleware)
app.add_middleware(CorrelationIdMiddleware)
app.include_router(api_router)

settings = get_settings()
if settings.otel_enabled:
    setup_otel("repairdesk-api", True)

if not getattr(app, "_is_instrumented_by_opentelemetry", False):
    FastAPIInstrumentor().instrument_app(app, server_request_hook=get_fastapi_server_request_hook())
