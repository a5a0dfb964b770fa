from contextlib import asynccontextmanager
import logging
import time
from uuid import uuid4

from fastapi import FastAPI
from starlette.requests import Request

from aggregator.api.router import api_router
from aggregator.core.config import get_settings
from aggregator.core.telemetry import (
    TelemetryRuntime,
    bind_request_id,
    configure_api_logging,
    reset_request_id,
    setup_api_telemetry,
    shutdown_api_telemetry,
)
from aggregator.services.accounts import get_account_registry
from aggregator.services.aggregation import get_coordinator
from aggregator.services.registry import get_service_registry
from aggregator.services.repository import RecordStoreUnavailableError
from aggregator.services.store import get_memory_store, get_record_store

REQUEST_ID_HEADER = "X-Request-Id"

settings = get_settings()
_telemetry_runtime: TelemetryRuntime | None = None
logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(_: FastAPI):
    current = get_settings()
    registry = get_service_registry()
    loaded = await registry.load_remote_descriptors(
        current.descriptor_urls(),
        timeout_seconds=current.provider_descriptor_timeout_seconds,
    )
    logger.info("service registry ready providers=%s remote_loaded=%s", len(registry.providers()), loaded)

    if current.record_store_backend == "postgres" and current.database_url:
        try:
            await get_record_store().ensure_schema()
        except RecordStoreUnavailableError as exc:
            logger.warning("record store schema setup skipped: %s", exc)

    try:
        yield
    finally:
        still_running = await get_coordinator().drain(timeout=current.shutdown_drain_timeout_seconds)
        if still_running:
            logger.warning("shutdown with in-flight service invocations count=%s", still_running)
        if _telemetry_runtime is not None:
            shutdown_api_telemetry(app, _telemetry_runtime)
        await get_record_store().close()
        get_coordinator.cache_clear()
        get_account_registry.cache_clear()
        get_service_registry.cache_clear()
        get_memory_store.cache_clear()


configure_api_logging()
app = FastAPI(title=settings.app_name, lifespan=lifespan)
_telemetry_runtime = setup_api_telemetry(app, settings)


@app.middleware("http")
async def request_logging_middleware(request: Request, call_next):
    request_id = request.headers.get(REQUEST_ID_HEADER) or uuid4().hex
    token = bind_request_id(request_id)
    started_at = time.perf_counter()
    try:
        response = await call_next(request)
        elapsed_ms = (time.perf_counter() - started_at) * 1000.0
        logger.info(
            "http request method=%s path=%s status=%s duration_ms=%.2f",
            request.method,
            request.url.path,
            response.status_code,
            elapsed_ms,
        )
    finally:
        reset_request_id(token)
    response.headers[REQUEST_ID_HEADER] = request_id
    return response


app.include_router(api_router)
