from contextlib import asynccontextmanager
import logging
import time

from fastapi import FastAPI
from starlette.requests import Request

from ledger_api.api.router import api_router
from ledger_api.core.config import get_settings
from ledger_api.core.telemetry import TelemetryRuntime, setup_api_telemetry, shutdown_api_telemetry
from ledger_api.services.creation import get_creation_service
from ledger_api.services.extraction import get_extraction_client
from ledger_api.services.geocoding import get_geocoding_client
from ledger_api.services.processing import get_report_processor
from ledger_api.services.repository import get_repository

settings = get_settings()
_telemetry_runtime: TelemetryRuntime | None = None
logger = logging.getLogger(__name__)

_PROBE_PATHS = {"/healthz", "/readyz"}
# Collaborators that hold a reference to the cached repository.
_REPOSITORY_BOUND = (get_report_processor, get_creation_service, get_geocoding_client)


@asynccontextmanager
async def lifespan(_: FastAPI):
    logger.info(
        "violation ledger starting environment=%s extraction_configured=%s geocoding_configured=%s",
        settings.environment,
        get_extraction_client().configured,
        bool(settings.geocoding_api_key),
    )
    try:
        yield
    finally:
        if _telemetry_runtime is not None:
            shutdown_api_telemetry(app, _telemetry_runtime)
        await get_repository().close()
        for factory in _REPOSITORY_BOUND:
            factory.cache_clear()
        get_repository.cache_clear()


app = FastAPI(title=settings.app_name, lifespan=lifespan)
_telemetry_runtime = setup_api_telemetry(app, settings)


@app.middleware("http")
async def request_logging_middleware(request: Request, call_next):
    started_at = time.perf_counter()
    response = await call_next(request)
    elapsed_ms = (time.perf_counter() - started_at) * 1000.0
    level = logging.DEBUG if request.url.path in _PROBE_PATHS else logging.INFO
    logger.log(
        level,
        "http request method=%s path=%s status=%s duration_ms=%.2f actor=%s",
        request.method,
        request.url.path,
        response.status_code,
        elapsed_ms,
        request.headers.get(settings.actor_header, "-"),
    )
    return response


app.include_router(api_router)
