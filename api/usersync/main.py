from contextlib import asynccontextmanager
import logging
import time

from fastapi import FastAPI
from starlette.requests import Request

from usersync.api.router import api_router
from usersync.core.config import get_settings
from usersync.core.telemetry import TelemetryRuntime, setup_api_telemetry, shutdown_api_telemetry
from usersync.services.identity import get_identity_store
from usersync.services.repository import get_repository

settings = get_settings()
_telemetry_runtime: TelemetryRuntime | None = None
logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(_: FastAPI):
    identity = get_identity_store()
    logger.info(
        "user sync api starting environment=%s identity_sync=%s max_retries=%s",
        settings.environment,
        "enabled" if identity.enabled else "disabled",
        settings.job_max_retries,
    )
    if not settings.clerk_webhook_secret:
        logger.warning("US_CLERK_WEBHOOK_SECRET is not set; every webhook will be rejected")
    try:
        yield
    finally:
        if _telemetry_runtime is not None:
            shutdown_api_telemetry(app, _telemetry_runtime)
        await get_repository().close()
        get_repository.cache_clear()
        get_identity_store.cache_clear()


app = FastAPI(title=settings.app_name, lifespan=lifespan)
_telemetry_runtime = setup_api_telemetry(app, settings)


@app.middleware("http")
async def request_logging_middleware(request: Request, call_next):
    started_at = time.perf_counter()
    response = await call_next(request)
    elapsed_ms = (time.perf_counter() - started_at) * 1000.0
    if request.url.path in ("/healthz", "/readyz"):
        return response
    logger.info(
        "http request method=%s path=%s status=%s duration_ms=%.2f svix_id=%s module_id=%s",
        request.method,
        request.url.path,
        response.status_code,
        elapsed_ms,
        request.headers.get("svix-id", "-"),
        request.headers.get("x-module-id", "-"),
    )
    return response


app.include_router(api_router)
