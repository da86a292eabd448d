from contextlib import asynccontextmanager
import logging
import time

from fastapi import FastAPI
from starlette.requests import Request

from kindsync.api.router import api_router
from kindsync.core.config import get_settings
from kindsync.core.telemetry import TelemetryRuntime, configure_logging, setup_telemetry, shutdown_telemetry
from kindsync.services.container import build_container

settings = get_settings()
configure_logging()
_telemetry_runtime: TelemetryRuntime | None = None
logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(_: FastAPI):
    try:
        yield
    finally:
        if _telemetry_runtime is not None:
            shutdown_telemetry(_telemetry_runtime)
        # Ensure asyncpg pool shuts down on app teardown.
        await app.state.container.close()


app = FastAPI(title=settings.app_name, lifespan=lifespan)
app.state.container = build_container(settings)
_telemetry_runtime = setup_telemetry(settings, app)


@app.middleware("http")
async def request_logging_middleware(request: Request, call_next):
    started_at = time.perf_counter()
    response = await call_next(request)
    elapsed_ms = (time.perf_counter() - started_at) * 1000.0
    logger.info(
        "http request method=%s path=%s status=%s duration_ms=%.2f",
        request.method,
        request.url.path,
        response.status_code,
        elapsed_ms,
    )
    return response


app.include_router(api_router)
