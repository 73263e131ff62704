from contextlib import asynccontextmanager
import logging
import time

from fastapi import FastAPI
from starlette.requests import Request

from firmbook.api.router import api_router
from firmbook.core.config import get_settings
from firmbook.core.telemetry import configure_api_logging, setup_api_telemetry, shutdown_api_telemetry
from firmbook.services.ai import get_ai_client
from firmbook.services.enrichment import get_record_job_executor
from firmbook.services.jobs import get_job_runner
from firmbook.services.repository import get_repository

settings = get_settings()
logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(_: FastAPI):
    try:
        yield
    finally:
        if _tracer_provider is not None:
            shutdown_api_telemetry(app, _tracer_provider)
        await get_repository().close()
        get_repository.cache_clear()
        get_job_runner.cache_clear()
        get_ai_client.cache_clear()
        get_record_job_executor.cache_clear()


configure_api_logging()
app = FastAPI(title=settings.app_name, lifespan=lifespan)
_tracer_provider = setup_api_telemetry(app, settings)


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
