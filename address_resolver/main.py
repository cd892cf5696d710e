from contextlib import asynccontextmanager
import logging
import time

from fastapi import FastAPI, Request
from opentelemetry import trace

from address_resolver.api.router import api_router
from address_resolver.core.config import get_settings
from address_resolver.core.telemetry import configure_logging, setup_telemetry, shutdown_telemetry
from address_resolver.services.repository import get_repository

settings = get_settings()
telemetry_runtime = setup_telemetry(settings, service_suffix="api")
logger = logging.getLogger(__name__)
tracer = trace.get_tracer(__name__)


@asynccontextmanager
async def lifespan(_: FastAPI):
    try:
        yield
    finally:
        shutdown_telemetry(telemetry_runtime)
        await get_repository().close()
        get_repository.cache_clear()


app = FastAPI(title=settings.app_name, lifespan=lifespan)


@app.middleware("http")
async def request_logging_middleware(request: Request, call_next):
    started_at = time.perf_counter()
    with tracer.start_as_current_span(f"http {request.method} {request.url.path}") as span:
        span.set_attribute("http.request.method", request.method)
        span.set_attribute("url.path", request.url.path)
        response = await call_next(request)
        span.set_attribute("http.response.status_code", response.status_code)
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


if __name__ == "__main__":
    import uvicorn

    configure_logging()
    uvicorn.run(app, host="0.0.0.0", port=8000)
