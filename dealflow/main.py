from contextlib import asynccontextmanager
import logging
import time

from fastapi import FastAPI
from opentelemetry import trace
from starlette.requests import Request

from dealflow.api.router import api_router
from dealflow.context import IngestionContext
from dealflow.core.config import get_settings
from dealflow.core.telemetry import configure_logging, setup_telemetry, shutdown_telemetry

logger = logging.getLogger(__name__)
tracer = trace.get_tracer(__name__)


def create_app(context: IngestionContext | None = None) -> FastAPI:
    settings = context.settings if context is not None else get_settings()

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        configure_logging()
        telemetry_runtime = setup_telemetry(settings, role="api")
        owned = context is None
        app.state.context = context or IngestionContext.from_settings(settings)
        try:
            if owned:
                await app.state.context.open()
            yield
        finally:
            if owned:
                await app.state.context.close()
            shutdown_telemetry(telemetry_runtime)

    app = FastAPI(title=settings.app_name, lifespan=lifespan)

    @app.middleware("http")
    async def request_logging_middleware(request: Request, call_next):
        started_at = time.perf_counter()
        with tracer.start_as_current_span(
            f"{request.method} {request.url.path}",
            kind=trace.SpanKind.SERVER,
        ) as span:
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
    return app


app = create_app()
