"""
FastAPI application: middleware, error handlers, routers and the process
lifecycle (schema creation, scheduler, dispatch runner shutdown).

`create_app()` builds a fresh application; `app` is the instance uvicorn
serves (`uvicorn src.api.app:app`).
"""
import time
import uuid
from contextlib import asynccontextmanager
from typing import AsyncGenerator

from fastapi import FastAPI, Request
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import PlainTextResponse
from starlette.exceptions import HTTPException as StarletteHTTPException
from starlette.middleware.base import BaseHTTPMiddleware

from src.api.middleware.error_handler import (
    AppException,
    app_exception_handler,
    validation_exception_handler,
    http_exception_handler,
    unhandled_exception_handler,
)
from src.api.routes import ai, campaigns, segments, vendor
from src.jobs import campaign_runner
from src.jobs.scheduler import get_scheduler
from src.lib.db import init_db
from src.lib.logging import get_logger, set_correlation_id
from src.lib.metrics import get_metrics_collector
from src.lib.settings import settings

logger = get_logger(__name__)

CORRELATION_HEADER = "X-Correlation-ID"


class CorrelationIdMiddleware(BaseHTTPMiddleware):
    """
    Tags every request with a correlation id (taken from X-Correlation-ID or
    generated) and logs request completion with its duration.

    The id is put in the logging context, so dispatch tasks started by the
    request log under it too.
    """

    async def dispatch(self, request: Request, call_next):
        correlation_id = request.headers.get(CORRELATION_HEADER) or str(uuid.uuid4())
        request.state.correlation_id = correlation_id
        set_correlation_id(correlation_id)

        started = time.perf_counter()
        response = await call_next(request)
        response.headers[CORRELATION_HEADER] = correlation_id

        logger.info(
            f"{request.method} {request.url.path} -> {response.status_code}",
            extra={
                "method": request.method,
                "path": request.url.path,
                "status_code": response.status_code,
                "duration_ms": round((time.perf_counter() - started) * 1000, 1),
            },
        )
        return response


@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncGenerator[None, None]:
    logger.info(f"{settings.app_name} starting up")
    init_db()

    scheduler = None
    if settings.enable_scheduler:
        scheduler = get_scheduler()
        campaign_runner.register_campaign_jobs(scheduler)
        scheduler.start()

    yield

    logger.info(f"{settings.app_name} shutting down")
    if scheduler is not None:
        scheduler.shutdown(wait=False)
    await campaign_runner.close_dispatch_runner()


def health_check():
    """Liveness plus the background scheduler's job state when it is running."""
    body = {"status": "ok"}
    scheduler = get_scheduler()
    if scheduler.running:
        body["scheduler"] = {"jobs": scheduler.job_status()}
    return body


def metrics_endpoint():
    """
    Prometheus text exposition of the in-process counters:
    campaign_messages_sent_total, campaign_receipts_total, campaigns_total
    and segment_resolutions_total.
    """
    return PlainTextResponse(
        content=get_metrics_collector().export_prometheus(),
        media_type="text/plain; version=0.0.4; charset=utf-8",
    )


def create_app() -> FastAPI:
    application = FastAPI(
        title=settings.app_name,
        version="1.0.0",
        description="Segment rules, audience resolution and campaign delivery tracking",
        lifespan=lifespan,
    )

    application.add_middleware(
        CORSMiddleware,
        allow_origins=settings.cors_origins,
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )
    application.add_middleware(CorrelationIdMiddleware)

    application.add_exception_handler(AppException, app_exception_handler)
    application.add_exception_handler(RequestValidationError, validation_exception_handler)
    application.add_exception_handler(StarletteHTTPException, http_exception_handler)
    application.add_exception_handler(Exception, unhandled_exception_handler)

    for module in (segments, campaigns, vendor, ai):
        application.include_router(module.router)

    application.add_api_route("/health", health_check, methods=["GET"])
    application.add_api_route("/metrics", metrics_endpoint, methods=["GET"], include_in_schema=False)

    return application


app = create_app()
