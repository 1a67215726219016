"""
Main Application - FastAPI app factory and process entry point.
"""

import time
from collections.abc import AsyncIterator, Awaitable, Callable
from contextlib import asynccontextmanager
from uuid import uuid4

from fastapi import FastAPI, Request, Response, status
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse, PlainTextResponse
from prometheus_client import CONTENT_TYPE_LATEST, generate_latest

from echo_ledger.api.admin_routes import router as admin_router
from echo_ledger.api.routes import router
from echo_ledger.config import get_token_policy, settings
from echo_ledger.db.session import close_engines
from echo_ledger.exceptions import LedgerError
from echo_ledger.models.api import ECHO_APP_ID_HEADER
from echo_ledger.observability import get_logger, log_context, metrics, setup_logging, setup_tracing
from echo_ledger.observability.tracing import instrument_fastapi

REQUEST_ID_HEADER = "X-Request-ID"

setup_logging()
logger = get_logger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncIterator[None]:
    """Resolve the token policy on startup; dispose database engines on shutdown."""
    policy = get_token_policy()
    logger.info(
        "application_starting",
        version=settings.api_version,
        environment=settings.environment,
        archive_grace_ms=int(policy.archive_grace.total_seconds() * 1000),
        tracing_enabled=settings.tracing_enabled,
        metrics_enabled=settings.metrics_enabled,
    )

    yield

    logger.info("application_shutting_down")
    await close_engines()


async def validation_exception_handler(
    request: Request, exc: RequestValidationError
) -> JSONResponse:
    """422 with type/loc/msg only; input values are not echoed back."""
    errors = [
        {"type": error.get("type"), "loc": error.get("loc"), "msg": error.get("msg")}
        for error in exc.errors()
    ]
    logger.warning("validation_error", path=request.url.path, errors=errors)
    return JSONResponse(status_code=status.HTTP_422_UNPROCESSABLE_ENTITY, content={"detail": errors})


async def ledger_exception_handler(request: Request, exc: LedgerError) -> JSONResponse:
    """Ledger errors a route did not map to a status code."""
    metrics.record_error(type(exc).__name__, "unhandled_ledger_error")
    logger.error("unhandled_ledger_error", path=request.url.path, error=str(exc))
    return JSONResponse(
        status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
        content={"detail": "Internal ledger error"},
    )


async def request_context_middleware(
    request: Request, call_next: Callable[[Request], Awaitable[Response]]
) -> Response:
    """
    Bind request id and echo app id to every log line of the request, time it,
    and echo the request id back to the caller.
    """
    request_id = request.headers.get(REQUEST_ID_HEADER) or str(uuid4())
    endpoint = request.url.path
    method = request.method
    started = time.perf_counter()

    metrics.http_requests_in_progress.labels(endpoint=endpoint, method=method).inc()
    try:
        with log_context(
            request_id=request_id, echo_app_id=request.headers.get(ECHO_APP_ID_HEADER)
        ):
            try:
                response = await call_next(request)
            except Exception as e:
                duration = time.perf_counter() - started
                metrics.record_http_request(endpoint, method, 500, duration)
                metrics.record_error(type(e).__name__, "http_request")
                logger.error(
                    "request_failed",
                    method=method,
                    path=endpoint,
                    duration_seconds=duration,
                    exc_info=True,
                )
                raise

            duration = time.perf_counter() - started
            metrics.record_http_request(endpoint, method, response.status_code, duration)
            logger.info(
                "request_completed",
                method=method,
                path=endpoint,
                status_code=response.status_code,
                duration_seconds=duration,
            )
    finally:
        metrics.http_requests_in_progress.labels(endpoint=endpoint, method=method).dec()

    response.headers[REQUEST_ID_HEADER] = request_id
    return response


async def metrics_endpoint() -> Response:
    """Prometheus text exposition; 404 when metrics are disabled."""
    if not settings.metrics_enabled:
        return Response(status_code=status.HTTP_404_NOT_FOUND)
    return PlainTextResponse(generate_latest(), media_type=CONTENT_TYPE_LATEST)


def create_app() -> FastAPI:
    """Build the API: handlers, middleware, routers, tracing."""
    app = FastAPI(
        title=settings.api_title,
        version=settings.api_version,
        description=settings.api_description,
        lifespan=lifespan,
    )

    app.add_exception_handler(RequestValidationError, validation_exception_handler)  # type: ignore[arg-type]
    app.add_exception_handler(LedgerError, ledger_exception_handler)  # type: ignore[arg-type]
    app.middleware("http")(request_context_middleware)

    app.include_router(router)
    app.include_router(admin_router)
    app.add_api_route("/metrics", metrics_endpoint, methods=["GET"], include_in_schema=False)

    setup_tracing()
    instrument_fastapi(app)
    return app


app = create_app()


if __name__ == "__main__":
    import uvicorn

    uvicorn.run(
        "echo_ledger.main:app",
        host=settings.api_host,
        port=settings.api_port,
        log_level=settings.log_level.lower(),
    )
