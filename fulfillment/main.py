"""
Main Application - FastAPI application setup.
"""

import asyncio
from collections.abc import AsyncIterator, Awaitable, Callable
from contextlib import asynccontextmanager

from fastapi import FastAPI, Request, Response
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse, PlainTextResponse
from prometheus_client import generate_latest

from fulfillment.api.admin_routes import router as admin_router
from fulfillment.api.routes import router
from fulfillment.api.webhook_routes import router as webhook_router
from fulfillment.config import settings
from fulfillment.db.migration_runner import run_migrations
from fulfillment.db.session import close_engines, get_write_engine
from fulfillment.exceptions import ErrorCategory, FulfillmentError
from fulfillment.observability import get_logger, log_context, metrics, setup_logging, setup_tracing
from fulfillment.observability.metrics import track_http_request
from fulfillment.observability.tracing import instrument_fastapi, instrument_sqlalchemy

# Setup logging before anything else
setup_logging()
logger = get_logger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncIterator[None]:
    """
    Application lifespan manager.

    Handles startup and shutdown events.
    """
    logger.info(
        "application_starting",
        service=settings.api_title,
        version=settings.api_version,
        demo_mode=settings.demo_mode,
        tracing_enabled=settings.tracing_enabled,
        metrics_enabled=settings.metrics_enabled,
    )

    if settings.run_migrations_on_startup:
        await asyncio.to_thread(run_migrations)
    if settings.tracing_enabled:
        instrument_sqlalchemy(get_write_engine())

    yield

    logger.info("application_shutting_down")
    await close_engines()
    logger.info("database_engines_closed")


app = FastAPI(
    title=settings.api_title,
    version=settings.api_version,
    description=settings.api_description,
    lifespan=lifespan,
)


@app.exception_handler(FulfillmentError)
async def fulfillment_exception_handler(request: Request, exc: FulfillmentError) -> JSONResponse:
    """Render every domain failure as {"detail", "reason"} with its category's status."""
    status_code = exc.http_status
    metrics.record_error(type(exc).__name__, request.url.path)

    log = logger.error if exc.category == ErrorCategory.INTEGRITY else logger.info
    log(
        "request_rejected",
        path=request.url.path,
        method=request.method,
        status_code=status_code,
        reason=exc.reason,
        category=exc.category.value,
        error=str(exc),
    )

    headers = {"WWW-Authenticate": "Bearer"} if status_code == 401 else None
    return JSONResponse(
        status_code=status_code,
        content={"detail": str(exc), "reason": exc.reason},
        headers=headers,
    )


@app.exception_handler(RequestValidationError)
async def validation_exception_handler(request: Request, exc: RequestValidationError) -> JSONResponse:
    """Log detailed validation errors for debugging."""
    sanitized_errors = []
    for error in exc.errors():
        sanitized = {
            "type": error.get("type"),
            "loc": error.get("loc"),
            "msg": error.get("msg"),
        }
        # ctx may contain non-serializable objects
        if "ctx" in error:
            sanitized["ctx"] = {k: str(v) for k, v in error["ctx"].items()}
        sanitized_errors.append(sanitized)

    logger.warning(
        "validation_error",
        path=request.url.path,
        method=request.method,
        errors=sanitized_errors,
    )
    return JSONResponse(
        status_code=422,
        content={"detail": sanitized_errors, "reason": "invalid_request"},
    )


# Setup tracing
setup_tracing()
instrument_fastapi(app)

# CORS middleware
app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


@app.middleware("http")
async def logging_middleware(
    request: Request, call_next: Callable[[Request], Awaitable[Response]]
) -> Response:
    """Log all HTTP requests with timing."""
    request_id = request.headers.get("X-Request-ID", "unknown")
    method = request.method
    endpoint = request.url.path

    with log_context(request_id=request_id):
        logger.info("request_started", method=method, path=endpoint)
        with track_http_request(endpoint, method) as tracker:
            try:
                response = await call_next(request)
            except Exception as e:
                metrics.record_error(type(e).__name__, "http_request")
                logger.error(
                    "request_failed", method=method, path=endpoint, error=str(e), exc_info=True
                )
                raise
            tracker.set_status_code(response.status_code)

        logger.info(
            "request_completed", method=method, path=endpoint, status_code=response.status_code
        )
        return response


# Register routes
app.include_router(router)
app.include_router(webhook_router)
app.include_router(admin_router)


@app.get("/")
async def root() -> dict[str, str]:
    """Root endpoint."""
    return {
        "service": settings.api_title,
        "version": settings.api_version,
        "status": "running",
    }


@app.get("/metrics")
async def metrics_endpoint() -> Response:
    """
    Prometheus metrics endpoint.

    Returns metrics in Prometheus text format.
    """
    return PlainTextResponse(generate_latest())


if __name__ == "__main__":
    import uvicorn

    uvicorn.run(
        "fulfillment.main:app",
        host=settings.api_host,
        port=settings.api_port,
        reload=True,
        log_level=settings.log_level.lower(),
    )
