from __future__ import annotations

from collections.abc import AsyncIterator
from contextlib import asynccontextmanager

import structlog
from fastapi import FastAPI, Request
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse

from coffee_demo.api.coffee import router as coffee_router
from coffee_demo.api.demo import router as demo_router
from coffee_demo.api.health import router as health_router
from coffee_demo.config import Settings, get_settings
from coffee_demo.db.session import Database
from coffee_demo.errors import BadRequestError, CoffeeDemoError, InitError
from coffee_demo.models.schemas import ErrorResponse
from coffee_demo.observability.context import get_request_context
from coffee_demo.observability.logging import configure_logging
from coffee_demo.observability.metrics import (
    InMemoryMetricsSink,
    MetricsEmitter,
    MetricsSink,
    OtlpMetricsSink,
    error_metrics,
)
from coffee_demo.observability.middleware import RequestPipelineMiddleware
from coffee_demo.observability.tracing import init_tracing
from coffee_demo.services.container import AppServices


logger = structlog.get_logger("app")


def _build_metrics_sink(settings: Settings) -> MetricsSink:
    if not settings.metrics_enabled:
        return InMemoryMetricsSink()
    try:
        return OtlpMetricsSink(
            settings.metrics_namespace,
            {
                "service.name": settings.service_name,
                "service.version": settings.service_version,
                "deployment.environment": settings.environment,
                "cloud.region": settings.region,
            },
            endpoint=settings.otlp_endpoint or None,
        )
    except Exception as exc:
        raise InitError("Failed to initialize metrics exporter") from exc


def start_services(services: AppServices) -> None:
    """Bring up whatever the container is missing, in dependency order.

    Any failure is fatal: partially started pieces are torn down and InitError
    is raised so the server never starts in a degraded mode.
    """

    settings = services.settings
    try:
        if services.tracing is None:
            services.tracing = init_tracing(
                settings.service_name,
                settings.service_version,
                settings.environment,
                region=settings.region,
                endpoint=settings.otlp_endpoint or None,
                enabled=settings.tracing_enabled,
            )

        if services.database is None:
            services.database = Database.open(
                settings.database_url,
                services.tracing,
                pool_max=settings.db_pool_max,
                pool_min=settings.db_pool_min,
                max_lifetime_seconds=settings.db_pool_max_lifetime_seconds,
                max_idle_seconds=settings.db_pool_max_idle_seconds,
                pool_timeout_seconds=settings.db_pool_timeout_seconds,
            )
            services.database.ensure_schema()

        if services.emitter is None:
            services.emitter = MetricsEmitter(
                _build_metrics_sink(settings),
                workers=settings.metrics_workers,
                queue_size=settings.metrics_queue_size,
            )
        services.emitter.start()
    except CoffeeDemoError as exc:
        logger.error("startup_failed", error=exc.message, error_type=type(exc).__name__)
        stop_services(services)
        if isinstance(exc, InitError):
            raise
        raise InitError(f"Startup failed: {exc.message}") from exc

    logger.info("startup_complete", region=settings.region, environment=settings.environment)


def stop_services(services: AppServices) -> None:
    # Drain metrics first; their failures are logged by the emitter itself.
    if services.emitter is not None:
        services.emitter.shutdown()
    if services.tracing is not None:
        services.tracing.shutdown()
    if services.database is not None:
        services.database.close()


@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncIterator[None]:
    services: AppServices = app.state.services
    configure_logging(services.settings.log_level, services.settings.log_json)

    owned = not services.ready
    if owned:
        start_services(services)
    try:
        yield
    finally:
        if owned:
            stop_services(services)
            logger.info("shutdown_complete")


def create_app(settings: Settings | None = None, services: AppServices | None = None) -> FastAPI:
    """Create the FastAPI application.

    Pass a fully populated ``services`` container to skip the startup sequence
    (the tests do this); otherwise the lifespan builds tracing, the database and
    the metrics emitter from ``settings``.
    """

    if services is None:
        services = AppServices(settings=settings or get_settings())

    app = FastAPI(
        title="Coffee Observability Demo",
        version=services.settings.service_version,
        lifespan=lifespan,
    )
    app.state.services = services

    app.add_middleware(RequestPipelineMiddleware, services=services)
    _register_exception_handlers(app)

    app.include_router(health_router)
    app.include_router(coffee_router)
    app.include_router(demo_router)
    return app


def _error_response(request: Request, exc: CoffeeDemoError, cause: str | None = None) -> JSONResponse:
    ctx = get_request_context(request)
    if cause is None and exc.__cause__ is not None:
        cause = repr(exc.__cause__)

    logger.error(
        "request_failed",
        error=exc.message,
        error_type=type(exc).__name__,
        cause=cause,
        request_id=ctx.request_id,
        trace_id=ctx.trace_id,
        method=ctx.method,
        path=ctx.path,
    )

    if ctx.span is not None:
        ctx.span.record_exception(exc)

    emitter = request.app.state.services.emitter
    if emitter is not None:
        emitter.emit(*error_metrics(exc.error_type))

    # Every handler failure is reported as a 500, including bad input and
    # missing orders; the error-rate dashboards are built around it.
    return JSONResponse(status_code=500, content=ErrorResponse(error=exc.message).model_dump())


def _register_exception_handlers(app: FastAPI) -> None:
    @app.exception_handler(CoffeeDemoError)
    async def coffee_demo_error_handler(request: Request, exc: CoffeeDemoError) -> JSONResponse:
        return _error_response(request, exc)

    @app.exception_handler(RequestValidationError)
    async def validation_error_handler(request: Request, exc: RequestValidationError) -> JSONResponse:
        errors = exc.errors()
        if any(tuple(error.get("loc", ()))[:1] == ("path",) for error in errors):
            message = "Invalid coffee order ID"
        else:
            message = "Invalid JSON"
        detail = "; ".join(
            f"{'.'.join(str(part) for part in error.get('loc', ()))}: {error.get('msg', '')}" for error in errors
        )
        return _error_response(request, BadRequestError(message), cause=detail)


app = create_app()
