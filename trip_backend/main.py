"""FastAPI application entrypoint."""

from __future__ import annotations

import logging
from contextlib import asynccontextmanager
from typing import Iterable, Optional

import uvicorn
from fastapi import APIRouter, FastAPI
from fastapi.middleware.cors import CORSMiddleware
from opentelemetry.sdk.trace import TracerProvider

from trip_backend.api.router import api_router
from trip_backend.config.settings import Settings, get_settings
from trip_backend.exceptions import MissingConfiguration
from trip_backend.observability import (
    HttpMetrics,
    InstrumentationMiddleware,
    MetricRegistry,
    RouteTable,
    SpanLifecycleManager,
    configure_logging,
    register_metrics_endpoint,
    setup_tracing,
)

logger = logging.getLogger(__name__)


def create_app(
    settings: Settings | None = None,
    *,
    routers: Iterable[APIRouter] = (),
    tracer_provider: Optional[TracerProvider] = None,
) -> FastAPI:
    """Build the application with its instrumentation chain.

    ``routers`` are the trip routes supplied by the Trip Service; they are
    mounted under ``settings.trip_route_prefix``.
    """

    settings = settings or get_settings()

    configure_logging(settings)
    logger.info("Logger initialized successfully")

    provider = tracer_provider or setup_tracing(settings)
    registry = MetricRegistry(default_collectors=settings.collect_default_metrics)
    http_metrics = HttpMetrics(registry, settings.http_duration_buckets)
    spans = SpanLifecycleManager(provider, timeout_seconds=settings.span_timeout_seconds)

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        logger.info("Server started at http://localhost:%s", settings.port)
        try:
            yield
        finally:
            logger.info("Application shutdown...")
            if spans.open_count:
                logger.warning("%d spans still open at shutdown", spans.open_count)
            provider.shutdown()

    application = FastAPI(
        title=settings.api_title,
        version=settings.api_version,
        lifespan=lifespan,
    )
    route_table = RouteTable(application.router)
    application.state.settings = settings
    application.state.metric_registry = registry
    application.state.http_metrics = http_metrics
    application.state.span_manager = spans
    application.state.route_table = route_table

    application.add_middleware(
        CORSMiddleware,
        allow_origins=settings.cors_allow_origins,
        allow_methods=["*"],
        allow_headers=["*"],
    )
    # Added last so it wraps every other middleware.
    application.add_middleware(
        InstrumentationMiddleware,
        settings=settings,
        route_table=route_table,
        http_metrics=http_metrics,
        spans=spans,
    )

    application.include_router(api_router)
    route_table.include(api_router)
    for router in routers:
        application.include_router(router, prefix=settings.trip_route_prefix)
        route_table.include(router, prefix=settings.trip_route_prefix)
    register_metrics_endpoint(application, registry)

    return application


def main() -> None:
    try:
        settings = get_settings()
    except MissingConfiguration as exc:
        logging.basicConfig(level=logging.INFO)
        logger.critical("Refusing to start: %s", exc)
        raise SystemExit(1) from exc

    application = create_app(settings)
    uvicorn.run(application, host=settings.host, port=settings.port, log_config=None)


if __name__ == "__main__":
    main()
