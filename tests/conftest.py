import asyncio
from typing import Callable

import pytest
from fastapi import APIRouter, FastAPI, HTTPException
from fastapi.testclient import TestClient
from opentelemetry.sdk.trace import TracerProvider
from opentelemetry.sdk.trace.export import SimpleSpanProcessor
from opentelemetry.sdk.trace.export.in_memory_span_exporter import InMemorySpanExporter

from trip_backend.config.settings import Settings
from trip_backend.main import create_app


def _build_trip_router() -> APIRouter:
    """Stand-in for the Trip Service routes mounted under the trip prefix."""

    router = APIRouter(tags=["trip"])
    trips: dict[str, dict[str, str]] = {"1": {"id": "1", "destination": "Lisbon"}}

    @router.get("")
    async def list_trips() -> list[dict[str, str]]:
        return list(trips.values())

    @router.post("", status_code=201)
    async def create_trip(payload: dict[str, str]) -> dict[str, str]:
        trip_id = str(len(trips) + 1)
        trips[trip_id] = {"id": trip_id, **payload}
        return trips[trip_id]

    @router.get("/{trip_id}")
    async def get_trip(trip_id: str) -> dict[str, str]:
        if trip_id not in trips:
            raise HTTPException(status_code=404, detail="Trip not found")
        return trips[trip_id]

    return router


def _install_test_routes(app: FastAPI) -> None:
    @app.get("/boom")
    def boom() -> None:
        raise RuntimeError("synchronous failure")

    @app.get("/boom-async")
    async def boom_async() -> None:
        await asyncio.sleep(0)
        raise ValueError("asynchronous failure")

    @app.get("/sleep/{delay_ms}")
    async def sleep(delay_ms: int) -> dict[str, int]:
        await asyncio.sleep(delay_ms / 1000)
        return {"slept_ms": delay_ms}


@pytest.fixture
def settings() -> Settings:
    return Settings(
        port=3001,
        collect_default_metrics=False,
        log_format="text",
        span_timeout_seconds=5,
    )


@pytest.fixture
def span_exporter() -> InMemorySpanExporter:
    return InMemorySpanExporter()


@pytest.fixture
def tracer_provider(span_exporter: InMemorySpanExporter) -> TracerProvider:
    provider = TracerProvider()
    provider.add_span_processor(SimpleSpanProcessor(span_exporter))
    return provider


@pytest.fixture
def make_app(settings: Settings, tracer_provider: TracerProvider) -> Callable[..., FastAPI]:
    def factory(**overrides: object) -> FastAPI:
        app_settings = settings.model_copy(update=overrides) if overrides else settings
        app = create_app(
            app_settings,
            routers=[_build_trip_router()],
            tracer_provider=tracer_provider,
        )
        _install_test_routes(app)
        return app

    return factory


@pytest.fixture
def app(make_app: Callable[..., FastAPI]) -> FastAPI:
    return make_app()


@pytest.fixture
def client(app: FastAPI):
    with TestClient(app) as test_client:
        yield test_client
