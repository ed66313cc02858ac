import asyncio
import logging

import httpx
import pytest
from fastapi import FastAPI
from fastapi.responses import StreamingResponse
from fastapi.testclient import TestClient
from opentelemetry.sdk.trace import TracerProvider
from opentelemetry.sdk.trace.export.in_memory_span_exporter import InMemorySpanExporter
from opentelemetry.trace import StatusCode
from starlette.routing import Router

from trip_backend.config.settings import Settings
from trip_backend.observability.context import CompletionEvent, CompletionSource
from trip_backend.observability.metrics import HttpMetrics, MetricRegistry
from trip_backend.observability.middleware import InstrumentationMiddleware
from trip_backend.observability.routes import UNMATCHED_ROUTE, RouteTable
from trip_backend.observability.tracing import SpanLifecycleManager


def _labels(route: str, status: int, method: str = "GET") -> dict[str, str]:
    return {"method": method, "route": route, "status": str(status)}


def _request_spans(exporter: InMemorySpanExporter):
    return [span for span in exporter.get_finished_spans() if span.name == "http_request"]


def test_hello_is_counted_and_timed(client: TestClient, span_exporter: InMemorySpanExporter) -> None:
    metrics = client.app.state.http_metrics

    response = client.get("/hello")

    assert response.status_code == 200
    assert response.text == "Hello World!"
    assert metrics.request_count.value(_labels("/hello", 200)) == 1
    assert metrics.request_duration.series(_labels("/hello", 200)).count == 1

    scrape = client.get("/metrics")
    assert 'http_request_count{method="GET",route="/hello",status="200"} 1.0' in scrape.text
    assert 'http_request_duration_seconds_count{method="GET",route="/hello",status="200"} 1.0' in scrape.text

    (span,) = [span for span in _request_spans(span_exporter) if span.attributes["http.route"] == "/hello"]
    assert span.status.status_code is StatusCode.OK
    assert span.attributes["http.status_code"] == 200


def test_span_duration_covers_histogram_duration(
    client: TestClient, span_exporter: InMemorySpanExporter
) -> None:
    client.get("/sleep/20")

    series = client.app.state.http_metrics.request_duration.series(_labels("/sleep/{delay_ms}", 200))
    (span,) = _request_spans(span_exporter)
    span_seconds = (span.end_time - span.start_time) / 1e9
    assert series.count == 1
    assert span_seconds >= series.sum


def test_synchronous_handler_error_is_finalized(
    client: TestClient, span_exporter: InMemorySpanExporter, caplog: pytest.LogCaptureFixture
) -> None:
    caplog.set_level(logging.INFO)
    spans = client.app.state.span_manager

    response = client.get("/boom")

    assert response.status_code == 500
    assert client.app.state.http_metrics.request_count.value(_labels("/boom", 500)) == 1
    (span,) = _request_spans(span_exporter)
    assert span.status.status_code is StatusCode.ERROR
    assert spans.started == spans.ended
    assert spans.open_count == 0
    errors = [record for record in caplog.records if record.levelno == logging.ERROR]
    assert errors and errors[0].status == 500


def test_asynchronous_handler_error_is_finalized(
    client: TestClient, span_exporter: InMemorySpanExporter
) -> None:
    response = client.get("/boom-async")

    assert response.status_code == 500
    assert response.headers["X-Request-ID"]
    assert client.app.state.http_metrics.request_count.value(_labels("/boom-async", 500)) == 1
    (span,) = _request_spans(span_exporter)
    assert span.status.status_code is StatusCode.ERROR


def test_route_labels_use_templates(client: TestClient) -> None:
    metrics = client.app.state.http_metrics

    assert client.get("/trip/1").status_code == 200
    assert client.get("/trip/999").status_code == 404
    assert client.post("/trip", json={"destination": "Porto"}).status_code == 201
    assert client.get("/no/such/path").status_code == 404

    assert metrics.request_count.value(_labels("/trip/{trip_id}", 200)) == 1
    assert metrics.request_count.value(_labels("/trip/{trip_id}", 404)) == 1
    assert metrics.request_count.value(_labels("/trip", 201, method="POST")) == 1
    assert metrics.request_count.value(_labels(UNMATCHED_ROUTE, 404)) == 1
    scrape = client.get("/metrics").text
    assert "/trip/999" not in scrape
    assert "/no/such/path" not in scrape


def test_correlation_id_is_echoed_and_logged(client: TestClient, caplog: pytest.LogCaptureFixture) -> None:
    caplog.set_level(logging.INFO)

    generated = client.get("/hello")
    supplied = client.get("/hello", headers={"X-Request-ID": "trip-req-42"})

    assert generated.headers["X-Request-ID"]
    assert supplied.headers["X-Request-ID"] == "trip-req-42"
    received = [record for record in caplog.records if record.getMessage() == "Received request for /hello"]
    completed = [record for record in caplog.records if record.getMessage() == "Request completed"]
    assert len(received) == len(completed) == 2
    assert completed[-1].correlation_id == "trip-req-42"
    assert completed[-1].status == 200
    assert completed[-1].method == "GET"
    assert completed[-1].url == "/hello"


def test_streamed_response_completes_once(app: FastAPI, span_exporter: InMemorySpanExporter) -> None:
    async def chunks():
        for chunk in (b"a", b"b", b"c"):
            yield chunk

    @app.get("/stream")
    async def stream() -> StreamingResponse:
        return StreamingResponse(chunks(), media_type="text/plain")

    with TestClient(app) as client:
        response = client.get("/stream")

    assert response.text == "abc"
    assert app.state.http_metrics.request_count.value(_labels("/stream", 200)) == 1
    assert len(_request_spans(span_exporter)) == 1


@pytest.mark.asyncio
async def test_concurrent_burst_is_counted_exactly(app: FastAPI) -> None:
    transport = httpx.ASGITransport(app=app)
    async with httpx.AsyncClient(transport=transport, base_url="http://testserver") as client:
        # Descending delays so later requests finish first.
        responses = await asyncio.gather(*(client.get(f"/sleep/{50 - index}") for index in range(50)))
        scrape = await client.get("/metrics")

    assert all(response.status_code == 200 for response in responses)
    metrics = app.state.http_metrics
    spans = app.state.span_manager
    assert metrics.request_count.value(_labels("/sleep/{delay_ms}", 200)) == 50
    assert metrics.request_duration.series(_labels("/sleep/{delay_ms}", 200)).count == 50
    assert 'http_request_count{method="GET",route="/sleep/{delay_ms}",status="200"} 50.0' in scrape.text
    assert spans.started == spans.ended == 51
    assert spans.open_count == 0


@pytest.mark.asyncio
async def test_span_timeout_finalizes_request(make_app, span_exporter: InMemorySpanExporter) -> None:
    app = make_app(span_timeout_seconds=0.05)
    transport = httpx.ASGITransport(app=app)
    async with httpx.AsyncClient(transport=transport, base_url="http://testserver") as client:
        response = await client.get("/sleep/200")

    assert response.status_code == 200
    metrics = app.state.http_metrics
    assert metrics.request_count.value(_labels("/sleep/{delay_ms}", 504)) == 1
    assert metrics.request_count.value(_labels("/sleep/{delay_ms}", 200)) == 0
    (span,) = _request_spans(span_exporter)
    assert span.status.description == "incomplete"
    assert app.state.span_manager.open_count == 0


@pytest.mark.asyncio
async def test_client_disconnect_triggers_completion(tracer_provider: TracerProvider) -> None:
    async def abandoned(scope, receive, send) -> None:
        message = await receive()
        assert message["type"] == "http.disconnect"

    registry = MetricRegistry()
    metrics = HttpMetrics(registry, [0.1, 1.0])
    spans = SpanLifecycleManager(tracer_provider)
    middleware = InstrumentationMiddleware(
        abandoned,
        settings=Settings(port=3001),
        route_table=RouteTable(Router()),
        http_metrics=metrics,
        spans=spans,
    )
    scope = {
        "type": "http",
        "method": "GET",
        "path": "/trip/1",
        "root_path": "",
        "query_string": b"",
        "headers": [],
    }
    sent = []

    async def receive():
        return {"type": "http.disconnect"}

    async def send(message) -> None:
        sent.append(message)

    await middleware(scope, receive, send)

    assert sent == []
    assert metrics.request_count.value(_labels(UNMATCHED_ROUTE, 499)) == 1
    assert spans.started == spans.ended == 1


@pytest.mark.asyncio
async def test_non_http_scopes_pass_through(tracer_provider: TracerProvider) -> None:
    seen = []

    async def inner(scope, receive, send) -> None:
        seen.append(scope["type"])

    spans = SpanLifecycleManager(tracer_provider)
    middleware = InstrumentationMiddleware(
        inner,
        settings=Settings(port=3001),
        route_table=RouteTable(Router()),
        http_metrics=HttpMetrics(MetricRegistry(), [1.0]),
        spans=spans,
    )

    await middleware({"type": "lifespan"}, None, None)

    assert seen == ["lifespan"]
    assert spans.started == 0


def test_completion_event_fires_once() -> None:
    fired = []
    event = CompletionEvent(fired.append)

    assert event.fire(CompletionSource.FINISH) is True
    assert event.fire(CompletionSource.ERROR) is False
    assert event.fire(CompletionSource.TIMEOUT) is False

    assert fired == [CompletionSource.FINISH]
    assert event.source is CompletionSource.FINISH


def test_successful_request_span_is_ok(client: TestClient, span_exporter: InMemorySpanExporter) -> None:
    client.get("/trip/1")

    (span,) = _request_spans(span_exporter)
    assert span.status.status_code is StatusCode.OK
    assert client.app.state.span_manager.ended == 1


def _instrument(inner, tracer_provider: TracerProvider):
    metrics = HttpMetrics(MetricRegistry(), [0.1, 1.0])
    spans = SpanLifecycleManager(tracer_provider)
    middleware = InstrumentationMiddleware(
        inner,
        settings=Settings(port=3001),
        route_table=RouteTable(Router()),
        http_metrics=metrics,
        spans=spans,
    )
    return middleware, metrics, spans


def _http_scope(path: str = "/trip/1") -> dict:
    return {
        "type": "http",
        "method": "GET",
        "path": path,
        "root_path": "",
        "query_string": b"",
        "headers": [],
    }


async def _receive():
    return {"type": "http.request", "body": b"", "more_body": False}


@pytest.mark.asyncio
async def test_error_after_headers_propagates_and_is_recorded(
    tracer_provider: TracerProvider, span_exporter: InMemorySpanExporter
) -> None:
    async def half_sent(scope, receive, send) -> None:
        await send({"type": "http.response.start", "status": 200, "headers": []})
        await send({"type": "http.response.body", "body": b"partial", "more_body": True})
        raise RuntimeError("stream broke")

    middleware, metrics, spans = _instrument(half_sent, tracer_provider)
    sent = []

    async def send(message) -> None:
        sent.append(message)

    with pytest.raises(RuntimeError, match="stream broke"):
        await middleware(_http_scope(), _receive, send)

    assert [message["type"] for message in sent] == ["http.response.start", "http.response.body"]
    assert metrics.request_count.value(_labels(UNMATCHED_ROUTE, 500)) == 1
    assert metrics.request_count.value(_labels(UNMATCHED_ROUTE, 200)) == 0
    (span,) = _request_spans(span_exporter)
    assert span.status.status_code is StatusCode.ERROR
    assert spans.started == spans.ended == 1


@pytest.mark.asyncio
async def test_handler_returning_without_response_is_an_error(
    tracer_provider: TracerProvider,
    span_exporter: InMemorySpanExporter,
    caplog: pytest.LogCaptureFixture,
) -> None:
    caplog.set_level(logging.WARNING)

    async def silent(scope, receive, send) -> None:
        return None

    middleware, metrics, spans = _instrument(silent, tracer_provider)
    sent = []

    async def send(message) -> None:
        sent.append(message)

    await middleware(_http_scope(), _receive, send)

    assert sent == []
    assert metrics.request_count.value(_labels(UNMATCHED_ROUTE, 500)) == 1
    (span,) = _request_spans(span_exporter)
    assert span.status.status_code is StatusCode.ERROR
    assert spans.started == spans.ended == 1
    assert any(
        record.getMessage() == "Handler returned without completing the response" for record in caplog.records
    )
