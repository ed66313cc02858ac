"""OpenTelemetry tracing setup and per-request span lifecycle.

Spans are pushed through a batch processor so exporter latency or outages
never reach the request path.
"""

from __future__ import annotations

import asyncio
import logging
import time
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Callable, Mapping, Optional, Sequence

from opentelemetry import trace
from opentelemetry.context import Context
from opentelemetry.exporter.otlp.proto.http.trace_exporter import OTLPSpanExporter
from opentelemetry.sdk.resources import SERVICE_NAME, Resource
from opentelemetry.sdk.trace import ReadableSpan, TracerProvider
from opentelemetry.sdk.trace.export import (
    BatchSpanProcessor,
    ConsoleSpanExporter,
    SpanExporter,
    SpanExportResult,
)
from opentelemetry.trace import Span, SpanKind, Status, StatusCode
from opentelemetry.trace.propagation.tracecontext import TraceContextTextMapPropagator

from trip_backend.config.settings import Settings
from trip_backend.exceptions import ExporterUnavailable

logger = logging.getLogger(__name__)

_propagator = TraceContextTextMapPropagator()


class SpanStatus(str, Enum):
    OK = "ok"
    ERROR = "error"
    INCOMPLETE = "incomplete"


@dataclass(frozen=True)
class SpanRecord:
    """A finished span as handed to the trace exporter."""

    trace_id: str
    span_id: str
    parent_id: Optional[str]
    name: str
    start_time: int
    end_time: int
    attributes: dict[str, Any]
    status: SpanStatus


@dataclass(eq=False)
class SpanHandle:
    """One started span and its bookkeeping."""

    span: Span
    name: str
    parent_id: Optional[str]
    start_time: int
    attributes: dict[str, Any] = field(default_factory=dict)
    ended: bool = False
    status: Optional[SpanStatus] = None
    timeout: Optional[asyncio.TimerHandle] = None

    @property
    def trace_id(self) -> str:
        return format(self.span.get_span_context().trace_id, "032x")

    @property
    def span_id(self) -> str:
        return format(self.span.get_span_context().span_id, "016x")


class BestEffortSpanExporter(SpanExporter):
    """Forward spans to ``exporter`` and drop them if it is unavailable."""

    def __init__(self, exporter: SpanExporter) -> None:
        self._exporter = exporter

    def export(self, spans: Sequence[ReadableSpan]) -> SpanExportResult:
        try:
            self._push(spans)
        except ExporterUnavailable as exc:
            logger.debug("Dropping %d spans: %s", len(spans), exc)
            return SpanExportResult.FAILURE
        return SpanExportResult.SUCCESS

    def _push(self, spans: Sequence[ReadableSpan]) -> None:
        try:
            result = self._exporter.export(spans)
        except Exception as exc:
            raise ExporterUnavailable(str(exc)) from exc
        if result is not SpanExportResult.SUCCESS:
            raise ExporterUnavailable(f"exporter returned {result.name}")

    def shutdown(self) -> None:
        self._exporter.shutdown()

    def force_flush(self, timeout_millis: int = 30000) -> bool:
        return self._exporter.force_flush(timeout_millis)


def setup_tracing(settings: Settings) -> TracerProvider:
    """Build the tracer provider for this service.

    Spans are exported over OTLP/HTTP when ``otlp_endpoint`` is configured
    and to stdout when ``trace_console_export`` is set. The provider is not
    installed globally; it is handed to the span manager explicitly.
    """

    resource = Resource.create({SERVICE_NAME: settings.service_name})
    provider = TracerProvider(resource=resource)

    if settings.otlp_endpoint:
        otlp_exporter = OTLPSpanExporter(
            endpoint=settings.otlp_endpoint,
            timeout=settings.otlp_timeout_seconds,
        )
        provider.add_span_processor(BatchSpanProcessor(BestEffortSpanExporter(otlp_exporter)))
        logger.info("Exporting spans to %s", settings.otlp_endpoint)

    if settings.trace_console_export:
        provider.add_span_processor(BatchSpanProcessor(ConsoleSpanExporter()))

    return provider


def extract_context(headers: Mapping[str, str]) -> Context:
    """Extract a W3C trace context (traceparent/tracestate) from headers."""

    return _propagator.extract(carrier=dict(headers))


class SpanLifecycleManager:
    """Start, annotate and end spans, each exactly once.

    Every started span arms a timer on the running event loop. If the span is
    still open when it fires, ``on_timeout`` is called when given, otherwise
    the span is force-closed with status ``incomplete``.
    """

    def __init__(
        self,
        tracer_provider: trace.TracerProvider,
        *,
        timeout_seconds: float = 30.0,
        on_end: Optional[Callable[[SpanRecord], None]] = None,
    ) -> None:
        self._tracer = tracer_provider.get_tracer("trip_backend")
        self._timeout_seconds = timeout_seconds
        self._on_end = on_end
        self._open: set[SpanHandle] = set()
        self.started = 0
        self.ended = 0

    @property
    def open_count(self) -> int:
        return len(self._open)

    def start_span(
        self,
        name: str,
        *,
        context: Optional[Context] = None,
        kind: SpanKind = SpanKind.SERVER,
        attributes: Optional[Mapping[str, Any]] = None,
        on_timeout: Optional[Callable[[SpanHandle], None]] = None,
    ) -> SpanHandle:
        span = self._tracer.start_span(name, context=context, kind=kind, attributes=attributes)
        parent = getattr(span, "parent", None)
        handle = SpanHandle(
            span=span,
            name=name,
            parent_id=format(parent.span_id, "016x") if parent is not None else None,
            start_time=getattr(span, "start_time", None) or time.time_ns(),
            attributes=dict(attributes or {}),
        )
        self.started += 1
        self._open.add(handle)

        try:
            loop = asyncio.get_running_loop()
        except RuntimeError:
            logger.debug("No running event loop; span '%s' has no force-close timer", name)
        else:
            callback = on_timeout or self.force_close
            handle.timeout = loop.call_later(self._timeout_seconds, self._expire, handle, callback)
        return handle

    def set_attribute(self, handle: SpanHandle, key: str, value: Any) -> None:
        """Set ``key`` on the span; the last write wins."""

        if handle.ended:
            logger.warning("Ignoring attribute '%s' on ended span '%s'", key, handle.name)
            return
        handle.attributes[key] = value
        handle.span.set_attribute(key, value)

    def end(
        self,
        handle: SpanHandle,
        status: SpanStatus = SpanStatus.OK,
        description: Optional[str] = None,
    ) -> Optional[SpanRecord]:
        """Finalize the span and forward it to the exporter.

        A second call on the same handle is ignored with a warning.
        """

        if handle.ended:
            logger.warning(
                "Span '%s' already ended; ignoring duplicate end",
                handle.name,
                extra={"span_id": handle.span_id, "trace_id": handle.trace_id},
            )
            return None
        handle.ended = True
        handle.status = status
        if handle.timeout is not None:
            handle.timeout.cancel()
            handle.timeout = None

        if status is SpanStatus.OK:
            handle.span.set_status(Status(StatusCode.OK))
        else:
            handle.span.set_status(Status(StatusCode.ERROR, description or status.value))
        handle.span.end()

        self._open.discard(handle)
        self.ended += 1
        record = SpanRecord(
            trace_id=handle.trace_id,
            span_id=handle.span_id,
            parent_id=handle.parent_id,
            name=handle.name,
            start_time=handle.start_time,
            end_time=getattr(handle.span, "end_time", None) or time.time_ns(),
            attributes=dict(handle.attributes),
            status=status,
        )
        if self._on_end is not None:
            self._on_end(record)
        return record

    def force_close(self, handle: SpanHandle) -> Optional[SpanRecord]:
        """Close a span whose completion event never arrived."""

        if handle.ended:
            return None
        logger.warning(
            "Span '%s' was not closed within %.1fs; force-closing as incomplete",
            handle.name,
            self._timeout_seconds,
            extra={"span_id": handle.span_id, "trace_id": handle.trace_id},
        )
        return self.end(handle, SpanStatus.INCOMPLETE, "incomplete")

    def _expire(self, handle: SpanHandle, callback: Callable[[SpanHandle], None]) -> None:
        handle.timeout = None
        if not handle.ended:
            callback(handle)
