"""ASGI middleware that instruments every HTTP request.

Stages run in a fixed order: the correlator logs the request, the tracing
stage opens a span around the rest of the chain, the metrics stage starts
the duration timer, then the downstream app runs. Whichever completion
source fires first (response finished, handler error, client disconnect,
span timeout) finalizes the request in reverse order, exactly once.
"""

from __future__ import annotations

import asyncio
import logging
from functools import partial

from fastapi.responses import PlainTextResponse
from starlette.datastructures import MutableHeaders
from starlette.types import ASGIApp, Message, Receive, Scope, Send

from trip_backend.config.settings import Settings
from trip_backend.observability.context import (
    CompletionEvent,
    CompletionSource,
    RequestContext,
    RequestCorrelator,
)
from trip_backend.observability.logging import bind_correlation_id, reset_correlation_id
from trip_backend.observability.metrics import HttpMetrics
from trip_backend.observability.routes import RouteTable
from trip_backend.observability.tracing import SpanLifecycleManager, SpanStatus, extract_context

logger = logging.getLogger(__name__)

SPAN_NAME = "http_request"
# Status labels used when no response status was ever sent.
CLIENT_CLOSED_STATUS = 499
TIMED_OUT_STATUS = 504


class InstrumentationMiddleware:
    """Attach logs, a trace span and metric samples to each request."""

    def __init__(
        self,
        app: ASGIApp,
        *,
        settings: Settings,
        route_table: RouteTable,
        http_metrics: HttpMetrics,
        spans: SpanLifecycleManager,
    ) -> None:
        self.app = app
        self._settings = settings
        self._correlator = RequestCorrelator(route_table, request_id_header=settings.request_id_header)
        self._metrics = http_metrics
        self._spans = spans

    async def __call__(self, scope: Scope, receive: Receive, send: Send) -> None:
        if scope["type"] != "http":
            await self.app(scope, receive, send)
            return

        context = self._correlator.open(scope)
        token = bind_correlation_id(context.correlation_id)
        completion = CompletionEvent(partial(self._finalize, context))
        try:
            context.span = self._spans.start_span(
                SPAN_NAME,
                context=extract_context(context.headers),
                attributes={
                    "http.method": context.method,
                    "http.target": context.url,
                    "http.route": context.route,
                    "request.correlation_id": context.correlation_id,
                },
                on_timeout=lambda _handle: completion.fire(CompletionSource.TIMEOUT),
            )
            context.timer = self._metrics.request_duration.start_timer()
            await self._dispatch(scope, receive, send, context, completion)
        finally:
            reset_correlation_id(token)

    async def _dispatch(
        self,
        scope: Scope,
        receive: Receive,
        send: Send,
        context: RequestContext,
        completion: CompletionEvent,
    ) -> None:
        header_name = self._settings.request_id_header

        async def receive_wrapper() -> Message:
            message = await receive()
            if message["type"] == "http.disconnect":
                completion.fire(CompletionSource.CLOSE)
            return message

        async def send_wrapper(message: Message) -> None:
            if message["type"] == "http.response.start":
                context.status_code = int(message["status"])
                context.response_started = True
                message.setdefault("headers", [])
                MutableHeaders(scope=message).setdefault(header_name, context.correlation_id)
            await send(message)
            if message["type"] == "http.response.body" and not message.get("more_body", False):
                completion.fire(CompletionSource.FINISH)

        try:
            await self.app(scope, receive_wrapper, send_wrapper)
        except asyncio.CancelledError:
            completion.fire(CompletionSource.CLOSE)
            raise
        except Exception as exc:
            context.error = exc
            context.status_code = 500
            completion.fire(CompletionSource.ERROR)
            if context.response_started:
                # Headers are already on the wire; let the server abort the connection.
                raise
            response = PlainTextResponse(
                "Internal Server Error",
                status_code=500,
                headers={header_name: context.correlation_id},
            )
            await response(scope, receive, send)
        else:
            if not completion.fired:
                logger.warning(
                    "Handler returned without completing the response",
                    extra=context.log_fields(),
                )
                context.status_code = context.status_code or 500
                completion.fire(CompletionSource.ERROR)

    def _finalize(self, context: RequestContext, source: CompletionSource) -> None:
        status_code = context.status_code
        if status_code is None:
            status_code = TIMED_OUT_STATUS if source is CompletionSource.TIMEOUT else CLIENT_CLOSED_STATUS
        labels = {"method": context.method, "route": context.route, "status": str(status_code)}

        duration = context.timer.observe(labels) if context.timer is not None else 0.0
        self._metrics.request_count.increment(labels)

        if context.span is not None:
            self._spans.set_attribute(context.span, "http.status_code", status_code)
            if source is CompletionSource.TIMEOUT:
                self._spans.end(context.span, SpanStatus.INCOMPLETE, "incomplete")
            elif source is CompletionSource.CLOSE:
                self._spans.end(context.span, SpanStatus.ERROR, "client disconnected")
            elif context.error is not None:
                self._spans.end(context.span, SpanStatus.ERROR, repr(context.error))
            elif status_code >= 500:
                self._spans.end(context.span, SpanStatus.ERROR, f"HTTP {status_code}")
            else:
                self._spans.end(context.span)

        fields = context.log_fields(
            status=status_code,
            completion=source.value,
            duration_ms=round(duration * 1000, 2),
        )
        if source is CompletionSource.TIMEOUT:
            logger.warning("Request span leaked; force-closed after timeout", extra=fields)
        elif context.error is not None:
            logger.error(
                "Unhandled exception during request",
                exc_info=(type(context.error), context.error, context.error.__traceback__),
                extra=fields,
            )
        else:
            logger.info("Request completed", extra=fields)
