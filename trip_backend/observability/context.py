"""Per-request context and its single-delivery completion event."""

from __future__ import annotations

import logging
import time
import uuid
from dataclasses import dataclass, field
from enum import Enum
from typing import Callable, Optional

from starlette.datastructures import Headers
from starlette.types import Scope

from trip_backend.observability.metrics import Timer
from trip_backend.observability.routes import RouteTable
from trip_backend.observability.tracing import SpanHandle

logger = logging.getLogger(__name__)

_MAX_CORRELATION_ID_LENGTH = 128


class CompletionSource(str, Enum):
    FINISH = "finish"
    ERROR = "error"
    CLOSE = "close"
    TIMEOUT = "timeout"


@dataclass
class RequestContext:
    """Everything the instrumentation chain knows about one request."""

    correlation_id: str
    method: str
    route: str
    url: str
    headers: Headers
    start_time: float = field(default_factory=time.time)
    span: Optional[SpanHandle] = None
    timer: Optional[Timer] = None
    status_code: Optional[int] = None
    response_started: bool = False
    error: Optional[BaseException] = None

    def log_fields(self, **fields: object) -> dict[str, object]:
        return {
            "correlation_id": self.correlation_id,
            "method": self.method,
            "url": self.url,
            "route": self.route,
            **fields,
        }


class CompletionEvent:
    """Run a finalizer exactly once, for whichever source fires first.

    Later calls to :meth:`fire` are no-ops and return ``False``.
    """

    def __init__(self, finalizer: Callable[[CompletionSource], None]) -> None:
        self._finalizer = finalizer
        self.source: Optional[CompletionSource] = None

    @property
    def fired(self) -> bool:
        return self.source is not None

    def fire(self, source: CompletionSource) -> bool:
        if self.source is not None:
            return False
        self.source = source
        self._finalizer(source)
        return True


class RequestCorrelator:
    """Create the request context and log its arrival."""

    def __init__(self, route_table: RouteTable, *, request_id_header: str) -> None:
        self._route_table = route_table
        self._request_id_header = request_id_header

    def open(self, scope: Scope) -> RequestContext:
        headers = Headers(scope=scope)
        url = scope.get("path", "")
        if scope.get("query_string"):
            url = f"{url}?{scope['query_string'].decode('latin-1')}"

        context = RequestContext(
            correlation_id=self._correlation_id(headers),
            method=scope.get("method", ""),
            route=self._route_table.resolve(scope),
            url=url,
            headers=headers,
        )
        logger.info("Received request for %s", url, extra=context.log_fields())
        return context

    def _correlation_id(self, headers: Headers) -> str:
        inbound = headers.get(self._request_id_header)
        if inbound and len(inbound) <= _MAX_CORRELATION_ID_LENGTH and inbound.isprintable():
            return inbound
        return str(uuid.uuid4())
