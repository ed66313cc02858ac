"""Prometheus text exposition of the metric registry."""

from __future__ import annotations

import logging
from typing import Iterable, Iterator

from fastapi import FastAPI
from fastapi.responses import PlainTextResponse, Response
from prometheus_client import generate_latest
from prometheus_client.metrics_core import Metric
from prometheus_client.utils import floatToGoString

from trip_backend.exceptions import MetricsSerializationError
from trip_backend.observability.metrics import MetricRegistry, MetricSnapshot

logger = logging.getLogger(__name__)

CONTENT_TYPE = "text/plain; version=0.0.4; charset=utf-8"


def _escape_help(text: str) -> str:
    return text.replace("\\", "\\\\").replace("\n", "\\n")


def _escape_label_value(value: str) -> str:
    return value.replace("\\", "\\\\").replace("\n", "\\n").replace('"', '\\"')


def _format_labels(pairs: Iterable[tuple[str, str]]) -> str:
    rendered = ",".join(f'{name}="{_escape_label_value(value)}"' for name, value in pairs)
    return f"{{{rendered}}}" if rendered else ""


def _render_metric(snapshot: MetricSnapshot) -> Iterator[str]:
    yield f"# HELP {snapshot.name} {_escape_help(snapshot.help)}\n"
    yield f"# TYPE {snapshot.name} {snapshot.kind}\n"
    for series in snapshot.series:
        labels = list(zip(snapshot.label_names, series.label_values))
        if snapshot.kind == "counter":
            yield f"{snapshot.name}{_format_labels(labels)} {floatToGoString(series.value)}\n"
            continue
        for bound, count in zip(snapshot.bucket_bounds, series.bucket_counts):
            bucket_labels = _format_labels(labels + [("le", floatToGoString(bound))])
            yield f"{snapshot.name}_bucket{bucket_labels} {floatToGoString(count)}\n"
        inf_labels = _format_labels(labels + [("le", "+Inf")])
        yield f"{snapshot.name}_bucket{inf_labels} {floatToGoString(series.count)}\n"
        yield f"{snapshot.name}_sum{_format_labels(labels)} {floatToGoString(series.sum)}\n"
        yield f"{snapshot.name}_count{_format_labels(labels)} {floatToGoString(series.count)}\n"


class _SingleFamily:
    """Collector view over one already collected family."""

    def __init__(self, family: Metric) -> None:
        self._family = family

    def collect(self) -> list[Metric]:
        return [self._family]


def render(registry: MetricRegistry) -> bytes:
    """Serialize every registered metric, in registration order.

    Application metrics are rendered under their registered names, so
    counters carry no ``_total`` suffix and no ``_created`` samples. Families
    from the default collectors go through prometheus_client's own text
    format. The whole payload is built before it is returned, so a failure
    never yields a truncated body.
    """

    try:
        chunks: list[bytes] = []
        for family in registry.collect():
            metric = registry.get(family.name) if family.name in registry else None
            if metric is None:
                chunks.append(generate_latest(_SingleFamily(family)))
                continue
            text = "".join(_render_metric(metric.snapshot(family)))
            chunks.append(text.encode("utf-8"))
    except Exception as exc:
        raise MetricsSerializationError(f"Failed to serialize metrics: {exc}") from exc
    return b"".join(chunks)


def register_metrics_endpoint(app: FastAPI, registry: MetricRegistry) -> None:
    """Expose a Prometheus scrape endpoint on ``/metrics``."""

    @app.get("/metrics", include_in_schema=False)
    async def metrics_endpoint() -> Response:
        try:
            payload = render(registry)
        except MetricsSerializationError as exc:
            logger.error("Metrics scrape failed", extra={"error": str(exc)})
            return PlainTextResponse(str(exc), status_code=500)
        return Response(payload, media_type=CONTENT_TYPE)

    logger.info("Registered /metrics endpoint for Prometheus scraping")
