"""Application metrics backed by prometheus_client.

Metrics are registered once at startup into a per-application
``CollectorRegistry`` and live for the process lifetime. The wrappers here
add what the request pipeline needs on top of prometheus_client: label
values given as a mapping or a sequence, timers whose labels are completed
when they stop, and immutable snapshots for exposition.
"""

from __future__ import annotations

import logging
import math
import re
import time
from dataclasses import dataclass, field
from typing import Any, Iterable, Iterator, Mapping, Optional, Sequence, Union

from prometheus_client import (
    CollectorRegistry,
    GCCollector,
    PlatformCollector,
    ProcessCollector,
)
from prometheus_client import Counter as _PromCounter
from prometheus_client import Histogram as _PromHistogram
from prometheus_client.metrics_core import Metric

from trip_backend.exceptions import LabelSchemaError, RegistrationConflict

logger = logging.getLogger(__name__)

LabelValues = tuple[str, ...]
LabelInput = Optional[Union[Mapping[str, Any], Sequence[Any]]]

_METRIC_NAME = re.compile(r"^[a-zA-Z_:][a-zA-Z0-9_:]*$")
_LABEL_NAME = re.compile(r"^[a-zA-Z_][a-zA-Z0-9_]*$")

HTTP_LABEL_NAMES = ("method", "route", "status")


@dataclass(frozen=True)
class SeriesSnapshot:
    label_values: LabelValues
    value: float = 0
    bucket_counts: tuple[float, ...] = ()
    count: float = 0
    sum: float = 0.0


@dataclass(frozen=True)
class MetricSnapshot:
    """Immutable copy of one metric taken for exposition."""

    name: str
    help: str
    kind: str
    label_names: tuple[str, ...]
    series: tuple[SeriesSnapshot, ...]
    bucket_bounds: tuple[float, ...] = ()


class _Metric:
    kind = "untyped"

    def __init__(self, collector, name: str, help_text: str, label_names: tuple[str, ...]) -> None:
        self.collector = collector
        self.name = name
        self.help = help_text
        self.label_names = label_names

    def _key(self, label_values: LabelInput) -> LabelValues:
        """Normalise label values into a tuple ordered by the label schema."""

        if label_values is None:
            label_values = ()
        if isinstance(label_values, Mapping):
            if set(label_values) != set(self.label_names):
                raise LabelSchemaError(
                    f"Metric '{self.name}' expects labels {list(self.label_names)}, "
                    f"got {sorted(label_values)}"
                )
            return tuple(str(label_values[name]) for name in self.label_names)
        if isinstance(label_values, (str, bytes)):
            raise LabelSchemaError(f"Metric '{self.name}' label values must be a sequence or mapping")
        values = tuple(label_values)
        if len(values) != len(self.label_names):
            raise LabelSchemaError(
                f"Metric '{self.name}' expects {len(self.label_names)} label values, got {len(values)}"
            )
        return tuple(str(value) for value in values)

    def _child(self, label_values: LabelInput):
        key = self._key(label_values)
        return self.collector.labels(*key) if self.label_names else self.collector

    def _family(self) -> Metric:
        (family,) = self.collector.collect()
        return family

    def _grouped(self, family: Metric) -> Iterator[tuple[LabelValues, dict[str, list]]]:
        """Yield each series of ``family`` with its samples keyed by sample name."""

        series: dict[LabelValues, dict[str, list]] = {}
        for sample in family.samples:
            key = tuple(sample.labels[name] for name in self.label_names)
            series.setdefault(key, {}).setdefault(sample.name, []).append(sample)
        yield from series.items()

    def snapshot(self, family: Optional[Metric] = None) -> MetricSnapshot:
        raise NotImplementedError


class Counter(_Metric):
    """Monotonic counter broken down by label values."""

    kind = "counter"

    def __init__(self, name: str, help_text: str, label_names: tuple[str, ...]) -> None:
        if name.endswith("_total"):
            raise ValueError(f"Counter '{name}' is exposed verbatim and cannot end in '_total'")
        collector = _PromCounter(name, help_text, labelnames=label_names, registry=None)
        super().__init__(collector, name, help_text, label_names)

    def increment(self, label_values: LabelInput = None, amount: float = 1) -> None:
        """Add ``amount`` to the series, creating it on first use."""

        if amount < 0:
            raise ValueError(f"Counter '{self.name}' cannot be decremented")
        self._child(label_values).inc(amount)

    def value(self, label_values: LabelInput = None) -> float:
        key = self._key(label_values)
        for series in self.snapshot().series:
            if series.label_values == key:
                return series.value
        return 0

    def snapshot(self, family: Optional[Metric] = None) -> MetricSnapshot:
        family = family if family is not None else self._family()
        total = f"{self.name}_total"
        series = tuple(
            SeriesSnapshot(label_values=key, value=samples[total][0].value)
            for key, samples in self._grouped(family)
            if total in samples
        )
        return MetricSnapshot(self.name, self.help, self.kind, self.label_names, series)


class Timer:
    """Measures elapsed time from creation and records it on ``observe``.

    ``observe`` must be called at most once per timer; a second call records a
    second observation.
    """

    def __init__(self, histogram: "Histogram", label_values: LabelInput = None) -> None:
        self._histogram = histogram
        self._label_values = label_values
        self._start = time.perf_counter()

    @property
    def start(self) -> float:
        return self._start

    def elapsed(self) -> float:
        return time.perf_counter() - self._start

    def observe(self, label_values: LabelInput = None) -> float:
        """Record the elapsed seconds and return them.

        Labels given here complete or replace the ones given at start.
        """

        labels = label_values
        if isinstance(self._label_values, Mapping) and isinstance(label_values, Mapping):
            labels = {**self._label_values, **label_values}
        elif label_values is None:
            labels = self._label_values
        duration = self.elapsed()
        self._histogram.observe(duration, labels)
        return duration


class Histogram(_Metric):
    """Distribution of observations over cumulative buckets."""

    kind = "histogram"

    def __init__(
        self,
        name: str,
        help_text: str,
        label_names: tuple[str, ...],
        bucket_bounds: Iterable[float],
    ) -> None:
        if "le" in label_names:
            raise ValueError(f"Histogram '{name}' cannot use the reserved label 'le'")
        bounds = tuple(float(bound) for bound in bucket_bounds)
        if not bounds:
            raise ValueError(f"Histogram '{name}' needs at least one bucket bound")
        if any(math.isinf(bound) or math.isnan(bound) for bound in bounds):
            raise ValueError(f"Histogram '{name}' bucket bounds must be finite; +Inf is implicit")
        if any(lower >= upper for lower, upper in zip(bounds, bounds[1:])):
            raise ValueError(f"Histogram '{name}' bucket bounds must be strictly increasing")
        collector = _PromHistogram(name, help_text, labelnames=label_names, buckets=bounds, registry=None)
        super().__init__(collector, name, help_text, label_names)
        self.bucket_bounds = bounds

    def observe(self, value: float, label_values: LabelInput = None) -> None:
        """Record ``value`` in every bucket whose bound is at least ``value``."""

        self._child(label_values).observe(float(value))

    def start_timer(self, label_values: LabelInput = None) -> Timer:
        return Timer(self, label_values)

    def series(self, label_values: LabelInput = None) -> SeriesSnapshot:
        key = self._key(label_values)
        for series in self.snapshot().series:
            if series.label_values == key:
                return series
        return SeriesSnapshot(label_values=key, bucket_counts=(0,) * len(self.bucket_bounds))

    def snapshot(self, family: Optional[Metric] = None) -> MetricSnapshot:
        family = family if family is not None else self._family()
        series = []
        for key, samples in self._grouped(family):
            buckets = [sample for sample in samples.get(f"{self.name}_bucket", ()) if sample.labels["le"] != "+Inf"]
            count = samples.get(f"{self.name}_count")
            total = samples.get(f"{self.name}_sum")
            series.append(
                SeriesSnapshot(
                    label_values=key,
                    bucket_counts=tuple(sample.value for sample in buckets),
                    count=count[0].value if count else 0,
                    sum=total[0].value if total else 0.0,
                )
            )
        return MetricSnapshot(
            self.name,
            self.help,
            self.kind,
            self.label_names,
            tuple(series),
            bucket_bounds=self.bucket_bounds,
        )


class MetricRegistry:
    """Owns every named metric of the process, in registration order.

    When ``default_collectors`` is enabled, prometheus_client's process,
    platform and GC collectors are registered ahead of application metrics
    and their names are reserved.
    """

    def __init__(self, *, default_collectors: bool = False) -> None:
        self.collector_registry = CollectorRegistry(auto_describe=True)
        self.default_collectors = default_collectors
        self._metrics: dict[str, _Metric] = {}
        if default_collectors:
            ProcessCollector(registry=self.collector_registry)
            PlatformCollector(registry=self.collector_registry)
            GCCollector(registry=self.collector_registry)

    def register_counter(self, name: str, help_text: str, label_names: Iterable[str] = ()) -> Counter:
        return self._register(Counter(name, help_text, self._validate(name, label_names)))

    def register_histogram(
        self,
        name: str,
        help_text: str,
        label_names: Iterable[str] = (),
        bucket_bounds: Iterable[float] = (),
    ) -> Histogram:
        return self._register(Histogram(name, help_text, self._validate(name, label_names), bucket_bounds))

    def get(self, name: str) -> _Metric:
        return self._metrics[name]

    def __contains__(self, name: str) -> bool:
        return name in self._metrics

    def __iter__(self):
        return iter(list(self._metrics.values()))

    def collect(self) -> Iterator[Metric]:
        """Every metric family in registration order, default collectors first."""

        return iter(self.collector_registry.collect())

    def snapshot(self) -> list[MetricSnapshot]:
        """Copy every application metric's current state without mutating it."""

        return [metric.snapshot() for metric in list(self._metrics.values())]

    @staticmethod
    def _validate(name: str, label_names: Iterable[str]) -> tuple[str, ...]:
        if not _METRIC_NAME.match(name):
            raise ValueError(f"Invalid metric name '{name}'")
        labels = tuple(label_names)
        for label in labels:
            if not _LABEL_NAME.match(label) or label.startswith("__"):
                raise ValueError(f"Invalid label name '{label}' for metric '{name}'")
        if len(set(labels)) != len(labels):
            raise ValueError(f"Duplicate label names for metric '{name}'")
        return labels

    def _register(self, metric):
        if metric.name in self._metrics:
            raise RegistrationConflict(metric.name)
        try:
            self.collector_registry.register(metric.collector)
        except ValueError as exc:
            raise RegistrationConflict(metric.name) from exc
        self._metrics[metric.name] = metric
        logger.debug("Registered %s '%s'", metric.kind, metric.name)
        return metric


@dataclass
class HttpMetrics:
    """The request histogram and counter recorded by the middleware."""

    registry: MetricRegistry
    bucket_bounds: Sequence[float]
    request_duration: Histogram = field(init=False)
    request_count: Counter = field(init=False)

    def __post_init__(self) -> None:
        self.request_duration = self.registry.register_histogram(
            "http_request_duration_seconds",
            "Duration of HTTP requests in seconds",
            HTTP_LABEL_NAMES,
            self.bucket_bounds,
        )
        self.request_count = self.registry.register_counter(
            "http_request_count",
            "Total number of HTTP requests",
            HTTP_LABEL_NAMES,
        )
