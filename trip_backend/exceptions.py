"""Error taxonomy for the request instrumentation pipeline."""

from __future__ import annotations


class InstrumentationError(Exception):
    """Base class for instrumentation failures."""


class RegistrationConflict(InstrumentationError):
    """A metric name was registered twice. Fatal at startup."""

    def __init__(self, name: str) -> None:
        super().__init__(f"Metric '{name}' is already registered")
        self.name = name


class LabelSchemaError(InstrumentationError, ValueError):
    """Label values do not match the metric's registered label schema."""


class MetricsSerializationError(InstrumentationError):
    """The registry snapshot could not be rendered into exposition text."""


class MissingConfiguration(InstrumentationError):
    """Required configuration is absent. The process must not start serving."""


class ExporterUnavailable(InstrumentationError):
    """The trace exporter could not accept a batch of spans."""
