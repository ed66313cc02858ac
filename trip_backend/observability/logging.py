"""Logging helpers that provide structured, correlated records."""

from __future__ import annotations

import logging
from contextvars import ContextVar, Token
from logging.config import dictConfig
from typing import Any

import structlog

from trip_backend.config.settings import Settings

_CORRELATION_ID: ContextVar[str] = ContextVar("correlation_id", default="-")

TEXT_FORMAT = "%(asctime)s | %(levelname)s | %(name)s | correlation_id=%(correlation_id)s | %(message)s"


class CorrelationIdFilter(logging.Filter):
    """Inject the current correlation id into log records."""

    def filter(self, record: logging.LogRecord) -> bool:
        if not getattr(record, "correlation_id", None):
            record.correlation_id = _CORRELATION_ID.get()
        return True


def _drop_formatter_attrs(_logger: Any, _method_name: str, event_dict: dict[str, Any]) -> dict[str, Any]:
    # Left on the record by text formatters that ran before this one.
    event_dict.pop("asctime", None)
    event_dict.pop("message", None)
    return event_dict


class JsonFormatter(structlog.stdlib.ProcessorFormatter):
    """Render a record as one JSON object per line.

    Structured fields passed through ``extra`` (method, url, status, ...) are
    emitted as top-level keys next to the timestamp, level and message.
    """

    def __init__(self) -> None:
        super().__init__(
            foreign_pre_chain=[
                structlog.stdlib.add_log_level,
                structlog.stdlib.add_logger_name,
                structlog.processors.TimeStamper(fmt="iso", utc=True, key="timestamp"),
                structlog.stdlib.ExtraAdder(),
                _drop_formatter_attrs,
                structlog.processors.format_exc_info,
            ],
            processors=[
                structlog.stdlib.ProcessorFormatter.remove_processors_meta,
                structlog.processors.EventRenamer("message"),
                structlog.processors.JSONRenderer(default=str),
            ],
            # Other handlers format the same record after this one.
            keep_exc_info=True,
        )


def bind_correlation_id(correlation_id: str) -> Token[str]:
    """Bind the provided correlation identifier in the current context."""

    return _CORRELATION_ID.set(correlation_id)


def reset_correlation_id(token: Token[str]) -> None:
    """Restore the previous correlation identifier from a token."""

    _CORRELATION_ID.reset(token)


def current_correlation_id() -> str:
    return _CORRELATION_ID.get()


def configure_logging(settings: Settings) -> None:
    """Configure application logging using the provided settings."""

    log_level = settings.log_level.upper()
    formatter = "json" if settings.log_format == "json" else "standard"

    handlers: dict[str, dict[str, Any]] = {}
    if settings.log_file:
        handlers["combined_file"] = {
            "class": "logging.FileHandler",
            "filename": settings.log_file,
            "formatter": "json",
            "filters": ["correlation_id"],
        }
    if settings.error_log_file:
        handlers["error_file"] = {
            "class": "logging.FileHandler",
            "filename": settings.error_log_file,
            "level": "ERROR",
            "formatter": "json",
            "filters": ["correlation_id"],
        }
    # Production relies on the file sinks unless none are configured.
    if settings.environment != "production" or not handlers:
        handlers["default"] = {
            "class": "logging.StreamHandler",
            "formatter": formatter,
            "filters": ["correlation_id"],
        }
    handler_names = list(handlers)

    dictConfig(
        {
            "version": 1,
            "disable_existing_loggers": False,
            "filters": {"correlation_id": {"()": CorrelationIdFilter}},
            "formatters": {
                "standard": {"format": TEXT_FORMAT},
                "json": {"()": JsonFormatter},
            },
            "handlers": handlers,
            "loggers": {
                "": {
                    "handlers": handler_names,
                    "level": log_level,
                },
                "uvicorn": {
                    "handlers": handler_names,
                    "level": log_level,
                    "propagate": False,
                },
                "uvicorn.error": {
                    "handlers": handler_names,
                    "level": log_level,
                    "propagate": False,
                },
                "uvicorn.access": {
                    "handlers": handler_names,
                    "level": log_level,
                    "propagate": False,
                },
            },
        }
    )

    logging.getLogger(__name__).debug("Logging configured at level %s", log_level)
