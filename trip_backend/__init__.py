"""Trip backend service with request instrumentation."""

__version__ = "1.0.0"
