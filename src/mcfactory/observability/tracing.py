"""
OpenTelemetry tracing integration.

Spans are created around pipeline runs and provider calls. Without an OTLP
endpoint the tracer provider records nothing beyond the in-process spans,
so tracing is always safe to leave on.
"""

import functools
import inspect
from collections.abc import Callable
from contextlib import contextmanager
from typing import Any

from opentelemetry import trace
from opentelemetry.sdk.resources import Resource
from opentelemetry.sdk.trace import TracerProvider
from opentelemetry.sdk.trace.export import BatchSpanProcessor
from opentelemetry.trace import NoOpTracer, Status, StatusCode

from .logging import get_logger

logger = get_logger(__name__)


class TracingManager:
    """Manages OpenTelemetry tracing configuration and utilities."""

    def __init__(self, service_name: str = "mcfactory", service_version: str = "1.0.0"):
        self.service_name = service_name
        self.service_version = service_version
        self.tracer_provider: TracerProvider | None = None
        self.tracer: trace.Tracer = NoOpTracer()
        self._initialized = False

    def initialize(self, otlp_endpoint: str | None = None) -> None:
        """Install an SDK tracer provider, exporting over OTLP when configured."""
        if self._initialized:
            return

        resource = Resource.create(
            {"service.name": self.service_name, "service.version": self.service_version}
        )
        self.tracer_provider = TracerProvider(resource=resource)

        if otlp_endpoint:
            from opentelemetry.exporter.otlp.proto.grpc.trace_exporter import OTLPSpanExporter

            self.tracer_provider.add_span_processor(
                BatchSpanProcessor(OTLPSpanExporter(endpoint=otlp_endpoint))
            )
            logger.info("OTLP span export enabled", endpoint=otlp_endpoint)

        self.tracer = self.tracer_provider.get_tracer(self.service_name, self.service_version)
        self._initialized = True

    @contextmanager
    def span(self, name: str, attributes: dict[str, Any] | None = None):
        """Context manager for creating spans."""
        with self.tracer.start_as_current_span(name, record_exception=False) as span:
            for key, value in (attributes or {}).items():
                span.set_attribute(key, str(value))
            try:
                yield span
            except Exception as e:
                span.record_exception(e)
                span.set_status(Status(StatusCode.ERROR, str(e)))
                raise

    def shutdown(self) -> None:
        if self.tracer_provider:
            self.tracer_provider.shutdown()
        self._initialized = False


_tracing_manager: TracingManager | None = None


def setup_tracing(
    service_name: str = "mcfactory",
    service_version: str = "1.0.0",
    otlp_endpoint: str | None = None,
) -> TracingManager:
    """Setup global tracing manager."""
    global _tracing_manager
    _tracing_manager = TracingManager(service_name, service_version)
    _tracing_manager.initialize(otlp_endpoint)
    return _tracing_manager


def get_tracing_manager() -> TracingManager:
    """Get global tracing manager (no-op tracer until setup_tracing is called)."""
    global _tracing_manager
    if _tracing_manager is None:
        _tracing_manager = TracingManager()
    return _tracing_manager


def trace_span(name: str | None = None, attributes: dict[str, Any] | None = None):
    """Decorator for automatic span creation around sync or async callables."""

    def decorator(func: Callable) -> Callable:
        span_name = name or f"{func.__module__}.{func.__qualname__}"

        @functools.wraps(func)
        async def async_wrapper(*args, **kwargs):
            with get_tracing_manager().span(span_name, attributes) as span:
                result = await func(*args, **kwargs)
                if hasattr(result, "success"):
                    span.set_attribute("result.success", bool(result.success))
                return result

        @functools.wraps(func)
        def sync_wrapper(*args, **kwargs):
            with get_tracing_manager().span(span_name, attributes):
                return func(*args, **kwargs)

        return async_wrapper if inspect.iscoroutinefunction(func) else sync_wrapper

    return decorator
