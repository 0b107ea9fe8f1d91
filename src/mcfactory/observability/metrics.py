"""
Pipeline and provider metrics on top of OpenTelemetry.

The collector keeps OTel instruments for export plus a small in-process
aggregate (per step type and per provider) used by diagnostics and tests.
"""

import time
from collections import defaultdict
from contextlib import contextmanager
from typing import Any

from opentelemetry.metrics import Counter, Histogram, Meter, NoOpMeter
from opentelemetry.sdk.metrics import MeterProvider
from opentelemetry.sdk.metrics.export import MetricReader, PeriodicExportingMetricReader
from opentelemetry.sdk.resources import Resource

from .logging import get_logger

logger = get_logger(__name__)


class MetricsCollector:
    """Centralized metrics collection and management."""

    def __init__(self, meter: Meter):
        self.meter = meter
        self._counters: dict[str, Counter] = {}
        self._histograms: dict[str, Histogram] = {}

        self._step_calls: dict[str, int] = defaultdict(int)
        self._step_failures: dict[str, int] = defaultdict(int)
        self._step_duration_totals: dict[str, float] = defaultdict(float)
        self._provider_calls: dict[str, int] = defaultdict(int)
        self._provider_failures: dict[str, int] = defaultdict(int)
        self._retries: dict[str, int] = defaultdict(int)
        self._fallbacks: dict[str, int] = defaultdict(int)
        self._circuit_opens: dict[str, int] = defaultdict(int)

        self._setup_default_metrics()

    def _setup_default_metrics(self):
        self._counters["steps_total"] = self.meter.create_counter(
            "mcfactory_steps_total", description="Total pipeline steps executed", unit="1"
        )
        self._counters["step_failures_total"] = self.meter.create_counter(
            "mcfactory_step_failures_total", description="Total failed pipeline steps", unit="1"
        )
        self._histograms["step_duration"] = self.meter.create_histogram(
            "mcfactory_step_duration_seconds", description="Step duration in seconds", unit="s"
        )

        self._counters["provider_calls_total"] = self.meter.create_counter(
            "mcfactory_provider_calls_total", description="Total provider invocations", unit="1"
        )
        self._counters["provider_failures_total"] = self.meter.create_counter(
            "mcfactory_provider_failures_total",
            description="Total failed provider invocations",
            unit="1",
        )
        self._counters["provider_retries_total"] = self.meter.create_counter(
            "mcfactory_provider_retries_total", description="Total provider retries", unit="1"
        )
        self._counters["provider_fallbacks_total"] = self.meter.create_counter(
            "mcfactory_provider_fallbacks_total",
            description="Total fallbacks to the next provider",
            unit="1",
        )
        self._counters["circuit_opened_total"] = self.meter.create_counter(
            "mcfactory_circuit_opened_total", description="Total circuit breaker opens", unit="1"
        )

        self._counters["pipelines_total"] = self.meter.create_counter(
            "mcfactory_pipelines_total", description="Total pipeline runs", unit="1"
        )
        self._histograms["pipeline_duration"] = self.meter.create_histogram(
            "mcfactory_pipeline_duration_seconds",
            description="Pipeline run duration in seconds",
            unit="s",
        )

    def counter(self, name: str, description: str = "", unit: str = "1") -> Counter:
        """Get or create a counter metric."""
        if name not in self._counters:
            self._counters[name] = self.meter.create_counter(
                f"mcfactory_{name}", description=description, unit=unit
            )
        return self._counters[name]

    def histogram(self, name: str, description: str = "", unit: str = "1") -> Histogram:
        """Get or create a histogram metric."""
        if name not in self._histograms:
            self._histograms[name] = self.meter.create_histogram(
                f"mcfactory_{name}", description=description, unit=unit
            )
        return self._histograms[name]

    def record_step(self, step_type: str, duration: float, success: bool) -> None:
        attributes = {"step_type": step_type, "success": str(success).lower()}
        self._counters["steps_total"].add(1, attributes)
        self._histograms["step_duration"].record(duration, attributes)
        if not success:
            self._counters["step_failures_total"].add(1, {"step_type": step_type})

        self._step_calls[step_type] += 1
        if not success:
            self._step_failures[step_type] += 1
        self._step_duration_totals[step_type] += duration

    def record_provider_call(self, provider: str, task_type: str, success: bool) -> None:
        attributes = {"provider": provider, "task_type": task_type}
        self._counters["provider_calls_total"].add(1, attributes)
        self._provider_calls[provider] += 1
        if not success:
            self._counters["provider_failures_total"].add(1, attributes)
            self._provider_failures[provider] += 1

    def record_retry(self, provider: str) -> None:
        self._counters["provider_retries_total"].add(1, {"provider": provider})
        self._retries[provider] += 1

    def record_fallback(self, provider: str) -> None:
        self._counters["provider_fallbacks_total"].add(1, {"provider": provider})
        self._fallbacks[provider] += 1

    def record_circuit_opened(self, provider: str) -> None:
        self._counters["circuit_opened_total"].add(1, {"provider": provider})
        self._circuit_opens[provider] += 1

    def record_pipeline(self, pipeline: str, duration: float, success: bool) -> None:
        attributes = {"pipeline": pipeline, "success": str(success).lower()}
        self._counters["pipelines_total"].add(1, attributes)
        self._histograms["pipeline_duration"].record(duration, attributes)

    def get_summary(self) -> dict[str, Any]:
        """Aggregated in-process view of what has been recorded so far."""
        steps = {}
        for step_type, calls in self._step_calls.items():
            steps[step_type] = {
                "calls": calls,
                "failures": self._step_failures[step_type],
                "avg_duration": self._step_duration_totals[step_type] / calls,
            }

        providers = {
            name: {
                "calls": calls,
                "failures": self._provider_failures[name],
                "retries": self._retries[name],
                "fallbacks": self._fallbacks[name],
                "circuit_opens": self._circuit_opens[name],
            }
            for name, calls in self._provider_calls.items()
        }
        return {"steps": steps, "providers": providers}


# Global metrics collector instance
_metrics_collector: MetricsCollector | None = None
_meter_provider: MeterProvider | None = None


def setup_metrics(meter: Meter) -> MetricsCollector:
    """Setup global metrics collector."""
    global _metrics_collector
    _metrics_collector = MetricsCollector(meter)
    return _metrics_collector


def setup_meter_provider(
    service_name: str = "mcfactory",
    service_version: str = "1.0.0",
    otlp_endpoint: str | None = None,
    readers: list[MetricReader] | None = None,
) -> MetricsCollector:
    """Install an SDK meter provider behind the global collector.

    Exports over OTLP when an endpoint is configured; extra ``readers``
    are attached as-is.
    """
    global _meter_provider
    shutdown_metrics()

    metric_readers = list(readers or [])
    if otlp_endpoint:
        from opentelemetry.exporter.otlp.proto.grpc.metric_exporter import OTLPMetricExporter

        metric_readers.append(
            PeriodicExportingMetricReader(OTLPMetricExporter(endpoint=otlp_endpoint))
        )
        logger.info("OTLP metric export enabled", endpoint=otlp_endpoint)

    resource = Resource.create({"service.name": service_name, "service.version": service_version})
    _meter_provider = MeterProvider(resource=resource, metric_readers=metric_readers)
    return setup_metrics(_meter_provider.get_meter(service_name, service_version))


def shutdown_metrics() -> None:
    """Flush and stop the SDK meter provider, if one was installed."""
    global _meter_provider
    if _meter_provider is not None:
        _meter_provider.shutdown()
        _meter_provider = None


def get_metrics_collector() -> MetricsCollector:
    """Get global metrics collector, creating a no-op backed one on first use."""
    global _metrics_collector
    if _metrics_collector is None:
        _metrics_collector = MetricsCollector(NoOpMeter("mcfactory"))
    return _metrics_collector


def counter(name: str, description: str = "", unit: str = "1") -> Counter:
    return get_metrics_collector().counter(name, description, unit)


def histogram(name: str, description: str = "", unit: str = "1") -> Histogram:
    return get_metrics_collector().histogram(name, description, unit)


@contextmanager
def timer(metric_name: str, attributes: dict[str, str] | None = None):
    """Context manager for timing operations."""
    start_time = time.perf_counter()
    try:
        yield
    finally:
        duration = time.perf_counter() - start_time
        histogram(f"{metric_name}_duration", "Operation duration", "s").record(
            duration, attributes or {}
        )
