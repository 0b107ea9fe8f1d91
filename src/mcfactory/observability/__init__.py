"""
Observability for MCFactory: structured logging, engine events, metrics and tracing.

Usage:
    >>> from mcfactory.observability import get_logger, EventEmitter, RecordingSink
    >>>
    >>> logger = get_logger(__name__)
    >>> sink = RecordingSink()
    >>> emitter = EventEmitter([sink])
    >>> # pass the emitter to PipelineEngine / ResilientCaller

Configuration (environment):
    - MCF_OBSERVABILITY__LOG_LEVEL=INFO
    - MCF_OBSERVABILITY__ENABLE_METRICS=false
    - MCF_OBSERVABILITY__ENABLE_TRACING=true
    - MCF_OBSERVABILITY__OTLP_ENDPOINT=http://collector:4317
"""

from .events import EventEmitter, EventSink, EventType, MetricsSink, PipelineEvent, RecordingSink
from .logging import get_logger, setup_logging
from .metrics import (
    counter,
    get_metrics_collector,
    histogram,
    setup_meter_provider,
    setup_metrics,
    shutdown_metrics,
    timer,
)
from .tracing import get_tracing_manager, setup_tracing, trace_span

__all__ = [
    "get_logger",
    "setup_logging",
    "EventEmitter",
    "EventSink",
    "EventType",
    "MetricsSink",
    "PipelineEvent",
    "RecordingSink",
    "counter",
    "histogram",
    "timer",
    "get_metrics_collector",
    "setup_metrics",
    "setup_meter_provider",
    "shutdown_metrics",
    "get_tracing_manager",
    "setup_tracing",
    "trace_span",
]
