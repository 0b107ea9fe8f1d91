"""
Structured engine events.

The engine and the resilience layer only *emit* events; sinks decide what
to do with them. Every event is also written to the structured log, and the
built-in ``MetricsSink`` turns them into OpenTelemetry measurements.
"""

import time
from collections.abc import Iterable
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Protocol

from .logging import get_logger, get_trace_id
from .metrics import MetricsCollector, get_metrics_collector

logger = get_logger(__name__)


class EventType(Enum):
    """Kinds of events emitted during a pipeline run."""

    PIPELINE_STARTED = "pipeline_started"
    PIPELINE_FINISHED = "pipeline_finished"
    STEP_STARTED = "step_started"
    STEP_SUCCEEDED = "step_succeeded"
    STEP_FAILED = "step_failed"
    PROVIDER_RETRY = "provider_retry"
    PROVIDER_SKIPPED = "provider_skipped"
    PROVIDER_FALLBACK_USED = "provider_fallback_used"
    CIRCUIT_OPENED = "circuit_opened"
    CIRCUIT_HALF_OPEN = "circuit_half_open"
    CIRCUIT_CLOSED = "circuit_closed"


_WARNING_EVENTS = {
    EventType.STEP_FAILED,
    EventType.CIRCUIT_OPENED,
    EventType.PROVIDER_FALLBACK_USED,
}


@dataclass(frozen=True)
class PipelineEvent:
    """A single structured event."""

    type: EventType
    attributes: dict[str, Any] = field(default_factory=dict)
    timestamp: float = field(default_factory=time.time)
    trace_id: str | None = field(default_factory=get_trace_id)

    def to_dict(self) -> dict[str, Any]:
        return {
            "type": self.type.value,
            "timestamp": self.timestamp,
            "trace_id": self.trace_id,
            **self.attributes,
        }


class EventSink(Protocol):
    """Anything that consumes engine events."""

    def handle(self, event: PipelineEvent) -> None: ...


class MetricsSink:
    """Feeds events into the metrics collector."""

    def __init__(self, collector: MetricsCollector | None = None):
        self._collector = collector

    @property
    def collector(self) -> MetricsCollector:
        return self._collector or get_metrics_collector()

    def handle(self, event: PipelineEvent) -> None:
        attrs = event.attributes
        if event.type in (EventType.STEP_SUCCEEDED, EventType.STEP_FAILED):
            self.collector.record_step(
                attrs.get("step_type", "unknown"),
                attrs.get("duration", 0.0),
                event.type is EventType.STEP_SUCCEEDED,
            )
        elif event.type is EventType.PROVIDER_RETRY:
            self.collector.record_retry(attrs["provider"])
        elif event.type is EventType.PROVIDER_FALLBACK_USED:
            self.collector.record_fallback(attrs["provider"])
        elif event.type is EventType.CIRCUIT_OPENED:
            self.collector.record_circuit_opened(attrs["provider"])
        elif event.type is EventType.PIPELINE_FINISHED:
            self.collector.record_pipeline(
                attrs.get("pipeline", "-"), attrs.get("duration", 0.0), attrs.get("success", False)
            )


class RecordingSink:
    """Keeps every event in memory; handy for diagnostics and tests."""

    def __init__(self):
        self.events: list[PipelineEvent] = []

    def handle(self, event: PipelineEvent) -> None:
        self.events.append(event)

    def of_type(self, event_type: EventType) -> list[PipelineEvent]:
        return [e for e in self.events if e.type is event_type]


class EventEmitter:
    """Fans events out to sinks. A failing sink never breaks a run."""

    def __init__(self, sinks: Iterable[EventSink] | None = None):
        self._sinks: list[EventSink] = list(sinks) if sinks is not None else [MetricsSink()]

    def add_sink(self, sink: EventSink) -> None:
        self._sinks.append(sink)

    def emit(self, event_type: EventType, **attributes: Any) -> PipelineEvent:
        event = PipelineEvent(event_type, attributes)

        log = logger.warning if event_type in _WARNING_EVENTS else logger.debug
        log(event_type.value, op=event_type.value, **attributes)

        for sink in self._sinks:
            try:
                sink.handle(event)
            except Exception as e:
                logger.error(
                    f"Event sink {type(sink).__name__} failed: {e}", event=event_type.value
                )
        return event
