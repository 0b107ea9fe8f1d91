"""
Observability tests: structured logging, event fan-out and metrics.
"""

import logging
from unittest.mock import MagicMock

import pytest
from opentelemetry.metrics import NoOpMeter
from opentelemetry.sdk.metrics.export import InMemoryMetricReader

from mcfactory.observability.events import (
    EventEmitter,
    EventType,
    MetricsSink,
    PipelineEvent,
    RecordingSink,
)
from mcfactory.observability.logging import StructuredFormatter, clear_trace_id, get_logger, set_trace_id
from mcfactory.observability.metrics import get_metrics_collector, setup_meter_provider, shutdown_metrics
from mcfactory.observability.tracing import get_tracing_manager, trace_span


def exported_metrics(reader):
    data = reader.get_metrics_data()
    return {
        metric.name: metric
        for resource in data.resource_metrics
        for scope in resource.scope_metrics
        for metric in scope.metrics
    }


def make_record(msg="hello", **extra):
    record = logging.LogRecord("mcfactory.core.engine", logging.INFO, __file__, 1, msg, None, None)
    for key, value in extra.items():
        setattr(record, key, value)
    return record


class TestStructuredLogging:
    """Formatter output."""

    def test_fields_rendered(self):
        set_trace_id("run123")
        try:
            line = StructuredFormatter().format(make_record(op="step", ms=12.34, provider="openai"))
        finally:
            clear_trace_id()

        assert "level=INFO" in line
        assert "trace=run123" in line
        assert "mod=engine" in line
        assert "op=step" in line
        assert "ms=12.3" in line
        assert 'msg="hello"' in line
        assert "provider=openai" in line

    def test_missing_trace_id(self):
        line = StructuredFormatter().format(make_record())
        assert "trace=-" in line

    def test_reserved_kwargs_dropped(self, caplog):
        logger = get_logger("mcfactory.test")
        with caplog.at_level(logging.INFO, logger="mcfactory.test"):
            logger.info("registered", name="clash", provider="p")

        record = caplog.records[-1]
        assert record.name == "mcfactory.test"
        assert record.provider == "p"

    def test_loggers_are_cached(self):
        assert get_logger("mcfactory.x") is get_logger("mcfactory.x")


class TestEvents:
    """Event emission."""

    def test_recording_sink(self):
        sink = RecordingSink()
        emitter = EventEmitter([sink])

        emitter.emit(EventType.STEP_STARTED, path="0", step_type="translate")
        emitter.emit(EventType.STEP_SUCCEEDED, path="0", step_type="translate", duration=0.1)

        assert [e.type for e in sink.events] == [EventType.STEP_STARTED, EventType.STEP_SUCCEEDED]
        assert sink.of_type(EventType.STEP_SUCCEEDED)[0].attributes["duration"] == 0.1

    def test_failing_sink_does_not_break_emit(self):
        broken = MagicMock()
        broken.handle.side_effect = RuntimeError("sink down")
        sink = RecordingSink()
        emitter = EventEmitter([broken, sink])

        emitter.emit(EventType.CIRCUIT_OPENED, provider="openai")

        assert len(sink.events) == 1
        broken.handle.assert_called_once()

    def test_event_to_dict_carries_trace_id(self):
        set_trace_id("abc")
        try:
            event = PipelineEvent(EventType.PROVIDER_RETRY, {"provider": "openai", "attempt": 1})
        finally:
            clear_trace_id()

        payload = event.to_dict()
        assert payload["type"] == "provider_retry"
        assert payload["trace_id"] == "abc"
        assert payload["provider"] == "openai"

    @pytest.mark.parametrize(
        "event_type,attributes,method,args",
        [
            (EventType.STEP_SUCCEEDED, {"step_type": "translate", "duration": 0.2}, "record_step", ("translate", 0.2, True)),
            (EventType.STEP_FAILED, {"step_type": "moderate", "duration": 0.1}, "record_step", ("moderate", 0.1, False)),
            (EventType.PROVIDER_RETRY, {"provider": "openai"}, "record_retry", ("openai",)),
            (EventType.PROVIDER_FALLBACK_USED, {"provider": "openai"}, "record_fallback", ("openai",)),
            (EventType.CIRCUIT_OPENED, {"provider": "openai"}, "record_circuit_opened", ("openai",)),
            (EventType.PIPELINE_FINISHED, {"pipeline": "p", "duration": 1.5, "success": True}, "record_pipeline", ("p", 1.5, True)),
        ],
    )
    def test_metrics_sink_mapping(self, event_type, attributes, method, args):
        collector = MagicMock()
        MetricsSink(collector).handle(PipelineEvent(event_type, attributes))

        getattr(collector, method).assert_called_once_with(*args)


class TestMetrics:
    """In-process metric aggregates."""

    def test_summary(self):
        collector = get_metrics_collector()
        collector.record_step("translate", 0.2, True)
        collector.record_step("translate", 0.4, False)
        collector.record_provider_call("openai", "translate", False)
        collector.record_provider_call("openai", "translate", True)
        collector.record_retry("openai")
        collector.record_circuit_opened("openai")

        summary = collector.get_summary()

        assert summary["steps"]["translate"]["calls"] == 2
        assert summary["steps"]["translate"]["failures"] == 1
        assert summary["steps"]["translate"]["avg_duration"] == pytest.approx(0.3)
        assert summary["providers"]["openai"] == {
            "calls": 2,
            "failures": 1,
            "retries": 1,
            "fallbacks": 0,
            "circuit_opens": 1,
        }

    def test_average_from_running_totals(self):
        collector = get_metrics_collector()
        for _ in range(1000):
            collector.record_step("summarize", 0.5, True)
        collector.record_step("summarize", 1.5, True)

        summary = collector.get_summary()["steps"]["summarize"]

        assert summary["calls"] == 1001
        assert summary["avg_duration"] == pytest.approx(501.5 / 1001)

    def test_default_collector_is_no_op(self):
        assert isinstance(get_metrics_collector().meter, NoOpMeter)

    @pytest.mark.asyncio
    async def test_meter_provider_exports_pipeline_metrics(self, runtime, scripted):
        reader = InMemoryMetricReader()
        collector = setup_meter_provider("mcfactory-test", "0.0.1", readers=[reader])
        assert get_metrics_collector() is collector
        assert not isinstance(collector.meter, NoOpMeter)

        rt = runtime(scripted("p", default="ok"))
        rt.engine.events.add_sink(MetricsSink())
        await rt.engine.run({"name": "m", "steps": ["translate"]}, "x")

        metrics = exported_metrics(reader)
        assert "mcfactory_steps_total" in metrics
        assert "mcfactory_pipelines_total" in metrics
        (point,) = metrics["mcfactory_steps_total"].data.data_points
        assert point.value == 1
        assert point.attributes["step_type"] == "translate"

        shutdown_metrics()
        shutdown_metrics()

    @pytest.mark.asyncio
    async def test_pipeline_run_feeds_metrics(self, runtime, scripted):
        rt = runtime(scripted("p", default="ok"))
        rt.engine.events.add_sink(MetricsSink())

        result = await rt.engine.run({"name": "m", "steps": ["translate", "moderate"]}, "x")

        assert result.success
        steps = get_metrics_collector().get_summary()["steps"]
        assert steps["translate"]["calls"] == 1
        assert steps["moderate"]["calls"] == 1


class TestTracing:
    """Span helpers with the default no-op tracer."""

    @pytest.mark.asyncio
    async def test_trace_span_wraps_async(self):
        @trace_span("test.op")
        async def work(x):
            return x * 2

        assert await work(21) == 42

    def test_span_reraises(self):
        with pytest.raises(ValueError):
            with get_tracing_manager().span("boom"):
                raise ValueError("nope")
