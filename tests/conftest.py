"""
Global pytest configuration and fixtures for test isolation.

Every test starts from a clean process-wide state (provider registry,
cached settings, metrics collector, tracing manager) and
without ``MCF_*`` variables leaking in from the environment.
"""

import asyncio
import inspect
import os
from dataclasses import dataclass
from typing import Any

import pytest

from mcfactory.config.settings import DEFAULT_TASK_TYPES, Settings
from mcfactory.core.engine import PipelineEngine
from mcfactory.core.executor import StepExecutor
from mcfactory.core.resilience import ResilientCaller
from mcfactory.observability.events import EventEmitter, RecordingSink
from mcfactory.providers.base import ProviderAdapter, ProviderDescriptor
from mcfactory.providers.registry import ProviderRegistry, SealedProviderRegistry


def reset_all_global_state():
    """Reset every process-wide singleton."""
    from mcfactory.config import settings as settings_module
    from mcfactory.observability import metrics, tracing
    from mcfactory.providers.registry import _reset_registry_for_tests

    _reset_registry_for_tests()
    settings_module.get_settings.cache_clear()
    metrics.shutdown_metrics()
    metrics._metrics_collector = None
    tracing._tracing_manager = None


@pytest.fixture(autouse=True)
def isolate_global_state(monkeypatch):
    for key in list(os.environ):
        if key.startswith("MCF_"):
            monkeypatch.delenv(key, raising=False)
    reset_all_global_state()
    yield
    reset_all_global_state()


class FakeClock:
    """Monotonic clock whose sleep advances time instantly."""

    def __init__(self, start: float = 1000.0):
        self.now = start
        self.sleeps: list[float] = []

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds

    async def sleep(self, delay: float) -> None:
        self.sleeps.append(delay)
        self.now += delay
        await asyncio.sleep(0)


class ScriptedProvider(ProviderAdapter):
    """Provider returning scripted outcomes in order, then ``default``.

    An outcome may be a value, an exception instance (raised) or a callable
    ``(task_type, payload, options) -> value`` (sync or async).
    """

    def __init__(self, name: str, outcomes: list[Any] | None = None, *, default: Any = None, delay: float = 0.0):
        super().__init__(name)
        self.outcomes = list(outcomes or [])
        self.default = default
        self.delay = delay
        self.calls: list[tuple[str, Any, dict[str, Any]]] = []

    async def invoke(self, task_type: str, payload: Any, options: dict[str, Any]) -> Any:
        self.calls.append((task_type, payload, dict(options)))
        if self.delay:
            await asyncio.sleep(self.delay)
        outcome = self.outcomes.pop(0) if self.outcomes else self.default
        if isinstance(outcome, BaseException):
            raise outcome
        if callable(outcome):
            outcome = outcome(task_type, payload, options)
            if inspect.isawaitable(outcome):
                outcome = await outcome
        return outcome

    @property
    def call_count(self) -> int:
        return len(self.calls)


@dataclass
class Runtime:
    registry: SealedProviderRegistry
    caller: ResilientCaller
    executor: StepExecutor
    engine: PipelineEngine
    sink: RecordingSink
    clock: FakeClock
    settings: Settings


def build_runtime(
    *adapters: ProviderAdapter,
    settings: Settings | None = None,
    capabilities: dict[str, list[str]] | None = None,
    clock: FakeClock | None = None,
) -> Runtime:
    """Wire a full engine around the given adapters with a fake clock."""
    capabilities = capabilities or {}
    builder = ProviderRegistry()
    for adapter in adapters:
        caps = capabilities.get(adapter.name, DEFAULT_TASK_TYPES)
        builder.register(ProviderDescriptor.of(adapter.name, caps), adapter)
    registry = builder.ready()

    settings = settings or Settings()
    clock = clock or FakeClock()
    sink = RecordingSink()
    events = EventEmitter([sink])
    caller = ResilientCaller(registry, settings.resilience, events, clock=clock, sleep=clock.sleep)
    executor = StepExecutor(registry, caller, settings)
    engine = PipelineEngine(executor, settings, events, clock=clock)
    return Runtime(registry, caller, executor, engine, sink, clock, settings)


@pytest.fixture
def fake_clock():
    return FakeClock()


@pytest.fixture
def scripted():
    """Factory for scripted providers."""
    return ScriptedProvider


@pytest.fixture
def runtime():
    """Factory building an engine runtime around providers."""
    return build_runtime
