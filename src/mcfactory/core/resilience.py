"""
Resilience layer: circuit breakers, bounded retries and ordered fallback.

One logical call is tried against an ordered list of candidate providers
(primary first, then fallbacks). Each provider has its own circuit breaker;
retryable failures (rate limits, network errors) are retried on the same
provider with exponential backoff before moving on. Callers only ever see a
result or a single ``AllProvidersExhaustedError`` / ``DeadlineExceededError``
/ ``PipelineCancelledError``.

Deadlines are absolute values on the caller's clock (``time.monotonic`` by
default).
"""

import asyncio
import time
from collections.abc import Awaitable, Callable, Sequence
from dataclasses import dataclass, field
from enum import Enum
from typing import Any

from tenacity import AsyncRetrying, RetryCallState, retry_if_exception, stop_after_attempt

from ..config.settings import ResilienceConfig
from ..observability.events import EventEmitter, EventType
from ..observability.logging import get_logger
from ..observability.metrics import get_metrics_collector
from ..observability.tracing import trace_span
from ..providers.base import ProviderAdapter, classify_exception
from ..providers.registry import SealedProviderRegistry
from .errors import (
    AllProvidersExhaustedError,
    CircuitOpenError,
    DeadlineExceededError,
    ErrorKind,
    MCFactoryError,
    PipelineCancelledError,
    ProviderError,
    ProviderNotFoundError,
)

logger = get_logger(__name__)

Clock = Callable[[], float]
Sleep = Callable[[float], Awaitable[Any]]


def remaining_budget(deadline: float, clock: Clock = time.monotonic) -> float:
    """Remaining time budget from an absolute deadline."""
    return max(0.0, deadline - clock())


def backoff_delay(policy: ResilienceConfig, attempt: int, retry_after: float | None = None) -> float:
    """Delay before retry number ``attempt`` (1-based attempt that just failed).

    A provider-supplied ``retry_after`` raises the delay but never beyond
    ``max_delay``.
    """
    delay = min(policy.base_delay * policy.backoff_factor ** (attempt - 1), policy.max_delay)
    if retry_after is not None:
        delay = min(max(delay, retry_after), policy.max_delay)
    return delay


class CancellationToken:
    """Cooperative cancellation signal for a pipeline run."""

    def __init__(self):
        self._event = asyncio.Event()
        self.reason: str | None = None

    def cancel(self, reason: str = "cancelled by caller") -> None:
        if not self._event.is_set():
            self.reason = reason
            self._event.set()

    @property
    def cancelled(self) -> bool:
        return self._event.is_set()

    async def wait(self) -> None:
        await self._event.wait()

    def raise_if_cancelled(self) -> None:
        if self.cancelled:
            raise PipelineCancelledError(self.reason or "cancelled")


class CircuitState(Enum):
    CLOSED = "closed"
    OPEN = "open"
    HALF_OPEN = "half_open"


@dataclass
class CircuitBreaker:
    """Per-provider circuit breaker.

    State changes happen only in synchronous sections between awaits, so
    concurrent tasks on one event loop never observe a partial update.
    """

    provider: str
    threshold: int = 5
    open_timeout: float = 30.0
    clock: Clock = time.monotonic
    state: CircuitState = field(default=CircuitState.CLOSED, init=False)
    failure_count: int = field(default=0, init=False)
    last_failure: float | None = field(default=None, init=False)
    _probe_in_flight: bool = field(default=False, init=False, repr=False)

    def acquire(self) -> bool:
        """Whether a call may go through now. May move OPEN -> HALF_OPEN."""
        if self.state is CircuitState.CLOSED:
            return True

        if self.state is CircuitState.OPEN:
            if self.last_failure is not None and self.clock() - self.last_failure < self.open_timeout:
                return False
            self.state = CircuitState.HALF_OPEN
            self._probe_in_flight = True
            logger.info(f"Circuit half-open for {self.provider}", provider=self.provider)
            return True

        # HALF_OPEN: exactly one probe at a time
        if self._probe_in_flight:
            return False
        self._probe_in_flight = True
        return True

    def record_success(self) -> None:
        self.failure_count = 0
        self.state = CircuitState.CLOSED
        self._probe_in_flight = False

    def record_failure(self) -> bool:
        """Record a failed logical call; returns True when this opened the circuit."""
        self.failure_count += 1
        probing = self.state is CircuitState.HALF_OPEN
        self._probe_in_flight = False

        if probing or self.failure_count >= self.threshold:
            self.state = CircuitState.OPEN
            self.last_failure = self.clock()
            logger.warning(
                f"Circuit opened for {self.provider} ({self.open_timeout}s)",
                provider=self.provider,
                failures=self.failure_count,
            )
            return True
        return False

    def release(self) -> None:
        """Give up a probe slot without an outcome (cancelled / deadline)."""
        self._probe_in_flight = False


@dataclass(frozen=True)
class CallResult:
    """Successful outcome of a resilient call."""

    provider: str
    output: Any
    attempts: int
    fallbacks: int = 0


def _is_retryable(error: BaseException) -> bool:
    return isinstance(error, ProviderError) and error.retryable


class ResilientCaller:
    """Executes provider calls with retry, circuit breaking and fallback."""

    def __init__(
        self,
        registry: SealedProviderRegistry,
        policy: ResilienceConfig | None = None,
        events: EventEmitter | None = None,
        *,
        clock: Clock = time.monotonic,
        sleep: Sleep = asyncio.sleep,
    ):
        self.registry = registry
        self.policy = policy or ResilienceConfig()
        self.events = events or EventEmitter()
        self.clock = clock
        self._sleep = sleep
        self._breakers: dict[str, CircuitBreaker] = {}

    def breaker(self, provider: str, policy: ResilienceConfig | None = None) -> CircuitBreaker:
        """Get or create the circuit breaker for a provider."""
        if provider not in self._breakers:
            policy = policy or self.policy
            self._breakers[provider] = CircuitBreaker(
                provider,
                threshold=policy.failure_threshold,
                open_timeout=policy.open_timeout,
                clock=self.clock,
            )
        return self._breakers[provider]

    def circuit_state(self, provider: str) -> CircuitState:
        breaker = self._breakers.get(provider)
        return breaker.state if breaker else CircuitState.CLOSED

    def _check_interrupts(
        self, deadline: float | None, cancellation: CancellationToken | None
    ) -> None:
        if cancellation is not None:
            cancellation.raise_if_cancelled()
        if deadline is not None and self.clock() >= deadline:
            raise DeadlineExceededError("deadline exceeded before provider call")

    @trace_span("resilience.call")
    async def call(
        self,
        provider_names: Sequence[str],
        task_type: str,
        payload: Any,
        options: dict[str, Any] | None = None,
        policy: ResilienceConfig | None = None,
        *,
        deadline: float | None = None,
        cancellation: CancellationToken | None = None,
    ) -> CallResult:
        """Call the first provider that succeeds, in declared order."""
        policy = policy or self.policy
        options = options or {}
        names = list(dict.fromkeys(provider_names))
        if not names:
            raise ProviderNotFoundError(f"no provider candidates for task '{task_type}'")

        errors: dict[str, MCFactoryError] = {}

        for position, name in enumerate(names):
            self._check_interrupts(deadline, cancellation)
            has_next = position < len(names) - 1

            try:
                adapter = self.registry.get(name)
            except ProviderNotFoundError as e:
                errors[name] = e
                logger.warning(f"Skipping unknown provider {name}", provider=name, task=task_type)
                continue

            breaker = self.breaker(name, policy)
            was_open = breaker.state is CircuitState.OPEN
            if not breaker.acquire():
                errors[name] = CircuitOpenError(name)
                self.events.emit(
                    EventType.PROVIDER_SKIPPED, provider=name, task_type=task_type, reason="circuit_open"
                )
                continue

            probing = breaker.state is CircuitState.HALF_OPEN
            if probing and was_open:
                self.events.emit(EventType.CIRCUIT_HALF_OPEN, provider=name)

            try:
                output, attempts = await self._call_provider(
                    adapter,
                    task_type,
                    payload,
                    options,
                    policy,
                    max_attempts=1 if probing else policy.max_attempts,
                    deadline=deadline,
                    cancellation=cancellation,
                )
            except ProviderError as e:
                if breaker.record_failure():
                    self.events.emit(
                        EventType.CIRCUIT_OPENED,
                        provider=name,
                        failures=breaker.failure_count,
                        probe=probing,
                    )
                errors[name] = e
                if has_next:
                    self.events.emit(
                        EventType.PROVIDER_FALLBACK_USED,
                        provider=name,
                        next_provider=names[position + 1],
                        task_type=task_type,
                        error=e.code,
                    )
                continue
            except BaseException:
                breaker.release()
                raise

            breaker.record_success()
            if probing:
                self.events.emit(EventType.CIRCUIT_CLOSED, provider=name)
            return CallResult(name, output, attempts, fallbacks=position)

        raise AllProvidersExhaustedError(task_type, errors)

    async def _call_provider(
        self,
        adapter: ProviderAdapter,
        task_type: str,
        payload: Any,
        options: dict[str, Any],
        policy: ResilienceConfig,
        *,
        max_attempts: int,
        deadline: float | None,
        cancellation: CancellationToken | None,
    ) -> tuple[Any, int]:
        """Invoke one provider with bounded retries. Returns (output, attempts)."""
        name = adapter.name

        def wait(retry_state: RetryCallState) -> float:
            error = retry_state.outcome.exception() if retry_state.outcome else None
            delay = backoff_delay(
                policy, retry_state.attempt_number, getattr(error, "retry_after", None)
            )
            if deadline is not None and self.clock() + delay >= deadline:
                raise DeadlineExceededError(
                    f"deadline leaves no room to retry {name} after {delay:.2f}s backoff"
                )
            return delay

        def before_sleep(retry_state: RetryCallState) -> None:
            if cancellation is not None:
                cancellation.raise_if_cancelled()
            error = retry_state.outcome.exception() if retry_state.outcome else None
            self.events.emit(
                EventType.PROVIDER_RETRY,
                provider=name,
                task_type=task_type,
                attempt=retry_state.attempt_number,
                delay=round(retry_state.upcoming_sleep, 3),
                error=getattr(error, "code", type(error).__name__),
            )

        attempts = 0
        output: Any = None
        async for attempt in AsyncRetrying(
            stop=stop_after_attempt(max_attempts),
            wait=wait,
            retry=retry_if_exception(_is_retryable),
            before_sleep=before_sleep,
            sleep=self._sleep,
            reraise=True,
        ):
            with attempt:
                attempts += 1
                self._check_interrupts(deadline, cancellation)
                output = await self._invoke_once(adapter, task_type, payload, options, policy, deadline)
        return output, attempts

    async def _invoke_once(
        self,
        adapter: ProviderAdapter,
        task_type: str,
        payload: Any,
        options: dict[str, Any],
        policy: ResilienceConfig,
        deadline: float | None,
    ) -> Any:
        timeout = policy.call_timeout
        if deadline is not None:
            budget = remaining_budget(deadline, self.clock)
            timeout = budget if timeout is None else min(timeout, budget)

        metrics = get_metrics_collector()
        try:
            invocation = adapter.invoke(task_type, payload, dict(options))
            if timeout is None:
                output = await invocation
            else:
                output = await asyncio.wait_for(invocation, timeout)
        except TimeoutError as e:
            metrics.record_provider_call(adapter.name, task_type, False)
            if deadline is not None and self.clock() >= deadline:
                raise DeadlineExceededError(f"deadline exceeded while calling {adapter.name}") from e
            raise ProviderError(
                ErrorKind.NETWORK_ERROR,
                f"call timed out after {timeout:.2f}s",
                provider=adapter.name,
            ) from e
        except ProviderError as e:
            metrics.record_provider_call(adapter.name, task_type, False)
            e.provider = e.provider or adapter.name
            raise
        except Exception as e:
            metrics.record_provider_call(adapter.name, task_type, False)
            raise classify_exception(e, adapter.name) from e

        metrics.record_provider_call(adapter.name, task_type, True)
        return output
