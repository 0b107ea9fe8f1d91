"""
Resilience layer tests: retries, backoff, circuit breaking, fallback,
deadlines and cancellation.
"""

import asyncio

import pytest

from mcfactory.config.settings import ResilienceConfig, Settings
from mcfactory.core.errors import (
    AllProvidersExhaustedError,
    CircuitOpenError,
    DeadlineExceededError,
    ErrorKind,
    PipelineCancelledError,
    ProviderError,
    ProviderNotFoundError,
)
from mcfactory.core.resilience import (
    CancellationToken,
    CircuitBreaker,
    CircuitState,
    backoff_delay,
    remaining_budget,
)
from mcfactory.observability.events import EventType


def rate_limited(retry_after=None):
    return ProviderError(ErrorKind.RATE_LIMITED, "slow down", retry_after=retry_after)


def network_error():
    return ProviderError(ErrorKind.NETWORK_ERROR, "connection reset")


def invalid_request():
    return ProviderError(ErrorKind.INVALID_REQUEST, "bad input")


def settings_with(**resilience):
    return Settings(resilience=resilience)


class TestBackoff:
    """Backoff delay computation."""

    def test_exponential_growth_capped(self):
        policy = ResilienceConfig(base_delay=0.5, backoff_factor=2.0, max_delay=8.0)
        delays = [backoff_delay(policy, attempt) for attempt in range(1, 7)]
        assert delays == [0.5, 1.0, 2.0, 4.0, 8.0, 8.0]

    def test_retry_after_raises_delay_but_respects_cap(self):
        policy = ResilienceConfig(base_delay=0.5, backoff_factor=2.0, max_delay=8.0)
        assert backoff_delay(policy, 1, retry_after=3.0) == 3.0
        assert backoff_delay(policy, 1, retry_after=30.0) == 8.0
        assert backoff_delay(policy, 3, retry_after=0.1) == 2.0

    def test_remaining_budget_never_negative(self):
        assert remaining_budget(10.0, clock=lambda: 4.0) == 6.0
        assert remaining_budget(10.0, clock=lambda: 12.0) == 0.0


class TestRetries:
    """Retry behaviour on a single provider."""

    @pytest.mark.asyncio
    async def test_rate_limited_retried_max_attempts_without_fallback(self, runtime, scripted):
        provider = scripted("primary", default=rate_limited())
        rt = runtime(provider, settings=settings_with(max_attempts=3))

        with pytest.raises(AllProvidersExhaustedError) as exc_info:
            await rt.caller.call(["primary"], "translate", "hello")

        assert provider.call_count == 3
        assert exc_info.value.errors["primary"].kind is ErrorKind.RATE_LIMITED
        assert rt.clock.sleeps == [0.5, 1.0]
        assert len(rt.sink.of_type(EventType.PROVIDER_RETRY)) == 2

    @pytest.mark.asyncio
    async def test_transient_failure_then_success(self, runtime, scripted):
        provider = scripted("primary", [network_error(), {"ok": True}])
        rt = runtime(provider)

        outcome = await rt.caller.call(["primary"], "moderate", "text")

        assert outcome.output == {"ok": True}
        assert outcome.provider == "primary"
        assert outcome.attempts == 2
        assert rt.caller.breaker("primary").failure_count == 0

    @pytest.mark.asyncio
    async def test_two_transient_failures_recover_without_fallback(self, runtime, scripted):
        primary = scripted("primary", [network_error(), network_error(), "ok"])
        fallback = scripted("fallback", default="fallback-ok")
        rt = runtime(primary, fallback, settings=settings_with(max_attempts=3))

        outcome = await rt.caller.call(["primary", "fallback"], "translate", "hello")

        assert outcome.output == "ok"
        assert outcome.provider == "primary"
        assert outcome.attempts == 3
        assert outcome.fallbacks == 0
        assert primary.call_count == 3
        assert fallback.call_count == 0
        assert rt.sink.of_type(EventType.PROVIDER_FALLBACK_USED) == []
        assert rt.clock.sleeps == [0.5, 1.0]

    @pytest.mark.asyncio
    async def test_non_retryable_error_not_retried(self, runtime, scripted):
        provider = scripted("primary", default=invalid_request())
        rt = runtime(provider, settings=settings_with(max_attempts=5))

        with pytest.raises(AllProvidersExhaustedError):
            await rt.caller.call(["primary"], "translate", "hello")

        assert provider.call_count == 1
        assert rt.clock.sleeps == []

    @pytest.mark.asyncio
    async def test_unexpected_exception_classified_unknown(self, runtime, scripted):
        provider = scripted("primary", default=ValueError("boom"))
        rt = runtime(provider)

        with pytest.raises(AllProvidersExhaustedError) as exc_info:
            await rt.caller.call(["primary"], "translate", "hello")

        error = exc_info.value.errors["primary"]
        assert isinstance(error, ProviderError)
        assert error.kind is ErrorKind.UNKNOWN
        assert provider.call_count == 1

    @pytest.mark.asyncio
    async def test_retry_after_honoured(self, runtime, scripted):
        provider = scripted("primary", [rate_limited(retry_after=3.0), "done"])
        rt = runtime(provider)

        outcome = await rt.caller.call(["primary"], "translate", "hello")

        assert outcome.output == "done"
        assert rt.clock.sleeps == [3.0]


class TestFallback:
    """Ordered fallback across providers."""

    @pytest.mark.asyncio
    async def test_falls_back_in_declared_order(self, runtime, scripted):
        first = scripted("first", default=invalid_request())
        second = scripted("second", default="from-second")
        third = scripted("third", default="from-third")
        rt = runtime(first, second, third)

        outcome = await rt.caller.call(["first", "second", "third"], "translate", "hi")

        assert outcome.provider == "second"
        assert outcome.fallbacks == 1
        assert third.call_count == 0
        fallbacks = rt.sink.of_type(EventType.PROVIDER_FALLBACK_USED)
        assert [e.attributes["next_provider"] for e in fallbacks] == ["second"]

    @pytest.mark.asyncio
    async def test_retry_scope_is_per_provider(self, runtime, scripted):
        first = scripted("first", default=network_error())
        second = scripted("second", default=network_error())
        rt = runtime(first, second, settings=settings_with(max_attempts=2))

        with pytest.raises(AllProvidersExhaustedError) as exc_info:
            await rt.caller.call(["first", "second"], "translate", "hi")

        assert first.call_count == 2
        assert second.call_count == 2
        assert list(exc_info.value.errors) == ["first", "second"]

    @pytest.mark.asyncio
    async def test_unknown_provider_recorded_and_skipped(self, runtime, scripted):
        known = scripted("known", default="ok")
        rt = runtime(known)

        outcome = await rt.caller.call(["ghost", "known"], "translate", "hi")

        assert outcome.provider == "known"

    @pytest.mark.asyncio
    async def test_empty_candidates_rejected(self, runtime):
        rt = runtime()
        with pytest.raises(ProviderNotFoundError):
            await rt.caller.call([], "translate", "hi")


class TestCircuitBreaker:
    """Circuit state transitions."""

    def test_breaker_opens_at_threshold(self, fake_clock):
        breaker = CircuitBreaker("p", threshold=2, open_timeout=10.0, clock=fake_clock)

        assert breaker.record_failure() is False
        assert breaker.state is CircuitState.CLOSED
        assert breaker.record_failure() is True
        assert breaker.state is CircuitState.OPEN
        assert breaker.last_failure == fake_clock.now
        assert breaker.acquire() is False

    def test_single_probe_in_half_open(self, fake_clock):
        breaker = CircuitBreaker("p", threshold=1, open_timeout=10.0, clock=fake_clock)
        breaker.record_failure()
        fake_clock.advance(10.0)

        assert breaker.acquire() is True
        assert breaker.state is CircuitState.HALF_OPEN
        assert breaker.acquire() is False

        breaker.record_success()
        assert breaker.state is CircuitState.CLOSED
        assert breaker.failure_count == 0
        assert breaker.acquire() is True

    def test_probe_failure_reopens_and_resets_clock(self, fake_clock):
        breaker = CircuitBreaker("p", threshold=3, open_timeout=10.0, clock=fake_clock)
        for _ in range(3):
            breaker.record_failure()
        fake_clock.advance(15.0)
        assert breaker.acquire() is True

        assert breaker.record_failure() is True
        assert breaker.state is CircuitState.OPEN
        assert breaker.last_failure == fake_clock.now
        fake_clock.advance(5.0)
        assert breaker.acquire() is False

    @pytest.mark.asyncio
    async def test_open_circuit_short_circuits_calls(self, runtime, scripted):
        provider = scripted("flaky", default=invalid_request())
        rt = runtime(provider, settings=settings_with(failure_threshold=2, open_timeout=30.0))

        for _ in range(2):
            with pytest.raises(AllProvidersExhaustedError):
                await rt.caller.call(["flaky"], "translate", "hi")
        assert rt.caller.circuit_state("flaky") is CircuitState.OPEN
        assert provider.call_count == 2

        with pytest.raises(AllProvidersExhaustedError) as exc_info:
            await rt.caller.call(["flaky"], "translate", "hi")

        assert provider.call_count == 2
        assert isinstance(exc_info.value.errors["flaky"], CircuitOpenError)
        assert len(rt.sink.of_type(EventType.CIRCUIT_OPENED)) == 1
        assert len(rt.sink.of_type(EventType.PROVIDER_SKIPPED)) == 1

    @pytest.mark.asyncio
    async def test_open_circuit_falls_through_to_next_provider(self, runtime, scripted):
        flaky = scripted("flaky", default=invalid_request())
        backup = scripted("backup", default="backup-result")
        rt = runtime(flaky, backup, settings=settings_with(failure_threshold=1))

        await rt.caller.call(["flaky", "backup"], "translate", "hi")
        outcome = await rt.caller.call(["flaky", "backup"], "translate", "hi")

        assert outcome.provider == "backup"
        assert flaky.call_count == 1

    @pytest.mark.asyncio
    async def test_half_open_probe_is_single_attempt(self, runtime, scripted):
        provider = scripted("flaky", default=network_error())
        rt = runtime(
            provider,
            settings=settings_with(max_attempts=3, failure_threshold=1, open_timeout=5.0),
        )

        with pytest.raises(AllProvidersExhaustedError):
            await rt.caller.call(["flaky"], "translate", "hi")
        assert provider.call_count == 3

        rt.clock.advance(5.0)
        with pytest.raises(AllProvidersExhaustedError):
            await rt.caller.call(["flaky"], "translate", "hi")

        assert provider.call_count == 4
        assert rt.caller.circuit_state("flaky") is CircuitState.OPEN
        assert len(rt.sink.of_type(EventType.CIRCUIT_HALF_OPEN)) == 1

    @pytest.mark.asyncio
    async def test_successful_probe_closes_circuit(self, runtime, scripted):
        provider = scripted("flaky", [invalid_request()], default="recovered")
        rt = runtime(provider, settings=settings_with(failure_threshold=1, open_timeout=5.0))

        with pytest.raises(AllProvidersExhaustedError):
            await rt.caller.call(["flaky"], "translate", "hi")
        rt.clock.advance(6.0)

        outcome = await rt.caller.call(["flaky"], "translate", "hi")

        assert outcome.output == "recovered"
        assert rt.caller.circuit_state("flaky") is CircuitState.CLOSED
        assert len(rt.sink.of_type(EventType.CIRCUIT_CLOSED)) == 1

    @pytest.mark.asyncio
    async def test_concurrent_callers_skip_while_probe_in_flight(self, runtime, scripted):
        release = asyncio.Event()

        async def slow_probe(task_type, payload, options):
            await release.wait()
            return "probe-ok"

        flaky = scripted("flaky", [invalid_request()], default=slow_probe)
        backup = scripted("backup", default="backup-result")
        rt = runtime(flaky, backup, settings=settings_with(failure_threshold=1, open_timeout=1.0))

        with pytest.raises(AllProvidersExhaustedError):
            await rt.caller.call(["flaky"], "translate", "hi")
        rt.clock.advance(2.0)

        probe = asyncio.create_task(rt.caller.call(["flaky", "backup"], "translate", "hi"))
        await asyncio.sleep(0)
        other = await rt.caller.call(["flaky", "backup"], "translate", "hi")
        release.set()
        probe_outcome = await probe

        assert other.provider == "backup"
        assert probe_outcome.provider == "flaky"
        assert rt.caller.circuit_state("flaky") is CircuitState.CLOSED


class TestDeadlinesAndCancellation:
    """Deadline and cancellation handling inside the wrapper."""

    @pytest.mark.asyncio
    async def test_backoff_past_deadline_raises(self, runtime, scripted):
        provider = scripted("primary", default=rate_limited())
        rt = runtime(provider, settings=settings_with(base_delay=5.0, max_delay=10.0))

        with pytest.raises(DeadlineExceededError):
            await rt.caller.call(["primary"], "translate", "hi", deadline=rt.clock.now + 1.0)

        assert provider.call_count == 1
        assert rt.caller.breaker("primary").failure_count == 0

    @pytest.mark.asyncio
    async def test_expired_deadline_prevents_invocation(self, runtime, scripted):
        provider = scripted("primary", default="ok")
        rt = runtime(provider)

        with pytest.raises(DeadlineExceededError):
            await rt.caller.call(["primary"], "translate", "hi", deadline=rt.clock.now)

        assert provider.call_count == 0

    @pytest.mark.asyncio
    async def test_cancelled_token_prevents_invocation(self, runtime, scripted):
        provider = scripted("primary", default="ok")
        rt = runtime(provider)
        token = CancellationToken()
        token.cancel("user abort")

        with pytest.raises(PipelineCancelledError, match="user abort"):
            await rt.caller.call(["primary"], "translate", "hi", cancellation=token)

        assert provider.call_count == 0

    @pytest.mark.asyncio
    async def test_call_timeout_classified_as_network_error(self, runtime, scripted):
        provider = scripted("slow", default="late", delay=1.0)
        rt = runtime(provider, settings=settings_with(max_attempts=1, call_timeout=0.01))

        with pytest.raises(AllProvidersExhaustedError) as exc_info:
            await rt.caller.call(["slow"], "translate", "hi")

        assert exc_info.value.errors["slow"].kind is ErrorKind.NETWORK_ERROR
