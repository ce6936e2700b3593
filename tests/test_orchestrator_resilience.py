"""Tests for src/orchestrator/resilience.py: retry, rate-limit pause, circuit breaker."""

import time

import pytest

from src.core.config import CircuitBreakerConfig, RetryConfig
from src.core.exceptions import (
    AuthenticationError,
    CircuitOpenError,
    FatalError,
    LLMError,
    RateLimitError,
    ResponseParseError,
    RetryableError,
)
from src.orchestrator.resilience import (
    CircuitBreaker,
    ResilientExecutor,
    backoff_delay,
    is_rate_limited,
    is_retryable,
)


class Flaky:
    """Operation that raises the queued errors in order, then returns 'ok'."""

    def __init__(self, *errors):
        self.errors = list(errors)
        self.calls = 0

    def __call__(self):
        self.calls += 1
        if self.errors:
            raise self.errors.pop(0)
        return "ok"


@pytest.fixture
def executor(clock):
    return ResilientExecutor(
        retry=RetryConfig(),
        breaker_config=CircuitBreakerConfig(),
        sleep=clock.sleep,
        clock=clock,
    )


class TestBackoffDelay:
    @pytest.mark.parametrize("attempt,expected", [(0, 1.0), (1, 2.0), (2, 4.0), (3, 8.0), (4, 10.0), (9, 10.0)])
    def test_default_policy(self, attempt, expected):
        assert backoff_delay(attempt) == expected

    def test_custom_policy(self):
        policy = RetryConfig(initial_delay_seconds=0.5, backoff_multiplier=3.0, max_delay_seconds=100.0)
        assert backoff_delay(2, policy) == 4.5


class TestClassifier:
    @pytest.mark.parametrize("error", [
        LLMError("timeout calling test/model: read timed out"),
        LLMError("network error calling test/model"),
        LLMError("OpenRouter server error for test/model: HTTP 503"),
        LLMError("OpenRouter server error for test/model: HTTP 504"),
        RuntimeError("connect ECONNREFUSED 127.0.0.1:443"),
        RuntimeError("getaddrinfo ENOTFOUND openrouter.ai"),
        RuntimeError("Service temporarily unavailable"),
        RateLimitError("rate limit exceeded (429)"),
        TimeoutError(),
        ConnectionError("reset by peer"),
    ])
    def test_retryable(self, error):
        assert is_retryable(error) is True

    @pytest.mark.parametrize("error", [
        LLMError("OpenRouter server error for test/model: HTTP 500"),
        LLMError("OpenRouter server error for test/model: HTTP 502"),
        ValueError("bad input"),
        AuthenticationError("Invalid API key"),
        ResponseParseError("Expected a JSON object, got timeout"),
    ])
    def test_not_retryable(self, error):
        assert is_retryable(error) is False

    def test_rate_limit_detection(self):
        assert is_rate_limited(RateLimitError("rate limit exceeded (429)")) is True
        assert is_rate_limited(RuntimeError("Monthly quota exceeded")) is True
        assert is_rate_limited(LLMError("HTTP 503")) is False


class TestCircuitBreaker:
    def _trip(self, breaker):
        for _ in range(5):
            with pytest.raises(RuntimeError):
                breaker.call(Flaky(RuntimeError("boom")))

    def test_starts_closed(self):
        breaker = CircuitBreaker()
        assert breaker.state.is_open is False
        assert breaker.remaining_cooldown() == 0.0

    def test_opens_after_five_consecutive_failures(self, clock):
        breaker = CircuitBreaker(clock=clock)
        self._trip(breaker)
        assert breaker.state.is_open is True
        assert breaker.state.consecutive_failures == 5

    def test_open_circuit_rejects_without_invoking(self, clock):
        breaker = CircuitBreaker(clock=clock)
        self._trip(breaker)
        operation = Flaky()
        with pytest.raises(CircuitOpenError, match="Try again in 60s") as exc_info:
            breaker.call(operation)
        assert operation.calls == 0
        assert exc_info.value.retry_after_seconds == pytest.approx(60.0)

    def test_success_resets_counter(self, clock):
        breaker = CircuitBreaker(clock=clock)
        for _ in range(4):
            with pytest.raises(RuntimeError):
                breaker.call(Flaky(RuntimeError("boom")))
        assert breaker.call(Flaky()) == "ok"
        assert breaker.state.consecutive_failures == 0

    def test_half_open_trial_success_closes(self, clock):
        breaker = CircuitBreaker(clock=clock)
        self._trip(breaker)
        clock.advance(60)
        assert breaker.call(Flaky()) == "ok"
        assert breaker.state.is_open is False
        assert breaker.state.half_open is False

    def test_half_open_trial_failure_reopens(self, clock):
        breaker = CircuitBreaker(clock=clock)
        self._trip(breaker)
        clock.advance(61)
        with pytest.raises(RuntimeError):
            breaker.call(Flaky(RuntimeError("still down")))
        assert breaker.state.is_open is True
        assert breaker.remaining_cooldown() == pytest.approx(60.0)

    def test_cooldown_counts_down(self, clock):
        breaker = CircuitBreaker(clock=clock)
        self._trip(breaker)
        clock.advance(45)
        assert breaker.remaining_cooldown() == pytest.approx(15.0)

    def test_reset(self, clock):
        breaker = CircuitBreaker(clock=clock)
        self._trip(breaker)
        breaker.reset()
        assert breaker.call(Flaky()) == "ok"

    def test_state_is_a_copy(self):
        breaker = CircuitBreaker()
        breaker.state.is_open = True
        assert breaker.state.is_open is False


class TestResilientExecutor:
    def test_success_first_try(self, executor, clock):
        assert executor.execute(Flaky(), label="Alex turn") == "ok"
        assert clock.sleeps == []

    def test_retries_transient_with_backoff(self, executor, clock):
        operation = Flaky(LLMError("HTTP 503"), LLMError("timeout calling x"))
        assert executor.execute(operation, label="Alex turn") == "ok"
        assert operation.calls == 3
        assert clock.sleeps == [1.0, 2.0]

    def test_exhausted_retries_raise_retryable(self, executor, clock):
        operation = Flaky(*[LLMError("HTTP 503")] * 10)
        with pytest.raises(RetryableError, match="failed after 4 attempts") as exc_info:
            executor.execute(operation, label="Alex turn")
        assert operation.calls == 4
        assert exc_info.value.attempts == 4
        assert exc_info.value.label == "Alex turn"
        assert clock.sleeps == [1.0, 2.0, 4.0]

    def test_non_retryable_fails_immediately(self, executor, clock):
        operation = Flaky(ValueError("bad input"))
        with pytest.raises(FatalError, match="bad input"):
            executor.execute(operation, label="Alex turn")
        assert operation.calls == 1
        assert clock.sleeps == []

    def test_rate_limit_pauses_without_consuming_attempts(self, clock):
        executor = ResilientExecutor(
            retry=RetryConfig(max_retries=0), sleep=clock.sleep, clock=clock,
        )
        operation = Flaky(RateLimitError("rate limit exceeded (429)"), RateLimitError("rate limit exceeded (429)"))
        assert executor.execute(operation, label="Sam turn") == "ok"
        assert clock.sleeps == [65.0, 65.0]

    def test_rate_limit_pause_cap(self, clock):
        executor = ResilientExecutor(
            retry=RetryConfig(max_rate_limit_pauses=1), sleep=clock.sleep, clock=clock,
        )
        operation = Flaky(*[RateLimitError("rate limit exceeded (429)")] * 3)
        with pytest.raises(RetryableError, match="still rate limited"):
            executor.execute(operation, label="Sam turn")
        assert operation.calls == 2

    def test_breaker_opens_across_calls(self, executor, clock):
        first = Flaky(*[LLMError("HTTP 503")] * 10)
        with pytest.raises(RetryableError):
            executor.execute(first, label="Alex turn")

        second = Flaky(*[LLMError("HTTP 503")] * 10)
        with pytest.raises(CircuitOpenError):
            executor.execute(second, label="Alex turn")
        assert first.calls + second.calls == 5

        third = Flaky()
        with pytest.raises(CircuitOpenError):
            executor.execute(third, label="Alex turn")
        assert third.calls == 0

    def test_breakers_are_per_dependency(self, executor):
        for _ in range(5):
            executor.breaker("llm").record_failure()
        assert executor.execute(Flaky(), label="compile", dependency="compiler") == "ok"
        with pytest.raises(CircuitOpenError):
            executor.execute(Flaky(), label="Alex turn", dependency="llm")

    def test_timeout_is_retryable(self, clock):
        executor = ResilientExecutor(
            retry=RetryConfig(timeout_seconds=0.05, max_retries=1),
            sleep=clock.sleep,
            clock=clock,
        )
        calls = []

        def slow():
            calls.append(1)
            time.sleep(0.5)
            return "late"

        with pytest.raises(RetryableError, match="timeout after 0.1s") as exc_info:
            executor.execute(slow, label="Alex turn")
        assert exc_info.value.attempts == 2
        assert calls
