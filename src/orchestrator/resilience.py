"""Retry, rate-limit pausing and circuit breaking for external calls.

Every actor invocation (LLM request, compiler run) goes through
ResilientExecutor.execute:

- errors matching the retryable classifier are retried with capped
  exponential backoff, up to max_retries
- rate-limit errors pause for a fixed window and do not consume an attempt
- anything else fails immediately as FatalError
- one CircuitBreaker per dependency counts consecutive failed attempts and
  short-circuits calls while open
"""

from __future__ import annotations

import concurrent.futures
import logging
import math
import re
import time
from typing import Callable, Optional, TypeVar

from src.core.config import CircuitBreakerConfig, RetryConfig
from src.core.exceptions import (
    AuthenticationError,
    CircuitOpenError,
    ConfigError,
    FatalError,
    ResilienceError,
    ResponseParseError,
    RetryableError,
    ValidationError,
)
from src.core.models import CircuitState

_LOGGER_NAME = "conclave.orchestrator.resilience"

T = TypeVar("T")

_RETRYABLE_PATTERNS = [
    re.compile(p, re.IGNORECASE)
    for p in (
        r"timeout",
        r"timed out",
        r"network",
        r"ECONNREFUSED",
        r"ENOTFOUND",
        r"rate limit",
        r"quota exceeded",
        r"429",
        r"503",
        r"504",
        r"temporarily unavailable",
    )
]
_RATE_LIMIT_PATTERNS = [
    re.compile(p, re.IGNORECASE) for p in (r"rate limit", r"quota exceeded", r"429")
]

# Never retried, whatever their message happens to contain.
_FATAL_TYPES = (AuthenticationError, ResponseParseError, ValidationError, ConfigError)


def backoff_delay(attempt: int, policy: Optional[RetryConfig] = None) -> float:
    """min(initial * multiplier ** attempt, max), in seconds. attempt is 0-based."""
    policy = policy or RetryConfig()
    delay = policy.initial_delay_seconds * (policy.backoff_multiplier ** attempt)
    return min(delay, policy.max_delay_seconds)


def is_rate_limited(error: BaseException) -> bool:
    if isinstance(error, _FATAL_TYPES):
        return False
    message = str(error)
    return any(p.search(message) for p in _RATE_LIMIT_PATTERNS)


def is_retryable(error: BaseException) -> bool:
    """Transient failures: timeouts, network errors, rate limits, 503/504."""
    if isinstance(error, _FATAL_TYPES):
        return False
    if isinstance(error, (TimeoutError, ConnectionError)):
        return True
    message = f"{type(error).__name__}: {error}"
    return any(p.search(message) for p in _RETRYABLE_PATTERNS)


class CircuitBreaker:
    """Consecutive-failure guard for one external dependency.

    Closed: calls pass through; each failure increments the counter and
    max_failures in a row opens the circuit. Open: calls are rejected with
    CircuitOpenError until reset_timeout elapses. Then exactly one trial
    call is let through (half-open); success closes the circuit, failure
    reopens it and restarts the timeout.
    """

    def __init__(
        self,
        name: str = "llm",
        max_failures: int = 5,
        reset_timeout_seconds: float = 60.0,
        clock: Callable[[], float] = time.monotonic,
        logger: Optional[logging.Logger] = None,
    ):
        self.name = name
        self.max_failures = max_failures
        self.reset_timeout_seconds = reset_timeout_seconds
        self._clock = clock
        self.logger = logger or logging.getLogger(_LOGGER_NAME)
        self._state = CircuitState()

    @classmethod
    def from_config(
        cls,
        name: str,
        config: CircuitBreakerConfig,
        clock: Callable[[], float] = time.monotonic,
        logger: Optional[logging.Logger] = None,
    ) -> "CircuitBreaker":
        return cls(
            name=name,
            max_failures=config.max_failures,
            reset_timeout_seconds=config.reset_timeout_seconds,
            clock=clock,
            logger=logger,
        )

    @property
    def state(self) -> CircuitState:
        return self._state.model_copy()

    def remaining_cooldown(self) -> float:
        """Seconds until an open circuit allows its trial call (0 when closed)."""
        if not self._state.is_open or self._state.last_failure_time is None:
            return 0.0
        elapsed = self._clock() - self._state.last_failure_time
        return max(self.reset_timeout_seconds - elapsed, 0.0)

    def before_call(self) -> None:
        """Raise CircuitOpenError while open; move to half-open once the timeout has passed."""
        if not self._state.is_open:
            return
        remaining = self.remaining_cooldown()
        if remaining > 0:
            raise CircuitOpenError(
                f"Circuit breaker OPEN for {self.name} - too many failures. "
                f"Try again in {math.ceil(remaining)}s",
                label=self.name,
                retry_after_seconds=remaining,
            )
        self._state.is_open = False
        self._state.half_open = True
        self.logger.info("Circuit breaker half-open for %s: allowing one trial call", self.name)

    def record_success(self) -> None:
        if self._state.half_open or self._state.consecutive_failures:
            self.logger.info("Circuit breaker closed for %s", self.name)
        self._state = CircuitState()

    def record_failure(self) -> None:
        self._state.consecutive_failures += 1
        self._state.last_failure_time = self._clock()
        trial_failed = self._state.half_open
        self._state.half_open = False
        if trial_failed or self._state.consecutive_failures >= self.max_failures:
            self._state.is_open = True
            self.logger.error(
                "Circuit breaker OPENED for %s after %d consecutive failure(s)",
                self.name, self._state.consecutive_failures,
            )

    def call(self, operation: Callable[[], T]) -> T:
        self.before_call()
        try:
            result = operation()
        except Exception:
            self.record_failure()
            raise
        self.record_success()
        return result

    def reset(self) -> None:
        self._state = CircuitState()


class ResilientExecutor:
    """Runs external calls under retry/backoff and a per-dependency breaker.

    Injected dependencies:
        retry: Backoff, retry budget, rate-limit pause and optional timeout.
        breaker_config: Thresholds for the breakers created per dependency.
        sleep / clock: Replaced by fakes in tests so no real time passes.
    """

    def __init__(
        self,
        retry: Optional[RetryConfig] = None,
        breaker_config: Optional[CircuitBreakerConfig] = None,
        sleep: Callable[[float], None] = time.sleep,
        clock: Callable[[], float] = time.monotonic,
        logger: Optional[logging.Logger] = None,
    ):
        self.retry = retry or RetryConfig()
        self.breaker_config = breaker_config or CircuitBreakerConfig()
        self._sleep = sleep
        self._clock = clock
        self.logger = logger or logging.getLogger(_LOGGER_NAME)
        self._breakers: dict[str, CircuitBreaker] = {}

    def breaker(self, dependency: str) -> CircuitBreaker:
        if dependency not in self._breakers:
            self._breakers[dependency] = CircuitBreaker.from_config(
                dependency, self.breaker_config, clock=self._clock, logger=self.logger,
            )
        return self._breakers[dependency]

    def execute(self, operation: Callable[[], T], label: str, dependency: str = "llm") -> T:
        """Run operation, retrying transient failures.

        Raises:
            CircuitOpenError: The dependency's breaker is open.
            FatalError: The failure is not transient.
            RetryableError: Transient failures outlasted the retry budget.
        """
        breaker = self.breaker(dependency)
        attempt = 0
        pauses = 0

        while True:
            try:
                return breaker.call(lambda: self._invoke(operation, label))
            except ResilienceError:
                raise
            except Exception as e:
                if is_rate_limited(e):
                    pauses += 1
                    limit = self.retry.max_rate_limit_pauses
                    if limit is not None and pauses > limit:
                        raise RetryableError(
                            f"{label} still rate limited after {limit} pause(s): {e}",
                            label=label,
                            attempts=attempt + 1,
                        ) from e
                    self.logger.warning(
                        "%s rate limited; pausing %.0fs (attempt not consumed)",
                        label, self.retry.rate_limit_pause_seconds,
                    )
                    self._sleep(self.retry.rate_limit_pause_seconds)
                    continue

                if not is_retryable(e):
                    self.logger.error("%s failed with non-transient error: %s", label, e)
                    raise FatalError(f"{label} failed: {e}", label=label) from e

                if attempt >= self.retry.max_retries:
                    raise RetryableError(
                        f"{label} failed after {attempt + 1} attempts: {e}",
                        label=label,
                        attempts=attempt + 1,
                    ) from e

                delay = backoff_delay(attempt, self.retry)
                self.logger.warning(
                    "%s failed (attempt %d/%d): %s. Retrying in %.1fs",
                    label, attempt + 1, self.retry.max_retries + 1, e, delay,
                )
                self._sleep(delay)
                attempt += 1

    def _invoke(self, operation: Callable[[], T], label: str) -> T:
        timeout = self.retry.timeout_seconds
        if timeout is None:
            return operation()

        pool = concurrent.futures.ThreadPoolExecutor(max_workers=1)
        future = pool.submit(operation)
        try:
            return future.result(timeout=timeout)
        except concurrent.futures.TimeoutError as e:
            raise TimeoutError(f"{label} timeout after {timeout:.1f}s") from e
        finally:
            # The worker is abandoned on timeout; the pool must not block on it.
            pool.shutdown(wait=False, cancel_futures=True)
