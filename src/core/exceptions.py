"""Custom exception hierarchy for Conclave.

All exceptions inherit from ConclaveError so callers can catch broadly
or narrowly as needed.
"""


class ConclaveError(Exception):
    """Base exception for all Conclave errors."""


# ---------------------------------------------------------------------------
# Validation
# ---------------------------------------------------------------------------

class ValidationError(ConclaveError):
    """A file-operation request was rejected. Local, never retried."""


class PathValidationError(ValidationError):
    """Path rejected by the path validator."""

    def __init__(self, message: str, path: str = ""):
        self.path = path
        super().__init__(message)


# ---------------------------------------------------------------------------
# Shared memory
# ---------------------------------------------------------------------------

class CapacityError(ConclaveError):
    """Cache quota or capacity overflow.

    The cache reports this through StoreResult rather than raising; the type
    exists so callers that want to escalate a rejection can do so.
    """


class ContextStoreError(ConclaveError):
    """Context snapshot or override record could not be read."""


# ---------------------------------------------------------------------------
# Resilience
# ---------------------------------------------------------------------------

class ResilienceError(ConclaveError):
    """Failure surfaced by the resilient executor."""

    def __init__(self, message: str, label: str = ""):
        self.label = label
        super().__init__(message)


class RetryableError(ResilienceError):
    """Transient failure whose retry budget is exhausted."""

    def __init__(self, message: str, label: str = "", attempts: int = 0):
        self.attempts = attempts
        super().__init__(message, label=label)


class FatalError(ResilienceError):
    """Non-transient failure. Propagates without retry."""


class CircuitOpenError(ResilienceError):
    """Circuit breaker is open; the call was not attempted."""

    def __init__(self, message: str, label: str = "", retry_after_seconds: float = 0.0):
        self.retry_after_seconds = retry_after_seconds
        super().__init__(message, label=label)


# ---------------------------------------------------------------------------
# Orchestration
# ---------------------------------------------------------------------------

class HandoffError(ConclaveError):
    """Requested handoff target is invalid or exhausted.

    Recovered locally by round-robin fallback, never surfaced as a failure.
    """

    def __init__(self, requested: str, reason: str):
        self.requested = requested
        self.reason = reason
        super().__init__(f"Invalid handoff to '{requested}': {reason}")


class OrchestrationError(ConclaveError):
    """Cycle controller or run session failure."""


class StalledRunError(OrchestrationError):
    """Maximum cycles reached without progress."""

    def __init__(self, cycles: int, message: str | None = None):
        self.cycles = cycles
        super().__init__(message or f"No progress after {cycles} cycle(s)")


class ConcurrentRunError(OrchestrationError):
    """Another orchestrator process holds the state directory."""


# ---------------------------------------------------------------------------
# LLM
# ---------------------------------------------------------------------------

class LLMError(ConclaveError):
    """Failed LLM operation."""


class RateLimitError(LLMError):
    """Hit API rate limit."""


class AuthenticationError(LLMError):
    """Invalid API key or unauthorized."""


class ResponseParseError(LLMError):
    """Failed to parse LLM response."""


# ---------------------------------------------------------------------------
# Tools
# ---------------------------------------------------------------------------

class ToolError(ConclaveError):
    """Tool execution failure."""


# ---------------------------------------------------------------------------
# Configuration
# ---------------------------------------------------------------------------

class ConfigError(ConclaveError):
    """Invalid or missing configuration."""
