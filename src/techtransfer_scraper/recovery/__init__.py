"""Failure handling: error classification, retry policy, circuit breaking and the dead-letter archive."""

from .circuit_breaker import CircuitBreaker, CircuitBreakerSettings, CircuitOpenError, CircuitState
from .dead_letter import DeadLetterArchive, FailedJob
from .errors import (
    AuthenticationFailure,
    ErrorClassifier,
    HttpStatusError,
    ParseError,
    RateLimitedError,
    ScraperException,
    ValidationFailure,
    kind_for_status,
    redact,
)
from .retry import KindRetry, RetryDecision, RetryPolicy

__all__ = [
    "AuthenticationFailure",
    "CircuitBreaker",
    "CircuitBreakerSettings",
    "CircuitOpenError",
    "CircuitState",
    "DeadLetterArchive",
    "ErrorClassifier",
    "FailedJob",
    "HttpStatusError",
    "KindRetry",
    "ParseError",
    "RateLimitedError",
    "RetryDecision",
    "RetryPolicy",
    "ScraperException",
    "ValidationFailure",
    "kind_for_status",
    "redact",
]
