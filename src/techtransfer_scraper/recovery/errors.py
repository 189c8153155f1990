"""
Error taxonomy and classification.

Engines and adapters raise ``ScraperException`` subclasses (or let library
exceptions escape) internally; ``ErrorClassifier`` turns any of them into the
immutable ``ScrapeError`` value that is the only failure type allowed to cross
the engine/adapter/orchestrator boundaries.
"""

from __future__ import annotations

import asyncio
import json
from typing import Any, Dict, Mapping, Optional, Tuple

import aiohttp
import structlog
from playwright.async_api import Error as PlaywrightError
from playwright.async_api import TimeoutError as PlaywrightTimeoutError

from techtransfer_scraper.protocols import ErrorKind, Job, RateLimitSnapshot, ScrapeError

logger = structlog.get_logger(__name__)

SENSITIVE_KEYS = frozenset({"password", "token", "apikey", "api_key", "secret", "x-api-key"})

RECOVERY_SUGGESTIONS: Dict[ErrorKind, Tuple[str, ...]] = {
    ErrorKind.NETWORK_TIMEOUT: (
        "Check network connectivity",
        "Verify URL accessibility",
        "Adjust timeout settings",
    ),
    ErrorKind.NETWORK_ERROR: (
        "Check network connectivity",
        "Verify DNS resolution for the institution host",
        "Retry operation",
    ),
    ErrorKind.RATE_LIMITED: (
        "Reduce request frequency",
        "Implement exponential backoff",
        "Check rate limit configuration",
    ),
    ErrorKind.PARSE_ERROR: (
        "Verify selector validity",
        "Check page structure changes",
        "Update selector patterns",
    ),
    ErrorKind.VALIDATION_ERROR: (
        "Review data requirements",
        "Update validation rules",
        "Check data transformation logic",
    ),
    ErrorKind.AUTHENTICATION_ERROR: (
        "Verify credentials",
        "Check session validity",
        "Update authentication tokens",
    ),
    ErrorKind.AUTHORIZATION_ERROR: (
        "Verify access permissions for the institution",
        "Check API key scope",
    ),
    ErrorKind.NOT_FOUND: (
        "Verify URL accessibility",
        "Update institution listing URL",
    ),
    ErrorKind.SERVICE_ERROR: (
        "Retry operation",
        "Check institution service status",
    ),
}
DEFAULT_SUGGESTIONS: Tuple[str, ...] = ("Contact system administrator",)


class ScraperException(Exception):
    """Internal failure raised inside engines and adapters."""

    kind: ErrorKind = ErrorKind.INTERNAL_ERROR

    def __init__(
        self,
        message: str,
        kind: Optional[ErrorKind] = None,
        *,
        status_code: Optional[int] = None,
        retry_after: Optional[float] = None,
        metadata: Optional[Mapping[str, Any]] = None,
    ) -> None:
        super().__init__(message)
        if kind is not None:
            self.kind = kind
        self.message = message
        self.status_code = status_code
        self.retry_after = retry_after
        self.metadata = dict(metadata or {})


class RateLimitedError(ScraperException):
    kind = ErrorKind.RATE_LIMITED


class ParseError(ScraperException):
    kind = ErrorKind.PARSE_ERROR


class ValidationFailure(ScraperException):
    kind = ErrorKind.VALIDATION_ERROR


class AuthenticationFailure(ScraperException):
    kind = ErrorKind.AUTHENTICATION_ERROR


class HttpStatusError(ScraperException):
    """Non-success HTTP status; the kind follows the status code."""

    def __init__(self, status: int, url: str, *, retry_after: Optional[float] = None) -> None:
        super().__init__(
            f"HTTP {status} for {url}",
            kind_for_status(status),
            status_code=status,
            retry_after=retry_after,
        )


def kind_for_status(status: int) -> ErrorKind:
    """Map an HTTP status to the error taxonomy."""
    if status == 429:
        return ErrorKind.RATE_LIMITED
    if status == 401:
        return ErrorKind.AUTHENTICATION_ERROR
    if status == 403:
        return ErrorKind.AUTHORIZATION_ERROR
    if status in (404, 410):
        return ErrorKind.NOT_FOUND
    if status == 408:
        return ErrorKind.NETWORK_TIMEOUT
    if status >= 500:
        return ErrorKind.SERVICE_ERROR
    if status >= 400:
        return ErrorKind.VALIDATION_ERROR
    return ErrorKind.INTERNAL_ERROR


def parse_retry_after(value: Optional[str]) -> Optional[float]:
    """Seconds from a Retry-After header; HTTP-date values are ignored."""
    if not value:
        return None
    try:
        seconds = float(value)
    except ValueError:
        return None
    return seconds if seconds >= 0 else None


def redact(metadata: Mapping[str, Any]) -> Dict[str, Any]:
    """Copy of ``metadata`` with credentials removed, recursively."""
    cleaned: Dict[str, Any] = {}
    for key, value in metadata.items():
        if str(key).lower() in SENSITIVE_KEYS:
            continue
        if isinstance(value, Mapping):
            cleaned[key] = redact(value)
        else:
            cleaned[key] = value
    return cleaned


def recovery_suggestions(kind: ErrorKind) -> Tuple[str, ...]:
    return RECOVERY_SUGGESTIONS.get(kind, DEFAULT_SUGGESTIONS)


class ErrorClassifier:
    """Maps raw failures from any backend onto ``ErrorKind``."""

    def kind_of(self, exc: BaseException) -> Tuple[ErrorKind, Optional[int]]:
        if isinstance(exc, ScraperException):
            return exc.kind, exc.status_code
        # Playwright's TimeoutError subclasses its Error, check it first
        if isinstance(exc, PlaywrightTimeoutError):
            return ErrorKind.NETWORK_TIMEOUT, None
        if isinstance(exc, PlaywrightError):
            return self._kind_of_browser_error(exc), None
        if isinstance(exc, (asyncio.TimeoutError, TimeoutError)):
            return ErrorKind.NETWORK_TIMEOUT, None
        if isinstance(exc, aiohttp.TooManyRedirects):
            return ErrorKind.NETWORK_ERROR, None
        if isinstance(exc, aiohttp.ClientResponseError):
            return kind_for_status(exc.status), exc.status
        if isinstance(exc, aiohttp.InvalidURL):
            return ErrorKind.VALIDATION_ERROR, None
        if isinstance(exc, (aiohttp.ClientError, ConnectionError, OSError)):
            return ErrorKind.NETWORK_ERROR, None
        if isinstance(exc, (json.JSONDecodeError, UnicodeDecodeError)):
            return ErrorKind.PARSE_ERROR, None
        return ErrorKind.INTERNAL_ERROR, None

    @staticmethod
    def _kind_of_browser_error(exc: PlaywrightError) -> ErrorKind:
        message = str(exc)
        if "net::ERR_NAME_NOT_RESOLVED" in message or "net::ERR_CONNECTION" in message:
            return ErrorKind.NETWORK_ERROR
        if "net::ERR_TIMED_OUT" in message:
            return ErrorKind.NETWORK_TIMEOUT
        if "net::" in message:
            return ErrorKind.NETWORK_ERROR
        # Crashed or disconnected browser
        return ErrorKind.SERVICE_ERROR

    def classify(
        self,
        exc: BaseException,
        job: Job,
        *,
        rate_limit_snapshot: Optional[RateLimitSnapshot] = None,
        metadata: Optional[Mapping[str, Any]] = None,
    ) -> ScrapeError:
        kind, status_code = self.kind_of(exc)
        extra: Dict[str, Any] = {"exception_type": type(exc).__name__}
        retry_after: Optional[float] = None
        if isinstance(exc, ScraperException):
            extra.update(exc.metadata)
            retry_after = exc.retry_after
        if metadata:
            extra.update(metadata)

        message = str(exc) or type(exc).__name__
        if kind is ErrorKind.INTERNAL_ERROR:
            logger.error("Unclassified scraper failure", job_id=job.id, url=job.url, error=message, exc_info=exc)

        return ScrapeError(
            kind=kind,
            message=message,
            job_id=job.id,
            url=job.url,
            retry_attempt=job.retry_count,
            rate_limit_snapshot=rate_limit_snapshot,
            recovery_suggestions=recovery_suggestions(kind),
            status_code=status_code,
            retry_after=retry_after,
            metadata=redact(extra),
        )

    def make_error(
        self,
        kind: ErrorKind,
        message: str,
        job: Job,
        *,
        rate_limit_snapshot: Optional[RateLimitSnapshot] = None,
        metadata: Optional[Mapping[str, Any]] = None,
    ) -> ScrapeError:
        """Build a ``ScrapeError`` for a condition detected without an exception."""
        return ScrapeError(
            kind=kind,
            message=message,
            job_id=job.id,
            url=job.url,
            retry_attempt=job.retry_count,
            rate_limit_snapshot=rate_limit_snapshot,
            recovery_suggestions=recovery_suggestions(kind),
            metadata=redact(metadata or {}),
        )
