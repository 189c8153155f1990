"""
Tests for error classification and redaction.
"""

import asyncio
import json

import aiohttp
import pytest
from playwright.async_api import Error as PlaywrightError
from playwright.async_api import TimeoutError as PlaywrightTimeoutError

from techtransfer_scraper.protocols import ErrorKind, ErrorSeverity, RateLimitSnapshot
from techtransfer_scraper.recovery.errors import (
    ErrorClassifier,
    HttpStatusError,
    ParseError,
    ScraperException,
    kind_for_status,
    parse_retry_after,
    redact,
)


@pytest.fixture
def classifier():
    return ErrorClassifier()


@pytest.mark.unit
class TestStatusMapping:
    @pytest.mark.parametrize(
        "status,kind",
        [
            (429, ErrorKind.RATE_LIMITED),
            (401, ErrorKind.AUTHENTICATION_ERROR),
            (403, ErrorKind.AUTHORIZATION_ERROR),
            (404, ErrorKind.NOT_FOUND),
            (410, ErrorKind.NOT_FOUND),
            (408, ErrorKind.NETWORK_TIMEOUT),
            (500, ErrorKind.SERVICE_ERROR),
            (503, ErrorKind.SERVICE_ERROR),
            (400, ErrorKind.VALIDATION_ERROR),
        ],
    )
    def test_kind_for_status(self, status, kind):
        assert kind_for_status(status) is kind

    @pytest.mark.parametrize(
        "header,expected",
        [("5", 5.0), ("0.5", 0.5), (None, None), ("", None), ("-3", None), ("Wed, 21 Oct 2026 07:28:00 GMT", None)],
    )
    def test_parse_retry_after(self, header, expected):
        assert parse_retry_after(header) == expected


@pytest.mark.unit
class TestClassification:
    @pytest.mark.parametrize(
        "exc,kind",
        [
            (asyncio.TimeoutError(), ErrorKind.NETWORK_TIMEOUT),
            (aiohttp.ClientConnectionError("refused"), ErrorKind.NETWORK_ERROR),
            (ConnectionResetError(), ErrorKind.NETWORK_ERROR),
            (PlaywrightTimeoutError("Timeout 30000ms exceeded"), ErrorKind.NETWORK_TIMEOUT),
            (PlaywrightError("net::ERR_NAME_NOT_RESOLVED at https://x"), ErrorKind.NETWORK_ERROR),
            (PlaywrightError("net::ERR_TIMED_OUT at https://x"), ErrorKind.NETWORK_TIMEOUT),
            (PlaywrightError("Target page, context or browser has been closed"), ErrorKind.SERVICE_ERROR),
            (json.JSONDecodeError("Expecting value", "<html>", 0), ErrorKind.PARSE_ERROR),
            (ParseError("missing title"), ErrorKind.PARSE_ERROR),
            (ValueError("surprise"), ErrorKind.INTERNAL_ERROR),
        ],
    )
    def test_kind_of(self, classifier, exc, kind):
        assert classifier.kind_of(exc)[0] is kind

    def test_client_response_error_keeps_status(self, classifier):
        exc = aiohttp.ClientResponseError(request_info=None, history=(), status=503, message="Unavailable")

        assert classifier.kind_of(exc) == (ErrorKind.SERVICE_ERROR, 503)

    def test_http_status_error_carries_retry_after(self, classifier, university_job):
        error = classifier.classify(HttpStatusError(429, university_job.url, retry_after=3.0), university_job)

        assert error.kind is ErrorKind.RATE_LIMITED
        assert error.status_code == 429
        assert error.retry_after == 3.0

    def test_classify_builds_full_error_value(self, classifier, university_job):
        job = university_job.with_status(university_job.status, retry_count=2)
        snapshot = RateLimitSnapshot("tech.stanford.edu", 0.0, 5, 5, 2.0)

        error = classifier.classify(
            ScraperException("upstream said no", ErrorKind.SERVICE_ERROR, metadata={"api_key": "s3cret"}),
            job,
            rate_limit_snapshot=snapshot,
            metadata={"phase": "fetch"},
        )

        assert error.job_id == "job-stanford-1"
        assert error.url == job.url
        assert error.retry_attempt == 2
        assert error.rate_limit_snapshot is snapshot
        assert error.recovery_suggestions
        assert error.metadata == {"exception_type": "ScraperException", "phase": "fetch"}

    def test_make_error_without_exception(self, classifier, university_job):
        error = classifier.make_error(ErrorKind.VALIDATION_ERROR, "not academic", university_job)

        assert error.kind is ErrorKind.VALIDATION_ERROR
        assert error.message == "not academic"
        assert not error.retryable

    def test_error_to_dict_falls_back_to_kind_status(self, classifier, university_job):
        payload = classifier.make_error(ErrorKind.NOT_FOUND, "gone", university_job).to_dict()

        assert payload["status_code"] == 404
        assert payload["severity"] == ErrorSeverity.LOW.value
        assert payload["retryable"] is False


@pytest.mark.unit
class TestRedaction:
    def test_removes_credentials_case_insensitively(self):
        cleaned = redact({"X-API-Key": "abc", "Token": "t", "Accept": "text/html"})

        assert cleaned == {"Accept": "text/html"}

    def test_redacts_nested_mappings(self):
        cleaned = redact({"headers": {"password": "p", "User-Agent": "bot"}, "attempt": 1})

        assert cleaned == {"headers": {"User-Agent": "bot"}, "attempt": 1}

    def test_job_snapshot_never_exposes_api_key(self, federal_job):
        assert "X-API-Key" not in federal_job.snapshot()["headers"]
