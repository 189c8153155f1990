"""
Federal research lab listings.

Federal endpoints are API-key protected JSON (or HTML) listings on ``.gov`` /
``.mil`` hosts. Every request carries security and audit headers. Listings
spread over several pages are walked by this adapter itself: before each
follow-up page it asks the rate limiter for a token and defers the page,
instead of failing the job, when none is available.
"""

from __future__ import annotations

import json
import random
import string
import time
from dataclasses import replace
from datetime import datetime, timezone
from typing import Any, Callable, Dict, List, Optional, Tuple
from urllib.parse import urlparse

import structlog

from techtransfer_scraper.adapters.base import BaseAdapter, derive_page_job, header_value
from techtransfer_scraper.config.config import FederalConfig
from techtransfer_scraper.crawler.rate_limiter import RateLimiter
from techtransfer_scraper.observability import increment
from techtransfer_scraper.protocols import (
    DeferredPage,
    ErrorKind,
    InstitutionType,
    Job,
    PaginationConfig,
    RawData,
    RawPage,
    ScrapeEngine,
    ScrapeOutcome,
    ValidationIssue,
)
from techtransfer_scraper.engines.extraction import resolve_path
from techtransfer_scraper.recovery.errors import AuthenticationFailure, ErrorClassifier, ValidationFailure

logger = structlog.get_logger(__name__)

API_KEY_HEADER = "X-API-Key"
FEDERAL_USER_AGENT = "TechTransfer-Scraper/2.0 (Federal Labs; Compliance)"
_BASE36 = string.digits + string.ascii_lowercase


def generate_request_id(now: Optional[float] = None) -> str:
    """Audit id of the form ``fed-<epoch ms>-<9 base36 chars>``."""
    millis = int((now if now is not None else time.time()) * 1000)
    suffix = "".join(random.choices(_BASE36, k=9))
    return f"fed-{millis}-{suffix}"


def host_matches_suffix(host: str, suffix: str) -> bool:
    """``nrel.gov`` matches ``.gov``; ``nrel.gov.example.com`` does not."""
    suffix = suffix.lower()
    return host == suffix.lstrip(".") or host.endswith(suffix if suffix.startswith(".") else f".{suffix}")


def total_pages(page: RawPage) -> int:
    """Page count announced by the first page, 1 when it announces none."""
    candidate: Any = page.fields.get("total_pages")
    if candidate is None and page.content:
        try:
            payload = json.loads(page.content)
        except ValueError:
            payload = None
        if payload is not None:
            for path in ("pagination.totalPages", "pagination.total_pages", "totalPages", "total_pages"):
                value = resolve_path(payload, path)
                if isinstance(value, (int, str)):
                    candidate = value
                    break
    if isinstance(candidate, list):
        candidate = candidate[0] if candidate else None
    try:
        return max(1, int(str(candidate).strip()))
    except (TypeError, ValueError):
        return 1


class FederalAdapter(BaseAdapter):
    """API-key gated, allow-listed, pagination-aware adapter for federal labs."""

    institution_type = InstitutionType.FEDERAL_LAB

    def __init__(
        self,
        rate_limiter: RateLimiter,
        config: Optional[FederalConfig] = None,
        classifier: Optional[ErrorClassifier] = None,
        clock: Callable[[], float] = time.time,
    ):
        super().__init__(classifier)
        self.rate_limiter = rate_limiter
        self.config = config or FederalConfig()
        self._clock = clock

    def check_job(self, job: Job) -> None:
        if not header_value(job.config.headers, API_KEY_HEADER):
            raise AuthenticationFailure(
                "Missing API key for federal lab access",
                metadata={"job_id": job.id},
            )
        host = (urlparse(job.url).hostname or "").lower().rstrip(".")
        if not any(host_matches_suffix(host, s) for s in self.config.allowed_suffixes):
            raise ValidationFailure(
                f"Invalid federal lab URL format: {job.url}",
                metadata={"url": job.url, "allowed": list(self.config.allowed_suffixes)},
            )

    def security_headers(self, job: Job) -> Dict[str, str]:
        now = self._clock()
        return {
            "X-Institution-ID": job.institution_id or self.config.institution_id or job.institution_key,
            "X-Security-Protocol": self.config.security_protocol,
            "User-Agent": FEDERAL_USER_AGENT,
            "Accept": "application/json",
            "X-Request-ID": generate_request_id(now),
            "X-Request-Timestamp": datetime.fromtimestamp(now, timezone.utc).isoformat(),
        }

    def _with_headers(self, job: Job) -> Job:
        headers = self.security_headers(job)
        headers.update(job.config.headers)
        return replace(job, config=replace(job.config, headers=headers, user_agent=None))

    def prepare_job(self, job: Job) -> Job:
        return self._with_headers(job)

    async def run(self, job: Job, engine: ScrapeEngine) -> ScrapeOutcome:
        pagination = job.config.pagination or PaginationConfig()
        walk = pagination.enabled and pagination.page_number is None
        # Page 1 only; this adapter walks the remaining pages itself
        first_job = replace(job, config=replace(job.config, pagination=replace(pagination, enabled=False)))

        raw, error = await engine.scrape(first_job)
        if error is not None:
            return None, error
        assert raw is not None

        request_ids = [first_job.config.headers.get("X-Request-ID")]
        if not walk:
            return self.build_result(job, raw, metadata=self._metadata(job, 1, request_ids)), None

        announced = total_pages(raw.pages[0])
        last_page = min(announced, pagination.max_pages)
        pages: List[RawPage] = list(raw.pages)
        deferred: List[DeferredPage] = []
        warnings: List[ValidationIssue] = []
        rate_config = job.rate_limit_config
        key = job.institution_key

        for page_number in range(2, last_page + 1):
            page_job = self._with_headers(derive_page_job(job, page_number))
            decision = await self.rate_limiter.try_acquire(key, rate_config)
            if not decision.allowed:
                deferred.append(DeferredPage(page_number, page_job.url, decision.wait_ms))
                increment("pages_deferred")
                continue

            page_raw, page_error = await engine.scrape(page_job)
            request_ids.append(page_job.config.headers.get("X-Request-ID"))
            if page_error is None and page_raw is not None:
                pages.extend(page_raw.pages)
                continue

            assert page_error is not None
            if page_error.kind is ErrorKind.RATE_LIMITED:
                await self.rate_limiter.report_outcome(key, True)
                wait_ms = self.rate_limiter.cooldown_remaining_ms(key)
                deferred.append(DeferredPage(page_number, page_job.url, wait_ms))
                increment("pages_deferred")
                continue
            warnings.append(
                ValidationIssue(f"page_{page_number}", "fetch", f"{page_error.kind.value}: {page_error.message}")
            )

        if deferred:
            logger.info(
                "Deferred rate-limited pages",
                job_id=job.id,
                deferred=[d.page_number for d in deferred],
                total_pages=announced,
            )

        combined = replace(raw, pages=tuple(pages))
        metadata = self._metadata(job, announced, request_ids)
        return (
            self.build_result(
                job, combined, metadata=metadata, deferred_pages=tuple(deferred), warnings=tuple(warnings)
            ),
            None,
        )

    def _metadata(self, job: Job, announced: int, request_ids: List[Optional[str]]) -> Dict[str, Any]:
        return {
            "total_pages": announced,
            "security_protocol": self.config.security_protocol,
            "institution_id": job.institution_id or self.config.institution_id or job.institution_key,
            "request_ids": [r for r in request_ids if r],
        }

    def post_process(self, job: Job, fields: Dict[str, Any], raw: RawData) -> Tuple[Dict[str, Any], Dict[str, Any]]:
        normalized, _ = super().post_process(job, fields, raw)
        normalized.pop("total_pages", None)
        return normalized, {}
