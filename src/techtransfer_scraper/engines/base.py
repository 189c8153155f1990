"""
Common scaffolding for scraping engines.

``BaseEngine.scrape`` is the boundary where every backend-specific failure
(DNS, timeouts, browser crashes, HTTP status codes, selector misses) is
converted into a ``ScrapeError`` value. Subclasses implement ``_scrape`` and
are free to raise.
"""

from __future__ import annotations

import asyncio
import time
from abc import ABC, abstractmethod
from typing import Any, Dict, Mapping, Optional

import structlog

from techtransfer_scraper.engines.extraction import extract_fields
from techtransfer_scraper.observability import histogram
from techtransfer_scraper.protocols import EngineOutcome, EngineType, ErrorKind, Job, RawData, RawPage
from techtransfer_scraper.recovery.errors import ErrorClassifier, ScraperException

logger = structlog.get_logger(__name__)


class BaseEngine(ABC):
    """Template for engines: lifecycle flags, timeout bound and error conversion."""

    engine_type: EngineType

    def __init__(self, timeout: float = 30.0, classifier: Optional[ErrorClassifier] = None):
        self.timeout = timeout
        self.classifier = classifier or ErrorClassifier()
        self._initialized = False
        self._scrape_count = 0
        self._error_count = 0

    @property
    def initialized(self) -> bool:
        return self._initialized

    async def initialize(self) -> None:
        if self._initialized:
            return
        await self._initialize()
        self._initialized = True
        logger.info("Engine initialized", engine=self.engine_type.value)

    async def cleanup(self) -> None:
        if not self._initialized:
            return
        try:
            await self._cleanup()
        finally:
            self._initialized = False
        logger.info("Engine cleaned up", engine=self.engine_type.value, scrapes=self._scrape_count)

    async def is_healthy(self) -> bool:
        return self._initialized

    def deadline(self, job: Job) -> float:
        """Upper bound in seconds on one ``scrape`` call."""
        return job.config.timeout or self.timeout

    async def scrape(self, job: Job) -> EngineOutcome:
        """Run the backend for ``job``; never raises except on cancellation."""
        started = time.monotonic()
        self._scrape_count += 1
        try:
            if not self._initialized:
                raise ScraperException(f"{self.engine_type.value} engine not initialized", ErrorKind.SERVICE_ERROR)
            async with asyncio.timeout(self.deadline(job)):
                raw = await self._scrape(job)
        except asyncio.CancelledError:
            raise
        except Exception as exc:
            self._error_count += 1
            error = self.classifier.classify(exc, job, metadata={"engine": self.engine_type.value})
            logger.warning(
                "Engine scrape failed",
                engine=self.engine_type.value,
                job_id=job.id,
                url=job.url,
                kind=error.kind.value,
                error=error.message,
            )
            return None, error

        histogram(
            "scrape_duration_seconds",
            time.monotonic() - started,
            {"engine": self.engine_type.value, "institution_type": job.institution_type.value},
        )
        return raw, None

    @abstractmethod
    async def _initialize(self) -> None:
        ...

    @abstractmethod
    async def _scrape(self, job: Job) -> RawData:
        ...

    @abstractmethod
    async def _cleanup(self) -> None:
        ...

    @staticmethod
    def request_headers(job: Job, base: Optional[Mapping[str, str]] = None) -> Dict[str, str]:
        """Engine defaults overlaid with the job's headers and user agent."""
        headers = dict(base or {})
        headers.update(job.config.headers)
        if job.config.user_agent:
            headers["User-Agent"] = job.config.user_agent
        return headers

    @staticmethod
    def build_page(
        url: str,
        final_url: str,
        status: int,
        text: str,
        content_type: str,
        job: Job,
        headers: Optional[Mapping[str, str]] = None,
    ) -> RawPage:
        """Extract the job's selectors from one document."""
        fields = extract_fields(text, content_type, job.config.selectors, job.config.optional_selectors)
        return RawPage(
            url=url,
            final_url=final_url,
            status=status,
            fields=fields,
            content=text,
            content_type=content_type,
            headers=dict(headers or {}),
        )

    def get_stats(self) -> Dict[str, Any]:
        return {
            "engine": self.engine_type.value,
            "initialized": self._initialized,
            "scrapes": self._scrape_count,
            "errors": self._error_count,
        }
