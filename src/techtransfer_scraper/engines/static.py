"""
Static engine: one HTTP GET followed by selector extraction.
"""

from __future__ import annotations

import time
from typing import Optional

import structlog

from techtransfer_scraper.config.config import StaticEngineConfig
from techtransfer_scraper.crawler.http_client import HttpClient
from techtransfer_scraper.engines.base import BaseEngine
from techtransfer_scraper.protocols import EngineType, Job, PerformanceMetrics, RawData
from techtransfer_scraper.recovery.errors import ErrorClassifier

logger = structlog.get_logger(__name__)


class StaticEngine(BaseEngine):
    """Fetch-and-parse engine for server-rendered listing pages."""

    engine_type = EngineType.STATIC

    def __init__(self, config: Optional[StaticEngineConfig] = None, classifier: Optional[ErrorClassifier] = None):
        self.config = config or StaticEngineConfig()
        super().__init__(timeout=self.config.timeout, classifier=classifier)
        self.client = HttpClient(
            timeout=self.config.timeout,
            headers=self.config.headers,
            max_redirects=self.config.max_redirects if self.config.follow_redirects else 0,
            concurrent_requests_per_domain=self.config.max_concurrency,
        )

    async def _initialize(self) -> None:
        await self.client.initialize()

    async def _cleanup(self) -> None:
        await self.client.close()

    async def is_healthy(self) -> bool:
        return self._initialized and self.client.is_open

    async def _scrape(self, job: Job) -> RawData:
        started = time.monotonic()
        response = await self.client.fetch(
            job.url,
            headers=self.request_headers(job),
            timeout=job.config.timeout or self.config.timeout,
        )
        response.raise_for_status()

        text = response.text(job.config.encoding or "utf-8")
        page = self.build_page(
            job.url, response.final_url, response.status, text, response.content_type, job, response.headers
        )
        logger.debug("Static scrape complete", job_id=job.id, fields=len(page.fields), status=response.status)
        return RawData(
            engine=self.engine_type,
            pages=(page,),
            metrics=PerformanceMetrics(
                started_at=started,
                finished_at=time.monotonic(),
                pages_fetched=1,
                bytes_received=len(response.body),
                engine=self.engine_type.value,
            ),
        )
