"""
Crawl engine: bounded-concurrency multi-page fetcher.

Starting from the job URL it follows pagination links on the same host, up to
the page limit, with per-domain concurrency, a politeness delay, robots.txt
compliance and in-client retries for transient status codes. Every fetched
page goes through the shared extraction contract and the pages are returned
together as one ``RawData``.
"""

from __future__ import annotations

import asyncio
import time
from typing import List, Optional, Tuple

import structlog

from techtransfer_scraper.config.config import CrawlEngineConfig
from techtransfer_scraper.crawler.http_client import FetchResponse, HttpClient
from techtransfer_scraper.engines.base import BaseEngine
from techtransfer_scraper.engines.extraction import DEFAULT_PAGINATION_LINKS, find_links, looks_like_json
from techtransfer_scraper.protocols import EngineType, Job, PerformanceMetrics, RawData, RawPage
from techtransfer_scraper.recovery.errors import ErrorClassifier, ParseError

logger = structlog.get_logger(__name__)


class CrawlEngine(BaseEngine):
    """Concurrent crawler for pagination-heavy or high-volume institutions."""

    engine_type = EngineType.CRAWL

    def __init__(self, config: Optional[CrawlEngineConfig] = None, classifier: Optional[ErrorClassifier] = None):
        self.config = config or CrawlEngineConfig()
        super().__init__(timeout=self.config.timeout, classifier=classifier)
        self.client = HttpClient(
            timeout=self.config.timeout,
            obey_robots=self.config.obey_robots,
            concurrent_requests_per_domain=self.config.concurrent_requests_per_domain,
            download_delay=self.config.download_delay,
            retry_times=self.config.retry_times,
            retry_http_codes=self.config.retry_http_codes,
            user_agent=self.config.user_agent,
        )

    def deadline(self, job: Job) -> float:
        # The whole crawl, not one request, is bounded here
        return max(job.config.timeout or 0.0, self.config.timeout)

    async def _initialize(self) -> None:
        await self.client.initialize()

    async def _cleanup(self) -> None:
        await self.client.close()

    async def is_healthy(self) -> bool:
        return self._initialized and self.client.is_open

    def _page_limit(self, job: Job) -> int:
        pagination = job.config.pagination
        if pagination is None or not pagination.enabled or pagination.page_number is not None:
            return 1
        return max(1, min(pagination.max_pages, self.config.max_pages))

    async def _fetch(self, job: Job, url: str) -> FetchResponse:
        response = await self.client.fetch(
            url,
            headers=self.request_headers(job),
            timeout=job.config.timeout or self.config.timeout,
        )
        response.raise_for_status()
        return response

    def _parse(self, job: Job, url: str, response: FetchResponse) -> Tuple[Optional[RawPage], Optional[ParseError]]:
        text = response.text(job.config.encoding or "utf-8")
        try:
            page = self.build_page(
                url, response.final_url, response.status, text, response.content_type, job, response.headers
            )
        except ParseError as e:
            logger.info("Skipping page that failed extraction", job_id=job.id, url=url, error=e.message)
            return None, e
        return page, None

    def _next_links(self, job: Job, response: FetchResponse) -> List[str]:
        text = response.text(job.config.encoding or "utf-8")
        if looks_like_json(response.content_type, text):
            return []
        pagination = job.config.pagination
        selector = (pagination.link_selector if pagination else None) or DEFAULT_PAGINATION_LINKS
        return find_links(text, selector, response.final_url)

    async def _scrape(self, job: Job) -> RawData:
        started = time.monotonic()
        limit = self._page_limit(job)

        # The first page decides the job's fate; its failures propagate
        first = await self._fetch(job, job.url)
        responses: List[Tuple[str, FetchResponse]] = [(job.url, first)]
        visited = {job.url, first.final_url}
        skipped: List[str] = []

        frontier = [u for u in self._next_links(job, first) if u not in visited] if limit > 1 else []
        while frontier and len(responses) < limit:
            batch = frontier[: limit - len(responses)]
            frontier = frontier[len(batch):]
            visited.update(batch)
            results = await asyncio.gather(*(self._fetch(job, url) for url in batch), return_exceptions=True)
            for url, result in zip(batch, results):
                if isinstance(result, asyncio.CancelledError):
                    raise result
                if isinstance(result, BaseException):
                    logger.info("Skipping page after fetch failure", job_id=job.id, url=url, error=str(result))
                    skipped.append(url)
                    continue
                responses.append((url, result))
                visited.add(result.final_url)
                frontier.extend(u for u in self._next_links(job, result) if u not in visited and u not in frontier)

        pages: List[RawPage] = []
        first_error: Optional[ParseError] = None
        for url, response in responses:
            page, error = self._parse(job, url, response)
            if page is not None:
                pages.append(page)
            else:
                skipped.append(url)
                first_error = first_error or error
        if not pages:
            assert first_error is not None
            raise first_error

        logger.debug("Crawl complete", job_id=job.id, pages=len(pages), skipped=len(skipped))
        return RawData(
            engine=self.engine_type,
            pages=tuple(pages),
            metrics=PerformanceMetrics(
                started_at=started,
                finished_at=time.monotonic(),
                pages_fetched=len(responses),
                bytes_received=sum(len(r.body) for _, r in responses),
                engine=self.engine_type.value,
            ),
            skipped_urls=tuple(skipped),
        )
