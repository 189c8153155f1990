"""Result sinks: where finished jobs are reported."""

from __future__ import annotations

from typing import List

import structlog

from techtransfer_scraper.protocols import ResultSink, ScrapeError, ScrapeResult

logger = structlog.get_logger(__name__)

__all__ = ["LoggingResultSink", "MemoryResultSink", "ResultSink"]


class LoggingResultSink:
    """Writes every outcome as one structured log line."""

    async def log_success(self, result: ScrapeResult) -> None:
        logger.info(
            "Scrape result",
            job_id=result.job_id,
            url=result.url,
            success=result.success,
            fields=sorted(result.extracted_fields),
            items=len(result.items) or 1,
            deferred_pages=[p.page_number for p in result.deferred_pages],
            validation_errors=[e.message for e in result.validation_result.errors],
            duration=round(result.performance_metrics.duration, 3),
        )

    async def log_error(self, error: ScrapeError) -> None:
        logger.error("Scrape failed", **error.to_dict())


class MemoryResultSink:
    """Keeps outcomes in memory; used by one-shot CLI runs."""

    def __init__(self) -> None:
        self.results: List[ScrapeResult] = []
        self.errors: List[ScrapeError] = []

    async def log_success(self, result: ScrapeResult) -> None:
        self.results.append(result)

    async def log_error(self, error: ScrapeError) -> None:
        self.errors.append(error)
