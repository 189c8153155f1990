"""
Shared adapter flow.

An adapter runs institution-specific gates before any network call, prepares
the job (headers, default selectors), delegates extraction to the engine it is
given, and turns the engine's raw pages into a validated ``ScrapeResult``.
Data-quality problems yield a partial result with ``success=False``; only
infrastructure failures come back as ``ScrapeError``.
"""

from __future__ import annotations

import re
import time
from abc import ABC
from dataclasses import replace
from typing import Any, Dict, List, Mapping, Optional, Tuple
from urllib.parse import parse_qsl, urlencode, urlparse, urlunparse

import structlog

from techtransfer_scraper.engines.extraction import clean_text
from techtransfer_scraper.protocols import (
    DeferredPage,
    InstitutionType,
    Job,
    JobStatus,
    PaginationConfig,
    PerformanceMetrics,
    RateLimitConfig,
    RawData,
    ScrapeEngine,
    ScrapeOutcome,
    ScrapeResult,
    ValidationIssue,
    ValidationResult,
)
from techtransfer_scraper.recovery.errors import ErrorClassifier

logger = structlog.get_logger(__name__)


def header_value(headers: Mapping[str, str], name: str) -> Optional[str]:
    """Case-insensitive header lookup."""
    wanted = name.lower()
    for key, value in headers.items():
        if key.lower() == wanted:
            return value
    return None


def with_query_param(url: str, name: str, value: Any) -> str:
    parsed = urlparse(url)
    query = [(k, v) for k, v in parse_qsl(parsed.query, keep_blank_values=True) if k != name]
    query.append((name, str(value)))
    return urlunparse(parsed._replace(query=urlencode(query)))


def derive_page_job(job: Job, page_number: int) -> Job:
    """Child job addressing one page of a paginated listing; it never paginates further."""
    pagination = job.config.pagination or PaginationConfig()
    return replace(
        job,
        id=f"{job.id}:page-{page_number}",
        url=with_query_param(job.url, pagination.page_param, page_number),
        config=replace(job.config, pagination=replace(pagination, page_number=page_number)),
        status=JobStatus.PENDING,
        retry_count=0,
    )


def normalize_value(value: Any) -> Any:
    if isinstance(value, str):
        return clean_text(value)
    if isinstance(value, list):
        return [normalize_value(v) for v in value]
    return value


class BaseAdapter(ABC):
    """
    Template for institution adapters.

    Subclasses override the hooks they need:
    ``check_job`` (raise to reject before any I/O), ``prepare_job``,
    ``post_process`` and ``rate_limit_config``. Multi-request adapters
    override ``run`` as well.
    """

    institution_type: InstitutionType

    def __init__(self, classifier: Optional[ErrorClassifier] = None):
        self.classifier = classifier or ErrorClassifier()

    def rate_limit_config(self, job: Job, base: RateLimitConfig) -> RateLimitConfig:
        return base

    def check_job(self, job: Job) -> None:
        """Raise a ``ScraperException`` to reject the job before any network call."""

    def prepare_job(self, job: Job) -> Job:
        return job

    def post_process(self, job: Job, fields: Dict[str, Any], raw: RawData) -> Tuple[Dict[str, Any], Dict[str, Any]]:
        """Return normalised fields and result metadata."""
        return {k: normalize_value(v) for k, v in fields.items()}, {}

    async def scrape(self, job: Job, engine: ScrapeEngine) -> ScrapeOutcome:
        try:
            self.check_job(job)
            prepared = self.prepare_job(job)
            return await self.run(prepared, engine)
        except Exception as exc:
            error = self.classifier.classify(exc, job, metadata={"adapter": type(self).__name__})
            logger.info("Adapter rejected job", job_id=job.id, kind=error.kind.value, error=error.message)
            return None, error

    async def run(self, job: Job, engine: ScrapeEngine) -> ScrapeOutcome:
        raw, error = await engine.scrape(job)
        if error is not None:
            return None, error
        assert raw is not None
        return self.build_result(job, raw), None

    def build_result(
        self,
        job: Job,
        raw: RawData,
        *,
        metadata: Optional[Mapping[str, Any]] = None,
        deferred_pages: Tuple[DeferredPage, ...] = (),
        warnings: Tuple[ValidationIssue, ...] = (),
    ) -> ScrapeResult:
        items: List[Dict[str, Any]] = []
        result_meta: Dict[str, Any] = {}
        for page in raw.pages:
            fields, page_meta = self.post_process(job, dict(page.fields), raw)
            items.append(fields)
            result_meta = result_meta or page_meta
        extracted = items[0] if items else {}
        validation = self.validate(job, extracted)
        if warnings:
            validation = replace(validation, warnings=validation.warnings + tuple(warnings))

        result_meta.update(
            {
                "institution_type": self.institution_type.value,
                "engine": raw.engine.value,
                "pages": len(raw.pages),
            }
        )
        if raw.skipped_urls:
            result_meta["skipped_urls"] = list(raw.skipped_urls)
        result_meta.update(metadata or {})

        metrics = raw.metrics
        if not metrics.finished_at:
            now = time.monotonic()
            metrics = PerformanceMetrics(started_at=now, finished_at=now, engine=raw.engine.value)

        return ScrapeResult(
            job_id=job.id,
            url=job.url,
            extracted_fields=extracted,
            performance_metrics=metrics,
            validation_result=validation,
            success=validation.is_valid,
            items=tuple(items) if len(items) > 1 else (),
            deferred_pages=deferred_pages,
            metadata=result_meta,
        )

    def required_fields(self, job: Job) -> Tuple[str, ...]:
        return tuple(job.validation_rules.required)

    def validate(self, job: Job, fields: Mapping[str, Any]) -> ValidationResult:
        """Missing required fields are errors; pattern mismatches are warnings."""
        errors: List[ValidationIssue] = []
        warnings: List[ValidationIssue] = []

        for name in self.required_fields(job):
            value = fields.get(name)
            if value is None or value == "" or value == []:
                errors.append(ValidationIssue(name, "required", f"Missing required field: {name}"))

        for name, pattern in job.validation_rules.patterns.items():
            value = fields.get(name)
            if value is None:
                continue
            values = value if isinstance(value, list) else [value]
            try:
                regex = re.compile(pattern)
            except re.error:
                warnings.append(ValidationIssue(name, "pattern", f"Invalid pattern for {name}: {pattern}"))
                continue
            if not all(regex.search(str(v)) for v in values):
                warnings.append(ValidationIssue(name, "pattern", f"Field {name} does not match expected pattern"))

        return ValidationResult(is_valid=not errors, errors=tuple(errors), warnings=tuple(warnings))
