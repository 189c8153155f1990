"""
University technology-transfer listings.
"""

from __future__ import annotations

from dataclasses import replace
from typing import Any, Dict, Optional, Sequence, Tuple
from urllib.parse import urlparse

import structlog

from techtransfer_scraper.adapters.base import BaseAdapter, header_value
from techtransfer_scraper.config.config import UniversityConfig
from techtransfer_scraper.protocols import InstitutionType, Job, RawData
from techtransfer_scraper.recovery.errors import ErrorClassifier, ValidationFailure

logger = structlog.get_logger(__name__)

DEFAULT_SELECTORS: Dict[str, str] = {
    "title": ".technology-title, .tech-title, h1",
    "description": ".technology-description, .tech-description, .content",
    "contact": ".contact-info, .contact",
    "licensing": ".licensing-info, .license",
}
REQUIRED_SELECTORS: Tuple[str, ...] = ("title", "description")
PAGINATION_LINK_SELECTOR = ".pagination a, .pager a, nav.pages a"


def is_academic_host(url: str, markers: Sequence[str]) -> bool:
    host = (urlparse(url).hostname or "").lower()
    # Trailing dot lets ".edu" match "stanford.edu" as well as "cs.stanford.edu.au"
    return any(marker in f"{host}." for marker in markers)


class UniversityAdapter(BaseAdapter):
    """
    US (or language-pinned) university listings.

    Rejects URLs that do not look academic before any network call, fills
    missing selectors from the default set, normalises whitespace and
    validates required fields and patterns.
    """

    institution_type = InstitutionType.US_UNIVERSITY

    def __init__(
        self,
        config: Optional[UniversityConfig] = None,
        classifier: Optional[ErrorClassifier] = None,
        language: Optional[str] = None,
    ):
        super().__init__(classifier)
        self.config = config or UniversityConfig()
        self.language = language

    def check_job(self, job: Job) -> None:
        if not is_academic_host(job.url, self.config.academic_markers):
            raise ValidationFailure(
                f"Invalid university URL format: {job.url}",
                metadata={"url": job.url, "expected": list(self.config.academic_markers)},
            )

    def prepare_job(self, job: Job) -> Job:
        selectors = dict(job.config.selectors)
        optional = dict(job.config.optional_selectors)
        for name in REQUIRED_SELECTORS:
            selectors.setdefault(name, DEFAULT_SELECTORS[name])
        for name, selector in DEFAULT_SELECTORS.items():
            if name not in selectors:
                optional.setdefault(name, selector)

        headers = dict(job.config.headers)
        if self.language and header_value(headers, "Accept-Language") is None:
            headers["Accept-Language"] = f"{self.language},en;q=0.5"

        pagination = job.config.pagination
        if pagination is not None and pagination.link_selector is None:
            pagination = replace(pagination, link_selector=PAGINATION_LINK_SELECTOR)

        return replace(
            job,
            config=replace(
                job.config,
                selectors=selectors,
                optional_selectors=optional,
                headers=headers,
                pagination=pagination,
            ),
        )

    def required_fields(self, job: Job) -> Tuple[str, ...]:
        extra = tuple(f for f in job.validation_rules.required if f not in REQUIRED_SELECTORS)
        return REQUIRED_SELECTORS + extra

    def post_process(self, job: Job, fields: Dict[str, Any], raw: RawData) -> Tuple[Dict[str, Any], Dict[str, Any]]:
        normalized, _ = super().post_process(job, fields, raw)
        metadata = {"university": self.institution_type.value}
        if self.language:
            metadata["language"] = self.language
        return normalized, metadata
