"""Institution adapters wrapping a scraping engine."""

from __future__ import annotations

from typing import Optional

from techtransfer_scraper.config.config import Config
from techtransfer_scraper.crawler.rate_limiter import RateLimiter
from techtransfer_scraper.protocols import InstitutionAdapter, InstitutionType
from techtransfer_scraper.recovery.errors import ErrorClassifier

from .base import BaseAdapter, derive_page_job, header_value, with_query_param
from .federal import FederalAdapter
from .international import InternationalAdapter
from .university import UniversityAdapter

__all__ = [
    "BaseAdapter",
    "FederalAdapter",
    "InternationalAdapter",
    "UniversityAdapter",
    "create_adapter",
    "derive_page_job",
    "header_value",
    "with_query_param",
]


def create_adapter(
    institution_type: InstitutionType,
    rate_limiter: RateLimiter,
    config: Optional[Config] = None,
    classifier: Optional[ErrorClassifier] = None,
) -> InstitutionAdapter:
    """Build the adapter serving ``institution_type``."""
    config = config or Config()
    if institution_type is InstitutionType.US_UNIVERSITY:
        return UniversityAdapter(config.university, classifier)
    if institution_type is InstitutionType.INTERNATIONAL_UNIVERSITY:
        return InternationalAdapter(config.university, classifier)
    if institution_type is InstitutionType.FEDERAL_LAB:
        return FederalAdapter(rate_limiter, config.federal, classifier)
    raise ValueError(f"Unknown institution type: {institution_type}")
