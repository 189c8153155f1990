"""Scraping engines and the pool that lends them out."""

from __future__ import annotations

from typing import Optional

from techtransfer_scraper.config.config import EnginesConfig
from techtransfer_scraper.protocols import EngineType, ScrapeEngine
from techtransfer_scraper.recovery.errors import ErrorClassifier

from .base import BaseEngine
from .crawl import CrawlEngine
from .pool import EngineHandle, EnginePool, PoolExhaustedError
from .render import RenderEngine
from .static import StaticEngine

__all__ = [
    "BaseEngine",
    "CrawlEngine",
    "EngineHandle",
    "EnginePool",
    "PoolExhaustedError",
    "RenderEngine",
    "StaticEngine",
    "create_engine",
]


def create_engine(
    engine_type: EngineType,
    config: Optional[EnginesConfig] = None,
    classifier: Optional[ErrorClassifier] = None,
) -> ScrapeEngine:
    """Build an uninitialized engine of ``engine_type``."""
    config = config or EnginesConfig()
    if engine_type is EngineType.STATIC:
        return StaticEngine(config.static, classifier)
    if engine_type is EngineType.RENDER:
        return RenderEngine(config.render, classifier)
    if engine_type is EngineType.CRAWL:
        return CrawlEngine(config.crawl, classifier)
    raise ValueError(f"Unknown engine type: {engine_type}")
