"""
TechTransfer Scraper - distributed scraping engine for technology-transfer listings.
"""

from __future__ import annotations

__version__ = "0.1.0"

from .config import Config
from .container import DependencyContainer
from .orchestrator import ScraperOrchestrator

__all__ = ["__version__", "Config", "DependencyContainer", "ScraperOrchestrator"]
