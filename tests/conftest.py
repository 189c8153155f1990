"""
Test configuration for the scraping engine.

Provides fixtures for configuration, the in-memory broker, fake engines and
deterministic clocks, plus task-leak protection for async tests.
"""

# Standard library imports
import asyncio
import os
from pathlib import Path
from typing import AsyncGenerator

# Third-party imports
import pytest
import pytest_asyncio

# Set test mode before the package is imported
os.environ["SCRAPER_TEST_MODE"] = "1"

# Local imports
from techtransfer_scraper.config import Config
from techtransfer_scraper.crawler.rate_limiter import RateLimiter
from techtransfer_scraper.protocols import InstitutionType, Job, RateLimitConfig, RetryConfig, ScrapeConfig
from techtransfer_scraper.queue import InMemoryBroker
from techtransfer_scraper.sinks import MemoryResultSink
from tests.helpers.fakes import STANFORD_HTML, FakeClock, FakeEngine

# ============================================================================
# Pytest Configuration
# ============================================================================


def pytest_configure(config):
    """Configure pytest with custom markers."""
    os.environ["SCRAPER_TEST_MODE"] = "1"
    config.addinivalue_line("markers", "unit: Unit tests for individual components")
    config.addinivalue_line("markers", "integration: Integration tests across modules")
    config.addinivalue_line("markers", "slow: Tests that take >10 seconds")
    config.addinivalue_line("markers", "network: Tests requiring network access")


# ============================================================================
# Core Test Fixtures
# ============================================================================


@pytest_asyncio.fixture(autouse=True)
async def cleanup_tasks() -> AsyncGenerator[None, None]:
    """
    Cancel every task a test leaves behind, so a forgotten consumer or
    watchdog cannot leak into the next test.
    """
    tasks_before = asyncio.all_tasks()
    yield
    new_tasks = asyncio.all_tasks() - tasks_before

    for task in new_tasks:
        if not task.done():
            task.cancel()
            try:
                await task
            except asyncio.CancelledError:
                pass
            except Exception as e:
                print(f"Unexpected error during task cleanup: {e}")


# ============================================================================
# Configuration Fixtures
# ============================================================================


@pytest.fixture
def test_config(tmp_path: Path) -> Config:
    """Configuration with fast timings and a temporary dead-letter archive."""
    return Config.model_validate(
        {
            "retry": {"initial_delay": 0.01, "max_delay": 0.05, "jitter_max": 0.0},
            "circuit_breaker": {"minimum_calls": 50},
            "engine_pool": {"acquire_timeout": 1.0, "health_check_interval": 60.0},
            "orchestrator": {"dead_letter_db_path": str(tmp_path / "dead_letter.db"), "shutdown_grace_seconds": 1.0},
            "monitoring": {"log_level": "DEBUG"},
            "debug": {"test_mode": True},
        }
    )


@pytest.fixture
def fake_clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def rate_limiter(fake_clock: FakeClock) -> RateLimiter:
    return RateLimiter(RateLimitConfig(requests_per_second=2.0, burst_limit=5, cooldown_period=60.0), clock=fake_clock)


@pytest.fixture
def memory_broker(test_config: Config) -> InMemoryBroker:
    return InMemoryBroker(test_config.queue)


@pytest.fixture
def memory_sink() -> MemoryResultSink:
    return MemoryResultSink()


@pytest.fixture
def fake_engine() -> FakeEngine:
    return FakeEngine()


# ============================================================================
# Sample Data Fixtures
# ============================================================================

@pytest.fixture
def stanford_html() -> str:
    return STANFORD_HTML


@pytest.fixture
def university_job() -> Job:
    return Job(
        id="job-stanford-1",
        url="https://tech.stanford.edu/x",
        institution_type=InstitutionType.US_UNIVERSITY,
        config=ScrapeConfig(selectors={"title": ".tech-title", "description": ".tech-description"}),
        retry_config=RetryConfig(max_retries=3, initial_delay=0.01, max_delay=0.05),
    )


@pytest.fixture
def federal_job() -> Job:
    return Job(
        id="job-nrel-1",
        url="https://api.nrel.gov/technologies",
        institution_type=InstitutionType.FEDERAL_LAB,
        config=ScrapeConfig(
            selectors={"title": "data.0.title"},
            headers={"X-API-Key": "secret-key"},
        ),
        retry_config=RetryConfig(max_retries=2, initial_delay=0.01, max_delay=0.05),
    )
