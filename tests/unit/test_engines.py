"""
Tests for the static, crawl and render engines.

HTTP engines run against aioresponses; the render engine runs against the
Playwright stand-ins in ``tests.helpers.fakes``.
"""

import asyncio
from dataclasses import replace

import pytest
import pytest_asyncio
from aioresponses import CallbackResult, aioresponses
from playwright.async_api import TimeoutError as PlaywrightTimeoutError

from techtransfer_scraper.config.config import CrawlEngineConfig, EnginesConfig, RenderEngineConfig
from techtransfer_scraper.engines import CrawlEngine, RenderEngine, StaticEngine, create_engine
from techtransfer_scraper.observability import METRICS
from techtransfer_scraper.protocols import EngineType, ErrorKind, PaginationConfig, ScrapeConfig
from tests.helpers import FakeLauncher, histogram_observes

LIST_URL = "https://labs.example.edu/list"


def listing(title, *pages):
    links = "".join(f'<a href="/list?page={n}">{n}</a>' for n in pages)
    return (
        f'<html><body><div class="tech-title">{title}</div>'
        f'<div class="tech-description">About {title}</div>'
        f'<nav class="pagination">{links}</nav></body></html>'
    )


def crawl_job(job, max_pages=3, enabled=True):
    config = replace(job.config, pagination=PaginationConfig(enabled=enabled, max_pages=max_pages))
    return replace(job, url=LIST_URL, config=config)


@pytest.mark.unit
class TestStaticEngine:
    """Single GET plus extraction."""

    @pytest_asyncio.fixture
    async def engine(self):
        engine = StaticEngine()
        await engine.initialize()
        yield engine
        await engine.cleanup()

    @pytest.mark.asyncio
    async def test_extracts_fields(self, engine, university_job, stanford_html):
        with aioresponses() as m:
            m.get(university_job.url, status=200, body=stanford_html, content_type="text/html")

            labels = {"engine": "static", "institution_type": "US_UNIVERSITY"}
            with histogram_observes(METRICS["scrape_duration_seconds"], labels=labels):
                raw, error = await engine.scrape(university_job)

        assert error is None
        assert raw.engine is EngineType.STATIC
        assert raw.fields == {"title": "Widget", "description": "A gadget"}
        assert raw.metrics.pages_fetched == 1
        assert raw.metrics.bytes_received == len(stanford_html.encode())

    @pytest.mark.asyncio
    async def test_html_served_as_json_is_parsed_as_html(self, engine, university_job, stanford_html):
        with aioresponses() as m:
            m.get(university_job.url, status=200, body=stanford_html, content_type="application/json")

            raw, error = await engine.scrape(university_job)

        assert error is None
        assert raw.fields == {"title": "Widget", "description": "A gadget"}

    @pytest.mark.asyncio
    @pytest.mark.parametrize(
        "status,kind",
        [(404, ErrorKind.NOT_FOUND), (503, ErrorKind.SERVICE_ERROR), (429, ErrorKind.RATE_LIMITED)],
    )
    async def test_http_status_becomes_error_value(self, engine, university_job, status, kind):
        with aioresponses() as m:
            m.get(university_job.url, status=status)

            raw, error = await engine.scrape(university_job)

        assert raw is None
        assert error.kind is kind
        assert error.status_code == status
        assert error.job_id == university_job.id

    @pytest.mark.asyncio
    async def test_selector_miss_is_parse_error(self, engine, university_job):
        with aioresponses() as m:
            m.get(university_job.url, status=200, body="<html><body>redesigned</body></html>", content_type="text/html")

            raw, error = await engine.scrape(university_job)

        assert raw is None
        assert error.kind is ErrorKind.PARSE_ERROR

    @pytest.mark.asyncio
    async def test_timeout_is_network_timeout(self, engine, university_job):
        with aioresponses() as m:
            m.get(university_job.url, exception=asyncio.TimeoutError())

            _, error = await engine.scrape(university_job)

        assert error.kind is ErrorKind.NETWORK_TIMEOUT

    @pytest.mark.asyncio
    async def test_sends_job_headers_and_user_agent(self, engine, university_job, stanford_html):
        config = replace(university_job.config, headers={"Accept-Language": "de"}, user_agent="OTL-Bot/1.0")
        job = replace(university_job, config=config)
        seen = {}

        def capture(url, **kwargs):
            seen.update(kwargs["headers"])
            return CallbackResult(status=200, body=stanford_html, content_type="text/html")

        with aioresponses() as m:
            m.get(job.url, callback=capture)
            _, error = await engine.scrape(job)

        assert error is None
        assert seen["Accept-Language"] == "de"
        assert seen["User-Agent"] == "OTL-Bot/1.0"

    @pytest.mark.asyncio
    async def test_uninitialized_engine_reports_service_error(self, university_job):
        raw, error = await StaticEngine().scrape(university_job)

        assert raw is None
        assert error.kind is ErrorKind.SERVICE_ERROR

    @pytest.mark.asyncio
    async def test_health_follows_lifecycle(self):
        engine = StaticEngine()
        assert not await engine.is_healthy()

        await engine.initialize()
        assert await engine.is_healthy()

        await engine.cleanup()
        assert not await engine.is_healthy()


@pytest.mark.unit
class TestCrawlEngine:
    """Multi-page crawling with partial-failure tolerance."""

    @pytest_asyncio.fixture
    async def engine(self):
        engine = CrawlEngine(CrawlEngineConfig(obey_robots=False, download_delay=0.0, retry_times=0, max_pages=10))
        await engine.initialize()
        yield engine
        await engine.cleanup()

    @pytest.mark.asyncio
    async def test_follows_pagination_up_to_limit(self, engine, university_job):
        job = crawl_job(university_job, max_pages=3)
        with aioresponses() as m:
            m.get(LIST_URL, status=200, body=listing("First", 2, 3, 4), content_type="text/html")
            m.get(f"{LIST_URL}?page=2", status=200, body=listing("Second"), content_type="text/html")
            m.get(f"{LIST_URL}?page=3", status=200, body=listing("Third"), content_type="text/html")

            raw, error = await engine.scrape(job)

        assert error is None
        assert raw.engine is EngineType.CRAWL
        assert [p.fields["title"] for p in raw.pages] == ["First", "Second", "Third"]
        assert raw.metrics.pages_fetched == 3

    @pytest.mark.asyncio
    async def test_later_page_failures_are_skipped(self, engine, university_job):
        job = crawl_job(university_job, max_pages=5)
        with aioresponses() as m:
            m.get(LIST_URL, status=200, body=listing("First", 2, 3), content_type="text/html")
            m.get(f"{LIST_URL}?page=2", status=500)
            m.get(
                f"{LIST_URL}?page=3",
                status=200,
                body="<html><body>no listing here</body></html>",
                content_type="text/html",
            )

            raw, error = await engine.scrape(job)

        assert error is None
        assert [p.fields["title"] for p in raw.pages] == ["First"]
        assert set(raw.skipped_urls) == {f"{LIST_URL}?page=2", f"{LIST_URL}?page=3"}

    @pytest.mark.asyncio
    async def test_first_page_failure_propagates(self, engine, university_job):
        with aioresponses() as m:
            m.get(LIST_URL, status=403)

            raw, error = await engine.scrape(crawl_job(university_job))

        assert raw is None
        assert error.kind is ErrorKind.AUTHORIZATION_ERROR

    @pytest.mark.asyncio
    async def test_disabled_pagination_fetches_one_page(self, engine, university_job):
        with aioresponses() as m:
            m.get(LIST_URL, status=200, body=listing("Only", 2, 3), content_type="text/html")

            raw, error = await engine.scrape(crawl_job(university_job, enabled=False))

        assert error is None
        assert len(raw.pages) == 1

    @pytest.mark.asyncio
    async def test_json_api_is_a_single_page(self, engine, federal_job):
        job = replace(federal_job, config=replace(federal_job.config, pagination=PaginationConfig()))
        with aioresponses() as m:
            m.get(job.url, status=200, payload={"data": [{"title": "Perovskite cell"}]})

            raw, error = await engine.scrape(job)

        assert error is None
        assert raw.fields == {"title": "Perovskite cell"}


@pytest.mark.unit
class TestRenderEngine:
    """Browser rendering through an injected launcher."""

    def make_engine(self, html, usage_mb=100.0, **config):
        launcher = FakeLauncher(html=html)
        usage = {"mb": usage_mb}
        settings = RenderEngineConfig(**{"memory_check_interval": 0, "memory_threshold_mb": 512, **config})
        engine = RenderEngine(settings, launcher=launcher, memory_probe=lambda: usage["mb"])
        return engine, launcher, usage

    @pytest.mark.asyncio
    async def test_renders_and_extracts(self, university_job, stanford_html):
        engine, launcher, _ = self.make_engine(stanford_html)
        await engine.initialize()

        raw, error = await engine.scrape(university_job)

        browser = launcher.browsers[0]
        assert error is None
        assert raw.engine is EngineType.RENDER
        assert raw.fields["title"] == "Widget"
        assert browser.visits == [university_job.url]
        assert browser.closed_contexts == 1
        assert browser.contexts[0].options["viewport"] == {"width": 1920, "height": 1080}
        await engine.cleanup()

    @pytest.mark.asyncio
    async def test_error_status_closes_context(self, university_job, stanford_html):
        engine, launcher, _ = self.make_engine(stanford_html)
        await engine.initialize()
        launcher.browsers[0].status = 404

        _, error = await engine.scrape(university_job)

        assert error.kind is ErrorKind.NOT_FOUND
        assert launcher.browsers[0].closed_contexts == 1
        await engine.cleanup()

    @pytest.mark.asyncio
    @pytest.mark.parametrize("stage", ["goto_error", "ready_error"])
    async def test_browser_timeouts_are_network_timeouts(self, university_job, stanford_html, stage):
        engine, launcher, _ = self.make_engine(stanford_html)
        await engine.initialize()
        setattr(launcher.browsers[0], stage, PlaywrightTimeoutError("Timeout 30000ms exceeded"))

        _, error = await engine.scrape(university_job)

        assert error.kind is ErrorKind.NETWORK_TIMEOUT
        await engine.cleanup()

    @pytest.mark.asyncio
    async def test_missing_response_is_network_error(self, university_job, stanford_html):
        engine, launcher, _ = self.make_engine(stanford_html)
        await engine.initialize()
        launcher.browsers[0].status = None

        _, error = await engine.scrape(university_job)

        assert error.kind is ErrorKind.NETWORK_ERROR
        await engine.cleanup()

    @pytest.mark.asyncio
    async def test_disconnected_browser_is_unhealthy(self, university_job, stanford_html):
        engine, launcher, _ = self.make_engine(stanford_html)
        await engine.initialize()
        launcher.browsers[0].connected = False

        _, error = await engine.scrape(university_job)

        assert error.kind is ErrorKind.SERVICE_ERROR
        assert not await engine.is_healthy()
        await engine.cleanup()

    @pytest.mark.asyncio
    async def test_recycles_browser_over_memory_threshold(self, university_job, stanford_html):
        engine, launcher, usage = self.make_engine(stanford_html)
        await engine.initialize()
        usage["mb"] = 800.0

        assert engine.over_memory_threshold()
        assert not await engine.is_healthy()
        raw, error = await engine.scrape(university_job)

        assert error is None
        assert engine.recycle_count == 1
        assert len(launcher.browsers) == 2
        assert launcher.browsers[0].closed
        assert launcher.drivers[0].stopped
        assert launcher.browsers[1].visits == [university_job.url]
        await engine.cleanup()

    @pytest.mark.asyncio
    async def test_watchdog_recycles_on_a_timer(self, stanford_html):
        engine, launcher, usage = self.make_engine(stanford_html, memory_check_interval=0.01)
        await engine.initialize()
        usage["mb"] = 900.0

        await asyncio.sleep(0.1)

        assert engine.recycle_count >= 1
        await engine.cleanup()

    @pytest.mark.asyncio
    async def test_cleanup_closes_browser(self, stanford_html):
        engine, launcher, _ = self.make_engine(stanford_html)
        await engine.initialize()

        await engine.cleanup()

        assert launcher.browsers[0].closed
        assert launcher.drivers[0].stopped
        assert not await engine.is_healthy()


@pytest.mark.unit
class TestEngineFactory:
    @pytest.mark.parametrize(
        "engine_type,cls",
        [(EngineType.STATIC, StaticEngine), (EngineType.CRAWL, CrawlEngine), (EngineType.RENDER, RenderEngine)],
    )
    def test_create_engine(self, engine_type, cls):
        engine = create_engine(engine_type, EnginesConfig())

        assert isinstance(engine, cls)
        assert engine.engine_type is engine_type
        assert not engine.initialized

    def test_job_timeout_bounds_static_scrape(self, university_job):
        job = replace(university_job, config=ScrapeConfig(selectors={"title": "h1"}, timeout=2.5))

        assert StaticEngine().deadline(job) == 2.5
