"""
Render engine: headless Chromium through Playwright for JS-rendered listings.

Each scrape runs in a fresh browser context on a long-lived browser. A memory
watchdog measures the RSS of the browser's process tree with psutil and
recycles the browser once it exceeds the configured threshold, both on a timer
and before every scrape.
"""

from __future__ import annotations

import asyncio
import contextlib
import time
from typing import Any, Awaitable, Callable, Optional, Set, Tuple

import psutil
import structlog
from playwright.async_api import async_playwright

from techtransfer_scraper.config.config import RenderEngineConfig
from techtransfer_scraper.engines.base import BaseEngine
from techtransfer_scraper.observability import increment
from techtransfer_scraper.protocols import EngineType, ErrorKind, Job, PerformanceMetrics, RawData
from techtransfer_scraper.recovery.errors import ErrorClassifier, HttpStatusError, ScraperException

logger = structlog.get_logger(__name__)

# (playwright driver, browser); either may be a test double
BrowserLauncher = Callable[[RenderEngineConfig], Awaitable[Tuple[Any, Any]]]
MemoryProbe = Callable[[], float]

_READY_SCRIPT = "document.readyState === 'complete'"


async def launch_chromium(config: RenderEngineConfig) -> Tuple[Any, Any]:
    playwright = await async_playwright().start()
    try:
        browser = await playwright.chromium.launch(headless=config.headless, args=list(config.browser_args))
    except BaseException:
        await playwright.stop()
        raise
    return playwright, browser


def _child_pids() -> Set[int]:
    try:
        return {p.pid for p in psutil.Process().children(recursive=True)}
    except psutil.Error:
        return set()


def _tree_rss_mb(pids: Set[int]) -> float:
    total = 0
    for pid in pids:
        try:
            total += psutil.Process(pid).memory_info().rss
        except psutil.Error:
            continue
    return total / (1024 * 1024)


class RenderEngine(BaseEngine):
    """Headless-browser engine; resource heavy, so pooled with a small cap."""

    engine_type = EngineType.RENDER

    def __init__(
        self,
        config: Optional[RenderEngineConfig] = None,
        classifier: Optional[ErrorClassifier] = None,
        launcher: Optional[BrowserLauncher] = None,
        memory_probe: Optional[MemoryProbe] = None,
    ):
        self.config = config or RenderEngineConfig()
        super().__init__(timeout=self.config.timeout, classifier=classifier)
        self._launcher = launcher or launch_chromium
        self._memory_probe = memory_probe or self._browser_rss_mb
        self._playwright: Any = None
        self._browser: Any = None
        self._browser_pids: Set[int] = set()
        self._browser_lock = asyncio.Lock()
        self._watchdog_task: Optional[asyncio.Task] = None
        self.recycle_count = 0

    def deadline(self, job: Job) -> float:
        return max(job.config.timeout or 0.0, self.config.timeout)

    async def _initialize(self) -> None:
        await self._launch()
        if self.config.memory_check_interval > 0:
            self._watchdog_task = asyncio.create_task(self._watchdog_loop())

    async def _launch(self) -> None:
        before = _child_pids()
        self._playwright, self._browser = await self._launcher(self.config)
        self._browser_pids = _child_pids() - before
        logger.info("Browser launched", headless=self.config.headless, processes=len(self._browser_pids))

    async def _close_browser(self) -> None:
        browser, playwright = self._browser, self._playwright
        self._browser = None
        self._playwright = None
        self._browser_pids = set()
        try:
            if browser is not None:
                await browser.close()
        finally:
            if playwright is not None:
                await playwright.stop()

    async def _cleanup(self) -> None:
        if self._watchdog_task is not None:
            self._watchdog_task.cancel()
            with contextlib.suppress(asyncio.CancelledError):
                await self._watchdog_task
            self._watchdog_task = None
        async with self._browser_lock:
            await self._close_browser()

    def _browser_rss_mb(self) -> float:
        pids = set(self._browser_pids)
        for pid in list(pids):
            try:
                pids.update(child.pid for child in psutil.Process(pid).children(recursive=True))
            except psutil.Error:
                continue
        return _tree_rss_mb(pids)

    def memory_usage_mb(self) -> float:
        return self._memory_probe()

    def over_memory_threshold(self) -> bool:
        return self.memory_usage_mb() > self.config.memory_threshold_mb

    async def recycle(self) -> None:
        """Replace the browser with a fresh one."""
        async with self._browser_lock:
            await self._recycle_locked()

    async def _recycle_locked(self) -> None:
        usage = self.memory_usage_mb()
        await self._close_browser()
        await self._launch()
        self.recycle_count += 1
        increment("render_recycles")
        logger.info("Browser recycled", memory_mb=round(usage, 1), threshold_mb=self.config.memory_threshold_mb)

    async def _watchdog_loop(self) -> None:
        while True:
            await asyncio.sleep(self.config.memory_check_interval)
            try:
                if self._browser is not None and self.over_memory_threshold():
                    await self.recycle()
            except asyncio.CancelledError:
                raise
            except Exception as e:
                # Next scrape reports the browser as unhealthy
                logger.error("Memory watchdog failed to recycle browser", error=str(e))

    async def is_healthy(self) -> bool:
        if not self._initialized or self._browser is None:
            return False
        try:
            connected = self._browser.is_connected()
        except Exception:
            return False
        return bool(connected) and not self.over_memory_threshold()

    async def _scrape(self, job: Job) -> RawData:
        async with self._browser_lock:
            if self._browser is None or not self._browser.is_connected():
                raise ScraperException("Browser is not connected", ErrorKind.SERVICE_ERROR)
            if self.over_memory_threshold():
                await self._recycle_locked()
            return await self._render(job)

    async def _render(self, job: Job) -> RawData:
        started = time.monotonic()
        headers = self.request_headers(job)
        user_agent = headers.pop("User-Agent", self.config.user_agent)
        wait_ms = self.config.wait_timeout * 1000

        context = await self._browser.new_context(
            user_agent=user_agent,
            viewport={"width": self.config.viewport_width, "height": self.config.viewport_height},
            extra_http_headers=headers,
        )
        try:
            page = await context.new_page()
            response = await page.goto(job.url, wait_until="domcontentloaded", timeout=wait_ms)
            if response is None:
                raise ScraperException(f"Navigation returned no response for {job.url}", ErrorKind.NETWORK_ERROR)
            if response.status >= 400:
                raise HttpStatusError(response.status, job.url)

            # Hard bound on the document-ready condition; expiry surfaces as NETWORK_TIMEOUT
            await page.wait_for_function(_READY_SCRIPT, timeout=wait_ms)
            html = await page.content()
            final_url = page.url
            status = response.status
        finally:
            await context.close()

        page_data = self.build_page(job.url, final_url, status, html, "text/html", job)
        return RawData(
            engine=self.engine_type,
            pages=(page_data,),
            metrics=PerformanceMetrics(
                started_at=started,
                finished_at=time.monotonic(),
                pages_fetched=1,
                bytes_received=len(html.encode("utf-8")),
                engine=self.engine_type.value,
            ),
        )
