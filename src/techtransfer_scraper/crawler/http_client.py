"""
HTTP client shared by the static and crawl engines.

Wraps one aiohttp session with connection pooling, optional robots.txt
compliance, per-domain concurrency limits and politeness delays, and in-client
retries for configured status codes. Network failures propagate as aiohttp or
timeout exceptions; the engines classify them.
"""

from __future__ import annotations

import asyncio
import codecs
import json
import random
import re
import time
from dataclasses import dataclass, field
from typing import Any, Dict, Iterable, Mapping, Optional, Tuple
from urllib.parse import urlparse

import aiohttp
import robotstxt
import structlog
from multidict import CIMultiDict

from techtransfer_scraper.config.config import DEFAULT_USER_AGENT
from techtransfer_scraper.observability import increment
from techtransfer_scraper.protocols import ErrorKind
from techtransfer_scraper.recovery.errors import HttpStatusError, ScraperException, parse_retry_after

logger = structlog.get_logger(__name__)


class RobotsTxtCache:
    """robots.txt cache keyed by host, with an async interface."""

    def __init__(self, session: aiohttp.ClientSession, cache_ttl: int = 12 * 60 * 60):
        self.session = session
        self.cache_ttl = cache_ttl
        self._cache: Dict[str, Tuple[float, Optional[robotstxt.RobotsFile]]] = {}
        self._lock = asyncio.Lock()

    async def can_fetch(self, url: str, user_agent: str) -> bool:
        parsed_url = urlparse(url)
        domain = parsed_url.netloc
        robots_url = f"{parsed_url.scheme}://{domain}/robots.txt"

        async with self._lock:
            cached_entry = self._cache.get(domain)
        if cached_entry and time.time() - cached_entry[0] < self.cache_ttl:
            robots_file = cached_entry[1]
        else:
            robots_file = await self._fetch(robots_url)
            async with self._lock:
                self._cache[domain] = (time.time(), robots_file)

        if robots_file is None:
            return True  # No robots.txt, allow
        result = robots_file.test_url(url, user_agent)
        return not result.get("disallowed", False)

    async def _fetch(self, robots_url: str) -> Optional[robotstxt.RobotsFile]:
        try:
            async with self.session.get(robots_url, timeout=aiohttp.ClientTimeout(total=10)) as response:
                if response.status != 200:
                    return None
                return robotstxt.RobotsFile(await response.text())
        except (aiohttp.ClientError, asyncio.TimeoutError) as e:
            # An unreachable robots.txt does not block the crawl
            logger.debug("robots.txt unavailable", url=robots_url, error=str(e))
            return None


_BOMS = (
    (codecs.BOM_UTF8, "utf-8-sig"),
    (codecs.BOM_UTF32_LE, "utf-32"),
    (codecs.BOM_UTF32_BE, "utf-32"),
    (codecs.BOM_UTF16_LE, "utf-16"),
    (codecs.BOM_UTF16_BE, "utf-16"),
)
_META_CHARSET_RE = re.compile(rb"""<meta[^>]+charset\s*=\s*["']?\s*([a-z0-9_\-:.]+)""", re.IGNORECASE)
_META_SCAN_BYTES = 2048


def bom_encoding(body: bytes) -> Optional[str]:
    for bom, encoding in _BOMS:
        if body.startswith(bom):
            return encoding
    return None


def meta_charset(body: bytes) -> Optional[str]:
    """Charset from ``<meta charset>`` or an http-equiv Content-Type in the document head."""
    match = _META_CHARSET_RE.search(body[:_META_SCAN_BYTES])
    if not match:
        return None
    name = match.group(1).decode("ascii").lower()
    try:
        return codecs.lookup(name).name
    except LookupError:
        return None


@dataclass
class FetchResponse:
    """A fully read HTTP response with timing information."""

    url: str
    final_url: str
    status: int
    headers: Mapping[str, str]
    body: bytes
    start_ts: float
    end_ts: float
    attempts: int = 1
    charset: Optional[str] = None
    content_type: str = "text/html"
    extra: Dict[str, Any] = field(default_factory=dict)

    def __post_init__(self) -> None:
        self.headers = CIMultiDict(self.headers)

    @property
    def ok(self) -> bool:
        return 200 <= self.status < 300

    @property
    def elapsed(self) -> float:
        return self.end_ts - self.start_ts

    @property
    def is_json(self) -> bool:
        return "json" in self.content_type

    def text(self, fallback_encoding: str = "utf-8") -> str:
        """
        Decode the body.

        A byte-order mark wins, then the Content-Type charset, then a
        charset declared by the document itself. ``fallback_encoding`` is
        used only when none of them says anything.
        """
        encoding = bom_encoding(self.body) or self.charset or meta_charset(self.body) or fallback_encoding
        try:
            return self.body.decode(encoding, errors="replace")
        except LookupError:
            return self.body.decode(fallback_encoding, errors="replace")

    def json(self) -> Any:
        return json.loads(self.text())

    def raise_for_status(self) -> None:
        if not self.ok:
            raise HttpStatusError(
                self.status,
                self.final_url,
                retry_after=parse_retry_after(self.headers.get("Retry-After")),
            )


class HttpClient:
    """
    aiohttp session wrapper used by the HTTP-based engines.

    Args:
        timeout: Default per-request timeout in seconds
        headers: Default request headers
        max_redirects: Redirect limit; 0 disables following redirects
        obey_robots: Refuse URLs disallowed by robots.txt
        concurrent_requests_per_domain: Concurrent requests allowed per host (None = unlimited)
        download_delay: Minimum seconds between request starts to one host
        retry_times: In-client retries for ``retry_http_codes`` and connection errors
    """

    def __init__(
        self,
        *,
        timeout: float = 30.0,
        headers: Optional[Mapping[str, str]] = None,
        max_redirects: int = 5,
        obey_robots: bool = False,
        concurrent_requests_per_domain: Optional[int] = None,
        download_delay: float = 0.0,
        retry_times: int = 0,
        retry_http_codes: Iterable[int] = (),
        user_agent: str = DEFAULT_USER_AGENT,
    ):
        self.timeout = timeout
        self.headers = dict(headers or {})
        self.headers.setdefault("User-Agent", user_agent)
        self.user_agent = self.headers["User-Agent"]
        self.max_redirects = max_redirects
        self.obey_robots = obey_robots
        self.concurrent_requests_per_domain = concurrent_requests_per_domain
        self.download_delay = download_delay
        self.retry_times = retry_times
        self.retry_http_codes = frozenset(retry_http_codes)

        self.session: Optional[aiohttp.ClientSession] = None
        self.robots_cache: Optional[RobotsTxtCache] = None

        self._domain_semaphores: Dict[str, asyncio.Semaphore] = {}
        self._last_request_at: Dict[str, float] = {}
        self._domain_lock = asyncio.Lock()
        self._in_flight_requests = 0
        self._total_requests = 0

    @property
    def is_open(self) -> bool:
        return self.session is not None and not self.session.closed

    async def initialize(self) -> None:
        """Open the session. Idempotent."""
        if self.is_open:
            return
        connector = aiohttp.TCPConnector(
            limit=0,  # Concurrency is bounded per domain and by the engine pool
            ttl_dns_cache=30,
            use_dns_cache=True,
            keepalive_timeout=30,
            enable_cleanup_closed=True,
        )
        self.session = aiohttp.ClientSession(
            connector=connector,
            timeout=aiohttp.ClientTimeout(total=self.timeout),
            headers=self.headers,
        )
        if self.obey_robots:
            self.robots_cache = RobotsTxtCache(self.session)
        logger.debug("HTTP client session initialized", obey_robots=self.obey_robots, timeout=self.timeout)

    async def close(self) -> None:
        if self.session is not None:
            await self.session.close()
            self.session = None
        self.robots_cache = None
        self._domain_semaphores.clear()
        self._last_request_at.clear()

    async def __aenter__(self) -> HttpClient:
        await self.initialize()
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb) -> None:
        await self.close()

    async def _get_domain_semaphore(self, domain: str) -> Optional[asyncio.Semaphore]:
        if self.concurrent_requests_per_domain is None:
            return None
        async with self._domain_lock:
            if domain not in self._domain_semaphores:
                self._domain_semaphores[domain] = asyncio.Semaphore(self.concurrent_requests_per_domain)
            return self._domain_semaphores[domain]

    async def _wait_politeness(self, domain: str) -> None:
        if self.download_delay <= 0:
            return
        async with self._domain_lock:
            now = time.monotonic()
            next_slot = max(now, self._last_request_at.get(domain, 0.0) + self.download_delay)
            self._last_request_at[domain] = next_slot
        if next_slot > now:
            await asyncio.sleep(next_slot - now)

    async def allowed_by_robots(self, url: str) -> bool:
        if self.robots_cache is None:
            return True
        return await self.robots_cache.can_fetch(url, self.user_agent)

    def _backoff_delay(self, attempt: int) -> float:
        return (2 ** (attempt - 1)) * random.uniform(0.8, 1.2)

    async def fetch(
        self,
        url: str,
        *,
        headers: Optional[Mapping[str, str]] = None,
        params: Optional[Mapping[str, str]] = None,
        timeout: Optional[float] = None,
    ) -> FetchResponse:
        """
        GET ``url`` and read the whole body.

        Non-2xx responses are returned, not raised; call ``raise_for_status``.

        Raises:
            ScraperException: the URL is disallowed by robots.txt or the client is closed
            aiohttp.ClientError, asyncio.TimeoutError: network failures after retries
        """
        if not self.is_open:
            raise ScraperException("HTTP client not initialized", ErrorKind.SERVICE_ERROR)

        domain = urlparse(url).hostname or "unknown"
        if not await self.allowed_by_robots(url):
            logger.info("Blocked by robots.txt", url=url)
            raise ScraperException(f"Blocked by robots.txt: {url}", ErrorKind.AUTHORIZATION_ERROR)

        request_timeout = timeout or self.timeout
        semaphore = await self._get_domain_semaphore(domain)
        if semaphore is not None:
            await semaphore.acquire()
        self._in_flight_requests += 1
        try:
            attempt = 0
            while True:
                attempt += 1
                await self._wait_politeness(domain)
                try:
                    response = await self._request(url, headers, params, request_timeout, attempt)
                except (aiohttp.ClientConnectionError, asyncio.TimeoutError) as e:
                    if attempt > self.retry_times:
                        raise
                    logger.info(
                        "Retrying request after error", url=url, attempt=attempt, error=str(e) or type(e).__name__
                    )
                    await asyncio.sleep(self._backoff_delay(attempt))
                    continue

                if response.status in self.retry_http_codes and attempt <= self.retry_times:
                    logger.info("Retrying request", url=url, status=response.status, attempt=attempt)
                    await asyncio.sleep(self._backoff_delay(attempt))
                    continue
                return response
        finally:
            self._in_flight_requests -= 1
            if semaphore is not None:
                semaphore.release()

    async def _request(
        self,
        url: str,
        headers: Optional[Mapping[str, str]],
        params: Optional[Mapping[str, str]],
        timeout: float,
        attempt: int,
    ) -> FetchResponse:
        assert self.session is not None
        start_time = time.monotonic()
        self._total_requests += 1
        async with asyncio.timeout(timeout):
            async with self.session.get(
                url,
                headers=dict(headers) if headers else None,
                params=dict(params) if params else None,
                allow_redirects=self.max_redirects > 0,
                max_redirects=max(self.max_redirects, 1),
            ) as response:
                body = await response.read()
                result = FetchResponse(
                    url=url,
                    final_url=str(response.url),
                    status=response.status,
                    headers=response.headers.copy(),
                    body=body,
                    start_ts=start_time,
                    end_ts=time.monotonic(),
                    attempts=attempt,
                    charset=response.charset,
                    content_type=response.content_type or "text/html",
                )

        increment("http_responses", labels={"status_class": f"{result.status // 100}xx"})
        logger.debug("Fetched", url=url, status=result.status, bytes=len(body), elapsed=round(result.elapsed, 3))
        return result

    def get_stats(self) -> Dict[str, Any]:
        return {
            "open": self.is_open,
            "in_flight_requests": self._in_flight_requests,
            "total_requests": self._total_requests,
            "domain_semaphores": len(self._domain_semaphores),
        }
