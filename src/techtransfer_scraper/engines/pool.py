"""
Bounded, health-checked pool of scraping engines.

Each engine type has its own cap. ``acquire`` hands out an idle healthy
handle, creates a new one while under the cap, and otherwise waits for a
release up to ``acquire_timeout``; it never exceeds the cap. The pool-wide
condition lock covers bookkeeping only; engine start-up, probes and scrapes
run outside it.
"""

from __future__ import annotations

import asyncio
import contextlib
import itertools
import time
from collections import deque
from dataclasses import dataclass, field
from typing import Any, AsyncIterator, Callable, Deque, Dict, List, Mapping, Optional, Set

import structlog

from techtransfer_scraper.observability import gauge, increment
from techtransfer_scraper.protocols import EngineType, ErrorKind, Job, ScrapeEngine
from techtransfer_scraper.recovery.errors import ScraperException

logger = structlog.get_logger(__name__)

EngineFactory = Callable[[EngineType], ScrapeEngine]

_handle_ids = itertools.count(1)


@dataclass(eq=False)
class EngineHandle:
    """A live engine owned by the pool and lent to one job at a time."""

    engine: ScrapeEngine
    engine_type: EngineType
    handle_id: int = field(default_factory=lambda: next(_handle_ids))
    created_at: float = field(default_factory=time.monotonic)
    last_used: float = field(default_factory=time.monotonic)
    uses: int = 0
    ref_count: int = 0


class PoolExhaustedError(ScraperException):
    kind = ErrorKind.SERVICE_ERROR


class EnginePool:
    """
    Per-type engine pool.

    Args:
        factory: Builds an uninitialized engine for a type
        caps: Maximum live handles per engine type
        acquire_timeout: Seconds ``acquire`` waits for a free handle
        health_check_interval: Seconds between sweeps of idle handles
    """

    def __init__(
        self,
        factory: EngineFactory,
        caps: Mapping[EngineType, int],
        acquire_timeout: float = 30.0,
        health_check_interval: float = 60.0,
    ):
        self._factory = factory
        self.caps = dict(caps)
        self.acquire_timeout = acquire_timeout
        self.health_check_interval = health_check_interval

        self._cond = asyncio.Condition()
        self._idle: Dict[EngineType, Deque[EngineHandle]] = {t: deque() for t in EngineType}
        self._live: Dict[EngineType, Set[EngineHandle]] = {t: set() for t in EngineType}
        self._creating: Dict[EngineType, int] = {t: 0 for t in EngineType}
        self._closed = False
        self._sweep_task: Optional[asyncio.Task] = None
        self._evictions = 0

    # --- lifecycle ---

    def start(self) -> None:
        """Start the periodic health sweep."""
        if self._sweep_task is None and self.health_check_interval > 0:
            self._sweep_task = asyncio.create_task(self._sweep_loop())

    async def cleanup_all(self) -> None:
        """Terminate every live engine, in use or idle."""
        if self._sweep_task is not None:
            self._sweep_task.cancel()
            with contextlib.suppress(asyncio.CancelledError):
                await self._sweep_task
            self._sweep_task = None

        async with self._cond:
            self._closed = True
            handles = [h for live in self._live.values() for h in live]
            for engine_type in EngineType:
                self._live[engine_type].clear()
                self._idle[engine_type].clear()
                self._update_gauge(engine_type)
            self._cond.notify_all()

        results = await asyncio.gather(*(h.engine.cleanup() for h in handles), return_exceptions=True)
        for handle, result in zip(handles, results):
            if isinstance(result, Exception):
                logger.error("Engine cleanup failed", engine=handle.engine_type.value, error=str(result))
        logger.info("Engine pool cleaned up", engines=len(handles))

    # --- acquire / release ---

    def live_count(self, engine_type: EngineType) -> int:
        return len(self._live[engine_type])

    def _update_gauge(self, engine_type: EngineType) -> None:
        gauge("engine_pool_live", len(self._live[engine_type]), {"engine": engine_type.value})

    async def acquire(self, engine_type: EngineType, job: Optional[Job] = None) -> EngineHandle:
        """
        Lend an engine of ``engine_type``.

        Raises:
            PoolExhaustedError: no handle became free within ``acquire_timeout``,
                or the pool is shut down
        """
        cap = self.caps.get(engine_type, 1)
        deadline = time.monotonic() + self.acquire_timeout

        while True:
            handle: Optional[EngineHandle] = None
            async with self._cond:
                while True:
                    if self._closed:
                        raise PoolExhaustedError("Engine pool is shut down")
                    if self._idle[engine_type]:
                        handle = self._idle[engine_type].pop()
                        handle.ref_count += 1
                        break
                    if len(self._live[engine_type]) + self._creating[engine_type] < cap:
                        self._creating[engine_type] += 1
                        break
                    remaining = deadline - time.monotonic()
                    if remaining <= 0:
                        raise PoolExhaustedError(
                            f"No {engine_type.value} engine available within {self.acquire_timeout}s",
                            metadata={"engine": engine_type.value, "cap": cap},
                        )
                    try:
                        async with asyncio.timeout(remaining):
                            await self._cond.wait()
                    except TimeoutError:
                        continue

            if handle is None:
                return await self._create(engine_type, job)

            if await self._probe(handle):
                handle.uses += 1
                handle.last_used = time.monotonic()
                return handle

            logger.warning("Discarding unhealthy idle engine", engine=engine_type.value, handle_id=handle.handle_id)
            await self._destroy(handle)

    async def _create(self, engine_type: EngineType, job: Optional[Job]) -> EngineHandle:
        engine = self._factory(engine_type)
        try:
            await engine.initialize()
        except BaseException:
            async with self._cond:
                self._creating[engine_type] -= 1
                self._cond.notify_all()
            raise

        handle = EngineHandle(engine=engine, engine_type=engine_type, ref_count=1, uses=1)
        async with self._cond:
            self._creating[engine_type] -= 1
            closed = self._closed
            if not closed:
                self._live[engine_type].add(handle)
                self._update_gauge(engine_type)
        if closed:
            await engine.cleanup()
            raise PoolExhaustedError("Engine pool is shut down")

        logger.debug(
            "Created engine",
            engine=engine_type.value,
            handle_id=handle.handle_id,
            live=self.live_count(engine_type),
            job_id=job.id if job else None,
        )
        return handle

    async def release(self, handle: EngineHandle, healthy: bool = True) -> None:
        """Return ``handle``; unhealthy handles are destroyed instead of reused."""
        async with self._cond:
            handle.ref_count = max(0, handle.ref_count - 1)
            handle.last_used = time.monotonic()
            owned = handle in self._live[handle.engine_type]
            if owned and healthy and not self._closed:
                self._idle[handle.engine_type].append(handle)
                self._cond.notify_all()
                return
        if owned:
            await self._destroy(handle)

    @contextlib.asynccontextmanager
    async def lease(self, engine_type: EngineType, job: Optional[Job] = None) -> AsyncIterator[ScrapeEngine]:
        """Acquire for the duration of a block; released even on cancellation."""
        handle = await self.acquire(engine_type, job)
        try:
            yield handle.engine
        finally:
            await self.release(handle)

    async def _destroy(self, handle: EngineHandle) -> None:
        async with self._cond:
            self._live[handle.engine_type].discard(handle)
            with contextlib.suppress(ValueError):
                self._idle[handle.engine_type].remove(handle)
            self._update_gauge(handle.engine_type)
            self._cond.notify_all()
        try:
            await handle.engine.cleanup()
        except Exception as e:
            logger.error("Engine cleanup failed", engine=handle.engine_type.value, error=str(e))

    # --- health ---

    async def _probe(self, handle: EngineHandle) -> bool:
        try:
            return bool(await handle.engine.is_healthy())
        except Exception as e:
            logger.warning("Engine health probe raised", engine=handle.engine_type.value, error=str(e))
            return False

    async def health_sweep(self) -> int:
        """Probe idle handles and evict the unhealthy ones; returns evictions."""
        async with self._cond:
            candidates: List[EngineHandle] = [h for idle in self._idle.values() for h in idle]
            for engine_type in EngineType:
                self._idle[engine_type].clear()

        evicted = 0
        for handle in candidates:
            if await self._probe(handle):
                async with self._cond:
                    if handle in self._live[handle.engine_type] and not self._closed:
                        self._idle[handle.engine_type].append(handle)
                        self._cond.notify_all()
                continue
            evicted += 1
            self._evictions += 1
            increment("engine_pool_evictions", labels={"engine": handle.engine_type.value})
            logger.warning("Evicting unhealthy engine", engine=handle.engine_type.value, handle_id=handle.handle_id)
            await self._destroy(handle)
        return evicted

    async def _sweep_loop(self) -> None:
        while True:
            await asyncio.sleep(self.health_check_interval)
            try:
                await self.health_sweep()
            except asyncio.CancelledError:
                raise
            except Exception as e:
                logger.error("Engine health sweep failed", error=str(e))

    def get_stats(self) -> Dict[str, Any]:
        return {
            "closed": self._closed,
            "evictions": self._evictions,
            "per_engine": {
                t.value: {
                    "cap": self.caps.get(t, 1),
                    "live": len(self._live[t]),
                    "idle": len(self._idle[t]),
                    "creating": self._creating[t],
                }
                for t in EngineType
            },
        }
