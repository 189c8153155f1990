"""
Broker consumer feeding the orchestrator.

Each institution class gets its own subscription (bounded by the queue's
prefetch) and a worker pool sized by its ``concurrency``. Deliveries are
acknowledged only after the orchestrator has settled the job, so a crash
or a cancelled job leaves the message to be redelivered.
"""

from __future__ import annotations

import asyncio
import contextlib
from typing import Any, Dict, Iterable, List, Optional, Protocol

import structlog
from pydantic import ValidationError

from techtransfer_scraper.config.config import QueueConfig
from techtransfer_scraper.observability import increment
from techtransfer_scraper.protocols import ErrorKind, InstitutionType, Job
from techtransfer_scraper.queue.broker import Broker, Delivery
from techtransfer_scraper.queue.messages import JobMessage

logger = structlog.get_logger(__name__)


class JobProcessor(Protocol):
    async def process(self, job: Job) -> Any:
        ...


class JobQueueConsumer:
    """
    Pulls jobs from the broker and runs them on per-class worker pools.

    Args:
        broker: Message broker
        processor: Settles one job (normally ``ScraperOrchestrator``)
        config: Queue settings (prefetch and concurrency per class)
        institution_types: Classes to consume; all by default
        shutdown_grace: Seconds in-flight jobs get to finish on ``stop``
    """

    def __init__(
        self,
        broker: Broker,
        processor: JobProcessor,
        config: Optional[QueueConfig] = None,
        institution_types: Optional[Iterable[InstitutionType]] = None,
        shutdown_grace: float = 30.0,
    ):
        self.broker = broker
        self.processor = processor
        self.config = config or QueueConfig()
        self.institution_types = list(institution_types or InstitutionType)
        self.shutdown_grace = shutdown_grace

        self._inboxes: Dict[InstitutionType, asyncio.Queue[Delivery]] = {}
        self._workers: List[asyncio.Task] = []
        self._consumer_tags: List[str] = []
        self._busy = 0
        self._stop_event = asyncio.Event()
        self._running = False
        self.processed = 0
        self.malformed = 0

    @property
    def is_running(self) -> bool:
        return self._running

    @property
    def busy(self) -> int:
        return self._busy

    async def start(self) -> None:
        if self._running:
            return
        self._stop_event.clear()
        for institution_type in self.institution_types:
            settings = self.config.for_institution(institution_type)
            inbox: asyncio.Queue[Delivery] = asyncio.Queue()
            self._inboxes[institution_type] = inbox
            for n in range(settings.concurrency):
                name = f"{institution_type.value.lower()}-worker-{n}"
                self._workers.append(asyncio.create_task(self._worker(name, inbox), name=name))
            self._consumer_tags.append(await self.broker.consume(institution_type, inbox.put))
        self._running = True
        logger.info(
            "Consumer started",
            institution_types=[t.value for t in self.institution_types],
            workers=len(self._workers),
        )

    async def _worker(self, name: str, inbox: asyncio.Queue[Delivery]) -> None:
        while True:
            delivery = await inbox.get()
            self._busy += 1
            try:
                await self.handle(delivery)
            finally:
                self._busy -= 1
                inbox.task_done()

    async def handle(self, delivery: Delivery) -> None:
        """Decode, process and settle one delivery."""
        try:
            job = JobMessage.from_bytes(delivery.body).to_job()
        except (ValidationError, ValueError) as e:
            self.malformed += 1
            increment(
                "jobs_failed",
                labels={"institution_type": "unknown", "error_kind": ErrorKind.VALIDATION_ERROR.value},
            )
            logger.error("Discarding malformed job message", error=str(e), redelivered=delivery.redelivered)
            # Routed to the dead-letter queue by the broker
            await delivery.nack(requeue=False)
            return

        try:
            await self.processor.process(job)
        except asyncio.CancelledError:
            with contextlib.suppress(Exception):
                await delivery.nack(requeue=True)
            raise
        except Exception as e:
            # Settling failed (typically the broker went away); let it come back
            logger.error("Job processing failed, requeueing", job_id=job.id, error=str(e), exc_info=e)
            await delivery.nack(requeue=True)
            return

        await delivery.ack()
        self.processed += 1

    def request_stop(self) -> None:
        """Signal-safe trigger for ``run_until_stopped``."""
        self._stop_event.set()

    async def run_until_stopped(self) -> None:
        await self.start()
        await self._stop_event.wait()
        await self.stop()

    async def wait_idle(self, timeout: Optional[float] = None) -> bool:
        """Wait until every inbox is drained; False on timeout."""
        try:
            async with asyncio.timeout(timeout):
                for inbox in self._inboxes.values():
                    await inbox.join()
        except TimeoutError:
            return False
        return True

    async def stop(self, grace: Optional[float] = None) -> None:
        """
        Stop pulling new messages, give in-flight jobs ``grace`` seconds,
        then cancel what is left. Cancelled jobs are requeued.
        """
        if not self._running:
            return
        grace = self.shutdown_grace if grace is None else grace
        # Deliveries already pulled stay owned by this process until settled or released below
        for tag in self._consumer_tags:
            await self.broker.cancel(tag)

        drained = await self.wait_idle(grace)
        if not drained:
            logger.warning("Shutdown grace expired, cancelling in-flight jobs", busy=self._busy)

        for task in self._workers:
            task.cancel()
        await asyncio.gather(*self._workers, return_exceptions=True)
        self._workers.clear()

        # Pulled from the broker but never started
        for inbox in self._inboxes.values():
            while not inbox.empty():
                delivery = inbox.get_nowait()
                await delivery.nack(requeue=True)
        self._inboxes.clear()

        for tag in self._consumer_tags:
            await self.broker.release(tag)
        self._consumer_tags.clear()
        self._running = False
        logger.info("Consumer stopped", processed=self.processed, drained=drained)
