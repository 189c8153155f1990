"""
Message broker access.

``Broker`` is the seam the consumer and orchestrator depend on. ``AmqpBroker``
implements it over RabbitMQ with aio-pika; ``InMemoryBroker`` implements it
in-process for one-shot runs and tests.

AMQP topology per institution class::

    <name>          durable main queue, x-dead-letter-exchange=<dlx>, TTL, max length, priority
    <dlx>           direct exchange
    <dlq>           durable queue bound to <dlx> with routing key <name>
    <name>.delay    durable queue whose expired messages dead-letter back to <name>

Delayed republishes (retries, rate-limit requeues, deferred pages) go to the
delay queue with a per-message expiration.
"""

from __future__ import annotations

import asyncio
import contextlib
import itertools
from collections import deque
from typing import Any, Awaitable, Callable, Deque, Dict, List, Optional, Protocol, Tuple

import aio_pika
import structlog
from aio_pika.abc import AbstractChannel, AbstractIncomingMessage, AbstractQueue, AbstractRobustConnection
from aio_pika.exceptions import AMQPConnectionError, ChannelInvalidStateError
from tenacity import AsyncRetrying, RetryCallState, retry_if_exception_type, stop_after_attempt, wait_exponential

from techtransfer_scraper.config.config import QueueConfig, QueueSettings
from techtransfer_scraper.protocols import InstitutionType, Job, ScrapeError, utcnow
from techtransfer_scraper.queue.messages import DeadLetterMessage, JobMessage

logger = structlog.get_logger(__name__)


class Delivery(Protocol):
    """One message handed to a consumer; settled exactly once."""

    body: bytes
    redelivered: bool

    async def ack(self) -> None:
        ...

    async def nack(self, requeue: bool = True) -> None:
        ...


DeliveryHandler = Callable[[Delivery], Awaitable[None]]


class Broker(Protocol):
    async def connect(self) -> None:
        ...

    async def close(self) -> None:
        ...

    async def publish(self, job: Job, *, delay: float = 0.0) -> None:
        ...

    async def publish_dead_letter(self, job: Job, error: ScrapeError) -> None:
        ...

    async def consume(self, institution_type: InstitutionType, handler: DeliveryHandler) -> str:
        ...

    async def cancel(self, consumer_tag: str) -> None:
        """Stop new deliveries; those already handed out stay settleable."""
        ...

    async def release(self, consumer_tag: str) -> None:
        """Drop the subscription; whatever it still holds unsettled goes back to the queue."""
        ...


def message_priority(job: Job, settings: QueueSettings) -> int:
    return max(0, min(job.priority, settings.max_priority))


# --- AMQP ---


class AmqpDelivery:
    def __init__(self, message: AbstractIncomingMessage):
        self._message = message
        self.body = message.body
        self.redelivered = bool(message.redelivered)

    async def ack(self) -> None:
        try:
            await self._message.ack()
        except ChannelInvalidStateError as e:
            self._log_lost("ack", e)

    async def nack(self, requeue: bool = True) -> None:
        try:
            if requeue:
                await self._message.nack(requeue=True)
            else:
                # Dead-letters through the queue's x-dead-letter-exchange
                await self._message.reject(requeue=False)
        except ChannelInvalidStateError as e:
            self._log_lost("nack", e)

    def _log_lost(self, how: str, error: Exception) -> None:
        # The channel is gone, so RabbitMQ has already requeued the message
        logger.warning(
            "Channel closed before settling delivery",
            settlement=how,
            message_id=self._message.message_id,
            error=str(error),
        )


class AmqpBroker:
    """
    RabbitMQ broker over aio-pika.

    Connection establishment is retried with exponential backoff through
    tenacity; the robust connection then reconnects on its own.
    """

    def __init__(self, config: QueueConfig):
        self.config = config
        self._connection: Optional[AbstractRobustConnection] = None
        self._publish_channel: Optional[AbstractChannel] = None
        self._consumers: Dict[str, Tuple[AbstractChannel, AbstractQueue]] = {}
        self._cancelled: set[str] = set()
        self._declared: set[InstitutionType] = set()

    @property
    def is_connected(self) -> bool:
        return self._connection is not None and not self._connection.is_closed

    async def connect(self) -> None:
        if self.is_connected:
            return
        async for attempt in AsyncRetrying(
            stop=stop_after_attempt(self.config.connect_attempts),
            wait=wait_exponential(multiplier=1, min=1, max=30),
            retry=retry_if_exception_type((AMQPConnectionError, OSError, asyncio.TimeoutError)),
            before_sleep=_log_connect_retry,
            reraise=True,
        ):
            with attempt:
                self._connection = await aio_pika.connect_robust(
                    self.config.url,
                    timeout=self.config.connection_timeout,
                    heartbeat=self.config.heartbeat,
                )
        assert self._connection is not None
        self._publish_channel = await self._connection.channel(publisher_confirms=True)
        logger.info("Connected to broker", url=_safe_url(self.config.url))

    async def close(self) -> None:
        for tag in list(self._consumers):
            try:
                await self.release(tag)
            except (AMQPConnectionError, ChannelInvalidStateError) as e:
                logger.warning("Could not release consumer", consumer_tag=tag, error=str(e))
        if self._connection is not None:
            await self._connection.close()
        self._connection = None
        self._publish_channel = None
        self._declared.clear()
        logger.info("Broker connection closed")

    def _channel(self) -> AbstractChannel:
        if self._publish_channel is None:
            raise RuntimeError("Broker is not connected")
        return self._publish_channel

    async def declare(self, channel: AbstractChannel, institution_type: InstitutionType) -> AbstractQueue:
        """Declare the main, dead-letter and delay queues for ``institution_type``."""
        settings = self.config.for_institution(institution_type)
        dlx = await channel.declare_exchange(settings.dead_letter_exchange, aio_pika.ExchangeType.DIRECT, durable=True)
        dlq = await channel.declare_queue(settings.dead_letter_queue, durable=True)
        await dlq.bind(dlx, routing_key=settings.name)

        main = await channel.declare_queue(
            settings.name,
            durable=True,
            arguments={
                "x-dead-letter-exchange": settings.dead_letter_exchange,
                "x-dead-letter-routing-key": settings.name,
                "x-message-ttl": settings.message_ttl_ms,
                "x-max-length": settings.max_length,
                "x-max-priority": settings.max_priority,
            },
        )
        await channel.declare_queue(
            settings.delay_queue,
            durable=True,
            arguments={
                "x-dead-letter-exchange": "",
                "x-dead-letter-routing-key": settings.name,
            },
        )
        self._declared.add(institution_type)
        return main

    async def publish(self, job: Job, *, delay: float = 0.0) -> None:
        channel = self._channel()
        if job.institution_type not in self._declared:
            await self.declare(channel, job.institution_type)
        settings = self.config.for_institution(job.institution_type)

        routing_key = settings.name
        expiration: Optional[float] = None
        if delay > 0:
            routing_key = settings.delay_queue
            expiration = delay

        message = aio_pika.Message(
            body=JobMessage.from_job(job).to_bytes(),
            content_type="application/json",
            delivery_mode=aio_pika.DeliveryMode.PERSISTENT,
            priority=message_priority(job, settings),
            expiration=expiration,
            message_id=job.id,
            headers={"publishedAt": utcnow().isoformat(), "retryCount": job.retry_count},
        )
        await channel.default_exchange.publish(message, routing_key=routing_key)
        logger.debug("Published job", job_id=job.id, queue=routing_key, delay=round(delay, 3))

    async def publish_dead_letter(self, job: Job, error: ScrapeError) -> None:
        channel = self._channel()
        if job.institution_type not in self._declared:
            await self.declare(channel, job.institution_type)
        settings = self.config.for_institution(job.institution_type)
        exchange = await channel.get_exchange(settings.dead_letter_exchange)
        message = aio_pika.Message(
            body=DeadLetterMessage.from_failure(job, error).to_bytes(),
            content_type="application/json",
            delivery_mode=aio_pika.DeliveryMode.PERSISTENT,
            message_id=job.id,
            headers={"errorKind": error.kind.value, "publishedAt": utcnow().isoformat()},
        )
        await exchange.publish(message, routing_key=settings.name)
        logger.info("Dead-lettered job", job_id=job.id, kind=error.kind.value, exchange=settings.dead_letter_exchange)

    async def consume(self, institution_type: InstitutionType, handler: DeliveryHandler) -> str:
        if self._connection is None:
            raise RuntimeError("Broker is not connected")
        settings = self.config.for_institution(institution_type)
        # One channel per queue so prefetch applies per institution class
        channel = await self._connection.channel()
        await channel.set_qos(prefetch_count=settings.prefetch)
        queue = await self.declare(channel, institution_type)

        async def on_message(message: AbstractIncomingMessage) -> None:
            await handler(AmqpDelivery(message))

        tag = await queue.consume(on_message, no_ack=False)
        self._consumers[tag] = (channel, queue)
        logger.info("Consuming", queue=settings.name, prefetch=settings.prefetch)
        return tag

    async def cancel(self, consumer_tag: str) -> None:
        entry = self._consumers.get(consumer_tag)
        if entry is None or consumer_tag in self._cancelled:
            return
        _, queue = entry
        # basic.cancel only; the channel stays open so in-flight jobs can still ack
        await queue.cancel(consumer_tag)
        self._cancelled.add(consumer_tag)

    async def release(self, consumer_tag: str) -> None:
        if consumer_tag not in self._consumers:
            return
        await self.cancel(consumer_tag)
        channel, _ = self._consumers.pop(consumer_tag)
        self._cancelled.discard(consumer_tag)
        # Closing the channel redelivers whatever it still holds unacked
        if not channel.is_closed:
            await channel.close()


def _log_connect_retry(retry_state: RetryCallState) -> None:
    exc = retry_state.outcome.exception() if retry_state.outcome else None
    logger.warning("Broker connection failed, retrying", attempt=retry_state.attempt_number, error=str(exc))


def _safe_url(url: str) -> str:
    if "@" not in url:
        return url
    scheme, _, rest = url.partition("://")
    return f"{scheme}://***@{rest.split('@', 1)[1]}"


# --- In-process ---


class InMemoryDelivery:
    def __init__(
        self, broker: InMemoryBroker, institution_type: InstitutionType, body: bytes, redelivered: bool = False
    ):
        self._broker = broker
        self._institution_type = institution_type
        self.body = body
        self.redelivered = redelivered
        self.settled: Optional[str] = None

    async def ack(self) -> None:
        self._settle("ack")

    async def nack(self, requeue: bool = True) -> None:
        if not self._settle("requeue" if requeue else "reject"):
            return
        if requeue:
            self._broker._enqueue(self._institution_type, self.body, redelivered=True)
        else:
            self._broker.rejected.append(self.body)

    def release(self) -> None:
        """Hand the message back as a closed channel would."""
        self._settle("released")
        self._broker._enqueue(self._institution_type, self.body, redelivered=True)

    def _settle(self, how: str) -> bool:
        if self.settled == "released":
            # Same as settling on a closed AMQP channel: already back in the queue
            logger.warning("Subscription released before settling delivery", settlement=how)
            return False
        if self.settled is not None:
            raise RuntimeError(f"Delivery already settled ({self.settled})")
        self.settled = how
        self._broker._unacked.discard(self)
        self._broker._settled.set()
        return True


class InMemoryBroker:
    """
    Broker kept entirely in process memory.

    Honours prefetch (a consumer holds at most ``prefetch`` unsettled
    deliveries), delays republishes with ``loop.call_later`` and keeps every
    dead letter for inspection.
    """

    def __init__(self, config: Optional[QueueConfig] = None):
        self.config = config or QueueConfig()
        self._queues: Dict[InstitutionType, Deque[Tuple[bytes, bool]]] = {t: deque() for t in InstitutionType}
        self._available: Dict[InstitutionType, asyncio.Event] = {t: asyncio.Event() for t in InstitutionType}
        self._settled = asyncio.Event()
        self._unacked: set[InMemoryDelivery] = set()
        self._consumers: Dict[str, asyncio.Task] = {}
        self._held: Dict[str, set[InMemoryDelivery]] = {}
        self._timers: set[asyncio.TimerHandle] = set()
        self._tags = itertools.count(1)
        self.published: List[Tuple[Job, float]] = []
        self.dead_letters: List[Tuple[Job, ScrapeError]] = []
        self.rejected: List[bytes] = []
        self.connected = False

    async def connect(self) -> None:
        self.connected = True

    async def close(self) -> None:
        for tag in list(self._held):
            await self.release(tag)
        for timer in self._timers:
            timer.cancel()
        self._timers.clear()
        self.connected = False

    def pending(self, institution_type: Optional[InstitutionType] = None) -> int:
        """Messages waiting in the queue(s), excluding delayed ones."""
        if institution_type is not None:
            return len(self._queues[institution_type])
        return sum(len(q) for q in self._queues.values())

    @property
    def scheduled(self) -> int:
        return len(self._timers)

    @property
    def in_flight(self) -> int:
        return len(self._unacked)

    def _enqueue(self, institution_type: InstitutionType, body: bytes, redelivered: bool = False) -> None:
        self._queues[institution_type].append((body, redelivered))
        self._available[institution_type].set()

    async def publish(self, job: Job, *, delay: float = 0.0) -> None:
        self.published.append((job, delay))
        body = JobMessage.from_job(job).to_bytes()
        if delay > 0:
            self._enqueue_later(job.institution_type, body, delay)
        else:
            self._enqueue(job.institution_type, body)

    def _enqueue_later(self, institution_type: InstitutionType, body: bytes, delay: float) -> None:
        handle: Optional[asyncio.TimerHandle] = None

        def fire() -> None:
            self._timers.discard(handle)  # type: ignore[arg-type]
            self._enqueue(institution_type, body)

        handle = asyncio.get_running_loop().call_later(delay, fire)
        self._timers.add(handle)

    async def publish_raw(self, institution_type: InstitutionType, body: bytes) -> None:
        self._enqueue(institution_type, body)

    async def publish_dead_letter(self, job: Job, error: ScrapeError) -> None:
        self.dead_letters.append((job, error))

    async def consume(self, institution_type: InstitutionType, handler: DeliveryHandler) -> str:
        tag = f"inmem-{next(self._tags)}"
        prefetch = self.config.for_institution(institution_type).prefetch
        self._held[tag] = set()
        self._consumers[tag] = asyncio.create_task(self._dispatch(tag, institution_type, handler, prefetch))
        return tag

    async def _dispatch(
        self, tag: str, institution_type: InstitutionType, handler: DeliveryHandler, prefetch: int
    ) -> None:
        queue = self._queues[institution_type]
        available = self._available[institution_type]
        held = self._held[tag]
        while True:
            held.difference_update({d for d in held if d.settled is not None})
            if not queue:
                available.clear()
                await available.wait()
                continue
            if len(held) >= prefetch:
                self._settled.clear()
                await self._settled.wait()
                continue
            body, redelivered = queue.popleft()
            delivery = InMemoryDelivery(self, institution_type, body, redelivered)
            held.add(delivery)
            self._unacked.add(delivery)
            await handler(delivery)

    async def cancel(self, consumer_tag: str) -> None:
        task = self._consumers.pop(consumer_tag, None)
        if task is None:
            return
        task.cancel()
        with contextlib.suppress(asyncio.CancelledError):
            await task

    async def release(self, consumer_tag: str) -> None:
        await self.cancel(consumer_tag)
        for delivery in self._held.pop(consumer_tag, set()):
            if delivery.settled is None:
                delivery.release()

    def get_stats(self) -> Dict[str, Any]:
        return {
            "pending": self.pending(),
            "scheduled": self.scheduled,
            "in_flight": self.in_flight,
            "published": len(self.published),
            "dead_letters": len(self.dead_letters),
        }
