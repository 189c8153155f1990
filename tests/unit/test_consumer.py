"""
Tests for the broker consumer: decoding, settlement and graceful shutdown.
"""

import asyncio

import pytest

from techtransfer_scraper.observability import METRICS
from techtransfer_scraper.protocols import InstitutionType
from techtransfer_scraper.queue import JobMessage, JobQueueConsumer
from tests.helpers import metric_delta

US = InstitutionType.US_UNIVERSITY


class RecordingProcessor:
    def __init__(self, error=None, gate=None):
        self.jobs = []
        self.error = error
        self.gate = gate

    async def process(self, job):
        self.jobs.append(job)
        if self.gate is not None:
            await self.gate.wait()
        if self.error is not None:
            raise self.error


class StubDelivery:
    def __init__(self, body, redelivered=False):
        self.body = body
        self.redelivered = redelivered
        self.settlements = []

    async def ack(self):
        self.settlements.append("ack")

    async def nack(self, requeue=True):
        self.settlements.append("requeue" if requeue else "reject")


async def eventually(predicate, timeout=1.0):
    async with asyncio.timeout(timeout):
        while not predicate():
            await asyncio.sleep(0.005)


@pytest.mark.unit
class TestHandle:
    """Settlement of a single delivery."""

    @pytest.mark.asyncio
    async def test_processed_job_is_acked(self, memory_broker, university_job):
        processor = RecordingProcessor()
        consumer = JobQueueConsumer(memory_broker, processor)
        delivery = StubDelivery(JobMessage.from_job(university_job).to_bytes())

        await consumer.handle(delivery)

        assert delivery.settlements == ["ack"]
        assert processor.jobs[0].id == university_job.id
        assert consumer.processed == 1

    @pytest.mark.asyncio
    async def test_malformed_message_is_rejected_without_processing(self, memory_broker):
        processor = RecordingProcessor()
        consumer = JobQueueConsumer(memory_broker, processor)
        delivery = StubDelivery(b'{"id": "", "url": 3}')

        labels = {"institution_type": "unknown", "error_kind": "VALIDATION_ERROR"}
        with metric_delta(METRICS["jobs_failed"], labels=labels):
            await consumer.handle(delivery)

        assert delivery.settlements == ["reject"]
        assert processor.jobs == []
        assert consumer.malformed == 1

    @pytest.mark.asyncio
    async def test_processor_failure_requeues(self, memory_broker, university_job):
        consumer = JobQueueConsumer(memory_broker, RecordingProcessor(error=ConnectionError("broker gone")))
        delivery = StubDelivery(JobMessage.from_job(university_job).to_bytes())

        await consumer.handle(delivery)

        assert delivery.settlements == ["requeue"]
        assert consumer.processed == 0

    @pytest.mark.asyncio
    async def test_cancellation_requeues_and_propagates(self, memory_broker, university_job):
        gate = asyncio.Event()
        consumer = JobQueueConsumer(memory_broker, RecordingProcessor(gate=gate))
        delivery = StubDelivery(JobMessage.from_job(university_job).to_bytes())

        task = asyncio.create_task(consumer.handle(delivery))
        await asyncio.sleep(0.01)
        task.cancel()

        with pytest.raises(asyncio.CancelledError):
            await task
        assert delivery.settlements == ["requeue"]


@pytest.mark.unit
class TestLifecycle:
    @pytest.mark.asyncio
    async def test_consumes_published_jobs(self, memory_broker, test_config, university_job):
        processor = RecordingProcessor()
        consumer = JobQueueConsumer(memory_broker, processor, test_config.queue, institution_types=[US])
        for n in range(3):
            await memory_broker.publish(university_job.with_status(university_job.status, id=f"job-{n}"))

        await consumer.start()
        await eventually(lambda: consumer.processed == 3)

        assert sorted(job.id for job in processor.jobs) == ["job-0", "job-1", "job-2"]
        assert memory_broker.in_flight == 0
        await consumer.stop(grace=0.1)
        assert not consumer.is_running

    @pytest.mark.asyncio
    async def test_one_worker_pool_per_institution_class(self, memory_broker, test_config):
        consumer = JobQueueConsumer(memory_broker, RecordingProcessor(), test_config.queue)

        await consumer.start()

        # 4 US + 2 international + 4 federal
        assert len(consumer._workers) == 10
        await consumer.stop(grace=0.1)

    @pytest.mark.asyncio
    async def test_stop_waits_for_in_flight_jobs(self, memory_broker, test_config, university_job):
        gate = asyncio.Event()
        processor = RecordingProcessor(gate=gate)
        consumer = JobQueueConsumer(memory_broker, processor, test_config.queue, institution_types=[US])
        await memory_broker.publish(university_job)
        await consumer.start()
        await eventually(lambda: consumer.busy == 1)

        asyncio.get_running_loop().call_later(0.02, gate.set)
        await consumer.stop(grace=1.0)

        assert consumer.processed == 1
        assert memory_broker.pending() == 0

    @pytest.mark.asyncio
    async def test_in_flight_job_stays_owned_during_grace(self, memory_broker, test_config, university_job):
        """While stop() waits, the running job is neither redelivered nor picked up twice."""
        gate = asyncio.Event()
        processor = RecordingProcessor(gate=gate)
        consumer = JobQueueConsumer(memory_broker, processor, test_config.queue, institution_types=[US])
        await memory_broker.publish(university_job)
        await consumer.start()
        await eventually(lambda: consumer.busy == 1)

        stopping = asyncio.create_task(consumer.stop(grace=1.0))
        await asyncio.sleep(0.05)

        assert memory_broker.pending(US) == 0
        assert memory_broker.in_flight == 1

        gate.set()
        await stopping

        assert len(processor.jobs) == 1
        assert consumer.processed == 1
        assert memory_broker.pending(US) == 0
        assert memory_broker.in_flight == 0

    @pytest.mark.asyncio
    async def test_expired_grace_requeues_in_flight_jobs(self, memory_broker, test_config, university_job):
        processor = RecordingProcessor(gate=asyncio.Event())
        consumer = JobQueueConsumer(memory_broker, processor, test_config.queue, institution_types=[US])
        await memory_broker.publish(university_job)
        await consumer.start()
        await eventually(lambda: consumer.busy == 1)

        await consumer.stop(grace=0.01)

        assert consumer.processed == 0
        assert memory_broker.pending(US) == 1

    @pytest.mark.asyncio
    async def test_request_stop_ends_run(self, memory_broker, test_config):
        consumer = JobQueueConsumer(
            memory_broker, RecordingProcessor(), test_config.queue, institution_types=[US], shutdown_grace=0.1
        )

        runner = asyncio.create_task(consumer.run_until_stopped())
        await eventually(lambda: consumer.is_running)
        consumer.request_stop()

        await asyncio.wait_for(runner, 1.0)
        assert not consumer.is_running
