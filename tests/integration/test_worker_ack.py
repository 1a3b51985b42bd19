"""
Integration tests for TenantWorker and the Server lifecycle.

Tests cover:
- Ack policy per outcome (ack, release with backoff, leave for DLQ)
- Queue failures during receive and ack
- Running the server with in-memory queues until shutdown
"""

import asyncio

import pytest

from backend.changeflow.config import QueueConfig
from backend.changeflow.engine import ExecutionSummary, Outcome, ProcessResult, TenantWorker
from backend.changeflow.queue import InMemoryTenantQueue, QueueError
from tests.factories import Pipeline, change_doc


class ScriptedProcessor:
    """Processor returning a fixed sequence of outcomes."""

    def __init__(self, *outcomes):
        self.outcomes = list(outcomes)
        self.summary = ExecutionSummary("acme")
        self.seen = []

    async def process_message(self, message):
        self.seen.append(message.body)
        return ProcessResult(self.outcomes.pop(0), "CHG-1001")


class FlakyQueue(InMemoryTenantQueue):
    """In-memory queue whose receive and ack can be made to fail."""

    def __init__(self, *args, **kwargs):
        super().__init__(*args, **kwargs)
        self.receive_failures = 0
        self.ack_failures = 0

    async def receive(self, max_messages, wait_seconds):
        if self.receive_failures:
            self.receive_failures -= 1
            raise QueueError("ReceiveMessage throttled", queue=self.tenant_code)
        return await super().receive(max_messages, wait_seconds)

    async def ack(self, message):
        if self.ack_failures:
            self.ack_failures -= 1
            raise QueueError("DeleteMessage failed", queue=self.tenant_code)
        await super().ack(message)


class TestTenantWorker:
    """Tests for TenantWorker."""

    @pytest.fixture
    def queue(self):
        return FlakyQueue("acme", visibility_timeout=30, max_receive_count=3)

    def worker(self, queue, *outcomes):
        return TenantWorker(
            queue,
            ScriptedProcessor(*outcomes),
            QueueConfig(wait_seconds=0),
            retry_base_delay=0.001,
            retry_max_delay=0.002,
        )

    @pytest.mark.parametrize(
        "outcome",
        [Outcome.PROCESSED, Outcome.SKIPPED, Outcome.DISCARDED, Outcome.TEST_EVENT],
    )
    @pytest.mark.asyncio
    async def test_acknowledged_outcomes(self, queue, outcome):
        """Completed work is acknowledged."""
        worker = self.worker(queue, outcome)
        await queue.send("m1")

        assert await worker.run_once() == 1

        assert queue.pending_count() == 0
        assert len(queue.acked) == 1

    @pytest.mark.asyncio
    async def test_retry_releases_message(self, queue):
        """Retryable failures make the message visible again soon."""
        worker = self.worker(queue, Outcome.RETRY, Outcome.PROCESSED)
        await queue.send("m1")

        await worker.run_once()
        assert queue.pending_count() == 1
        assert queue.acked == []

        await asyncio.sleep(0.01)
        await worker.run_once()

        assert queue.pending_count() == 0
        assert worker.processor.seen == ["m1", "m1"]

    @pytest.mark.asyncio
    async def test_fatal_goes_to_dead_letters(self, queue):
        """Fatal messages are never acked and end up dead-lettered."""
        worker = self.worker(queue, Outcome.FATAL, Outcome.FATAL, Outcome.FATAL)
        await queue.send("poison")

        for _ in range(4):
            await worker.run_once()
            queue.make_all_visible()

        assert queue.dead_letters == ["poison"]
        assert queue.acked == []
        assert len(worker.processor.seen) == 3

    @pytest.mark.asyncio
    async def test_receive_failure_backs_off(self, queue):
        """A failed receive is retried on the next poll."""
        worker = self.worker(queue, Outcome.PROCESSED)
        queue.receive_failures = 1
        await queue.send("m1")

        assert await worker.run_once() == 0
        assert await worker.run_once() == 1
        assert queue.pending_count() == 0

    @pytest.mark.asyncio
    async def test_ack_failure_is_redelivered(self, queue):
        """A failed ack leaves the message for redelivery."""
        worker = self.worker(queue, Outcome.PROCESSED, Outcome.SKIPPED)
        queue.ack_failures = 1
        await queue.send("m1")

        await worker.run_once()
        assert queue.pending_count() == 1

        queue.make_all_visible()
        await worker.run_once()
        assert queue.pending_count() == 0

    @pytest.mark.asyncio
    async def test_start_and_stop(self, queue):
        """The loop runs until stopped and reports its counters."""
        worker = self.worker(queue, Outcome.PROCESSED)
        task = asyncio.create_task(worker.start())
        await queue.send("m1")

        for _ in range(100):
            if queue.acked:
                break
            await asyncio.sleep(0.01)

        assert worker.stats["running"]
        await worker.stop()
        await asyncio.wait_for(task, timeout=1)

        assert queue.acked
        assert not worker.stats["running"]
        assert worker.stats["tenant_code"] == "acme"


class TestServerLifecycle:
    """The server wired with in-memory queues."""

    @pytest.mark.asyncio
    async def test_runs_until_shutdown(self):
        """Workers process events while the server runs and stop on shutdown."""
        pipeline = Pipeline(tenant_codes=("acme", "globex"))
        server = pipeline.server
        await server.open()
        for code, queue in pipeline.queues.items():
            pipeline.bucket.subscribe(pipeline.layout.tenant_prefix(code), queue)

        task = asyncio.create_task(server.start())
        for _ in range(100):
            if server.health()["healthy"]:
                break
            await asyncio.sleep(0.01)
        assert server.health() == {"healthy": True, "workers": {"acme": True, "globex": True}}

        await pipeline.portal.connect()
        await pipeline.write(change_doc(status="submitted", customers=("acme", "globex")))
        for _ in range(200):
            stats = server.stats()
            if all(s["processed"] == 1 for s in stats.values()):
                break
            await asyncio.sleep(0.01)

        assert not pipeline.trigger_exists("acme", "CHG-1001")
        assert stats["acme"]["processed"] == 1
        assert stats["globex"]["processed"] == 1

        server.request_shutdown()
        await asyncio.wait_for(task, timeout=1)
        await server.stop()

        assert not server.health()["healthy"]
        assert not pipeline.queues["acme"].is_connected
