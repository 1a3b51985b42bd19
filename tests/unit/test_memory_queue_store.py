"""
Unit tests for the in-memory queue and object store.

Tests cover:
- Visibility timeouts, release and redelivery counting
- Dead-lettering after max receives
- Conditional writes and etags
- Store event emission with writer identity
- Failure injection
"""

import asyncio
import json

import pytest

from backend.changeflow.queue.memory import InMemoryTenantQueue
from backend.changeflow.store.base import ObjectNotFoundError, PreconditionFailedError, StoreError
from backend.changeflow.store.memory import InMemoryObjectStore


class FakeClock:
    def __init__(self):
        self.now = 1000.0

    def __call__(self):
        return self.now


class TestInMemoryTenantQueue:
    """Tests for InMemoryTenantQueue."""

    @pytest.fixture
    def clock(self):
        return FakeClock()

    @pytest.fixture
    def queue(self, clock):
        return InMemoryTenantQueue("acme", visibility_timeout=30, max_receive_count=2, clock=clock)

    @pytest.mark.asyncio
    async def test_receive_hides_message(self, queue):
        """A received message is invisible until its timeout expires."""
        await queue.send("body")

        [message] = await queue.receive(10, 0)

        assert message.receive_count == 1
        assert message.tenant_code == "acme"
        assert await queue.receive(10, 0) == []

    @pytest.mark.asyncio
    async def test_ack_removes_message(self, queue, clock):
        """Acknowledged messages are never redelivered."""
        await queue.send("body")
        [message] = await queue.receive(10, 0)

        await queue.ack(message)
        clock.now += 60

        assert await queue.receive(10, 0) == []
        assert queue.acked == [message.message_id]

    @pytest.mark.asyncio
    async def test_release_with_delay(self, queue, clock):
        """Released messages come back after the delay."""
        await queue.send("body")
        [message] = await queue.receive(10, 0)

        await queue.release(message, 5)
        assert await queue.receive(10, 0) == []
        clock.now += 5

        [again] = await queue.receive(10, 0)
        assert again.message_id == message.message_id
        assert again.receive_count == 2

    @pytest.mark.asyncio
    async def test_dead_letter(self, queue, clock):
        """Messages received too often move to the dead-letter list."""
        await queue.send("poison")
        for _ in range(2):
            await queue.receive(10, 0)
            clock.now += 31

        assert await queue.receive(10, 0) == []
        assert queue.dead_letters == ["poison"]
        assert queue.pending_count() == 0

    @pytest.mark.asyncio
    async def test_stale_ack_ignored(self, queue, clock):
        """An ack for an older delivery does not delete the message."""
        await queue.send("body")
        [first] = await queue.receive(10, 0)
        clock.now += 31
        await queue.receive(10, 0)

        await queue.ack(first)

        assert queue.pending_count() == 1

    @pytest.mark.asyncio
    async def test_long_poll_wakes_on_send(self, queue):
        """A waiting receive returns as soon as a message arrives."""
        receiver = asyncio.create_task(queue.receive(10, 5))
        await asyncio.sleep(0)
        await queue.send("late")

        messages = await asyncio.wait_for(receiver, 1)
        assert [m.body for m in messages] == ["late"]


class TestInMemoryObjectStore:
    """Tests for InMemoryObjectStore."""

    @pytest.fixture
    def store(self):
        return InMemoryObjectStore("changes")

    @pytest.mark.asyncio
    async def test_etag_changes_on_write(self, store):
        """Every write produces a new etag, even for identical bodies."""
        first = await store.put("archive/CHG-1.json", b"{}")
        second = await store.put("archive/CHG-1.json", b"{}")
        assert first != second

    @pytest.mark.asyncio
    async def test_conditional_write(self, store):
        """If-Match writes fail when the object changed."""
        etag = await store.put("archive/CHG-1.json", b"{}")
        await store.put("archive/CHG-1.json", b'{"v": 2}')

        with pytest.raises(PreconditionFailedError):
            await store.put("archive/CHG-1.json", b'{"v": 3}', if_match=etag)

    @pytest.mark.asyncio
    async def test_get_missing(self, store):
        """Missing keys raise ObjectNotFoundError."""
        with pytest.raises(ObjectNotFoundError):
            await store.get("archive/none.json")

    @pytest.mark.asyncio
    async def test_events_carry_writer(self, store):
        """Writes under a subscribed prefix emit events stamped with the writer."""
        queue = InMemoryTenantQueue("acme")
        store.subscribe("customers/acme/", queue)
        writer = store.as_principal("arn:aws:sts::1:assumed-role/portal/x", "AROAPORTAL:x")

        await writer.put("customers/acme/CHG-1.json", b"{}")
        await writer.put("archive/CHG-1.json", b"{}")
        await writer.delete("customers/acme/CHG-1.json")

        bodies = [json.loads(m.body) for m in await queue.receive(10, 0)]
        assert [b["Records"][0]["eventName"] for b in bodies] == ["ObjectCreated:Put", "ObjectRemoved:Delete"]
        assert bodies[0]["Records"][0]["userIdentity"]["principalId"] == "AROAPORTAL:x"

    @pytest.mark.asyncio
    async def test_views_share_storage(self, store):
        """Principal views see the same objects."""
        view = store.as_principal("arn:aws:iam::1:role/x")
        await view.put("k", b"v")
        assert await store.exists("k")

    @pytest.mark.asyncio
    async def test_failure_injection(self, store):
        """Injected failures are raised once per requested call."""
        store.fail_next("exists", StoreError("boom"), times=1)

        with pytest.raises(StoreError):
            await store.exists("k")
        assert await store.exists("k") is False
        assert store.operation_count("exists") == 2
