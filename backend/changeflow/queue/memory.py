"""
In-memory tenant queue for tests and local runs.

Implements visibility timeouts, receive counting and a dead-letter list
so that redelivery behaviour can be exercised without SQS.

Invariants:
    - All data is lost on process exit
    - Messages exceeding max_receive_count move to dead_letters instead
      of being delivered again

How to change safely:
    - This is test-only code, changes don't affect production
    - Keep behaviour compatible with the TenantQueue protocol
"""

from __future__ import annotations

import asyncio
import itertools
import logging
import time
import uuid
from collections.abc import Callable
from dataclasses import dataclass

from .base import QueueMessage

logger = logging.getLogger(__name__)


@dataclass
class _Entry:
    message_id: str
    body: str
    receive_count: int = 0
    visible_at: float = 0.0
    receipt_handle: str = ""


class InMemoryTenantQueue:
    """In-memory implementation of TenantQueue.

    Example:
        >>> queue = InMemoryTenantQueue("acme")
        >>> await queue.send('{"Records": [...]}')
        >>> [message] = await queue.receive(1, 0)
        >>> await queue.ack(message)
    """

    def __init__(
        self,
        tenant_code: str,
        visibility_timeout: float = 30.0,
        max_receive_count: int = 5,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self._tenant_code = tenant_code
        self.visibility_timeout = visibility_timeout
        self.max_receive_count = max_receive_count
        self._clock = clock
        self._entries: dict[str, _Entry] = {}
        self._handles = itertools.count(1)
        self._arrived = asyncio.Event()
        self._connected = False
        self.dead_letters: list[str] = []
        self.acked: list[str] = []

    @property
    def tenant_code(self) -> str:
        return self._tenant_code

    async def connect(self) -> None:
        self._connected = True

    async def close(self) -> None:
        self._connected = False

    @property
    def is_connected(self) -> bool:
        return self._connected

    async def send(self, body: str) -> str:
        message_id = str(uuid.uuid4())
        self._entries[message_id] = _Entry(message_id=message_id, body=body)
        self._arrived.set()
        return message_id

    async def receive(self, max_messages: int, wait_seconds: float) -> list[QueueMessage]:
        messages = self._take_visible(max_messages)
        if messages:
            return messages
        if wait_seconds <= 0:
            # Let other tasks run when polled in a tight loop
            await asyncio.sleep(0)
            return messages
        self._arrived.clear()
        try:
            await asyncio.wait_for(self._arrived.wait(), timeout=wait_seconds)
        except asyncio.TimeoutError:
            pass
        return self._take_visible(max_messages)

    async def ack(self, message: QueueMessage) -> None:
        entry = self._entries.get(message.message_id)
        if entry is None or entry.receipt_handle != message.receipt_handle:
            logger.warning("Ack with stale receipt handle", extra={"message_id": message.message_id})
            return
        del self._entries[message.message_id]
        self.acked.append(message.message_id)

    async def release(self, message: QueueMessage, delay_seconds: float) -> None:
        entry = self._entries.get(message.message_id)
        if entry is not None and entry.receipt_handle == message.receipt_handle:
            entry.visible_at = self._clock() + max(0.0, delay_seconds)
            if delay_seconds <= 0:
                self._arrived.set()

    # Testing helpers

    def pending_count(self) -> int:
        """Messages not yet acknowledged or dead-lettered."""
        return len(self._entries)

    def make_all_visible(self) -> None:
        """Expire every visibility timeout, as if time had passed."""
        for entry in self._entries.values():
            entry.visible_at = 0.0
        self._arrived.set()

    def _take_visible(self, max_messages: int) -> list[QueueMessage]:
        now = self._clock()
        taken = []
        for entry in list(self._entries.values()):
            if len(taken) >= max_messages:
                break
            if entry.visible_at > now:
                continue
            if entry.receive_count >= self.max_receive_count:
                del self._entries[entry.message_id]
                self.dead_letters.append(entry.body)
                logger.warning(
                    "Message moved to dead-letter list",
                    extra={"tenant_code": self._tenant_code, "message_id": entry.message_id},
                )
                continue
            entry.receive_count += 1
            entry.visible_at = now + self.visibility_timeout
            entry.receipt_handle = f"{entry.message_id}:{next(self._handles)}"
            taken.append(
                QueueMessage(
                    message_id=entry.message_id,
                    body=entry.body,
                    receipt_handle=entry.receipt_handle,
                    receive_count=entry.receive_count,
                    tenant_code=self._tenant_code,
                )
            )
        return taken
