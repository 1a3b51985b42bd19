"""
Per-tenant queue abstraction.

Each tenant has its own queue with at-least-once delivery: a received
message stays invisible for the visibility timeout and reappears unless
it is acknowledged. After the configured number of receives the queue's
redrive policy moves it to a dead-letter queue.

Invariants:
    - ack() is the only way a message leaves the queue successfully
    - release() never loses a message; it only changes when it reappears
    - receive_count starts at 1 on first delivery

How to change safely:
    - New backends must implement the TenantQueue protocol
    - Never ack inside a backend; acknowledgement is the worker's decision
"""

from __future__ import annotations

import logging
from abc import abstractmethod
from dataclasses import dataclass
from typing import Protocol, runtime_checkable

from ..errors import TransientError

logger = logging.getLogger(__name__)


class QueueError(TransientError):
    """Base exception for queue operations."""

    def __init__(self, message: str, queue: str | None = None) -> None:
        super().__init__(message, code="QUEUE_ERROR", details={"queue": queue})


class QueueTimeoutError(QueueError):
    """Queue operation timed out."""
    pass


@dataclass(frozen=True)
class QueueMessage:
    """A message received from a tenant queue.

    Attributes:
        message_id: Queue-assigned id, stable across redeliveries
        body: Raw message body (an S3 event notification)
        receipt_handle: Handle for ack/release of this delivery
        receive_count: How many times the message has been delivered
        tenant_code: Tenant owning the queue
    """

    message_id: str
    body: str
    receipt_handle: str
    receive_count: int
    tenant_code: str


@runtime_checkable
class TenantQueue(Protocol):
    """Protocol for tenant queue backends."""

    @property
    @abstractmethod
    def tenant_code(self) -> str:
        ...

    @abstractmethod
    async def connect(self) -> None:
        ...

    @abstractmethod
    async def close(self) -> None:
        ...

    @abstractmethod
    async def receive(self, max_messages: int, wait_seconds: float) -> list[QueueMessage]:
        """Receive up to ``max_messages``, long-polling up to ``wait_seconds``."""
        ...

    @abstractmethod
    async def ack(self, message: QueueMessage) -> None:
        """Delete a processed message."""
        ...

    @abstractmethod
    async def release(self, message: QueueMessage, delay_seconds: float) -> None:
        """Make a message visible again after ``delay_seconds``."""
        ...

    @property
    @abstractmethod
    def is_connected(self) -> bool:
        ...
