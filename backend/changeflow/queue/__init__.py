"""
Per-tenant queue backends.

Invariants:
    - One queue per tenant; workers never share a queue client
"""

from .base import QueueError, QueueMessage, QueueTimeoutError, TenantQueue
from .memory import InMemoryTenantQueue
from .sqs import SqsTenantQueue

__all__ = [
    "InMemoryTenantQueue",
    "QueueError",
    "QueueMessage",
    "QueueTimeoutError",
    "SqsTenantQueue",
    "TenantQueue",
]
