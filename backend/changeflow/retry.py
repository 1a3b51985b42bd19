"""
Backoff and timeout helpers shared by the engine.

Invariants:
    - backoff_delay() never exceeds the cap
    - with_timeout() turns a timeout into a retryable CallTimeoutError
"""

from __future__ import annotations

import asyncio
import random
from collections.abc import Awaitable
from typing import TypeVar

from .errors import CallTimeoutError

T = TypeVar("T")

JITTER_FRACTION = 0.1


def backoff_delay(attempt: int, base: float, cap: float, jitter: bool = True) -> float:
    """Exponential backoff delay in seconds for a 1-based attempt number."""
    attempt = max(1, attempt)
    delay = min(cap, base * (2 ** (attempt - 1)))
    if jitter and delay > 0:
        delay += delay * JITTER_FRACTION * (random.random() * 2 - 1)
    return max(0.0, min(cap, delay))


async def with_timeout(awaitable: Awaitable[T], seconds: float, operation: str) -> T:
    try:
        return await asyncio.wait_for(awaitable, timeout=seconds)
    except asyncio.TimeoutError as e:
        raise CallTimeoutError(operation, seconds) from e
