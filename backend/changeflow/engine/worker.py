"""
Tenant worker: consumes one tenant's queue and applies the ack policy.

    processed / skipped / discarded / test event -> ack
    retryable error                             -> release with backoff
    fatal error                                 -> leave unacked (DLQ)

Each tenant gets its own worker, so a slow or failing tenant never
delays another. Messages of one tenant are handled one at a time.

Invariants:
    - A message is acknowledged only after its work is durable
    - Queue failures never stop the loop; it backs off and polls again

How to change safely:
    - Concurrency inside a tenant would let two deliveries for the same
      object race past the trigger gate; partition by object id first
"""

from __future__ import annotations

import asyncio
import logging
from typing import Any

from ..config import QueueConfig
from ..queue.base import QueueError, QueueMessage, TenantQueue
from ..retry import backoff_delay
from .processor import ProcessResult, TenantProcessor

logger = logging.getLogger(__name__)


class TenantWorker:
    """Long-running consumer of one tenant queue.

    Example:
        >>> worker = TenantWorker(queue, processor, QueueConfig())
        >>> task = asyncio.create_task(worker.start())
        >>> ...
        >>> await worker.stop()
    """

    def __init__(
        self,
        queue: TenantQueue,
        processor: TenantProcessor,
        config: QueueConfig | None = None,
        retry_base_delay: float = 1.0,
        retry_max_delay: float = 30.0,
    ) -> None:
        self.queue = queue
        self.processor = processor
        self.config = config or QueueConfig()
        self.retry_base_delay = retry_base_delay
        self.retry_max_delay = retry_max_delay
        self._running = False
        self._poll_failures = 0

    @property
    def tenant_code(self) -> str:
        return self.queue.tenant_code

    async def start(self) -> None:
        """Run the receive loop until stop() is called."""
        if self._running:
            logger.warning("Worker already running", extra={"tenant_code": self.tenant_code})
            return

        self._running = True
        logger.info("Starting tenant worker", extra={"tenant_code": self.tenant_code})
        try:
            while self._running:
                await self.run_once()
        except asyncio.CancelledError:
            logger.info("Tenant worker cancelled", extra={"tenant_code": self.tenant_code})
        except Exception as e:
            logger.error(f"Tenant worker error: {e}", extra={"tenant_code": self.tenant_code}, exc_info=True)
            raise
        finally:
            self._running = False

    async def stop(self) -> None:
        self._running = False
        logger.info(
            "Stopping tenant worker",
            extra={"tenant_code": self.tenant_code, **self.processor.summary.to_dict()},
        )

    async def run_once(self, wait_seconds: float | None = None) -> int:
        """Receive and handle one batch. Returns the number of messages handled."""
        wait = self.config.wait_seconds if wait_seconds is None else wait_seconds
        try:
            messages = await self.queue.receive(self.config.max_messages, wait)
        except QueueError as e:
            self._poll_failures += 1
            delay = backoff_delay(self._poll_failures, self.retry_base_delay, self.retry_max_delay)
            logger.warning(
                f"Queue receive failed, retrying in {delay:.1f}s: {e}",
                extra={"tenant_code": self.tenant_code},
            )
            await asyncio.sleep(delay)
            return 0
        self._poll_failures = 0

        for message in messages:
            await self.handle(message)
        return len(messages)

    async def handle(self, message: QueueMessage) -> ProcessResult:
        result = await self.processor.process_message(message)
        log_extra = {
            "tenant_code": self.tenant_code,
            "message_id": message.message_id,
            "object_id": result.object_id,
            "outcome": result.outcome.value,
            "receive_count": message.receive_count,
        }
        try:
            if result.acknowledge:
                await self.queue.ack(message)
                logger.debug("Message acknowledged", extra=log_extra)
            elif result.retryable:
                delay = backoff_delay(
                    message.receive_count, self.retry_base_delay, self.retry_max_delay
                )
                await self.queue.release(message, delay)
                logger.info(f"Message released for redelivery in {delay:.1f}s", extra=log_extra)
            else:
                logger.error(
                    f"Message left for dead-letter queue: {result.reason}", extra=log_extra
                )
        except QueueError as e:
            # Redelivery after the visibility timeout is safe
            logger.warning(f"Queue update failed: {e}", extra=log_extra)
        return result

    @property
    def stats(self) -> dict[str, Any]:
        """Get worker statistics."""
        return {
            "running": self._running,
            "connected": self.queue.is_connected,
            **self.processor.summary.to_dict(),
        }
