"""
SQS tenant queue backend.

Uses aiobotocore. Each tenant worker owns one SqsTenantQueue bound to
that tenant's queue URL; no client is shared between tenants.

Invariants:
    - Receive calls are bounded by wait_seconds + call_timeout
    - ApproximateReceiveCount feeds QueueMessage.receive_count

How to change safely:
    - Keep VisibilityTimeout below the queue's redrive expectations
    - Test release() delays against the queue's maximum (12 hours)
"""

from __future__ import annotations

import asyncio
import logging
from typing import Any

from aiobotocore.session import get_session
from botocore.config import Config as BotoConfig
from botocore.exceptions import ClientError, EndpointConnectionError

from ..config import QueueConfig
from ..errors import aws_error_code
from .base import QueueError, QueueMessage, QueueTimeoutError

logger = logging.getLogger(__name__)

MAX_VISIBILITY_SECONDS = 43200


class SqsTenantQueue:
    """SQS implementation of TenantQueue."""

    def __init__(
        self,
        tenant_code: str,
        queue_url: str,
        region: str,
        config: QueueConfig,
        call_timeout: float = 10.0,
    ) -> None:
        self._tenant_code = tenant_code
        self.queue_url = queue_url
        self.region = region
        self.config = config
        self.call_timeout = call_timeout
        self._session = None
        self._client_ctx = None
        self._client: Any = None

    @property
    def tenant_code(self) -> str:
        return self._tenant_code

    async def connect(self) -> None:
        if self._client is not None:
            return
        self._session = get_session()
        client_kwargs: dict[str, Any] = {
            "region_name": self.region,
            "config": BotoConfig(
                connect_timeout=self.call_timeout,
                read_timeout=self.config.wait_seconds + self.call_timeout,
            ),
        }
        if self.config.endpoint_url:
            client_kwargs["endpoint_url"] = self.config.endpoint_url
        self._client_ctx = self._session.create_client("sqs", **client_kwargs)
        self._client = await self._client_ctx.__aenter__()
        logger.info(
            "Connected to tenant queue",
            extra={"tenant_code": self._tenant_code, "queue_url": self.queue_url},
        )

    async def close(self) -> None:
        if self._client_ctx is not None:
            await self._client_ctx.__aexit__(None, None, None)
        self._client_ctx = None
        self._client = None

    @property
    def is_connected(self) -> bool:
        return self._client is not None

    async def receive(self, max_messages: int, wait_seconds: float) -> list[QueueMessage]:
        response = await self._call(
            "receive_message",
            wait_seconds + self.call_timeout,
            QueueUrl=self.queue_url,
            MaxNumberOfMessages=max_messages,
            WaitTimeSeconds=int(wait_seconds),
            VisibilityTimeout=self.config.visibility_timeout,
            AttributeNames=["ApproximateReceiveCount"],
        )
        messages = []
        for raw in response.get("Messages", []):
            attributes = raw.get("Attributes", {})
            messages.append(
                QueueMessage(
                    message_id=raw["MessageId"],
                    body=raw.get("Body", ""),
                    receipt_handle=raw["ReceiptHandle"],
                    receive_count=int(attributes.get("ApproximateReceiveCount", "1")),
                    tenant_code=self._tenant_code,
                )
            )
        return messages

    async def ack(self, message: QueueMessage) -> None:
        await self._call(
            "delete_message",
            self.call_timeout,
            QueueUrl=self.queue_url,
            ReceiptHandle=message.receipt_handle,
        )

    async def release(self, message: QueueMessage, delay_seconds: float) -> None:
        await self._call(
            "change_message_visibility",
            self.call_timeout,
            QueueUrl=self.queue_url,
            ReceiptHandle=message.receipt_handle,
            VisibilityTimeout=min(MAX_VISIBILITY_SECONDS, max(0, int(delay_seconds))),
        )

    async def _call(self, operation: str, timeout: float, **params: Any) -> Any:
        if self._client is None:
            raise QueueError("Tenant queue is not connected", queue=self.queue_url)
        try:
            return await asyncio.wait_for(getattr(self._client, operation)(**params), timeout=timeout)
        except asyncio.TimeoutError as e:
            raise QueueTimeoutError(f"SQS {operation} timed out", queue=self.queue_url) from e
        except EndpointConnectionError as e:
            raise QueueError(f"SQS endpoint unreachable: {e}", queue=self.queue_url) from e
        except ClientError as e:
            raise QueueError(
                f"SQS {operation} failed: {aws_error_code(e) or e}", queue=self.queue_url
            ) from e
