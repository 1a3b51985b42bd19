"""
S3 object store backend.

Uses aiobotocore for async access. Conditional writes use S3's
``If-Match`` support on PutObject, so concurrent tenant workers updating
the same archive object never silently overwrite each other.

Invariants:
    - Every call is bounded by ``call_timeout``
    - 404 on HEAD means "absent", never an error
    - 412 / 409 on a conditional PUT become PreconditionFailedError

How to change safely:
    - Test against MinIO or LocalStack before touching error mapping
    - Keep error translation in _translate() so all calls agree
"""

from __future__ import annotations

import asyncio
import logging
from typing import Any

from aiobotocore.session import get_session
from botocore.config import Config as BotoConfig
from botocore.exceptions import ClientError, EndpointConnectionError

from ..config import S3Config
from ..errors import RETRYABLE_AWS_CODES, aws_error_code
from .base import (
    ObjectNotFoundError,
    PreconditionFailedError,
    StoreAccessDeniedError,
    StoredObject,
    StoreError,
    StoreTimeoutError,
)

logger = logging.getLogger(__name__)

_NOT_FOUND_CODES = {"404", "NoSuchKey", "NotFound"}
_CONFLICT_CODES = {"412", "PreconditionFailed", "409", "ConditionalRequestConflict"}
_DENIED_CODES = {"403", "AccessDenied", "AllAccessDisabled"}


class S3ObjectStore:
    """S3 implementation of ObjectStore.

    Example:
        >>> store = S3ObjectStore(S3Config(bucket="changes"))
        >>> await store.connect()
        >>> if await store.exists("customers/acme/CHG-1.json"):
        ...     obj = await store.get("archive/CHG-1.json")
    """

    def __init__(self, config: S3Config, call_timeout: float = 10.0) -> None:
        self.config = config
        self.call_timeout = call_timeout
        self._session = None
        self._client_ctx = None
        self._client: Any = None

    async def connect(self) -> None:
        """Create the S3 client."""
        if self._client is not None:
            return
        self._session = get_session()
        client_kwargs: dict[str, Any] = {
            "region_name": self.config.region,
            "config": BotoConfig(
                connect_timeout=self.call_timeout,
                read_timeout=self.call_timeout,
                retries={"max_attempts": 3, "mode": "standard"},
            ),
        }
        if self.config.endpoint_url:
            client_kwargs["endpoint_url"] = self.config.endpoint_url
        if self.config.access_key_id:
            client_kwargs["aws_access_key_id"] = self.config.access_key_id
            client_kwargs["aws_secret_access_key"] = self.config.secret_access_key

        self._client_ctx = self._session.create_client("s3", **client_kwargs)
        self._client = await self._client_ctx.__aenter__()
        logger.info(
            "Connected to S3",
            extra={
                "bucket": self.config.bucket,
                "region": self.config.region,
                "endpoint": self.config.endpoint_url or "AWS",
            },
        )

    async def close(self) -> None:
        if self._client_ctx is not None:
            await self._client_ctx.__aexit__(None, None, None)
        self._client_ctx = None
        self._client = None

    @property
    def is_connected(self) -> bool:
        return self._client is not None

    async def exists(self, key: str) -> bool:
        try:
            await self._call("head_object", key, Bucket=self.config.bucket, Key=key)
        except ObjectNotFoundError:
            return False
        return True

    async def get(self, key: str) -> StoredObject:
        response = await self._call("get_object", key, Bucket=self.config.bucket, Key=key)
        try:
            async with response["Body"] as stream:
                body = await asyncio.wait_for(stream.read(), timeout=self.call_timeout)
        except asyncio.TimeoutError as e:
            raise StoreTimeoutError(f"Timed out reading {key}", key=key) from e
        return StoredObject(key=key, body=body, etag=response.get("ETag", ""))

    async def put(
        self,
        key: str,
        body: bytes,
        if_match: str | None = None,
        content_type: str = "application/json",
    ) -> str:
        params: dict[str, Any] = {
            "Bucket": self.config.bucket,
            "Key": key,
            "Body": body,
            "ContentType": content_type,
        }
        if if_match is not None:
            params["IfMatch"] = if_match
        response = await self._call("put_object", key, **params)
        return response.get("ETag", "")

    async def delete(self, key: str) -> None:
        await self._call("delete_object", key, Bucket=self.config.bucket, Key=key)

    async def _call(self, operation: str, key: str, **params: Any) -> Any:
        if self._client is None:
            raise StoreError("S3 store is not connected", key=key)
        method = getattr(self._client, operation)
        try:
            return await asyncio.wait_for(method(**params), timeout=self.call_timeout)
        except asyncio.TimeoutError as e:
            raise StoreTimeoutError(f"S3 {operation} timed out for {key}", key=key) from e
        except EndpointConnectionError as e:
            raise StoreError(f"S3 endpoint unreachable: {e}", key=key) from e
        except ClientError as e:
            raise _translate(e, operation, key) from e


def _translate(error: ClientError, operation: str, key: str) -> StoreError:
    code = aws_error_code(error)
    status = str(error.response.get("ResponseMetadata", {}).get("HTTPStatusCode", ""))
    if code in _NOT_FOUND_CODES or status == "404":
        return ObjectNotFoundError(f"No such key: {key}", key=key)
    if code in _CONFLICT_CODES or status in ("409", "412"):
        return PreconditionFailedError(f"Conditional {operation} failed for {key}", key=key)
    if code in _DENIED_CODES or status == "403":
        return StoreAccessDeniedError(f"Access denied on {operation} {key}", key=key)
    if code in RETRYABLE_AWS_CODES or status.startswith("5"):
        return StoreError(f"S3 {operation} failed for {key}: {code}", key=key)
    failure = StoreError(f"S3 {operation} failed for {key}: {code or error}", key=key)
    failure.retryable = False
    return failure
