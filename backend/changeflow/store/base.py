"""
Object store abstraction used for both archive objects and triggers.

The engine needs only four primitives: a cheap existence probe, a read
that returns the entity tag, a conditional write, and a delete. Any
key/value store offering those can back the engine.

Invariants:
    - exists() is a metadata probe, never a full read
    - put(if_match=etag) fails with PreconditionFailedError when the
      stored object changed since ``etag`` was read
    - delete() of a missing key succeeds

How to change safely:
    - New backends must implement the ObjectStore protocol
    - Map backend errors onto the StoreError hierarchy so the worker
      can tell retryable from fatal failures
"""

from __future__ import annotations

import logging
from abc import abstractmethod
from dataclasses import dataclass
from typing import TYPE_CHECKING, Protocol, runtime_checkable

from ..errors import TransientError

if TYPE_CHECKING:
    from ..config import S3Config

logger = logging.getLogger(__name__)


class StoreError(TransientError):
    """Base exception for object store operations."""

    def __init__(self, message: str, key: str | None = None) -> None:
        super().__init__(message, code="STORE_ERROR", details={"key": key})
        self.key = key


class StoreTimeoutError(StoreError):
    """Store operation timed out."""
    pass


class ObjectNotFoundError(StoreError):
    """The requested key does not exist.

    Retryable: a trigger can be observed before its archive write lands.
    """
    pass


class PreconditionFailedError(StoreError):
    """Conditional write lost a race with another writer."""
    pass


class StoreAccessDeniedError(StoreError):
    """Credentials do not allow the operation."""

    retryable = False


@dataclass(frozen=True)
class StoredObject:
    """An object body with its entity tag.

    Attributes:
        key: Object key
        body: Raw bytes
        etag: Opaque version tag used for conditional writes
    """

    key: str
    body: bytes
    etag: str


@runtime_checkable
class ObjectStore(Protocol):
    """Protocol for object store backends."""

    @abstractmethod
    async def connect(self) -> None:
        """Open the backend client."""
        ...

    @abstractmethod
    async def close(self) -> None:
        """Release backend resources."""
        ...

    @abstractmethod
    async def exists(self, key: str) -> bool:
        """Return True if ``key`` exists (metadata probe only)."""
        ...

    @abstractmethod
    async def get(self, key: str) -> StoredObject:
        """Read an object.

        Raises:
            ObjectNotFoundError: If the key does not exist
        """
        ...

    @abstractmethod
    async def put(
        self,
        key: str,
        body: bytes,
        if_match: str | None = None,
        content_type: str = "application/json",
    ) -> str:
        """Write an object, optionally only if its etag still matches.

        Returns:
            The new etag

        Raises:
            PreconditionFailedError: If ``if_match`` no longer matches
        """
        ...

    @abstractmethod
    async def delete(self, key: str) -> None:
        """Delete an object; missing keys are not an error."""
        ...

    @property
    @abstractmethod
    def is_connected(self) -> bool:
        ...


def create_object_store(config: "S3Config", call_timeout: float = 10.0) -> ObjectStore:
    """Create the production object store from configuration."""
    from .s3 import S3ObjectStore

    return S3ObjectStore(config, call_timeout=call_timeout)
