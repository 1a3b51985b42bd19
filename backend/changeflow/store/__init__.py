"""
Object store backends and the archive repository.

Invariants:
    - The archive key is the only place business content is read from
    - Trigger objects are probed and deleted, never read

How to change safely:
    - New backends must implement ObjectStore and map errors to StoreError
"""

from .archive import ArchiveRepository, ArchiveSnapshot
from .base import (
    ObjectNotFoundError,
    ObjectStore,
    PreconditionFailedError,
    StoreAccessDeniedError,
    StoredObject,
    StoreError,
    StoreTimeoutError,
    create_object_store,
)
from .memory import InMemoryObjectStore
from .s3 import S3ObjectStore

__all__ = [
    "ArchiveRepository",
    "ArchiveSnapshot",
    "InMemoryObjectStore",
    "ObjectNotFoundError",
    "ObjectStore",
    "PreconditionFailedError",
    "S3ObjectStore",
    "StoreAccessDeniedError",
    "StoreError",
    "StoreTimeoutError",
    "StoredObject",
    "create_object_store",
]
