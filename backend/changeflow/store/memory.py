"""
In-memory object store for tests and local runs.

Behaves like an S3 bucket with event notifications:
- etags change on every write and conditional writes honour them
- writes and deletes under a subscribed prefix emit S3-style event
  documents to the subscribed queue, stamped with the writer identity
- failures can be injected per operation to exercise retry paths

Invariants:
    - All data is lost on process exit
    - Views created with as_principal() share storage with their parent

How to change safely:
    - This is test-only code, changes don't affect production
    - Keep behaviour compatible with the ObjectStore protocol
"""

from __future__ import annotations

import asyncio
import hashlib
import json
import logging
from collections import Counter, defaultdict
from dataclasses import dataclass, field
from typing import Any, Protocol

from ..events.notification import build_s3_event
from .base import ObjectNotFoundError, PreconditionFailedError, StoredObject

logger = logging.getLogger(__name__)


class _EventSink(Protocol):
    async def send(self, body: str) -> None:
        ...


@dataclass
class _BucketState:
    objects: dict[str, StoredObject] = field(default_factory=dict)
    subscriptions: list[tuple[str, _EventSink]] = field(default_factory=list)
    failures: dict[str, list[Exception]] = field(default_factory=lambda: defaultdict(list))
    operations: Counter = field(default_factory=Counter)
    lock: asyncio.Lock = field(default_factory=asyncio.Lock)
    revision: int = 0


class InMemoryObjectStore:
    """In-memory implementation of ObjectStore.

    Example:
        >>> store = InMemoryObjectStore(bucket="changes")
        >>> store.subscribe("customers/acme/", queue)
        >>> portal = store.as_principal("arn:aws:iam::111122223333:role/portal")
        >>> await portal.put("customers/acme/CHG-1.json", b"{}")
    """

    def __init__(
        self,
        bucket: str = "test-bucket",
        principal_arn: str | None = None,
        principal_id: str | None = None,
        _state: _BucketState | None = None,
    ) -> None:
        self.bucket = bucket
        self.principal_arn = principal_arn
        self.principal_id = principal_id
        self._state = _state or _BucketState()
        self._connected = False

    def as_principal(self, principal_arn: str | None, principal_id: str | None = None) -> InMemoryObjectStore:
        """Return a view of the same bucket that writes as another identity."""
        view = InMemoryObjectStore(self.bucket, principal_arn, principal_id, _state=self._state)
        view._connected = self._connected
        return view

    async def connect(self) -> None:
        self._connected = True

    async def close(self) -> None:
        self._connected = False

    @property
    def is_connected(self) -> bool:
        return self._connected

    async def exists(self, key: str) -> bool:
        self._before("exists")
        return key in self._state.objects

    async def get(self, key: str) -> StoredObject:
        self._before("get")
        stored = self._state.objects.get(key)
        if stored is None:
            raise ObjectNotFoundError(f"No such key: {key}", key=key)
        return stored

    async def put(
        self,
        key: str,
        body: bytes,
        if_match: str | None = None,
        content_type: str = "application/json",
    ) -> str:
        self._before("put")
        async with self._state.lock:
            current = self._state.objects.get(key)
            if if_match is not None and (current is None or current.etag != if_match):
                raise PreconditionFailedError(f"Precondition failed for {key}", key=key)
            self._state.revision += 1
            digest = hashlib.md5(body + str(self._state.revision).encode()).hexdigest()
            etag = f'"{digest}"'
            self._state.objects[key] = StoredObject(key=key, body=body, etag=etag)
        await self._emit(key, "ObjectCreated:Put")
        return etag

    async def delete(self, key: str) -> None:
        self._before("delete")
        async with self._state.lock:
            existed = self._state.objects.pop(key, None) is not None
        if existed:
            await self._emit(key, "ObjectRemoved:Delete")

    # Testing helpers

    def subscribe(self, prefix: str, sink: _EventSink) -> None:
        """Deliver events for keys under ``prefix`` to ``sink``."""
        self._state.subscriptions.append((prefix, sink))

    def fail_next(self, operation: str, error: Exception, times: int = 1) -> None:
        """Make the next ``times`` calls of ``operation`` raise ``error``."""
        self._state.failures[operation].extend([error] * times)

    def operation_count(self, operation: str) -> int:
        return self._state.operations[operation]

    def keys(self, prefix: str = "") -> list[str]:
        return sorted(k for k in self._state.objects if k.startswith(prefix))

    def read_json(self, key: str) -> Any:
        return json.loads(self._state.objects[key].body)

    def put_json_nowait(self, key: str, data: Any) -> None:
        """Seed an object without emitting a notification."""
        body = json.dumps(data).encode("utf-8")
        self._state.revision += 1
        etag = f'"{hashlib.md5(body + str(self._state.revision).encode()).hexdigest()}"'
        self._state.objects[key] = StoredObject(key=key, body=body, etag=etag)

    def _before(self, operation: str) -> None:
        self._state.operations[operation] += 1
        pending = self._state.failures.get(operation)
        if pending:
            raise pending.pop(0)

    async def _emit(self, key: str, event_name: str) -> None:
        for prefix, sink in self._state.subscriptions:
            if key.startswith(prefix):
                event = build_s3_event(
                    self.bucket,
                    key,
                    event_name=event_name,
                    principal_arn=self.principal_arn,
                    principal_id=self.principal_id,
                )
                await sink.send(json.dumps(event))
                logger.debug("Emitted store event", extra={"key": key, "event_name": event_name})
