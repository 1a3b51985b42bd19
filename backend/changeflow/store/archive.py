"""
Archive repository: authoritative reads and conflict-safe updates.

The archive object of a domain object can be updated concurrently by
several tenant workers. Updates are optimistic: read with an etag,
apply the engine's changes, write with If-Match. On conflict the fresh
object is reloaded and the same changes are re-applied.

Invariants:
    - Changes are always applied to the object version being written
    - A failed update never leaves a partially written archive
    - Exhausted retries raise ArchiveUpdateError (retryable)

How to change safely:
    - ``apply`` callbacks must only append or set engine-owned fields,
      so replaying them on a fresh copy is always correct
"""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Callable
from dataclasses import dataclass

from ..errors import ArchiveUpdateError, ValidationError
from ..keys import KeyLayout
from ..model.objects import DomainObject, load_object_json
from ..retry import backoff_delay
from .base import ObjectStore, PreconditionFailedError, StoreError

logger = logging.getLogger(__name__)


@dataclass
class ArchiveSnapshot:
    """A loaded archive object and the etag it was read at.

    ``conflicts`` counts the concurrent modifications an update had to
    re-apply its changes over.
    """

    obj: DomainObject
    etag: str
    conflicts: int = 0


class ArchiveRepository:
    """Reads and conditionally rewrites archive objects."""

    def __init__(
        self,
        store: ObjectStore,
        layout: KeyLayout,
        max_attempts: int = 5,
        base_delay: float = 1.0,
        max_delay: float = 30.0,
    ) -> None:
        self.store = store
        self.layout = layout
        self.max_attempts = max_attempts
        self.base_delay = base_delay
        self.max_delay = max_delay
        self.conflicts = 0

    async def load(self, object_id: str) -> ArchiveSnapshot:
        """Load the archive object for ``object_id``.

        Raises:
            ObjectNotFoundError: If no archive object exists (retryable)
            ValidationError: If the stored object is malformed or legacy
        """
        stored = await self.store.get(self.layout.archive_key(object_id))
        try:
            obj = load_object_json(stored.body)
        except ValidationError as e:
            if e.object_id is None:
                e.object_id = object_id
                e.details["object_id"] = object_id
            raise
        if obj.object_id != object_id:
            raise ValidationError(
                f"Archive {object_id} holds object {obj.object_id}",
                object_id=object_id,
                errors=["object id does not match archive key"],
            )
        return ArchiveSnapshot(obj=obj, etag=stored.etag)

    async def update(
        self,
        snapshot: ArchiveSnapshot,
        apply: Callable[[DomainObject], None],
    ) -> ArchiveSnapshot:
        """Write a modified snapshot with optimistic concurrency.

        Args:
            snapshot: The object as loaded and already modified, with the
                etag it was read at
            apply: Replays the same modifications on a reloaded copy after
                a conflict

        Returns:
            The snapshot that was written, with its new etag

        Raises:
            ArchiveUpdateError: If the write failed or kept conflicting
            ValidationError: If a reloaded object no longer validates
        """
        object_id = snapshot.obj.object_id
        key = self.layout.archive_key(object_id)
        current = snapshot
        for attempt in range(1, self.max_attempts + 1):
            try:
                etag = await self.store.put(key, current.obj.to_json(), if_match=current.etag)
            except PreconditionFailedError:
                self.conflicts += 1
                logger.info(
                    "Archive changed concurrently, reloading",
                    extra={"object_id": object_id, "attempt": attempt},
                )
                if attempt == self.max_attempts:
                    break
                await asyncio.sleep(backoff_delay(attempt, self.base_delay, self.max_delay))
                try:
                    current = await self.load(object_id)
                except StoreError as e:
                    raise ArchiveUpdateError(object_id, f"reload failed: {e}") from e
                apply(current.obj)
                continue
            except StoreError as e:
                if not e.retryable:
                    raise
                raise ArchiveUpdateError(object_id, str(e)) from e
            return ArchiveSnapshot(obj=current.obj, etag=etag, conflicts=attempt - 1)

        raise ArchiveUpdateError(
            object_id, f"still conflicting after {self.max_attempts} attempts"
        )
