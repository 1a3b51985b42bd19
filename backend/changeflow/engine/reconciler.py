"""
Trigger reconciler: the idempotency gate in front of every handler.

For one (tenant, object) pair it checks whether the tenant's trigger
object still exists. Absent means an earlier delivery already finished
this tenant's work, so the event is a no-op. Present means work is owed,
and the authoritative object is loaded from the archive. The trigger's
own content is never read.

Invariants:
    - reconcile() is read-only; retrying it has no side effects
    - Both the probe and the archive load are retryable on failure
    - delete_trigger() never raises; a failed delete after a durable
      archive update is logged and counted as success

How to change safely:
    - Do not replace the existence probe with sequence numbers; queue
      redelivery can reorder events arbitrarily
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from enum import Enum

from ..errors import ChangeflowError
from ..keys import KeyLayout
from ..retry import with_timeout
from ..store.archive import ArchiveRepository, ArchiveSnapshot
from ..store.base import ObjectStore

logger = logging.getLogger(__name__)


class ReconcileAction(str, Enum):
    SKIP = "skip"
    PROCEED = "proceed"


@dataclass
class ReconcileResult:
    """``snapshot`` is set exactly when the action is PROCEED."""

    action: ReconcileAction
    snapshot: ArchiveSnapshot | None = None


class TriggerReconciler:
    """Existence-gated loader of archive objects."""

    def __init__(
        self,
        store: ObjectStore,
        archive: ArchiveRepository,
        layout: KeyLayout,
        call_timeout: float = 10.0,
    ) -> None:
        self.store = store
        self.archive = archive
        self.layout = layout
        self.call_timeout = call_timeout

    async def reconcile(self, tenant_code: str, object_id: str) -> ReconcileResult:
        trigger_key = self.layout.trigger_key(tenant_code, object_id)
        exists = await with_timeout(
            self.store.exists(trigger_key), self.call_timeout, "trigger existence check"
        )
        if not exists:
            logger.info(
                "Trigger already consumed, skipping",
                extra={"tenant_code": tenant_code, "object_id": object_id},
            )
            return ReconcileResult(ReconcileAction.SKIP)

        snapshot = await with_timeout(
            self.archive.load(object_id), self.call_timeout, "archive load"
        )
        return ReconcileResult(ReconcileAction.PROCEED, snapshot)

    async def delete_trigger(self, tenant_code: str, object_id: str) -> bool:
        """Delete the tenant's trigger. Returns False (and logs) on failure."""
        trigger_key = self.layout.trigger_key(tenant_code, object_id)
        try:
            await with_timeout(self.store.delete(trigger_key), self.call_timeout, "trigger delete")
        except ChangeflowError as e:
            logger.warning(
                f"Failed to delete trigger after successful update: {e}",
                extra={"tenant_code": tenant_code, "object_id": object_id, "key": trigger_key},
            )
            return False
        logger.debug("Trigger deleted", extra={"tenant_code": tenant_code, "object_id": object_id})
        return True
