"""
Tenant processor: the per-message reconciliation pipeline.

For each trigger notification in a queue message:

    1. Origin filter (pure, before any I/O): discard self-generated events,
       including ones on keys that are not trigger keys
    2. Tenant isolation: the key must name this processor's tenant
    3. Reconcile: trigger absent -> skip; present -> load archive
    4. Status gate: tenant already processed the current status -> skip
    5. Dispatch the status handler
    6. Append a ``processed`` entry and write the archive (If-Match)
    7. Delete the trigger

The archive write is the commit point. Anything failing before it
leaves the trigger in place, so redelivery repeats the work; anything
failing after it is absorbed by the idempotency gates.

If a user transition lands between load and write, the side effects
are still written but the ``processed`` entry is not, and the trigger
is kept; ObjectSupersededError sends the message back for the new
status.

Invariants:
    - A processor only ever handles its own tenant's events
    - Fatal errors are never retried; retryable errors never acked
    - The trigger is only deleted after a durable archive update

How to change safely:
    - Keep the origin filter first; it must not depend on any I/O
    - New outcomes must say whether they acknowledge the message
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from enum import Enum

from ..errors import (
    ChangeflowError,
    NotificationFormatError,
    ObjectSupersededError,
    TenantIsolationError,
    classify,
)
from ..events.notification import RejectedRecord, TriggerNotification, parse_message
from ..events.origin import EventOriginFilter
from ..keys import KeyLayout
from ..model.objects import DomainObject
from ..model.types import SYSTEM_ACTOR, ModificationEntry, ModificationType
from ..queue.base import QueueMessage
from ..store.archive import ArchiveRepository
from ..tenants import TenantContext
from .dispatcher import ArchiveChanges, StatusDispatcher
from .reconciler import TriggerReconciler
from .summary import ExecutionSummary

logger = logging.getLogger(__name__)


class Outcome(str, Enum):
    PROCESSED = "processed"
    SKIPPED = "skipped"
    DISCARDED = "discarded"
    TEST_EVENT = "test_event"
    RETRY = "retry"
    FATAL = "fatal"


_SEVERITY = {
    Outcome.RETRY: 5,
    Outcome.FATAL: 4,
    Outcome.PROCESSED: 3,
    Outcome.SKIPPED: 2,
    Outcome.DISCARDED: 1,
    Outcome.TEST_EVENT: 0,
}


@dataclass
class ProcessResult:
    """Outcome of processing one notification or message.

    Attributes:
        outcome: What happened
        object_id: Object concerned, when known
        reason: Short human-readable explanation
        error: The error, for RETRY and FATAL
    """

    outcome: Outcome
    object_id: str | None = None
    reason: str = ""
    error: BaseException | None = None

    @property
    def acknowledge(self) -> bool:
        return self.outcome not in (Outcome.RETRY, Outcome.FATAL)

    @property
    def retryable(self) -> bool:
        return self.outcome == Outcome.RETRY


class TenantProcessor:
    """Runs the reconciliation pipeline for one tenant.

    Thread safety:
        Not safe for concurrent calls on the same object; the worker
        feeds it one message at a time.
    """

    def __init__(
        self,
        tenant: TenantContext,
        origin_filter: EventOriginFilter,
        reconciler: TriggerReconciler,
        dispatcher: StatusDispatcher,
        archive: ArchiveRepository,
        layout: KeyLayout,
        actor_id: str = SYSTEM_ACTOR,
        summary: ExecutionSummary | None = None,
    ) -> None:
        self.tenant = tenant
        self.origin_filter = origin_filter
        self.reconciler = reconciler
        self.dispatcher = dispatcher
        self.archive = archive
        self.layout = layout
        self.actor_id = actor_id
        self.summary = summary or ExecutionSummary(tenant.tenant_code)

    async def process_message(self, message: QueueMessage) -> ProcessResult:
        """Process every notification in a queue message.

        A message with several records succeeds only if all of them do;
        the most severe outcome wins.
        """
        self.summary.messages += 1
        try:
            parsed = parse_message(message.body, self.layout)
        except NotificationFormatError as e:
            logger.error(
                f"Unparseable queue message: {e}",
                extra={"tenant_code": self.tenant.tenant_code, "message_id": message.message_id},
            )
            self.summary.fatal_errors += 1
            return ProcessResult(Outcome.FATAL, reason="unparseable message", error=e)

        if parsed.test_event:
            logger.info(
                "Store test event, acknowledging",
                extra={"tenant_code": self.tenant.tenant_code, "message_id": message.message_id},
            )
            self.summary.test_events += 1
            return ProcessResult(Outcome.TEST_EVENT, reason="test event")

        results = [self._process_rejected(r) for r in parsed.rejected]
        results += [await self.process_notification(n) for n in parsed.notifications]
        return max(results, key=lambda r: _SEVERITY[r.outcome])

    def _process_rejected(self, record: RejectedRecord) -> ProcessResult:
        """Handle a record whose key names no trigger.

        The engine's own writes anywhere in the bucket are discarded;
        anything else under a foreign key is fatal.
        """
        log_extra = {"tenant_code": self.tenant.tenant_code, "key": record.key}
        decision = self.origin_filter.decide(record.writer)
        if decision.discard:
            logger.info(f"Discarding event: {decision.reason}", extra=log_extra)
            result = ProcessResult(Outcome.DISCARDED, reason=decision.reason)
        elif not record.is_object_created:
            logger.debug(f"Ignoring {record.event_name} event", extra=log_extra)
            result = ProcessResult(Outcome.DISCARDED, reason=f"{record.event_name} event")
        else:
            error = NotificationFormatError(record.reason)
            logger.error(f"Event does not reference a trigger: {error}", extra=log_extra)
            result = ProcessResult(Outcome.FATAL, reason="not a trigger key", error=error)
        self._count(result)
        return result

    async def process_notification(self, notification: TriggerNotification) -> ProcessResult:
        """Process one trigger notification and record its outcome."""
        result = await self._process_notification(notification)
        self._count(result)
        return result

    async def _process_notification(self, notification: TriggerNotification) -> ProcessResult:
        object_id = notification.object_id
        log_extra = {"tenant_code": notification.tenant_code, "object_id": object_id}

        decision = self.origin_filter.decide(notification.writer)
        if decision.discard:
            logger.info(f"Discarding event: {decision.reason}", extra=log_extra)
            return ProcessResult(Outcome.DISCARDED, object_id, decision.reason)

        if not notification.is_object_created:
            logger.debug(f"Ignoring {notification.event_name} event", extra=log_extra)
            return ProcessResult(Outcome.DISCARDED, object_id, f"{notification.event_name} event")

        try:
            if notification.tenant_code != self.tenant.tenant_code:
                raise TenantIsolationError(self.tenant.tenant_code, notification.tenant_code)
            return await self.reconcile_object(object_id)
        except Exception as e:
            return self._failure(e, object_id)

    async def replay(self, object_id: str) -> ProcessResult:
        """Run the pipeline for ``object_id`` as if its trigger event had arrived."""
        try:
            result = await self.reconcile_object(object_id)
        except Exception as e:
            result = self._failure(e, object_id)
        self._count(result)
        return result

    async def reconcile_object(self, object_id: str) -> ProcessResult:
        """Bring this tenant's view of ``object_id`` up to date.

        Safe to call any number of times; also used for manual replays.
        """
        tenant_code = self.tenant.tenant_code
        log_extra = {"tenant_code": tenant_code, "object_id": object_id}

        reconciled = await self.reconciler.reconcile(tenant_code, object_id)
        snapshot = reconciled.snapshot
        if snapshot is None:
            return ProcessResult(Outcome.SKIPPED, object_id, "trigger already consumed")
        obj = snapshot.obj

        if obj.customers and tenant_code not in obj.customers:
            logger.warning("Tenant is not listed in object customers", extra=log_extra)

        if obj.modifications.processed_since_last_transition(tenant_code):
            logger.info(
                f"Status {obj.status_value!r} already processed for tenant, cleaning up trigger",
                extra=log_extra,
            )
            if not await self.reconciler.delete_trigger(tenant_code, object_id):
                self.summary.trigger_delete_failures += 1
            return ProcessResult(Outcome.SKIPPED, object_id, "already processed")

        changes = ArchiveChanges()
        handled_status = obj.status_value
        transitions = obj.modifications.transition_count()

        def superseded(current: DomainObject) -> bool:
            return (
                current.status_value != handled_status
                or current.modifications.transition_count() != transitions
            )

        def replay(current: DomainObject) -> None:
            changes.apply_to(current, mark_processed=not superseded(current))

        dispatched = await self.dispatcher.dispatch(obj, self.tenant, changes)

        if dispatched.handled:
            changes.record(
                obj,
                ModificationEntry.now(self.actor_id, ModificationType.PROCESSED, tenant_code=tenant_code),
            )
            written = await self.archive.update(snapshot, replay)
            if written.conflicts:
                self.summary.archive_conflicts += written.conflicts
                logger.info(
                    "Archive updated after concurrent modification",
                    extra={**log_extra, "conflicts": written.conflicts},
                )
            if superseded(written.obj):
                # The new status re-created the trigger; keep it for redelivery
                raise ObjectSupersededError(object_id, handled_status, written.obj.status_value)

        if not await self.reconciler.delete_trigger(tenant_code, object_id):
            self.summary.trigger_delete_failures += 1

        logger.info(
            "Object reconciled",
            extra={
                **log_extra,
                "status": dispatched.status.value,
                "handled": dispatched.handled,
                "meeting_scheduled": dispatched.meeting_scheduled,
                "meeting_cancelled": dispatched.meeting_cancelled,
                "survey_created": dispatched.survey_created,
                "warnings": dispatched.warnings,
            },
        )
        if not dispatched.handled:
            return ProcessResult(Outcome.SKIPPED, object_id, f"no handler for {obj.status_value!r}")
        return ProcessResult(Outcome.PROCESSED, object_id, dispatched.status.value)

    def _failure(self, error: Exception, object_id: str) -> ProcessResult:
        log_extra = {"tenant_code": self.tenant.tenant_code, "object_id": object_id}
        if isinstance(error, ChangeflowError):
            log_extra["error_code"] = error.code
        if classify(error):
            logger.warning(f"Retryable error, leaving for redelivery: {error}", extra=log_extra)
            return ProcessResult(Outcome.RETRY, object_id, "retryable error", error)
        if isinstance(error, ChangeflowError):
            logger.error(f"Fatal error, leaving for dead-letter queue: {error}", extra=log_extra)
        else:
            logger.error(f"Unexpected error processing object: {error}", extra=log_extra, exc_info=True)
        return ProcessResult(Outcome.FATAL, object_id, "fatal error", error)

    def _count(self, result: ProcessResult) -> None:
        summary = self.summary
        if result.outcome == Outcome.PROCESSED:
            summary.processed += 1
        elif result.outcome == Outcome.SKIPPED:
            summary.skipped += 1
        elif result.outcome == Outcome.DISCARDED:
            summary.discarded += 1
        elif result.outcome == Outcome.RETRY:
            summary.retryable_errors += 1
        elif result.outcome == Outcome.FATAL:
            summary.fatal_errors += 1
