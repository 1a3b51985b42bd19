"""
Status dispatcher: routes an archive object to its status handler.

Each handler performs the side effects owed for one workflow status
(notifications, meeting scheduling or cancellation, survey creation)
and stages the engine-owned fields it changes in an ArchiveChanges.
The staged changes are applied to the loaded object immediately and
replayed on a reloaded copy if the archive write conflicts.

Invariants:
    - Handlers never write to the store; the processor persists changes
    - A FAILED notification raises NotificationError before anything
      is persisted, so the whole handler runs again on redelivery
    - At most one meeting exists per object, shared by all tenants
    - Meeting and survey failures are logged and never block the
      notification that follows them
    - Draft and unknown statuses are no-ops

How to change safely:
    - New statuses need a WorkflowStatus member and an entry in
      StatusDispatcher._handlers
    - Only stage engine-owned fields in ArchiveChanges; user fields
      must never be overwritten on replay
"""

from __future__ import annotations

import logging
from collections.abc import Awaitable, Callable
from dataclasses import dataclass, field

from ..errors import ChangeflowError, NotificationError
from ..model.objects import DomainObject
from ..model.types import (
    SYSTEM_ACTOR,
    MeetingMetadata,
    ModificationEntry,
    ModificationType,
    WorkflowStatus,
)
from ..retry import with_timeout
from ..tenants import TenantContext
from ..integrations.meetings import MeetingSchedulerAdapter, build_meeting_request
from ..integrations.notifier import NotificationType, Notifier, SendResult
from ..integrations.surveys import SurveyClient, SurveyReference
from .summary import ExecutionSummary

logger = logging.getLogger(__name__)


class ArchiveChanges:
    """Engine-owned changes made while handling one object.

    Every recorded change is applied to the object passed in right away
    and remembered, so apply_to() can replay the same changes on a
    fresh copy of the archive object.
    """

    def __init__(self) -> None:
        self.entries: list[ModificationEntry] = []
        self.meeting: MeetingMetadata | None = None
        self.survey: SurveyReference | None = None

    def record(self, obj: DomainObject, entry: ModificationEntry) -> None:
        obj.modifications.append(entry)
        self.entries.append(entry)

    def set_meeting(self, obj: DomainObject, meeting: MeetingMetadata) -> None:
        self.meeting = meeting
        obj.meeting_metadata = meeting

    def set_survey(self, obj: DomainObject, survey: SurveyReference) -> None:
        self.survey = survey
        obj.survey_id = survey.survey_id
        obj.survey_url = survey.url

    def apply_to(self, obj: DomainObject, mark_processed: bool = True) -> None:
        """Replay the recorded changes on ``obj``.

        With ``mark_processed`` False the ``processed`` entries are left
        out and only the side effects are recorded.
        """
        for entry in self.entries:
            if not mark_processed and entry.modification_type == ModificationType.PROCESSED:
                continue
            obj.modifications.append(entry)
        if self.meeting is not None:
            obj.meeting_metadata = self.meeting
        if self.survey is not None and not obj.survey_url:
            obj.survey_id = self.survey.survey_id
            obj.survey_url = self.survey.url

    def __bool__(self) -> bool:
        return bool(self.entries) or self.meeting is not None or self.survey is not None


@dataclass
class DispatchResult:
    """What a handler did for one (tenant, object).

    Attributes:
        status: Status the object was dispatched on
        handled: False for statuses with nothing to do
        notification: Notification outcome, None when none was sent
        meeting_scheduled: A meeting_scheduled entry was recorded
        meeting_cancelled: A meeting_cancelled entry was recorded
        survey_created: A new survey was created
        warnings: Non-blocking failures
    """

    status: WorkflowStatus
    handled: bool = True
    notification: SendResult | None = None
    meeting_scheduled: bool = False
    meeting_cancelled: bool = False
    survey_created: bool = False
    warnings: list[str] = field(default_factory=list)


Handler = Callable[[DomainObject, TenantContext, ArchiveChanges, DispatchResult], Awaitable[None]]


class StatusDispatcher:
    """Selects and runs the handler for an object's current status.

    Args:
        notifier: Email notifier, None when email is disabled
        meetings: Meeting adapter, None when the calendar is disabled
        surveys: Survey client, None when surveys are disabled
        actor_id: Actor recorded on engine-written entries
        operation_timeout: Time budget for each collaborator operation
        default_meeting_minutes: Meeting length when none is planned
        summary: Counters to update, optional
    """

    def __init__(
        self,
        notifier: Notifier | None,
        meetings: MeetingSchedulerAdapter | None = None,
        surveys: SurveyClient | None = None,
        actor_id: str = SYSTEM_ACTOR,
        operation_timeout: float = 30.0,
        default_meeting_minutes: int = 60,
        summary: ExecutionSummary | None = None,
    ) -> None:
        self.notifier = notifier
        self.meetings = meetings
        self.surveys = surveys
        self.actor_id = actor_id
        self.operation_timeout = operation_timeout
        self.default_meeting_minutes = default_meeting_minutes
        self.summary = summary
        self._handlers: dict[WorkflowStatus, Handler] = {
            WorkflowStatus.SUBMITTED: self._on_submitted,
            WorkflowStatus.APPROVED: self._on_approved,
            WorkflowStatus.CANCELLED: self._on_cancelled,
            WorkflowStatus.COMPLETED: self._on_completed,
        }

    async def dispatch(
        self,
        obj: DomainObject,
        tenant: TenantContext,
        changes: ArchiveChanges,
    ) -> DispatchResult:
        """Run the handler for ``obj.status`` on behalf of ``tenant``.

        Raises:
            NotificationError: If the notification could not be delivered
            ChangeflowError: On other blocking collaborator failures
        """
        status = obj.status
        result = DispatchResult(status=status)
        handler = self._handlers.get(status)
        if handler is None:
            log = logger.warning if status == WorkflowStatus.UNKNOWN else logger.info
            log(
                f"No handler for status {obj.status_value!r}, nothing to do",
                extra={"tenant_code": tenant.tenant_code, "object_id": obj.object_id},
            )
            result.handled = False
            return result

        logger.debug(
            "Dispatching",
            extra={
                "tenant_code": tenant.tenant_code,
                "object_id": obj.object_id,
                "status": status.value,
            },
        )
        await handler(obj, tenant, changes, result)
        return result

    async def _on_submitted(
        self, obj: DomainObject, tenant: TenantContext, changes: ArchiveChanges, result: DispatchResult
    ) -> None:
        result.notification = await self._notify(tenant, NotificationType.APPROVAL_REQUEST, obj)

    async def _on_approved(
        self, obj: DomainObject, tenant: TenantContext, changes: ArchiveChanges, result: DispatchResult
    ) -> None:
        if obj.meeting_requested:
            await self._ensure_meeting(obj, tenant, changes, result)
        result.notification = await self._notify(tenant, NotificationType.APPROVED, obj)

    async def _ensure_meeting(
        self, obj: DomainObject, tenant: TenantContext, changes: ArchiveChanges, result: DispatchResult
    ) -> None:
        existing = obj.modifications.current_meeting()
        if existing is not None:
            # Another tenant already scheduled it
            logger.info(
                "Meeting already scheduled for object",
                extra={
                    "tenant_code": tenant.tenant_code,
                    "object_id": obj.object_id,
                    "meeting_id": existing.meeting_id,
                },
            )
            if obj.meeting_metadata is None:
                obj.meeting_metadata = existing
            return
        if self.meetings is None:
            logger.info(
                "Meeting requested but calendar is disabled",
                extra={"tenant_code": tenant.tenant_code, "object_id": obj.object_id},
            )
            return

        try:
            request = build_meeting_request(obj, tenant, self.default_meeting_minutes)
            meeting = await with_timeout(
                self.meetings.schedule(request), self.operation_timeout, "meeting scheduling"
            )
        except ChangeflowError as e:
            logger.warning(
                f"Meeting scheduling failed, continuing without meeting: {e}",
                extra={"tenant_code": tenant.tenant_code, "object_id": obj.object_id, "error_code": e.code},
            )
            result.warnings.append(f"meeting: {e.message}")
            return

        changes.record(
            obj,
            ModificationEntry.now(
                self.actor_id,
                ModificationType.MEETING_SCHEDULED,
                tenant_code=tenant.tenant_code,
                meeting_metadata=meeting,
            ),
        )
        changes.set_meeting(obj, meeting)
        result.meeting_scheduled = True
        if self.summary is not None:
            self.summary.meetings_scheduled += 1

    async def _on_cancelled(
        self, obj: DomainObject, tenant: TenantContext, changes: ArchiveChanges, result: DispatchResult
    ) -> None:
        log = obj.modifications
        meeting = log.current_meeting()
        if meeting is None and not log.has_meeting_scheduled():
            meeting = obj.meeting_metadata
        known_meeting = meeting is not None or log.has_meeting_scheduled()

        if meeting is not None:
            if self.meetings is None:
                logger.warning(
                    "Object has a meeting but calendar is disabled; meeting left in place",
                    extra={
                        "tenant_code": tenant.tenant_code,
                        "object_id": obj.object_id,
                        "meeting_id": meeting.meeting_id,
                    },
                )
                known_meeting = False
            else:
                await with_timeout(
                    self.meetings.cancel(meeting.meeting_id, obj.object_id),
                    self.operation_timeout,
                    "meeting cancellation",
                )

        if obj.meeting_requested or known_meeting:
            changes.record(
                obj,
                ModificationEntry.now(
                    self.actor_id, ModificationType.MEETING_CANCELLED, tenant_code=tenant.tenant_code
                ),
            )
            result.meeting_cancelled = True
            if self.summary is not None:
                self.summary.meetings_cancelled += 1

        if log.was_approved():
            result.notification = await self._notify(tenant, NotificationType.CANCELLED, obj)
        else:
            logger.info(
                "Object was never approved, no cancellation notice",
                extra={"tenant_code": tenant.tenant_code, "object_id": obj.object_id},
            )

    async def _on_completed(
        self, obj: DomainObject, tenant: TenantContext, changes: ArchiveChanges, result: DispatchResult
    ) -> None:
        if obj.survey_url:
            logger.debug(
                "Survey already exists",
                extra={"tenant_code": tenant.tenant_code, "object_id": obj.object_id},
            )
        elif self.surveys is not None:
            try:
                survey = await with_timeout(
                    self.surveys.create_survey(obj, tenant), self.operation_timeout, "survey creation"
                )
            except ChangeflowError as e:
                logger.warning(
                    f"Survey creation failed, sending completion without survey: {e}",
                    extra={"tenant_code": tenant.tenant_code, "object_id": obj.object_id},
                )
                result.warnings.append(f"survey: {e.message}")
            else:
                changes.set_survey(obj, survey)
                result.survey_created = True
                if self.summary is not None:
                    self.summary.surveys_created += 1
        result.notification = await self._notify(tenant, NotificationType.COMPLETED, obj)

    async def _notify(
        self, tenant: TenantContext, notification_type: NotificationType, obj: DomainObject
    ) -> SendResult | None:
        if self.notifier is None:
            logger.debug(
                "Email disabled, notification not sent",
                extra={"tenant_code": tenant.tenant_code, "object_id": obj.object_id},
            )
            return None
        outcome = await with_timeout(
            self.notifier.send(tenant, notification_type, obj),
            self.operation_timeout,
            f"{notification_type.value} notification",
        )
        if not outcome.ok:
            raise NotificationError(
                f"{notification_type.value} notification for {obj.object_id} failed: {outcome.error}",
                tenant_code=tenant.tenant_code,
            )
        if outcome.no_recipients:
            logger.info(
                "No subscribed recipients, nothing sent",
                extra={
                    "tenant_code": tenant.tenant_code,
                    "object_id": obj.object_id,
                    "notification_type": notification_type.value,
                },
            )
        else:
            logger.info(
                "Notification sent",
                extra={
                    "tenant_code": tenant.tenant_code,
                    "object_id": obj.object_id,
                    "notification_type": notification_type.value,
                    "sent_count": outcome.sent_count,
                },
            )
        if self.summary is not None:
            if outcome.no_recipients:
                self.summary.no_recipients += 1
            else:
                self.summary.emails_sent += outcome.sent_count
        return outcome
