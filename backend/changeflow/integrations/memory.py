"""
In-memory collaborators for tests and local runs.

Provides a calendar, a recipient directory, a notifier and a survey
client that record what the engine asked of them. Each supports
failure injection through ``fail_next``.

How to change safely:
    - This is test-only code, changes don't affect production
    - Keep each class compatible with its protocol
"""

from __future__ import annotations

import itertools
import logging
from dataclasses import dataclass
from datetime import datetime

from ..model.objects import DomainObject
from ..tenants import TenantContext
from .meetings import CalendarEvent, MeetingNotFoundError, MeetingRequest
from .notifier import NotificationType, RecipientDirectory, SendResult
from .surveys import SurveyReference

logger = logging.getLogger(__name__)


class _FailureQueue:
    def __init__(self) -> None:
        self._failures: list[Exception] = []

    def fail_next(self, error: Exception, times: int = 1) -> None:
        self._failures.extend([error] * times)

    def _maybe_fail(self) -> None:
        if self._failures:
            raise self._failures.pop(0)


class StaticRecipientDirectory:
    """Recipients per (tenant, topic), set up front."""

    def __init__(self, subscriptions: dict[str, dict[str, list[str]]] | None = None) -> None:
        self.subscriptions = subscriptions or {}

    async def subscribed(self, tenant: TenantContext, topic: str) -> list[str]:
        return list(self.subscriptions.get(tenant.tenant_code, {}).get(topic, []))


class InMemoryCalendar(_FailureQueue):
    """Calendar keeping events in a dict."""

    def __init__(self, organizer: str = "organizer@example.com") -> None:
        super().__init__()
        self.organizer = organizer
        self.events: dict[str, CalendarEvent] = {}
        self.create_calls = 0
        self.cancel_calls = 0
        self._ids = itertools.count(1)

    async def find_events(self, subject: str, since: datetime) -> list[CalendarEvent]:
        self._maybe_fail()
        return [e for e in self.events.values() if e.subject == subject and e.start >= since]

    async def create_event(self, request: MeetingRequest, attendees: list[str]) -> CalendarEvent:
        self._maybe_fail()
        self.create_calls += 1
        event_id = f"evt-{next(self._ids)}"
        event = CalendarEvent(
            event_id=event_id,
            subject=request.subject,
            join_url=f"https://meet.example.com/{event_id}",
            start=request.start,
            end=request.end,
            organizer=self.organizer,
            attendees=tuple(attendees),
        )
        self.events[event_id] = event
        return event

    async def cancel_event(self, event_id: str) -> None:
        self._maybe_fail()
        self.cancel_calls += 1
        event = self.events.get(event_id)
        if event is None or event.is_cancelled:
            raise MeetingNotFoundError(event_id)
        self.events[event_id] = CalendarEvent(
            event_id=event.event_id,
            subject=event.subject,
            join_url=event.join_url,
            start=event.start,
            end=event.end,
            organizer=event.organizer,
            attendees=event.attendees,
            is_cancelled=True,
        )


@dataclass(frozen=True)
class SentNotification:
    tenant_code: str
    notification_type: NotificationType
    object_id: str
    recipients: tuple[str, ...]
    survey_url: str | None = None
    meeting_id: str | None = None


class RecordingNotifier(_FailureQueue):
    """Notifier that records one delivery per recipient."""

    def __init__(self, directory: RecipientDirectory) -> None:
        super().__init__()
        self.directory = directory
        self.sent: list[SentNotification] = []

    async def send(
        self,
        tenant: TenantContext,
        notification_type: NotificationType,
        obj: DomainObject,
    ) -> SendResult:
        self._maybe_fail()
        topic = tenant.topic_for(notification_type.value)
        recipients = tenant.filter_recipients(await self.directory.subscribed(tenant, topic))
        if not recipients:
            return SendResult.nobody()
        self.sent.append(
            SentNotification(
                tenant_code=tenant.tenant_code,
                notification_type=notification_type,
                object_id=obj.object_id,
                recipients=tuple(recipients),
                survey_url=obj.survey_url,
                meeting_id=obj.meeting_metadata.meeting_id if obj.meeting_metadata else None,
            )
        )
        return SendResult.sent(len(recipients))

    def of_type(self, notification_type: NotificationType) -> list[SentNotification]:
        return [s for s in self.sent if s.notification_type == notification_type]


class InMemorySurveyClient(_FailureQueue):
    def __init__(self) -> None:
        super().__init__()
        self.created: list[str] = []

    async def create_survey(self, obj: DomainObject, tenant: TenantContext) -> SurveyReference:
        self._maybe_fail()
        self.created.append(obj.object_id)
        survey_id = f"srv-{len(self.created)}"
        return SurveyReference(survey_id=survey_id, url=f"https://forms.example.com/{survey_id}")
