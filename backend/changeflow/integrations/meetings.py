"""
Meeting scheduler adapter: idempotent scheduling on an external calendar.

Redelivered events must never produce a second meeting. Before creating
an event the adapter searches the calendar for one whose subject equals
a deterministic key derived from the object type and title, and reuses
it when found. Cancelling an unknown or already-cancelled meeting is an
already-satisfied postcondition, not an error.

Invariants:
    - schedule() twice for the same object returns the same meeting id
    - cancel() never raises for a missing meeting
    - Attendees are de-duplicated case-insensitively, first spelling wins

How to change safely:
    - Changing subject_key() orphans existing meetings from idempotency
      checks; keep it stable
"""

from __future__ import annotations

import logging
import re
from abc import abstractmethod
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Any, Protocol, runtime_checkable

from ..errors import ChangeflowError, MeetingRequestError
from ..model.objects import DomainObject
from ..model.types import MeetingMetadata, ObjectKind, parse_timestamp
from ..tenants import TenantContext
from .notifier import RecipientDirectory

logger = logging.getLogger(__name__)

CHANGE_SUBJECT_PREFIX = "Change Implementation"


class MeetingNotFoundError(ChangeflowError):
    """The calendar has no event with the given id."""

    def __init__(self, meeting_id: str) -> None:
        super().__init__(f"Meeting not found: {meeting_id}", code="MEETING_NOT_FOUND")
        self.meeting_id = meeting_id


@dataclass(frozen=True)
class CalendarEvent:
    """An event as returned by the calendar API."""

    event_id: str
    subject: str
    join_url: str
    start: datetime
    end: datetime
    organizer: str | None = None
    attendees: tuple[str, ...] = ()
    is_cancelled: bool = False

    def to_metadata(self) -> MeetingMetadata:
        return MeetingMetadata(
            meeting_id=self.event_id,
            join_url=self.join_url,
            start_time=self.start,
            end_time=self.end,
            subject=self.subject,
            organizer=self.organizer,
            attendees=self.attendees,
        )


@dataclass(frozen=True)
class MeetingRequest:
    """What to schedule for one object.

    Attributes:
        object_id: Object the meeting belongs to
        kind: Object variant, part of the idempotency key
        subject: Idempotency key and meeting subject
        start: Meeting start
        end: Meeting end
        tenant: Tenant whose subscribers are invited
        manual_attendees: Explicitly listed attendees
        description: Meeting body text
    """

    object_id: str
    kind: ObjectKind
    subject: str
    start: datetime
    end: datetime
    tenant: TenantContext
    manual_attendees: tuple[str, ...] = ()
    description: str = ""


@runtime_checkable
class CalendarClient(Protocol):
    """Minimal calendar API used by the adapter."""

    @abstractmethod
    async def find_events(self, subject: str, since: datetime) -> list[CalendarEvent]:
        """Return events with this exact subject starting at or after ``since``."""
        ...

    @abstractmethod
    async def create_event(self, request: MeetingRequest, attendees: list[str]) -> CalendarEvent:
        ...

    @abstractmethod
    async def cancel_event(self, event_id: str) -> None:
        """Cancel an event.

        Raises:
            MeetingNotFoundError: If no such event exists
        """
        ...


def subject_key(kind: ObjectKind, title: str) -> str:
    """Deterministic meeting subject for an object."""
    if kind == ObjectKind.CHANGE:
        return f"{CHANGE_SUBJECT_PREFIX}: {title}"
    return title


def merge_attendees(*groups: Any) -> list[str]:
    """Union of address lists, de-duplicated case-insensitively."""
    seen: set[str] = set()
    merged = []
    for group in groups:
        for address in group:
            address = address.strip()
            if not address or address.lower() in seen:
                continue
            seen.add(address.lower())
            merged.append(address)
    return merged


def _manual_attendees(raw: Any) -> tuple[str, ...]:
    if isinstance(raw, str):
        return tuple(a for a in re.split(r"[,;\s]+", raw) if a)
    if isinstance(raw, list):
        return tuple(str(a) for a in raw if a)
    return ()


def build_meeting_request(
    obj: DomainObject,
    tenant: TenantContext,
    default_duration_minutes: int = 60,
) -> MeetingRequest:
    """Derive a meeting request from an object's planning fields.

    The start is ``meetingStartTime`` or, failing that,
    ``implementationStart``. The end is start + ``meetingDuration``
    when a duration is given, else ``implementationEnd``, else start +
    the default duration.

    Raises:
        MeetingRequestError: If no start time can be determined
    """
    content = obj.content
    raw_start = content.get("meetingStartTime") or content.get("implementationStart")
    if not raw_start:
        raise MeetingRequestError("meeting requested but no start time given", obj.object_id)
    try:
        start = parse_timestamp(raw_start)
        raw_end = content.get("implementationEnd") if not content.get("meetingStartTime") else None
        duration = content.get("meetingDuration")
        if duration:
            end = start + timedelta(minutes=int(duration))
        elif raw_end:
            end = parse_timestamp(raw_end)
        else:
            end = start + timedelta(minutes=default_duration_minutes)
    except (TypeError, ValueError) as e:
        raise MeetingRequestError(f"invalid meeting time: {e}", obj.object_id) from e
    if end <= start:
        raise MeetingRequestError("meeting end is not after its start", obj.object_id)

    return MeetingRequest(
        object_id=obj.object_id,
        kind=obj.kind,
        subject=subject_key(obj.kind, obj.title),
        start=start,
        end=end,
        tenant=tenant,
        manual_attendees=_manual_attendees(content.get("attendees")),
        description=str(content.get("description") or content.get("summary") or ""),
    )


@dataclass
class MeetingAdapterStats:
    created: int = 0
    reused: int = 0
    cancelled: int = 0
    already_gone: int = 0


class MeetingSchedulerAdapter:
    """Idempotent wrapper around a CalendarClient."""

    def __init__(
        self,
        calendar: CalendarClient,
        directory: RecipientDirectory | None = None,
        lookback_days: int = 30,
    ) -> None:
        self.calendar = calendar
        self.directory = directory
        self.lookback_days = lookback_days
        self.stats = MeetingAdapterStats()

    async def schedule(self, request: MeetingRequest) -> MeetingMetadata:
        """Schedule a meeting, reusing an existing one with the same subject."""
        since = request.start - timedelta(days=self.lookback_days)
        for event in await self.calendar.find_events(request.subject, since):
            if event.subject == request.subject and not event.is_cancelled:
                self.stats.reused += 1
                logger.info(
                    "Reusing existing meeting",
                    extra={
                        "object_id": request.object_id,
                        "object_kind": request.kind.value,
                        "meeting_id": event.event_id,
                    },
                )
                return event.to_metadata()

        attendees = await self.resolve_attendees(request)
        event = await self.calendar.create_event(request, attendees)
        self.stats.created += 1
        logger.info(
            "Meeting created",
            extra={
                "object_id": request.object_id,
                "object_kind": request.kind.value,
                "tenant_code": request.tenant.tenant_code,
                "meeting_id": event.event_id,
                "attendees": len(attendees),
            },
        )
        return event.to_metadata()

    async def cancel(self, meeting_id: str, object_id: str | None = None) -> None:
        """Cancel a meeting; unknown or already-cancelled ids succeed."""
        try:
            await self.calendar.cancel_event(meeting_id)
        except MeetingNotFoundError:
            self.stats.already_gone += 1
            logger.info(
                "Meeting already gone, nothing to cancel",
                extra={"object_id": object_id, "meeting_id": meeting_id},
            )
            return
        self.stats.cancelled += 1
        logger.info("Meeting cancelled", extra={"object_id": object_id, "meeting_id": meeting_id})

    async def resolve_attendees(self, request: MeetingRequest) -> list[str]:
        tenant = request.tenant
        subscribed: list[str] = []
        if self.directory is not None:
            subscribed = await self.directory.subscribed(tenant, tenant.topic_for("meeting"))
        return tenant.filter_recipients(merge_attendees(subscribed, request.manual_attendees))
