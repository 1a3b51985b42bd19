"""
Collaborators behind narrow interfaces: email, calendar, surveys.

Invariants:
    - The engine depends on the protocols here, never on a vendor SDK
"""

from .meetings import (
    CalendarClient,
    CalendarEvent,
    MeetingNotFoundError,
    MeetingRequest,
    MeetingSchedulerAdapter,
    build_meeting_request,
    merge_attendees,
    subject_key,
)
from .notifier import (
    DeliveryStatus,
    NotificationType,
    Notifier,
    PlainTextRenderer,
    RecipientDirectory,
    SendResult,
)
from .surveys import SurveyClient, SurveyReference

__all__ = [
    "CalendarClient",
    "CalendarEvent",
    "DeliveryStatus",
    "MeetingNotFoundError",
    "MeetingRequest",
    "MeetingSchedulerAdapter",
    "NotificationType",
    "Notifier",
    "PlainTextRenderer",
    "RecipientDirectory",
    "SendResult",
    "SurveyClient",
    "SurveyReference",
    "build_meeting_request",
    "merge_attendees",
    "subject_key",
]
