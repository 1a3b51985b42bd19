"""
Notifier interface for status-triggered emails.

The engine only needs to say "send the <type> notification for this
object to this tenant" and learn how it went. Rendering and delivery are
collaborators behind this narrow interface.

Invariants:
    - "No recipients" is a distinct, successful outcome
    - A FAILED result means nothing was delivered and a retry is safe

How to change safely:
    - New notification types need a default topic in tenants.DEFAULT_TOPICS
    - Keep rendering free of I/O
"""

from __future__ import annotations

from abc import abstractmethod
from dataclasses import dataclass
from enum import Enum
from typing import Protocol, runtime_checkable

from ..model.objects import DomainObject
from ..model.types import ObjectKind, format_timestamp
from ..tenants import TenantContext


class NotificationType(str, Enum):
    APPROVAL_REQUEST = "approval_request"
    APPROVED = "approved"
    CANCELLED = "cancelled"
    COMPLETED = "completed"


class DeliveryStatus(str, Enum):
    SENT = "sent"
    NO_RECIPIENTS = "no_recipients"
    FAILED = "failed"


@dataclass(frozen=True)
class SendResult:
    """Outcome of one notification send.

    Attributes:
        status: Delivery outcome
        sent_count: Recipients the message was delivered to
        error: Error description (FAILED, or partial failures on SENT)
    """

    status: DeliveryStatus
    sent_count: int = 0
    error: str | None = None

    @classmethod
    def sent(cls, count: int, error: str | None = None) -> SendResult:
        return cls(DeliveryStatus.SENT, count, error)

    @classmethod
    def nobody(cls) -> SendResult:
        return cls(DeliveryStatus.NO_RECIPIENTS, 0)

    @classmethod
    def failed(cls, error: str) -> SendResult:
        return cls(DeliveryStatus.FAILED, 0, error)

    @property
    def no_recipients(self) -> bool:
        return self.status == DeliveryStatus.NO_RECIPIENTS

    @property
    def ok(self) -> bool:
        return self.status != DeliveryStatus.FAILED


@runtime_checkable
class Notifier(Protocol):
    """Sends status notifications on behalf of a tenant."""

    @abstractmethod
    async def send(
        self,
        tenant: TenantContext,
        notification_type: NotificationType,
        obj: DomainObject,
    ) -> SendResult:
        ...


@runtime_checkable
class RecipientDirectory(Protocol):
    """Lists addresses subscribed to a topic in a tenant's contact list."""

    @abstractmethod
    async def subscribed(self, tenant: TenantContext, topic: str) -> list[str]:
        ...


@dataclass(frozen=True)
class RenderedMessage:
    subject: str
    text: str


_SUBJECT_PREFIXES = {
    NotificationType.APPROVAL_REQUEST: "Approval requested",
    NotificationType.APPROVED: "Approved",
    NotificationType.CANCELLED: "Cancelled",
    NotificationType.COMPLETED: "Completed",
}


class PlainTextRenderer:
    """Minimal plain-text rendering of a notification."""

    def __init__(self, portal_url: str = "") -> None:
        self.portal_url = portal_url.rstrip("/")

    def render(
        self,
        notification_type: NotificationType,
        obj: DomainObject,
        tenant: TenantContext,
    ) -> RenderedMessage:
        noun = "Change" if obj.kind == ObjectKind.CHANGE else "Announcement"
        subject = f"{_SUBJECT_PREFIXES[notification_type]}: {obj.title or obj.object_id}"
        lines = [
            f"{noun} {obj.object_id}: {obj.title}",
            f"Status: {obj.status_value}",
            f"Customer: {tenant.name or tenant.tenant_code}",
        ]
        meeting = obj.meeting_metadata
        if meeting is not None and notification_type == NotificationType.APPROVED:
            lines.append(f"Meeting: {format_timestamp(meeting.start_time)} {meeting.join_url}")
        if obj.survey_url and notification_type == NotificationType.COMPLETED:
            lines.append(f"Feedback survey: {obj.survey_url}")
        if self.portal_url:
            lines.append(f"Details: {self.portal_url}/{obj.kind.value}s/{obj.object_id}")
        return RenderedMessage(subject=subject, text="\n".join(lines))
