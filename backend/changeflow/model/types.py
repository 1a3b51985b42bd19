"""
Core value types for changes, announcements and their audit trail.

This module defines:
- WorkflowStatus: the closed set of lifecycle states, plus UNKNOWN
- ObjectKind: change or announcement
- ModificationType: the fixed set of audit log entry types
- MeetingMetadata: identifiers of a scheduled meeting
- ModificationEntry: one validated audit log record

Invariants:
    - Timestamps are timezone-aware and serialized as RFC3339 UTC
    - meeting_metadata is present on an entry iff its type is meeting_scheduled
    - Values are frozen; the log only grows by appending new entries

How to change safely:
    - Adding a ModificationType is backward compatible for readers
    - Never rename an enum value; archived objects reference them
"""

from __future__ import annotations

import re
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any

from ..errors import ModificationValidationError

SYSTEM_ACTOR = "backend-system"
SYSTEM_ACTORS = frozenset({SYSTEM_ACTOR})

_IDENTITY_REF = re.compile(r"^[A-Za-z0-9\-:/]{10,}$")
_FRACTION = re.compile(r"\.(\d+)")


class WorkflowStatus(str, Enum):
    """Lifecycle state of a change or announcement."""

    DRAFT = "draft"
    SUBMITTED = "submitted"
    APPROVED = "approved"
    CANCELLED = "cancelled"
    COMPLETED = "completed"
    UNKNOWN = "unknown"

    @classmethod
    def parse(cls, value: Any) -> WorkflowStatus:
        """Map a raw status string to a member; anything else is UNKNOWN."""
        if not isinstance(value, str):
            return cls.UNKNOWN
        try:
            member = cls(value.strip().lower())
        except ValueError:
            return cls.UNKNOWN
        return member


class ObjectKind(str, Enum):
    """Variant of a domain object."""

    CHANGE = "change"
    ANNOUNCEMENT = "announcement"

    @classmethod
    def from_object_type(cls, object_type: str) -> ObjectKind:
        if object_type == "change":
            return cls.CHANGE
        if object_type.startswith("announcement_"):
            return cls.ANNOUNCEMENT
        raise ValueError(f"unsupported object_type '{object_type}'")


class ModificationType(str, Enum):
    """Types of audit log entries."""

    CREATED = "created"
    UPDATED = "updated"
    SUBMITTED = "submitted"
    APPROVED = "approved"
    CANCELLED = "cancelled"
    COMPLETED = "completed"
    DELETED = "deleted"
    MEETING_SCHEDULED = "meeting_scheduled"
    MEETING_CANCELLED = "meeting_cancelled"
    PROCESSED = "processed"


# Entries written by users (through the portal) rather than by the engine.
USER_TRANSITION_TYPES = frozenset(
    {
        ModificationType.CREATED,
        ModificationType.UPDATED,
        ModificationType.SUBMITTED,
        ModificationType.APPROVED,
        ModificationType.CANCELLED,
        ModificationType.COMPLETED,
        ModificationType.DELETED,
    }
)


def parse_timestamp(value: Any) -> datetime:
    """Parse an RFC3339 timestamp into an aware datetime.

    Raises:
        ValueError: If the value is not a string or not RFC3339
    """
    if not isinstance(value, str) or not value:
        raise ValueError(f"invalid timestamp: {value!r}")
    text = value.strip()
    if text.endswith(("Z", "z")):
        text = text[:-1] + "+00:00"
    # Sub-microsecond precision is truncated.
    text = _FRACTION.sub(lambda m: "." + m.group(1)[:6].ljust(6, "0"), text, count=1)
    parsed = datetime.fromisoformat(text)
    if parsed.tzinfo is None:
        raise ValueError(f"timestamp without timezone: {value!r}")
    return parsed


def format_timestamp(value: datetime) -> str:
    """Format an aware datetime as RFC3339 UTC with a Z suffix."""
    return value.astimezone(timezone.utc).isoformat().replace("+00:00", "Z")


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def is_valid_actor_id(actor_id: str) -> bool:
    """Check that an actor id is a system token or an identity reference.

    Accepted shapes:
        - a system actor token such as ``backend-system``
        - an IAM role ARN (``arn:aws:iam::ACCOUNT:role/NAME``)
        - an opaque identity reference of at least 10 characters drawn
          from letters, digits, ``-``, ``:`` and ``/``
    """
    if not actor_id or not actor_id.strip():
        return False
    if actor_id in SYSTEM_ACTORS:
        return True
    if actor_id.startswith("arn:aws:iam::") and ":role/" in actor_id:
        return True
    return bool(_IDENTITY_REF.match(actor_id))


@dataclass(frozen=True)
class MeetingMetadata:
    """Identifiers of a meeting created in the external calendar.

    Attributes:
        meeting_id: Calendar event id
        join_url: Online meeting join link
        start_time: Meeting start (aware datetime)
        end_time: Meeting end (aware datetime)
        subject: Subject used as the idempotency key
        organizer: Mailbox that owns the event
        attendees: Invited addresses
    """

    meeting_id: str
    join_url: str
    start_time: datetime
    end_time: datetime
    subject: str
    organizer: str | None = None
    attendees: tuple[str, ...] = field(default_factory=tuple)

    def validate(self) -> list[str]:
        errors = []
        if not self.meeting_id:
            errors.append("meeting_id is required")
        if not self.join_url:
            errors.append("join_url is required")
        if not self.subject:
            errors.append("subject is required")
        if self.start_time >= self.end_time:
            errors.append("start_time must be before end_time")
        return errors

    def to_dict(self) -> dict[str, Any]:
        result: dict[str, Any] = {
            "meeting_id": self.meeting_id,
            "join_url": self.join_url,
            "start_time": format_timestamp(self.start_time),
            "end_time": format_timestamp(self.end_time),
            "subject": self.subject,
        }
        if self.organizer:
            result["organizer"] = self.organizer
        if self.attendees:
            result["attendees"] = list(self.attendees)
        return result

    @classmethod
    def from_dict(cls, data: Any) -> MeetingMetadata:
        """Build metadata from its JSON shape.

        Raises:
            ModificationValidationError: If the shape or timestamps are invalid
        """
        if not isinstance(data, dict):
            raise ModificationValidationError("meeting_metadata must be an object")
        try:
            start = parse_timestamp(data.get("start_time"))
            end = parse_timestamp(data.get("end_time"))
        except ValueError as e:
            raise ModificationValidationError(f"meeting_metadata: {e}") from e
        attendees = data.get("attendees") or []
        if not isinstance(attendees, list):
            raise ModificationValidationError("meeting_metadata.attendees must be a list")
        return cls(
            meeting_id=str(data.get("meeting_id") or ""),
            join_url=str(data.get("join_url") or ""),
            start_time=start,
            end_time=end,
            subject=str(data.get("subject") or ""),
            organizer=data.get("organizer") or None,
            attendees=tuple(str(a) for a in attendees),
        )


@dataclass(frozen=True)
class ModificationEntry:
    """One audit log record.

    Attributes:
        timestamp: When the transition or side effect happened
        actor_id: Who caused it (user identity or system actor)
        modification_type: What happened
        tenant_code: Tenant scope, set on per-tenant engine entries
        meeting_metadata: Meeting identifiers (meeting_scheduled only)
    """

    timestamp: datetime
    actor_id: str
    modification_type: ModificationType
    tenant_code: str | None = None
    meeting_metadata: MeetingMetadata | None = None

    @classmethod
    def now(
        cls,
        actor_id: str,
        modification_type: ModificationType,
        tenant_code: str | None = None,
        meeting_metadata: MeetingMetadata | None = None,
    ) -> ModificationEntry:
        return cls(
            timestamp=utcnow(),
            actor_id=actor_id,
            modification_type=modification_type,
            tenant_code=tenant_code,
            meeting_metadata=meeting_metadata,
        )

    def validate(self) -> list[str]:
        """Return a list of validation errors (empty when valid)."""
        errors = []
        if self.timestamp is None or self.timestamp.year <= 1:
            errors.append("timestamp is required")
        elif self.timestamp.tzinfo is None:
            errors.append("timestamp must be timezone-aware")
        if not is_valid_actor_id(self.actor_id):
            errors.append(f"invalid actor_id: {self.actor_id!r}")
        if not isinstance(self.modification_type, ModificationType):
            errors.append(f"invalid modification_type: {self.modification_type!r}")
        is_scheduled = self.modification_type == ModificationType.MEETING_SCHEDULED
        if is_scheduled and self.meeting_metadata is None:
            errors.append("meeting_metadata is required for meeting_scheduled")
        if not is_scheduled and self.meeting_metadata is not None:
            errors.append(
                f"meeting_metadata is only allowed for meeting_scheduled, not {self.modification_type}"
            )
        if self.meeting_metadata is not None:
            errors.extend(f"meeting_metadata: {e}" for e in self.meeting_metadata.validate())
        return errors

    def to_dict(self) -> dict[str, Any]:
        result: dict[str, Any] = {
            "timestamp": format_timestamp(self.timestamp),
            "actor_id": self.actor_id,
            "modification_type": self.modification_type.value,
        }
        if self.tenant_code:
            result["tenant_code"] = self.tenant_code
        if self.meeting_metadata is not None:
            result["meeting_metadata"] = self.meeting_metadata.to_dict()
        return result

    @classmethod
    def from_dict(cls, data: Any) -> ModificationEntry:
        """Parse an entry from its JSON shape (structure only, no validate())."""
        if not isinstance(data, dict):
            raise ModificationValidationError("modification entry must be an object")
        try:
            timestamp = parse_timestamp(data.get("timestamp"))
        except ValueError as e:
            raise ModificationValidationError(f"modification entry: {e}") from e
        raw_type = data.get("modification_type")
        try:
            modification_type = ModificationType(raw_type)
        except ValueError as e:
            raise ModificationValidationError(
                f"unknown modification_type: {raw_type!r}"
            ) from e
        meeting = data.get("meeting_metadata")
        return cls(
            timestamp=timestamp,
            actor_id=str(data.get("actor_id") or ""),
            modification_type=modification_type,
            tenant_code=data.get("tenant_code") or None,
            meeting_metadata=MeetingMetadata.from_dict(meeting) if meeting is not None else None,
        )
