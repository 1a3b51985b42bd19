"""
Domain objects (changes and announcements) and their archive codec.

Both variants share one shape; they differ in the names of their id and
title fields and in their type-specific content. Fields the engine does
not model are kept verbatim in ``content`` so that a wholesale archive
rewrite never loses data written by the portal.

Invariants:
    - ``status`` is the only field claiming the current workflow state
    - Objects carrying the deprecated ``metadata`` map or ``source``
      field are rejected at load, never normalized. A field counts as
      carried only when it is non-empty: writers omit empty values, so
      ``metadata: {}`` or ``source: ""`` claim no status and are loaded
    - dump(load(x)) preserves every field of x

How to change safely:
    - New modelled fields must be removed from ``content`` on load and
      written back on dump
    - Keep legacy rejection strict; relaxing it reintroduces ambiguity
"""

from __future__ import annotations

import json
from dataclasses import dataclass, field
from typing import Any

from ..errors import LegacyObjectError, ModificationValidationError, ValidationError
from .modifications import ModificationLog
from .types import MeetingMetadata, ObjectKind, WorkflowStatus

_ID_FIELDS = {ObjectKind.CHANGE: "changeId", ObjectKind.ANNOUNCEMENT: "announcement_id"}
_TITLE_FIELDS = {ObjectKind.CHANGE: "changeTitle", ObjectKind.ANNOUNCEMENT: "title"}

_MODELLED_FIELDS = frozenset(
    {
        "object_type",
        "changeId",
        "changeTitle",
        "announcement_id",
        "status",
        "prior_status",
        "version",
        "customers",
        "include_meeting",
        "meeting_metadata",
        "survey_id",
        "survey_url",
        "modifications",
    }
)


@dataclass
class DomainObject:
    """A change or announcement as stored in the archive.

    Attributes:
        object_id: Globally unique id
        object_type: ``change`` or ``announcement_<kind>``
        title: Human title (changeTitle / title)
        status_value: Raw status string as stored
        prior_status: Previous status, empty when newly created
        version: Writer-maintained version counter
        customers: Affected tenant codes
        meeting_requested: Whether a meeting should be scheduled
        meeting_metadata: Set once a meeting has been scheduled
        survey_id: Feedback survey id, set on completion
        survey_url: Feedback survey link, set on completion
        modifications: Audit log
        content: Every other field, preserved verbatim
    """

    object_id: str
    object_type: str
    title: str = ""
    status_value: str = ""
    prior_status: str = ""
    version: int = 0
    customers: list[str] = field(default_factory=list)
    meeting_requested: bool = False
    meeting_metadata: MeetingMetadata | None = None
    survey_id: str | None = None
    survey_url: str | None = None
    modifications: ModificationLog = field(default_factory=ModificationLog)
    content: dict[str, Any] = field(default_factory=dict)

    @property
    def kind(self) -> ObjectKind:
        return ObjectKind.from_object_type(self.object_type)

    @property
    def status(self) -> WorkflowStatus:
        return WorkflowStatus.parse(self.status_value)

    def to_dict(self) -> dict[str, Any]:
        """Serialize to the archive JSON shape."""
        result = dict(self.content)
        result["object_type"] = self.object_type
        result[_ID_FIELDS[self.kind]] = self.object_id
        result[_TITLE_FIELDS[self.kind]] = self.title
        result["status"] = self.status_value
        result["prior_status"] = self.prior_status
        result["version"] = self.version
        result["customers"] = list(self.customers)
        result["include_meeting"] = self.meeting_requested
        if self.meeting_metadata is not None:
            result["meeting_metadata"] = self.meeting_metadata.to_dict()
        if self.survey_id:
            result["survey_id"] = self.survey_id
        if self.survey_url:
            result["survey_url"] = self.survey_url
        result["modifications"] = self.modifications.to_list()
        return result

    def to_json(self) -> bytes:
        return json.dumps(self.to_dict(), indent=2).encode("utf-8")


def _reject_legacy(data: dict[str, Any], object_id: str | None) -> None:
    # Presence alone is not enough; empty values are treated as omitted.
    legacy = []
    metadata = data.get("metadata")
    if metadata:
        legacy.append("metadata")
    source = data.get("source")
    if source:
        legacy.append("source")
    if legacy:
        raise LegacyObjectError(object_id, legacy)


def load_object(data: Any) -> DomainObject:
    """Validate and load a domain object from its archive JSON.

    Raises:
        LegacyObjectError: If deprecated duplicate status fields are present
        ValidationError: If required fields are missing or malformed
    """
    if not isinstance(data, dict):
        raise ValidationError("archive object must be a JSON object")

    object_type = data.get("object_type")
    if not isinstance(object_type, str) or not object_type:
        raise ValidationError("object_type is required", errors=["object_type: required"])
    try:
        kind = ObjectKind.from_object_type(object_type)
    except ValueError as e:
        raise ValidationError(str(e), errors=[f"object_type: {e}"]) from e

    object_id = data.get(_ID_FIELDS[kind])
    if not isinstance(object_id, str) or not object_id:
        raise ValidationError(
            f"{_ID_FIELDS[kind]} is required", errors=[f"{_ID_FIELDS[kind]}: required"]
        )

    _reject_legacy(data, object_id)

    errors = []
    status = data.get("status")
    if not isinstance(status, str):
        errors.append("status: must be a string")
    prior_status = data.get("prior_status") or ""
    if not isinstance(prior_status, str):
        errors.append("prior_status: must be a string")
    version = data.get("version", 0)
    if isinstance(version, bool) or not isinstance(version, int):
        errors.append("version: must be an integer")
    customers = data.get("customers") or []
    if not isinstance(customers, list) or not all(isinstance(c, str) for c in customers):
        errors.append("customers: must be a list of tenant codes")
    title = data.get(_TITLE_FIELDS[kind]) or ""
    if not isinstance(title, str):
        errors.append(f"{_TITLE_FIELDS[kind]}: must be a string")
    if errors:
        raise ValidationError(f"Invalid {object_type} {object_id}", object_id=object_id, errors=errors)

    try:
        modifications = ModificationLog.from_list(data.get("modifications"))
        raw_meeting = data.get("meeting_metadata")
        meeting = MeetingMetadata.from_dict(raw_meeting) if raw_meeting else None
    except ModificationValidationError as e:
        raise ValidationError(
            f"Invalid audit data on {object_id}: {e.message}",
            object_id=object_id,
            errors=e.errors or [e.message],
        ) from e

    return DomainObject(
        object_id=object_id,
        object_type=object_type,
        title=title,
        status_value=status,
        prior_status=prior_status,
        version=version,
        customers=list(customers),
        meeting_requested=bool(data.get("include_meeting", False)),
        meeting_metadata=meeting,
        survey_id=data.get("survey_id") or None,
        survey_url=data.get("survey_url") or None,
        modifications=modifications,
        content={k: v for k, v in data.items() if k not in _MODELLED_FIELDS},
    )


def load_object_json(body: bytes) -> DomainObject:
    """Decode archive bytes and load the object."""
    try:
        data = json.loads(body)
    except (UnicodeDecodeError, json.JSONDecodeError) as e:
        raise ValidationError(f"archive object is not valid JSON: {e}") from e
    return load_object(data)
