"""
Domain model for changes, announcements and the modification log.

Invariants:
    - Exactly one authoritative status field per object
    - The modification log only grows

How to change safely:
    - Keep the archive JSON shape backward compatible for readers
"""

from .modifications import ModificationLog
from .objects import DomainObject, load_object, load_object_json
from .types import (
    SYSTEM_ACTOR,
    MeetingMetadata,
    ModificationEntry,
    ModificationType,
    ObjectKind,
    WorkflowStatus,
    format_timestamp,
    is_valid_actor_id,
    parse_timestamp,
)

__all__ = [
    "DomainObject",
    "MeetingMetadata",
    "ModificationEntry",
    "ModificationLog",
    "ModificationType",
    "ObjectKind",
    "SYSTEM_ACTOR",
    "WorkflowStatus",
    "format_timestamp",
    "is_valid_actor_id",
    "load_object",
    "load_object_json",
    "parse_timestamp",
]
