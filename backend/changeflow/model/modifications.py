"""
Modification log: the append-only audit trail embedded in every object.

The log is the canonical history of an object. Users append transition
entries through the portal; the engine appends its own entries
(``processed`` per tenant, ``meeting_scheduled``, ``meeting_cancelled``)
after the fact. Readers must tolerate both.

Invariants:
    - Entries are validated before they are stored
    - Entries are never mutated or removed; len() never decreases
    - Later entries supersede earlier ones for "current" queries,
      but history is kept intact

How to change safely:
    - Add derived queries, never mutators
    - Keep to_list()/from_list() symmetric with the archive JSON shape
"""

from __future__ import annotations

from collections.abc import Iterable, Iterator
from typing import Any

from ..errors import ModificationValidationError
from .types import (
    USER_TRANSITION_TYPES,
    MeetingMetadata,
    ModificationEntry,
    ModificationType,
)


class ModificationLog:
    """Ordered, validated, append-only list of ModificationEntry."""

    def __init__(self, entries: Iterable[ModificationEntry] = ()) -> None:
        self._entries: list[ModificationEntry] = []
        for entry in entries:
            self.append(entry)

    @classmethod
    def from_list(cls, raw: Any) -> ModificationLog:
        """Load a log from its archived JSON list.

        Raises:
            ModificationValidationError: If any entry is malformed
        """
        if raw is None:
            return cls()
        if not isinstance(raw, list):
            raise ModificationValidationError("modifications must be a list")
        return cls(ModificationEntry.from_dict(item) for item in raw)

    def to_list(self) -> list[dict[str, Any]]:
        return [entry.to_dict() for entry in self._entries]

    def append(self, entry: ModificationEntry) -> None:
        """Validate and append an entry.

        Raises:
            ModificationValidationError: If the entry is invalid; the log
                is left unchanged
        """
        errors = entry.validate()
        if errors:
            raise ModificationValidationError(
                f"Invalid {getattr(entry.modification_type, 'value', entry.modification_type)} entry",
                errors=errors,
            )
        self._entries.append(entry)

    @property
    def entries(self) -> tuple[ModificationEntry, ...]:
        return tuple(self._entries)

    def __len__(self) -> int:
        return len(self._entries)

    def __iter__(self) -> Iterator[ModificationEntry]:
        return iter(tuple(self._entries))

    def __repr__(self) -> str:
        return f"ModificationLog({len(self._entries)} entries)"

    def has_entry_of_type(self, modification_type: ModificationType) -> bool:
        return any(e.modification_type == modification_type for e in self._entries)

    def entries_of_type(self, modification_type: ModificationType) -> list[ModificationEntry]:
        return [e for e in self._entries if e.modification_type == modification_type]

    def latest_meeting_metadata(self) -> MeetingMetadata | None:
        """Return metadata of the most recent meeting_scheduled entry."""
        for entry in reversed(self._entries):
            if entry.modification_type == ModificationType.MEETING_SCHEDULED:
                return entry.meeting_metadata
        return None

    def has_meeting_scheduled(self) -> bool:
        """True if a meeting was ever scheduled, even if later cancelled."""
        return self.has_entry_of_type(ModificationType.MEETING_SCHEDULED)

    def current_meeting(self) -> MeetingMetadata | None:
        """Return the latest scheduled meeting unless a cancellation followed it."""
        for entry in reversed(self._entries):
            if entry.modification_type == ModificationType.MEETING_CANCELLED:
                return None
            if entry.modification_type == ModificationType.MEETING_SCHEDULED:
                return entry.meeting_metadata
        return None

    def was_approved(self) -> bool:
        return self.has_entry_of_type(ModificationType.APPROVED)

    def transition_count(self) -> int:
        """Number of entries written by users."""
        return sum(1 for entry in self._entries if entry.modification_type in USER_TRANSITION_TYPES)

    def processed_since_last_transition(self, tenant_code: str) -> bool:
        """True if ``tenant_code`` already processed the current user transition.

        Looks for a ``processed`` entry for the tenant recorded after the
        last entry written by a user. With no user entries at all, any
        ``processed`` entry for the tenant counts.
        """
        for entry in reversed(self._entries):
            if entry.modification_type in USER_TRANSITION_TYPES:
                return False
            if (
                entry.modification_type == ModificationType.PROCESSED
                and entry.tenant_code == tenant_code
            ):
                return True
        return False
