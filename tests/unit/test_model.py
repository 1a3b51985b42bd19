"""
Unit tests for the domain model.

Tests cover:
- Status and object kind parsing
- Modification entry validation
- Modification log queries and append-only behaviour
- Archive object loading, legacy rejection and round-tripping
"""

import json
from datetime import datetime, timedelta, timezone

import pytest

from backend.changeflow.errors import (
    LegacyObjectError,
    ModificationValidationError,
    ValidationError,
)
from backend.changeflow.model import (
    DomainObject,
    MeetingMetadata,
    ModificationEntry,
    ModificationLog,
    ModificationType,
    ObjectKind,
    WorkflowStatus,
    load_object,
    load_object_json,
)
from backend.changeflow.model.types import (
    SYSTEM_ACTOR,
    format_timestamp,
    is_valid_actor_id,
    parse_timestamp,
)
from tests.factories import USER, announcement_doc, change_doc, entry, meeting_dict

NOW = datetime(2026, 3, 2, 9, 0, tzinfo=timezone.utc)


def make_entry(modification_type, minutes=0, actor_id=USER, tenant_code=None, meeting=None):
    return ModificationEntry(
        timestamp=NOW + timedelta(minutes=minutes),
        actor_id=actor_id,
        modification_type=modification_type,
        tenant_code=tenant_code,
        meeting_metadata=meeting,
    )


def make_meeting(meeting_id="evt-1"):
    return MeetingMetadata(
        meeting_id=meeting_id,
        join_url=f"https://meet.example.com/{meeting_id}",
        start_time=NOW,
        end_time=NOW + timedelta(hours=1),
        subject="Change Implementation: Core switch upgrade",
    )


class TestParsing:
    """Tests for status, kind, actor and timestamp parsing."""

    def test_status_is_case_insensitive(self):
        """Status strings are normalised."""
        assert WorkflowStatus.parse(" Approved ") == WorkflowStatus.APPROVED

    def test_unrecognised_status_is_unknown(self):
        """Anything unrecognised maps to UNKNOWN."""
        assert WorkflowStatus.parse("on-hold") == WorkflowStatus.UNKNOWN
        assert WorkflowStatus.parse(None) == WorkflowStatus.UNKNOWN

    def test_object_kinds(self):
        """change and announcement_* are the only object types."""
        assert ObjectKind.from_object_type("change") == ObjectKind.CHANGE
        assert ObjectKind.from_object_type("announcement_outage") == ObjectKind.ANNOUNCEMENT
        with pytest.raises(ValueError):
            ObjectKind.from_object_type("incident")

    def test_actor_ids(self):
        """System tokens, role ARNs and long identity references are valid."""
        assert is_valid_actor_id(SYSTEM_ACTOR)
        assert is_valid_actor_id("arn:aws:iam::111122223333:role/portal")
        assert is_valid_actor_id(USER)
        assert not is_valid_actor_id("")
        assert not is_valid_actor_id("bob")
        assert not is_valid_actor_id("bob@example.com")

    def test_timestamp_truncates_nanoseconds(self):
        """Sub-microsecond precision is dropped."""
        parsed = parse_timestamp("2026-03-02T09:00:00.123456789Z")
        assert parsed.microsecond == 123456
        assert parsed.tzinfo is not None

    def test_timestamp_requires_timezone(self):
        """Naive timestamps are rejected."""
        with pytest.raises(ValueError):
            parse_timestamp("2026-03-02T09:00:00")

    def test_format_timestamp_uses_z(self):
        """Timestamps are written as UTC with a Z suffix."""
        assert format_timestamp(NOW) == "2026-03-02T09:00:00Z"


class TestModificationEntry:
    """Tests for ModificationEntry validation."""

    def test_valid_entry(self):
        """A user transition validates."""
        assert make_entry(ModificationType.SUBMITTED).validate() == []

    def test_meeting_scheduled_requires_metadata(self):
        """meeting_scheduled without metadata is invalid."""
        errors = make_entry(ModificationType.MEETING_SCHEDULED).validate()
        assert any("meeting_metadata is required" in e for e in errors)

    def test_metadata_only_on_meeting_scheduled(self):
        """Other types may not carry meeting metadata."""
        errors = make_entry(ModificationType.APPROVED, meeting=make_meeting()).validate()
        assert any("only allowed" in e for e in errors)

    def test_invalid_actor(self):
        """Unrecognised actors are rejected."""
        errors = make_entry(ModificationType.APPROVED, actor_id="x").validate()
        assert any("actor_id" in e for e in errors)

    def test_naive_timestamp(self):
        """Timestamps must be timezone-aware."""
        naive = ModificationEntry(datetime(2026, 1, 1), USER, ModificationType.CREATED)
        assert "timestamp must be timezone-aware" in naive.validate()

    def test_meeting_time_order(self):
        """Meeting end must follow its start."""
        meeting = MeetingMetadata("evt", "https://x", NOW, NOW, "subject")
        errors = make_entry(ModificationType.MEETING_SCHEDULED, meeting=meeting).validate()
        assert any("start_time must be before end_time" in e for e in errors)

    def test_to_dict_omits_empty_fields(self):
        """tenant_code and meeting_metadata are only written when set."""
        data = make_entry(ModificationType.PROCESSED, tenant_code="acme").to_dict()
        assert data == {
            "timestamp": "2026-03-02T09:00:00Z",
            "actor_id": USER,
            "modification_type": "processed",
            "tenant_code": "acme",
        }

    def test_from_dict_rejects_unknown_type(self):
        """Unknown modification types fail to parse."""
        with pytest.raises(ModificationValidationError):
            ModificationEntry.from_dict({"timestamp": "2026-03-02T09:00:00Z", "actor_id": USER, "modification_type": "exploded"})


class TestModificationLog:
    """Tests for ModificationLog."""

    def test_append_rejects_invalid_entry(self):
        """An invalid entry is rejected and the log is unchanged."""
        log = ModificationLog([make_entry(ModificationType.CREATED)])

        with pytest.raises(ModificationValidationError):
            log.append(make_entry(ModificationType.MEETING_SCHEDULED))

        assert len(log) == 1

    def test_entries_are_a_snapshot(self):
        """entries cannot be used to mutate the log."""
        log = ModificationLog([make_entry(ModificationType.CREATED)])
        assert isinstance(log.entries, tuple)

    def test_latest_meeting_metadata(self):
        """The most recent meeting_scheduled entry wins."""
        log = ModificationLog(
            [
                make_entry(ModificationType.MEETING_SCHEDULED, 1, SYSTEM_ACTOR, "acme", make_meeting("evt-1")),
                make_entry(ModificationType.MEETING_SCHEDULED, 2, SYSTEM_ACTOR, "acme", make_meeting("evt-2")),
            ]
        )
        assert log.latest_meeting_metadata().meeting_id == "evt-2"

    def test_current_meeting_after_cancellation(self):
        """A cancellation after scheduling clears the current meeting."""
        log = ModificationLog(
            [
                make_entry(ModificationType.MEETING_SCHEDULED, 1, SYSTEM_ACTOR, "acme", make_meeting()),
                make_entry(ModificationType.MEETING_CANCELLED, 2, SYSTEM_ACTOR, "acme"),
            ]
        )
        assert log.current_meeting() is None
        assert log.has_meeting_scheduled()
        assert log.latest_meeting_metadata() is not None

    def test_processed_since_last_transition(self):
        """A processed entry counts only until the next user transition."""
        log = ModificationLog(
            [
                make_entry(ModificationType.SUBMITTED, 1),
                make_entry(ModificationType.PROCESSED, 2, SYSTEM_ACTOR, "acme"),
            ]
        )
        assert log.processed_since_last_transition("acme")
        assert not log.processed_since_last_transition("globex")

        log.append(make_entry(ModificationType.APPROVED, 3))
        assert not log.processed_since_last_transition("acme")

    def test_engine_entries_do_not_reset_gate(self):
        """Engine entries written after processing do not reopen the gate."""
        log = ModificationLog(
            [
                make_entry(ModificationType.APPROVED, 1),
                make_entry(ModificationType.PROCESSED, 2, SYSTEM_ACTOR, "acme"),
                make_entry(ModificationType.MEETING_SCHEDULED, 3, SYSTEM_ACTOR, "globex", make_meeting()),
                make_entry(ModificationType.PROCESSED, 4, SYSTEM_ACTOR, "globex"),
            ]
        )
        assert log.processed_since_last_transition("acme")
        assert log.processed_since_last_transition("globex")

    def test_transition_count(self):
        """Only entries written by users count as transitions."""
        log = ModificationLog(
            [
                make_entry(ModificationType.CREATED, 1),
                make_entry(ModificationType.APPROVED, 2),
                make_entry(ModificationType.PROCESSED, 3, SYSTEM_ACTOR, "acme"),
            ]
        )
        assert log.transition_count() == 2

        log.append(make_entry(ModificationType.CANCELLED, 4))
        assert log.transition_count() == 3

    def test_was_approved(self):
        """was_approved looks for any approved entry."""
        assert not ModificationLog([make_entry(ModificationType.SUBMITTED)]).was_approved()
        assert ModificationLog([make_entry(ModificationType.APPROVED)]).was_approved()

    def test_from_list_validates_entries(self):
        """Invalid archived entries fail the whole log."""
        with pytest.raises(ModificationValidationError):
            ModificationLog.from_list([entry("approved", actor_id="bob")])


class TestDomainObjectCodec:
    """Tests for loading and dumping archive objects."""

    def test_load_change(self):
        """Change field names are mapped to the model."""
        obj = load_object(change_doc(status="approved", include_meeting=True))

        assert obj.object_id == "CHG-1001"
        assert obj.kind == ObjectKind.CHANGE
        assert obj.title == "Core switch upgrade"
        assert obj.status == WorkflowStatus.APPROVED
        assert obj.meeting_requested
        assert obj.customers == ["acme"]
        assert len(obj.modifications) == 2

    def test_load_announcement(self):
        """Announcement field names are mapped to the model."""
        obj = load_object(announcement_doc())

        assert obj.object_id == "ANN-2001"
        assert obj.kind == ObjectKind.ANNOUNCEMENT
        assert obj.title == "Quarterly maintenance window"

    def test_unmodelled_fields_survive_round_trip(self):
        """Fields the engine does not model are written back unchanged."""
        doc = change_doc(riskLevel="high", approvers=["a", "b"])
        dumped = json.loads(load_object(doc).to_json())

        assert dumped["riskLevel"] == "high"
        assert dumped["approvers"] == ["a", "b"]
        assert dumped["changeId"] == "CHG-1001"
        assert dumped["modifications"] == doc["modifications"]

    @pytest.mark.parametrize("field", ["metadata", "source"])
    def test_legacy_fields_rejected(self, field):
        """Objects carrying the deprecated duplicate fields are rejected."""
        doc = change_doc(**{field: {"status": "approved"}})

        with pytest.raises(LegacyObjectError) as exc_info:
            load_object(doc)

        assert exc_info.value.object_id == "CHG-1001"
        assert exc_info.value.fields == [field]

    def test_empty_legacy_fields_tolerated(self):
        """Empty legacy containers are not a reason to reject."""
        assert load_object(change_doc(metadata={}, source="")).object_id == "CHG-1001"

    def test_invalid_modification_wrapped(self):
        """A bad log entry surfaces as a ValidationError naming the object."""
        doc = change_doc(modifications=[entry("approved", actor_id="x")])

        with pytest.raises(ValidationError) as exc_info:
            load_object(doc)

        assert exc_info.value.object_id == "CHG-1001"

    def test_missing_id(self):
        """The id field of the object's kind is required."""
        doc = change_doc()
        del doc["changeId"]

        with pytest.raises(ValidationError):
            load_object(doc)

    def test_wrong_types(self):
        """Malformed core fields are reported together."""
        with pytest.raises(ValidationError) as exc_info:
            load_object(change_doc(version="3", customers="acme"))

        assert len(exc_info.value.errors) == 2

    def test_not_json(self):
        """Undecodable bodies are validation errors."""
        with pytest.raises(ValidationError):
            load_object_json(b"{not json")

    def test_meeting_metadata_loaded(self):
        """Object-level meeting metadata is parsed."""
        obj = load_object(change_doc(meeting_metadata=meeting_dict()))
        assert obj.meeting_metadata.meeting_id == "evt-existing"

    def test_engine_fields_written(self):
        """Survey fields are only written once set."""
        obj = load_object(change_doc(status="completed"))
        assert "survey_url" not in obj.to_dict()

        obj.survey_id = "srv-1"
        obj.survey_url = "https://forms.example.com/srv-1"
        assert obj.to_dict()["survey_url"] == "https://forms.example.com/srv-1"

    def test_domain_object_defaults(self):
        """A bare object has an empty log."""
        obj = DomainObject(object_id="CHG-1", object_type="change")
        assert len(obj.modifications) == 0
        assert obj.status == WorkflowStatus.UNKNOWN
