"""
Unit tests for queue message parsing and the key layout.

Tests cover:
- S3 event documents, SNS envelopes and test events
- URL-encoded keys
- Writer identity extraction
- Trigger and archive key construction
"""

import json

import pytest

from backend.changeflow.errors import NotificationFormatError
from backend.changeflow.events import build_s3_event, parse_message
from backend.changeflow.keys import KeyLayout


@pytest.fixture
def layout():
    return KeyLayout()


class TestParseMessage:
    """Tests for parse_message."""

    def test_s3_event(self, layout):
        """A plain S3 event yields one notification."""
        body = json.dumps(
            build_s3_event(
                "changes",
                "customers/acme/CHG-1001.json",
                principal_arn="arn:aws:sts::111122223333:assumed-role/portal/x",
                principal_id="AWS:AROAPORTAL:x",
            )
        )

        parsed = parse_message(body, layout)

        assert not parsed.test_event
        [notification] = parsed.notifications
        assert notification.tenant_code == "acme"
        assert notification.object_id == "CHG-1001"
        assert notification.bucket == "changes"
        assert notification.is_object_created
        assert notification.writer.principal_id == "AWS:AROAPORTAL:x"

    def test_sns_envelope(self, layout):
        """S3 events fanned out through SNS are unwrapped."""
        inner = json.dumps(build_s3_event("changes", "customers/acme/CHG-1001.json"))
        body = json.dumps({"Type": "Notification", "Message": inner})

        [notification] = parse_message(body, layout).notifications

        assert notification.object_id == "CHG-1001"
        assert notification.writer is None

    def test_test_event(self, layout):
        """The store's configuration test event is recognised."""
        body = json.dumps({"Service": "Amazon S3", "Event": "s3:TestEvent", "Bucket": "changes"})
        parsed = parse_message(body, layout)
        assert parsed.test_event
        assert parsed.notifications == []

    def test_url_encoded_key(self, layout):
        """Keys are URL-decoded."""
        body = json.dumps(build_s3_event("changes", "customers/acme/CHG+2026%2D01.json"))
        [notification] = parse_message(body, layout).notifications
        assert notification.object_id == "CHG 2026-01"

    def test_removal_event(self, layout):
        """Delete events are parsed but are not creations."""
        body = json.dumps(build_s3_event("changes", "customers/acme/CHG-1.json", event_name="ObjectRemoved:Delete"))
        [notification] = parse_message(body, layout).notifications
        assert not notification.is_object_created

    @pytest.mark.parametrize(
        "body",
        [
            "not json",
            "[]",
            json.dumps({"Records": []}),
            json.dumps({"Records": ["x"]}),
            json.dumps({"Records": [{"s3": {"object": {}}}]}),
        ],
    )
    def test_malformed(self, layout, body):
        """Bodies that are not trigger events are rejected."""
        with pytest.raises(NotificationFormatError):
            parse_message(body, layout)

    def test_non_trigger_key(self, layout):
        """Archive keys are not trigger keys; the record keeps its writer."""
        body = json.dumps(
            build_s3_event(
                "changes",
                "archive/CHG-1001.json",
                principal_arn="arn:aws:sts::111122223333:assumed-role/changeflow-engine/worker-1",
            )
        )

        parsed = parse_message(body, layout)

        assert parsed.notifications == []
        [record] = parsed.rejected
        assert record.key == "archive/CHG-1001.json"
        assert record.is_object_created
        assert "Not a trigger key" in record.reason
        assert record.writer.arn.endswith("changeflow-engine/worker-1")

    def test_mixed_records(self, layout):
        """Trigger and non-trigger records in one message are kept apart."""
        trigger = build_s3_event("changes", "customers/acme/CHG-1001.json")["Records"][0]
        archive = build_s3_event("changes", "archive/CHG-1001.json")["Records"][0]
        body = json.dumps({"Records": [archive, trigger]})

        parsed = parse_message(body, layout)

        assert [n.object_id for n in parsed.notifications] == ["CHG-1001"]
        assert [r.key for r in parsed.rejected] == ["archive/CHG-1001.json"]


class TestKeyLayout:
    """Tests for KeyLayout."""

    def test_keys(self, layout):
        """Triggers live per tenant, archive objects per id."""
        assert layout.trigger_key("acme", "CHG-1") == "customers/acme/CHG-1.json"
        assert layout.archive_key("CHG-1") == "archive/CHG-1.json"
        assert layout.tenant_prefix("acme") == "customers/acme/"

    def test_custom_prefixes(self):
        """Prefixes are configurable."""
        layout = KeyLayout(trigger_prefix="triggers", archive_prefix="objects")
        assert layout.parse_trigger_key("triggers/acme/CHG-1.json") == ("acme", "CHG-1")

    @pytest.mark.parametrize(
        "key",
        ["customers/acme/CHG-1.txt", "customers/CHG-1.json", "customers/acme/x/CHG-1.json", "customers//CHG-1.json"],
    )
    def test_parse_rejects(self, layout, key):
        """Keys that do not match the layout are rejected."""
        with pytest.raises(NotificationFormatError):
            layout.parse_trigger_key(key)

    def test_segments_validated(self, layout):
        """Ids with slashes cannot be turned into keys."""
        with pytest.raises(ValueError):
            layout.trigger_key("acme", "a/b")
