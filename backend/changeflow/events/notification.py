"""
Parsing of object store notifications delivered through tenant queues.

A queue message body is an S3 event notification, optionally wrapped in
an SNS envelope. Each record names the bucket, the key that was written
and the identity of the writer. Only trigger keys are meaningful to the
engine; the key itself carries the tenant code and object id.

Invariants:
    - Parsing is pure; nothing here touches the network
    - ``s3:TestEvent`` messages parse to a test notice, not an error
    - A body that is not an S3 event is a NotificationFormatError
    - A record whose key is not a trigger key becomes a RejectedRecord
      that still carries its writer, so the origin filter can see it

How to change safely:
    - Keep build_s3_event() in step with what the parser accepts; the
      in-memory store uses it to emit notifications in tests
"""

from __future__ import annotations

import json
from dataclasses import dataclass, field
from typing import Any
from urllib.parse import unquote_plus

from ..errors import NotificationFormatError
from ..keys import KeyLayout

TEST_EVENT = "s3:TestEvent"


@dataclass(frozen=True)
class WriterIdentity:
    """Identity that performed the write behind a notification.

    Attributes:
        arn: IAM/STS ARN, when the event carries one
        principal_id: Principal id such as ``AWS:AROAEXAMPLE:session``
    """

    arn: str | None = None
    principal_id: str | None = None

    @classmethod
    def from_record(cls, record: dict[str, Any]) -> WriterIdentity | None:
        raw = record.get("userIdentity")
        if not isinstance(raw, dict):
            return None
        arn = raw.get("arn") or None
        principal_id = raw.get("principalId") or None
        if not isinstance(arn, str):
            arn = None
        if not isinstance(principal_id, str):
            principal_id = None
        if arn is None and principal_id is None:
            return None
        return cls(arn=arn, principal_id=principal_id)


@dataclass(frozen=True)
class TriggerNotification:
    """One trigger write, resolved to tenant and object.

    Attributes:
        bucket: Bucket name
        key: Trigger key
        tenant_code: Tenant named by the key
        object_id: Object named by the key
        event_name: S3 event name (``ObjectCreated:Put`` ...)
        writer: Writer identity, None when absent
    """

    bucket: str
    key: str
    tenant_code: str
    object_id: str
    event_name: str
    writer: WriterIdentity | None = None

    @property
    def is_object_created(self) -> bool:
        return self.event_name.startswith("ObjectCreated")


@dataclass(frozen=True)
class RejectedRecord:
    """A record whose key does not name a trigger."""

    key: str
    event_name: str
    reason: str
    writer: WriterIdentity | None = None

    @property
    def is_object_created(self) -> bool:
        return self.event_name.startswith("ObjectCreated")


@dataclass
class ParsedMessage:
    """Result of parsing one queue message body."""

    notifications: list[TriggerNotification] = field(default_factory=list)
    rejected: list[RejectedRecord] = field(default_factory=list)
    test_event: bool = False


def _decode_body(body: str) -> dict[str, Any]:
    try:
        data = json.loads(body)
    except (TypeError, json.JSONDecodeError) as e:
        raise NotificationFormatError(f"Message body is not JSON: {e}") from e
    if not isinstance(data, dict):
        raise NotificationFormatError("Message body is not a JSON object")
    # SNS fan-out wraps the S3 event in a Message string.
    if data.get("Type") == "Notification" and isinstance(data.get("Message"), str):
        return _decode_body(data["Message"])
    return data


def parse_message(body: str, layout: KeyLayout) -> ParsedMessage:
    """Parse a queue message body into trigger notifications.

    Records whose key is not a trigger key are returned in
    ``rejected`` instead of failing the whole message.

    Raises:
        NotificationFormatError: If the body is not an S3 event
    """
    data = _decode_body(body)
    if data.get("Event") == TEST_EVENT:
        return ParsedMessage(test_event=True)

    records = data.get("Records")
    if not isinstance(records, list) or not records:
        raise NotificationFormatError("Message has no Records")

    parsed = ParsedMessage()
    for record in records:
        if not isinstance(record, dict):
            raise NotificationFormatError("Record is not an object")
        s3 = record.get("s3") or {}
        bucket = (s3.get("bucket") or {}).get("name") or ""
        raw_key = (s3.get("object") or {}).get("key")
        if not isinstance(raw_key, str) or not raw_key:
            raise NotificationFormatError("Record has no object key")
        key = unquote_plus(raw_key)
        event_name = str(record.get("eventName") or "")
        writer = WriterIdentity.from_record(record)
        try:
            tenant_code, object_id = layout.parse_trigger_key(key)
        except NotificationFormatError as e:
            parsed.rejected.append(RejectedRecord(key, event_name, e.message, writer))
            continue
        parsed.notifications.append(
            TriggerNotification(
                bucket=bucket,
                key=key,
                tenant_code=tenant_code,
                object_id=object_id,
                event_name=event_name,
                writer=writer,
            )
        )
    return parsed


def build_s3_event(
    bucket: str,
    key: str,
    event_name: str = "ObjectCreated:Put",
    principal_arn: str | None = None,
    principal_id: str | None = None,
) -> dict[str, Any]:
    """Build an S3 event notification document for one write."""
    record: dict[str, Any] = {
        "eventVersion": "2.1",
        "eventSource": "aws:s3",
        "eventName": event_name,
        "s3": {
            "s3SchemaVersion": "1.0",
            "bucket": {"name": bucket, "arn": f"arn:aws:s3:::{bucket}"},
            "object": {"key": key},
        },
    }
    identity = {}
    if principal_arn:
        identity["arn"] = principal_arn
    if principal_id:
        identity["principalId"] = principal_id
    if identity:
        record["userIdentity"] = identity
    return {"Records": [record]}
