"""
Object key layout for triggers and archive objects.

    {trigger_prefix}/{tenant_code}/{object_id}.json   ephemeral trigger
    {archive_prefix}/{object_id}.json                 authoritative archive

Invariants:
    - tenant_code and object_id never contain "/"
    - A trigger key maps to exactly one (tenant_code, object_id) pair
"""

from __future__ import annotations

from dataclasses import dataclass

from .errors import NotificationFormatError

SUFFIX = ".json"


@dataclass(frozen=True)
class KeyLayout:
    """Prefixes under which triggers and archive objects live."""

    trigger_prefix: str = "customers"
    archive_prefix: str = "archive"

    def trigger_key(self, tenant_code: str, object_id: str) -> str:
        _check_segment("tenant_code", tenant_code)
        _check_segment("object_id", object_id)
        return f"{self.trigger_prefix}/{tenant_code}/{object_id}{SUFFIX}"

    def archive_key(self, object_id: str) -> str:
        _check_segment("object_id", object_id)
        return f"{self.archive_prefix}/{object_id}{SUFFIX}"

    def tenant_prefix(self, tenant_code: str) -> str:
        return f"{self.trigger_prefix}/{tenant_code}/"

    def parse_trigger_key(self, key: str) -> tuple[str, str]:
        """Split a trigger key into (tenant_code, object_id).

        Raises:
            NotificationFormatError: If the key is not a trigger key
        """
        parts = key.split("/")
        if len(parts) != 3 or parts[0] != self.trigger_prefix or not parts[2].endswith(SUFFIX):
            raise NotificationFormatError(f"Not a trigger key: {key}")
        tenant_code, object_id = parts[1], parts[2][: -len(SUFFIX)]
        if not tenant_code or not object_id:
            raise NotificationFormatError(f"Not a trigger key: {key}")
        return tenant_code, object_id


def _check_segment(name: str, value: str) -> None:
    if not value or "/" in value:
        raise ValueError(f"invalid {name}: {value!r}")
