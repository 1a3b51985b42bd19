"""
Tenant mappings and the per-reconciliation tenant context.

A TenantContext is resolved once when a message is picked up and passed
explicitly down the handler chain. Nothing in the engine holds
"current tenant" state globally.

Mapping document (TENANTS_FILE):

    {
      "customer_mappings": {
        "acme": {
          "customer_code": "acme",
          "customer_name": "Acme Corp",
          "region": "us-east-1",
          "sqs_queue_url": "https://sqs.us-east-1.amazonaws.com/1111/acme",
          "ses_role_arn": "arn:aws:iam::2222:role/ses-sender",
          "contact_list": "acme-contacts",
          "restricted_recipients": ["@acme.example"],
          "topics": {"approval_request": "aws-approval"}
        }
      }
    }

Invariants:
    - TenantContext is immutable
    - Unknown tenant codes raise UnknownTenantError, never fall back
"""

from __future__ import annotations

import json
import logging
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any

from .errors import UnknownTenantError

logger = logging.getLogger(__name__)

DEFAULT_TOPICS = {
    "approval_request": "aws-approval",
    "approved": "aws-announce",
    "cancelled": "aws-announce",
    "completed": "aws-announce",
    "meeting": "aws-calendar",
}


@dataclass(frozen=True)
class TenantContext:
    """Everything needed to act on behalf of one tenant.

    Attributes:
        tenant_code: Short tenant code used in keys and logs
        name: Display name
        region: AWS region of the tenant's email resources
        queue_url: Tenant queue URL
        role_arn: Role assumed to send email for the tenant
        contact_list: SES contact list name (None: the account's list)
        environment: Free-form environment label
        restricted_recipients: Allow-list of addresses or ``@domain`` patterns
        topics: Topic name per notification type
    """

    tenant_code: str
    name: str = ""
    region: str = "us-east-1"
    queue_url: str = ""
    role_arn: str | None = None
    contact_list: str | None = None
    environment: str = ""
    restricted_recipients: tuple[str, ...] = ()
    topics: dict[str, str] = field(default_factory=lambda: dict(DEFAULT_TOPICS))

    def topic_for(self, notification_type: str) -> str:
        return self.topics.get(notification_type) or DEFAULT_TOPICS[notification_type]

    def is_recipient_allowed(self, address: str) -> bool:
        """Check an address against restricted_recipients (empty list allows all)."""
        if not self.restricted_recipients:
            return True
        address = address.strip().lower()
        for rule in self.restricted_recipients:
            rule = rule.strip().lower()
            if rule.startswith("*@"):
                rule = rule[1:]
            if rule.startswith("@"):
                if address.endswith(rule):
                    return True
            elif address == rule:
                return True
        return False

    def filter_recipients(self, addresses: list[str]) -> list[str]:
        allowed = [a for a in addresses if self.is_recipient_allowed(a)]
        if len(allowed) != len(addresses):
            logger.info(
                "Recipients filtered by restricted_recipients",
                extra={
                    "tenant_code": self.tenant_code,
                    "before": len(addresses),
                    "after": len(allowed),
                },
            )
        return allowed

    @classmethod
    def from_dict(cls, code: str, data: dict[str, Any]) -> TenantContext:
        topics = dict(DEFAULT_TOPICS)
        topics.update(data.get("topics") or {})
        return cls(
            tenant_code=data.get("customer_code") or code,
            name=data.get("customer_name", ""),
            region=data.get("region", "us-east-1"),
            queue_url=data.get("sqs_queue_url", ""),
            role_arn=data.get("ses_role_arn") or None,
            contact_list=data.get("contact_list") or None,
            environment=data.get("environment", ""),
            restricted_recipients=tuple(data.get("restricted_recipients") or ()),
            topics=topics,
        )


class TenantRegistry:
    """Lookup of tenant contexts by code."""

    def __init__(self, tenants: list[TenantContext]) -> None:
        self._tenants = {t.tenant_code: t for t in tenants}

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> TenantRegistry:
        """Build a registry from a mapping document.

        Raises:
            ValueError: If the document is malformed
        """
        mappings = data.get("customer_mappings")
        if not isinstance(mappings, dict) or not mappings:
            raise ValueError("tenant mappings must contain a non-empty 'customer_mappings' object")
        tenants = []
        for code, raw in mappings.items():
            if not isinstance(raw, dict):
                raise ValueError(f"tenant mapping for '{code}' must be an object")
            tenant = TenantContext.from_dict(code, raw)
            if tenant.tenant_code != code:
                raise ValueError(
                    f"tenant mapping key '{code}' does not match customer_code '{tenant.tenant_code}'"
                )
            tenants.append(tenant)
        return cls(tenants)

    @classmethod
    def from_file(cls, path: str | Path) -> TenantRegistry:
        with open(path, encoding="utf-8") as f:
            registry = cls.from_dict(json.load(f))
        logger.info("Loaded tenant mappings", extra={"path": str(path), "tenants": len(registry)})
        return registry

    def get(self, tenant_code: str) -> TenantContext:
        try:
            return self._tenants[tenant_code]
        except KeyError:
            raise UnknownTenantError(tenant_code) from None

    def codes(self) -> list[str]:
        return sorted(self._tenants)

    def __iter__(self):
        return iter(self._tenants[c] for c in self.codes())

    def __len__(self) -> int:
        return len(self._tenants)
