"""
Amazon SES v2 notifier and recipient directory.

Recipients are the contacts of the tenant's contact list that opted in
to the topic of the notification type. Each recipient gets an individual
message carrying list-management options so unsubscribe links work.

Invariants:
    - All SES calls use the tenant's own credentials and region
    - Zero subscribed (or allowed) contacts yields SendResult.nobody()
    - Partial delivery is reported as SENT with the error attached, so a
      redelivery never re-mails recipients that already got the message
"""

from __future__ import annotations

import asyncio
import logging
from typing import Any

from botocore.exceptions import ClientError, EndpointConnectionError

from ..config import EmailConfig
from ..errors import NotificationError, aws_error_code
from ..model.objects import DomainObject
from ..tenants import TenantContext
from .aws import TenantCredentialProvider
from .notifier import NotificationType, PlainTextRenderer, RecipientDirectory, SendResult

logger = logging.getLogger(__name__)


class SesRecipientDirectory:
    """RecipientDirectory backed by SES contact lists."""

    def __init__(self, credentials: TenantCredentialProvider, call_timeout: float = 10.0) -> None:
        self.credentials = credentials
        self.call_timeout = call_timeout

    async def subscribed(self, tenant: TenantContext, topic: str) -> list[str]:
        kwargs = await self.credentials.client_kwargs(tenant)
        try:
            async with self.credentials.session.create_client("sesv2", **kwargs) as ses:
                list_name = tenant.contact_list or await self._account_list(ses, tenant)
                if list_name is None:
                    return []
                return await self._opted_in(ses, list_name, topic)
        except asyncio.TimeoutError as e:
            raise NotificationError(f"SES contact lookup timed out for topic {topic}", tenant.tenant_code) from e
        except (ClientError, EndpointConnectionError) as e:
            raise NotificationError(
                f"SES contact lookup failed for topic {topic}: {e}", tenant.tenant_code
            ) from e

    async def _account_list(self, ses: Any, tenant: TenantContext) -> str | None:
        response = await asyncio.wait_for(ses.list_contact_lists(), timeout=self.call_timeout)
        lists = response.get("ContactLists", [])
        if not lists:
            logger.warning("Tenant has no SES contact list", extra={"tenant_code": tenant.tenant_code})
            return None
        return lists[0]["ContactListName"]

    async def _opted_in(self, ses: Any, list_name: str, topic: str) -> list[str]:
        addresses = []
        params: dict[str, Any] = {
            "ContactListName": list_name,
            "Filter": {
                "FilteredStatus": "OPT_IN",
                "TopicFilter": {"TopicName": topic, "UseDefaultIfPreferenceUnavailable": True},
            },
            "PageSize": 100,
        }
        while True:
            response = await asyncio.wait_for(ses.list_contacts(**params), timeout=self.call_timeout)
            addresses.extend(c["EmailAddress"] for c in response.get("Contacts", []))
            token = response.get("NextToken")
            if not token:
                return addresses
            params["NextToken"] = token


class SesNotifier:
    """Notifier sending one SES message per subscribed recipient."""

    def __init__(
        self,
        config: EmailConfig,
        directory: RecipientDirectory,
        credentials: TenantCredentialProvider,
        renderer: PlainTextRenderer | None = None,
        call_timeout: float = 10.0,
    ) -> None:
        self.config = config
        self.directory = directory
        self.credentials = credentials
        self.renderer = renderer or PlainTextRenderer(config.portal_url)
        self.call_timeout = call_timeout

    async def send(
        self,
        tenant: TenantContext,
        notification_type: NotificationType,
        obj: DomainObject,
    ) -> SendResult:
        topic = tenant.topic_for(notification_type.value)
        recipients = tenant.filter_recipients(await self.directory.subscribed(tenant, topic))
        if not recipients:
            logger.info(
                "No recipients for notification",
                extra={
                    "tenant_code": tenant.tenant_code,
                    "object_id": obj.object_id,
                    "topic": topic,
                    "notification_type": notification_type.value,
                },
            )
            return SendResult.nobody()

        message = self.renderer.render(notification_type, obj, tenant)
        list_name = tenant.contact_list
        sent = 0
        failures = []
        kwargs = await self.credentials.client_kwargs(tenant)
        async with self.credentials.session.create_client("sesv2", **kwargs) as ses:
            for address in recipients:
                params: dict[str, Any] = {
                    "FromEmailAddress": self.config.sender,
                    "Destination": {"ToAddresses": [address]},
                    "Content": {
                        "Simple": {
                            "Subject": {"Data": message.subject},
                            "Body": {"Text": {"Data": message.text}},
                        }
                    },
                }
                if list_name:
                    params["ListManagementOptions"] = {"ContactListName": list_name, "TopicName": topic}
                try:
                    await asyncio.wait_for(ses.send_email(**params), timeout=self.call_timeout)
                    sent += 1
                except asyncio.TimeoutError:
                    failures.append(f"{address}: timeout")
                except ClientError as e:
                    failures.append(f"{address}: {aws_error_code(e)}")

        logger.info(
            "Notification sent",
            extra={
                "tenant_code": tenant.tenant_code,
                "object_id": obj.object_id,
                "notification_type": notification_type.value,
                "sent": sent,
                "failed": len(failures),
            },
        )
        if sent == 0:
            return SendResult.failed("; ".join(failures))
        return SendResult.sent(sent, "; ".join(failures) or None)
