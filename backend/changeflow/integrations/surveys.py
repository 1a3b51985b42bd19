"""
Feedback survey creation for completed changes and announcements.

Invariants:
    - A survey is created at most once per object; callers check
      DomainObject.survey_url before asking for a new one
"""

from __future__ import annotations

import asyncio
import logging
from abc import abstractmethod
from dataclasses import dataclass
from typing import Any, Protocol, runtime_checkable

import aiohttp

from ..config import SurveyConfig
from ..errors import SurveyError
from ..model.objects import DomainObject
from ..tenants import TenantContext

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class SurveyReference:
    survey_id: str
    url: str


@runtime_checkable
class SurveyClient(Protocol):
    @abstractmethod
    async def create_survey(self, obj: DomainObject, tenant: TenantContext) -> SurveyReference:
        ...


def survey_definition(obj: DomainObject, tenant: TenantContext, workspace_href: str | None) -> dict[str, Any]:
    form: dict[str, Any] = {
        "title": f"Feedback: {obj.title or obj.object_id}",
        "type": "form",
        "hidden": ["object_id", "tenant_code"],
        "fields": [
            {
                "title": f"How satisfied were you with \"{obj.title}\"?",
                "type": "opinion_scale",
                "properties": {"steps": 5, "start_at_one": True},
                "validations": {"required": True},
            },
            {
                "title": "Anything we should do differently next time?",
                "type": "long_text",
                "validations": {"required": False},
            },
        ],
    }
    if workspace_href:
        form["workspace"] = {"href": workspace_href}
    return form


class TypeformSurveyClient:
    """SurveyClient backed by the Typeform Create API."""

    def __init__(self, config: SurveyConfig, call_timeout: float = 10.0) -> None:
        self.config = config
        self.call_timeout = call_timeout
        self._session: aiohttp.ClientSession | None = None

    async def connect(self) -> None:
        if self._session is None:
            self._session = aiohttp.ClientSession(
                timeout=aiohttp.ClientTimeout(total=self.call_timeout),
                headers={"Authorization": f"Bearer {self.config.api_token}"},
            )

    async def close(self) -> None:
        if self._session is not None:
            await self._session.close()
            self._session = None

    async def create_survey(self, obj: DomainObject, tenant: TenantContext) -> SurveyReference:
        await self.connect()
        if self._session is None:
            raise SurveyError("Not connected to Typeform")
        url = f"{self.config.base_url}/forms"
        form = survey_definition(obj, tenant, self.config.workspace_href)
        try:
            async with self._session.post(url, json=form) as resp:
                if resp.status not in (200, 201):
                    text = await resp.text()
                    raise SurveyError(f"Typeform returned {resp.status}: {text[:200]}", status=resp.status)
                data = await resp.json(content_type=None)
        except (aiohttp.ClientError, asyncio.TimeoutError) as e:
            raise SurveyError(f"Typeform request failed: {e}") from e

        links = data.get("_links") or {}
        reference = SurveyReference(
            survey_id=data["id"],
            url=f"{links.get('display', '')}#object_id={obj.object_id}",
        )
        logger.info(
            "Survey created",
            extra={"object_id": obj.object_id, "tenant_code": tenant.tenant_code, "survey_id": reference.survey_id},
        )
        return reference
