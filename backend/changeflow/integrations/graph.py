"""
Microsoft Graph calendar client.

Implements CalendarClient against the organizer mailbox using app-only
(client credentials) authentication. Created events are Teams online
meetings so every event carries a join URL.

Invariants:
    - Every request is bounded by the session timeout
    - 404 on cancel maps to MeetingNotFoundError
    - 429 and 5xx map to retryable MeetingError; other 4xx are fatal

How to change safely:
    - Graph date/times are exchanged in UTC; keep _graph_time() and
      _parse_graph_time() symmetric
"""

from __future__ import annotations

import asyncio
import logging
import time
from datetime import datetime, timezone
from typing import Any
from urllib.parse import quote

import aiohttp

from ..config import CalendarConfig
from ..errors import MeetingError
from ..model.types import parse_timestamp
from .meetings import CalendarEvent, MeetingNotFoundError, MeetingRequest

logger = logging.getLogger(__name__)

TOKEN_SCOPE = "https://graph.microsoft.com/.default"
_SELECT = "id,subject,start,end,onlineMeeting,webLink,isCancelled,attendees,organizer"


def _graph_time(value: datetime) -> dict[str, str]:
    utc = value.astimezone(timezone.utc).replace(tzinfo=None)
    return {"dateTime": utc.isoformat(timespec="seconds"), "timeZone": "UTC"}


def _parse_graph_time(value: dict[str, Any]) -> datetime:
    text = value.get("dateTime", "")
    if value.get("timeZone", "UTC") == "UTC" and not text.endswith("Z") and "+" not in text[10:]:
        text += "Z"
    return parse_timestamp(text)


def _to_event(data: dict[str, Any]) -> CalendarEvent:
    online = data.get("onlineMeeting") or {}
    organizer = ((data.get("organizer") or {}).get("emailAddress") or {}).get("address")
    attendees = tuple(
        a["emailAddress"]["address"]
        for a in data.get("attendees") or []
        if (a.get("emailAddress") or {}).get("address")
    )
    return CalendarEvent(
        event_id=data["id"],
        subject=data.get("subject", ""),
        join_url=online.get("joinUrl") or data.get("webLink") or "",
        start=_parse_graph_time(data["start"]),
        end=_parse_graph_time(data["end"]),
        organizer=organizer,
        attendees=attendees,
        is_cancelled=bool(data.get("isCancelled", False)),
    )


class GraphCalendarClient:
    """CalendarClient backed by Microsoft Graph."""

    def __init__(self, config: CalendarConfig, call_timeout: float = 10.0) -> None:
        self.config = config
        self.call_timeout = call_timeout
        self._session: aiohttp.ClientSession | None = None
        self._token: str | None = None
        self._token_expires = 0.0
        self._token_lock = asyncio.Lock()

    async def connect(self) -> None:
        if self._session is None:
            self._session = aiohttp.ClientSession(
                timeout=aiohttp.ClientTimeout(total=self.call_timeout)
            )

    async def close(self) -> None:
        if self._session is not None:
            await self._session.close()
            self._session = None

    async def find_events(self, subject: str, since: datetime) -> list[CalendarEvent]:
        escaped = subject.replace("'", "''")
        start = since.astimezone(timezone.utc).strftime("%Y-%m-%dT%H:%M:%SZ")
        params = {
            "$filter": f"subject eq '{escaped}' and start/dateTime ge '{start}'",
            "$select": _SELECT,
            "$top": "50",
        }
        data = await self._request("GET", self._events_url(), params=params)
        return [_to_event(item) for item in data.get("value", [])]

    async def create_event(self, request: MeetingRequest, attendees: list[str]) -> CalendarEvent:
        body = {
            "subject": request.subject,
            "body": {"contentType": "text", "content": request.description},
            "start": _graph_time(request.start),
            "end": _graph_time(request.end),
            "attendees": [
                {"emailAddress": {"address": address}, "type": "required"} for address in attendees
            ],
            "isOnlineMeeting": True,
            "onlineMeetingProvider": "teamsForBusiness",
            "allowNewTimeProposals": False,
            "transactionId": f"changeflow-{request.kind.value}-{request.object_id}",
        }
        data = await self._request("POST", self._events_url(), json=body)
        return _to_event(data)

    async def cancel_event(self, event_id: str) -> None:
        url = f"{self._events_url()}/{quote(event_id, safe='')}/cancel"
        await self._request(
            "POST", url, missing_id=event_id, json={"comment": "This meeting has been cancelled."}
        )

    def _events_url(self) -> str:
        return f"{self.config.base_url}/users/{quote(self.config.organizer)}/events"

    async def _access_token(self) -> str:
        async with self._token_lock:
            if self._token and self._token_expires - 60 > time.time():
                return self._token
            url = f"{self.config.login_url}/{self.config.tenant_id}/oauth2/v2.0/token"
            form = {
                "grant_type": "client_credentials",
                "client_id": self.config.client_id,
                "client_secret": self.config.client_secret,
                "scope": TOKEN_SCOPE,
            }
            if self._session is None:
                raise MeetingError("Not connected to Graph")
            try:
                async with self._session.post(url, data=form) as resp:
                    payload = await resp.json(content_type=None)
                    if resp.status != 200:
                        raise MeetingError(
                            f"Graph token request failed: {payload.get('error', resp.status)}",
                            status=resp.status,
                            retryable=resp.status >= 500,
                        )
            except (aiohttp.ClientError, asyncio.TimeoutError) as e:
                raise MeetingError(f"Graph token request failed: {e}") from e
            self._token = payload["access_token"]
            self._token_expires = time.time() + int(payload.get("expires_in", 3600))
            return self._token

    async def _request(
        self, method: str, url: str, missing_id: str | None = None, **kwargs: Any
    ) -> dict[str, Any]:
        await self.connect()
        token = await self._access_token()
        headers = {"Authorization": f"Bearer {token}", "Prefer": 'outlook.timezone="UTC"'}
        if self._session is None:
            raise MeetingError("Not connected to Graph")
        try:
            async with self._session.request(method, url, headers=headers, **kwargs) as resp:
                if resp.status == 404 and missing_id is not None:
                    raise MeetingNotFoundError(missing_id)
                if resp.status >= 400:
                    text = await resp.text()
                    raise MeetingError(
                        f"Graph {method} failed with {resp.status}: {text[:200]}",
                        status=resp.status,
                        retryable=resp.status == 429 or resp.status >= 500,
                    )
                if resp.status in (202, 204):
                    return {}
                return await resp.json(content_type=None)
        except (aiohttp.ClientError, asyncio.TimeoutError) as e:
            raise MeetingError(f"Graph {method} failed: {e}") from e
