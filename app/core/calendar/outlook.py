# app/core/calendar/outlook.py

"""
Реализация адаптера через Microsoft identity platform + Microsoft Graph.
"""

from __future__ import annotations

import logging
from datetime import datetime
from typing import Any, Dict, List, Optional
from urllib.parse import urlencode

import httpx
from dateutil.parser import isoparse

from app.config import settings
from app.core.clock import to_naive_utc
from .base import BaseCalendarAdapter, EventPayload, RemoteEvent, TokenGrant
from .errors import RemoteEventNotFoundError
from .http import send

log = logging.getLogger(__name__)

GRAPH_URL = "https://graph.microsoft.com/v1.0"
OUTLOOK_SCOPES = ["offline_access", "User.Read", "Calendars.ReadWrite"]


def _login_url(path: str) -> str:
    return f"https://login.microsoftonline.com/{settings.MICROSOFT_TENANT}/oauth2/v2.0/{path}"


class OutlookCalendarAdapter(BaseCalendarAdapter):
    """Адаптер календаря Outlook (календарь по умолчанию ``/me/calendar``)."""

    name: str = "outlook"
    page_size: int = 100

    def __init__(self, timeout: float | None = None, transport: httpx.AsyncBaseTransport | None = None) -> None:
        super().__init__(timeout)
        self._transport = transport

    def _http(self, access_token: str | None = None) -> httpx.AsyncClient:
        headers = {}
        if access_token:
            headers["Authorization"] = f"Bearer {access_token}"
            # Graph отдаёт время в UTC, если попросить явно
            headers["Prefer"] = 'outlook.timezone="UTC"'
        return httpx.AsyncClient(timeout=self.timeout, transport=self._transport, headers=headers)

    # ───────────────────────── OAuth ─────────────────────────
    def authorization_url(self, state: str, redirect_uri: str | None = None) -> str:
        params = {
            "client_id": settings.MICROSOFT_CLIENT_ID or "",
            "response_type": "code",
            "redirect_uri": redirect_uri or settings.MICROSOFT_REDIRECT_URI or "",
            "scope": " ".join(OUTLOOK_SCOPES),
            "response_mode": "query",
            "state": state,
        }
        return f"{_login_url('authorize')}?{urlencode(params)}"

    async def _token_request(self, operation: str, data: Dict[str, str]) -> TokenGrant:
        payload = {
            "client_id": settings.MICROSOFT_CLIENT_ID or "",
            "client_secret": settings.MICROSOFT_CLIENT_SECRET or "",
            "scope": " ".join(OUTLOOK_SCOPES),
            **data,
        }
        async with self._http() as client:
            response = await send(client, self.name, operation, "POST", _login_url("token"), data=payload)
        tokens = response.json()
        return TokenGrant(
            access_token=tokens["access_token"],
            # Microsoft ротирует refresh token при каждом обновлении
            refresh_token=tokens.get("refresh_token"),
            expires_in=int(tokens.get("expires_in", 3600)),
        )

    async def exchange_code(self, code: str, redirect_uri: str | None = None) -> TokenGrant:
        return await self._bounded("exchange_code", self._token_request("exchange_code", {
            "code": code,
            "redirect_uri": redirect_uri or settings.MICROSOFT_REDIRECT_URI or "",
            "grant_type": "authorization_code",
        }))

    async def refresh_token(self, refresh_token: str) -> TokenGrant:
        return await self._bounded("refresh_token", self._token_request("refresh_token", {
            "refresh_token": refresh_token,
            "grant_type": "refresh_token",
        }))

    async def get_account_identity(self, access_token: str) -> str:
        async with self._http(access_token) as client:
            response = await send(client, self.name, "get_account_identity", "GET", f"{GRAPH_URL}/me")
        data = response.json()
        return data.get("mail") or data.get("userPrincipalName") or ""

    # ───────────────────────── Events ─────────────────────────
    async def list_events(self, access_token: str, start: datetime, end: datetime) -> List[RemoteEvent]:
        out: List[RemoteEvent] = []
        url: Optional[str] = f"{GRAPH_URL}/me/calendar/calendarView"
        params: Optional[Dict[str, Any]] = {
            "startDateTime": _to_graph_time(start),
            "endDateTime": _to_graph_time(end),
            "$select": "id,subject,bodyPreview,start,end,location,isCancelled",
            "$orderby": "start/dateTime",
            "$top": self.page_size,
        }
        async with self._http(access_token) as client:
            while url:
                response = await send(client, self.name, "list_events", "GET", url, params=params)
                data = response.json()
                for item in data.get("value", []):
                    if item.get("isCancelled"):
                        continue
                    out.append(_from_graph(item))
                # nextLink уже содержит все query-параметры
                url, params = data.get("@odata.nextLink"), None
        log.debug("[Calendar] outlook returned %d events between %s and %s", len(out), start, end)
        return out

    async def create_event(self, access_token: str, event: EventPayload) -> str:
        async with self._http(access_token) as client:
            response = await send(
                client, self.name, "create_event", "POST", f"{GRAPH_URL}/me/calendar/events",
                json=_to_graph(event),
            )
        external_id = response.json()["id"]
        log.info("[Calendar] outlook insert event %s: %s @ %s", external_id, event["title"], event["start_time"].isoformat())
        return external_id

    async def update_event(self, access_token: str, external_id: str, event: EventPayload) -> None:
        async with self._http(access_token) as client:
            await send(
                client, self.name, "update_event", "PATCH", f"{GRAPH_URL}/me/events/{external_id}",
                json=_to_graph(event),
            )

    async def delete_event(self, access_token: str, external_id: str) -> None:
        try:
            async with self._http(access_token) as client:
                await send(client, self.name, "delete_event", "DELETE", f"{GRAPH_URL}/me/events/{external_id}")
        except RemoteEventNotFoundError:
            log.info("[Calendar] outlook event %s already gone, treating delete as done", external_id)


def _to_graph_time(value: datetime) -> str:
    return to_naive_utc(value).replace(microsecond=0).isoformat()


def _to_graph(event: EventPayload) -> Dict[str, Any]:
    return {
        "subject": event["title"],
        "body": {"contentType": "text", "content": event["description"] or ""},
        "start": {"dateTime": _to_graph_time(event["start_time"]), "timeZone": "UTC"},
        "end": {"dateTime": _to_graph_time(event["end_time"]), "timeZone": "UTC"},
        "location": {"displayName": event["location"] or ""},
    }


def _parse_graph_time(value: Dict[str, str]) -> datetime:
    # Graph присылает до 7 знаков дробной части и отдельное поле timeZone
    parsed = isoparse(value["dateTime"])
    return to_naive_utc(parsed).replace(microsecond=0)


def _from_graph(item: Dict[str, Any]) -> RemoteEvent:
    location = (item.get("location") or {}).get("displayName") or None
    return RemoteEvent(
        external_id=item["id"],
        title=item.get("subject") or "Untitled Event",
        description=item.get("bodyPreview") or None,
        start_time=_parse_graph_time(item["start"]),
        end_time=_parse_graph_time(item["end"]),
        location=location,
    )


__all__ = ["OutlookCalendarAdapter"]
