# app/core/calendar/google.py

"""
Реализация адаптера через Google Calendar API (v3).

OAuth-эндпоинты вызываются через httpx, события - через googleapiclient
(синхронный клиент, поэтому ``execute()`` уходит в default executor).
"""

from __future__ import annotations

import asyncio
import json
import logging
from datetime import datetime
from typing import Any, Callable, Dict, List, Optional
from urllib.parse import urlencode

import httpx
import httplib2
import google_auth_httplib2
from dateutil.parser import isoparse
from google.oauth2.credentials import Credentials
from googleapiclient.discovery import build
from googleapiclient.errors import HttpError

from app.config import settings
from app.core.clock import to_naive_utc
from .base import BaseCalendarAdapter, EventPayload, RemoteEvent, TokenGrant
from .errors import CredentialError, ProviderError, RemoteEventNotFoundError, TransientProviderError
from .http import send

log = logging.getLogger(__name__)

GOOGLE_AUTH_URL = "https://accounts.google.com/o/oauth2/v2/auth"
GOOGLE_TOKEN_URL = "https://oauth2.googleapis.com/token"
GOOGLE_USERINFO_URL = "https://www.googleapis.com/oauth2/v2/userinfo"
GOOGLE_SCOPES = [
    "https://www.googleapis.com/auth/calendar.readonly",
    "https://www.googleapis.com/auth/calendar.events",
    "https://www.googleapis.com/auth/userinfo.email",
]


class GoogleCalendarAdapter(BaseCalendarAdapter):
    """Адаптер Google Calendar; календарь пользователя - всегда ``primary``."""

    name: str = "google"
    calendar_id: str = "primary"

    def __init__(
        self,
        timeout: float | None = None,
        transport: httpx.AsyncBaseTransport | None = None,
        service_factory: Callable[[str], Any] | None = None,
    ) -> None:
        super().__init__(timeout)
        self._transport = transport
        self._service_factory = service_factory or self._build_service

    # ───────────────────────── OAuth ─────────────────────────
    def authorization_url(self, state: str, redirect_uri: str | None = None) -> str:
        params = {
            "client_id": settings.GOOGLE_CLIENT_ID or "",
            "redirect_uri": redirect_uri or settings.GOOGLE_REDIRECT_URI or "",
            "response_type": "code",
            "scope": " ".join(GOOGLE_SCOPES),
            "access_type": "offline",
            "prompt": "consent",  # иначе Google не вернёт refresh token повторно
            "state": state,
        }
        return f"{GOOGLE_AUTH_URL}?{urlencode(params)}"

    def _http(self) -> httpx.AsyncClient:
        return httpx.AsyncClient(timeout=self.timeout, transport=self._transport)

    async def _token_request(self, operation: str, data: Dict[str, str]) -> TokenGrant:
        payload = {
            "client_id": settings.GOOGLE_CLIENT_ID or "",
            "client_secret": settings.GOOGLE_CLIENT_SECRET or "",
            **data,
        }
        async with self._http() as client:
            response = await send(client, self.name, operation, "POST", GOOGLE_TOKEN_URL, data=payload)
        tokens = response.json()
        return TokenGrant(
            access_token=tokens["access_token"],
            refresh_token=tokens.get("refresh_token"),
            expires_in=int(tokens.get("expires_in", 3600)),
        )

    async def exchange_code(self, code: str, redirect_uri: str | None = None) -> TokenGrant:
        return await self._bounded("exchange_code", self._token_request("exchange_code", {
            "code": code,
            "redirect_uri": redirect_uri or settings.GOOGLE_REDIRECT_URI or "",
            "grant_type": "authorization_code",
        }))

    async def refresh_token(self, refresh_token: str) -> TokenGrant:
        return await self._bounded("refresh_token", self._token_request("refresh_token", {
            "refresh_token": refresh_token,
            "grant_type": "refresh_token",
        }))

    async def get_account_identity(self, access_token: str) -> str:
        async with self._http() as client:
            response = await send(
                client, self.name, "get_account_identity", "GET", GOOGLE_USERINFO_URL,
                headers={"Authorization": f"Bearer {access_token}"},
            )
        return response.json().get("email", "")

    # ───────────────────────── Events ─────────────────────────
    def _build_service(self, access_token: str) -> Any:
        creds = Credentials(token=access_token)
        http = google_auth_httplib2.AuthorizedHttp(creds, http=httplib2.Http(timeout=self.timeout))
        return build("calendar", "v3", http=http, cache_discovery=False)

    async def _execute(self, operation: str, request: Any) -> Dict[str, Any]:
        loop = asyncio.get_running_loop()
        try:
            return await self._bounded(operation, loop.run_in_executor(None, request.execute))
        except HttpError as exc:
            raise _map_http_error(operation, exc) from exc
        except (httplib2.HttpLib2Error, OSError) as exc:
            raise TransientProviderError(self.name, operation, f"transport error: {exc}") from exc

    async def list_events(self, access_token: str, start: datetime, end: datetime) -> List[RemoteEvent]:
        events_api = self._service_factory(access_token).events()
        out: List[RemoteEvent] = []
        page_token: Optional[str] = None
        while True:
            resp = await self._execute("list_events", events_api.list(
                calendarId=self.calendar_id,
                timeMin=_to_rfc3339(start),
                timeMax=_to_rfc3339(end),
                singleEvents=True,
                orderBy="startTime",
                pageToken=page_token,
            ))
            for item in resp.get("items", []):
                if item.get("status") == "cancelled":
                    continue
                out.append(_from_google(item))
            page_token = resp.get("nextPageToken")
            if not page_token:
                break
        log.debug("[Calendar] google returned %d events between %s and %s", len(out), start, end)
        return out

    async def create_event(self, access_token: str, event: EventPayload) -> str:
        resp = await self._execute("create_event", self._service_factory(access_token).events().insert(
            calendarId=self.calendar_id, body=_to_google(event), sendUpdates="none",
        ))
        log.info("[Calendar] google insert event %s: %s @ %s", resp.get("id"), event["title"], event["start_time"].isoformat())
        return resp["id"]

    async def update_event(self, access_token: str, external_id: str, event: EventPayload) -> None:
        await self._execute("update_event", self._service_factory(access_token).events().patch(
            calendarId=self.calendar_id, eventId=external_id, body=_to_google(event), sendUpdates="none",
        ))

    async def delete_event(self, access_token: str, external_id: str) -> None:
        try:
            await self._execute("delete_event", self._service_factory(access_token).events().delete(
                calendarId=self.calendar_id, eventId=external_id, sendUpdates="none",
            ))
        except RemoteEventNotFoundError:
            log.info("[Calendar] google event %s already gone, treating delete as done", external_id)


# Google отдаёт превышение квоты как 403 с одной из этих причин
RATE_LIMIT_REASONS = frozenset({"rateLimitExceeded", "userRateLimitExceeded"})


def _error_reasons(exc: HttpError) -> set[str]:
    """Collect ``reason`` values from the error body (``{"error": {"errors": [...]}}`` or a bare ``errors`` list)."""
    try:
        data = json.loads(exc.content.decode("utf-8") if isinstance(exc.content, bytes) else exc.content)
    except (TypeError, ValueError):
        return set()
    if not isinstance(data, dict):
        return set()
    error = data.get("error")
    items = (error.get("errors") if isinstance(error, dict) else None) or data.get("errors") or []
    return {item.get("reason") for item in items if isinstance(item, dict) and item.get("reason")}


def _map_http_error(operation: str, exc: HttpError) -> ProviderError:
    status = int(getattr(exc.resp, "status", 0) or 0)
    message = exc.reason if hasattr(exc, "reason") else str(exc)
    if status == 403 and _error_reasons(exc) & RATE_LIMIT_REASONS:
        return TransientProviderError("google", operation, message or "rate limited", status_code=status)
    if status in (401, 403):
        return CredentialError("google", operation, message or "unauthorized", status_code=status)
    if status in (404, 410):
        return RemoteEventNotFoundError("google", operation, message or "not found", status_code=status)
    if status == 429 or status >= 500:
        return TransientProviderError("google", operation, message or f"HTTP {status}", status_code=status)
    return ProviderError("google", operation, message or f"HTTP {status}", status_code=status)


def _to_rfc3339(value: datetime) -> str:
    return to_naive_utc(value).replace(microsecond=0).isoformat() + "Z"


def _to_google(event: EventPayload) -> Dict[str, Any]:
    body: Dict[str, Any] = {
        "summary": event["title"],
        "description": event["description"] or "",
        "start": {"dateTime": _to_rfc3339(event["start_time"]), "timeZone": settings.EVENT_TIMEZONE},
        "end": {"dateTime": _to_rfc3339(event["end_time"]), "timeZone": settings.EVENT_TIMEZONE},
    }
    if event["location"]:
        body["location"] = event["location"]
    return body


def _parse_google_time(value: Dict[str, str]) -> datetime:
    # Целодневные события приходят с полем "date" без времени
    raw = value.get("dateTime") or value.get("date") or ""
    return to_naive_utc(isoparse(raw))


def _from_google(item: Dict[str, Any]) -> RemoteEvent:
    start = _parse_google_time(item.get("start", {}))
    end_raw = item.get("end")
    return RemoteEvent(
        external_id=item["id"],
        title=item.get("summary") or "Untitled Event",
        description=item.get("description") or None,
        start_time=start,
        end_time=_parse_google_time(end_raw) if end_raw else start,
        location=item.get("location") or None,
    )


__all__ = ["GoogleCalendarAdapter"]
