# app/core/calendar/noop.py

from __future__ import annotations

import logging
import uuid
from datetime import datetime
from typing import Dict, List

from .base import BaseCalendarAdapter, EventPayload, RemoteEvent, TokenGrant
from .errors import CredentialError, RemoteEventNotFoundError

log = logging.getLogger(__name__)


class NoOpCalendarAdapter(BaseCalendarAdapter):
    """
    Асинхронная заглушка-календарь; хранит события в оперативной памяти.

    Хранилище общее для всех экземпляров (ключ - access token), чтобы
    push и последующий pull видели одни и те же данные, как у настоящего
    провайдера. Используется в dev и в тестах.
    """

    name: str = "noop"
    token_lifetime_seconds: int = 3600

    _calendars: Dict[str, Dict[str, RemoteEvent]] = {}
    _revoked: set[str] = set()

    @classmethod
    def reset(cls) -> None:
        cls._calendars = {}
        cls._revoked = set()

    @classmethod
    def revoke(cls, refresh_token: str) -> None:
        cls._revoked.add(refresh_token)

    def _calendar(self, access_token: str) -> Dict[str, RemoteEvent]:
        # Токены noop имеют вид "<account>:<nonce>", календарь привязан к account
        account = access_token.split(":", 1)[0]
        return self._calendars.setdefault(account, {})

    def authorization_url(self, state: str, redirect_uri: str | None = None) -> str:
        return f"noop://authorize?state={state}"

    async def exchange_code(self, code: str, redirect_uri: str | None = None) -> TokenGrant:
        log.info("NoOp: exchanging code for account %s", code)
        return TokenGrant(
            access_token=f"{code}:{uuid.uuid4().hex}",
            refresh_token=f"{code}:refresh",
            expires_in=self.token_lifetime_seconds,
        )

    async def refresh_token(self, refresh_token: str) -> TokenGrant:
        if refresh_token in self._revoked:
            raise CredentialError(self.name, "refresh_token", "invalid_grant", status_code=400)
        account = refresh_token.split(":", 1)[0]
        log.info("NoOp: refreshing token for account %s", account)
        return TokenGrant(
            access_token=f"{account}:{uuid.uuid4().hex}",
            refresh_token=None,
            expires_in=self.token_lifetime_seconds,
        )

    async def get_account_identity(self, access_token: str) -> str:
        return f"{access_token.split(':', 1)[0]}@noop.local"

    async def list_events(self, access_token: str, start: datetime, end: datetime) -> List[RemoteEvent]:
        events = [
            ev for ev in self._calendar(access_token).values()
            if ev["end_time"] >= start and ev["start_time"] <= end
        ]
        log.debug("NoOp: Found %d events between %s and %s", len(events), start, end)
        return [RemoteEvent(**ev) for ev in sorted(events, key=lambda ev: ev["start_time"])]

    async def create_event(self, access_token: str, event: EventPayload) -> str:
        external_id = uuid.uuid4().hex
        self._calendar(access_token)[external_id] = RemoteEvent(external_id=external_id, **event)
        log.info("NoOp: Event '%s' added with id %s", event["title"], external_id)
        return external_id

    async def update_event(self, access_token: str, external_id: str, event: EventPayload) -> None:
        calendar = self._calendar(access_token)
        if external_id not in calendar:
            raise RemoteEventNotFoundError(self.name, "update_event", "not found", status_code=404)
        calendar[external_id] = RemoteEvent(external_id=external_id, **event)
        log.info("NoOp: Event id %s updated", external_id)

    async def delete_event(self, access_token: str, external_id: str) -> None:
        if self._calendar(access_token).pop(external_id, None) is None:
            log.warning("NoOp: Event id %s not found for deletion", external_id)
        else:
            log.info("NoOp: Event id %s deleted", external_id)


__all__ = ["NoOpCalendarAdapter"]
