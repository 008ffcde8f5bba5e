# app/core/calendar/base.py
"""
Abstract base and common types for calendar provider adapters.

Адаптер - это набор сетевых операций без состояния: токены он не кэширует
(это работа ``TokenStore``) и в локальную БД не ходит.
"""

from __future__ import annotations

import asyncio
import logging
from abc import ABC, abstractmethod
from datetime import datetime
from typing import Awaitable, List, Optional, TypedDict, TypeVar

from app.config import settings
from .errors import TransientProviderError

log = logging.getLogger(__name__)

T = TypeVar("T")


class TokenGrant(TypedDict):
    """Результат обмена кода или refresh-запроса."""
    access_token: str
    refresh_token: Optional[str]  # None, если провайдер не прислал новый
    expires_in: int  # секунды


class EventPayload(TypedDict):
    """Поля локального события, которые уходят провайдеру."""
    title: str
    description: Optional[str]
    start_time: datetime  # naive UTC
    end_time: datetime  # naive UTC
    location: Optional[str]


class RemoteEvent(EventPayload):
    """Событие, полученное от провайдера."""
    external_id: str


class BaseCalendarAdapter(ABC):
    """
    Единый асинхронный интерфейс над API календарей (Google, Outlook, ...).
    Экземпляр создаётся на одну операцию через ``get_calendar_adapter()``.
    """

    # Имя провайдера (например, 'noop', 'google')
    name: str

    def __init__(self, timeout: float | None = None) -> None:
        self.timeout: float = timeout if timeout is not None else settings.PROVIDER_TIMEOUT_SECONDS

    async def _bounded(self, operation: str, awaitable: Awaitable[T]) -> T:
        """Run a provider call under the adapter timeout; a timeout becomes a transient error."""
        try:
            return await asyncio.wait_for(awaitable, timeout=self.timeout)
        except asyncio.TimeoutError as exc:
            log.warning("[%s] %s timed out after %.1fs", self.name, operation, self.timeout)
            raise TransientProviderError(self.name, operation, "timed out") from exc

    @abstractmethod
    def authorization_url(self, state: str, redirect_uri: str | None = None) -> str:
        """URL страницы согласия провайдера (offline access)."""
        ...

    @abstractmethod
    async def exchange_code(self, code: str, redirect_uri: str | None = None) -> TokenGrant:
        """
        Обменивает authorization code на токены.

        Raises:
            CredentialError: код отклонён провайдером.
            TransientProviderError: сеть, таймаут, 5xx.
        """
        ...

    @abstractmethod
    async def refresh_token(self, refresh_token: str) -> TokenGrant:
        """
        Получает новый access token по refresh token.

        Raises:
            CredentialError: refresh token отозван или недействителен.
            TransientProviderError: сеть, таймаут, 5xx, rate limit.
        """
        ...

    @abstractmethod
    async def get_account_identity(self, access_token: str) -> str:
        """Email (или иной идентификатор) подключённого аккаунта."""
        ...

    @abstractmethod
    async def list_events(self, access_token: str, start: datetime, end: datetime) -> List[RemoteEvent]:
        """
        Возвращает события провайдера в интервале [start, end] (naive UTC).
        """
        ...

    @abstractmethod
    async def create_event(self, access_token: str, event: EventPayload) -> str:
        """Создаёт событие и возвращает присвоенный провайдером external id."""
        ...

    @abstractmethod
    async def update_event(self, access_token: str, external_id: str, event: EventPayload) -> None:
        """Перезаписывает поля существующего события."""
        ...

    @abstractmethod
    async def delete_event(self, access_token: str, external_id: str) -> None:
        """
        Удаляет событие. Идемпотентно: неизвестный или уже удалённый id - это успех.
        """
        ...


__all__ = [
    "TokenGrant",
    "EventPayload",
    "RemoteEvent",
    "BaseCalendarAdapter",
]
