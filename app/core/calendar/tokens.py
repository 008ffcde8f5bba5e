# app/core/calendar/tokens.py

"""
Token Store & Refresher.

Хранит OAuth-подключения пользователей и выдаёт гарантированно живой
access token. Обновление токена сериализуется на уровне процесса
(``asyncio.Lock`` на credential) и на уровне БД (условный UPDATE по
старому ``expiry_time``).
"""

from __future__ import annotations

import asyncio
import logging
import weakref
from datetime import timedelta
from typing import Callable, Dict, Sequence

from sqlalchemy import delete, select, update
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

from app.config import settings
from app.core.clock import utcnow
from . import get_calendar_adapter
from .base import BaseCalendarAdapter, TokenGrant
from .errors import CredentialError, NotFoundError
from .models import CalendarCredential

log = logging.getLogger(__name__)

AdapterFactory = Callable[[str], BaseCalendarAdapter]

# loop -> {credential_id: Lock}; asyncio.Lock нельзя делить между event loop'ами
_refresh_locks: "weakref.WeakKeyDictionary[asyncio.AbstractEventLoop, Dict[int, asyncio.Lock]]" = (
    weakref.WeakKeyDictionary()
)


def _refresh_lock(credential_id: int) -> asyncio.Lock:
    loop = asyncio.get_running_loop()
    locks = _refresh_locks.setdefault(loop, {})
    lock = locks.get(credential_id)
    if lock is None:
        lock = locks[credential_id] = asyncio.Lock()
    return lock


class TokenStore:
    """
    Асинхронный сервис подключений календаря.
    Использует внедрение зависимостей (DI) для получения AsyncSession.
    """

    def __init__(self, db_session: AsyncSession, adapter_factory: AdapterFactory | None = None) -> None:
        self.db: AsyncSession = db_session
        self._adapter_factory: AdapterFactory = adapter_factory or get_calendar_adapter
        self.margin = timedelta(seconds=settings.TOKEN_REFRESH_MARGIN_SECONDS)

    # ------------------------------------------------------------------ #
    #                             Queries                                #
    # ------------------------------------------------------------------ #
    async def get_credential(self, user_id: str, provider: str) -> CalendarCredential:
        stmt = select(CalendarCredential).where(
            CalendarCredential.user_id == user_id,
            CalendarCredential.provider == provider,
        )
        credential = (await self.db.execute(stmt)).scalar_one_or_none()
        if credential is None:
            raise NotFoundError(f"No {provider} connection for user {user_id}")
        return credential

    async def list_credentials(self, user_id: str, active_only: bool = False) -> Sequence[CalendarCredential]:
        stmt = select(CalendarCredential).where(CalendarCredential.user_id == user_id)
        if active_only:
            stmt = stmt.where(CalendarCredential.is_active.is_(True))
        return (await self.db.scalars(stmt.order_by(CalendarCredential.provider))).all()

    async def list_active_credentials(self) -> Sequence[CalendarCredential]:
        """Все активные подключения всех пользователей (для периодической синхронизации)."""
        stmt = (
            select(CalendarCredential)
            .where(CalendarCredential.is_active.is_(True))
            .order_by(CalendarCredential.user_id, CalendarCredential.provider)
        )
        return (await self.db.scalars(stmt)).all()

    # ------------------------------------------------------------------ #
    #                         Connect / disconnect                       #
    # ------------------------------------------------------------------ #
    async def connect(
        self,
        user_id: str,
        provider: str,
        code: str,
        redirect_uri: str | None = None,
    ) -> CalendarCredential:
        """
        Обменивает authorization code на токены и сохраняет подключение.

        Повторное подключение того же провайдера обновляет существующую
        строку и снова делает её активной.

        Raises:
            CredentialError: код отклонён провайдером.
            TransientProviderError: сеть, таймаут, 5xx.
        """
        adapter = self._adapter_factory(provider)
        grant: TokenGrant = await adapter.exchange_code(code, redirect_uri)
        account_email = await adapter.get_account_identity(grant["access_token"])
        expiry = utcnow() + timedelta(seconds=grant["expires_in"])

        stmt = select(CalendarCredential).where(
            CalendarCredential.user_id == user_id,
            CalendarCredential.provider == provider,
        )
        credential = (await self.db.execute(stmt)).scalar_one_or_none()
        if credential is None:
            credential = CalendarCredential(user_id=user_id, provider=provider)
            self.db.add(credential)
        credential.access_token = grant["access_token"]
        # Провайдер может не прислать refresh token при повторном согласии
        if grant["refresh_token"]:
            credential.refresh_token = grant["refresh_token"]
        credential.expiry_time = expiry
        credential.account_email = account_email or credential.account_email
        credential.is_active = True
        await self.db.flush()
        await self.db.refresh(credential)
        log.info("Connected %s calendar for user %s (%s)", provider, user_id, account_email)
        return credential

    async def disconnect(self, user_id: str, provider: str, purge: bool = False) -> None:
        """
        Отключает провайдера. Ранее синхронизированные события остаются в БД.

        ``purge=True`` удаляет строку подключения, иначе она деактивируется.
        """
        credential = await self.get_credential(user_id, provider)
        if purge:
            await self.db.execute(delete(CalendarCredential).where(CalendarCredential.id == credential.id))
            log.info("Deleted %s credential for user %s", provider, user_id)
        else:
            credential.is_active = False
            log.info("Deactivated %s credential for user %s", provider, user_id)
        await self.db.flush()

    # ------------------------------------------------------------------ #
    #                             Refresh                                #
    # ------------------------------------------------------------------ #
    def _is_fresh(self, credential: CalendarCredential) -> bool:
        return credential.expiry_time - self.margin > utcnow()

    async def get_valid_access_token(self, credential: CalendarCredential) -> str:
        """
        Возвращает access token, который проживёт ещё как минимум ``margin``.

        Raises:
            CredentialError: refresh token отсутствует, отозван или недействителен.
            TransientProviderError: сеть, таймаут, 5xx, rate limit.
        """
        if self._is_fresh(credential):
            return credential.access_token

        async with _refresh_lock(credential.id):
            # Пока ждали замок, другой вызов мог уже обновить токен
            await self.db.refresh(credential)
            if self._is_fresh(credential):
                log.debug("Credential %s refreshed by a concurrent caller", credential.id)
                return credential.access_token
            return await self._refresh(credential)

    async def _refresh(self, credential: CalendarCredential) -> str:
        # после rollback атрибуты ORM-объекта истекают, поэтому читаем их заранее
        credential_id, user_id, provider = credential.id, credential.user_id, credential.provider
        if not credential.refresh_token:
            raise CredentialError(provider, "refresh_token", "no refresh token stored")

        adapter = self._adapter_factory(provider)
        try:
            grant = await adapter.refresh_token(credential.refresh_token)
        except CredentialError:
            # Подключение не деактивируем: решает пользователь
            log.warning(
                "Refresh rejected for user %s provider %s (credential %s)", user_id, provider, credential_id,
            )
            raise

        old_expiry = credential.expiry_time
        new_expiry = utcnow() + timedelta(seconds=grant["expires_in"])
        values: Dict[str, object] = {
            "access_token": grant["access_token"],
            "expiry_time": new_expiry,
            "updated_at": utcnow(),
        }
        if grant["refresh_token"]:
            values["refresh_token"] = grant["refresh_token"]

        try:
            result = await self.db.execute(
                update(CalendarCredential)
                .where(
                    CalendarCredential.id == credential_id,
                    CalendarCredential.expiry_time == old_expiry,
                )
                .values(**values)
                .execution_options(synchronize_session=False)
            )
            await self.db.commit()
        except SQLAlchemyError:
            await self.db.rollback()
            log.exception(
                "Failed to persist refreshed token for credential %s; scheduling retry", credential_id,
            )
            _schedule_persist(credential_id, old_expiry.isoformat(), values)
            return grant["access_token"]

        await self.db.refresh(credential)
        if result.rowcount == 0:
            # Другой процесс успел первым - используем его токен
            log.info("Credential %s was refreshed elsewhere; using the stored token", credential_id)
        else:
            log.info(
                "Refreshed %s token for user %s, expires %s",
                provider, user_id, new_expiry.isoformat(),
            )
        return credential.access_token


def _schedule_persist(credential_id: int, old_expiry: str, values: Dict[str, object]) -> None:
    from app.workers.tasks import persist_refreshed_token_task

    payload = {
        key: (value.isoformat() if hasattr(value, "isoformat") else value)
        for key, value in values.items()
        if key != "updated_at"
    }
    try:
        persist_refreshed_token_task.delay(credential_id, old_expiry, payload)
    except Exception:
        log.exception("Could not enqueue token persist retry for credential %s", credential_id)


__all__ = ["TokenStore", "AdapterFactory"]
