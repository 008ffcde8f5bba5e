# app/core/calendar/reconciler.py

"""
Event Reconciler: двусторонняя синхронизация локальных событий с провайдером.

Порядок прохода - сначала push (локальные изменения уходят провайдеру),
затем pull (окно событий провайдера сливается в локальную БД по
``(provider, external_id)``). Конфликты решаются по принципу
"последняя запись побеждает": pull перезаписывает поля, видимые провайдеру.
"""

from __future__ import annotations

import asyncio
import logging
from datetime import datetime, timedelta
from typing import Any, Awaitable, Dict, Iterable, List, Optional, Sequence, Tuple, TypeVar

from dateutil.relativedelta import relativedelta
from sqlalchemy import or_, select, update
from sqlalchemy.dialects.postgresql import insert as pg_insert
from sqlalchemy.dialects.sqlite import insert as sqlite_insert
from sqlalchemy.ext.asyncio import AsyncSession

from app.config import settings
from app.core.clock import utcnow
from app.core.reminders.models import ReminderRecord
from . import get_calendar_adapter
from .base import BaseCalendarAdapter, EventPayload, RemoteEvent
from .errors import CalendarSyncError, NotFoundError, ProviderError, RemoteEventNotFoundError, TransientProviderError
from .models import CalendarCredential, CalendarEvent, fields_digest
from .schemas import EventIn, EventUpdate, SyncError, SyncResult
from .tokens import AdapterFactory, TokenStore

log = logging.getLogger(__name__)

T = TypeVar("T")

# SQLite ограничивает число bind-параметров в одном запросе
_IN_CHUNK = 500


def _payload(event: CalendarEvent) -> EventPayload:
    return EventPayload(
        title=event.title,
        description=event.description,
        start_time=event.start_time,
        end_time=event.end_time,
        location=event.location,
    )


def _sync_error(
    exc: Exception,
    operation: str,
    event_id: int | None = None,
    external_id: str | None = None,
) -> SyncError:
    if isinstance(exc, ProviderError):
        return SyncError(
            kind=exc.kind, operation=operation, message=exc.message,
            event_id=event_id, external_id=external_id,
        )
    return SyncError(kind="provider", operation=operation, message=str(exc), event_id=event_id, external_id=external_id)


class EventReconciler:
    """
    Асинхронный сервис событий календаря.
    Использует внедрение зависимостей (DI) для получения AsyncSession.
    """

    def __init__(
        self,
        db_session: AsyncSession,
        adapter_factory: AdapterFactory | None = None,
        timeout: float | None = None,
    ) -> None:
        self.db: AsyncSession = db_session
        self._adapter_factory: AdapterFactory = adapter_factory or get_calendar_adapter
        self.tokens = TokenStore(db_session, self._adapter_factory)
        self.timeout: float = timeout if timeout is not None else settings.PROVIDER_TIMEOUT_SECONDS

    async def _call(self, provider: str, operation: str, awaitable: Awaitable[T]) -> T:
        try:
            return await asyncio.wait_for(awaitable, timeout=self.timeout)
        except asyncio.TimeoutError as exc:
            raise TransientProviderError(provider, operation, "timed out") from exc

    # ------------------------------------------------------------------ #
    #                         Local event CRUD                           #
    # ------------------------------------------------------------------ #
    async def get_event(self, user_id: str, event_id: int) -> CalendarEvent:
        event = await self.db.get(CalendarEvent, event_id)
        if event is None or event.user_id != user_id:
            raise NotFoundError(f"Event {event_id} not found")
        return event

    async def list_events(
        self,
        user_id: str,
        start: Optional[datetime] = None,
        end: Optional[datetime] = None,
    ) -> Sequence[CalendarEvent]:
        stmt = select(CalendarEvent).where(CalendarEvent.user_id == user_id)
        if start is not None:
            stmt = stmt.where(CalendarEvent.end_time >= start)
        if end is not None:
            stmt = stmt.where(CalendarEvent.start_time <= end)
        return (await self.db.scalars(stmt.order_by(CalendarEvent.start_time, CalendarEvent.id))).all()

    async def create_event(
        self,
        user_id: str,
        payload: EventIn,
        source_record_id: str | None = None,
        source_slot: str | None = None,
    ) -> CalendarEvent:
        """Создаёт локальное событие; провайдеру его отправит следующий push."""
        event = CalendarEvent(
            user_id=user_id,
            source_record_id=source_record_id,
            source_slot=source_slot,
            **payload.model_dump(),
        )
        self.db.add(event)
        await self.db.flush()
        await self.db.refresh(event)
        log.info("Created event id=%d for user %s: '%s'", event.id, user_id, event.title)
        return event

    async def update_event(self, user_id: str, event_id: int, payload: EventUpdate) -> CalendarEvent:
        event = await self.get_event(user_id, event_id)
        changes = payload.model_dump(exclude_unset=True)
        # NOT NULL поля нельзя сбросить в None
        for field in ("title", "start_time", "end_time", "event_type"):
            if field in changes and changes[field] is None:
                changes.pop(field)
        start = changes.get("start_time", event.start_time)
        end = changes.get("end_time", event.end_time)
        if end < start:
            raise ValueError("end_time must not be before start_time")
        for field, value in changes.items():
            setattr(event, field, value)
        await self.db.flush()
        await self.db.refresh(event)
        log.info("Updated event id=%d for user %s (%s)", event.id, user_id, ", ".join(sorted(changes)) or "no changes")
        return event

    async def delete_event(self, user_id: str, event_id: int) -> None:
        """
        Удаляет событие пользователя. Удаление у провайдера - best effort:
        ошибки логируются, локальная строка удаляется в любом случае.

        Raises:
            NotFoundError: события нет или оно принадлежит другому пользователю.
        """
        event = await self.get_event(user_id, event_id)
        await self.delete_events(user_id, [event])

    async def delete_events(self, user_id: str, events: Sequence[CalendarEvent]) -> int:
        """Удаляет уже загруженные события одного пользователя (remote best effort + local)."""
        if not events:
            return 0
        tokens: Dict[str, Optional[Tuple[BaseCalendarAdapter, str]]] = {}
        for event in events:
            if event.user_id != user_id:
                raise NotFoundError(f"Event {event.id} not found")
            if event.provider and event.external_id:
                await self._delete_remote(user_id, event, tokens)

        ids = [event.id for event in events]
        await self.db.execute(
            update(ReminderRecord)
            .where(ReminderRecord.calendar_event_id.in_(ids))
            .values(calendar_event_id=None)
            .execution_options(synchronize_session=False)
        )
        for event in events:
            await self.db.delete(event)
        await self.db.flush()
        log.info("Deleted %d event(s) for user %s: %s", len(ids), user_id, ids)
        return len(ids)

    async def _delete_remote(
        self,
        user_id: str,
        event: CalendarEvent,
        tokens: Dict[str, Optional[Tuple[BaseCalendarAdapter, str]]],
    ) -> None:
        provider, external_id, event_id = event.provider, event.external_id, event.id
        if provider not in tokens:
            tokens[provider] = await self._adapter_with_token(user_id, provider)
        pair = tokens[provider]
        if pair is None:
            log.info("No usable %s connection for user %s; event %s removed locally only", provider, user_id, event_id)
            return
        adapter, access_token = pair
        try:
            await self._call(provider, "delete_event", adapter.delete_event(access_token, external_id))
        except CalendarSyncError as exc:
            log.warning(
                "Remote delete failed for user %s provider %s event %s (%s): %s",
                user_id, provider, event_id, external_id, exc,
            )

    async def _adapter_with_token(self, user_id: str, provider: str) -> Optional[Tuple[BaseCalendarAdapter, str]]:
        stmt = select(CalendarCredential).where(
            CalendarCredential.user_id == user_id,
            CalendarCredential.provider == provider,
            CalendarCredential.is_active.is_(True),
        )
        credential = (await self.db.execute(stmt)).scalar_one_or_none()
        if credential is None:
            return None
        try:
            access_token = await self.tokens.get_valid_access_token(credential)
        except ProviderError as exc:
            log.warning("Cannot obtain %s token for user %s: %s", provider, user_id, exc)
            return None
        return self._adapter_factory(provider), access_token

    # ------------------------------------------------------------------ #
    #                              Sync                                  #
    # ------------------------------------------------------------------ #
    async def sync_provider(self, user_id: str, credential: CalendarCredential) -> SyncResult:
        """
        Полный проход синхронизации одного подключения: push, затем pull.

        Ошибки отдельных событий собираются в ``SyncResult.errors``,
        проход при этом продолжается.

        Raises:
            NotFoundError: подключение принадлежит другому пользователю.
        """
        if credential.user_id != user_id:
            raise NotFoundError(f"Connection {credential.id} not found")
        provider = credential.provider
        result = SyncResult(provider=provider)

        prepared = await self._prepare(user_id, credential, result)
        if prepared is None:
            return result
        adapter, access_token = prepared

        result.pushed = await self._push(user_id, provider, adapter, access_token, result.errors)
        result.pulled = await self._pull(user_id, provider, adapter, access_token, result.errors)
        log.info(
            "Sync %s for user %s: pushed=%d pulled=%d errors=%d",
            provider, user_id, result.pushed, result.pulled, len(result.errors),
        )
        return result

    async def sync_user(self, user_id: str, provider: str | None = None) -> List[SyncResult]:
        """Синхронизирует все активные подключения пользователя (или одно)."""
        credentials = await self.tokens.list_credentials(user_id, active_only=True)
        if provider is not None:
            credentials = [c for c in credentials if c.provider == provider]
            if not credentials:
                raise NotFoundError(f"No active {provider} connection for user {user_id}")
        return [await self.sync_provider(user_id, credential) for credential in credentials]

    async def push_user_events(self, user_id: str) -> List[SyncResult]:
        """Только push по всем активным подключениям; вызывается после локальных изменений."""
        results: List[SyncResult] = []
        for credential in await self.tokens.list_credentials(user_id, active_only=True):
            result = SyncResult(provider=credential.provider)
            prepared = await self._prepare(user_id, credential, result)
            if prepared is not None:
                adapter, access_token = prepared
                result.pushed = await self._push(user_id, result.provider, adapter, access_token, result.errors)
            results.append(result)
        return results

    async def _prepare(
        self,
        user_id: str,
        credential: CalendarCredential,
        result: SyncResult,
    ) -> Optional[Tuple[BaseCalendarAdapter, str]]:
        provider = result.provider
        if not credential.is_active:
            result.errors.append(SyncError(kind="credential", operation="sync", message="connection is inactive"))
            return None
        try:
            access_token = await self.tokens.get_valid_access_token(credential)
        except ProviderError as exc:
            log.warning("Sync %s for user %s aborted, token unavailable: %s", provider, user_id, exc)
            result.errors.append(_sync_error(exc, "refresh_token"))
            return None
        return self._adapter_factory(provider), access_token

    # --- push ---
    async def _push(
        self,
        user_id: str,
        provider: str,
        adapter: BaseCalendarAdapter,
        access_token: str,
        errors: List[SyncError],
    ) -> int:
        stmt = (
            select(CalendarEvent)
            .where(
                CalendarEvent.user_id == user_id,
                or_(CalendarEvent.provider == provider, CalendarEvent.provider.is_(None)),
            )
            .order_by(CalendarEvent.id)
        )
        candidates = [event for event in (await self.db.scalars(stmt)).all() if event.needs_push]
        if not candidates:
            return 0
        candidates = await self._claim_for_push(candidates, utcnow())
        if not candidates:
            return 0

        semaphore = asyncio.Semaphore(max(1, settings.SYNC_PUSH_CONCURRENCY))

        async def push_one(external_id: str | None, payload: EventPayload) -> str:
            async with semaphore:
                if external_id is not None:
                    try:
                        await self._call(provider, "update_event", adapter.update_event(access_token, external_id, payload))
                        return external_id
                    except RemoteEventNotFoundError:
                        log.info("Event %s vanished from %s, re-creating", external_id, provider)
                return await self._call(provider, "create_event", adapter.create_event(access_token, payload))

        jobs = [(event, _payload(event), event.fields_digest()) for event in candidates]
        outcomes = await asyncio.gather(
            *(push_one(event.external_id, payload) for event, payload, _ in jobs),
            return_exceptions=True,
        )

        pushed = 0
        now = utcnow()
        for (event, _, digest), outcome in zip(jobs, outcomes):
            if isinstance(outcome, BaseException):
                if not isinstance(outcome, Exception):
                    raise outcome
                operation = "update_event" if event.external_id else "create_event"
                if isinstance(outcome, ProviderError):
                    log.warning(
                        "Push of event %s failed for user %s provider %s (%s): %s",
                        event.id, user_id, provider, operation, outcome,
                    )
                else:
                    log.error(
                        "Push of event %s failed for user %s provider %s (%s)",
                        event.id, user_id, provider, operation, exc_info=outcome,
                    )
                errors.append(_sync_error(outcome, operation, event_id=event.id, external_id=event.external_id))
                continue
            event.provider = provider
            event.external_id = outcome
            event.sync_hash = digest
            event.last_synced_at = now
            pushed += 1
        await self.db.flush()
        await self._release_push_claims([event.id for event, _, _ in jobs])
        return pushed

    async def _claim_for_push(self, candidates: Sequence[CalendarEvent], now: datetime) -> List[CalendarEvent]:
        """
        Захватывает события под push условным UPDATE и сразу коммитит.

        Событие пропускается, если его держит другой проход или если оно
        уже изменилось после чтения (``external_id``/``sync_hash`` другие):
        тогда его отправил параллельный проход.
        """
        await self.db.flush()
        expired = now - timedelta(seconds=settings.SYNC_PUSH_CLAIM_SECONDS)
        claimed: List[CalendarEvent] = []
        for event in candidates:
            result = await self.db.execute(
                update(CalendarEvent)
                .where(
                    CalendarEvent.id == event.id,
                    CalendarEvent.external_id.is_not_distinct_from(event.external_id),
                    CalendarEvent.sync_hash.is_not_distinct_from(event.sync_hash),
                    or_(CalendarEvent.push_claimed_at.is_(None), CalendarEvent.push_claimed_at < expired),
                )
                .values(push_claimed_at=now, updated_at=CalendarEvent.updated_at)
                .execution_options(synchronize_session=False)
            )
            if result.rowcount == 1:
                claimed.append(event)
            else:
                log.debug("Event %s is being pushed by another pass, skipped", event.id)
        await self.db.commit()
        return claimed

    async def _release_push_claims(self, event_ids: List[int]) -> None:
        for offset in range(0, len(event_ids), _IN_CHUNK):
            await self.db.execute(
                update(CalendarEvent)
                .where(CalendarEvent.id.in_(event_ids[offset:offset + _IN_CHUNK]))
                .values(push_claimed_at=None, updated_at=CalendarEvent.updated_at)
                .execution_options(synchronize_session=False)
            )
        await self.db.commit()

    # --- pull ---
    def _pull_window(self) -> Tuple[datetime, datetime]:
        now = utcnow()
        return (
            now - relativedelta(months=settings.SYNC_WINDOW_MONTHS_BACK),
            now + relativedelta(months=settings.SYNC_WINDOW_MONTHS_FORWARD),
        )

    async def _pull(
        self,
        user_id: str,
        provider: str,
        adapter: BaseCalendarAdapter,
        access_token: str,
        errors: List[SyncError],
    ) -> int:
        start, end = self._pull_window()
        try:
            remote = await self._call(provider, "list_events", adapter.list_events(access_token, start, end))
        except ProviderError as exc:
            log.warning("Pull failed for user %s provider %s: %s", user_id, provider, exc)
            errors.append(_sync_error(exc, "list_events"))
            return 0

        existing = await self._existing_by_external_id(provider, (item["external_id"] for item in remote))
        now = utcnow()
        pulled = 0
        seen: set[str] = set()
        for item in remote:
            external_id = item["external_id"]
            if external_id in seen:
                continue
            seen.add(external_id)
            digest = fields_digest(item["title"], item["description"], item["start_time"], item["end_time"], item["location"])
            event = existing.get(external_id)
            if event is not None and event.user_id != user_id:
                log.warning(
                    "External id %s (%s) already belongs to another user; skipped for user %s",
                    external_id, provider, user_id,
                )
                errors.append(SyncError(
                    kind="conflict", operation="pull", external_id=external_id,
                    message="external id is linked to another user",
                ))
                continue
            if event is not None:
                if event.sync_hash == digest:
                    continue
                event.title = item["title"]
                event.description = item["description"]
                event.start_time = item["start_time"]
                event.end_time = item["end_time"]
                event.location = item["location"]
                event.sync_hash = digest
                event.last_synced_at = now
                pulled += 1
                continue
            if await self._upsert_remote(user_id, provider, item, digest, now):
                pulled += 1
            else:
                errors.append(SyncError(
                    kind="conflict", operation="pull", external_id=external_id,
                    message="external id is linked to another user",
                ))
        await self.db.flush()
        return pulled

    async def _existing_by_external_id(self, provider: str, external_ids: Iterable[str]) -> Dict[str, CalendarEvent]:
        ids = list(dict.fromkeys(external_ids))
        found: Dict[str, CalendarEvent] = {}
        for offset in range(0, len(ids), _IN_CHUNK):
            chunk = ids[offset:offset + _IN_CHUNK]
            stmt = select(CalendarEvent).where(
                CalendarEvent.provider == provider,
                CalendarEvent.external_id.in_(chunk),
            )
            for event in (await self.db.scalars(stmt)).all():
                found[event.external_id] = event
        return found

    async def _upsert_remote(
        self,
        user_id: str,
        provider: str,
        item: RemoteEvent,
        digest: str,
        now: datetime,
    ) -> bool:
        """INSERT ... ON CONFLICT (provider, external_id) DO UPDATE, только для строк этого пользователя."""
        dialect = self.db.get_bind().dialect.name
        insert_fn: Any = pg_insert if dialect == "postgresql" else sqlite_insert
        table = CalendarEvent.__table__
        values = {
            "user_id": user_id,
            "title": item["title"],
            "description": item["description"],
            "start_time": item["start_time"],
            "end_time": item["end_time"],
            "location": item["location"],
            "event_type": settings.DEFAULT_EVENT_TYPE,
            "provider": provider,
            "external_id": item["external_id"],
            "sync_hash": digest,
            "last_synced_at": now,
            "created_at": now,
            "updated_at": now,
        }
        stmt = insert_fn(table).values(**values)
        stmt = stmt.on_conflict_do_update(
            index_elements=[table.c.provider, table.c.external_id],
            set_={
                "title": stmt.excluded.title,
                "description": stmt.excluded.description,
                "start_time": stmt.excluded.start_time,
                "end_time": stmt.excluded.end_time,
                "location": stmt.excluded.location,
                "sync_hash": stmt.excluded.sync_hash,
                "last_synced_at": stmt.excluded.last_synced_at,
                "updated_at": stmt.excluded.updated_at,
            },
            where=table.c.user_id == user_id,
        )
        result = await self.db.execute(stmt)
        return bool(result.rowcount)


__all__ = ["EventReconciler"]
