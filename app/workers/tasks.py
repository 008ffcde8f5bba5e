# /app/app/workers/tasks.py (синхронизация календарей и рассылка напоминаний)

from __future__ import annotations

import asyncio
from datetime import datetime
from typing import Any, Awaitable, Callable, Dict, List, TypeVar

from celery import Celery
from celery.utils.log import get_task_logger
from dateutil.parser import isoparse
from sqlalchemy import update

from app.config import settings
from app.core.calendar.errors import NotFoundError, TransientProviderError
from app.core.calendar.models import CalendarCredential
from app.core.calendar.reconciler import EventReconciler
from app.core.calendar.schemas import SyncResult
from app.core.calendar.tokens import TokenStore
from app.core.reminders.dispatcher import ReminderDispatcher
from app.db.base import AsyncSession, async_session_context, engine

log = get_task_logger(__name__)

T = TypeVar("T")

celery_app = Celery(
    "calendar-sync",
    broker=settings.CELERY_BROKER_URL,
    backend=settings.CELERY_RESULT_BACKEND,
    include=['app.workers.tasks'],
    task_serializer='json',
    result_serializer='json',
    accept_content=['json']
)
celery_app.conf.update(
    task_track_started=True,
    timezone='UTC',
    broker_connection_retry_on_startup=True,
)
celery_app.conf.beat_schedule = {
    "dispatch-due-reminders": {
        "task": "app.workers.tasks.dispatch_due_reminders_task",
        "schedule": float(settings.REMINDER_SWEEP_INTERVAL_SECONDS),
    },
    "sync-all-connections": {
        "task": "app.workers.tasks.sync_all_connections_task",
        "schedule": float(settings.SYNC_INTERVAL_SECONDS),
    },
}


def _run(logic: Callable[[AsyncSession], Awaitable[T]]) -> T:
    """
    Celery-задачи синхронные: асинхронная логика выполняется в собственном
    event loop. Пул соединений привязан к loop, поэтому в конце он сбрасывается.
    """
    async def runner() -> T:
        try:
            async with async_session_context() as session:
                return await logic(session)
        finally:
            await engine.dispose()

    return asyncio.run(runner())


# --- Напоминания ---
@celery_app.task(name="app.workers.tasks.dispatch_due_reminders_task")
def dispatch_due_reminders_task() -> Dict[str, Any]:
    """Периодический проход диспетчера напоминаний (Celery beat)."""
    async def logic(session: AsyncSession) -> Dict[str, Any]:
        return (await ReminderDispatcher(session).dispatch_due_reminders()).model_dump()

    result = _run(logic)
    log.info("dispatch_due_reminders_task: processed=%s skipped=%s errors=%d",
             result["processed"], result["skipped"], len(result["errors"]))
    return result


# --- Синхронизация календарей ---
@celery_app.task(name="app.workers.tasks.sync_all_connections_task")
def sync_all_connections_task() -> int:
    """Раздаёт по задаче синхронизации на каждое активное подключение."""
    async def logic(session: AsyncSession) -> List[tuple[str, str]]:
        credentials = await TokenStore(session).list_active_credentials()
        return [(c.user_id, c.provider) for c in credentials]

    pairs = _run(logic)
    for user_id, provider in pairs:
        sync_connection_task.delay(user_id, provider)
    log.info("sync_all_connections_task: scheduled %d connection(s)", len(pairs))
    return len(pairs)


@celery_app.task(
    name="app.workers.tasks.sync_connection_task",
    bind=True,
    autoretry_for=(TransientProviderError,),
    retry_kwargs={'max_retries': 3},
    retry_backoff=True,
    retry_backoff_max=60 * 5,
    retry_jitter=True
)
def sync_connection_task(self, user_id: str, provider: str) -> Dict[str, Any]:
    """Push + pull одного подключения. Транзиентная ошибка токена - повод для retry."""
    async def logic(session: AsyncSession) -> Dict[str, Any]:
        reconciler = EventReconciler(session)
        try:
            credential = await reconciler.tokens.get_credential(user_id, provider)
        except NotFoundError:
            # подключение удалили между fan-out и запуском задачи
            log.info("sync %s/%s skipped: connection no longer exists", user_id, provider)
            return SyncResult(provider=provider).model_dump()
        return (await reconciler.sync_provider(user_id, credential)).model_dump()

    result = _run(logic)
    log.info("[%s] sync %s/%s: pushed=%s pulled=%s errors=%d",
             self.request.id, user_id, provider, result["pushed"], result["pulled"], len(result["errors"]))
    if any(err["kind"] == "transient" and err["operation"] == "refresh_token" for err in result["errors"]):
        raise TransientProviderError(provider, "refresh_token", "token refresh failed, will retry")
    return result


@celery_app.task(name="app.workers.tasks.push_user_events_task")
def push_user_events_task(user_id: str) -> List[Dict[str, Any]]:
    """Отправляет локальные изменения пользователя во все подключённые календари."""
    async def logic(session: AsyncSession) -> List[Dict[str, Any]]:
        return [r.model_dump() for r in await EventReconciler(session).push_user_events(user_id)]

    results = _run(logic)
    for result in results:
        if result["errors"]:
            log.warning("push_user_events_task %s/%s: %d error(s)", user_id, result["provider"], len(result["errors"]))
    return results


@celery_app.task(
    name="app.workers.tasks.persist_refreshed_token_task",
    bind=True,
    autoretry_for=(Exception,),
    retry_kwargs={'max_retries': 5},
    retry_backoff=True,
    retry_jitter=True
)
def persist_refreshed_token_task(self, credential_id: int, old_expiry: str, values: Dict[str, Any]) -> bool:
    """
    Повторная запись обновлённого токена, если сразу сохранить не удалось.
    Пишет только если в БД всё ещё старый ``expiry_time``.
    """
    new_values: Dict[str, Any] = dict(values)
    new_values["expiry_time"] = isoparse(values["expiry_time"])
    expected: datetime = isoparse(old_expiry)

    async def logic(session: AsyncSession) -> bool:
        result = await session.execute(
            update(CalendarCredential)
            .where(CalendarCredential.id == credential_id, CalendarCredential.expiry_time == expected)
            .values(**new_values)
        )
        return result.rowcount == 1

    written = _run(logic)
    log.info("persist_refreshed_token_task credential=%s written=%s", credential_id, written)
    return written


def enqueue_push(user_id: str) -> None:
    """Поставить push в очередь после локального изменения; ошибка брокера не фатальна."""
    try:
        push_user_events_task.delay(user_id)
    except Exception:
        log.exception("Could not enqueue push for user %s", user_id)


__all__ = [
    "celery_app",
    "dispatch_due_reminders_task",
    "sync_all_connections_task",
    "sync_connection_task",
    "push_user_events_task",
    "persist_refreshed_token_task",
    "enqueue_push",
]
