# app/core/reminders/dispatcher.py

"""
Reminder Dispatcher.

Периодически (Celery beat) или по запросу (cron-эндпоинт) находит
наступившие напоминания и доставляет их. Доставка - не более одного раза:
сначала напоминание "захватывается" условным UPDATE с немедленным
коммитом, и только захвативший проход выполняет побочный эффект.
"""

from __future__ import annotations

import logging
from abc import ABC, abstractmethod
from datetime import datetime
from typing import List, Sequence

from sqlalchemy import select, update
from sqlalchemy.ext.asyncio import AsyncSession

from app.core.clock import to_naive_utc, utcnow
from .models import ReminderRecord
from .schemas import DispatchError, DispatchResult

log = logging.getLogger(__name__)


class BaseNotifier(ABC):
    """Канал доставки напоминания (лог, email, push ...)."""

    name: str

    @abstractmethod
    async def notify(self, reminder: ReminderRecord) -> None:
        ...


class LoggingNotifier(BaseNotifier):
    name: str = "log"

    async def notify(self, reminder: ReminderRecord) -> None:
        log.info(
            "[Reminder] user=%s id=%d record=%s due=%s: %s",
            reminder.user_id, reminder.id, reminder.linked_record_id,
            reminder.due_at.isoformat(), reminder.title,
        )


class ReminderDispatcher:
    """Сканер наступивших напоминаний; работает поверх всех пользователей."""

    def __init__(self, db_session: AsyncSession, notifiers: Sequence[BaseNotifier] | None = None) -> None:
        self.db: AsyncSession = db_session
        self.notifiers: List[BaseNotifier] = list(notifiers) if notifiers is not None else [LoggingNotifier()]

    async def _due_ids(self, now: datetime) -> List[int]:
        stmt = (
            select(ReminderRecord.id)
            .where(
                ReminderRecord.is_sent.is_(False),
                ReminderRecord.is_dismissed.is_(False),
                ReminderRecord.due_at <= now,
            )
            .order_by(ReminderRecord.due_at, ReminderRecord.id)
        )
        ids = list((await self.db.scalars(stmt)).all())
        await self.db.commit()
        return ids

    async def _claim(self, reminder_id: int, now: datetime) -> bool:
        result = await self.db.execute(
            update(ReminderRecord)
            .where(
                ReminderRecord.id == reminder_id,
                ReminderRecord.is_sent.is_(False),
                ReminderRecord.is_dismissed.is_(False),
            )
            .values(is_sent=True, sent_at=now, updated_at=now)
            .execution_options(synchronize_session=False)
        )
        await self.db.commit()
        return result.rowcount == 1

    async def dispatch_due_reminders(self, now: datetime | None = None) -> DispatchResult:
        """
        Доставить все наступившие напоминания.

        Безопасно вызывать повторно и параллельно: напоминание, которое
        захватил другой проход, считается ``skipped``. Ошибка канала
        доставки попадает в ``errors`` и не откатывает отметку об отправке.
        """
        now = to_naive_utc(now) if now is not None else utcnow()
        result = DispatchResult()
        due = await self._due_ids(now)
        log.debug("Dispatcher found %d due reminder(s) at %s", len(due), now.isoformat())

        for reminder_id in due:
            if not await self._claim(reminder_id, now):
                result.skipped += 1
                continue
            result.processed += 1
            reminder = await self.db.get(ReminderRecord, reminder_id, populate_existing=True)
            if reminder is None:  # pragma: no cover - удалено между claim и get
                continue
            for notifier in self.notifiers:
                try:
                    await notifier.notify(reminder)
                except Exception as exc:
                    log.exception("Delivery of reminder %d via %s failed", reminder_id, notifier.name)
                    result.errors.append(DispatchError(
                        reminder_id=reminder_id, notifier=notifier.name, message=str(exc) or type(exc).__name__,
                    ))

        if due:
            log.info(
                "Dispatched reminders: processed=%d skipped=%d errors=%d",
                result.processed, result.skipped, len(result.errors),
            )
        return result


__all__ = ["BaseNotifier", "LoggingNotifier", "ReminderDispatcher"]
