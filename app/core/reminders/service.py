# app/core/reminders/service.py

"""Service-layer for Reminders."""

from __future__ import annotations

import logging
from datetime import timedelta
from typing import Sequence

from sqlalchemy import select, update
from sqlalchemy.ext.asyncio import AsyncSession

from app.core.calendar.errors import NotFoundError, ReminderStateError
from app.core.calendar.models import CalendarEvent
from app.core.calendar.reconciler import EventReconciler
from app.core.calendar.schemas import EventIn, EventUpdate
from app.core.clock import utcnow
from .models import ReminderRecord
from .schemas import ReminderIn, ReminderUpdate

log = logging.getLogger(__name__)

# Длительность события, которое создаётся вместе с напоминанием
REMINDER_EVENT_DURATION = timedelta(hours=1)
REMINDER_EVENT_TYPE = "reminder"


def reminder_slot(reminder_id: int) -> str:
    return f"reminder:{reminder_id}"


class RemindersService:
    """
    Асинхронный сервис для работы с Напоминаниями.
    Использует внедрение зависимостей (DI) для получения AsyncSession.
    Все операции ограничены владельцем (``user_id``).
    """

    def __init__(self, db_session: AsyncSession, reconciler: EventReconciler | None = None) -> None:
        """
        Инициализирует сервис с асинхронной сессией БД.

        Args:
            db_session (AsyncSession): Активная асинхронная сессия SQLAlchemy.
            reconciler (EventReconciler | None): Через него удаляются связанные события.
        """
        self.db: AsyncSession = db_session
        self.reconciler: EventReconciler = reconciler or EventReconciler(db_session)

    # ------------------------------------------------------------------ #
    #                       Public business-methods                      #
    # ------------------------------------------------------------------ #

    async def create_reminder(self, user_id: str, payload: ReminderIn) -> ReminderRecord:
        """
        Создает новое напоминание для пользователя.

        Если ``payload.create_calendar_event`` - создаётся и событие календаря
        длительностью час, начиная с ``due_at``; ссылка сохраняется в
        ``calendar_event_id``.

        Returns:
            ReminderRecord: Созданный объект напоминания (ORM модель).
        """
        log.info(
            "Creating reminder for user %s: title='%s', due_at=%s",
            user_id, payload.title, payload.due_at.isoformat()
        )
        reminder = ReminderRecord(
            user_id=user_id,
            linked_record_id=payload.linked_record_id,
            slot=payload.slot,
            title=payload.title,
            description=payload.description,
            due_at=payload.due_at,
            is_sent=False,
            is_dismissed=False,
        )
        self.db.add(reminder)
        await self.db.flush()

        if payload.create_calendar_event:
            event = await self.reconciler.create_event(
                user_id,
                EventIn(
                    title=payload.title,
                    description=payload.description,
                    start_time=payload.due_at,
                    end_time=payload.due_at + REMINDER_EVENT_DURATION,
                    event_type=REMINDER_EVENT_TYPE,
                ),
                source_record_id=payload.linked_record_id,
                source_slot=reminder_slot(reminder.id),
            )
            reminder.calendar_event_id = event.id
            await self.db.flush()

        await self.db.refresh(reminder)
        log.info("Created reminder id=%d (event=%s)", reminder.id, reminder.calendar_event_id)
        return reminder

    async def list_reminders(
        self,
        user_id: str,
        pending: bool = False,
        upcoming: bool = False,
    ) -> Sequence[ReminderRecord]:
        """
        Напоминания пользователя по возрастанию ``due_at``.

        Args:
            pending: только не отправленные и не отклонённые.
            upcoming: только с ``due_at`` в будущем.
        """
        stmt = select(ReminderRecord).where(ReminderRecord.user_id == user_id)
        if pending:
            stmt = stmt.where(ReminderRecord.is_sent.is_(False), ReminderRecord.is_dismissed.is_(False))
        if upcoming:
            stmt = stmt.where(ReminderRecord.due_at >= utcnow())
        result = await self.db.scalars(stmt.order_by(ReminderRecord.due_at, ReminderRecord.id))
        return result.all()

    async def get_reminder(self, user_id: str, reminder_id: int) -> ReminderRecord:
        log.debug("Getting reminder by id=%d", reminder_id)
        reminder = await self.db.get(ReminderRecord, reminder_id)
        if reminder is None or reminder.user_id != user_id:
            raise NotFoundError(f"Reminder {reminder_id} not found")
        return reminder

    async def update_reminder(self, user_id: str, reminder_id: int, payload: ReminderUpdate) -> ReminderRecord:
        """Меняет текст или срок; связанное событие календаря следует за изменениями."""
        reminder = await self.get_reminder(user_id, reminder_id)
        changes = {k: v for k, v in payload.model_dump(exclude_unset=True).items() if v is not None or k == "description"}
        for field, value in changes.items():
            setattr(reminder, field, value)
        await self.db.flush()

        if changes and reminder.calendar_event_id is not None:
            try:
                event = await self.reconciler.get_event(user_id, reminder.calendar_event_id)
            except NotFoundError:
                # событие удалили отдельно - ссылка больше не нужна
                log.info("Linked event %s of reminder %d is gone", reminder.calendar_event_id, reminder.id)
                reminder.calendar_event_id = None
                await self.db.flush()
                event = None
            # событие вехи сделки ведёт проектор, здесь двигаем только своё
            if event is not None and event.source_slot == reminder_slot(reminder.id):
                await self.reconciler.update_event(
                    user_id,
                    event.id,
                    EventUpdate(
                        title=reminder.title,
                        description=reminder.description,
                        start_time=reminder.due_at,
                        end_time=reminder.due_at + REMINDER_EVENT_DURATION,
                    ),
                )

        await self.db.refresh(reminder)
        log.info("Updated reminder id=%d (%s)", reminder.id, ", ".join(sorted(changes)) or "no changes")
        return reminder

    async def dismiss_reminder(self, user_id: str, reminder_id: int) -> ReminderRecord:
        """
        Pending -> Dismissed.

        Raises:
            ReminderStateError: напоминание уже отправлено или отклонено.
        """
        reminder = await self.get_reminder(user_id, reminder_id)
        now = utcnow()
        # Условный UPDATE: не пересекается с диспетчером, который помечает is_sent
        result = await self.db.execute(
            update(ReminderRecord)
            .where(
                ReminderRecord.id == reminder.id,
                ReminderRecord.is_sent.is_(False),
                ReminderRecord.is_dismissed.is_(False),
            )
            .values(is_dismissed=True, dismissed_at=now, updated_at=now)
            .execution_options(synchronize_session=False)
        )
        await self.db.refresh(reminder)
        if result.rowcount != 1:
            raise ReminderStateError(f"Reminder {reminder_id} is already {reminder.status}")
        log.info("Dismissed reminder id=%d", reminder.id)
        return reminder

    async def delete_reminder(self, user_id: str, reminder_id: int) -> None:
        """
        Удаляет напоминание и событие календаря, которое оно создало
        (включая удаление у провайдера, best effort).
        """
        reminder = await self.get_reminder(user_id, reminder_id)
        if reminder.calendar_event_id is not None:
            event = await self.db.get(CalendarEvent, reminder.calendar_event_id)
            if event is not None and event.user_id == user_id:
                await self.reconciler.delete_events(user_id, [event])
        await self.db.delete(reminder)
        await self.db.flush()
        log.info("Deleted reminder id=%d", reminder_id)


__all__ = ["RemindersService", "reminder_slot", "REMINDER_EVENT_DURATION"]
