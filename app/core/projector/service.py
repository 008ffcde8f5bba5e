# app/core/projector/service.py

"""
Domain Event Projector: даты сделки -> события календаря + напоминания.

Каждое поле даты - стабильный "слот" (имя поля). Повторная проекция
обновляет события и напоминания на месте по ``(source_record_id, slot)``,
поэтому ``external_id`` у провайдера не меняется.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import date, datetime, time, timedelta
from typing import Callable, Dict, List, Sequence

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from app.config import settings
from app.core.calendar.models import CalendarEvent
from app.core.calendar.reconciler import EventReconciler
from app.core.reminders.models import ReminderRecord
from .schemas import ProjectionRemoval, TransactionRecord

log = logging.getLogger(__name__)


@dataclass(frozen=True)
class Milestone:
    slot: str
    title: str
    describe: Callable[[TransactionRecord, str], str]
    end_hour: int = 10


def _parties(record: TransactionRecord) -> str:
    return f"Buyer: {record.buyer_name or '-'}\nSeller: {record.seller_name or '-'}"


def _location(record: TransactionRecord) -> str:
    return ", ".join(part for part in (record.property_city, record.property_state) if part)


def _offer(record: TransactionRecord, address: str) -> str:
    where = _location(record)
    return f"Offer submitted for {address}{f' in {where}' if where else ''}.\n{_parties(record)}"


MILESTONES: Sequence[Milestone] = (
    Milestone("offer_date", "Offer Date", _offer),
    Milestone("acceptance_date", "Contract Acceptance",
              lambda r, a: f"Offer accepted for {a}.\n{_parties(r)}"),
    Milestone("inspection_date", "Home Inspection",
              lambda r, a: f"Scheduled home inspection for {a}."),
    Milestone("inspection_deadline", "Inspection Deadline",
              lambda r, a: f"Inspection contingency deadline for {a}. All inspection items must be resolved."),
    Milestone("appraisal_date", "Appraisal",
              lambda r, a: f"Property appraisal scheduled for {a}."),
    Milestone("appraisal_deadline", "Appraisal Deadline",
              lambda r, a: f"Appraisal contingency deadline for {a}."),
    Milestone("financing_deadline", "Financing Deadline",
              lambda r, a: f"Loan approval deadline for {a}. Financing must be secured."),
    Milestone("title_deadline", "Title Deadline",
              lambda r, a: f"Title review deadline for {a}. All title issues must be resolved."),
    Milestone("closing_date", "CLOSING DAY",
              lambda r, a: f"Closing day for {a}!\n{_parties(r)}\n\nBring government-issued ID and be ready to sign documents.",
              end_hour=12),
    Milestone("possession_date", "Possession Date",
              lambda r, a: f"Buyer takes possession of {a}."),
)
MILESTONE_SLOTS = [m.slot for m in MILESTONES]

# Начало события в день вехи (UTC)
MILESTONE_START = time(9, 0)


class MilestoneProjector:
    """
    Проецирует даты сделки в события и напоминания.
    Использует внедрение зависимостей (DI) для получения AsyncSession.
    """

    def __init__(self, db_session: AsyncSession, reconciler: EventReconciler | None = None) -> None:
        self.db: AsyncSession = db_session
        self.reconciler: EventReconciler = reconciler or EventReconciler(db_session)
        self.lead = timedelta(hours=settings.REMINDER_LEAD_HOURS)

    async def _slot_events(self, user_id: str, record_id: str) -> Dict[str, CalendarEvent]:
        stmt = select(CalendarEvent).where(
            CalendarEvent.user_id == user_id,
            CalendarEvent.source_record_id == record_id,
            CalendarEvent.source_slot.in_(MILESTONE_SLOTS),
        )
        return {event.source_slot: event for event in (await self.db.scalars(stmt)).all()}

    async def _slot_reminders(self, user_id: str, record_id: str) -> Dict[str, List[ReminderRecord]]:
        stmt = select(ReminderRecord).where(
            ReminderRecord.user_id == user_id,
            ReminderRecord.linked_record_id == record_id,
            ReminderRecord.slot.in_(MILESTONE_SLOTS),
        ).order_by(ReminderRecord.id)
        out: Dict[str, List[ReminderRecord]] = {}
        for reminder in (await self.db.scalars(stmt)).all():
            out.setdefault(reminder.slot, []).append(reminder)
        return out

    async def project_record_dates(self, record: TransactionRecord) -> List[CalendarEvent]:
        """
        Создаёт или обновляет по одному событию (и напоминанию) на каждую
        заполненную дату сделки; слоты, дата которых стала пустой, удаляются
        (у провайдера тоже, best effort). Пустые даты - не ошибка.
        """
        if not record.user_id:
            raise ValueError("record.user_id is required for projection")
        user_id = record.user_id
        address = record.property_address
        events = await self._slot_events(user_id, record.id)
        reminders = await self._slot_reminders(user_id, record.id)

        projected: List[CalendarEvent] = []
        paired: List[tuple[ReminderRecord, CalendarEvent]] = []
        stale_events: List[CalendarEvent] = []
        for milestone in MILESTONES:
            day: date | None = getattr(record, milestone.slot)
            if day is None:
                if milestone.slot in events:
                    stale_events.append(events[milestone.slot])
                for reminder in reminders.get(milestone.slot, []):
                    if reminder.status == "pending":
                        await self.db.delete(reminder)
                continue

            start = datetime.combine(day, MILESTONE_START)
            fields = {
                "title": f"{milestone.title} - {address}",
                "description": f"{milestone.describe(record, address)}\n\n[Transaction: {record.id}]",
                "start_time": start,
                "end_time": datetime.combine(day, time(milestone.end_hour, 0)),
                "location": ", ".join(p for p in (address, _location(record)) if p),
            }
            event = events.get(milestone.slot)
            if event is None:
                event = CalendarEvent(
                    user_id=user_id,
                    event_type=settings.DEFAULT_EVENT_TYPE,
                    source_record_id=record.id,
                    source_slot=milestone.slot,
                    **fields,
                )
                self.db.add(event)
            else:
                for name, value in fields.items():
                    if getattr(event, name) != value:
                        setattr(event, name, value)
            projected.append(event)

            slot_reminders = reminders.get(milestone.slot, [])
            if not slot_reminders:
                reminder = ReminderRecord(
                    user_id=user_id,
                    linked_record_id=record.id,
                    slot=milestone.slot,
                    title=f"Reminder: {fields['title']}",
                    description=fields["description"],
                    due_at=start - self.lead,
                    is_sent=False,
                    is_dismissed=False,
                )
                self.db.add(reminder)
                paired.append((reminder, event))
            for reminder in slot_reminders:
                # Отправленные и отклонённые напоминания - история, их не трогаем
                if reminder.status != "pending":
                    continue
                reminder.title = f"Reminder: {fields['title']}"
                reminder.description = fields["description"]
                if reminder.due_at != start - self.lead:
                    reminder.due_at = start - self.lead
                paired.append((reminder, event))

        await self.db.flush()
        # id новых событий известны только после flush
        for reminder, event in paired:
            if reminder.calendar_event_id != event.id:
                reminder.calendar_event_id = event.id
        await self.db.flush()
        if stale_events:
            await self.reconciler.delete_events(user_id, stale_events)
        for event in projected:
            await self.db.refresh(event)
        log.info(
            "Projected record %s for user %s: %d event(s), %d removed",
            record.id, user_id, len(projected), len(stale_events),
        )
        return projected

    async def remove_record(self, user_id: str, record_id: str) -> ProjectionRemoval:
        """
        Удаляет все события (``source_record_id``) и напоминания
        (``linked_record_id``) записи; события удаляются и у провайдера.
        """
        stmt = select(CalendarEvent).where(
            CalendarEvent.user_id == user_id,
            CalendarEvent.source_record_id == record_id,
        )
        events = (await self.db.scalars(stmt)).all()
        events_deleted = await self.reconciler.delete_events(user_id, events)

        reminders = (await self.db.scalars(
            select(ReminderRecord).where(
                ReminderRecord.user_id == user_id,
                ReminderRecord.linked_record_id == record_id,
            )
        )).all()
        for reminder in reminders:
            await self.db.delete(reminder)
        await self.db.flush()
        removal = ProjectionRemoval(events_deleted=events_deleted, reminders_deleted=len(reminders))
        log.info(
            "Removed record %s for user %s: %d event(s), %d reminder(s)",
            record_id, user_id, removal.events_deleted, removal.reminders_deleted,
        )
        return removal


__all__ = ["MilestoneProjector", "MILESTONES", "MILESTONE_SLOTS"]
