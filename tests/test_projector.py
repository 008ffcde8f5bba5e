from datetime import date, datetime, timedelta

import pytest
from sqlalchemy import func, select
from sqlalchemy.ext.asyncio import AsyncSession

from app.core.calendar.models import CalendarEvent
from app.core.calendar.noop import NoOpCalendarAdapter
from app.core.calendar.reconciler import EventReconciler
from app.core.projector import MilestoneProjector, TransactionRecord
from app.core.reminders.models import ReminderRecord
from app.core.reminders.schemas import ReminderUpdate
from app.core.reminders.service import RemindersService


def _record(**dates) -> TransactionRecord:
    return TransactionRecord(
        id="tx-1",
        user_id="u1",
        property_address="12 Elm St",
        property_city="Austin",
        property_state="TX",
        buyer_name="Ann Buyer",
        seller_name="Sam Seller",
        **dates,
    )


def _day(offset: int) -> date:
    return date.today() + timedelta(days=offset)


async def _reminders(session: AsyncSession, record_id: str = "tx-1"):
    stmt = select(ReminderRecord).where(ReminderRecord.linked_record_id == record_id).order_by(ReminderRecord.id)
    return (await session.scalars(stmt.execution_options(populate_existing=True))).all()


@pytest.mark.asyncio
async def test_record_without_dates_projects_nothing(db_session: AsyncSession):
    events = await MilestoneProjector(db_session).project_record_dates(_record())

    assert events == []
    assert await db_session.scalar(select(func.count(CalendarEvent.id))) == 0
    assert await _reminders(db_session) == []


@pytest.mark.asyncio
async def test_record_dates_become_events_and_reminders(db_session: AsyncSession):
    inspection, closing = _day(10), _day(30)

    events = await MilestoneProjector(db_session).project_record_dates(
        _record(inspection_date=inspection, closing_date=closing),
    )

    assert [e.source_slot for e in events] == ["inspection_date", "closing_date"]
    inspection_event, closing_event = events
    assert inspection_event.title == "Home Inspection - 12 Elm St"
    assert inspection_event.start_time == datetime.combine(inspection, datetime.min.time()).replace(hour=9)
    assert inspection_event.end_time.hour == 10
    assert inspection_event.location == "12 Elm St, Austin, TX"
    assert inspection_event.description.endswith("[Transaction: tx-1]")
    assert closing_event.title == "CLOSING DAY - 12 Elm St"
    assert closing_event.end_time.hour == 12
    assert "Buyer: Ann Buyer" in closing_event.description
    assert all(e.source_record_id == "tx-1" and e.event_type == "other" for e in events)

    reminders = await _reminders(db_session)
    assert [r.slot for r in reminders] == ["inspection_date", "closing_date"]
    assert reminders[0].title == "Reminder: Home Inspection - 12 Elm St"
    assert reminders[0].due_at == inspection_event.start_time - timedelta(hours=24)
    assert all(r.status == "pending" for r in reminders)


@pytest.mark.asyncio
async def test_reprojection_updates_in_place_and_keeps_external_id(db_session: AsyncSession, noop_credential):
    projector = MilestoneProjector(db_session)
    reconciler = EventReconciler(db_session)
    [event] = await projector.project_record_dates(_record(closing_date=_day(30)))
    await reconciler.sync_provider("u1", noop_credential)
    external_id = event.external_id

    [moved] = await projector.project_record_dates(_record(closing_date=_day(31)))
    result = await reconciler.sync_provider("u1", noop_credential)

    assert moved.id == event.id
    assert moved.external_id == external_id
    assert result.pushed == 1
    remote = NoOpCalendarAdapter._calendars["acct1"]
    assert list(remote) == [external_id]
    assert remote[external_id]["start_time"].date() == _day(31)

    [reminder] = await _reminders(db_session)
    assert reminder.due_at == moved.start_time - timedelta(hours=24)


@pytest.mark.asyncio
async def test_unchanged_reprojection_needs_no_push(db_session: AsyncSession, noop_credential):
    projector = MilestoneProjector(db_session)
    reconciler = EventReconciler(db_session)
    record = _record(offer_date=_day(2), appraisal_date=_day(12))
    await projector.project_record_dates(record)
    await reconciler.sync_provider("u1", noop_credential)

    await projector.project_record_dates(record)
    result = await reconciler.sync_provider("u1", noop_credential)

    assert (result.pushed, result.pulled) == (0, 0)
    assert len(await _reminders(db_session)) == 2


@pytest.mark.asyncio
async def test_cleared_date_removes_event_and_pending_reminder_only(db_session: AsyncSession, noop_credential):
    projector = MilestoneProjector(db_session)
    await projector.project_record_dates(
        _record(inspection_date=_day(10), appraisal_date=_day(12), closing_date=_day(30)),
    )
    await EventReconciler(db_session).sync_provider("u1", noop_credential)
    by_slot = {r.slot: r for r in await _reminders(db_session)}
    by_slot["appraisal_date"].is_sent = True
    await db_session.flush()

    events = await projector.project_record_dates(_record(closing_date=_day(30)))

    assert [e.source_slot for e in events] == ["closing_date"]
    assert len(NoOpCalendarAdapter._calendars["acct1"]) == 1
    remaining = {r.slot: r.status for r in await _reminders(db_session)}
    assert remaining == {"appraisal_date": "sent", "closing_date": "pending"}


@pytest.mark.asyncio
async def test_remove_record_deletes_events_and_reminders(db_session: AsyncSession, noop_credential):
    projector = MilestoneProjector(db_session)
    await projector.project_record_dates(_record(offer_date=_day(3), closing_date=_day(30)))
    await EventReconciler(db_session).sync_provider("u1", noop_credential)
    assert len(NoOpCalendarAdapter._calendars["acct1"]) == 2

    removal = await projector.remove_record("u1", "tx-1")

    assert removal.events_deleted == 2
    assert removal.reminders_deleted == 2
    assert NoOpCalendarAdapter._calendars["acct1"] == {}
    assert await db_session.scalar(select(func.count(CalendarEvent.id))) == 0
    assert await _reminders(db_session) == []


@pytest.mark.asyncio
async def test_projected_reminder_is_linked_to_its_event(db_session: AsyncSession, noop_credential):
    projector = MilestoneProjector(db_session)
    [event] = await projector.project_record_dates(_record(closing_date=_day(30)))
    await EventReconciler(db_session).sync_provider("u1", noop_credential)

    [reminder] = await _reminders(db_session)
    assert reminder.calendar_event_id == event.id

    # повторная проекция сохраняет ссылку
    await projector.project_record_dates(_record(closing_date=_day(31)))
    [reminder] = await _reminders(db_session)
    assert reminder.calendar_event_id == event.id

    # срок напоминания не двигает событие вехи
    service = RemindersService(db_session)
    await service.update_reminder("u1", reminder.id, ReminderUpdate(due_at=reminder.due_at - timedelta(days=2)))
    await db_session.refresh(event)
    assert event.start_time.date() == _day(31)

    await service.delete_reminder("u1", reminder.id)

    assert await db_session.scalar(select(func.count(CalendarEvent.id))) == 0
    assert NoOpCalendarAdapter._calendars["acct1"] == {}


@pytest.mark.asyncio
async def test_projection_requires_owner(db_session: AsyncSession):
    record = _record(closing_date=_day(5))
    record.user_id = None

    with pytest.raises(ValueError):
        await MilestoneProjector(db_session).project_record_dates(record)
