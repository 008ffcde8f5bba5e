import asyncio
from datetime import timedelta

import pytest
from celery import states

import app.workers.tasks as tasks
from app.core.calendar.models import CalendarCredential, CalendarEvent
from app.core.calendar.noop import NoOpCalendarAdapter
from app.core.calendar.tokens import TokenStore
from app.core.clock import utcnow
from app.core.reminders.models import ReminderRecord
from app.db.base import async_session_context


@pytest.fixture(autouse=True)
def celery_eager(sync_db):
    tasks.celery_app.conf.task_always_eager = True
    yield


def _seed_connection_with_event(user_id: str = "u1", code: str = "acct1") -> int:
    async def seed():
        async with async_session_context() as session:
            credential = await TokenStore(session).connect(user_id, "noop", code)
            start = utcnow().replace(microsecond=0) + timedelta(days=2)
            session.add(CalendarEvent(user_id=user_id, title="Open house", start_time=start, end_time=start + timedelta(hours=2)))
            await session.flush()
            return credential.id

    return asyncio.run(seed())


def _load(model, pk):
    async def load():
        async with async_session_context() as session:
            return await session.get(model, pk)

    return asyncio.run(load())


def test_dispatch_due_reminders_task():
    async def seed():
        async with async_session_context() as session:
            session.add(ReminderRecord(
                user_id="u1", linked_record_id="tx-1", title="Wire funds", due_at=utcnow() - timedelta(minutes=1),
            ))

    asyncio.run(seed())

    result = tasks.dispatch_due_reminders_task.delay()

    assert result.status == states.SUCCESS
    assert result.get() == {"processed": 1, "skipped": 0, "errors": []}
    assert tasks.dispatch_due_reminders_task.delay().get()["processed"] == 0


def test_sync_all_connections_fans_out_per_connection():
    _seed_connection_with_event("u1", "acct1")
    _seed_connection_with_event("u2", "acct2")

    scheduled = tasks.sync_all_connections_task.delay().get()

    assert scheduled == 2
    # eager: каждая sync_connection_task уже выполнилась
    assert len(NoOpCalendarAdapter._calendars["acct1"]) == 1
    assert len(NoOpCalendarAdapter._calendars["acct2"]) == 1


def test_sync_connection_task_returns_sync_result():
    _seed_connection_with_event()

    result = tasks.sync_connection_task.delay("u1", "noop").get()

    assert result["provider"] == "noop"
    assert result["pushed"] == 1
    assert result["errors"] == []


def test_sync_connection_task_for_purged_connection_is_empty():
    result = tasks.sync_connection_task.delay("u1", "noop")

    assert result.status == states.SUCCESS
    assert result.get() == {"provider": "noop", "pushed": 0, "pulled": 0, "errors": []}


def test_push_user_events_task_pushes_local_changes():
    _seed_connection_with_event()

    [result] = tasks.push_user_events_task.delay("u1").get()

    assert result["pushed"] == 1
    assert result["pulled"] == 0


def test_persist_refreshed_token_task_writes_only_over_the_old_expiry():
    credential_id = _seed_connection_with_event()
    old_expiry = _load(CalendarCredential, credential_id).expiry_time
    new_expiry = old_expiry + timedelta(hours=1)
    values = {"access_token": "acct1:late-write", "expiry_time": new_expiry.isoformat()}

    written = tasks.persist_refreshed_token_task.delay(credential_id, old_expiry.isoformat(), values).get()
    stale = tasks.persist_refreshed_token_task.delay(credential_id, old_expiry.isoformat(), values).get()

    assert written is True
    assert stale is False
    stored = _load(CalendarCredential, credential_id)
    assert stored.access_token == "acct1:late-write"
    assert stored.expiry_time == new_expiry


def test_enqueue_push_survives_broker_failure(monkeypatch):
    class BrokenTask:
        def delay(self, *args, **kwargs):
            raise ConnectionError("broker unavailable")

    monkeypatch.setattr(tasks, "push_user_events_task", BrokenTask())

    tasks.enqueue_push("u1")
