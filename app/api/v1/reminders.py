# app/api/v1/reminders.py

from __future__ import annotations

import logging
from typing import List

from fastapi import APIRouter, BackgroundTasks, Depends, Response, status
from sqlalchemy.ext.asyncio import AsyncSession

from app.core.auth.security import get_current_user_id, verify_cron_secret
from app.core.reminders.dispatcher import ReminderDispatcher
from app.core.reminders.schemas import DispatchResult, ReminderIn, ReminderOut, ReminderUpdate
from app.core.reminders.service import RemindersService
from app.db.base import get_async_db_session
from app.workers.tasks import enqueue_push

router = APIRouter(prefix="/v1/reminders", tags=["reminders"])
cron_router = APIRouter(prefix="/v1/cron", tags=["cron"])
log = logging.getLogger(__name__)


@router.get("", response_model=List[ReminderOut])
async def list_reminders(
    pending: bool = False,
    upcoming: bool = False,
    user_id: str = Depends(get_current_user_id),
    db: AsyncSession = Depends(get_async_db_session),
):
    return await RemindersService(db).list_reminders(user_id, pending=pending, upcoming=upcoming)


@router.post("", response_model=ReminderOut, status_code=status.HTTP_201_CREATED)
async def create_reminder(
    body: ReminderIn,
    background: BackgroundTasks,
    user_id: str = Depends(get_current_user_id),
    db: AsyncSession = Depends(get_async_db_session),
):
    reminder = await RemindersService(db).create_reminder(user_id, body)
    await db.commit()
    if reminder.calendar_event_id is not None:
        background.add_task(enqueue_push, user_id)
    return reminder


@router.patch("/{reminder_id}", response_model=ReminderOut)
async def update_reminder(
    reminder_id: int,
    body: ReminderUpdate,
    background: BackgroundTasks,
    user_id: str = Depends(get_current_user_id),
    db: AsyncSession = Depends(get_async_db_session),
):
    reminder = await RemindersService(db).update_reminder(user_id, reminder_id, body)
    await db.commit()
    background.add_task(enqueue_push, user_id)
    return reminder


@router.post("/{reminder_id}/dismiss", response_model=ReminderOut)
async def dismiss_reminder(
    reminder_id: int,
    user_id: str = Depends(get_current_user_id),
    db: AsyncSession = Depends(get_async_db_session),
):
    return await RemindersService(db).dismiss_reminder(user_id, reminder_id)


@router.delete("/{reminder_id}", status_code=status.HTTP_204_NO_CONTENT)
async def delete_reminder(
    reminder_id: int,
    user_id: str = Depends(get_current_user_id),
    db: AsyncSession = Depends(get_async_db_session),
):
    await RemindersService(db).delete_reminder(user_id, reminder_id)
    return Response(status_code=status.HTTP_204_NO_CONTENT)


# --- Ручной запуск диспетчера (внешний cron) ---
@cron_router.post("/reminders", response_model=DispatchResult, dependencies=[Depends(verify_cron_secret)])
async def run_reminder_dispatch(db: AsyncSession = Depends(get_async_db_session)):
    result = await ReminderDispatcher(db).dispatch_due_reminders()
    log.info("Cron dispatch: processed=%d skipped=%d", result.processed, result.skipped)
    return result
