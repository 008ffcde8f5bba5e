# app/api/v1/records.py

"""Хуки основного приложения: сделка создана/изменена/удалена."""

from __future__ import annotations

import logging

from fastapi import APIRouter, BackgroundTasks, Depends, HTTPException, status
from sqlalchemy.ext.asyncio import AsyncSession

from app.core.auth.security import get_current_user_id
from app.core.projector import MilestoneProjector, ProjectionRemoval, TransactionRecord
from app.core.calendar.schemas import EventOut
from app.core.projector.schemas import ProjectionOut
from app.db.base import get_async_db_session
from app.workers.tasks import enqueue_push

router = APIRouter(prefix="/v1/records", tags=["records"])
log = logging.getLogger(__name__)


@router.put("/{record_id}/projection", response_model=ProjectionOut)
async def project_record(
    record_id: str,
    record: TransactionRecord,
    background: BackgroundTasks,
    user_id: str = Depends(get_current_user_id),
    db: AsyncSession = Depends(get_async_db_session),
):
    if record.id != record_id:
        raise HTTPException(status_code=status.HTTP_422_UNPROCESSABLE_ENTITY, detail="record id mismatch")
    record = record.model_copy(update={"user_id": user_id})
    events = await MilestoneProjector(db).project_record_dates(record)
    await db.commit()
    background.add_task(enqueue_push, user_id)
    return ProjectionOut(record_id=record_id, events=[EventOut.model_validate(event) for event in events])


@router.delete("/{record_id}/projection", response_model=ProjectionRemoval)
async def remove_record(
    record_id: str,
    user_id: str = Depends(get_current_user_id),
    db: AsyncSession = Depends(get_async_db_session),
):
    return await MilestoneProjector(db).remove_record(user_id, record_id)
