# app/core/projector/schemas.py

from __future__ import annotations

from datetime import date
from typing import List, Optional

from pydantic import BaseModel, Field

from app.core.calendar.schemas import EventOut


class TransactionRecord(BaseModel):
    """
    Сделка в том виде, в каком её передаёт основное приложение.
    Каждое заполненное поле даты превращается в событие календаря.
    """

    id: str = Field(..., min_length=1, max_length=64)
    user_id: Optional[str] = Field(None, description="Заполняется из токена на уровне API")
    property_address: str = Field(..., min_length=1)
    property_city: Optional[str] = None
    property_state: Optional[str] = None
    buyer_name: Optional[str] = None
    seller_name: Optional[str] = None

    offer_date: Optional[date] = None
    acceptance_date: Optional[date] = None
    inspection_date: Optional[date] = None
    inspection_deadline: Optional[date] = None
    appraisal_date: Optional[date] = None
    appraisal_deadline: Optional[date] = None
    financing_deadline: Optional[date] = None
    title_deadline: Optional[date] = None
    closing_date: Optional[date] = None
    possession_date: Optional[date] = None


class ProjectionOut(BaseModel):
    record_id: str
    events: List[EventOut]


class ProjectionRemoval(BaseModel):
    events_deleted: int = 0
    reminders_deleted: int = 0


__all__ = ["TransactionRecord", "ProjectionOut", "ProjectionRemoval"]
