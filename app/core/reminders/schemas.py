# app/core/reminders/schemas.py

from __future__ import annotations

from datetime import datetime
from typing import List, Literal, Optional

from pydantic import BaseModel, Field, field_validator

from app.core.clock import to_naive_utc


class ReminderIn(BaseModel):
    """Новое напоминание от пользователя."""

    linked_record_id: str = Field(..., min_length=1, max_length=64, description="Сделка/клиент, к которому относится")
    title: str = Field(..., min_length=1, max_length=512)
    description: Optional[str] = None
    due_at: datetime = Field(..., description="Когда напомнить (UTC)")
    slot: Optional[str] = Field(None, max_length=64)
    create_calendar_event: bool = Field(True, description="Создать связанное событие в календаре")

    @field_validator("due_at")
    @classmethod
    def _naive_utc(cls, value: datetime) -> datetime:
        return to_naive_utc(value)


class ReminderUpdate(BaseModel):
    title: Optional[str] = Field(None, min_length=1, max_length=512)
    description: Optional[str] = None
    due_at: Optional[datetime] = None

    @field_validator("due_at")
    @classmethod
    def _naive_utc(cls, value: Optional[datetime]) -> Optional[datetime]:
        return to_naive_utc(value) if value is not None else None


class ReminderOut(BaseModel):
    id: int
    linked_record_id: str
    slot: Optional[str] = None
    title: str
    description: Optional[str] = None
    due_at: datetime
    status: Literal["pending", "sent", "dismissed"]
    sent_at: Optional[datetime] = None
    dismissed_at: Optional[datetime] = None
    calendar_event_id: Optional[int] = None

    model_config = {"from_attributes": True}


# --- Результат прохода диспетчера ---
class DispatchError(BaseModel):
    kind: Literal["delivery"] = "delivery"
    reminder_id: int
    notifier: str
    message: str


class DispatchResult(BaseModel):
    processed: int = 0
    skipped: int = 0
    errors: List[DispatchError] = Field(default_factory=list)


__all__ = ["ReminderIn", "ReminderUpdate", "ReminderOut", "DispatchError", "DispatchResult"]
