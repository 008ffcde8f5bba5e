# app/core/calendar/schemas.py
"""
Pydantic-схемы календарного модуля.

Используются в:
    * app/api/v1/calendar.py            ― публичный REST-эндпоинт
    * core.calendar.reconciler          ― входные данные и результат синхронизации
"""

from __future__ import annotations

from datetime import datetime
from typing import List, Literal, Optional

from pydantic import BaseModel, Field, field_validator, model_validator

from app.core.clock import to_naive_utc

ErrorKind = Literal["transient", "credential", "provider", "conflict", "delivery"]


class EventBase(BaseModel):
    """Общие поля события."""

    title: str = Field(..., min_length=1, max_length=512, description="Заголовок события")
    description: Optional[str] = Field(None, description="Описание")
    start_time: datetime = Field(..., description="Дата/время начала события (UTC)")
    end_time: datetime = Field(..., description="Дата/время окончания события (UTC)")
    location: Optional[str] = Field(None, max_length=512)

    model_config = {"from_attributes": True}


class EventIn(EventBase):
    """Событие, приходящее от пользователя (ещё без ID)."""

    event_type: str = Field("other", max_length=32)

    @field_validator("start_time", "end_time")
    @classmethod
    def _naive_utc(cls, value: datetime) -> datetime:
        return to_naive_utc(value)

    @model_validator(mode="after")
    def _check_range(self) -> "EventIn":
        if self.end_time < self.start_time:
            raise ValueError("end_time must not be before start_time")
        return self


class EventUpdate(BaseModel):
    """Частичное обновление: передаются только изменённые поля."""

    title: Optional[str] = Field(None, min_length=1, max_length=512)
    description: Optional[str] = None
    start_time: Optional[datetime] = None
    end_time: Optional[datetime] = None
    location: Optional[str] = Field(None, max_length=512)
    event_type: Optional[str] = Field(None, max_length=32)

    @field_validator("start_time", "end_time")
    @classmethod
    def _naive_utc(cls, value: Optional[datetime]) -> Optional[datetime]:
        return to_naive_utc(value) if value is not None else None


class EventOut(EventBase):
    """Событие, сохранённое в БД."""

    id: int
    event_type: str
    provider: Optional[str] = None
    external_id: Optional[str] = None
    source_record_id: Optional[str] = None
    source_slot: Optional[str] = None
    last_synced_at: Optional[datetime] = None


class ConnectionOut(BaseModel):
    provider: str
    account_email: Optional[str] = None
    is_active: bool
    expiry_time: datetime
    created_at: datetime

    model_config = {"from_attributes": True}


class ConnectRequest(BaseModel):
    code: str = Field(..., min_length=1, description="Authorization code из OAuth callback")
    redirect_uri: Optional[str] = None


class AuthorizeOut(BaseModel):
    url: str
    state: str


class SyncRequest(BaseModel):
    provider: Optional[str] = Field(None, description="Синхронизировать только этого провайдера")


# --- Результаты синхронизации ---
class SyncError(BaseModel):
    kind: ErrorKind
    operation: str
    message: str
    event_id: Optional[int] = None
    external_id: Optional[str] = None


class SyncResult(BaseModel):
    provider: str
    pushed: int = 0
    pulled: int = 0
    errors: List[SyncError] = Field(default_factory=list)


__all__: list[str] = [
    "ErrorKind",
    "EventIn",
    "EventUpdate",
    "EventOut",
    "ConnectionOut",
    "ConnectRequest",
    "AuthorizeOut",
    "SyncRequest",
    "SyncError",
    "SyncResult",
]
