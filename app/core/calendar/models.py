# app/core/calendar/models.py

from __future__ import annotations

import hashlib
import json
from datetime import datetime
from typing import Optional

from sqlalchemy import (
    Boolean,
    DateTime,
    Index,
    Integer,
    String,
    Text,
    UniqueConstraint,
)
from sqlalchemy.orm import Mapped, mapped_column

from app.core.clock import utcnow
from app.db.base import Base


class CalendarCredential(Base):
    """
    OAuth-подключение пользователя к провайдеру календаря.

    Не более одной записи на пару (user_id, provider): повторное подключение
    обновляет существующую строку.
    """
    __tablename__ = "calendar_credentials"
    __table_args__ = (
        UniqueConstraint("user_id", "provider", name="uq_calendar_credentials_user_provider"),
    )

    id: Mapped[int] = mapped_column(Integer, primary_key=True, index=True)
    user_id: Mapped[str] = mapped_column(String(64), nullable=False, index=True)
    provider: Mapped[str] = mapped_column(String(32), nullable=False)
    account_email: Mapped[Optional[str]] = mapped_column(String(255), nullable=True)
    access_token: Mapped[str] = mapped_column(Text, nullable=False)
    refresh_token: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    expiry_time: Mapped[datetime] = mapped_column(DateTime, nullable=False)
    is_active: Mapped[bool] = mapped_column(Boolean, default=True, nullable=False, index=True)
    created_at: Mapped[datetime] = mapped_column(DateTime, default=utcnow, nullable=False)
    updated_at: Mapped[datetime] = mapped_column(DateTime, default=utcnow, onupdate=utcnow, nullable=False)

    def __repr__(self) -> str:  # pragma: no cover
        return (
            f"<CalendarCredential id={self.id} user_id={self.user_id!r} "
            f"provider={self.provider!r} active={self.is_active}>"
        )


class CalendarEvent(Base):
    """
    Локальное событие календаря.

    ``external_id`` - идентификатор у провайдера (ключ идемпотентности merge),
    ``source_record_id``/``source_slot`` - ссылка на доменную запись, из которой
    событие выведено. События без ``source_record_id`` созданы пользователем.
    """
    __tablename__ = "calendar_events"
    __table_args__ = (
        UniqueConstraint("provider", "external_id", name="uq_calendar_events_provider_external_id"),
        UniqueConstraint("user_id", "source_record_id", "source_slot", name="uq_calendar_events_source_slot"),
        Index("ix_calendar_events_user_start", "user_id", "start_time"),
    )

    id: Mapped[int] = mapped_column(Integer, primary_key=True, index=True)
    user_id: Mapped[str] = mapped_column(String(64), nullable=False, index=True)
    title: Mapped[str] = mapped_column(String(512), nullable=False)
    description: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    start_time: Mapped[datetime] = mapped_column(DateTime, nullable=False)
    end_time: Mapped[datetime] = mapped_column(DateTime, nullable=False)
    location: Mapped[Optional[str]] = mapped_column(String(512), nullable=True)
    event_type: Mapped[str] = mapped_column(String(32), default="other", nullable=False)

    provider: Mapped[Optional[str]] = mapped_column(String(32), nullable=True)
    external_id: Mapped[Optional[str]] = mapped_column(String(1024), nullable=True)
    # Дайджест полей, видимых провайдеру, на момент последнего push/pull
    sync_hash: Mapped[Optional[str]] = mapped_column(String(64), nullable=True)
    last_synced_at: Mapped[Optional[datetime]] = mapped_column(DateTime, nullable=True)
    # Аренда push-прохода: пока она не истекла, событие отправляет только её владелец
    push_claimed_at: Mapped[Optional[datetime]] = mapped_column(DateTime, nullable=True)

    source_record_id: Mapped[Optional[str]] = mapped_column(String(64), nullable=True, index=True)
    source_slot: Mapped[Optional[str]] = mapped_column(String(64), nullable=True)

    created_at: Mapped[datetime] = mapped_column(DateTime, default=utcnow, nullable=False)
    updated_at: Mapped[datetime] = mapped_column(DateTime, default=utcnow, onupdate=utcnow, nullable=False)

    def fields_digest(self) -> str:
        return fields_digest(self.title, self.description, self.start_time, self.end_time, self.location)

    @property
    def needs_push(self) -> bool:
        return self.external_id is None or self.sync_hash != self.fields_digest()

    def __repr__(self) -> str:  # pragma: no cover
        return (
            f"<CalendarEvent id={self.id} user_id={self.user_id!r} title={self.title!r} "
            f"provider={self.provider!r} external_id={self.external_id!r}>"
        )


def fields_digest(
    title: str,
    description: str | None,
    start_time: datetime,
    end_time: datetime,
    location: str | None,
) -> str:
    """Stable digest of the provider-visible fields; empty strings and None compare equal."""
    payload = json.dumps(
        [
            title,
            description or "",
            start_time.replace(microsecond=0).isoformat(),
            end_time.replace(microsecond=0).isoformat(),
            location or "",
        ],
        ensure_ascii=False,
    )
    return hashlib.sha256(payload.encode("utf-8")).hexdigest()


__all__ = ["CalendarCredential", "CalendarEvent", "fields_digest"]
