# app/core/reminders/models.py

from __future__ import annotations

from datetime import datetime
from typing import Optional

from sqlalchemy import (
    Boolean,
    DateTime,
    ForeignKey,
    Index,
    Integer,
    String,
    Text,
)
from sqlalchemy.orm import Mapped, mapped_column

from app.core.clock import utcnow
from app.db.base import Base


class ReminderRecord(Base):
    """
    ORM модель для Напоминаний.

    Pending -> Sent или Pending -> Dismissed; оба состояния терминальные.
    ``linked_record_id`` - доменная запись (сделка, клиент), к которой
    относится напоминание, ``slot`` - поле даты этой записи (для проекций).
    """
    __tablename__ = 'reminders'

    id: Mapped[int] = mapped_column(Integer, primary_key=True, index=True)
    user_id: Mapped[str] = mapped_column(String(64), index=True, nullable=False)
    linked_record_id: Mapped[str] = mapped_column(String(64), nullable=False, index=True)
    slot: Mapped[Optional[str]] = mapped_column(String(64), nullable=True)
    title: Mapped[str] = mapped_column(String(512), nullable=False)
    description: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    # Время, когда напоминание должно быть отправлено (UTC)
    due_at: Mapped[datetime] = mapped_column(DateTime, nullable=False, index=True)
    is_sent: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False)
    sent_at: Mapped[Optional[datetime]] = mapped_column(DateTime, nullable=True)
    is_dismissed: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False)
    dismissed_at: Mapped[Optional[datetime]] = mapped_column(DateTime, nullable=True)
    # Событие календаря, созданное вместе с напоминанием
    calendar_event_id: Mapped[Optional[int]] = mapped_column(
        Integer, ForeignKey('calendar_events.id', ondelete='SET NULL'), nullable=True
    )
    created_at: Mapped[datetime] = mapped_column(DateTime, default=utcnow, nullable=False)
    updated_at: Mapped[datetime] = mapped_column(DateTime, default=utcnow, onupdate=utcnow, nullable=False)

    __table_args__ = (
        Index('ix_reminders_due_pending', 'is_sent', 'is_dismissed', 'due_at'),
        Index('ix_reminders_linked_slot', 'user_id', 'linked_record_id', 'slot'),
    )

    @property
    def status(self) -> str:
        if self.is_sent:
            return "sent"
        if self.is_dismissed:
            return "dismissed"
        return "pending"

    def __repr__(self) -> str:  # pragma: no cover
        due_str = self.due_at.strftime('%Y-%m-%dT%H:%M:%S')
        return f"<ReminderRecord id={self.id} user_id={self.user_id!r} due='{due_str}' status={self.status}>"


__all__ = ["ReminderRecord"]
