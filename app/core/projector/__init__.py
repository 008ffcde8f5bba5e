"""
Domain Event Projector package.

• ``TransactionRecord`` – входная модель сделки.
• ``MilestoneProjector`` – даты сделки → события календаря + напоминания.
"""
from __future__ import annotations

from .schemas import ProjectionRemoval, TransactionRecord
from .service import MILESTONE_SLOTS, MilestoneProjector

__all__: list[str] = [
    "MilestoneProjector",
    "MILESTONE_SLOTS",
    "ProjectionRemoval",
    "TransactionRecord",
]
