# app/core/auth/schemas.py

from __future__ import annotations

from pydantic import BaseModel, Field


class TokenData(BaseModel):
    """
    Данные, извлечённые из JWT токена.
    ``sub`` токена - идентификатор пользователя основного приложения.
    """
    user_id: str = Field(..., min_length=1, description="User ID within the host application")
