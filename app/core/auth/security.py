# app/core/auth/security.py

from __future__ import annotations

import hmac
import logging
from datetime import datetime, timedelta, timezone
from typing import Any

from fastapi import Depends, Header, HTTPException, status
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer
from jose import jwt, JWTError
from pydantic import ValidationError

from app.config import settings

from .schemas import TokenData

log = logging.getLogger(__name__)

# Пользователей выпускает основное приложение; здесь токен только проверяется
bearer_scheme = HTTPBearer(auto_error=False)

# --- Функции для работы с JWT ---

def create_access_token(user_id: str, expires_delta: timedelta | None = None) -> str:
    """
    Создает JWT токен доступа с ``sub`` = user_id.
    Используется тестами и служебными скриптами.
    """
    expire = datetime.now(timezone.utc) + (
        expires_delta or timedelta(minutes=settings.JWT_ACCESS_TOKEN_EXPIRE_MINUTES)
    )
    to_encode = {"sub": str(user_id), "exp": expire}
    encoded_jwt = jwt.encode(to_encode, settings.JWT_SECRET_KEY, algorithm=settings.JWT_ALGORITHM)
    log.debug("Created JWT token for sub: %s", user_id)
    return encoded_jwt


def verify_token(token: str, credentials_exception: HTTPException) -> TokenData:
    """
    Верифицирует JWT токен и возвращает данные из него.

    Raises:
        HTTPException: Если токен невалиден, истек или без ``sub``.
    """
    try:
        payload: dict[str, Any] = jwt.decode(
            token,
            settings.JWT_SECRET_KEY,
            algorithms=[settings.JWT_ALGORITHM],
        )
        user_id: str | None = payload.get("sub")
        if user_id is None:
            log.warning("Token verification failed: 'sub' (user_id) claim missing.")
            raise credentials_exception
        token_data = TokenData(user_id=user_id)
        log.debug("Token verified successfully for user_id: %s", user_id)
    except JWTError as e:
        log.warning("Token verification failed: JWTError - %s", e)
        raise credentials_exception from e
    except ValidationError as e:
        log.warning("Token verification failed: ValidationError - %s", e)
        raise credentials_exception from e

    return token_data

# --- FastAPI Dependencies ---

async def get_current_user_id(
    credentials: HTTPAuthorizationCredentials | None = Depends(bearer_scheme),
) -> str:
    """
    FastAPI зависимость: ID пользователя из bearer-токена.
    """
    credentials_exception = HTTPException(
        status_code=status.HTTP_401_UNAUTHORIZED,
        detail="Could not validate credentials",
        headers={"WWW-Authenticate": "Bearer"},
    )
    if credentials is None or credentials.scheme.lower() != "bearer":
        raise credentials_exception
    return verify_token(credentials.credentials, credentials_exception).user_id


async def verify_cron_secret(authorization: str | None = Header(None)) -> None:
    """
    Защита cron-эндпоинтов: ``Authorization: Bearer <CRON_SECRET>``.
    Без настроенного секрета эндпоинт закрыт.
    """
    expected = settings.CRON_SECRET
    supplied = (authorization or "").removeprefix("Bearer ").strip()
    if not expected or not hmac.compare_digest(supplied, expected):
        log.warning("Rejected cron call: bad or missing secret")
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="Unauthorized")
