from __future__ import annotations

import logging

from fastapi import APIRouter, HTTPException, status
from redis.asyncio import Redis
from redis.exceptions import RedisError
from sqlalchemy import text
from sqlalchemy.exc import SQLAlchemyError

from app.config import settings
from app.db.base import engine

router = APIRouter(tags=["infra"])
log = logging.getLogger(__name__)


async def _check_db() -> None:
    try:
        async with engine.connect() as conn:
            await conn.execute(text("SELECT 1"))
    except SQLAlchemyError as exc:
        log.exception("DB health check failed")
        raise HTTPException(status_code=status.HTTP_500_INTERNAL_SERVER_ERROR, detail="db error") from exc


@router.get("/healthz")
async def healthz():
    """Liveness: процесс жив и БД отвечает."""
    await _check_db()
    return {"status": "ok", "db": "ok", "environment": settings.ENVIRONMENT}


@router.get("/readyz")
async def readyz():
    """Readiness: дополнительно проверяется брокер Celery (Redis)."""
    out: dict[str, str] = {}
    await _check_db()
    out["db"] = "ok"

    r = Redis.from_url(settings.CELERY_BROKER_URL, socket_connect_timeout=2)
    try:
        if not await r.ping():
            raise HTTPException(status_code=500, detail="cache error")
        out["cache"] = "ok"
    except RedisError as exc:
        log.exception("Redis health check failed")
        raise HTTPException(status_code=500, detail="cache error") from exc
    finally:
        await r.aclose()

    out["calendar_providers"] = ",".join(settings.CALENDAR_PROVIDERS_ENABLED)
    return out
