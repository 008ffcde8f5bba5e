# app/api/v1/calendar.py

from __future__ import annotations

import logging
import secrets
from datetime import datetime
from typing import List, Optional

from fastapi import APIRouter, BackgroundTasks, Depends, HTTPException, Query, Response, status
from sqlalchemy.ext.asyncio import AsyncSession

from app.core.auth.security import get_current_user_id
from app.core.calendar import get_calendar_adapter, is_supported_provider
from app.core.calendar.reconciler import EventReconciler
from app.core.calendar.schemas import (
    AuthorizeOut,
    ConnectionOut,
    ConnectRequest,
    EventIn,
    EventOut,
    EventUpdate,
    SyncRequest,
    SyncResult,
)
from app.core.calendar.tokens import TokenStore
from app.core.clock import to_naive_utc
from app.db.base import get_async_db_session
from app.workers.tasks import enqueue_push

router = APIRouter(prefix="/v1/calendar", tags=["calendar"])
log = logging.getLogger(__name__)


def _provider_or_404(provider: str) -> str:
    key = provider.lower()
    if not is_supported_provider(key):
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=f"Unknown calendar provider: {provider}")
    return key


# --- Подключения ---
@router.get("/connections", response_model=List[ConnectionOut])
async def list_connections(
    user_id: str = Depends(get_current_user_id),
    db: AsyncSession = Depends(get_async_db_session),
):
    return await TokenStore(db).list_credentials(user_id)


@router.get("/connections/{provider}/authorize", response_model=AuthorizeOut)
async def authorize_connection(
    provider: str,
    redirect_uri: Optional[str] = None,
    user_id: str = Depends(get_current_user_id),
):
    """URL страницы согласия провайдера. ``state`` проверяет вызывающее приложение."""
    key = _provider_or_404(provider)
    state = secrets.token_urlsafe(24)
    url = get_calendar_adapter(key).authorization_url(state, redirect_uri)
    log.info("User %s starts %s authorization", user_id, key)
    return AuthorizeOut(url=url, state=state)


@router.post("/connections/{provider}", response_model=ConnectionOut, status_code=status.HTTP_201_CREATED)
async def connect(
    provider: str,
    body: ConnectRequest,
    background: BackgroundTasks,
    user_id: str = Depends(get_current_user_id),
    db: AsyncSession = Depends(get_async_db_session),
):
    """Обмен authorization code на токены (OAuth callback основного приложения)."""
    key = _provider_or_404(provider)
    credential = await TokenStore(db).connect(user_id, key, body.code, body.redirect_uri)
    await db.commit()
    background.add_task(enqueue_push, user_id)
    return credential


@router.delete("/connections/{provider}", status_code=status.HTTP_204_NO_CONTENT)
async def disconnect(
    provider: str,
    purge: bool = Query(False, description="Удалить подключение, а не деактивировать"),
    user_id: str = Depends(get_current_user_id),
    db: AsyncSession = Depends(get_async_db_session),
):
    key = _provider_or_404(provider)
    await TokenStore(db).disconnect(user_id, key, purge=purge)
    return Response(status_code=status.HTTP_204_NO_CONTENT)


# --- События ---
@router.get("/events", response_model=List[EventOut])
async def list_events(
    start: Optional[datetime] = None,
    end: Optional[datetime] = None,
    user_id: str = Depends(get_current_user_id),
    db: AsyncSession = Depends(get_async_db_session),
):
    return await EventReconciler(db).list_events(
        user_id,
        to_naive_utc(start) if start else None,
        to_naive_utc(end) if end else None,
    )


@router.post("/events", response_model=EventOut, status_code=status.HTTP_201_CREATED)
async def create_event(
    body: EventIn,
    background: BackgroundTasks,
    user_id: str = Depends(get_current_user_id),
    db: AsyncSession = Depends(get_async_db_session),
):
    event = await EventReconciler(db).create_event(user_id, body)
    await db.commit()
    background.add_task(enqueue_push, user_id)
    return event


@router.patch("/events/{event_id}", response_model=EventOut)
async def update_event(
    event_id: int,
    body: EventUpdate,
    background: BackgroundTasks,
    user_id: str = Depends(get_current_user_id),
    db: AsyncSession = Depends(get_async_db_session),
):
    try:
        event = await EventReconciler(db).update_event(user_id, event_id, body)
    except ValueError as exc:
        raise HTTPException(status_code=status.HTTP_422_UNPROCESSABLE_ENTITY, detail=str(exc)) from exc
    await db.commit()
    background.add_task(enqueue_push, user_id)
    return event


@router.delete("/events/{event_id}", status_code=status.HTTP_204_NO_CONTENT)
async def delete_event(
    event_id: int,
    user_id: str = Depends(get_current_user_id),
    db: AsyncSession = Depends(get_async_db_session),
):
    await EventReconciler(db).delete_event(user_id, event_id)
    return Response(status_code=status.HTTP_204_NO_CONTENT)


# --- Синхронизация ---
@router.post("/sync", response_model=List[SyncResult])
async def sync_now(
    body: Optional[SyncRequest] = None,
    user_id: str = Depends(get_current_user_id),
    db: AsyncSession = Depends(get_async_db_session),
):
    """Синхронный проход push + pull по подключениям пользователя."""
    provider = _provider_or_404(body.provider) if body and body.provider else None
    return await EventReconciler(db).sync_user(user_id, provider)
