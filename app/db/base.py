# /app/app/db/base.py

from __future__ import annotations

import contextlib
import logging
from typing import AsyncGenerator

from sqlalchemy.ext.asyncio import (
    async_sessionmaker,
    AsyncSession,
    create_async_engine,
)
from sqlalchemy.orm import DeclarativeBase
from sqlalchemy.pool import NullPool
from sqlalchemy.exc import SQLAlchemyError

from app.config import settings

log = logging.getLogger(__name__)


# --- Declarative Base ---
class Base(DeclarativeBase):
    pass


# --- Engine & Session factory ---
if settings.ENVIRONMENT == "test":
    # Файловая SQLite: у каждой сессии своё соединение, как у Postgres
    log.info("Using SQLite database (aiosqlite) for tests: %s", settings.DATABASE_URL)
    if not settings.DATABASE_URL.startswith("sqlite+aiosqlite://"):
        raise ValueError("Test DATABASE_URL must use the 'aiosqlite' driver.")
    engine = create_async_engine(
        settings.DATABASE_URL, poolclass=NullPool, echo=False,
        connect_args={"timeout": 15},
    )
else:
    log.info("Using ASYNC PostgreSQL database: %s", settings.DATABASE_URL[:25])
    if not settings.DATABASE_URL.startswith("postgresql+asyncpg://"):
        log.warning("DATABASE_URL does not start with 'postgresql+asyncpg://'.")
        raise ValueError("DATABASE_URL must use 'asyncpg' driver for async operations.")

    engine = create_async_engine(
        settings.DATABASE_URL, echo=(settings.ENVIRONMENT == "dev"), pool_pre_ping=True,
    )

async_session_factory = async_sessionmaker(
    bind=engine, class_=AsyncSession, expire_on_commit=False
)


async def get_async_db_session() -> AsyncGenerator[AsyncSession, None]:
    """
    FastAPI dependency: Creates and yields an async session, handling commit/rollback.
    """
    session: AsyncSession = async_session_factory()
    session_id_for_log = id(session)
    try:
        log.debug(">>> get_async_db_session: Session %s created, yielding...", session_id_for_log)
        yield session
        await session.commit()
        log.debug(">>> get_async_db_session: Session %s committed.", session_id_for_log)
    except SQLAlchemyError:
        log.exception(
            ">>> get_async_db_session: SQLAlchemyError in session %s, rolling back...",
            session_id_for_log
        )
        await session.rollback()
        raise
    except Exception:
        log.debug(">>> get_async_db_session: exception in session %s scope, rolling back...", session_id_for_log)
        await session.rollback()
        raise
    finally:
        await session.close()


@contextlib.asynccontextmanager
async def async_session_context() -> AsyncGenerator[AsyncSession, None]:
    session: AsyncSession = async_session_factory()
    log.debug("Entering async session context %s", id(session))
    try:
        yield session
        log.debug("Committing session %s from context", id(session))
        await session.commit()
    except Exception:
        log.exception("Rolling back session %s from context due to exception", id(session))
        await session.rollback()
        raise
    finally:
        log.debug("Closing session %s from context", id(session))
        await session.close()


def _import_models() -> None:
    # Модели должны быть зарегистрированы в Base.metadata до create_all
    import app.core.calendar.models  # noqa: F401
    import app.core.reminders.models  # noqa: F401


async def create_db_and_tables() -> None:
    _import_models()
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    log.info("Database tables created")


async def drop_db_and_tables() -> None:
    _import_models()
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.drop_all)
    log.info("Database tables dropped")


__all__ = [
    "Base", "engine", "async_session_factory", "AsyncSession",
    "get_async_db_session", "async_session_context",
    "create_db_and_tables", "drop_db_and_tables",
]
