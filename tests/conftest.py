import asyncio
import os
import sys

import pytest
import pytest_asyncio

# Ensure Python path includes project root for `import app`
sys.path.insert(0, os.path.abspath(os.path.join(os.path.dirname(__file__), "..")))

# Ensure JWT secret for tests
os.environ.setdefault('JWT_SECRET_KEY', 'test-secret')

import app.conftest  # noqa: F401,E402

from app.core.calendar.noop import NoOpCalendarAdapter  # noqa: E402
from app.core.calendar.tokens import TokenStore  # noqa: E402
from app.db.base import async_session_context, create_db_and_tables, drop_db_and_tables  # noqa: E402


@pytest.fixture(autouse=True)
def reset_noop_calendar():
    # In-memory календарь общий для всех экземпляров адаптера
    NoOpCalendarAdapter.reset()
    yield
    NoOpCalendarAdapter.reset()


async def _fresh_schema():
    await drop_db_and_tables()
    await create_db_and_tables()


@pytest_asyncio.fixture
async def setup_db():
    await _fresh_schema()
    yield
    await drop_db_and_tables()


@pytest_asyncio.fixture
async def db_session(setup_db):
    async with async_session_context() as session:
        yield session


@pytest_asyncio.fixture
async def noop_credential(db_session):
    """Пользователь u1 подключил noop-календарь аккаунта acct1."""
    credential = await TokenStore(db_session).connect("u1", "noop", "acct1")
    await db_session.commit()
    return credential


@pytest.fixture
def sync_db():
    """Та же схема для синхронных тестов (TestClient, Celery eager)."""
    asyncio.run(_fresh_schema())
    yield
    asyncio.run(drop_db_and_tables())
