import asyncio
from datetime import timedelta

import pytest
from sqlalchemy.exc import OperationalError
from sqlalchemy.ext.asyncio import AsyncSession

from app.core.calendar.errors import CredentialError, NotFoundError, TransientProviderError
from app.core.calendar.models import CalendarCredential
from app.core.calendar.noop import NoOpCalendarAdapter
from app.core.calendar.tokens import TokenStore
from app.core.clock import utcnow
from app.db.base import async_session_context


class CountingAdapter(NoOpCalendarAdapter):
    refresh_calls = 0
    delay = 0.0

    async def refresh_token(self, refresh_token):
        type(self).refresh_calls += 1
        if self.delay:
            await asyncio.sleep(self.delay)
        return await super().refresh_token(refresh_token)


class FlakyAdapter(NoOpCalendarAdapter):
    async def refresh_token(self, refresh_token):
        raise TransientProviderError(self.name, "refresh_token", "HTTP 503", status_code=503)


@pytest.fixture(autouse=True)
def reset_counter():
    CountingAdapter.refresh_calls = 0
    CountingAdapter.delay = 0.0


def counting_factory(name):
    return CountingAdapter()


async def _expire_in(session, credential, delta):
    credential.expiry_time = utcnow() + delta
    await session.commit()


@pytest.mark.asyncio
async def test_connect_upserts_credential(db_session, noop_credential):
    store = TokenStore(db_session)
    again = await store.connect("u1", "noop", "acct1")
    await db_session.commit()

    assert again.id == noop_credential.id
    assert again.account_email == "acct1@noop.local"
    assert again.is_active is True
    assert len(await store.list_credentials("u1")) == 1


@pytest.mark.asyncio
async def test_fresh_token_is_returned_without_refresh(db_session, noop_credential):
    store = TokenStore(db_session, counting_factory)
    token = await store.get_valid_access_token(noop_credential)

    assert token == noop_credential.access_token
    assert CountingAdapter.refresh_calls == 0


@pytest.mark.asyncio
async def test_token_inside_safety_margin_is_refreshed_and_persisted(db_session, noop_credential):
    await _expire_in(db_session, noop_credential, timedelta(minutes=2))
    old_token = noop_credential.access_token
    store = TokenStore(db_session, counting_factory)

    token = await store.get_valid_access_token(noop_credential)

    assert token != old_token
    assert CountingAdapter.refresh_calls == 1
    lifetime = noop_credential.expiry_time - utcnow()
    assert timedelta(seconds=3500) < lifetime <= timedelta(seconds=3600)

    async with async_session_context() as other:
        stored = await other.get(CalendarCredential, noop_credential.id)
        assert stored.access_token == token
        # refresh token не ротировался - остался прежний
        assert stored.refresh_token == "acct1:refresh"

    # второй вызов сразу после обновления - без обращения к провайдеру
    assert await store.get_valid_access_token(noop_credential) == token
    assert CountingAdapter.refresh_calls == 1


@pytest.mark.asyncio
async def test_refresh_rejected_keeps_credential_active(db_session, noop_credential):
    await _expire_in(db_session, noop_credential, timedelta(minutes=-5))
    NoOpCalendarAdapter.revoke("acct1:refresh")
    store = TokenStore(db_session)

    with pytest.raises(CredentialError):
        await store.get_valid_access_token(noop_credential)

    await db_session.refresh(noop_credential)
    assert noop_credential.is_active is True


@pytest.mark.asyncio
async def test_transient_refresh_failure_is_reported_as_transient(db_session, noop_credential):
    await _expire_in(db_session, noop_credential, timedelta(minutes=-5))
    store = TokenStore(db_session, lambda name: FlakyAdapter())

    with pytest.raises(TransientProviderError):
        await store.get_valid_access_token(noop_credential)


@pytest.mark.asyncio
async def test_missing_refresh_token_is_a_credential_error(db_session, noop_credential):
    noop_credential.refresh_token = None
    await _expire_in(db_session, noop_credential, timedelta(minutes=-1))

    with pytest.raises(CredentialError):
        await TokenStore(db_session).get_valid_access_token(noop_credential)


@pytest.mark.asyncio
async def test_concurrent_callers_share_one_refresh(db_session, noop_credential):
    await _expire_in(db_session, noop_credential, timedelta(minutes=1))
    CountingAdapter.delay = 0.05

    async with async_session_context() as s1, async_session_context() as s2:
        c1 = await s1.get(CalendarCredential, noop_credential.id)
        c2 = await s2.get(CalendarCredential, noop_credential.id)
        t1, t2 = await asyncio.gather(
            TokenStore(s1, counting_factory).get_valid_access_token(c1),
            TokenStore(s2, counting_factory).get_valid_access_token(c2),
        )

    assert CountingAdapter.refresh_calls == 1
    assert t1 == t2


@pytest.mark.asyncio
async def test_persist_failure_still_returns_token_and_schedules_retry(db_session, noop_credential, monkeypatch):
    await _expire_in(db_session, noop_credential, timedelta(minutes=-1))
    credential_id = noop_credential.id
    scheduled = []
    monkeypatch.setattr(
        "app.core.calendar.tokens._schedule_persist",
        lambda cid, old_expiry, values: scheduled.append((cid, values["access_token"])),
    )

    real_commit = AsyncSession.commit
    calls = {"n": 0}

    async def flaky_commit(self):
        calls["n"] += 1
        if calls["n"] == 1:
            raise OperationalError("UPDATE calendar_credentials", {}, Exception("database is locked"))
        await real_commit(self)

    monkeypatch.setattr(AsyncSession, "commit", flaky_commit)

    token = await TokenStore(db_session).get_valid_access_token(noop_credential)

    assert token.startswith("acct1:")
    assert scheduled == [(credential_id, token)]


@pytest.mark.asyncio
async def test_disconnect_deactivates_or_purges(db_session, noop_credential):
    store = TokenStore(db_session)

    await store.disconnect("u1", "noop")
    await db_session.commit()
    assert (await store.get_credential("u1", "noop")).is_active is False
    assert await store.list_active_credentials() == []

    await store.disconnect("u1", "noop", purge=True)
    await db_session.commit()
    with pytest.raises(NotFoundError):
        await store.get_credential("u1", "noop")


@pytest.mark.asyncio
async def test_disconnect_unknown_connection(db_session):
    with pytest.raises(NotFoundError):
        await TokenStore(db_session).disconnect("u1", "google")
