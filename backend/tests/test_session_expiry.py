"""Inactivity expiry sweep."""

from datetime import datetime, timedelta, timezone

import pytest

from fakes import InMemorySessionStore, StorageDown
from sensei.services.session_expiry import SessionExpirySweep, invalidated_token

NOW = datetime(2024, 3, 1, 12, 0, tzinfo=timezone.utc)


async def _insert(store, username, login, **fields):
    doc = {
        "username": username,
        "login_at": login,
        "login_time": login,
        "active": True,
        "session_token": f"tok-{username}",
        "is_deleted": {"status": False},
    }
    doc.update(fields)
    return (await store.insert(doc))["_id"]


def test_invalidated_token_format():
    assert invalidated_token("t1", NOW) == f"INVALIDATED_{int(NOW.timestamp() * 1000)}_t1"


@pytest.mark.anyio
class TestSessionExpirySweep:
    async def test_only_stale_open_sessions_are_closed(self):
        store = InMemorySessionStore()
        stale = await _insert(store, "t1", NOW - timedelta(minutes=90))
        stale_same_teacher = await _insert(store, "t1", NOW - timedelta(hours=5))
        fresh = await _insert(store, "t2", NOW - timedelta(minutes=30))
        closed = await _insert(store, "t3", NOW - timedelta(hours=3), logout_time=NOW - timedelta(hours=2))
        deleted = await _insert(store, "t4", NOW - timedelta(hours=3), is_deleted={"status": True})

        expired = await SessionExpirySweep(store, timeout_minutes=75).run(NOW)

        assert expired == 2
        for oid in (stale, stale_same_teacher):
            doc = store.raw(oid)
            assert doc["active"] is False
            assert doc["logout_time"] == doc["logout_at"] == NOW
            assert doc["session_token"] == invalidated_token("t1", NOW)
        for oid in (fresh, closed, deleted):
            assert store.raw(oid)["session_token"].startswith("tok-")

    async def test_nothing_to_expire(self):
        store = InMemorySessionStore()
        await _insert(store, "t1", NOW)
        assert await SessionExpirySweep(store, timeout_minutes=75).run(NOW) == 0

    async def test_failed_sweep_is_logged_not_raised(self, caplog):
        class BrokenStore:
            async def find_expired(self, cutoff):
                raise StorageDown("no primary")

        sweep = SessionExpirySweep(BrokenStore(), timeout_minutes=75)
        assert await sweep.run_safely() == 0
        assert "expiry sweep failed" in caplog.text
