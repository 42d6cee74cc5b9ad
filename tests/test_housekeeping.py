"""Expired start token cleanup"""
from datetime import datetime, timezone

from queuejoy.repositories.rtdb_client import InMemoryRealtimeDatabase
from queuejoy.repositories.tenant_store import GlobalStore
from queuejoy.scheduler.housekeeping import HousekeepingScheduler, purge_expired_tokens, sweep

from .conftest import run

NOW = datetime(2025, 1, 10, 12, 0, tzinfo=timezone.utc)


def _tokens():
    return {
        "old": {"queueKey": "-A", "expiresAt": "2025-01-08T12:00:00.000Z"},
        "recent": {"queueKey": "-B", "expiresAt": "2025-01-10T00:00:00.000Z"},
        "fresh": {"queueKey": "-C", "expiresAt": "2025-01-11T00:00:00.000Z"},
        "forever": {"queueKey": "-D"},
    }


def test_purge_keeps_tokens_inside_grace_period():
    db = InMemoryRealtimeDatabase({"telegramTokens": _tokens()})
    assert run(purge_expired_tokens(GlobalStore(db), NOW)) == 1
    assert set(db.data["telegramTokens"]) == {"recent", "fresh", "forever"}


def test_purge_without_tokens_writes_nothing():
    db = InMemoryRealtimeDatabase({"queue": {}})
    assert run(purge_expired_tokens(GlobalStore(db), NOW)) == 0
    assert db.count("PATCH") == 0


def test_sweep_covers_every_tenant_and_the_root():
    db = InMemoryRealtimeDatabase({
        "telegramTokens": _tokens(),
        "tenants": {
            "cafe": {"telegramTokens": _tokens()},
            "bakery": {"telegramTokens": {"fresh": _tokens()["fresh"]}},
        },
    })
    purged = run(sweep(db, NOW))

    assert purged == {"(global)": 1, "tenants/cafe": 1}
    assert db.count("PATCH") == 2
    assert "old" not in db.data["tenants"]["cafe"]["telegramTokens"]
    assert "fresh" in db.data["tenants"]["bakery"]["telegramTokens"]


def test_sweep_continues_after_a_failing_store():
    db = InMemoryRealtimeDatabase({
        "telegramTokens": _tokens(),
        "tenants": {"cafe": {"telegramTokens": _tokens()}},
    })
    db.fail_on.add("PATCH")
    assert run(sweep(db, NOW)) == {}
    assert db.count("PATCH") == 2


def test_scheduler_registers_purge_job(settings):
    async def cycle():
        scheduler = HousekeepingScheduler(InMemoryRealtimeDatabase(), settings)
        scheduler.start()
        job = scheduler.scheduler.get_job("purge_expired_tokens")
        running = scheduler.is_running
        scheduler.stop()
        return job, running, scheduler.is_running

    job, running, after = run(cycle())
    assert job is not None
    assert running and not after
