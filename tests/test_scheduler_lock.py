from datetime import datetime, timedelta, timezone

from sqlalchemy import select

from app.models.scheduler_lock import SchedulerLock
from app.services.scheduler_lock import (
    LOCK_NAME,
    describe_scheduler_lock,
    refresh_scheduler_lock,
    release_scheduler_lock,
    try_acquire_scheduler_lock,
)


def test_scheduler_lock_is_reentrant_for_owner():
    assert try_acquire_scheduler_lock(owner="node-A") is True
    assert try_acquire_scheduler_lock(owner="node-A") is True

    release_scheduler_lock(owner="node-A")
    assert describe_scheduler_lock()["present"] is False


def test_lock_cannot_be_taken_if_not_expired(monkeypatch):
    monkeypatch.setattr("app.services.scheduler_lock._owner_id", lambda: "node-A")
    assert try_acquire_scheduler_lock(ttl_seconds=300)

    monkeypatch.setattr("app.services.scheduler_lock._owner_id", lambda: "node-B")
    assert try_acquire_scheduler_lock(ttl_seconds=300) is False

    # Only the owner may release it.
    release_scheduler_lock()
    assert describe_scheduler_lock()["owner"] == "node-A"


def test_lock_can_be_reacquired_after_expiry(session_factory):
    assert try_acquire_scheduler_lock(ttl_seconds=60, owner="node-A")

    session = session_factory()
    with session.begin():
        lock = session.execute(select(SchedulerLock).where(SchedulerLock.name == LOCK_NAME)).scalar_one()
        lock.expires_at = datetime.now(timezone.utc) - timedelta(seconds=1)
    session.close()

    assert try_acquire_scheduler_lock(ttl_seconds=300, owner="node-B")
    assert describe_scheduler_lock()["owner"] == "node-B"


def test_refresh_extends_ttl_for_owner_only():
    assert try_acquire_scheduler_lock(ttl_seconds=10, owner="node-A")

    refresh_scheduler_lock(ttl_seconds=600, owner="node-B")
    assert describe_scheduler_lock()["expires_in_seconds"] <= 10

    refresh_scheduler_lock(ttl_seconds=600, owner="node-A")
    assert describe_scheduler_lock()["expires_in_seconds"] > 500


def test_describe_scheduler_lock_contains_expiry(monkeypatch):
    monkeypatch.setattr("app.services.scheduler_lock._owner_id", lambda: "node-A")
    assert try_acquire_scheduler_lock(ttl_seconds=60)

    info = describe_scheduler_lock()
    assert info["present"] is True
    assert info["status"] == "owned_by_self"
    assert "age_seconds" in info
    assert 0 < info["expires_in_seconds"] <= 60
    assert info["stale"] is False

    release_scheduler_lock()
