"""Simple DB-backed lock to ensure only one runner sweeps payments."""
from __future__ import annotations

import os
import socket
from datetime import timedelta

from sqlalchemy import select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from app import db
from app.models.scheduler_lock import SchedulerLock
from app.utils.time import ensure_aware, utcnow

LOCK_NAME = "payment-sweep"
LOCK_TTL_SECONDS = 300


def _session(db_session: Session | None = None) -> tuple[Session, bool]:
    if db_session is not None:
        return db_session, False
    return db.get_sessionmaker()(), True


def _owner_id() -> str:
    return f"{socket.gethostname()}-{os.getpid()}"


def try_acquire_scheduler_lock(
    name: str = LOCK_NAME,
    *,
    ttl_seconds: int = LOCK_TTL_SECONDS,
    db_session: Session | None = None,
    owner: str | None = None,
) -> bool:
    """Take the lock when free, expired or already ours; renew its TTL in every case."""

    session, should_close = _session(db_session)
    owner = owner or _owner_id()
    now = utcnow()
    expires = now + timedelta(seconds=ttl_seconds)

    try:
        with session.begin():
            lock = session.execute(
                select(SchedulerLock).where(SchedulerLock.name == name).with_for_update()
            ).scalar_one_or_none()

            if lock is None:
                session.add(SchedulerLock(name=name, owner=owner, acquired_at=now, expires_at=expires))
                return True

            if lock.expires_at is None or ensure_aware(lock.expires_at) <= now:
                lock.owner = owner
                lock.acquired_at = now
                lock.expires_at = expires
                return True

            if lock.owner == owner:
                lock.expires_at = expires
                return True

            return False
    except IntegrityError:
        # Another runner inserted the row first.
        session.rollback()
        return False
    finally:
        if should_close:
            session.close()


def refresh_scheduler_lock(
    name: str = LOCK_NAME,
    *,
    ttl_seconds: int = LOCK_TTL_SECONDS,
    db_session: Session | None = None,
    owner: str | None = None,
) -> None:
    """Extend the TTL of the lock when owned by this runner."""

    session, should_close = _session(db_session)
    owner = owner or _owner_id()
    try:
        with session.begin():
            lock = session.execute(
                select(SchedulerLock).where(SchedulerLock.name == name).with_for_update()
            ).scalar_one_or_none()
            if lock and lock.owner == owner:
                lock.expires_at = utcnow() + timedelta(seconds=ttl_seconds)
    finally:
        if should_close:
            session.close()


def release_scheduler_lock(
    name: str = LOCK_NAME,
    *,
    db_session: Session | None = None,
    owner: str | None = None,
) -> None:
    """Release the lock if held by this runner."""

    session, should_close = _session(db_session)
    owner = owner or _owner_id()
    try:
        with session.begin():
            lock = session.execute(
                select(SchedulerLock).where(SchedulerLock.name == name).with_for_update()
            ).scalar_one_or_none()
            if lock and lock.owner == owner:
                session.delete(lock)
    finally:
        if should_close:
            session.close()


def describe_scheduler_lock(name: str = LOCK_NAME, *, db_session: Session | None = None) -> dict[str, object]:
    """Return a lightweight description of the current lock state."""

    session, should_close = _session(db_session)
    try:
        lock = session.execute(select(SchedulerLock).where(SchedulerLock.name == name)).scalar_one_or_none()
        if lock is None:
            return {"status": "none", "owner": None, "present": False}

        now = utcnow()
        expires_in = (ensure_aware(lock.expires_at) - now).total_seconds() if lock.expires_at else None
        return {
            "status": "owned_by_self" if lock.owner == _owner_id() else "owned_by_other",
            "owner": lock.owner,
            "present": True,
            "age_seconds": (now - ensure_aware(lock.acquired_at)).total_seconds(),
            "expires_in_seconds": expires_in,
            "stale": expires_in is not None and expires_in < -60,
        }
    finally:
        if should_close:
            session.close()


__all__ = [
    "LOCK_NAME",
    "LOCK_TTL_SECONDS",
    "try_acquire_scheduler_lock",
    "refresh_scheduler_lock",
    "release_scheduler_lock",
    "describe_scheduler_lock",
]
