"""Run-wide processing lock with staleness-based recovery."""

from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import datetime, timedelta

from sqlalchemy.exc import SQLAlchemyError

from models import ProcessingLock, generate_uuid7

from .state import SyncStateError, from_storage, to_storage

LOGGER = logging.getLogger(__name__)

_LOCK_NAME = "sync"


@dataclass(slots=True)
class LockInfo:
    owner: str
    acquired_at: datetime

    def age(self, now: datetime) -> timedelta:
        return now - self.acquired_at


def new_owner_token() -> str:
    return generate_uuid7().hex


class LockManager:
    """Single-row lock; a lock older than ``stale_after`` counts as absent."""

    def __init__(self, session_factory, *, stale_after: timedelta = timedelta(minutes=30)) -> None:
        self._session_factory = session_factory
        self._stale_after = stale_after

    @property
    def stale_after(self) -> timedelta:
        return self._stale_after

    def current(self) -> LockInfo | None:
        try:
            with self._session_factory() as session:
                record = session.get(ProcessingLock, _LOCK_NAME)
                if record is None:
                    return None
                return LockInfo(owner=record.owner, acquired_at=from_storage(record.acquired_at))
        except SQLAlchemyError as exc:
            raise SyncStateError(str(exc)) from exc

    def is_stale(self, lock: LockInfo, now: datetime) -> bool:
        return lock.age(now) > self._stale_after

    def live_lock(self, now: datetime) -> LockInfo | None:
        """Return the current lock unless it is missing or stale."""

        lock = self.current()
        if lock is None:
            return None
        if self.is_stale(lock, now):
            LOGGER.warning(
                "Processing lock held by %s is stale (age %s); treating as released",
                lock.owner,
                lock.age(now),
            )
            return None
        return lock

    def acquire(self, now: datetime, owner: str) -> LockInfo:
        """Write the lock for ``owner`` unconditionally; callers check liveness first."""

        try:
            with self._session_factory() as session:
                record = session.get(ProcessingLock, _LOCK_NAME)
                if record is None:
                    record = ProcessingLock(name=_LOCK_NAME)
                    session.add(record)
                record.owner = owner
                record.acquired_at = to_storage(now)
                session.commit()
        except SQLAlchemyError as exc:
            raise SyncStateError(str(exc)) from exc
        return LockInfo(owner=owner, acquired_at=now)

    def refresh(self, now: datetime, owner: str) -> LockInfo:
        return self.acquire(now, owner)

    def release(self, owner: str | None = None) -> bool:
        """Delete the lock; with ``owner`` set only that owner's lock is removed."""

        try:
            with self._session_factory() as session:
                query = session.query(ProcessingLock).filter(ProcessingLock.name == _LOCK_NAME)
                if owner is not None:
                    query = query.filter(ProcessingLock.owner == owner)
                deleted = query.delete()
                session.commit()
                return bool(deleted)
        except SQLAlchemyError as exc:
            raise SyncStateError(str(exc)) from exc


__all__ = ["LockInfo", "LockManager", "new_owner_token"]
