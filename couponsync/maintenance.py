"""Operator-facing status, health checks and housekeeping."""

from __future__ import annotations

import logging
from dataclasses import asdict, dataclass
from datetime import datetime, timedelta

from .content_store import ContentStore
from .locks import LockManager
from .notifications import SyncNotifier
from .scheduler import SchedulerGate
from .state import SyncStateStore, SyncStatus

LOGGER = logging.getLogger(__name__)


@dataclass(slots=True)
class StatusReport:
    status: str
    running: bool
    paused: bool
    cursor: int | None
    total: int | None
    last_sync: str | None
    last_sync_date: str | None
    last_error: str | None
    completed_today: bool
    in_window: bool
    stop_requested: bool
    pending_retries: int
    lock_owner: str | None
    lock_acquired_at: str | None

    def as_dict(self) -> dict:
        return asdict(self)

    def describe(self) -> str:
        if self.running and self.total is not None:
            return f"running ({self.cursor}/{self.total})"
        if self.paused and self.total is not None:
            return f"paused ({self.cursor}/{self.total})"
        if self.status == SyncStatus.FAILED.value:
            return f"failed ({self.last_error or 'unknown error'})"
        return self.status


def read_status(store: SyncStateStore, locks: LockManager, gate: SchedulerGate, now: datetime) -> StatusReport:
    """Summarise the persisted state; reads only, never mutates."""

    lock = locks.current()
    live = lock is not None and not locks.is_stale(lock, now)
    progress = store.progress()
    completion = store.completion_date()
    last_sync = store.last_sync()
    return StatusReport(
        status=store.status().value,
        running=live,
        paused=progress is not None and not live,
        cursor=progress[0] if progress else None,
        total=progress[1] if progress else None,
        last_sync=last_sync.isoformat() if last_sync else None,
        last_sync_date=completion.isoformat() if completion else None,
        last_error=store.last_error(),
        completed_today=completion == gate.local_date(now),
        in_window=gate.in_window(now),
        stop_requested=store.is_stop_requested(),
        pending_retries=len(store.pending_retries()),
        lock_owner=lock.owner if lock else None,
        lock_acquired_at=lock.acquired_at.isoformat() if lock else None,
    )


@dataclass(slots=True)
class HealthReport:
    status: str
    released_stuck_lock: bool
    pending_retries: int
    overdue_retries: int

    def as_dict(self) -> dict:
        return asdict(self)


def check_health(
    store: SyncStateStore,
    locks: LockManager,
    now: datetime,
    *,
    stuck_after: timedelta = timedelta(hours=2),
    notifier: SyncNotifier | None = None,
) -> HealthReport:
    """Release a lock left by a run that has not checked in for ``stuck_after``."""

    released = False
    lock = locks.current()
    if lock is not None and lock.age(now) > stuck_after:
        LOGGER.warning(
            "Run %s has held the lock for %s; releasing it and marking the run failed",
            lock.owner,
            lock.age(now),
        )
        locks.release(lock.owner)
        message = f"Run {lock.owner} stopped responding and was recovered by the health check"
        store.clear_state()
        store.set_status(SyncStatus.FAILED, error=message)
        if notifier is not None:
            notifier.run_failed(message=message)
        released = True

    retries = store.pending_retries()
    overdue = sum(1 for entry in retries if entry.not_before <= now)
    if overdue:
        LOGGER.warning("%d enrichment retries are due but not yet swept", overdue)
    return HealthReport(
        status=store.status().value,
        released_stuck_lock=released,
        pending_retries=len(retries),
        overdue_retries=overdue,
    )


def purge_expired_offers(content_store: ContentStore, gate: SchedulerGate, now: datetime) -> int:
    return content_store.purge_expired_offers(gate.local_date(now))


def reset_sync(store: SyncStateStore, locks: LockManager) -> None:
    """Forget the current run so the next tick starts from scratch."""

    store.reset()
    locks.release()
    LOGGER.info("Sync state, lock and stop flag cleared")


__all__ = [
    "HealthReport",
    "StatusReport",
    "check_health",
    "purge_expired_offers",
    "read_status",
    "reset_sync",
]
