"""Per-invocation gate deciding whether a sync run may start or continue."""

from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import date, datetime
from enum import Enum
from zoneinfo import ZoneInfo

from .config import ScheduleConfig
from .locks import LockManager, new_owner_token
from .state import SyncStateStore

LOGGER = logging.getLogger(__name__)


class GateReason(str, Enum):
    ALLOWED = "allowed"
    COMPLETED_TODAY = "already completed today"
    STOP_REQUESTED = "stop requested"
    STOP_PENDING = "stop pending"
    OUTSIDE_WINDOW = "outside window"
    ALREADY_RUNNING = "already running"


@dataclass(slots=True)
class GateDecision:
    allow: bool
    reason: GateReason
    run_id: str | None = None


class SchedulerGate:
    """Apply the daily-completion, stop, window and lock rules in that order."""

    def __init__(self, store: SyncStateStore, locks: LockManager, schedule: ScheduleConfig) -> None:
        self._store = store
        self._locks = locks
        self._schedule = schedule
        self._zone = ZoneInfo(schedule.timezone)

    def local_time(self, now: datetime) -> datetime:
        return now.astimezone(self._zone)

    def local_date(self, now: datetime) -> date:
        return self.local_time(now).date()

    def in_window(self, now: datetime) -> bool:
        return self._schedule.hour_in_window(self.local_time(now).hour)

    def should_run(self, now: datetime, is_manual: bool = False, run_id: str | None = None) -> GateDecision:
        today = self.local_date(now)
        if self._store.completion_date() == today:
            return self._deny(GateReason.COMPLETED_TODAY)

        if self._store.is_stop_requested():
            lock = self._locks.live_lock(now)
            if lock is not None and lock.owner != run_id:
                # The run holding the lock consumes the request at its next chunk boundary.
                return self._deny(GateReason.STOP_PENDING)
            self._store.clear_stop_request()
            return self._deny(GateReason.STOP_REQUESTED)

        if not is_manual and not self.in_window(now):
            return self._deny(GateReason.OUTSIDE_WINDOW)

        lock = self._locks.live_lock(now)
        if lock is not None and lock.owner != run_id:
            return self._deny(GateReason.ALREADY_RUNNING)

        owner = run_id or new_owner_token()
        self._locks.acquire(now, owner)
        LOGGER.info("Sync gate open (manual=%s, run=%s)", is_manual, owner)
        return GateDecision(allow=True, reason=GateReason.ALLOWED, run_id=owner)

    def _deny(self, reason: GateReason) -> GateDecision:
        LOGGER.info("Sync gate closed: %s", reason.value)
        return GateDecision(allow=False, reason=reason)


__all__ = ["GateDecision", "GateReason", "SchedulerGate"]
