"""Durable synchronization state: progress, operational keys and retry schedule."""

from __future__ import annotations

import hashlib
import json
import logging
from contextlib import contextmanager
from dataclasses import dataclass
from datetime import date, datetime, timezone
from enum import Enum
from typing import Any, Iterator, Mapping
from uuid import UUID

from sqlalchemy import func
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.orm import Session

from models import RecoveredText, RetryEntry, SyncOption, SyncStateRecord

from .items import WorkItem, items_from_payload, items_to_payload

LOGGER = logging.getLogger(__name__)

_STATE_KEY = "default"

STATUS_KEY = "sync_status"
LAST_SYNC_KEY = "last_sync"
LAST_SYNC_DATE_KEY = "last_sync_date"
LAST_ERROR_KEY = "last_error"
STOP_REQUESTED_KEY = "stop_requested"
LAST_RUN_STATS_KEY = "last_run_stats"
NOTIFICATIONS_KEY = "notifications"


class SyncStateError(RuntimeError):
    """Raised when the durable state store cannot be read or written."""


class SyncStatus(str, Enum):
    IDLE = "idle"
    RUNNING = "running"
    COMPLETED = "completed"
    FAILED = "failed"
    STOPPED = "stopped"


def to_storage(moment: datetime) -> datetime:
    """Convert an aware datetime to naive UTC for storage."""

    if moment.tzinfo is None:
        return moment
    return moment.astimezone(timezone.utc).replace(tzinfo=None)


def from_storage(moment: datetime | None) -> datetime | None:
    if moment is None:
        return None
    if moment.tzinfo is None:
        return moment.replace(tzinfo=timezone.utc)
    return moment


def _payload_key(kind: str, payload: Mapping[str, Any]) -> str:
    encoded = json.dumps({"kind": kind, "payload": dict(payload)}, sort_keys=True, default=str)
    return hashlib.sha256(encoded.encode("utf-8")).hexdigest()


@dataclass(slots=True)
class SyncState:
    run_id: str
    items: list[WorkItem]
    cursor: int
    total: int
    started_at: datetime
    for_date: date
    manual: bool = False

    def __post_init__(self) -> None:
        if self.total != len(self.items):
            raise ValueError(f"total {self.total} does not match {len(self.items)} items")
        if not 0 <= self.cursor <= self.total:
            raise ValueError(f"cursor {self.cursor} outside 0..{self.total}")

    @property
    def finished(self) -> bool:
        return self.cursor >= self.total

    def next_chunk(self, batch_size: int) -> list[WorkItem]:
        return self.items[self.cursor:self.cursor + batch_size]


@dataclass(slots=True)
class RetryRecord:
    id: str
    kind: str
    payload: dict[str, Any]
    not_before: datetime
    input_key: str = ""


class SyncStateStore:
    """SQLAlchemy-backed store for SyncState, option keys and retry entries."""

    def __init__(self, session_factory) -> None:
        self._session_factory = session_factory

    @contextmanager
    def _session(self) -> Iterator[Session]:
        try:
            with self._session_factory() as session:
                yield session
                session.commit()
        except SQLAlchemyError as exc:
            raise SyncStateError(str(exc)) from exc

    # Sync state -----------------------------------------------------------

    def load_state(self) -> SyncState | None:
        with self._session() as session:
            record = session.get(SyncStateRecord, _STATE_KEY)
            if record is None:
                return None
            try:
                return SyncState(
                    run_id=record.run_id,
                    items=items_from_payload(record.items or []),
                    cursor=record.cursor,
                    total=record.total,
                    started_at=from_storage(record.started_at),
                    for_date=record.for_date,
                    manual=bool(record.manual),
                )
            except (KeyError, ValueError) as exc:
                raise SyncStateError(f"Stored sync state is corrupt: {exc}") from exc

    def save_state(self, state: SyncState) -> None:
        with self._session() as session:
            record = session.get(SyncStateRecord, _STATE_KEY)
            if record is None:
                record = SyncStateRecord(key=_STATE_KEY)
                session.add(record)
            record.run_id = state.run_id
            record.items = items_to_payload(state.items)
            record.cursor = state.cursor
            record.total = state.total
            record.started_at = to_storage(state.started_at)
            record.for_date = state.for_date
            record.manual = state.manual

    def update_cursor(self, cursor: int) -> None:
        with self._session() as session:
            record = session.get(SyncStateRecord, _STATE_KEY)
            if record is None:
                raise SyncStateError("No sync state to advance")
            if not 0 <= cursor <= record.total:
                raise SyncStateError(f"cursor {cursor} outside 0..{record.total}")
            record.cursor = cursor

    def clear_state(self) -> bool:
        with self._session() as session:
            deleted = session.query(SyncStateRecord).filter(SyncStateRecord.key == _STATE_KEY).delete()
            return bool(deleted)

    def progress(self) -> tuple[int, int] | None:
        with self._session() as session:
            record = session.get(SyncStateRecord, _STATE_KEY)
            if record is None:
                return None
            return record.cursor, record.total

    # Option keys ----------------------------------------------------------

    def get_option(self, key: str, default: Any = None) -> Any:
        with self._session() as session:
            option = session.get(SyncOption, key)
            if option is None:
                return default
            return option.value

    def set_option(self, key: str, value: Any) -> None:
        with self._session() as session:
            option = session.get(SyncOption, key)
            if option is None:
                session.add(SyncOption(key=key, value=value))
            else:
                option.value = value

    def delete_option(self, key: str) -> bool:
        with self._session() as session:
            deleted = session.query(SyncOption).filter(SyncOption.key == key).delete()
            return bool(deleted)

    def is_stop_requested(self) -> bool:
        return bool(self.get_option(STOP_REQUESTED_KEY, False))

    def request_stop(self) -> None:
        self.set_option(STOP_REQUESTED_KEY, True)

    def clear_stop_request(self) -> bool:
        return self.delete_option(STOP_REQUESTED_KEY)

    def completion_date(self) -> date | None:
        raw = self.get_option(LAST_SYNC_DATE_KEY)
        if not raw:
            return None
        try:
            return date.fromisoformat(str(raw))
        except ValueError:
            LOGGER.warning("Ignoring malformed last sync date %r", raw)
            return None

    def mark_completed(self, now: datetime, local_date: date) -> None:
        self.set_option(LAST_SYNC_KEY, to_storage(now).isoformat())
        self.set_option(LAST_SYNC_DATE_KEY, local_date.isoformat())
        self.delete_option(LAST_ERROR_KEY)
        self.set_status(SyncStatus.COMPLETED)

    def last_sync(self) -> datetime | None:
        raw = self.get_option(LAST_SYNC_KEY)
        if not raw:
            return None
        return from_storage(datetime.fromisoformat(str(raw)))

    def status(self) -> SyncStatus:
        raw = self.get_option(STATUS_KEY, SyncStatus.IDLE.value)
        try:
            return SyncStatus(raw)
        except ValueError:
            return SyncStatus.IDLE

    def set_status(self, status: SyncStatus, *, error: str | None = None) -> None:
        self.set_option(STATUS_KEY, status.value)
        if error is not None:
            self.set_option(LAST_ERROR_KEY, error)

    def last_error(self) -> str | None:
        return self.get_option(LAST_ERROR_KEY)

    def record_run_stats(self, stats: Mapping[str, Any]) -> None:
        self.set_option(LAST_RUN_STATS_KEY, dict(stats))

    def append_notification(self, entry: Mapping[str, Any], *, keep: int = 50) -> None:
        with self._session() as session:
            option = session.get(SyncOption, NOTIFICATIONS_KEY)
            existing = list(option.value or []) if option is not None else []
            existing.append(dict(entry))
            trimmed = existing[-keep:] if keep > 0 else []
            if option is None:
                session.add(SyncOption(key=NOTIFICATIONS_KEY, value=trimmed))
            else:
                option.value = trimmed

    def notifications(self) -> list[dict[str, Any]]:
        return list(self.get_option(NOTIFICATIONS_KEY, []) or [])

    # Retry schedule -------------------------------------------------------

    def add_retry(
        self,
        kind: str,
        payload: Mapping[str, Any],
        not_before: datetime,
        *,
        input_key: str | None = None,
    ) -> str | None:
        """Schedule one retry per ``(kind, input_key)``; returns None when one is already queued."""

        key = input_key or _payload_key(kind, payload)
        with self._session() as session:
            existing = (
                session.query(RetryEntry.id)
                .filter(RetryEntry.kind == kind, RetryEntry.input_key == key)
                .scalar()
            )
            if existing is not None:
                return None
            entry = RetryEntry(kind=kind, input_key=key, payload=dict(payload), not_before=to_storage(not_before))
            session.add(entry)
            try:
                session.flush()
            except IntegrityError:
                session.rollback()
                return None
            return str(entry.id)

    def pending_retries(self) -> list[RetryRecord]:
        with self._session() as session:
            entries = session.query(RetryEntry).order_by(RetryEntry.not_before).all()
            return [self._retry_record(entry) for entry in entries]

    def claim_due_retries(self, now: datetime, *, limit: int = 50) -> list[RetryRecord]:
        """Delete and return entries whose ``not_before`` has passed."""

        with self._session() as session:
            entries = (
                session.query(RetryEntry)
                .filter(RetryEntry.not_before <= to_storage(now))
                .order_by(RetryEntry.not_before)
                .limit(limit)
                .with_for_update(skip_locked=True)
                .all()
            )
            claimed = [self._retry_record(entry) for entry in entries]
            for entry in entries:
                session.delete(entry)
            return claimed

    @staticmethod
    def _retry_record(entry: RetryEntry) -> RetryRecord:
        entry_id = entry.id
        return RetryRecord(
            id=str(entry_id) if isinstance(entry_id, UUID) else str(entry_id),
            kind=entry.kind,
            payload=dict(entry.payload or {}),
            not_before=from_storage(entry.not_before),
            input_key=entry.input_key,
        )

    def store_recovered_text(
        self,
        kind: str,
        input_key: str,
        text: str,
        *,
        recovered_at: datetime | None = None,
    ) -> None:
        """Keep at most one recovered text per ``(kind, input_key)``; newer text replaces older."""

        stamp = to_storage(recovered_at or datetime.now(timezone.utc))
        with self._session() as session:
            record = (
                session.query(RecoveredText)
                .filter(RecoveredText.kind == kind, RecoveredText.input_key == input_key)
                .one_or_none()
            )
            if record is None:
                session.add(RecoveredText(kind=kind, input_key=input_key, text=text, created_at=stamp))
            else:
                record.text = text
                record.created_at = stamp

    def pop_recovered_text(self, kind: str, input_key: str) -> str | None:
        with self._session() as session:
            record = (
                session.query(RecoveredText)
                .filter(RecoveredText.kind == kind, RecoveredText.input_key == input_key)
                .one_or_none()
            )
            if record is None:
                return None
            text = record.text
            session.delete(record)
            return text

    def recovered_text_count(self) -> int:
        with self._session() as session:
            return session.query(func.count(RecoveredText.id)).scalar() or 0

    def purge_recovered_texts(self, older_than: datetime) -> int:
        """Drop recovered texts nobody asked for before ``older_than``."""

        with self._session() as session:
            return (
                session.query(RecoveredText)
                .filter(RecoveredText.created_at < to_storage(older_than))
                .delete(synchronize_session=False)
            )

    def reset(self) -> None:
        """Drop run progress and transient flags, keeping history keys."""

        self.clear_state()
        self.clear_stop_request()
        self.set_status(SyncStatus.IDLE)


__all__ = [
    "RetryRecord",
    "SyncState",
    "SyncStateError",
    "SyncStateStore",
    "SyncStatus",
    "from_storage",
    "to_storage",
]
