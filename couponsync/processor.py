"""Resumable chunked processing of the nightly synchronization run."""

from __future__ import annotations

import json
import logging
from dataclasses import asdict, dataclass, field
from datetime import date, datetime, timezone
from enum import Enum
from typing import Callable, Protocol

from .brands import BrandResolver, BrandUpdater, brand_profile_for
from .config import SyncConfig
from .content_store import ContentStore, ContentStoreError, NewOffer, PersistenceConflict
from .enrichment import PENDING, ContentEnricher, GenerationKind
from .items import PromotionOffer, WorkItem, extract_offer_fields, normalize_items
from .locks import LockManager
from .notifications import SyncNotifier
from .scheduler import GateReason, SchedulerGate
from .sources import AddRevenueFetcher, AwinFetcher
from .state import LAST_RUN_STATS_KEY, SyncState, SyncStateError, SyncStateStore, SyncStatus
from .text import slugify

LOGGER = logging.getLogger(__name__)

_ITEM_FAILURE_LOG = "item_failures.ndjson"


class FatalPipelineError(RuntimeError):
    """Raised when a run must be aborted outside per-item handling."""


class ItemProcessingError(RuntimeError):
    """Raised for a failure confined to a single work item."""


class ItemOutcome(str, Enum):
    CREATED = "created"
    DUPLICATE = "duplicate"
    DEFERRED = "deferred"
    SKIPPED = "skipped"


class RunOutcome(str, Enum):
    DENIED = "denied"
    CONTINUED = "continued"
    PAUSED = "paused"
    COMPLETED = "completed"
    STOPPED = "stopped"
    FAILED = "failed"


@dataclass(slots=True)
class ChunkStats:
    processed: int = 0
    created: int = 0
    duplicates: int = 0
    deferred: int = 0
    skipped: int = 0
    failed: int = 0

    def record(self, outcome: ItemOutcome) -> None:
        if outcome is ItemOutcome.CREATED:
            self.created += 1
        elif outcome is ItemOutcome.DUPLICATE:
            self.duplicates += 1
        elif outcome is ItemOutcome.DEFERRED:
            self.deferred += 1
        else:
            self.skipped += 1


@dataclass(slots=True)
class InvocationResult:
    outcome: RunOutcome
    reason: str | None = None
    run_id: str | None = None
    cursor: int = 0
    total: int = 0
    stats: ChunkStats = field(default_factory=ChunkStats)

    def as_dict(self) -> dict:
        payload = asdict(self)
        payload["outcome"] = self.outcome.value
        return payload


class ChunkScheduler(Protocol):
    """Arranges the next invocation of an unfinished run."""

    def schedule_next(self, *, run_id: str, delay_seconds: float, manual: bool) -> None:
        ...


def parse_valid_until(value: str) -> date | None:
    if not value:
        return None
    try:
        return date.fromisoformat(value[:10])
    except ValueError:
        LOGGER.debug("Ignoring unparseable expiry date %r", value)
        return None


class ChunkProcessor:
    """Drive one invocation: gate, initialise or resume, process a chunk, transition."""

    def __init__(
        self,
        *,
        config: SyncConfig,
        gate: SchedulerGate,
        locks: LockManager,
        store: SyncStateStore,
        addrevenue: AddRevenueFetcher,
        awin: AwinFetcher,
        resolver: BrandResolver,
        brand_updater: BrandUpdater,
        enricher: ContentEnricher,
        content_store: ContentStore,
        notifier: SyncNotifier,
        scheduler: ChunkScheduler,
        clock: Callable[[], datetime] | None = None,
    ) -> None:
        self._config = config
        self._gate = gate
        self._locks = locks
        self._store = store
        self._addrevenue = addrevenue
        self._awin = awin
        self._resolver = resolver
        self._brand_updater = brand_updater
        self._enricher = enricher
        self._content_store = content_store
        self._notifier = notifier
        self._scheduler = scheduler
        self._clock = clock or (lambda: datetime.now(timezone.utc))

    def run(self, now: datetime | None = None, *, manual: bool = False, run_id: str | None = None) -> InvocationResult:
        now = now or self._clock()
        decision = self._gate.should_run(now, manual, run_id)
        if not decision.allow:
            if decision.reason is GateReason.STOP_REQUESTED:
                return self._stop_pending_run()
            if decision.reason is GateReason.OUTSIDE_WINDOW and run_id is not None:
                # Continuation arrived after the window closed; the run pauses here.
                self._locks.release(run_id)
            return InvocationResult(RunOutcome.DENIED, reason=decision.reason.value, run_id=run_id)

        owner = decision.run_id
        try:
            state = self._load_or_initialize(now, owner, manual, continuation=run_id is not None)
            if state is None:
                self._locks.release(owner)
                return InvocationResult(RunOutcome.DENIED, reason="no active run", run_id=run_id)
            if state.total == 0:
                LOGGER.info("No work items fetched; marking today as processed")
                return self._complete(state, now, ChunkStats())

            stats = self._process_chunk(state, now)
            return self._after_chunk(state, stats)
        except Exception as exc:
            error = exc if isinstance(exc, FatalPipelineError) else FatalPipelineError(str(exc))
            return self._fail(owner, error, exc)

    def _load_or_initialize(
        self,
        now: datetime,
        owner: str,
        manual: bool,
        *,
        continuation: bool,
    ) -> SyncState | None:
        state = self._store.load_state()
        today = self._gate.local_date(now)

        if continuation:
            if state is None or state.run_id != owner or state.for_date != today:
                LOGGER.info("Ignoring continuation for run %s; it is no longer active", owner)
                return None
            return state

        if state is not None and state.for_date == today:
            LOGGER.info(
                "Resuming run %s at item %d of %d", state.run_id, state.cursor, state.total
            )
            state.run_id = owner
            state.manual = manual
            self._store.save_state(state)
            return state

        if state is not None:
            LOGGER.info("Discarding unfinished run from %s", state.for_date.isoformat())
            self._store.clear_state()
        return self._initialize(now, owner, manual, today)

    def _initialize(self, now: datetime, owner: str, manual: bool, today: date) -> SyncState:
        self._store.set_status(SyncStatus.RUNNING)
        LOGGER.info("Starting sync run %s for %s", owner, today.isoformat())

        snapshot = self._addrevenue.fetch()
        promotions = self._awin.fetch()
        items = normalize_items(
            snapshot.advertisers,
            snapshot.campaigns,
            promotions,
            market=self._config.market,
        )
        state = SyncState(
            run_id=owner,
            items=items,
            cursor=0,
            total=len(items),
            started_at=now,
            for_date=today,
            manual=manual,
        )
        self._store.save_state(state)
        self._store.record_run_stats({"run_id": owner, "total": state.total, **asdict(ChunkStats())})
        return state

    def _process_chunk(self, state: SyncState, now: datetime) -> ChunkStats:
        self._locks.refresh(now, state.run_id)
        self._store.set_status(SyncStatus.RUNNING)

        stats = ChunkStats()
        for item in state.next_chunk(self._config.schedule.batch_size):
            try:
                outcome = self.process_item(item)
            except (ContentStoreError, SyncStateError):
                raise
            except Exception as exc:
                error = ItemProcessingError(
                    f"{item.network.value} offer {item.external_id or '?'} "
                    f"({item.advertiser_name or 'unknown advertiser'}): {exc}"
                )
                LOGGER.exception("Work item failed: %s", error)
                self._record_item_failure(item, exc)
                stats.failed += 1
            else:
                stats.record(outcome)
            stats.processed += 1
            state.cursor += 1

        self._store.update_cursor(state.cursor)
        self._accumulate_stats(state, stats)
        LOGGER.info(
            "Chunk done: %d processed (%d created, %d duplicates, %d deferred, %d skipped, %d failed); %d/%d",
            stats.processed,
            stats.created,
            stats.duplicates,
            stats.deferred,
            stats.skipped,
            stats.failed,
            state.cursor,
            state.total,
        )
        return stats

    def process_item(self, item: WorkItem) -> ItemOutcome:
        """Resolve the brand, refresh brand content, then create the offer if it is new."""

        fields = extract_offer_fields(item)
        if fields is None:
            LOGGER.debug("Skipping %s item without id or description", item.network.value)
            return ItemOutcome.SKIPPED
        if not item.advertiser_name:
            LOGGER.debug("Skipping offer %s without advertiser name", fields.external_id)
            return ItemOutcome.SKIPPED

        programme = None
        if isinstance(item, PromotionOffer) and item.advertiser_id:
            programme = self._awin.fetch_programme_details(item.advertiser_id)

        handle = self._resolver.resolve(item.advertiser_name, item.network)
        brand = self._content_store.get_brand(handle.id)
        if brand is not None:
            profile = brand_profile_for(item, programme, market=self._config.market)
            self._brand_updater.update(brand, profile)

        if self._content_store.find_offer_by_external_id(fields.external_id):
            LOGGER.debug("Offer %s already exists", fields.external_id)
            return ItemOutcome.DUPLICATE

        title = self._enricher.generate(GenerationKind.TITLE, {"description": fields.description})
        if title is PENDING:
            LOGGER.info("Deferring offer %s until its title can be generated", fields.external_id)
            return ItemOutcome.DEFERRED

        terms_html = self._enricher.fallback_terms()
        if fields.terms:
            terms = self._enricher.generate(GenerationKind.TERMS, {"terms": fields.terms})
            if terms is not PENDING:
                terms_html = terms

        offer = NewOffer(
            external_id=fields.external_id,
            network=fields.network,
            title=title,
            slug=slugify(f"{title} at {handle.name}"),
            advertiser_name=handle.name,
            description=fields.description,
            code=fields.code,
            tracking_url=fields.tracking_url,
            valid_until=parse_valid_until(fields.valid_until),
            terms_html=terms_html,
            offer_type=fields.offer_type,
        )
        try:
            offer_id = self._content_store.create_offer(offer)
        except PersistenceConflict:
            LOGGER.info("Offer %s was created concurrently; skipping", fields.external_id)
            return ItemOutcome.DUPLICATE

        self._content_store.attach_taxonomy(offer_id, handle.id)
        self._notifier.offer_created(title=title, brand_name=handle.name, external_id=fields.external_id)
        LOGGER.info("Created offer %s %r for brand %s", fields.external_id, title, handle.name)
        return ItemOutcome.CREATED

    def _after_chunk(self, state: SyncState, stats: ChunkStats) -> InvocationResult:
        finished_at = self._clock()

        if self._store.is_stop_requested():
            self._store.clear_stop_request()
            return self._stop(state, stats)

        if state.finished:
            return self._complete(state, finished_at, stats)

        if not state.manual and not self._gate.in_window(finished_at):
            self._locks.release(state.run_id)
            LOGGER.info("Window closed; pausing run %s at %d/%d", state.run_id, state.cursor, state.total)
            return self._result(RunOutcome.PAUSED, state, stats)

        self._locks.refresh(finished_at, state.run_id)
        delay = self._config.schedule.chunk_delay_seconds
        self._scheduler.schedule_next(run_id=state.run_id, delay_seconds=delay, manual=state.manual)
        LOGGER.info("Next chunk of run %s scheduled in %.0fs", state.run_id, delay)
        return self._result(RunOutcome.CONTINUED, state, stats)

    def _complete(self, state: SyncState, now: datetime, stats: ChunkStats) -> InvocationResult:
        self._store.mark_completed(now, self._gate.local_date(now))
        self._store.clear_state()
        self._locks.release()
        LOGGER.info("Sync run %s completed (%d items)", state.run_id, state.total)
        return self._result(RunOutcome.COMPLETED, state, stats)

    def _stop(self, state: SyncState, stats: ChunkStats) -> InvocationResult:
        self._store.clear_state()
        self._locks.release()
        self._store.set_status(SyncStatus.STOPPED)
        LOGGER.info("Sync run %s stopped at %d/%d", state.run_id, state.cursor, state.total)
        return self._result(RunOutcome.STOPPED, state, stats)

    def _stop_pending_run(self) -> InvocationResult:
        state = self._store.load_state()
        if state is None:
            return InvocationResult(RunOutcome.DENIED, reason=GateReason.STOP_REQUESTED.value)
        return self._stop(state, ChunkStats())

    def _fail(self, owner: str, error: FatalPipelineError, cause: Exception) -> InvocationResult:
        LOGGER.error("Sync run %s failed: %s", owner, error, exc_info=cause)
        try:
            self._store.clear_state()
            self._locks.release()
            self._store.set_status(SyncStatus.FAILED, error=str(error))
            self._notifier.run_failed(message=f"Sync run {owner} failed: {error}")
        except SyncStateError:
            LOGGER.exception("Could not record failure of run %s", owner)
        return InvocationResult(RunOutcome.FAILED, reason=str(error), run_id=owner)

    @staticmethod
    def _result(outcome: RunOutcome, state: SyncState, stats: ChunkStats) -> InvocationResult:
        return InvocationResult(
            outcome,
            run_id=state.run_id,
            cursor=state.cursor,
            total=state.total,
            stats=stats,
        )

    def _accumulate_stats(self, state: SyncState, stats: ChunkStats) -> None:
        totals = self._store.get_option(LAST_RUN_STATS_KEY) or {}
        if totals.get("run_id") != state.run_id:
            totals = {"run_id": state.run_id, **asdict(ChunkStats())}
        for key, value in asdict(stats).items():
            totals[key] = int(totals.get(key, 0)) + value
        totals["total"] = state.total
        totals["cursor"] = state.cursor
        self._store.record_run_stats(totals)

    def _record_item_failure(self, item: WorkItem, exc: Exception) -> None:
        payload = {
            "network": item.network.value,
            "external_id": item.external_id,
            "advertiser": item.advertiser_name,
            "error": str(exc),
            "error_type": type(exc).__name__,
            "timestamp": self._clock().isoformat(),
        }

        log_path = self._config.log_dir / _ITEM_FAILURE_LOG
        try:
            log_path.parent.mkdir(parents=True, exist_ok=True)
            with log_path.open("a", encoding="utf-8") as handle:
                handle.write(json.dumps(payload, ensure_ascii=False) + "\n")
        except OSError as file_error:  # pragma: no cover - filesystem failure path
            LOGGER.warning("Failed to record item failure for %s: %s", item.external_id, file_error)


__all__ = [
    "ChunkProcessor",
    "ChunkScheduler",
    "ChunkStats",
    "FatalPipelineError",
    "InvocationResult",
    "ItemOutcome",
    "ItemProcessingError",
    "RunOutcome",
    "parse_valid_until",
]
