"""Command line entrypoint for operating the synchronization pipeline."""

from __future__ import annotations

import argparse
import json
import logging
import time
from datetime import datetime, timedelta, timezone
from typing import Callable, Sequence

from .config import SyncConfig, load_sync_config
from .maintenance import check_health, purge_expired_offers, read_status, reset_sync
from .pipeline import SyncPipeline, build_pipeline, create_session_factory
from .processor import ChunkScheduler, InvocationResult, RunOutcome

LOGGER = logging.getLogger(__name__)


class InlineChunkScheduler:
    """Remember the requested continuation so the caller can run it in-process."""

    def __init__(self) -> None:
        self.pending: tuple[str, float, bool] | None = None

    def schedule_next(self, *, run_id: str, delay_seconds: float, manual: bool) -> None:
        self.pending = (run_id, delay_seconds, manual)

    def pop(self) -> tuple[str, float, bool] | None:
        pending, self.pending = self.pending, None
        return pending


def run_inline(
    pipeline: SyncPipeline,
    scheduler: InlineChunkScheduler,
    *,
    manual: bool,
    sleep: Callable[[float], None] = time.sleep,
) -> InvocationResult:
    """Run invocations back to back until the run stops asking for another chunk."""

    result = pipeline.processor.run(manual=manual)
    while result.outcome is RunOutcome.CONTINUED:
        pending = scheduler.pop()
        if pending is None:
            break
        run_id, delay, pending_manual = pending
        if delay > 0:
            LOGGER.info("Waiting %.0fs before the next chunk", delay)
            sleep(delay)
        result = pipeline.processor.run(manual=pending_manual, run_id=run_id)
    return result


def build_arg_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(description="Synchronize affiliate offers into the content store")
    parser.add_argument("--db-url", type=str, help="SQLAlchemy database URL (default: COUPONSYNC_DATABASE_URL)")

    subparsers = parser.add_subparsers(dest="command", required=True)

    run_parser = subparsers.add_parser("run", help="Run one scheduled invocation")
    run_parser.add_argument("--manual", action="store_true", help="Bypass the time window")
    run_parser.add_argument(
        "--inline",
        action="store_true",
        help="Process continuations in this process instead of enqueuing Celery tasks",
    )

    start_parser = subparsers.add_parser("start", help="Clear any stop request and start a manual run")
    start_parser.add_argument(
        "--inline",
        action="store_true",
        help="Process continuations in this process instead of enqueuing Celery tasks",
    )

    subparsers.add_parser("stop", help="Ask the active run to stop after its current chunk")

    status_parser = subparsers.add_parser("status", help="Show progress of the current or last run")
    status_parser.add_argument("--json", action="store_true", help="Print the full status as JSON")

    sweep_parser = subparsers.add_parser("sweep-retries", help="Retry deferred enrichment calls that are due")
    sweep_parser.add_argument("--limit", type=int, default=50, help="Maximum entries to consume")

    subparsers.add_parser("health", help="Recover a stuck run and report overdue retries")
    subparsers.add_parser("purge-expired", help="Mark offers past their expiry date as expired")
    subparsers.add_parser("reset", help="Forget run progress, the lock and any stop request")
    subparsers.add_parser("test-connection", help="Check credentials against both networks")
    return parser


def configure_logging() -> None:
    logging.basicConfig(level=logging.INFO, format="%(asctime)s [%(levelname)s] %(name)s: %(message)s")


def _chunk_scheduler(inline: bool) -> ChunkScheduler:
    if inline:
        return InlineChunkScheduler()
    from .tasks import CeleryChunkScheduler

    return CeleryChunkScheduler()


def _start_run(pipeline: SyncPipeline, scheduler: ChunkScheduler, *, manual: bool) -> InvocationResult:
    if isinstance(scheduler, InlineChunkScheduler):
        return run_inline(pipeline, scheduler, manual=manual)
    return pipeline.processor.run(manual=manual)


def _print_json(payload: object) -> None:
    print(json.dumps(payload, ensure_ascii=False, indent=2, default=str))


def main(argv: Sequence[str] | None = None) -> int:
    configure_logging()
    parser = build_arg_parser()
    args = parser.parse_args(argv)

    try:
        config: SyncConfig = load_sync_config()
    except ValueError as exc:
        parser.error(str(exc))
    if args.db_url:
        config.db_url = args.db_url
    config.ensure_directories()

    inline = bool(getattr(args, "inline", False))
    scheduler = _chunk_scheduler(inline)
    pipeline = build_pipeline(config, create_session_factory(config.db_url), scheduler)
    now = datetime.now(timezone.utc)

    try:
        if args.command == "run":
            result = _start_run(pipeline, scheduler, manual=args.manual)
            _print_json(result.as_dict())
            return 1 if result.outcome is RunOutcome.FAILED else 0

        if args.command == "start":
            pipeline.store.clear_stop_request()
            result = _start_run(pipeline, scheduler, manual=True)
            _print_json(result.as_dict())
            return 1 if result.outcome is RunOutcome.FAILED else 0

        if args.command == "stop":
            pipeline.store.request_stop()
            print("Stop requested; the active run will stop after its current chunk.")
            return 0

        if args.command == "status":
            report = read_status(pipeline.store, pipeline.locks, pipeline.gate, now)
            if args.json:
                payload = report.as_dict()
                payload["last_run_stats"] = pipeline.store.get_option("last_run_stats")
                payload["notifications"] = pipeline.store.notifications()[-10:]
                _print_json(payload)
            else:
                print(report.describe())
            return 0

        if args.command == "sweep-retries":
            swept = pipeline.enricher.sweep_due_retries(now, limit=args.limit)
            _print_json(
                {
                    "consumed": swept.consumed,
                    "recovered": swept.recovered,
                    "failed": swept.failed,
                    "expired": swept.expired,
                }
            )
            return 0

        if args.command == "health":
            health = check_health(
                pipeline.store,
                pipeline.locks,
                now,
                stuck_after=timedelta(seconds=config.schedule.stuck_run_after_seconds),
            notifier=pipeline.notifier,
            )
            _print_json(health.as_dict())
            return 0

        if args.command == "purge-expired":
            purged = purge_expired_offers(pipeline.content_store, pipeline.gate, now)
            _print_json({"purged": purged})
            return 0

        if args.command == "reset":
            reset_sync(pipeline.store, pipeline.locks)
            print("Sync state reset.")
            return 0

        if args.command == "test-connection":
            results = {
                "addrevenue": pipeline.addrevenue.test_connection(),
                "awin": pipeline.awin.test_connection(),
            }
            _print_json(results)
            return 0 if all(results.values()) else 1
    finally:
        pipeline.close()

    parser.error(f"Unknown command {args.command!r}")
    return 2


if __name__ == "__main__":  # pragma: no cover - CLI entrypoint
    raise SystemExit(main())
