"""Celery tasks driving the synchronization pipeline."""

from __future__ import annotations

import logging
from datetime import datetime, timedelta, timezone
from functools import lru_cache
from typing import Any

from celery import Task

from .celery_app import celery_app
from .config import SyncConfig, load_sync_config
from .maintenance import check_health, purge_expired_offers
from .pipeline import build_pipeline, create_session_factory
from .state import SyncStateError

LOGGER = logging.getLogger(__name__)

_ENGINE_OPTIONS = {
    # Keep the Celery worker's connection footprint small.
    "pool_size": 2,
    "max_overflow": 0,
    "pool_pre_ping": True,
    "pool_recycle": 1800,
}


def _engine_options(db_url: str) -> dict[str, Any]:
    if db_url.startswith("sqlite"):
        return {"pool_pre_ping": True}
    return dict(_ENGINE_OPTIONS)


@lru_cache(maxsize=8)
def _session_factory(db_url: str):
    return create_session_factory(db_url, engine_options=_engine_options(db_url))


def _load_config() -> SyncConfig:
    config = load_sync_config()
    config.ensure_directories()
    return config


class CeleryChunkScheduler:
    """Re-enqueue the sync task for the next chunk of a run."""

    def schedule_next(self, *, run_id: str, delay_seconds: float, manual: bool) -> None:
        run_sync_task.apply_async(
            kwargs={"manual": manual, "run_id": run_id},
            countdown=max(0.0, delay_seconds),
        )


def _build(config: SyncConfig):
    return build_pipeline(config, _session_factory(config.db_url), CeleryChunkScheduler())


@celery_app.task(name="couponsync.run_sync", bind=True)
def run_sync_task(self: Task, manual: bool = False, run_id: str | None = None) -> dict[str, Any]:
    """One invocation: a beat tick, a manual start or a chunk continuation."""

    config = _load_config()
    pipeline = _build(config)
    try:
        result = pipeline.processor.run(manual=manual, run_id=run_id)
    finally:
        pipeline.close()
    LOGGER.info("Sync invocation finished: %s", result.outcome.value)
    return result.as_dict()


@celery_app.task(name="couponsync.sweep_retries", bind=True, max_retries=3, default_retry_delay=60)
def sweep_retries_task(self: Task, limit: int = 50) -> dict[str, Any]:
    config = _load_config()
    pipeline = _build(config)
    try:
        result = pipeline.enricher.sweep_due_retries(limit=limit)
    except SyncStateError as exc:
        LOGGER.exception("Retry sweep could not read the retry schedule")
        raise self.retry(exc=exc)
    finally:
        pipeline.close()
    return {
        "consumed": result.consumed,
        "recovered": result.recovered,
        "failed": result.failed,
        "expired": result.expired,
    }


@celery_app.task(name="couponsync.health_check", bind=True)
def health_check_task(self: Task) -> dict[str, Any]:
    config = _load_config()
    pipeline = _build(config)
    try:
        report = check_health(
            pipeline.store,
            pipeline.locks,
            datetime.now(timezone.utc),
            stuck_after=timedelta(seconds=config.schedule.stuck_run_after_seconds),
            notifier=pipeline.notifier,
        )
    finally:
        pipeline.close()
    return report.as_dict()


@celery_app.task(name="couponsync.purge_expired_offers", bind=True)
def purge_expired_offers_task(self: Task) -> dict[str, Any]:
    config = _load_config()
    pipeline = _build(config)
    try:
        purged = purge_expired_offers(pipeline.content_store, pipeline.gate, datetime.now(timezone.utc))
    finally:
        pipeline.close()
    return {"purged": purged}


__all__ = [
    "CeleryChunkScheduler",
    "health_check_task",
    "purge_expired_offers_task",
    "run_sync_task",
    "sweep_retries_task",
]
