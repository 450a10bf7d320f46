"""Celery application and beat schedule for the synchronization worker."""

from __future__ import annotations

import os
from typing import Optional

from celery import Celery
from celery.schedules import crontab

from .config import DEFAULT_DB_URL, env_bool, env_int


def _sqla_broker_from_db(db_url: Optional[str]) -> Optional[str]:
    if not db_url:
        return None
    return db_url if db_url.startswith("sqla+") else f"sqla+{db_url}"


def _db_backend_from_db(db_url: Optional[str]) -> Optional[str]:
    if not db_url:
        return None
    return db_url if db_url.startswith("db+") else f"db+{db_url}"


def build_beat_schedule() -> dict:
    """Periodic ticks: the sync gate every 10 minutes plus housekeeping."""

    tick_minutes = max(1, env_int("COUPONSYNC_TICK_MINUTES", 10))
    return {
        "sync-tick": {
            "task": "couponsync.run_sync",
            "schedule": crontab(minute=f"*/{tick_minutes}"),
        },
        "sweep-enrichment-retries": {
            "task": "couponsync.sweep_retries",
            "schedule": crontab(minute="*/15"),
        },
        "health-check": {
            "task": "couponsync.health_check",
            "schedule": crontab(minute=5),
        },
        "purge-expired-offers": {
            "task": "couponsync.purge_expired_offers",
            "schedule": crontab(minute=30, hour=7, day_of_week="mon"),
        },
    }


def create_celery_app() -> Celery:
    """Instantiate the Celery app with environment driven configuration."""

    db_url = os.getenv("COUPONSYNC_DATABASE_URL", DEFAULT_DB_URL)
    broker_url = os.getenv("COUPONSYNC_CELERY_BROKER_URL") or _sqla_broker_from_db(db_url) or "memory://"
    backend_url = os.getenv("COUPONSYNC_CELERY_RESULT_BACKEND") or _db_backend_from_db(db_url) or "cache+memory://"

    engine_options = {
        "pool_size": env_int("COUPONSYNC_DB_POOL_SIZE", 2),
        "max_overflow": env_int("COUPONSYNC_DB_MAX_OVERFLOW", 0),
        "pool_recycle": env_int("COUPONSYNC_DB_POOL_RECYCLE", 1800),
        "pool_pre_ping": True,
    }

    app = Celery("couponsync", broker=broker_url, backend=backend_url, include=["couponsync.tasks"])
    conf_updates = {
        "task_serializer": "json",
        "accept_content": ["json"],
        "result_serializer": "json",
        # Chunk continuations are re-enqueued with a countdown; eager mode would recurse.
        "task_always_eager": env_bool("COUPONSYNC_CELERY_TASK_ALWAYS_EAGER", False),
        "task_acks_late": True,
        "task_reject_on_worker_lost": True,
        "worker_prefetch_multiplier": 1,
        "result_persistent": True,
        "broker_connection_retry_on_startup": True,
        "timezone": os.getenv("COUPONSYNC_TIMEZONE", "UTC"),
        "beat_schedule": build_beat_schedule(),
    }
    if backend_url.startswith("db+") and not backend_url.startswith("db+sqlite"):
        conf_updates["database_engine_options"] = engine_options
        conf_updates["database_short_lived_sessions"] = True
    app.conf.update(**conf_updates)
    return app


celery_app = create_celery_app()


__all__ = ["build_beat_schedule", "celery_app", "create_celery_app"]
