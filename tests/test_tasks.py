import unittest
from datetime import timedelta
from unittest.mock import MagicMock, patch

from celery.exceptions import Retry

from couponsync.celery_app import _db_backend_from_db, _sqla_broker_from_db, build_beat_schedule
from couponsync.config import SyncConfig
from couponsync.state import SyncStateError
from couponsync.tasks import (
    CeleryChunkScheduler,
    _engine_options,
    health_check_task,
    purge_expired_offers_task,
    run_sync_task,
    sweep_retries_task,
)


class RunSyncTaskTestCase(unittest.TestCase):
    @patch("couponsync.tasks._build")
    @patch("couponsync.tasks._load_config")
    def test_runs_processor_and_closes_pipeline(self, load_config: MagicMock, build: MagicMock) -> None:
        pipeline = build.return_value
        pipeline.processor.run.return_value.as_dict.return_value = {"outcome": "continued"}

        result = run_sync_task.run(manual=True, run_id="run-1")

        self.assertEqual(result, {"outcome": "continued"})
        pipeline.processor.run.assert_called_once_with(manual=True, run_id="run-1")
        pipeline.close.assert_called_once()
        build.assert_called_once_with(load_config.return_value)

    @patch("couponsync.tasks._build")
    @patch("couponsync.tasks._load_config")
    def test_pipeline_closed_when_run_raises(self, load_config: MagicMock, build: MagicMock) -> None:
        pipeline = build.return_value
        pipeline.processor.run.side_effect = RuntimeError("boom")

        with self.assertRaises(RuntimeError):
            run_sync_task.run()

        pipeline.close.assert_called_once()

    @patch("couponsync.tasks.run_sync_task")
    def test_chunk_scheduler_enqueues_continuation(self, task: MagicMock) -> None:
        CeleryChunkScheduler().schedule_next(run_id="run-1", delay_seconds=60.0, manual=False)

        task.apply_async.assert_called_once_with(kwargs={"manual": False, "run_id": "run-1"}, countdown=60.0)


class MaintenanceTasksTestCase(unittest.TestCase):
    @patch("couponsync.tasks._build")
    @patch("couponsync.tasks._load_config")
    def test_sweep_reports_counts(self, load_config: MagicMock, build: MagicMock) -> None:
        sweep = build.return_value.enricher.sweep_due_retries
        sweep.return_value = MagicMock(consumed=3, recovered=2, failed=1, expired=0)

        result = sweep_retries_task.run(limit=5)

        self.assertEqual(result, {"consumed": 3, "recovered": 2, "failed": 1, "expired": 0})
        sweep.assert_called_once_with(limit=5)

    @patch("couponsync.tasks._build")
    @patch("couponsync.tasks._load_config")
    def test_sweep_retries_on_state_error(self, load_config: MagicMock, build: MagicMock) -> None:
        build.return_value.enricher.sweep_due_retries.side_effect = SyncStateError("db down")

        with patch.object(sweep_retries_task, "retry", side_effect=Retry("retry")) as retry:
            with self.assertRaises(Retry):
                sweep_retries_task.run()

        self.assertIsInstance(retry.call_args.kwargs["exc"], SyncStateError)
        build.return_value.close.assert_called_once()

    @patch("couponsync.tasks.check_health")
    @patch("couponsync.tasks._build")
    @patch("couponsync.tasks._load_config")
    def test_health_check_uses_configured_threshold(
        self, load_config: MagicMock, build: MagicMock, check_health: MagicMock
    ) -> None:
        config = SyncConfig()
        config.schedule.stuck_run_after_seconds = 600
        load_config.return_value = config
        check_health.return_value.as_dict.return_value = {"status": "idle"}

        self.assertEqual(health_check_task.run(), {"status": "idle"})
        self.assertEqual(check_health.call_args.kwargs["stuck_after"], timedelta(minutes=10))

    @patch("couponsync.tasks.purge_expired_offers")
    @patch("couponsync.tasks._build")
    @patch("couponsync.tasks._load_config")
    def test_purge_returns_count(self, load_config: MagicMock, build: MagicMock, purge: MagicMock) -> None:
        purge.return_value = 4

        self.assertEqual(purge_expired_offers_task.run(), {"purged": 4})
        build.return_value.close.assert_called_once()


class CeleryConfigTestCase(unittest.TestCase):
    def test_beat_schedule_task_names(self) -> None:
        schedule = build_beat_schedule()

        self.assertEqual(
            sorted(entry["task"] for entry in schedule.values()),
            [
                "couponsync.health_check",
                "couponsync.purge_expired_offers",
                "couponsync.run_sync",
                "couponsync.sweep_retries",
            ],
        )

    def test_url_helpers(self) -> None:
        self.assertEqual(_sqla_broker_from_db("sqlite:///x.db"), "sqla+sqlite:///x.db")
        self.assertEqual(_sqla_broker_from_db("sqla+sqlite:///x.db"), "sqla+sqlite:///x.db")
        self.assertEqual(_db_backend_from_db("postgresql://h/db"), "db+postgresql://h/db")
        self.assertIsNone(_db_backend_from_db(None))

    def test_engine_options_for_sqlite(self) -> None:
        self.assertEqual(_engine_options("sqlite:///x.db"), {"pool_pre_ping": True})
        self.assertEqual(_engine_options("postgresql://h/db")["pool_size"], 2)


if __name__ == "__main__":
    unittest.main()
