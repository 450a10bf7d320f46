import unittest
from datetime import timedelta

from couponsync.config import ScheduleConfig
from couponsync.content_store import NewOffer, SqlContentStore
from couponsync.items import Network, OfferType
from couponsync.locks import LockManager
from couponsync.maintenance import check_health, purge_expired_offers, read_status, reset_sync
from couponsync.scheduler import SchedulerGate
from couponsync.state import SyncStateStore, SyncStatus

from tests.support import RecordingNotifier, at, make_session_factory


def _offer(external_id: str, valid_until) -> NewOffer:
    return NewOffer(
        external_id=external_id,
        network=Network.ADDREVENUE,
        title="Deal",
        slug="deal-at-acme",
        advertiser_name="Acme",
        description="Deal",
        code="",
        tracking_url="",
        valid_until=valid_until,
        terms_html="<ul></ul>",
        offer_type=OfferType.SALE,
    )


class MaintenanceTestCase(unittest.TestCase):
    def setUp(self) -> None:
        session_factory = make_session_factory()
        self.store = SyncStateStore(session_factory)
        self.locks = LockManager(session_factory)
        self.gate = SchedulerGate(self.store, self.locks, ScheduleConfig())
        self.content_store = SqlContentStore(session_factory)

    def test_status_reports_running_run(self) -> None:
        self.locks.acquire(at(2), "run-1")
        self.store.set_status(SyncStatus.RUNNING)

        report = read_status(self.store, self.locks, self.gate, at(2, 5))

        self.assertTrue(report.running)
        self.assertFalse(report.paused)
        self.assertTrue(report.in_window)
        self.assertEqual(report.lock_owner, "run-1")
        self.assertEqual(report.describe(), "running")

    def test_status_describes_failure(self) -> None:
        self.store.set_status(SyncStatus.FAILED, error="boom")

        report = read_status(self.store, self.locks, self.gate, at(12))

        self.assertEqual(report.describe(), "failed (boom)")
        self.assertFalse(report.in_window)
        self.assertFalse(report.completed_today)

    def test_health_check_recovers_stuck_run(self) -> None:
        self.locks.acquire(at(1), "run-1")
        self.store.set_status(SyncStatus.RUNNING)
        self.store.add_retry("title", {"inputs": {}}, at(2))

        report = check_health(self.store, self.locks, at(3, 1), stuck_after=timedelta(hours=2))

        self.assertTrue(report.released_stuck_lock)
        self.assertEqual(report.status, "failed")
        self.assertEqual(report.overdue_retries, 1)
        self.assertIsNone(self.locks.current())
        self.assertIn("health check", self.store.last_error())

    def test_recovered_stuck_run_raises_alert(self) -> None:
        notifier = RecordingNotifier()
        self.locks.acquire(at(1), "run-1")

        check_health(self.store, self.locks, at(3, 1), stuck_after=timedelta(hours=2), notifier=notifier)
        check_health(self.store, self.locks, at(3, 2), stuck_after=timedelta(hours=2), notifier=notifier)

        self.assertEqual(len(notifier.failures), 1)
        self.assertIn("run-1", notifier.failures[0])
        self.assertEqual(self.store.notifications(), [])

    def test_health_check_leaves_recent_lock(self) -> None:
        self.locks.acquire(at(2), "run-1")

        report = check_health(self.store, self.locks, at(2, 45))

        self.assertFalse(report.released_stuck_lock)
        self.assertIsNotNone(self.locks.current())

    def test_purge_marks_only_past_offers(self) -> None:
        self.content_store.create_offer(_offer("old", at(0, day=1).date() - timedelta(days=1)))
        self.content_store.create_offer(_offer("today", at(0, day=1).date()))
        self.content_store.create_offer(_offer("open", None))

        self.assertEqual(purge_expired_offers(self.content_store, self.gate, at(2)), 1)
        self.assertEqual(purge_expired_offers(self.content_store, self.gate, at(2)), 0)

    def test_reset_releases_lock_and_state(self) -> None:
        self.locks.acquire(at(2), "run-1")
        self.store.request_stop()

        reset_sync(self.store, self.locks)

        self.assertIsNone(self.locks.current())
        self.assertFalse(self.store.is_stop_requested())
        self.assertEqual(self.store.status(), SyncStatus.IDLE)


if __name__ == "__main__":
    unittest.main()
