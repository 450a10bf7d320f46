import threading
import unittest
from collections import deque

from couponsync.config import RateLimitConfig
from couponsync.rate_limit import RateLimiter


class RateLimiterTestCase(unittest.TestCase):
    def test_nineteenth_call_waits_for_window(self) -> None:
        now = [100.0]
        sleeps = deque()

        def sleep(seconds: float) -> None:
            sleeps.append(seconds)
            now[0] += seconds

        limiter = RateLimiter(RateLimitConfig(max_calls=18, window_seconds=60.0), time_source=lambda: now[0], sleep=sleep)

        for _ in range(18):
            self.assertEqual(limiter.acquire(), 0.0)
            now[0] += 1.0

        waited = limiter.acquire()

        self.assertAlmostEqual(waited, 42.0)
        self.assertEqual(list(sleeps), [42.0])
        self.assertEqual(limiter.calls_in_window, 1)

    def test_window_resets_after_it_elapses(self) -> None:
        now = [0.0]
        limiter = RateLimiter(
            RateLimitConfig(max_calls=2, window_seconds=10.0),
            time_source=lambda: now[0],
            sleep=lambda _seconds: self.fail("should not sleep"),
        )

        limiter.acquire()
        limiter.acquire()
        now[0] = 10.0

        self.assertEqual(limiter.acquire(), 0.0)
        self.assertEqual(limiter.calls_in_window, 1)

    def test_concurrent_callers_share_the_budget(self) -> None:
        now = [0.0]
        sleeps = []
        lock = threading.Lock()

        def sleep(seconds: float) -> None:
            with lock:
                sleeps.append(seconds)
                now[0] += seconds

        limiter = RateLimiter(RateLimitConfig(max_calls=3, window_seconds=60.0), time_source=lambda: now[0], sleep=sleep)
        threads = [threading.Thread(target=limiter.acquire) for _ in range(7)]
        for thread in threads:
            thread.start()
        for thread in threads:
            thread.join()

        self.assertEqual(len(sleeps), 2)

    def test_rejects_zero_calls(self) -> None:
        with self.assertRaises(ValueError):
            RateLimiter(RateLimitConfig(max_calls=0))


if __name__ == "__main__":
    unittest.main()
