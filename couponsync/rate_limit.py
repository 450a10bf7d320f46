"""Blocking call throttle for quota-sensitive upstream endpoints."""

from __future__ import annotations

import logging
import threading
import time
from typing import Callable

from .config import RateLimitConfig

LOGGER = logging.getLogger(__name__)


class RateLimiter:
    """Allow at most ``max_calls`` per ``window_seconds``; extra callers sleep."""

    def __init__(
        self,
        config: RateLimitConfig | None = None,
        *,
        time_source: Callable[[], float] | None = None,
        sleep: Callable[[float], None] | None = None,
    ) -> None:
        self._config = config or RateLimitConfig()
        if self._config.max_calls < 1:
            raise ValueError("max_calls must be at least 1")
        self._time_source = time_source or time.monotonic
        self._sleep = sleep or time.sleep
        self._lock = threading.Lock()
        self._window_start: float | None = None
        self._calls = 0

    @property
    def calls_in_window(self) -> int:
        return self._calls

    def acquire(self) -> float:
        """Block until a slot is free, record the call and return the seconds waited."""

        waited = 0.0
        with self._lock:
            now = self._time_source()
            window_start = self._current_window(now)
            if self._calls >= self._config.max_calls:
                wait_for = self._config.window_seconds - (now - window_start)
                if wait_for > 0:
                    LOGGER.info(
                        "Rate limit of %d calls per %.0fs reached; sleeping %.2fs",
                        self._config.max_calls,
                        self._config.window_seconds,
                        wait_for,
                    )
                    self._sleep(wait_for)
                    waited = wait_for
                now = self._time_source()
                self._window_start = now
                self._calls = 0
            self._calls += 1
        return waited

    def _current_window(self, now: float) -> float:
        """Start a new window when none is open or the open one has elapsed; return its start."""

        if self._window_start is None or now - self._window_start >= self._config.window_seconds:
            self._window_start = now
            self._calls = 0
        return self._window_start


__all__ = ["RateLimiter"]
