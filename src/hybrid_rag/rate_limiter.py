"""Fixed-window limiter for outbound embedding calls."""

import logging
import threading
import time
from typing import Callable

logger = logging.getLogger(__name__)


class RateLimiter:
    """Allow at most ``max_requests`` calls per ``window_seconds``.

    The window opens at the first call after the previous window expired.
    Each instance owns its own counter, so independent services never share
    quota.
    """

    def __init__(
        self,
        max_requests: int = 50,
        window_seconds: float = 60.0,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        if max_requests < 1:
            raise ValueError("max_requests must be at least 1")
        if window_seconds <= 0:
            raise ValueError("window_seconds must be positive")
        self.max_requests = max_requests
        self.window_seconds = window_seconds
        self._clock = clock
        self._lock = threading.Lock()
        self._window_start = clock()
        self._count = 0

    def _roll(self, now: float) -> None:
        if now - self._window_start >= self.window_seconds:
            self._window_start = now
            self._count = 0

    def allow_request(self) -> bool:
        """Atomically take a slot in the current window if one is free."""
        with self._lock:
            self._roll(self._clock())
            if self._count < self.max_requests:
                self._count += 1
                return True
            return False

    def remaining_requests(self) -> int:
        with self._lock:
            self._roll(self._clock())
            return self.max_requests - self._count

    def wait_time(self) -> float:
        """Seconds until the current window resets (0 if a slot is free)."""
        with self._lock:
            now = self._clock()
            self._roll(now)
            if self._count < self.max_requests:
                return 0.0
            return max(0.0, self.window_seconds - (now - self._window_start))

    def acquire(self, sleep: Callable[[float], None] = time.sleep) -> None:
        """Block until a slot is granted, sleeping out exhausted windows."""
        while not self.allow_request():
            wait = self.wait_time()
            logger.info("Rate limit reached, waiting %.2fs for the next window", wait)
            # A zero wait means a slot freed up between the two calls.
            sleep(wait if wait > 0 else 0.01)
