"""Sliding-window rate limiting per external API family."""
import logging
import threading
import time
from typing import Callable, List

logger = logging.getLogger(__name__)

SAFETY_MARGIN_SECONDS = 0.05


class RateLimiter:
    """Allow at most ``max_requests`` calls in any ``window_seconds`` window.

    Ordering among concurrent waiters is not guaranteed; this protects quota,
    it is not a correctness mechanism.
    """

    def __init__(
        self,
        max_requests: int,
        window_seconds: float,
        name: str = "default",
        clock: Callable[[], float] = time.monotonic,
        sleep: Callable[[float], None] = time.sleep,
    ):
        self.max_requests = max_requests
        self.window_seconds = window_seconds
        self.name = name
        self._clock = clock
        self._sleep = sleep
        self._timestamps: List[float] = []
        self._lock = threading.Lock()

    def _prune(self, now: float) -> None:
        self._timestamps = [t for t in self._timestamps if now - t < self.window_seconds]

    def can_proceed(self) -> bool:
        """Non-blocking capacity check."""
        with self._lock:
            self._prune(self._clock())
            return len(self._timestamps) < self.max_requests

    def wait_for_slot(self) -> float:
        """Block until a slot is free, then claim it.

        Returns:
            Seconds spent waiting (0.0 when capacity was available).
        """
        waited = 0.0
        while True:
            with self._lock:
                now = self._clock()
                self._prune(now)
                if len(self._timestamps) < self.max_requests:
                    self._timestamps.append(now)
                    return waited
                delay = self._timestamps[0] + self.window_seconds - now + SAFETY_MARGIN_SECONDS

            logger.debug(f"Rate limit reached for {self.name}, waiting {delay:.2f}s")
            self._sleep(delay)
            waited += delay

    def reset(self) -> None:
        with self._lock:
            self._timestamps = []


gemini_limiter = RateLimiter(60, 60, name="gemini")
drive_limiter = RateLimiter(100, 60, name="drive")
sheets_limiter = RateLimiter(100, 60, name="sheets")
gmail_limiter = RateLimiter(100, 60, name="gmail")
