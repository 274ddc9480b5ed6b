"""
Per-caller fixed window rate limiter.

Each caller identity gets its own budget of `max_requests` calls per window.
Once the budget is spent, further calls fail fast until the window expires or
is reset. The limiter never sleeps; backing off is the caller's decision.
"""

import threading
import time
from dataclasses import dataclass
from typing import Callable

import structlog

from fic_sync.errors import RateLimitExceeded

logger = structlog.get_logger(__name__)


@dataclass
class RateWindow:
    """Call counter for one caller within the current window."""
    caller_id: str
    count: int
    window_start: float


@dataclass
class RateLimiterStats:
    """Statistics for monitoring rate limiter behavior."""
    requests_made: int = 0
    requests_rejected: int = 0
    windows_started: int = 0


class RateLimiter:
    """
    Thread-safe per-caller rate limiter.

    How it works:
    - First call from a caller opens a window and starts its expiry clock
    - Every accepted call increments the caller's counter
    - A call that would push the counter past `max_requests` is rejected
      with RateLimitExceeded and is not counted
    - Windows expire `window_seconds` after they were opened

    Example:
        limiter = RateLimiter(max_requests=100, window_seconds=3600)
        limiter.check_limit("ops@example.com")
    """

    def __init__(
        self,
        max_requests: int = 100,
        window_seconds: float = 3600.0,
        clock: Callable[[], float] = time.monotonic,
    ):
        """
        Initialize rate limiter.

        Args:
            max_requests: Calls allowed per caller per window
            window_seconds: Window length in seconds
            clock: Monotonic time source (injectable for tests)
        """
        if max_requests <= 0:
            raise ValueError("max_requests must be positive")
        if window_seconds <= 0:
            raise ValueError("window_seconds must be positive")

        self.max_requests = max_requests
        self.window_seconds = window_seconds
        self._clock = clock

        self._windows: dict[str, RateWindow] = {}
        self._lock = threading.Lock()

        self.stats = RateLimiterStats()

    def _current_window(self, caller_id: str, now: float) -> RateWindow | None:
        """Return the live window for caller, dropping an expired one. Must hold lock."""
        window = self._windows.get(caller_id)
        if window is not None and now - window.window_start >= self.window_seconds:
            del self._windows[caller_id]
            return None
        return window

    def check_limit(self, caller_id: str) -> int:
        """
        Count one call against the caller's budget.

        Returns:
            The caller's call count in the current window

        Raises:
            RateLimitExceeded: If the budget for this window is spent
        """
        with self._lock:
            now = self._clock()
            window = self._current_window(caller_id, now)

            if window is None:
                window = RateWindow(caller_id=caller_id, count=0, window_start=now)
                self._windows[caller_id] = window
                self.stats.windows_started += 1

            if window.count + 1 > self.max_requests:
                self.stats.requests_rejected += 1
                logger.warning(
                    "Rate limit exceeded",
                    caller_id=caller_id,
                    max_requests=self.max_requests,
                    window_seconds=self.window_seconds,
                )
                raise RateLimitExceeded(
                    f"Rate limit exceeded: at most {self.max_requests} requests "
                    f"every {round(self.window_seconds / 60)} minutes"
                )

            window.count += 1
            self.stats.requests_made += 1
            return window.count

    def reset(self, caller_id: str) -> None:
        """Clear the caller's window immediately."""
        with self._lock:
            self._windows.pop(caller_id, None)

    def remaining(self, caller_id: str) -> int:
        """Calls left for caller in the current window."""
        with self._lock:
            window = self._current_window(caller_id, self._clock())
            used = window.count if window else 0
            return max(0, self.max_requests - used)

    def get_stats(self) -> dict:
        """Get rate limiter statistics for monitoring."""
        with self._lock:
            active = len(self._windows)
        return {
            "requests_made": self.stats.requests_made,
            "requests_rejected": self.stats.requests_rejected,
            "windows_started": self.stats.windows_started,
            "active_windows": active,
            "max_requests": self.max_requests,
            "window_minutes": round(self.window_seconds / 60, 1),
        }
