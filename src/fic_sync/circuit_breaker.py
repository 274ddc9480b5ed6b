"""
Circuit breaker shared by every outbound call of one installation.

After `failure_threshold` consecutive failures the breaker opens and rejects
calls without running them. Once `reset_timeout` seconds have passed since the
last failure, one trial call is let through; its outcome decides whether the
breaker closes again or re-opens.
"""

import threading
import time
from dataclasses import dataclass
from enum import Enum
from typing import Any, Callable, TypeVar

import structlog

from fic_sync.errors import CircuitOpen

logger = structlog.get_logger(__name__)

T = TypeVar("T")


class BreakerStatus(str, Enum):
    CLOSED = "CLOSED"
    OPEN = "OPEN"
    HALF_OPEN = "HALF_OPEN"


@dataclass
class BreakerState:
    """Mutable breaker state. `last_failure_at` is on the breaker's clock."""
    status: BreakerStatus = BreakerStatus.CLOSED
    consecutive_failures: int = 0
    last_failure_at: float | None = None


class CircuitBreaker:
    """
    Thread-safe circuit breaker.

    States:
    - CLOSED: calls run; failures are counted
    - OPEN: calls are rejected with CircuitOpen until the reset timeout passes
    - HALF_OPEN: a single trial call runs; others are rejected meanwhile

    Example:
        breaker = CircuitBreaker(failure_threshold=5, reset_timeout=300)
        data = breaker.call(fetch_products, page=1)
    """

    def __init__(
        self,
        failure_threshold: int = 5,
        reset_timeout: float = 300.0,
        clock: Callable[[], float] = time.monotonic,
    ):
        """
        Initialize breaker.

        Args:
            failure_threshold: Consecutive failures that trip the breaker
            reset_timeout: Seconds after the last failure before probing
            clock: Monotonic time source (injectable for tests)
        """
        if failure_threshold <= 0:
            raise ValueError("failure_threshold must be positive")

        self.failure_threshold = failure_threshold
        self.reset_timeout = reset_timeout
        self._clock = clock

        self._state = BreakerState()
        self._trial_in_flight = False
        self._lock = threading.Lock()

        self._rejected = 0
        self._trips = 0

    @property
    def state(self) -> BreakerState:
        """Snapshot of the current state."""
        with self._lock:
            return BreakerState(
                status=self._state.status,
                consecutive_failures=self._state.consecutive_failures,
                last_failure_at=self._state.last_failure_at,
            )

    @property
    def status(self) -> BreakerStatus:
        return self.state.status

    def _admit(self) -> None:
        """Decide whether a call may run. Raises CircuitOpen otherwise."""
        with self._lock:
            state = self._state

            if state.status == BreakerStatus.OPEN:
                elapsed = self._clock() - (state.last_failure_at or 0.0)
                if elapsed < self.reset_timeout:
                    self._rejected += 1
                    raise CircuitOpen(
                        "Circuit breaker OPEN: service temporarily unavailable"
                    )
                state.status = BreakerStatus.HALF_OPEN
                logger.info("Circuit breaker probing recovery", status=state.status.value)

            if state.status == BreakerStatus.HALF_OPEN:
                if self._trial_in_flight:
                    self._rejected += 1
                    raise CircuitOpen("Circuit breaker HALF_OPEN: trial call in progress")
                self._trial_in_flight = True

    def record_success(self) -> None:
        with self._lock:
            if self._state.status == BreakerStatus.HALF_OPEN:
                logger.info("Circuit breaker closed, service restored")
            self._state.status = BreakerStatus.CLOSED
            self._state.consecutive_failures = 0
            self._trial_in_flight = False

    def record_failure(self) -> None:
        with self._lock:
            state = self._state
            state.consecutive_failures += 1
            state.last_failure_at = self._clock()
            was_trial = state.status == BreakerStatus.HALF_OPEN
            self._trial_in_flight = False

            logger.warning(
                "Circuit breaker recorded failure",
                failures=state.consecutive_failures,
                threshold=self.failure_threshold,
            )

            if was_trial or state.consecutive_failures >= self.failure_threshold:
                if state.status != BreakerStatus.OPEN:
                    self._trips += 1
                state.status = BreakerStatus.OPEN
                logger.error(
                    "Circuit breaker OPEN, too many consecutive failures",
                    failures=state.consecutive_failures,
                )

    def call(self, fn: Callable[..., T], *args: Any, **kwargs: Any) -> T:
        """
        Run `fn` through the breaker.

        Raises:
            CircuitOpen: If the breaker rejects the call (fn is not invoked)
        """
        self._admit()
        try:
            result = fn(*args, **kwargs)
        except Exception:
            self.record_failure()
            raise
        self.record_success()
        return result

    def reset(self) -> None:
        """Force the breaker back to CLOSED."""
        with self._lock:
            self._state = BreakerState()
            self._trial_in_flight = False

    def get_stats(self) -> dict[str, Any]:
        """Get breaker statistics for monitoring."""
        state = self.state
        return {
            "status": state.status.value,
            "consecutive_failures": state.consecutive_failures,
            "failure_threshold": self.failure_threshold,
            "reset_timeout_seconds": self.reset_timeout,
            "rejected_calls": self._rejected,
            "trips": self._trips,
        }
