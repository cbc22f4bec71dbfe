"""
Circuit breaker guarding calls to the encryption service.

States:
    CLOSED     - calls pass through; consecutive failures are counted
    OPEN       - calls are short-circuited until the cooldown elapses
    HALF_OPEN  - one trial call is allowed; success closes, failure re-opens

Usage:
    breaker = CircuitBreaker(failure_threshold=5, cooldown=10.0)
    if not breaker.allow_request():
        raise ServiceUnavailable("circuit open")
    try:
        result = call()
    except NetworkError:
        breaker.record_failure()
        raise
    breaker.record_success()
"""

import logging
import threading
import time
from enum import Enum
from typing import Callable


logger = logging.getLogger(__name__)


class BreakerState(Enum):
    CLOSED = "closed"
    OPEN = "open"
    HALF_OPEN = "half_open"

    def __str__(self) -> str:
        return self.value


class CircuitBreaker:
    """Thread-safe consecutive-failure circuit breaker."""

    def __init__(
        self,
        failure_threshold: int = 5,
        cooldown: float = 10.0,
        clock: Callable[[], float] = time.monotonic,
    ):
        if failure_threshold < 1:
            raise ValueError(f"failure_threshold must be >= 1, got {failure_threshold}")
        if cooldown <= 0:
            raise ValueError(f"cooldown must be positive, got {cooldown}")

        self.failure_threshold = failure_threshold
        self.cooldown = cooldown
        self._clock = clock
        self._lock = threading.Lock()
        self._state = BreakerState.CLOSED
        self._consecutive_failures = 0
        self._opened_at = 0.0
        self._trial_in_flight = False

    @property
    def state(self) -> BreakerState:
        with self._lock:
            return self._current_state()

    @property
    def consecutive_failures(self) -> int:
        with self._lock:
            return self._consecutive_failures

    def _current_state(self) -> BreakerState:
        # Caller holds the lock
        if self._state == BreakerState.OPEN and self._clock() - self._opened_at >= self.cooldown:
            self._state = BreakerState.HALF_OPEN
            self._trial_in_flight = False
            logger.info("Circuit breaker half-open: allowing a trial call")
        return self._state

    def allow_request(self) -> bool:
        """
        Decide whether a call may proceed.

        In HALF_OPEN only the first caller gets through; the rest are
        short-circuited until that trial call reports its outcome.
        """
        with self._lock:
            state = self._current_state()
            if state == BreakerState.CLOSED:
                return True
            if state == BreakerState.HALF_OPEN and not self._trial_in_flight:
                self._trial_in_flight = True
                return True
            return False

    def record_success(self) -> None:
        with self._lock:
            if self._state != BreakerState.CLOSED:
                logger.info("Circuit breaker closed: encryption service recovered")
            self._state = BreakerState.CLOSED
            self._consecutive_failures = 0
            self._trial_in_flight = False

    def record_failure(self) -> None:
        with self._lock:
            self._consecutive_failures += 1
            state = self._current_state()
            if state == BreakerState.HALF_OPEN or (
                state == BreakerState.CLOSED and self._consecutive_failures >= self.failure_threshold
            ):
                self._state = BreakerState.OPEN
                self._opened_at = self._clock()
                self._trial_in_flight = False
                logger.warning(
                    f"Circuit breaker open after {self._consecutive_failures} consecutive failure(s); "
                    f"cooling down for {self.cooldown}s"
                )

    def reset(self) -> None:
        with self._lock:
            self._state = BreakerState.CLOSED
            self._consecutive_failures = 0
            self._trial_in_flight = False
