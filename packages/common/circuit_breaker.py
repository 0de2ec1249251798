"""
Circuit breaker for optional infrastructure (shared cache tier)

States:
- closed: requests flow, consecutive failures are counted
- open: requests are refused until reset_timeout has elapsed
- half_open: a single trial request is let through; success closes the
  circuit, failure opens it again
"""
import threading
import time
from enum import Enum
from typing import Any, Callable, Dict, Optional

import structlog

logger = structlog.get_logger()


class CircuitState(str, Enum):
    """Circuit breaker state"""
    CLOSED = "closed"
    OPEN = "open"
    HALF_OPEN = "half_open"


class CircuitBreaker:
    """
    Explicit closed/open/half_open state machine.

    Usage:
        breaker = CircuitBreaker("pattern_cache_shared")
        if breaker.allow_request():
            try:
                await call()
                breaker.record_success()
            except Exception:
                breaker.record_failure()
    """

    def __init__(
        self,
        name: str,
        failure_threshold: int = 5,
        reset_timeout: float = 30.0,
        clock: Callable[[], float] = time.monotonic,
    ):
        if failure_threshold < 1:
            raise ValueError("failure_threshold must be at least 1")
        self.name = name
        self.failure_threshold = failure_threshold
        self.reset_timeout = reset_timeout
        self._clock = clock
        self._lock = threading.Lock()
        self._state = CircuitState.CLOSED
        self._failure_count = 0
        self._opened_at: Optional[float] = None
        self._trial_in_flight = False
        self._times_opened = 0

    @property
    def state(self) -> CircuitState:
        """Current state (an elapsed open circuit reports open until the next request)"""
        return self._state

    @property
    def failure_count(self) -> int:
        return self._failure_count

    def allow_request(self) -> bool:
        """Check whether a call may be attempted now"""
        with self._lock:
            if self._state is CircuitState.CLOSED:
                return True

            if self._state is CircuitState.OPEN:
                if self._clock() - self._opened_at < self.reset_timeout:
                    return False
                self._transition(CircuitState.HALF_OPEN)

            if self._trial_in_flight:
                return False
            self._trial_in_flight = True
            return True

    def record_success(self) -> None:
        """Record a successful call"""
        with self._lock:
            self._failure_count = 0
            self._trial_in_flight = False
            if self._state is not CircuitState.CLOSED:
                self._opened_at = None
                self._transition(CircuitState.CLOSED)

    def record_failure(self) -> None:
        """Record a failed call"""
        with self._lock:
            self._trial_in_flight = False
            if self._state is CircuitState.HALF_OPEN:
                self._open()
                return

            self._failure_count += 1
            if self._state is CircuitState.CLOSED and self._failure_count >= self.failure_threshold:
                self._open()

    def release_trial(self) -> None:
        """Give back an admitted request that never produced an outcome (cancelled)"""
        with self._lock:
            self._trial_in_flight = False

    def reset(self) -> None:
        """Force the circuit closed"""
        with self._lock:
            self._failure_count = 0
            self._opened_at = None
            self._trial_in_flight = False
            if self._state is not CircuitState.CLOSED:
                self._transition(CircuitState.CLOSED)

    def snapshot(self) -> Dict[str, Any]:
        """Observable state for metrics"""
        with self._lock:
            retry_in = None
            if self._state is CircuitState.OPEN and self._opened_at is not None:
                retry_in = max(0.0, self.reset_timeout - (self._clock() - self._opened_at))
            return {
                "name": self.name,
                "state": self._state.value,
                "failure_count": self._failure_count,
                "failure_threshold": self.failure_threshold,
                "times_opened": self._times_opened,
                "retry_in_seconds": retry_in,
            }

    def _open(self) -> None:
        self._opened_at = self._clock()
        self._times_opened += 1
        self._transition(CircuitState.OPEN)

    def _transition(self, new_state: CircuitState) -> None:
        previous = self._state
        self._state = new_state
        logger.info("circuit_breaker_transition",
                    breaker=self.name,
                    from_state=previous.value,
                    to_state=new_state.value,
                    failure_count=self._failure_count)
