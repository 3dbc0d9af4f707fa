"""Circuit breaker: stop calling a failing dependency for a cooldown period.

State machine::

    CLOSED --(failure_threshold consecutive failures)--> OPEN
    OPEN   --(recovery_timeout elapsed, next call)----> HALF_OPEN (one trial call)
    HALF_OPEN --(trial succeeds)--> CLOSED
    HALF_OPEN --(trial fails)-----> OPEN

All state changes happen under a lock; the clock is injectable so the machine
can be driven on logical time in tests.
"""
import asyncio
import threading
import time
from dataclasses import dataclass
from enum import Enum
from typing import Any, Awaitable, Callable, Optional

from .errors import CircuitOpenError
from .logging_setup import logger


class CircuitState(str, Enum):
    CLOSED = "closed"
    OPEN = "open"
    HALF_OPEN = "half_open"


@dataclass
class CircuitBreakerConfig:
    """Circuit breaker settings (seconds)."""
    failure_threshold: int = 5
    recovery_timeout: float = 60.0
    monitoring_period: float = 60.0  # informational, reported in snapshots


class CircuitBreaker:
    def __init__(
        self,
        config: Optional[CircuitBreakerConfig] = None,
        *,
        name: str = "default",
        clock: Callable[[], float] = time.monotonic,
        counts_as_failure: Callable[[BaseException], bool] = lambda exc: True,
    ):
        self.config = config or CircuitBreakerConfig()
        if self.config.failure_threshold < 1:
            raise ValueError("failure_threshold must be >= 1")
        self.name = name
        self._clock = clock
        self._counts_as_failure = counts_as_failure
        self._lock = threading.Lock()

        self._state = CircuitState.CLOSED
        self._failure_count = 0
        self._last_failure_at: Optional[float] = None
        self._trial_in_flight = False
        # bumped on every transition; outcomes of calls admitted earlier do not move the state
        self._generation = 0

        self.total_successes = 0
        self.total_failures = 0
        self.total_rejected = 0

    @property
    def state(self) -> CircuitState:
        return self._state

    @property
    def failure_count(self) -> int:
        return self._failure_count

    @property
    def last_failure_at(self) -> Optional[float]:
        return self._last_failure_at

    def retry_in(self) -> float:
        """Seconds until an OPEN circuit will admit a trial call."""
        if self._state is not CircuitState.OPEN or self._last_failure_at is None:
            return 0.0
        return max(0.0, self.config.recovery_timeout - (self._clock() - self._last_failure_at))

    def _admit(self) -> int:
        with self._lock:
            if self._state is CircuitState.OPEN:
                elapsed = self._clock() - self._last_failure_at
                if elapsed > self.config.recovery_timeout:
                    self._transition(CircuitState.HALF_OPEN)
                else:
                    self.total_rejected += 1
                    raise CircuitOpenError(self.name, self.config.recovery_timeout - elapsed)

            if self._state is CircuitState.HALF_OPEN:
                if self._trial_in_flight:
                    self.total_rejected += 1
                    raise CircuitOpenError(self.name, 0.0)
                self._trial_in_flight = True
            return self._generation

    def _transition(self, new_state: CircuitState) -> None:
        # caller holds the lock
        old_state = self._state
        self._state = new_state
        self._generation += 1
        if new_state is not CircuitState.HALF_OPEN:
            self._trial_in_flight = False
        log = logger.warning if new_state is CircuitState.OPEN else logger.info
        log(f"Circuit transition | name={self.name} from={old_state.value} to={new_state.value} failures={self._failure_count}")

    def _stale(self, generation: Optional[int]) -> bool:
        return generation is not None and generation != self._generation

    def record_success(self, generation: Optional[int] = None) -> None:
        with self._lock:
            self.total_successes += 1
            if self._stale(generation):
                return
            if self._state is CircuitState.HALF_OPEN:
                self._failure_count = 0
                self._transition(CircuitState.CLOSED)
            elif self._state is CircuitState.CLOSED:
                self._failure_count = 0
            # OPEN: a call admitted before the circuit opened; leave it open

    def record_failure(self, generation: Optional[int] = None) -> None:
        with self._lock:
            self.total_failures += 1
            if self._stale(generation):
                return
            self._failure_count += 1
            now = self._clock()
            if self._state is CircuitState.HALF_OPEN:
                self._last_failure_at = now
                self._transition(CircuitState.OPEN)
            elif self._state is CircuitState.CLOSED:
                self._last_failure_at = now
                if self._failure_count >= self.config.failure_threshold:
                    self._transition(CircuitState.OPEN)

    def _abandon_trial(self, generation: int) -> None:
        with self._lock:
            if self._state is CircuitState.HALF_OPEN and not self._stale(generation):
                self._trial_in_flight = False

    async def execute(self, operation: Callable[[], Awaitable[Any]]) -> Any:
        """Run ``operation`` through the breaker.

        Raises:
            CircuitOpenError: without invoking ``operation`` while the circuit
                is open, or while a half-open trial is already in flight.
        """
        generation = self._admit()
        try:
            result = await operation()
        except asyncio.CancelledError:
            self._abandon_trial(generation)
            raise
        except Exception as exc:
            if self._counts_as_failure(exc):
                self.record_failure(generation)
            else:
                # the dependency answered; only its verdict was negative
                self.record_success(generation)
            raise
        self.record_success(generation)
        return result

    def reset(self) -> None:
        with self._lock:
            self._failure_count = 0
            self._last_failure_at = None
            if self._state is not CircuitState.CLOSED:
                self._transition(CircuitState.CLOSED)

    def snapshot(self) -> dict:
        with self._lock:
            return {
                "name": self.name,
                "state": self._state.value,
                "failure_count": self._failure_count,
                "failure_threshold": self.config.failure_threshold,
                "recovery_timeout": self.config.recovery_timeout,
                "monitoring_period": self.config.monitoring_period,
                "last_failure_at": self._last_failure_at,
                "retry_in": self.retry_in(),
                "total_successes": self.total_successes,
                "total_failures": self.total_failures,
                "total_rejected": self.total_rejected,
            }
