"""Rate gate: enforce a minimum spacing between outbound requests.

The exchange limits the overall authenticated request rate of an account, not
the rate per resource, so one gate is shared by every operation of a client.
"""
import asyncio
import time
from dataclasses import dataclass
from typing import Awaitable, Callable, Optional

from .logging_setup import logger


@dataclass
class RateGateConfig:
    """Rate gate settings."""
    min_interval: float = 1.0  # seconds between request starts (1 req/sec)


class RateGate:
    """Serializes callers so request *starts* are at least ``min_interval`` apart.

    Concurrent callers queue on an ``asyncio.Lock`` and are released one at a
    time. A caller cancelled while waiting gives up its turn without moving
    the gate clock.
    """

    def __init__(
        self,
        min_interval: float = 1.0,
        *,
        clock: Callable[[], float] = time.monotonic,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ):
        if min_interval < 0:
            raise ValueError("min_interval must be >= 0")
        self.min_interval = min_interval
        self._clock = clock
        self._sleep = sleep
        self._lock = asyncio.Lock()
        self._last_acquire: Optional[float] = None
        self._not_before: float = 0.0
        self.total_acquired = 0
        self.total_waited = 0.0

    @classmethod
    def from_config(cls, config: RateGateConfig, **kwargs) -> "RateGate":
        return cls(min_interval=config.min_interval, **kwargs)

    def time_until_allowed(self) -> float:
        """Return seconds until the next acquire would proceed. 0 if allowed now."""
        now = self._clock()
        due = self._not_before
        if self._last_acquire is not None:
            due = max(due, self._last_acquire + self.min_interval)
        return max(0.0, due - now)

    def defer(self, seconds: float) -> None:
        """Hold the gate closed for ``seconds`` (e.g. after a 429 with a reset hint)."""
        if seconds <= 0:
            return
        self._not_before = max(self._not_before, self._clock() + seconds)
        logger.info(f"Rate gate deferred | seconds={seconds:.3f}")

    @property
    def waiting(self) -> bool:
        return self._lock.locked()

    async def acquire(self) -> None:
        """Suspend until the gate allows another request, then claim the slot."""
        async with self._lock:
            wait = self.time_until_allowed()
            if wait > 0:
                logger.debug(f"Rate gate waiting | wait={wait:.3f}s")
                await self._sleep(wait)
                self.total_waited += wait
            self._last_acquire = self._clock()
            self.total_acquired += 1

    def snapshot(self) -> dict:
        return {
            "min_interval": self.min_interval,
            "last_acquire": self._last_acquire,
            "time_until_allowed": self.time_until_allowed(),
            "total_acquired": self.total_acquired,
            "total_waited": round(self.total_waited, 3),
        }
