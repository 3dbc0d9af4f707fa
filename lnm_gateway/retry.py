"""Retry with bounded, jittered exponential backoff."""
import asyncio
import random
from dataclasses import dataclass
from typing import Any, Awaitable, Callable, Optional

from .errors import RetriesExhaustedError, UpstreamHTTPError, is_retryable as default_is_retryable
from .logging_setup import logger


@dataclass(frozen=True)
class RetryPolicy:
    """Retry settings. Pure configuration; safe to share between calls."""
    max_attempts: int = 3
    base_delay: float = 1.0
    max_delay: float = 5.0
    backoff_multiplier: float = 2.0
    jitter: bool = True

    def __post_init__(self):
        if self.max_attempts < 1:
            raise ValueError("max_attempts must be >= 1")
        if self.base_delay < 0 or self.max_delay < 0:
            raise ValueError("delays must be >= 0")
        if self.backoff_multiplier < 1:
            raise ValueError("backoff_multiplier must be >= 1")

    def delay_for(self, retry: int, rand: Callable[[], float] = random.random) -> float:
        """Delay before retry number ``retry`` (1 = first retry).

        ``min(max_delay, base_delay * backoff_multiplier ** (retry - 1))``, scaled
        by a uniform factor in [0.5, 1.0] when jitter is enabled.
        """
        delay = min(self.max_delay, self.base_delay * (self.backoff_multiplier ** (retry - 1)))
        if self.jitter:
            delay *= 0.5 + 0.5 * rand()
        return delay


NO_RETRY = RetryPolicy(max_attempts=1, jitter=False)


class RetryExecutor:
    def __init__(
        self,
        *,
        is_retryable: Callable[[BaseException], bool] = default_is_retryable,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
        rand: Callable[[], float] = random.random,
        on_retry: Optional[Callable[[BaseException, float], None]] = None,
    ):
        self._is_retryable = is_retryable
        self._sleep = sleep
        self._rand = rand
        self._on_retry = on_retry

    def _delay(self, policy: RetryPolicy, retry: int, error: BaseException) -> float:
        delay = policy.delay_for(retry, self._rand)
        # honour the exchange's own reset hint on 429
        if isinstance(error, UpstreamHTTPError) and error.retry_after:
            delay = max(delay, min(error.retry_after, policy.max_delay))
        return delay

    async def run(self, operation: Callable[[], Awaitable[Any]], policy: RetryPolicy, *, label: str = "operation") -> Any:
        """Invoke ``operation`` until it succeeds or the policy is spent.

        Non-retryable errors propagate unchanged after the first failure.
        Exhaustion raises :class:`RetriesExhaustedError` chained to the last error.
        Cancellation propagates immediately and aborts remaining attempts.
        """
        attempt = 0
        while True:
            attempt += 1
            try:
                return await operation()
            except Exception as exc:
                if not self._is_retryable(exc):
                    raise
                if attempt >= policy.max_attempts:
                    logger.warning(f"Retries exhausted | op={label} attempts={attempt} error={exc}")
                    raise RetriesExhaustedError(attempt, exc) from exc
                delay = self._delay(policy, attempt, exc)
                logger.info(f"Retrying | op={label} attempt={attempt}/{policy.max_attempts} delay={delay:.3f}s error={exc}")
                if self._on_retry is not None:
                    self._on_retry(exc, delay)
                await self._sleep(delay)
