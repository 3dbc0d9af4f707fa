import asyncio
import random

import pytest

from lnm_gateway.errors import RetriesExhaustedError, TransportError, UpstreamHTTPError
from lnm_gateway.retry import NO_RETRY, RetryExecutor, RetryPolicy


def flaky(failures, error_factory=lambda: TransportError("connection reset")):
    """Operation that fails ``failures`` times, then returns "ok"."""
    calls = []

    async def op():
        calls.append(1)
        if len(calls) <= failures:
            raise error_factory()
        return "ok"

    return op, calls


@pytest.mark.asyncio
async def test_succeeds_on_third_attempt(clock):
    op, calls = flaky(2)
    executor = RetryExecutor(sleep=clock.sleep, rand=lambda: 1.0)
    result = await executor.run(op, RetryPolicy(max_attempts=3))
    assert result == "ok"
    assert len(calls) == 3
    assert len(clock.sleeps) == 2


@pytest.mark.asyncio
async def test_exhaustion_raises_after_max_attempts(clock):
    op, calls = flaky(100)
    executor = RetryExecutor(sleep=clock.sleep)
    with pytest.raises(RetriesExhaustedError) as exc_info:
        await executor.run(op, RetryPolicy(max_attempts=4))
    assert len(calls) == 4
    assert exc_info.value.attempts == 4
    assert isinstance(exc_info.value.last_error, TransportError)
    assert exc_info.value.__cause__ is exc_info.value.last_error


@pytest.mark.asyncio
async def test_non_retryable_error_invoked_once(clock):
    op, calls = flaky(100, lambda: UpstreamHTTPError(401, "bad signature"))
    executor = RetryExecutor(sleep=clock.sleep)
    with pytest.raises(UpstreamHTTPError):
        await executor.run(op, RetryPolicy(max_attempts=3))
    assert len(calls) == 1
    assert clock.sleeps == []


@pytest.mark.asyncio
@pytest.mark.parametrize("status", [429, 500, 502, 503])
async def test_rate_limit_and_server_errors_are_retried(clock, status):
    op, calls = flaky(1, lambda: UpstreamHTTPError(status, "busy"))
    executor = RetryExecutor(sleep=clock.sleep)
    assert await executor.run(op, RetryPolicy(max_attempts=2)) == "ok"
    assert len(calls) == 2


@pytest.mark.asyncio
@pytest.mark.parametrize("status", [400, 403, 404, 422])
async def test_client_errors_are_not_retried(clock, status):
    op, calls = flaky(1, lambda: UpstreamHTTPError(status, "nope"))
    executor = RetryExecutor(sleep=clock.sleep)
    with pytest.raises(UpstreamHTTPError):
        await executor.run(op, RetryPolicy(max_attempts=3))
    assert len(calls) == 1


def test_backoff_without_jitter():
    policy = RetryPolicy(base_delay=1.0, max_delay=5.0, backoff_multiplier=2.0, jitter=False)
    assert [policy.delay_for(n) for n in range(1, 6)] == [1.0, 2.0, 4.0, 5.0, 5.0]


def test_jitter_stays_within_half_to_full_delay():
    policy = RetryPolicy(base_delay=1.0, max_delay=5.0, backoff_multiplier=2.0, jitter=True)
    rng = random.Random(42)
    for retry in range(1, 6):
        ceiling = min(5.0, 2.0 ** (retry - 1))
        for _ in range(200):
            delay = policy.delay_for(retry, rng.random)
            assert ceiling * 0.5 <= delay <= ceiling


def test_jitter_extremes():
    policy = RetryPolicy(base_delay=2.0, jitter=True)
    assert policy.delay_for(1, lambda: 0.0) == 1.0
    assert policy.delay_for(1, lambda: 1.0) == 2.0


@pytest.mark.asyncio
async def test_retry_after_hint_raises_delay(clock):
    op, _ = flaky(1, lambda: UpstreamHTTPError(429, "slow down", retry_after=3.0))
    executor = RetryExecutor(sleep=clock.sleep)
    await executor.run(op, RetryPolicy(max_attempts=2, base_delay=0.1, max_delay=5.0, jitter=False))
    assert clock.sleeps == [3.0]


@pytest.mark.asyncio
async def test_retry_after_hint_is_capped(clock):
    op, _ = flaky(1, lambda: UpstreamHTTPError(429, "slow down", retry_after=60.0))
    executor = RetryExecutor(sleep=clock.sleep)
    await executor.run(op, RetryPolicy(max_attempts=2, base_delay=0.1, max_delay=5.0, jitter=False))
    assert clock.sleeps == [5.0]


@pytest.mark.asyncio
async def test_cancellation_aborts_remaining_attempts():
    """Cancelling during the backoff sleep stops further attempts."""
    op, calls = flaky(100)
    sleeping = asyncio.Event()

    async def blocking_sleep(seconds):
        sleeping.set()
        await asyncio.Event().wait()

    executor = RetryExecutor(sleep=blocking_sleep)
    task = asyncio.create_task(executor.run(op, RetryPolicy(max_attempts=5)))
    await sleeping.wait()
    task.cancel()
    with pytest.raises(asyncio.CancelledError):
        await task
    assert len(calls) == 1


@pytest.mark.asyncio
async def test_on_retry_callback(clock):
    seen = []
    op, _ = flaky(2)
    executor = RetryExecutor(sleep=clock.sleep, rand=lambda: 1.0, on_retry=lambda exc, delay: seen.append(delay))
    await executor.run(op, RetryPolicy(max_attempts=3, base_delay=1.0, jitter=True))
    assert seen == [1.0, 2.0]


@pytest.mark.asyncio
async def test_no_retry_policy_single_attempt(clock):
    op, calls = flaky(1)
    executor = RetryExecutor(sleep=clock.sleep)
    with pytest.raises(RetriesExhaustedError):
        await executor.run(op, NO_RETRY)
    assert len(calls) == 1


@pytest.mark.parametrize(
    "kwargs",
    [{"max_attempts": 0}, {"base_delay": -1}, {"backoff_multiplier": 0.5}],
)
def test_invalid_policy_rejected(kwargs):
    with pytest.raises(ValueError):
        RetryPolicy(**kwargs)
