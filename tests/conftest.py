import asyncio
from urllib.parse import urlsplit

import pytest

from lnm_gateway.credentials import Credentials
from lnm_gateway.transport import TransportResponse

TEST_SECRET = "lnm-test-secret"
FIXED_TS = 1700000000000

TICKER_PAYLOAD = {
    "index": 64000.5,
    "lastPrice": 64010,
    "askPrice": 64011,
    "bidPrice": 64009,
    "carryFeeRate": 0.0001,
    "carryFeeTimestamp": 1700003600000,
}

USER_PAYLOAD = {
    "uid": "u-1",
    "username": "satoshi",
    "account_type": "lnurl",
    "fee_tier": 1,
    "balance": 250000,
    "synthetic_usd_balance": 12.5,
}

POSITION_PAYLOAD = {
    "id": "abc-123",
    "type": "m",
    "side": "b",
    "quantity": 100,
    "margin": 2000,
    "leverage": 10,
    "price": 64000,
    "entry_price": 64000,
    "liquidation": 58500,
    "pl": 120,
    "stoploss": 0,
    "takeprofit": 70000,
    "running": True,
    "closed": False,
    "creation_ts": 1699990000000,
    "sum_carry_fees": 3,
}


class FakeClock:
    """Logical clock: ``sleep`` advances time instead of waiting."""

    def __init__(self, start: float = 0.0):
        self.now = start
        self.sleeps = []

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds

    async def sleep(self, seconds: float) -> None:
        self.sleeps.append(seconds)
        self.now += seconds
        await asyncio.sleep(0)


class FakeTransport:
    """Routes ``METHOD /path`` to queued outcomes (payloads or exceptions).

    The last queued outcome of a route repeats once the queue is down to one.
    """

    def __init__(self, routes=None, clock=None):
        self.routes = {k: list(v) for k, v in (routes or {}).items()}
        self.calls = []
        self.clock = clock
        self.closed = False

    def route(self, key, *outcomes):
        self.routes[key] = list(outcomes)

    def calls_to(self, key):
        return [c for c in self.calls if f"{c['method']} {c['path']}" == key]

    async def send(self, method, url, *, headers=None, query="", body="", timeout=None):
        path = urlsplit(url).path
        self.calls.append({
            "method": method,
            "url": url,
            "path": path,
            "headers": dict(headers or {}),
            "query": query,
            "body": body,
            "at": self.clock() if self.clock else None,
        })
        key = f"{method} {path}"
        if key not in self.routes:
            raise AssertionError(f"unexpected request {key}")
        queue = self.routes[key]
        outcome = queue.pop(0) if len(queue) > 1 else queue[0]
        if callable(outcome):
            outcome = await outcome()
        if isinstance(outcome, BaseException):
            raise outcome
        return TransportResponse(status=200, payload=outcome)

    async def close(self):
        self.closed = True


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def credentials():
    return Credentials(
        api_key="live-key-0001",
        api_secret=TEST_SECRET,
        passphrase="lnm-pass",
        environment="production",
    )
