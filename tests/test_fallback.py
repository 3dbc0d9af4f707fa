import asyncio
from decimal import Decimal

import pytest

from lnm_gateway.errors import InvalidResponseError, TransportError
from lnm_gateway.fallback import (
    BinanceProvider,
    CoinGeckoProvider,
    FallbackChain,
    FallbackConfig,
    FallbackProvider,
    KrakenProvider,
)
from lnm_gateway.models import MarketSnapshot

from conftest import FakeTransport


class StubProvider(FallbackProvider):
    def __init__(self, name, healthy=True, price="64000", health_delay=0.0, fetch_delay=0.0, health_error=None, fetch_error=None):
        super().__init__(transport=None, clock=lambda: 1700000000.0)
        self.name = name
        self.healthy = healthy
        self.price = price
        self.health_delay = health_delay
        self.fetch_delay = fetch_delay
        self.health_error = health_error
        self.fetch_error = fetch_error
        self.health_calls = 0
        self.fetch_calls = 0

    async def health_check(self):
        self.health_calls += 1
        if self.health_delay:
            await asyncio.sleep(self.health_delay)
        if self.health_error:
            raise self.health_error
        return self.healthy

    async def fetch_market_snapshot(self):
        self.fetch_calls += 1
        if self.fetch_delay:
            await asyncio.sleep(self.fetch_delay)
        if self.fetch_error:
            raise self.fetch_error
        return MarketSnapshot(price=Decimal(self.price), source=self.name, fetched_at=self._clock())


def chain(*providers, **kwargs):
    kwargs.setdefault("health_timeout", 0.05)
    kwargs.setdefault("fetch_timeout", 0.05)
    return FallbackChain(providers, clock=lambda: 1700000000.0, **kwargs)


@pytest.mark.asyncio
async def test_unhealthy_provider_is_never_fetched():
    """A unhealthy, B healthy: A's fetch is never called; B's data is returned."""
    a = StubProvider("a", healthy=False)
    b = StubProvider("b", price="65000")

    snapshot = await chain(a, b).fetch_market_snapshot()

    assert a.fetch_calls == 0
    assert b.fetch_calls == 1
    assert snapshot.source == "b"
    assert snapshot.price == Decimal("65000")
    assert not snapshot.degraded


@pytest.mark.asyncio
async def test_first_healthy_provider_wins():
    a = StubProvider("a")
    b = StubProvider("b")
    fc = chain(a, b)
    snapshot = await fc.fetch_market_snapshot()
    assert snapshot.source == "a"
    assert b.health_calls == 0
    assert fc.last_source == "a"


@pytest.mark.asyncio
async def test_health_probe_timeout_skips_provider():
    slow = StubProvider("slow", health_delay=1.0)
    fast = StubProvider("fast")
    snapshot = await chain(slow, fast).fetch_market_snapshot()
    assert slow.fetch_calls == 0
    assert snapshot.source == "fast"


@pytest.mark.asyncio
async def test_health_probe_error_skips_provider():
    broken = StubProvider("broken", health_error=TransportError("dns failure"))
    ok = StubProvider("ok")
    snapshot = await chain(broken, ok).fetch_market_snapshot()
    assert snapshot.source == "ok"


@pytest.mark.asyncio
async def test_fetch_timeout_moves_to_next_provider():
    stuck = StubProvider("stuck", fetch_delay=1.0)
    ok = StubProvider("ok")
    snapshot = await chain(stuck, ok).fetch_market_snapshot()
    assert stuck.fetch_calls == 1
    assert snapshot.source == "ok"


@pytest.mark.asyncio
async def test_fetch_error_moves_to_next_provider():
    bad = StubProvider("bad", fetch_error=InvalidResponseError("garbage"))
    ok = StubProvider("ok")
    snapshot = await chain(bad, ok).fetch_market_snapshot()
    assert snapshot.source == "ok"


@pytest.mark.asyncio
@pytest.mark.parametrize("price", ["0", "-5", "12", "5000000"])
async def test_out_of_range_prices_are_rejected(price):
    weird = StubProvider("weird", price=price)
    ok = StubProvider("ok")
    snapshot = await chain(weird, ok).fetch_market_snapshot()
    assert snapshot.source == "ok"


@pytest.mark.asyncio
async def test_all_failing_returns_degraded_snapshot():
    """No provider usable: degraded snapshot, no invented price."""
    fc = chain(StubProvider("a", healthy=False), StubProvider("b", fetch_error=TransportError("reset")))
    snapshot = await fc.fetch_market_snapshot()
    assert snapshot.degraded
    assert snapshot.price is None
    assert not snapshot.has_price
    assert snapshot.warning
    assert fc.last_source is None


@pytest.mark.asyncio
async def test_empty_chain_is_degraded():
    snapshot = await chain().fetch_market_snapshot()
    assert snapshot.degraded


def test_from_config_builds_providers_in_order():
    config = FallbackConfig(providers=["kraken", "binance"])
    fc = FallbackChain.from_config(config)
    assert [p.name for p in fc.providers] == ["kraken", "binance"]
    assert fc.health_timeout == 2.0
    assert fc.fetch_timeout == 3.0


def test_from_config_rejects_unknown_provider():
    with pytest.raises(ValueError, match="unknown fallback provider"):
        FallbackChain.from_config(FallbackConfig(providers=["bitstamp"]))


def test_binance_parse():
    payload = {
        "symbol": "BTCUSDT",
        "lastPrice": "64123.45000000",
        "priceChangePercent": "-1.25",
        "volume": "18234.1",
        "highPrice": "65000.00",
        "lowPrice": "63000.00",
    }
    snapshot = BinanceProvider.parse(payload, 1.0)
    assert snapshot.price == Decimal("64123.45000000")
    assert snapshot.change_24h_pct == Decimal("-1.25")
    assert snapshot.high_24h == Decimal("65000.00")
    assert snapshot.source == "binance"


def test_coingecko_parse():
    payload = {"bitcoin": {"usd": 64100, "usd_24h_change": 0.52, "usd_24h_vol": 31000000000.5}}
    snapshot = CoinGeckoProvider.parse(payload, 1.0)
    assert snapshot.price == Decimal("64100")
    assert snapshot.change_24h_pct == Decimal("0.52")
    assert snapshot.high_24h is None


def test_coingecko_parse_missing_coin():
    with pytest.raises(InvalidResponseError):
        CoinGeckoProvider.parse({}, 1.0)


def test_kraken_parse():
    payload = {
        "error": [],
        "result": {
            "XXBTZUSD": {
                "c": ["66000.0", "0.01"],
                "o": "60000.0",
                "v": ["100.0", "2500.5"],
                "h": ["66100.0", "66500.0"],
                "l": ["59000.0", "58800.0"],
            }
        },
    }
    snapshot = KrakenProvider.parse(payload, 1.0)
    assert snapshot.price == Decimal("66000.0")
    assert snapshot.change_24h_pct == Decimal("10")
    assert snapshot.volume_24h == Decimal("2500.5")
    assert snapshot.low_24h == Decimal("58800.0")


def test_kraken_parse_error_field():
    with pytest.raises(InvalidResponseError):
        KrakenProvider.parse({"error": ["EQuery:Unknown asset pair"], "result": {}}, 1.0)


@pytest.mark.asyncio
async def test_unexpected_health_exception_skips_provider():
    a = StubProvider("a", health_error=RuntimeError("provider bug"))
    b = StubProvider("b", price="65000")

    snapshot = await chain(a, b).fetch_market_snapshot()

    assert snapshot.source == "b"
    assert a.fetch_calls == 0


@pytest.mark.asyncio
async def test_unexpected_fetch_exception_moves_to_next_provider():
    a = StubProvider("a", fetch_error=AttributeError("'str' object has no attribute 'get'"))
    b = StubProvider("b", price="65000")

    snapshot = await chain(a, b).fetch_market_snapshot()

    assert snapshot.price == Decimal("65000")
    assert a.fetch_calls == 1


@pytest.mark.asyncio
async def test_kraken_maintenance_status_is_skipped():
    transport = FakeTransport({"GET /0/public/SystemStatus": [{"error": [], "result": "maintenance"}]})
    kraken = KrakenProvider(transport, clock=lambda: 1700000000.0)
    backup = StubProvider("backup", price="64500")

    snapshot = await chain(kraken, backup).fetch_market_snapshot()

    assert snapshot.source == "backup"
    assert transport.calls_to("GET /0/public/Ticker") == []


@pytest.mark.asyncio
async def test_kraken_online_status_is_healthy():
    transport = FakeTransport({"GET /0/public/SystemStatus": [{"error": [], "result": {"status": "online"}}]})
    assert await KrakenProvider(transport).health_check() is True


def test_kraken_parse_rejects_non_finite_price():
    payload = {"error": [], "result": {"XXBTZUSD": {
        "c": ["NaN", "0.01"], "o": "60000", "v": ["1", "2"], "h": ["1", "2"], "l": ["1", "2"],
    }}}
    with pytest.raises(InvalidResponseError):
        KrakenProvider.parse(payload, 1.0)
