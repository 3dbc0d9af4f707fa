"""
Third-party fallback for public market data.

When the exchange cannot serve its ticker, a BTC/USD view is taken from public
sources instead. Each provider is probed for health first (short timeout),
then asked for data (longer timeout); the first provider whose snapshot
passes validation wins. If none does, a degraded snapshot without a price is
returned rather than an invented one.

Only public market data goes through here. Account data (balances, positions)
has no third-party equivalent and is never served from a fallback.
"""

import asyncio
import time
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from decimal import Decimal
from typing import Any, Callable, Dict, List, Optional, Sequence

from .errors import InvalidResponseError
from .logging_setup import logger
from .models import MarketSnapshot, _dec, _number, _require
from .transport import HttpTransport


@dataclass
class FallbackConfig:
    """Fallback chain settings (seconds, USD)."""
    enabled: bool = True
    providers: List[str] = field(default_factory=lambda: ["binance", "coingecko", "kraken"])
    health_timeout: float = 2.0
    fetch_timeout: float = 3.0
    min_price: Decimal = Decimal("1000")
    max_price: Decimal = Decimal("1000000")


class FallbackProvider(ABC):
    """A public market data source."""

    name: str = "provider"

    def __init__(self, transport: HttpTransport, *, clock: Callable[[], float] = time.time):
        self.transport = transport
        self._clock = clock

    async def _get_json(self, url: str, query: str = "", timeout: Optional[float] = None) -> Any:
        resp = await self.transport.send("GET", url, query=query, timeout=timeout)
        return resp.payload

    @abstractmethod
    async def health_check(self) -> bool:
        ...

    @abstractmethod
    async def fetch_market_snapshot(self) -> MarketSnapshot:
        ...


class BinanceProvider(FallbackProvider):
    name = "binance"
    base_url = "https://api.binance.com/api/v3"

    async def health_check(self) -> bool:
        await self._get_json(f"{self.base_url}/ping")
        return True

    async def fetch_market_snapshot(self) -> MarketSnapshot:
        payload = await self._get_json(f"{self.base_url}/ticker/24hr", "symbol=BTCUSDT")
        return self.parse(payload, self._clock())

    @classmethod
    def parse(cls, payload: Any, fetched_at: float) -> MarketSnapshot:
        data = _require(payload, "binance ticker")
        return MarketSnapshot(
            price=_dec(data, "lastPrice"),
            source=cls.name,
            fetched_at=fetched_at,
            change_24h_pct=_dec(data, "priceChangePercent", None),
            volume_24h=_dec(data, "volume", None),
            high_24h=_dec(data, "highPrice", None),
            low_24h=_dec(data, "lowPrice", None),
        )


class CoinGeckoProvider(FallbackProvider):
    name = "coingecko"
    base_url = "https://api.coingecko.com/api/v3"

    async def health_check(self) -> bool:
        await self._get_json(f"{self.base_url}/ping")
        return True

    async def fetch_market_snapshot(self) -> MarketSnapshot:
        payload = await self._get_json(
            f"{self.base_url}/simple/price",
            "ids=bitcoin&include_24hr_change=true&include_24hr_vol=true&vs_currencies=usd",
        )
        return self.parse(payload, self._clock())

    @classmethod
    def parse(cls, payload: Any, fetched_at: float) -> MarketSnapshot:
        btc = _require(_require(payload, "coingecko price").get("bitcoin"), "coingecko bitcoin")
        # simple/price has no 24h high/low
        return MarketSnapshot(
            price=_dec(btc, "usd"),
            source=cls.name,
            fetched_at=fetched_at,
            change_24h_pct=_dec(btc, "usd_24h_change", None),
            volume_24h=_dec(btc, "usd_24h_vol", None),
        )


class KrakenProvider(FallbackProvider):
    name = "kraken"
    base_url = "https://api.kraken.com/0/public"

    async def health_check(self) -> bool:
        payload = await self._get_json(f"{self.base_url}/SystemStatus")
        result = _require(_require(payload, "kraken status").get("result"), "kraken status result")
        return result.get("status") == "online"

    async def fetch_market_snapshot(self) -> MarketSnapshot:
        payload = await self._get_json(f"{self.base_url}/Ticker", "pair=XBTUSD")
        return self.parse(payload, self._clock())

    @classmethod
    def parse(cls, payload: Any, fetched_at: float) -> MarketSnapshot:
        data = _require(payload, "kraken ticker")
        if data.get("error"):
            raise InvalidResponseError(f"kraken ticker error: {data['error']}")
        result = _require(data.get("result"), "kraken result")
        if not result:
            raise InvalidResponseError("kraken ticker: empty result")
        ticker = _require(next(iter(result.values())), "kraken pair")
        try:
            price = _number(ticker["c"][0], "c")
            opening = _number(ticker["o"], "o")
            volume = _number(ticker["v"][1], "v")
            high = _number(ticker["h"][1], "h")
            low = _number(ticker["l"][1], "l")
        except (KeyError, IndexError, TypeError) as e:
            raise InvalidResponseError(f"kraken ticker: malformed pair data ({e})")
        change = (price - opening) / opening * 100 if opening else None
        return MarketSnapshot(
            price=price,
            source=cls.name,
            fetched_at=fetched_at,
            change_24h_pct=change,
            volume_24h=volume,
            high_24h=high,
            low_24h=low,
        )


PROVIDERS: Dict[str, type] = {
    BinanceProvider.name: BinanceProvider,
    CoinGeckoProvider.name: CoinGeckoProvider,
    KrakenProvider.name: KrakenProvider,
}


class FallbackChain:
    """Ordered list of providers tried one after another."""

    def __init__(
        self,
        providers: Sequence[FallbackProvider],
        *,
        health_timeout: float = 2.0,
        fetch_timeout: float = 3.0,
        min_price: Decimal = Decimal("1000"),
        max_price: Decimal = Decimal("1000000"),
        clock: Callable[[], float] = time.time,
        transport: Optional[HttpTransport] = None,
    ):
        self.providers = list(providers)
        self.health_timeout = health_timeout
        self.fetch_timeout = fetch_timeout
        self.min_price = Decimal(str(min_price))
        self.max_price = Decimal(str(max_price))
        self._clock = clock
        self._transport = transport  # closed by aclose() when set
        self.last_source: Optional[str] = None

    @classmethod
    def from_config(cls, config: FallbackConfig, *, transport: Optional[HttpTransport] = None, clock: Callable[[], float] = time.time) -> "FallbackChain":
        owned = transport is None
        transport = transport or HttpTransport(timeout=config.fetch_timeout)
        providers = []
        for name in config.providers:
            if name not in PROVIDERS:
                raise ValueError(f"unknown fallback provider '{name}' (known: {sorted(PROVIDERS)})")
            providers.append(PROVIDERS[name](transport, clock=clock))
        return cls(
            providers,
            health_timeout=config.health_timeout,
            fetch_timeout=config.fetch_timeout,
            min_price=config.min_price,
            max_price=config.max_price,
            clock=clock,
            transport=transport if owned else None,
        )

    def validate(self, snapshot: MarketSnapshot) -> Optional[str]:
        """Return a rejection reason, or None if the snapshot is usable."""
        if snapshot.price is None or not snapshot.price.is_finite() or snapshot.price <= 0:
            return "non-positive price"
        if not (self.min_price <= snapshot.price <= self.max_price):
            return f"price {snapshot.price} outside [{self.min_price}, {self.max_price}]"
        return None

    async def _healthy(self, provider: FallbackProvider) -> bool:
        try:
            return bool(await asyncio.wait_for(provider.health_check(), timeout=self.health_timeout))
        except asyncio.TimeoutError:
            logger.warning(f"Fallback health probe timed out | provider={provider.name} timeout={self.health_timeout}s")
        except Exception as e:
            # any provider bug counts as unhealthy; cancellation still propagates
            logger.warning(f"Fallback health probe failed | provider={provider.name} error={e}")
        return False

    async def fetch_market_snapshot(self) -> MarketSnapshot:
        for provider in self.providers:
            if not await self._healthy(provider):
                continue
            try:
                snapshot = await asyncio.wait_for(provider.fetch_market_snapshot(), timeout=self.fetch_timeout)
            except asyncio.TimeoutError:
                logger.warning(f"Fallback fetch timed out | provider={provider.name} timeout={self.fetch_timeout}s")
                continue
            except Exception as e:
                logger.warning(f"Fallback fetch failed | provider={provider.name} error={e!r}")
                continue

            reason = self.validate(snapshot)
            if reason is not None:
                logger.warning(f"Fallback data rejected | provider={provider.name} reason={reason}")
                continue

            self.last_source = provider.name
            logger.info(f"Fallback served market data | provider={provider.name} price={snapshot.price}")
            return snapshot

        self.last_source = None
        logger.error(f"All fallback providers failed | providers={[p.name for p in self.providers]}")
        return MarketSnapshot.unavailable(fetched_at=self._clock())

    async def aclose(self) -> None:
        if self._transport is not None:
            await self._transport.close()
