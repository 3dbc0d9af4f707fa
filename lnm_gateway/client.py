"""
Exchange client: the one entry point callers use.

Every operation goes through the same pipeline::

    cache -> circuit breaker -> retry -> rate gate -> sign -> transport -> parse

and returns a :class:`~lnm_gateway.models.Result`. Expected upstream failures
never raise; they come back as ``Result(success=False, error_kind=...)``.
Cancellation is never caught.

Breakers are kept per endpoint group so that a failing trading endpoint does
not block market data:

    market   ticker, market info, funding, status probe
    account  user, balance, positions, deposits, withdrawals
    trading  place/update/add-margin/close

Usage:
    async with ExchangeClient(load_credentials()) as client:
        result = await client.get_balance()
        if result.success:
            print(result.data.balance)
"""

import asyncio
import random
import time
from decimal import Decimal, InvalidOperation
from urllib.parse import quote
from typing import Any, Awaitable, Callable, Dict, Mapping, Optional

from .cache import CacheKey, TieredCache
from .circuit_breaker import CircuitBreaker
from .config import GatewayConfig
from .credentials import Credentials, Environment
from .environment import Confidence, Detection, EnvironmentDetector, base_url_for
from .errors import (
    CredentialsRequiredError,
    ErrorKind,
    ExchangeError,
    InvalidRequestError,
    RetriesExhaustedError,
    UpstreamHTTPError,
    classify,
    is_outage,
)
from .fallback import FallbackChain
from .logging_setup import logger
from .models import (
    Balance,
    DashboardData,
    Deposit,
    FundingSchedule,
    MarketInfo,
    MarketSnapshot,
    Position,
    Result,
    SystemStatus,
    Ticker,
    UserAccount,
    Withdrawal,
    parse_list,
)
from .rate_gate import RateGate
from .retry import RetryExecutor, RetryPolicy
from .signing import RequestSigner
from .transport import HttpTransport

GROUP_MARKET = "market"
GROUP_ACCOUNT = "account"
GROUP_TRADING = "trading"
GROUPS = (GROUP_MARKET, GROUP_ACCOUNT, GROUP_TRADING)

POSITION_TYPES = ("running", "open", "closed")
ORDER_TYPES = ("m", "l")
UPDATE_TYPES = ("stoploss", "takeprofit")
_SIDES = {"b": "b", "buy": "b", "long": "b", "s": "s", "sell": "s", "short": "s"}
MAX_LEVERAGE = Decimal("100")

# failures after which public market data is taken from the fallback chain
_FALLBACK_KINDS = frozenset(
    [ErrorKind.CIRCUIT_OPEN, ErrorKind.RETRIES_EXHAUSTED, ErrorKind.UPSTREAM_UNAVAILABLE]
)


def _positive(name: str, value: Any) -> Decimal:
    try:
        number = Decimal(str(value))
    except (InvalidOperation, ValueError):
        raise InvalidRequestError(f"{name} must be a number, got {value!r}")
    if isinstance(value, bool) or not number.is_finite() or number <= 0:
        raise InvalidRequestError(f"{name} must be a positive number, got {value!r}")
    return number


def _identifier(name: str, value: Any) -> str:
    if not isinstance(value, str) or not value.strip():
        raise InvalidRequestError(f"{name} must be a non-empty string")
    return value.strip()


class ExchangeClient:
    """Resilient client for one exchange account (or public data only).

    All collaborators can be injected; anything not given is built from
    ``config``. Clock, sleep, random source and millisecond time are
    injectable so every timing behaviour can be driven deterministically.
    """

    def __init__(
        self,
        credentials: Optional[Credentials] = None,
        config: Optional[GatewayConfig] = None,
        *,
        transport: Optional[HttpTransport] = None,
        cache: Optional[TieredCache] = None,
        fallback: Optional[FallbackChain] = None,
        detector: Optional[EnvironmentDetector] = None,
        clock: Callable[[], float] = time.monotonic,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
        rand: Callable[[], float] = random.random,
        now_ms: Optional[Callable[[], int]] = None,
    ):
        self.credentials = credentials
        self.config = config or GatewayConfig()
        self._clock = clock
        exchange = self.config.exchange

        self.detector = detector or EnvironmentDetector(exchange.test_key_patterns, exchange.test_label_words)
        self.detection = self._detect()
        self.base_url = base_url_for(self.detection.environment, exchange)

        signer_kwargs = {} if now_ms is None else {"now_ms": now_ms}
        self.signer = RequestSigner(path_prefix=exchange.path_prefix, sign_with_prefix=exchange.sign_with_prefix, **signer_kwargs)
        self.rate_gate = RateGate.from_config(self.config.rate_gate, clock=clock, sleep=sleep)
        self.breakers: Dict[str, CircuitBreaker] = {
            group: CircuitBreaker(self.config.circuit_breaker, name=group, clock=clock, counts_as_failure=is_outage)
            for group in GROUPS
        }
        self.retry = RetryExecutor(sleep=sleep, rand=rand)
        self.cache = cache if cache is not None else TieredCache(clock=clock)

        self._owns_transport = transport is None
        self.transport = transport or HttpTransport(timeout=exchange.timeout)

        if fallback is None and self.config.fallback.enabled:
            fallback = FallbackChain.from_config(self.config.fallback, transport=self.transport)
        self.fallback = fallback

        key = credentials.key_prefix if credentials else "<public>"
        logger.info(
            f"ExchangeClient ready | key={key} environment={self.detection.environment.value} "
            f"base_url={self.base_url} fallback={'on' if self.fallback else 'off'}"
        )

    async def __aenter__(self):
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb):
        await self.close()

    async def close(self) -> None:
        if self.fallback is not None:
            await self.fallback.aclose()
        if self._owns_transport:
            await self.transport.close()

    def _detect(self) -> Detection:
        forced = self.config.exchange.environment
        if forced:
            env = Environment.TEST if forced.strip().lower() in ("test", "testnet") else Environment.PRODUCTION
            return Detection(env, Confidence.HIGH, "forced by configuration")
        if self.credentials is None:
            return Detection(Environment.PRODUCTION, Confidence.HIGH, "no credentials; defaulting to production")
        detection = self.detector.detect(self.credentials)
        if detection.confidence is not Confidence.HIGH:
            logger.warning(
                f"Environment inferred | key={self.credentials.key_prefix} "
                f"environment={detection.environment.value} reason={detection.reason}"
            )
        return detection

    @property
    def owner(self) -> str:
        if self.credentials is None:
            raise CredentialsRequiredError("This client has no credentials")
        return self.credentials.fingerprint

    # ------------------------------------------------------------------
    # Request pipeline
    # ------------------------------------------------------------------

    async def _send_once(
        self,
        method: str,
        path: str,
        query: Optional[Mapping[str, Any]],
        body: Optional[Mapping[str, Any]],
        private: bool,
    ) -> Any:
        await self.rate_gate.acquire()
        # signed after the gate so the timestamp is fresh on every attempt
        if private:
            prepared = self.signer.sign(self.credentials, method, path, query_params=query, body=body)
        else:
            prepared = self.signer.prepare_unsigned(method, path, query_params=query, body=body)
        try:
            resp = await self.transport.send(
                prepared.method,
                f"{self.base_url}{self.signer.url_path(path)}",
                headers=prepared.headers,
                query=prepared.query,
                body=prepared.body,
                timeout=self.config.exchange.timeout,
            )
        except UpstreamHTTPError as e:
            if e.status == 429 and e.retry_after:
                self.rate_gate.defer(e.retry_after)
            raise
        return resp.payload

    async def _request(
        self,
        group: str,
        method: str,
        path: str,
        *,
        query: Optional[Mapping[str, Any]] = None,
        body: Optional[Mapping[str, Any]] = None,
        private: bool = True,
        policy: Optional[RetryPolicy] = None,
    ) -> Any:
        """Send one logical request through breaker, retry and rate gate.

        Raises ExchangeError subclasses; the public operations fold them into
        a Result.
        """
        if private and self.credentials is None:
            raise CredentialsRequiredError(f"{method} {path} requires credentials")
        policy = policy or self.config.retry
        label = f"{method} {path}"

        async def attempt():
            return await self._send_once(method, path, query, body, private)

        return await self.breakers[group].execute(lambda: self.retry.run(attempt, policy, label=label))

    @staticmethod
    def _kind_for(error: BaseException) -> ErrorKind:
        # a single-attempt policy never retried; report what actually happened
        if isinstance(error, RetriesExhaustedError) and error.attempts == 1:
            return classify(error.last_error)
        return classify(error)

    async def _run(self, operation: str, call: Callable[[], Awaitable[Any]], timeout: Optional[float] = None) -> Result:
        try:
            if timeout is not None:
                data = await asyncio.wait_for(call(), timeout=timeout)
            else:
                data = await call()
        except asyncio.TimeoutError:
            logger.warning(f"Operation timed out | op={operation} timeout={timeout}s")
            return Result.fail(ErrorKind.UPSTREAM_UNAVAILABLE)
        except ExchangeError as e:
            kind = self._kind_for(e)
            log = logger.info if kind is ErrorKind.INVALID_REQUEST else logger.warning
            log(f"Operation failed | op={operation} kind={kind.value} error={e}")
            return Result.fail(kind)
        return Result.ok(data)

    # ------------------------------------------------------------------
    # Market data (public)
    # ------------------------------------------------------------------

    async def _fetch_ticker(self) -> Ticker:
        payload = await self._request(GROUP_MARKET, "GET", "/futures/ticker", private=False)
        return Ticker.from_payload(payload)

    async def _cached_ticker(self) -> Ticker:
        return await self.cache.get_or_compute(CacheKey.public("ticker"), self.config.cache.ticker_ttl, self._fetch_ticker)

    async def _fallback_snapshot(self) -> MarketSnapshot:
        key = CacheKey.public("fallback_snapshot")
        cached = self.cache.get(key)
        if cached is not None:
            return cached
        snapshot = await self.fallback.fetch_market_snapshot()
        # an outage verdict is kept only for degraded_ttl
        ttl = self.config.cache.snapshot_ttl if snapshot.has_price else self.config.cache.degraded_ttl
        self.cache.set(key, snapshot, ttl)
        return snapshot

    async def _fallback_within(self, started: float, timeout: Optional[float]) -> MarketSnapshot:
        """Fallback snapshot bounded by what is left of the caller's timeout."""
        if timeout is None:
            return await self._fallback_snapshot()
        remaining = timeout - (asyncio.get_running_loop().time() - started)
        try:
            if remaining <= 0:
                raise asyncio.TimeoutError
            return await asyncio.wait_for(self._fallback_snapshot(), timeout=remaining)
        except asyncio.TimeoutError:
            logger.warning(f"Fallback skipped | reason=deadline timeout={timeout}s")
            return MarketSnapshot.unavailable("Caller timeout reached before fallback answered")

    async def get_ticker(self, *, timeout: Optional[float] = None) -> Result:
        """Current futures ticker; falls back to third-party prices on outage."""
        started = asyncio.get_running_loop().time()
        result = await self._run("get_ticker", self._cached_ticker, timeout)
        if result.success or self.fallback is None or result.error_kind not in _FALLBACK_KINDS:
            return result
        snapshot = await self._fallback_within(started, timeout)
        if not snapshot.has_price:
            return Result.fail(ErrorKind.UPSTREAM_UNAVAILABLE)
        return Result.ok(Ticker.from_snapshot(snapshot), source=f"fallback:{snapshot.source}")

    async def get_market_snapshot(self, *, timeout: Optional[float] = None) -> Result:
        """Market snapshot; never fails on outage, degrades instead."""

        async def compute():
            ticker = await self._cached_ticker()
            return MarketSnapshot.from_ticker(ticker, fetched_at=time.time())

        async def call():
            return await self.cache.get_or_compute(CacheKey.public("snapshot"), self.config.cache.snapshot_ttl, compute)

        started = asyncio.get_running_loop().time()
        result = await self._run("get_market_snapshot", call, timeout)
        if result.success or self.fallback is None or result.error_kind not in _FALLBACK_KINDS:
            return result
        snapshot = await self._fallback_within(started, timeout)
        return Result.ok(snapshot, source=f"fallback:{snapshot.source}")

    async def get_market_info(self, *, timeout: Optional[float] = None) -> Result:
        """Fee schedule and trading limits."""

        async def compute():
            payload = await self._request(GROUP_MARKET, "GET", "/futures/market", private=False)
            return MarketInfo.from_payload(payload)

        async def call():
            return await self.cache.get_or_compute(CacheKey.public("market_info"), self.config.cache.fees_ttl, compute)

        return await self._run("get_market_info", call, timeout)

    async def get_next_funding(self, *, timeout: Optional[float] = None) -> Result:
        async def compute():
            return FundingSchedule.from_ticker(await self._cached_ticker())

        async def call():
            return await self.cache.get_or_compute(CacheKey.public("funding"), self.config.cache.funding_ttl, compute)

        return await self._run("get_next_funding", call, timeout)

    # ------------------------------------------------------------------
    # Account data (private, never from fallback)
    # ------------------------------------------------------------------

    async def _cached_user(self) -> UserAccount:
        async def compute():
            payload = await self._request(GROUP_ACCOUNT, "GET", "/user")
            return UserAccount.from_payload(payload)

        return await self.cache.get_or_compute(CacheKey.private("user", self.owner), self.config.cache.account_ttl, compute)

    async def get_user(self, *, timeout: Optional[float] = None) -> Result:
        return await self._run("get_user", self._cached_user, timeout)

    async def get_balance(self, *, timeout: Optional[float] = None) -> Result:
        async def call():
            return Balance.from_user(await self._cached_user())

        return await self._run("get_balance", call, timeout)

    async def get_positions(self, position_type: str = "running", *, timeout: Optional[float] = None) -> Result:
        """Positions of the account; ``position_type`` is running, open or closed."""

        async def call():
            if position_type not in POSITION_TYPES:
                raise InvalidRequestError(f"position_type must be one of {POSITION_TYPES}")

            async def compute():
                payload = await self._request(GROUP_ACCOUNT, "GET", "/futures", query={"type": position_type})
                return parse_list(Position, payload)

            key = CacheKey.private(f"positions:{position_type}", self.owner)
            return await self.cache.get_or_compute(key, self.config.cache.account_ttl, compute)

        return await self._run("get_positions", call, timeout)

    async def get_deposits(self, *, timeout: Optional[float] = None) -> Result:
        async def call():
            return parse_list(Deposit, await self._request(GROUP_ACCOUNT, "GET", "/user/deposits"))

        return await self._run("get_deposits", call, timeout)

    async def get_withdrawals(self, *, timeout: Optional[float] = None) -> Result:
        async def call():
            return parse_list(Withdrawal, await self._request(GROUP_ACCOUNT, "GET", "/user/withdrawals"))

        return await self._run("get_withdrawals", call, timeout)

    # ------------------------------------------------------------------
    # Trading (private, never cached)
    # ------------------------------------------------------------------

    async def _mutate(self, operation: str, method: str, path: str, *, query=None, body=None) -> Position:
        try:
            payload = await self._request(
                GROUP_TRADING, method, path, query=query, body=body, policy=self.config.mutation_retry
            )
        finally:
            # positions/balance may have changed even when the response was lost
            if self.credentials is not None:
                dropped = self.cache.invalidate_owner(self.owner)
                logger.debug(f"Account cache invalidated | op={operation} entries={dropped}")
        return Position.from_payload(payload)

    async def place_order(
        self,
        side: str,
        leverage: Any,
        *,
        quantity: Any = None,
        margin: Any = None,
        order_type: str = "m",
        price: Any = None,
        stoploss: Any = None,
        takeprofit: Any = None,
        timeout: Optional[float] = None,
    ) -> Result:
        """Open a futures position.

        Args:
            side: "b"/"buy" or "s"/"sell"
            leverage: 1-100
            quantity: Contract size in USD (exactly one of quantity / margin)
            margin: Margin in sats
            order_type: "m" (market) or "l" (limit)
            price: Limit price, required for limit orders
            stoploss, takeprofit: Optional trigger prices
        """

        def build() -> Dict[str, Any]:
            side_code = _SIDES.get(str(side).strip().lower())
            if side_code is None:
                raise InvalidRequestError(f"side must be buy or sell, got {side!r}")
            if order_type not in ORDER_TYPES:
                raise InvalidRequestError(f"order_type must be one of {ORDER_TYPES}")
            lev = _positive("leverage", leverage)
            if lev < 1 or lev > MAX_LEVERAGE:
                raise InvalidRequestError(f"leverage must be between 1 and {MAX_LEVERAGE}")
            if (quantity is None) == (margin is None):
                raise InvalidRequestError("exactly one of quantity or margin is required")

            body: Dict[str, Any] = {"type": order_type, "side": side_code, "leverage": lev}
            if quantity is not None:
                body["quantity"] = _positive("quantity", quantity)
            else:
                body["margin"] = _positive("margin", margin)
            if order_type == "l":
                if price is None:
                    raise InvalidRequestError("price is required for limit orders")
                body["price"] = _positive("price", price)
            elif price is not None:
                raise InvalidRequestError("price is only valid for limit orders")
            if stoploss is not None:
                body["stoploss"] = _positive("stoploss", stoploss)
            if takeprofit is not None:
                body["takeprofit"] = _positive("takeprofit", takeprofit)
            return body

        async def call():
            body = build()
            position = await self._mutate("place_order", "POST", "/futures", body=body)
            logger.info(
                f"Order placed | key={self.credentials.key_prefix} id={position.id} side={body['side']} "
                f"type={body['type']} leverage={body['leverage']}"
            )
            return position

        return await self._run("place_order", call, timeout)

    async def update_position(self, position_id: str, update_type: str, value: Any, *, timeout: Optional[float] = None) -> Result:
        """Move the stoploss or takeprofit of a running position."""

        async def call():
            pid = _identifier("position_id", position_id)
            if update_type not in UPDATE_TYPES:
                raise InvalidRequestError(f"update_type must be one of {UPDATE_TYPES}")
            body = {"id": pid, "type": update_type, "value": _positive("value", value)}
            position = await self._mutate("update_position", "PUT", "/futures", body=body)
            logger.info(f"Position updated | id={pid} {update_type}={body['value']}")
            return position

        return await self._run("update_position", call, timeout)

    async def add_margin(self, position_id: str, amount: Any, *, timeout: Optional[float] = None) -> Result:
        """Add margin (sats) to a running position, lowering its liquidation price."""

        async def call():
            pid = _identifier("position_id", position_id)
            body = {"amount": _positive("amount", amount)}
            position = await self._mutate("add_margin", "POST", f"/futures/{quote(pid, safe='')}/add-margin", body=body)
            logger.info(f"Margin added | id={pid} amount={body['amount']} liquidation={position.liquidation}")
            return position

        return await self._run("add_margin", call, timeout)

    async def close_position(self, position_id: str, *, timeout: Optional[float] = None) -> Result:
        async def call():
            pid = _identifier("position_id", position_id)
            position = await self._mutate("close_position", "DELETE", "/futures", query={"id": pid})
            logger.info(f"Position closed | id={pid} pl={position.pl}")
            return position

        return await self._run("close_position", call, timeout)

    # ------------------------------------------------------------------
    # Aggregates
    # ------------------------------------------------------------------

    async def get_dashboard_data(self, *, timeout: Optional[float] = None) -> Result:
        """User, running positions and ticker fetched concurrently.

        The envelope always succeeds; each part carries its own Result, so
        market data can come from the fallback while account data fails.
        """
        user, positions, ticker = await asyncio.gather(
            self.get_user(timeout=timeout),
            self.get_positions("running", timeout=timeout),
            self.get_ticker(timeout=timeout),
        )
        dashboard = DashboardData(user=user, positions=positions, ticker=ticker)
        if not dashboard.complete:
            logger.info(
                f"Dashboard partial | user={user.success} positions={positions.success} "
                f"ticker={ticker.success} ticker_source={ticker.source}"
            )
        return Result.ok(dashboard)

    # ------------------------------------------------------------------
    # Diagnostics
    # ------------------------------------------------------------------

    def stats(self) -> dict:
        return {
            "environment": self.detection.environment.value,
            "environment_confidence": self.detection.confidence.value,
            "base_url": self.base_url,
            "breakers": {group: breaker.snapshot() for group, breaker in self.breakers.items()},
            "rate_gate": self.rate_gate.snapshot(),
            "cache": self.cache.stats(),
            "fallback_source": self.fallback.last_source if self.fallback else None,
        }

    async def get_system_status(self, *, timeout: Optional[float] = None) -> Result:
        """Probe the exchange (uncached ticker) and report component state."""
        started = self._clock()
        probe = await self._run("get_system_status", self._fetch_ticker, timeout)
        latency_ms = (self._clock() - started) * 1000 if probe.success else None
        stats = self.stats()
        status = SystemStatus(
            exchange_reachable=probe.success,
            environment=self.detection.environment.value,
            base_url=self.base_url,
            checked_at=time.time(),
            latency_ms=latency_ms,
            error_kind=probe.error_kind,
            breakers=stats["breakers"],
            rate_gate=stats["rate_gate"],
            cache=stats["cache"],
        )
        return Result.ok(status)
