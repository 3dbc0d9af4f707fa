"""
Typed payloads returned by the gateway, and the Result envelope.

Upstream JSON is parsed here and only here. Monetary amounts become
``Decimal`` (built from ``str(value)`` so floats keep their printed value);
satoshi amounts stay integral Decimals. A payload missing a required field
raises :class:`~lnm_gateway.errors.InvalidResponseError`, which the client
reports as ``UNKNOWN_UPSTREAM_ERROR``.

Examples:
    >>> t = Ticker.from_payload({"index": 64000.5, "lastPrice": 64001,
    ...     "askPrice": 64002, "bidPrice": 64000, "carryFeeRate": 0.0001,
    ...     "carryFeeTimestamp": 1700000000000})
    >>> t.last_price
    Decimal('64001')
"""

import time
from dataclasses import asdict, dataclass, field, is_dataclass
from decimal import Decimal, InvalidOperation
from enum import Enum
from typing import Any, Dict, List, Mapping, Optional, Tuple

from .errors import ERROR_MESSAGES, ErrorKind, InvalidResponseError

SOURCE_EXCHANGE = "exchange"


def _require(payload: Any, name: str) -> Mapping[str, Any]:
    if not isinstance(payload, Mapping):
        raise InvalidResponseError(f"{name}: expected an object, got {type(payload).__name__}")
    return payload


def _number(value: Any, key: str) -> Decimal:
    if isinstance(value, bool):
        raise InvalidResponseError(f"field '{key}' is not numeric")
    try:
        number = Decimal(str(value))
    except InvalidOperation:
        raise InvalidResponseError(f"field '{key}' is not numeric: {value!r}")
    if not number.is_finite():
        raise InvalidResponseError(f"field '{key}' is not finite: {value!r}")
    return number


def _dec(payload: Mapping[str, Any], key: str, default: Any = ...) -> Optional[Decimal]:
    if key not in payload or payload[key] is None:
        if default is ...:
            raise InvalidResponseError(f"missing field '{key}'")
        return default
    return _number(payload[key], key)


def _int(payload: Mapping[str, Any], key: str, default: Any = ...) -> Optional[int]:
    value = _dec(payload, key, default)
    return None if value is None else int(value)


def _str(payload: Mapping[str, Any], key: str, default: Any = ...) -> Optional[str]:
    if key not in payload or payload[key] is None:
        if default is ...:
            raise InvalidResponseError(f"missing field '{key}'")
        return default
    return str(payload[key])


def parse_list(cls, payload: Any) -> list:
    """Parse a JSON array of records with ``cls.from_payload``."""
    if not isinstance(payload, list):
        raise InvalidResponseError(f"{cls.__name__} list: expected an array, got {type(payload).__name__}")
    return [cls.from_payload(item) for item in payload]


@dataclass(frozen=True)
class Ticker:
    index: Decimal
    last_price: Decimal
    ask_price: Optional[Decimal]
    bid_price: Optional[Decimal]
    carry_fee_rate: Optional[Decimal]
    carry_fee_timestamp: Optional[int]  # ms, next funding event

    @classmethod
    def from_payload(cls, payload: Any) -> "Ticker":
        data = _require(payload, "ticker")
        index = _dec(data, "index")
        return cls(
            index=index,
            last_price=_dec(data, "lastPrice", index),
            ask_price=_dec(data, "askPrice", None),
            bid_price=_dec(data, "bidPrice", None),
            carry_fee_rate=_dec(data, "carryFeeRate", None),
            carry_fee_timestamp=_int(data, "carryFeeTimestamp", None),
        )

    @classmethod
    def from_snapshot(cls, snapshot: "MarketSnapshot") -> "Ticker":
        """Price-only ticker built from a third-party snapshot."""
        if snapshot.price is None:
            raise InvalidResponseError("snapshot carries no price")
        return cls(
            index=snapshot.price,
            last_price=snapshot.price,
            ask_price=None,
            bid_price=None,
            carry_fee_rate=None,
            carry_fee_timestamp=None,
        )

    @property
    def spread(self) -> Optional[Decimal]:
        if self.ask_price is None or self.bid_price is None:
            return None
        return self.ask_price - self.bid_price


@dataclass(frozen=True)
class FundingSchedule:
    """Next funding (carry fee) event."""

    next_funding_at: int  # ms since epoch
    rate: Decimal

    @classmethod
    def from_ticker(cls, ticker: Ticker) -> "FundingSchedule":
        if ticker.carry_fee_timestamp is None or ticker.carry_fee_rate is None:
            raise InvalidResponseError("ticker carries no funding schedule")
        return cls(next_funding_at=ticker.carry_fee_timestamp, rate=ticker.carry_fee_rate)

    def seconds_until(self, now_ms: Optional[int] = None) -> float:
        now_ms = int(time.time() * 1000) if now_ms is None else now_ms
        return max(0.0, (self.next_funding_at - now_ms) / 1000)


@dataclass(frozen=True)
class FeeTier:
    min_volume: Decimal
    fee: Decimal


@dataclass(frozen=True)
class MarketInfo:
    """Fee schedule and trading limits of the futures market."""

    active: bool
    quantity_min: Decimal
    quantity_max: Decimal
    leverage_min: Decimal
    leverage_max: Decimal
    max_trade: Optional[Decimal]
    max_open_positions: Optional[int]
    carry_fee_min: Optional[Decimal]
    carry_fee_hours: Tuple[int, ...]
    trading_fee_tiers: Tuple[FeeTier, ...]

    @classmethod
    def from_payload(cls, payload: Any) -> "MarketInfo":
        data = _require(payload, "market")
        limits = _require(data.get("limits"), "market.limits")
        fees = _require(data.get("fees", {}), "market.fees")
        quantity = _require(limits.get("quantity"), "market.limits.quantity")
        leverage = _require(limits.get("leverage"), "market.limits.leverage")
        carry = _require(fees.get("carry") or {}, "market.fees.carry")
        count = _require(limits.get("count") or {}, "market.limits.count")
        hours = carry.get("hours") or []
        if not isinstance(hours, list):
            raise InvalidResponseError("market.fees.carry.hours: expected an array")
        trading = fees.get("trading") or []
        if not isinstance(trading, list):
            raise InvalidResponseError("market.fees.trading: expected an array")
        tiers = tuple(
            FeeTier(min_volume=_dec(t, "minVolume"), fee=_dec(t, "fees"))
            for t in (_require(t, "market.fees.trading[]") for t in trading)
        )
        return cls(
            active=bool(data.get("active", True)),
            quantity_min=_dec(quantity, "min"),
            quantity_max=_dec(quantity, "max"),
            leverage_min=_dec(leverage, "min"),
            leverage_max=_dec(leverage, "max"),
            max_trade=_dec(limits, "trade", None),
            max_open_positions=_int(count, "max", None),
            carry_fee_min=_dec(carry, "min", None),
            carry_fee_hours=tuple(int(_number(h, "carry.hours[]")) for h in hours),
            trading_fee_tiers=tiers,
        )

    def fee_for_volume(self, volume: Decimal) -> Optional[Decimal]:
        """Trading fee rate for a 30-day volume (highest tier reached)."""
        fee = None
        for tier in sorted(self.trading_fee_tiers, key=lambda t: t.min_volume):
            if volume >= tier.min_volume:
                fee = tier.fee
        return fee


@dataclass(frozen=True)
class Position:
    id: str
    type: str  # m (market) / l (limit)
    side: str  # b (buy) / s (sell)
    quantity: Decimal
    margin: Decimal
    leverage: Decimal
    price: Decimal
    entry_price: Optional[Decimal]
    liquidation: Optional[Decimal]
    pl: Decimal
    stoploss: Optional[Decimal]
    takeprofit: Optional[Decimal]
    running: bool
    closed: bool
    creation_ts: Optional[int]
    sum_carry_fees: Decimal = Decimal("0")

    @classmethod
    def from_payload(cls, payload: Any) -> "Position":
        data = _require(payload, "position")
        stoploss = _dec(data, "stoploss", None)
        takeprofit = _dec(data, "takeprofit", None)
        return cls(
            id=_str(data, "id"),
            type=_str(data, "type", "m"),
            side=_str(data, "side"),
            quantity=_dec(data, "quantity"),
            margin=_dec(data, "margin"),
            leverage=_dec(data, "leverage"),
            price=_dec(data, "price"),
            entry_price=_dec(data, "entry_price", None),
            liquidation=_dec(data, "liquidation", None),
            pl=_dec(data, "pl", Decimal("0")),
            # the exchange reports an unset stop/target as 0
            stoploss=stoploss or None,
            takeprofit=takeprofit or None,
            running=bool(data.get("running", False)),
            closed=bool(data.get("closed", False)),
            creation_ts=_int(data, "creation_ts", None),
            sum_carry_fees=_dec(data, "sum_carry_fees", Decimal("0")),
        )


@dataclass(frozen=True)
class UserAccount:
    uid: Optional[str]
    username: Optional[str]
    account_type: Optional[str]
    fee_tier: int
    balance: Decimal  # sats
    synthetic_usd_balance: Decimal

    @classmethod
    def from_payload(cls, payload: Any) -> "UserAccount":
        data = _require(payload, "user")
        return cls(
            uid=_str(data, "uid", None),
            username=_str(data, "username", None),
            account_type=_str(data, "account_type", None),
            fee_tier=_int(data, "fee_tier", 0),
            balance=_dec(data, "balance"),
            synthetic_usd_balance=_dec(data, "synthetic_usd_balance", Decimal("0")),
        )


@dataclass(frozen=True)
class Balance:
    balance: Decimal  # sats
    synthetic_usd_balance: Decimal

    @classmethod
    def from_user(cls, user: UserAccount) -> "Balance":
        return cls(balance=user.balance, synthetic_usd_balance=user.synthetic_usd_balance)

    @property
    def btc(self) -> Decimal:
        return self.balance / Decimal(100_000_000)


@dataclass(frozen=True)
class Deposit:
    id: str
    amount: Decimal
    type: Optional[str]
    tx_id: Optional[str]
    is_confirmed: bool
    ts: Optional[int]

    @classmethod
    def from_payload(cls, payload: Any) -> "Deposit":
        data = _require(payload, "deposit")
        return cls(
            id=_str(data, "id"),
            amount=_dec(data, "amount"),
            type=_str(data, "type", None),
            tx_id=_str(data, "tx_id", None),
            is_confirmed=bool(data.get("is_confirmed", False)),
            ts=_int(data, "ts", None),
        )


@dataclass(frozen=True)
class Withdrawal:
    id: str
    amount: Decimal
    fee: Decimal
    payment_hash: Optional[str]
    success_time: Optional[int]

    @classmethod
    def from_payload(cls, payload: Any) -> "Withdrawal":
        data = _require(payload, "withdrawal")
        return cls(
            id=_str(data, "id"),
            amount=_dec(data, "amount"),
            fee=_dec(data, "fee", Decimal("0")),
            payment_hash=_str(data, "paymentHash", None),
            success_time=_int(data, "successTime", None),
        )


@dataclass(frozen=True)
class MarketSnapshot:
    """Point-in-time market view from the exchange or a fallback provider."""

    price: Optional[Decimal]
    source: str
    fetched_at: float
    change_24h_pct: Optional[Decimal] = None
    volume_24h: Optional[Decimal] = None
    high_24h: Optional[Decimal] = None
    low_24h: Optional[Decimal] = None
    degraded: bool = False
    warning: Optional[str] = None

    @classmethod
    def from_ticker(cls, ticker: Ticker, fetched_at: Optional[float] = None) -> "MarketSnapshot":
        return cls(
            price=ticker.last_price,
            source=SOURCE_EXCHANGE,
            fetched_at=time.time() if fetched_at is None else fetched_at,
        )

    @classmethod
    def unavailable(cls, warning: str = "No market data source available", fetched_at: Optional[float] = None) -> "MarketSnapshot":
        return cls(
            price=None,
            source="none",
            fetched_at=time.time() if fetched_at is None else fetched_at,
            degraded=True,
            warning=warning,
        )

    @property
    def has_price(self) -> bool:
        return self.price is not None


@dataclass
class SystemStatus:
    exchange_reachable: bool
    environment: str
    base_url: str
    checked_at: float
    latency_ms: Optional[float] = None
    error_kind: Optional[ErrorKind] = None
    breakers: Dict[str, dict] = field(default_factory=dict)
    rate_gate: dict = field(default_factory=dict)
    cache: dict = field(default_factory=dict)


@dataclass(frozen=True)
class DashboardData:
    """Account and market view fetched together; each part succeeds or fails on its own."""

    user: "Result"
    positions: "Result"
    ticker: "Result"

    @property
    def complete(self) -> bool:
        return self.user.success and self.positions.success and self.ticker.success


def _plain(value: Any) -> Any:
    if isinstance(value, Decimal):
        return str(value)
    if isinstance(value, Enum):
        return value.value
    if is_dataclass(value) and not isinstance(value, type):
        return _plain(asdict(value))
    if isinstance(value, Mapping):
        return {k: _plain(v) for k, v in value.items()}
    if isinstance(value, (list, tuple)):
        return [_plain(v) for v in value]
    return value


@dataclass(frozen=True)
class Result:
    """Outcome of a gateway operation.

    ``error`` is a stable, caller-safe message chosen by ``error_kind``; upstream
    error text never reaches it.
    """

    success: bool
    data: Any = None
    error: Optional[str] = None
    error_kind: Optional[ErrorKind] = None
    source: str = SOURCE_EXCHANGE

    @classmethod
    def ok(cls, data: Any, source: str = SOURCE_EXCHANGE) -> "Result":
        return cls(success=True, data=data, source=source)

    @classmethod
    def fail(cls, kind: ErrorKind, source: str = SOURCE_EXCHANGE) -> "Result":
        return cls(success=False, error=ERROR_MESSAGES[kind], error_kind=kind, source=source)

    def to_dict(self) -> Dict[str, Any]:
        out: Dict[str, Any] = {"success": self.success, "source": self.source}
        if self.success:
            out["data"] = _plain(self.data)
        else:
            out["error"] = self.error
            out["error_kind"] = self.error_kind.value if self.error_kind else None
        return out


__all__: List[str] = [
    "Balance",
    "DashboardData",
    "Deposit",
    "FeeTier",
    "FundingSchedule",
    "MarketInfo",
    "MarketSnapshot",
    "Position",
    "Result",
    "SystemStatus",
    "Ticker",
    "UserAccount",
    "Withdrawal",
    "parse_list",
]
