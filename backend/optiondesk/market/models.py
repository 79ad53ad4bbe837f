"""Data models for broker payloads, instruments and option chains.

Upstream shapes are decoded through ``from_payload`` classmethods: a missing
or malformed field raises ``BrokerDecodeError`` at the boundary instead of
leaking ``None`` into the chain.
"""

from __future__ import annotations

import time
from dataclasses import dataclass, field
from datetime import date, datetime
from typing import Any

from ..errors import BrokerDecodeError

# --- Decoding helpers ---


def _require_mapping(payload: Any, what: str) -> dict[str, Any]:
    if not isinstance(payload, dict):
        raise BrokerDecodeError(what, f"expected an object, got {type(payload).__name__}")
    return payload


def _string(payload: dict[str, Any], key: str, what: str, default: str | None = None) -> str:
    value = payload.get(key)
    if value is None:
        if default is not None:
            return default
        raise BrokerDecodeError(what, f"missing field {key!r}")
    if isinstance(value, (int, float)) and not isinstance(value, bool):
        return str(value)
    if not isinstance(value, str):
        raise BrokerDecodeError(what, f"field {key!r} is not a string")
    return value


def _number(
    payload: dict[str, Any], key: str, what: str, default: float | None = None
) -> float:
    value = payload.get(key)
    if value is None or value == "":
        if default is not None:
            return default
        raise BrokerDecodeError(what, f"missing field {key!r}")
    if isinstance(value, bool):
        raise BrokerDecodeError(what, f"field {key!r} is not numeric")
    if isinstance(value, (int, float)):
        return float(value)
    if isinstance(value, str):
        try:
            return float(value)
        except ValueError:
            pass
    raise BrokerDecodeError(what, f"field {key!r} is not numeric: {value!r}")


def parse_expiry(raw: str) -> date | None:
    """Parse a scrip master expiry (``29MAY2025``) or an ISO date. Empty → None."""
    raw = raw.strip()
    if not raw:
        return None
    for fmt in ("%d%b%Y", "%Y-%m-%d"):
        try:
            return datetime.strptime(raw, fmt).date()
        except ValueError:
            continue
    return None


# --- Session ---


@dataclass(frozen=True, slots=True)
class Credential:
    """Login input. Never persisted."""

    client_id: str
    password: str = field(repr=False)
    totp: str | None = field(default=None, repr=False)


@dataclass(frozen=True, slots=True)
class SessionTokens:
    """The broker token set. Replaced wholesale on refresh."""

    jwt_token: str = field(repr=False)
    refresh_token: str = field(repr=False)
    feed_token: str = field(repr=False)

    @classmethod
    def from_payload(cls, payload: Any, what: str = "tokens") -> SessionTokens:
        data = _require_mapping(payload, what)
        jwt = _string(data, "jwtToken", what)
        # Some login responses carry the scheme inside the token
        if jwt.startswith("Bearer "):
            jwt = jwt[len("Bearer ") :]
        tokens = cls(
            jwt_token=jwt,
            refresh_token=_string(data, "refreshToken", what),
            feed_token=_string(data, "feedToken", what, default=""),
        )
        if not tokens.jwt_token or not tokens.refresh_token:
            raise BrokerDecodeError(what, "empty jwtToken or refreshToken")
        return tokens

    def to_dict(self) -> dict:
        return {
            "jwtToken": self.jwt_token,
            "refreshToken": self.refresh_token,
            "feedToken": self.feed_token,
        }


@dataclass(frozen=True, slots=True)
class Profile:
    client_code: str
    name: str
    email: str = ""
    mobile: str = ""
    exchanges: tuple[str, ...] = ()
    products: tuple[str, ...] = ()

    @classmethod
    def from_payload(cls, payload: Any, what: str = "profile") -> Profile:
        data = _require_mapping(payload, what)
        return cls(
            client_code=_string(data, "clientcode", what),
            name=_string(data, "name", what),
            email=_string(data, "email", what, default=""),
            mobile=_string(data, "mobileno", what, default=""),
            exchanges=tuple(str(x) for x in data.get("exchanges") or ()),
            products=tuple(str(x) for x in data.get("products") or ()),
        )

    def to_dict(self) -> dict:
        return {
            "clientCode": self.client_code,
            "name": self.name,
            "email": self.email,
            "mobile": self.mobile,
            "exchanges": list(self.exchanges),
            "products": list(self.products),
        }


@dataclass(frozen=True, slots=True)
class Funds:
    net: float
    available_cash: float
    utilised_debits: float = 0.0
    collateral: float = 0.0
    m2m_unrealized: float = 0.0
    m2m_realized: float = 0.0

    @classmethod
    def from_payload(cls, payload: Any, what: str = "funds") -> Funds:
        data = _require_mapping(payload, what)
        return cls(
            net=_number(data, "net", what),
            available_cash=_number(data, "availablecash", what),
            utilised_debits=_number(data, "utiliseddebits", what, default=0.0),
            collateral=_number(data, "collateral", what, default=0.0),
            m2m_unrealized=_number(data, "m2munrealized", what, default=0.0),
            m2m_realized=_number(data, "m2mrealized", what, default=0.0),
        )

    def to_dict(self) -> dict:
        return {
            "net": self.net,
            "availableCash": self.available_cash,
            "utilisedDebits": self.utilised_debits,
            "collateral": self.collateral,
            "m2mUnrealized": self.m2m_unrealized,
            "m2mRealized": self.m2m_realized,
        }


# --- Instruments ---


@dataclass(frozen=True, slots=True)
class InstrumentRecord:
    """One scrip master row. ``strike`` and ``tick_size`` are as published."""

    token: str
    symbol: str
    name: str
    expiry: date | None
    strike: float | None
    exch_seg: str
    instrument_type: str
    lot_size: int = 1
    tick_size: float = 0.0

    @classmethod
    def from_payload(cls, payload: Any, what: str = "scrip master row") -> InstrumentRecord:
        data = _require_mapping(payload, what)
        strike = _number(data, "strike", what, default=-1.0)
        return cls(
            token=_string(data, "token", what),
            symbol=_string(data, "symbol", what),
            name=_string(data, "name", what, default=""),
            expiry=parse_expiry(_string(data, "expiry", what, default="")),
            strike=None if strike < 0 else strike,
            exch_seg=_string(data, "exch_seg", what),
            instrument_type=_string(data, "instrumenttype", what, default=""),
            lot_size=int(_number(data, "lotsize", what, default=1.0)),
            tick_size=_number(data, "tick_size", what, default=0.0),
        )


@dataclass(frozen=True, slots=True)
class ResolvedOption:
    """An option contract matched to a requested strike."""

    token: str
    symbol: str
    strike: int
    side: str  # "CE" or "PE"
    expiry: str  # ISO date
    lot_size: int
    tick_size: float

    def to_dict(self) -> dict:
        return {
            "token": self.token,
            "symbol": self.symbol,
            "strike": self.strike,
            "optType": self.side,
            "expiry": self.expiry,
            "lotSize": self.lot_size,
            "tickSize": self.tick_size,
        }


@dataclass(frozen=True, slots=True)
class TokenMap:
    """Strike → token for each side. A missing strike means no instrument."""

    ce: dict[int, str] = field(default_factory=dict)
    pe: dict[int, str] = field(default_factory=dict)

    def tokens(self) -> list[str]:
        return [*self.ce.values(), *self.pe.values()]

    def __len__(self) -> int:
        return len(self.ce) + len(self.pe)


# --- Quotes and chains ---


@dataclass(frozen=True, slots=True)
class Quote:
    """One row of a batch quote response."""

    symbol_token: str
    ltp: float
    exchange: str = ""
    trading_symbol: str = ""
    percent_change: float = 0.0
    open_interest: int = 0
    volume: int = 0

    @classmethod
    def from_payload(cls, payload: Any, what: str = "quote") -> Quote:
        data = _require_mapping(payload, what)
        return cls(
            symbol_token=_string(data, "symbolToken", what),
            ltp=_number(data, "ltp", what),
            exchange=_string(data, "exchange", what, default=""),
            trading_symbol=_string(data, "tradingSymbol", what, default=""),
            percent_change=_number(data, "percentChange", what, default=0.0),
            open_interest=int(_number(data, "opnInterest", what, default=0.0)),
            volume=int(_number(data, "tradeVolume", what, default=0.0)),
        )


def decode_quote_batch(payload: Any, what: str = "quote") -> list[Quote]:
    """Decode the ``data`` object of a quote response (``fetched`` rows)."""
    data = _require_mapping(payload, what)
    fetched = data.get("fetched")
    if fetched is None:
        return []
    if not isinstance(fetched, list):
        raise BrokerDecodeError(what, "field 'fetched' is not a list")
    return [Quote.from_payload(row, what) for row in fetched]


@dataclass(frozen=True, slots=True)
class OptionLeg:
    open_interest: int = 0
    volume: int = 0
    last_traded_price: float = 0.0
    percent_change: str = "0"

    @classmethod
    def from_quote(cls, quote: Quote | None) -> OptionLeg:
        """Leg for a quote row; a zero leg when the strike had no quote."""
        if quote is None:
            return cls()
        return cls(
            open_interest=quote.open_interest,
            volume=quote.volume,
            last_traded_price=quote.ltp,
            percent_change=f"{quote.percent_change:.2f}",
        )

    def to_dict(self) -> dict:
        return {
            "oi": self.open_interest,
            "volume": self.volume,
            "ltp": self.last_traded_price,
            "change": self.percent_change,
        }


@dataclass(frozen=True, slots=True)
class StrikeRow:
    strike: int
    ce: OptionLeg
    pe: OptionLeg

    def to_dict(self) -> dict:
        return {"strike": self.strike, "ce": self.ce.to_dict(), "pe": self.pe.to_dict()}


@dataclass(frozen=True, slots=True)
class OptionChain:
    """One assembly cycle's chain. Strikes ascending; superseded, never patched."""

    expiry: str
    spot: float
    atm_strike: int
    rows: tuple[StrikeRow, ...]
    timestamp: float = field(default_factory=time.time)

    @property
    def strikes(self) -> list[int]:
        return [row.strike for row in self.rows]

    def to_dict(self) -> dict:
        return {
            "expiry": self.expiry,
            "spot": self.spot,
            "atmStrike": self.atm_strike,
            "timestamp": self.timestamp,
            "data": [row.to_dict() for row in self.rows],
        }


@dataclass(frozen=True, slots=True)
class MarketSnapshot:
    """Spot and front-month future for the underlying.

    ``pcr_ratio`` and ``iv_index`` are not computed and stay ``None``.
    """

    underlying: str
    spot: float
    spot_change: float
    future: float
    timestamp: float = field(default_factory=time.time)
    pcr_ratio: float | None = None
    iv_index: float | None = None

    def to_dict(self) -> dict:
        return {
            "underlying": self.underlying,
            "spot": self.spot,
            "spotChange": self.spot_change,
            "future": self.future,
            "pcrRatio": self.pcr_ratio,
            "ivIndex": self.iv_index,
            "timestamp": datetime.fromtimestamp(self.timestamp).astimezone().isoformat(),
        }
