"""Simulated broker for development without Angel One credentials."""

from __future__ import annotations

import logging
import math
import random
import uuid
from dataclasses import dataclass
from datetime import date
from typing import Any

import numpy as np

from ..errors import AuthenticationError, InvalidTOTPError, ReloginRequiredError
from .chain import atm_strike
from .expiries import ist_now, monthly_expiry, weekly_expiries
from .interface import MarketGateway
from .models import Credential, Funds, Profile, Quote, SessionTokens
from .resolver import DERIVATIVES_SEGMENT, INDEX_FUTURE, INDEX_OPTION, expiry_tag
from .seed_prices import (
    CARRY_RATE,
    DEFAULT_PARAMS,
    FUTURE_TICK_PAISE,
    FUTURE_TOKEN_BASE,
    INDEX_PARAMS,
    LOT_SIZES,
    OPTION_TICK_PAISE,
    OPTION_TOKEN_BASE,
    SEED_PRICES,
    SPOT_FUTURE_CORR,
    SPOT_TOKENS,
)
from .session import OTP_FORMAT

logger = logging.getLogger(__name__)

OPTION_TICK = OPTION_TICK_PAISE / 100


class GBMSimulator:
    """Geometric Brownian Motion for an index and its front-month future.

    Math:
        S(t+dt) = S(t) * exp((mu - sigma^2/2) * dt + sigma * sqrt(dt) * Z)

    Where:
        S(t)   = current level
        mu     = annualized drift
        sigma  = annualized volatility
        dt     = time step as fraction of a trading year
        Z      = standard normal draw, correlated between spot and future

    One step stands for one 5s broadcast interval of an NSE session.
    """

    # 252 trading days * 6.25 hours/day (09:15-15:30) * 3600 seconds/hour
    TRADING_SECONDS_PER_YEAR = 252 * 6.25 * 3600  # 5,670,000
    DEFAULT_DT = 5.0 / TRADING_SECONDS_PER_YEAR  # ~8.8e-7

    def __init__(
        self,
        underlying: str,
        dt: float = DEFAULT_DT,
        event_probability: float = 0.001,
        days_to_future_expiry: int = 30,
        seed: int | None = None,
    ) -> None:
        self._dt = dt
        self._event_prob = event_probability
        self._rng = np.random.default_rng(seed)
        self._random = random.Random(seed)

        params = INDEX_PARAMS.get(underlying, DEFAULT_PARAMS)
        self._sigma = params["sigma"]
        self._mu = params["mu"]

        spot = SEED_PRICES.get(underlying, 20000.0)
        future = spot * math.exp(CARRY_RATE * max(days_to_future_expiry, 0) / 365)
        self._levels = np.array([spot, future])
        self._opens = self._levels.copy()

        corr = np.array([[1.0, SPOT_FUTURE_CORR], [SPOT_FUTURE_CORR, 1.0]])
        self._cholesky = np.linalg.cholesky(corr)

    @property
    def sigma(self) -> float:
        return self._sigma

    @property
    def spot(self) -> float:
        return round(float(self._levels[0]), 2)

    @property
    def future(self) -> float:
        return round(float(self._levels[1]), 2)

    @property
    def spot_change(self) -> float:
        """Percent change of the spot since the session open."""
        return round(float((self._levels[0] / self._opens[0] - 1) * 100), 2)

    @property
    def future_change(self) -> float:
        return round(float((self._levels[1] / self._opens[1] - 1) * 100), 2)

    def step(self) -> tuple[float, float]:
        """Advance spot and future by one time step. Returns ``(spot, future)``."""
        z = self._cholesky @ self._rng.standard_normal(2)
        drift = (self._mu - 0.5 * self._sigma**2) * self._dt
        diffusion = self._sigma * math.sqrt(self._dt) * z
        self._levels *= np.exp(drift + diffusion)

        # Random event: a 0.3-1% gap that hits spot and future alike
        if self._random.random() < self._event_prob:
            shock_magnitude = self._random.uniform(0.003, 0.01)
            shock_sign = self._random.choice([-1, 1])
            self._levels *= 1 + shock_magnitude * shock_sign
            logger.debug(
                "Random event: %.2f%% %s",
                shock_magnitude * 100,
                "up" if shock_sign > 0 else "down",
            )

        return self.spot, self.future


def option_premium(spot: float, strike: float, side: str, sigma: float, years: float) -> float:
    """Intrinsic value plus a time value that peaks at the money, on the 0.05 tick.

    Not a pricing model, only a smooth stand-in that stays positive and moves
    the right way with spot and strike.
    """
    intrinsic = max(spot - strike, 0.0) if side == "CE" else max(strike - spot, 0.0)
    spread = spot * sigma * math.sqrt(max(years, 1 / 365))
    moneyness = (strike - spot) / spread
    time_value = 0.4 * spread * math.exp(-0.5 * moneyness**2)
    ticks = max(round((intrinsic + time_value) / OPTION_TICK), 1)
    return round(ticks * OPTION_TICK, 2)


def _scrip_expiry(expiry: date) -> str:
    """``29MAY2025``, the scrip master's expiry format."""
    return expiry_tag(expiry)[:5] + str(expiry.year)


@dataclass(frozen=True, slots=True)
class _Contract:
    symbol: str
    kind: str  # "FUT", "CE" or "PE"
    expiry: date
    strike: int | None = None
    base_oi: int = 0


class SimulatedGateway(MarketGateway):
    """MarketGateway that fakes the broker end to end.

    The scrip master is generated in the broker's row format and symbol
    grammar around the seed level, so the real resolver and chain assembler
    run unchanged against it. Quotes need no login; profile and funds do.
    """

    def __init__(
        self,
        underlying: str = "NIFTY",
        *,
        spot_exchange: str = "NSE",
        spot_token: str | None = None,
        strike_interval: int = 50,
        strikes_each_side: int = 40,
        expiry_weekday: int = 3,
        expiry_count: int = 4,
        today: date | None = None,
        seed: int | None = None,
    ) -> None:
        self._underlying = underlying
        self._spot_exchange = spot_exchange
        self._spot_token = spot_token or SPOT_TOKENS.get(underlying, "26000")
        self._interval = strike_interval
        self._today = today or ist_now().date()
        self._lot_size = LOT_SIZES.get(underlying, 50)
        self._rng = np.random.default_rng(seed)

        self.option_expiries = weekly_expiries(self._today, expiry_weekday, expiry_count)
        self.future_expiry = monthly_expiry(self._today, expiry_weekday)
        self._sim = GBMSimulator(
            underlying,
            days_to_future_expiry=(self.future_expiry - self._today).days,
            seed=seed,
        )

        self._contracts: dict[str, _Contract] = {}
        self._rows = self._generate_scrip_master(strikes_each_side)
        self._open_premiums: dict[str, float] = {}

        self._tokens: SessionTokens | None = None
        self._client_code = ""
        logger.info(
            "Simulated broker ready: %s at %.2f, %d generated instruments",
            underlying,
            self._sim.spot,
            len(self._rows),
        )

    @property
    def simulator(self) -> GBMSimulator:
        return self._sim

    @property
    def authenticated(self) -> bool:
        return self._tokens is not None

    async def login(self, credential: Credential) -> SessionTokens:
        code = (credential.totp or "").strip()
        if code and not OTP_FORMAT.match(code):
            raise InvalidTOTPError("Invalid TOTP format. Please provide a 6-digit code.")
        if not credential.client_id or not credential.password:
            raise AuthenticationError("Login failed: client code and password are required")
        self._client_code = credential.client_id
        self._tokens = SessionTokens(
            jwt_token=f"sim-{uuid.uuid4().hex}",
            refresh_token=f"sim-{uuid.uuid4().hex}",
            feed_token=f"sim-{uuid.uuid4().hex}",
        )
        logger.info("Simulated login for client %s", credential.client_id)
        return self._tokens

    async def logout(self) -> None:
        self._tokens = None
        logger.info("Simulated logout")

    async def get_profile(self) -> Profile:
        self._require_session()
        return Profile(
            client_code=self._client_code,
            name="Simulated Trader",
            exchanges=("NSE", "NFO"),
            products=("MIS", "NRML"),
        )

    async def get_funds(self) -> Funds:
        self._require_session()
        return Funds(net=500000.0, available_cash=500000.0)

    async def get_quotes(self, exchange_tokens: dict[str, list[str]]) -> list[Quote]:
        total = sum(len(tokens) for tokens in exchange_tokens.values())
        if total == 0:
            return []
        if total > self.max_tokens_per_quote:
            raise ValueError(
                f"quote call limited to {self.max_tokens_per_quote} tokens, got {total}"
            )
        if self._spot_token in exchange_tokens.get(self._spot_exchange, ()):
            self._sim.step()

        quotes = []
        for exchange, tokens in exchange_tokens.items():
            for token in tokens:
                quote = self._quote(exchange, token)
                if quote is not None:
                    quotes.append(quote)
        return quotes

    async def fetch_instruments(self) -> list[Any]:
        return [dict(row) for row in self._rows]

    # --- Internals ---

    def _require_session(self) -> None:
        if self._tokens is None:
            raise ReloginRequiredError("Not logged in. Please login first.")

    def _quote(self, exchange: str, token: str) -> Quote | None:
        if exchange == self._spot_exchange and token == self._spot_token:
            return Quote(
                symbol_token=token,
                ltp=self._sim.spot,
                exchange=exchange,
                trading_symbol=self._underlying,
                percent_change=self._sim.spot_change,
            )
        contract = self._contracts.get(token)
        if exchange != DERIVATIVES_SEGMENT or contract is None:
            return None
        if contract.kind == "FUT":
            return Quote(
                symbol_token=token,
                ltp=self._sim.future,
                exchange=exchange,
                trading_symbol=contract.symbol,
                percent_change=self._sim.future_change,
                open_interest=contract.base_oi,
                volume=int(contract.base_oi * self._rng.uniform(0.2, 0.4)),
            )

        years = ((contract.expiry - self._today).days + 0.5) / 365
        ltp = option_premium(
            self._sim.spot, float(contract.strike), contract.kind, self._sim.sigma, years
        )
        opened = self._open_premiums.setdefault(token, ltp)
        oi = int(contract.base_oi * self._rng.uniform(0.95, 1.05)) // self._lot_size
        return Quote(
            symbol_token=token,
            ltp=ltp,
            exchange=exchange,
            trading_symbol=contract.symbol,
            percent_change=round((ltp / opened - 1) * 100, 2),
            open_interest=oi * self._lot_size,
            volume=int(contract.base_oi * self._rng.uniform(0.5, 3.0)),
        )

    def _generate_scrip_master(self, strikes_each_side: int) -> list[dict[str, str]]:
        """Index, front future and weekly option rows in the broker's format."""
        u = self._underlying
        rows = [
            {
                "token": self._spot_token,
                "symbol": u,
                "name": u,
                "expiry": "",
                "strike": "-1.000000",
                "lotsize": "1",
                "instrumenttype": "AMXIDX",
                "exch_seg": self._spot_exchange,
                "tick_size": "-1.000000",
            }
        ]

        fut_token = str(FUTURE_TOKEN_BASE)
        fut_symbol = f"{u}{expiry_tag(self.future_expiry)}FUT"
        self._contracts[fut_token] = _Contract(
            fut_symbol, "FUT", self.future_expiry, base_oi=120 * self._lot_size * 1000
        )
        rows.append(self._row(fut_token, fut_symbol, self.future_expiry, -1, INDEX_FUTURE))

        centre = atm_strike(self._sim.spot, self._interval)
        token = OPTION_TOKEN_BASE
        for expiry in self.option_expiries:
            tag = expiry_tag(expiry)
            for offset in range(-strikes_each_side, strikes_each_side + 1):
                strike = centre + offset * self._interval
                # Open interest clusters around the money
                base_oi = int(
                    self._lot_size * 40000 * math.exp(-0.5 * (offset / 8) ** 2)
                    + self._lot_size * 500
                )
                for side in ("CE", "PE"):
                    symbol = f"{u}{tag}{strike}{side}"
                    self._contracts[str(token)] = _Contract(symbol, side, expiry, strike, base_oi)
                    rows.append(self._row(str(token), symbol, expiry, strike, INDEX_OPTION))
                    token += 1
        return rows

    def _row(
        self, token: str, symbol: str, expiry: date, strike: int, instrument_type: str
    ) -> dict[str, str]:
        tick = FUTURE_TICK_PAISE if instrument_type == INDEX_FUTURE else OPTION_TICK_PAISE
        return {
            "token": token,
            "symbol": symbol,
            "name": self._underlying,
            "expiry": _scrip_expiry(expiry),
            # The scrip master publishes strikes in paise
            "strike": f"{strike * 100 if strike >= 0 else -1:.6f}",
            "lotsize": str(self._lot_size),
            "instrumenttype": instrument_type,
            "exch_seg": DERIVATIVES_SEGMENT,
            "tick_size": f"{tick:.6f}",
        }
