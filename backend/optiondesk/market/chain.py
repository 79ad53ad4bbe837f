"""Option chain assembly: spot → ATM window → tokens → batch quotes → chain."""

from __future__ import annotations

import asyncio
import logging
import math

from ..errors import ChainAssemblyError, ScripMasterUnavailableError
from .interface import MarketGateway
from .models import OptionChain, OptionLeg, Quote, ResolvedOption, StrikeRow, TokenMap
from .resolver import TokenResolver, parse_iso_expiry, token_map_from
from .store import InstrumentStore

logger = logging.getLogger(__name__)

DERIVATIVES_EXCHANGE = "NFO"


def atm_strike(spot: float, interval: int) -> int:
    """Spot rounded half-up to the nearest strike interval."""
    return int(math.floor(spot / interval + 0.5)) * interval


def strike_window(atm: int, interval: int, count: int) -> list[int]:
    """``count`` strikes below and above ``atm``, ascending (2 * count + 1 total)."""
    return [atm + offset * interval for offset in range(-count, count + 1)]


def _batches(tokens: list[str], size: int) -> list[list[str]]:
    return [tokens[i : i + size] for i in range(0, len(tokens), size)]


class ChainAssembler:
    """Builds one OptionChain per call from a single coherent set of quotes.

    A strike with no quote row (illiquid or unlisted) gets a zero leg. A
    missing spot or an empty token set fails the whole cycle with
    ``ChainAssemblyError``.
    """

    def __init__(
        self,
        gateway: MarketGateway,
        resolver: TokenResolver,
        *,
        spot_exchange: str = "NSE",
        spot_token: str = "26000",
        strike_interval: int = 50,
        window: int = 10,
        max_tokens_per_quote: int | None = None,
        instrument_store: InstrumentStore | None = None,
    ) -> None:
        self._gateway = gateway
        self._resolver = resolver
        self._spot_exchange = spot_exchange
        self._spot_token = spot_token
        self._interval = strike_interval
        self._window = window
        self._batch_size = max_tokens_per_quote or gateway.max_tokens_per_quote
        self._store = instrument_store

    async def spot_quote(self) -> Quote:
        """Single-instrument quote of the underlying index."""
        quotes = await self._gateway.get_quotes({self._spot_exchange: [self._spot_token]})
        for quote in quotes:
            if quote.symbol_token == self._spot_token and quote.ltp > 0:
                return quote
        raise ChainAssemblyError(
            f"Cannot fetch {self._resolver.underlying} spot ({self._spot_exchange}:{self._spot_token})"
        )

    async def assemble(self, expiry: str) -> OptionChain:
        parse_iso_expiry(expiry)
        spot = (await self.spot_quote()).ltp
        atm = atm_strike(spot, self._interval)
        strikes = strike_window(atm, self._interval, self._window)

        token_map = await self._resolve(expiry, strikes)
        tokens = token_map.tokens()
        if not tokens:
            raise ChainAssemblyError(f"No tokens found for expiry {expiry}")

        quotes = await self._quote_all(tokens)
        by_token = {quote.symbol_token: quote for quote in quotes}

        def leg(token: str | None) -> OptionLeg:
            return OptionLeg.from_quote(by_token.get(token) if token else None)

        rows = tuple(
            StrikeRow(strike=s, ce=leg(token_map.ce.get(s)), pe=leg(token_map.pe.get(s)))
            for s in strikes
        )
        logger.info(
            "Assembled %s chain for %s: spot %.2f, ATM %d, %d/%d legs quoted",
            self._resolver.underlying,
            expiry,
            spot,
            atm,
            len(by_token),
            len(tokens),
        )
        return OptionChain(expiry=expiry, spot=spot, atm_strike=atm, rows=rows)

    async def _resolve(self, expiry: str, strikes: list[int]) -> TokenMap:
        try:
            options: list[ResolvedOption] = await self._resolver.resolve_options(expiry, strikes)
        except ScripMasterUnavailableError:
            if self._store is None:
                raise
            logger.warning("Scrip master unavailable, resolving %s from the instrument store", expiry)
            return self._store.token_map(expiry, strikes)
        if self._store is not None and options:
            self._store.save_options(options)
        return token_map_from(options)

    async def _quote_all(self, tokens: list[str]) -> list[Quote]:
        batches = _batches(tokens, self._batch_size)
        if len(batches) > 1:
            logger.debug("Splitting %d tokens into %d quote calls", len(tokens), len(batches))
        results = await asyncio.gather(
            *(self._gateway.get_quotes({DERIVATIVES_EXCHANGE: batch}) for batch in batches)
        )
        return [quote for batch in results for quote in batch]
