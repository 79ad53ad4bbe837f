"""Downstream operations shared by the REST routes, the socket and the schedulers."""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Iterable
from datetime import date, datetime

from ..config import Settings
from ..errors import ChainAssemblyError, OptionDeskError, ScripMasterUnavailableError
from .broadcast import Event
from .cache import TTLCache
from .chain import ChainAssembler
from .expiries import expiry_option, ist_now, market_open, weekly_expiries
from .interface import MarketGateway
from .models import Credential, MarketSnapshot, OptionChain
from .resolver import DERIVATIVES_SEGMENT, TokenResolver, parse_iso_expiry
from .scrip_master import ScripMasterCache

logger = logging.getLogger(__name__)

SNAPSHOT_KEY = "market:snapshot"
SESSION_KEY = "session:client"
EXPIRY_COUNT = 4


def chain_topic(underlying: str, expiry: str) -> str:
    """Subscription topic of one expiry's chain: ``NIFTY:2025-05-22``."""
    return f"{underlying}:{expiry}"


def chain_key(expiry: str) -> str:
    return f"chain:{expiry}"


class MarketService:
    """Everything a viewer can ask for, on top of the gateway and the assembler.

    Chains and the latest market snapshot are kept in the TTL cache for one
    broadcast interval, so a burst of on-demand requests costs one upstream
    round. The schedulers always fetch fresh and refill the cache.
    """

    def __init__(
        self,
        gateway: MarketGateway,
        assembler: ChainAssembler,
        resolver: TokenResolver,
        cache: TTLCache,
        settings: Settings,
        scrip_master: ScripMasterCache | None = None,
    ) -> None:
        self._gateway = gateway
        self._assembler = assembler
        self._resolver = resolver
        self._cache = cache
        self._settings = settings
        self._scrip_master = scrip_master

    @property
    def underlying(self) -> str:
        return self._settings.underlying

    # --- Account ---

    async def login(self, credential: Credential) -> dict:
        await self._gateway.login(credential)
        self._cache.set(SESSION_KEY, credential.client_id, ttl=self._settings.token_ttl)
        return {"clientCode": credential.client_id, "authenticated": True}

    async def logout(self) -> None:
        try:
            await self._gateway.logout()
        finally:
            self._cache.delete(SESSION_KEY)

    async def get_dashboard(self) -> dict:
        profile, funds = await asyncio.gather(self._gateway.get_profile(), self._gateway.get_funds())
        return {"profile": profile.to_dict(), "funds": funds.to_dict()}

    # --- Market data ---

    async def get_options_chain(self, expiry: str, refresh: bool = False) -> OptionChain:
        parse_iso_expiry(expiry)
        key = chain_key(expiry)
        if not refresh:
            cached = self._cache.get(key)
            if cached is not None:
                return cached
        chain = await self._assembler.assemble(expiry)
        self._cache.set(key, chain, ttl=self._settings.chain_interval)
        return chain

    async def get_market_snapshot(self, refresh: bool = False) -> MarketSnapshot:
        """Spot with its percent change and the front-month future, from one quote call."""
        if not refresh:
            cached = self._cache.get(SNAPSHOT_KEY)
            if cached is not None:
                return cached

        spot_exchange = self._settings.spot_exchange
        spot_token = self._settings.spot_token
        request = {spot_exchange: [spot_token]}
        future_token = await self._front_future_token()
        if future_token is not None:
            request.setdefault(DERIVATIVES_SEGMENT, []).append(future_token)

        quotes = {
            (q.exchange or spot_exchange, q.symbol_token): q
            for q in await self._gateway.get_quotes(request)
        }
        spot = quotes.get((spot_exchange, spot_token))
        if spot is None or spot.ltp <= 0:
            raise ChainAssemblyError(
                f"Cannot fetch {self.underlying} spot ({spot_exchange}:{spot_token})"
            )
        future = quotes.get((DERIVATIVES_SEGMENT, future_token)) if future_token else None

        snapshot = MarketSnapshot(
            underlying=self.underlying,
            spot=spot.ltp,
            spot_change=spot.percent_change,
            future=future.ltp if future is not None else 0.0,
        )
        self._cache.set(SNAPSHOT_KEY, snapshot, ttl=self._settings.market_interval)
        return snapshot

    def latest_snapshot(self) -> MarketSnapshot | None:
        """Last snapshot still inside its interval, without any upstream call."""
        return self._cache.get(SNAPSHOT_KEY)

    async def get_expiry_dates(self, today: date | None = None) -> list[dict]:
        """The next four expiries: listed ones when the scrip master is loaded, else weekly."""
        today = today or ist_now().date()
        try:
            listed = await self._resolver.expiries(today)
        except ScripMasterUnavailableError as e:
            logger.warning("Expiry dates from calendar, scrip master unavailable: %s", e)
            listed = []
        dates = listed[:EXPIRY_COUNT] or weekly_expiries(
            today, self._settings.expiry_weekday, EXPIRY_COUNT
        )
        return [expiry_option(d) for d in dates]

    def system_status(self, now: datetime | None = None) -> dict:
        now = now or ist_now()
        snapshot = self._scrip_master.snapshot if self._scrip_master else None
        return {
            "marketOpen": market_open(now),
            "serverTime": now.isoformat(),
            "underlying": self.underlying,
            "authenticated": self._gateway.authenticated,
            "clientCode": self._cache.get(SESSION_KEY),
            "simulated": self._settings.simulated,
            "scripMaster": {
                "loaded": snapshot is not None,
                "fresh": bool(self._scrip_master and self._scrip_master.is_fresh()),
                "instruments": len(snapshot) if snapshot is not None else 0,
            },
        }

    # --- Broadcast producers ---

    async def market_events(self, topics: set[str]) -> list[Event]:
        snapshot = await self.get_market_snapshot(refresh=True)
        # Untopical: reaches every connection whatever it subscribed to
        return [Event("market_update", snapshot.to_dict())]

    async def chain_events(self, topics: set[str]) -> list[Event]:
        """One ``options_data`` event per expiry some connection subscribed to."""
        events = []
        for expiry in self.subscribed_expiries(topics):
            try:
                chain = await self.get_options_chain(expiry, refresh=True)
            except OptionDeskError as e:
                logger.error("Chain for %s skipped this cycle: %s", expiry, e)
                continue
            events.append(
                Event(
                    "options_data",
                    chain.to_dict(),
                    topic=chain_topic(self.underlying, expiry),
                    requires_subscription=True,
                )
            )
        return events

    def subscribed_expiries(self, topics: Iterable[str]) -> list[str]:
        prefix = chain_topic(self.underlying, "")
        return sorted({t[len(prefix) :] for t in topics if t.startswith(prefix) and t != prefix})

    async def _front_future_token(self) -> str | None:
        try:
            record = await self._resolver.front_future(ist_now().date())
        except ScripMasterUnavailableError as e:
            logger.warning("Front-month future unknown, scrip master unavailable: %s", e)
            return None
        return record.token if record is not None else None
