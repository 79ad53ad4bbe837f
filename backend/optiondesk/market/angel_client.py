"""Angel One SmartAPI gateway for real market data."""

from __future__ import annotations

import logging
from typing import Any

import httpx

from .interface import MarketGateway
from .models import Credential, Funds, Profile, Quote, SessionTokens, decode_quote_batch
from .scrip_master import download_scrip_master
from .session import SessionManager

logger = logging.getLogger(__name__)

PROFILE_PATH = "/rest/secure/angelbroking/user/v1/getProfile"
RMS_PATH = "/rest/secure/angelbroking/user/v1/getRMS"
QUOTE_PATH = "/rest/secure/angelbroking/market/v1/quote/"


class AngelOneGateway(MarketGateway):
    """MarketGateway backed by the Angel One REST API.

    All authenticated calls go through the SessionManager, which signs them
    and transparently refreshes an expired token once per call. The scrip
    master is downloaded separately from a public URL.

    Quote calls:
      - POST /market/v1/quote/ with ``{"mode": "FULL", "exchangeTokens": {...}}``
      - At most 50 tokens per call
    """

    max_tokens_per_quote = 50

    def __init__(
        self,
        session: SessionManager,
        http: httpx.AsyncClient,
        scrip_master_url: str,
        scrip_master_timeout: float = 20.0,
    ) -> None:
        self._session = session
        self._http = http
        self._scrip_master_url = scrip_master_url
        self._scrip_master_timeout = scrip_master_timeout
        self._closed = False

    @property
    def session(self) -> SessionManager:
        return self._session

    @property
    def authenticated(self) -> bool:
        return self._session.authenticated

    async def login(self, credential: Credential) -> SessionTokens:
        return await self._session.login(credential)

    async def logout(self) -> None:
        await self._session.logout()

    async def get_profile(self) -> Profile:
        data = await self._session.authorized_request("GET", PROFILE_PATH, what="profile")
        return Profile.from_payload(data)

    async def get_funds(self) -> Funds:
        data = await self._session.authorized_request("GET", RMS_PATH, what="funds")
        return Funds.from_payload(data)

    async def get_quotes(self, exchange_tokens: dict[str, list[str]]) -> list[Quote]:
        total = sum(len(tokens) for tokens in exchange_tokens.values())
        if total == 0:
            return []
        if total > self.max_tokens_per_quote:
            raise ValueError(
                f"quote call limited to {self.max_tokens_per_quote} tokens, got {total}"
            )
        what = "quote " + ",".join(
            f"{exchange}[{len(tokens)}]" for exchange, tokens in exchange_tokens.items()
        )
        data = await self._session.authorized_request(
            "POST",
            QUOTE_PATH,
            {"mode": "FULL", "exchangeTokens": exchange_tokens},
            what=what,
        )
        quotes = decode_quote_batch(data, what)
        logger.debug("%s: %d/%d rows fetched", what, len(quotes), total)
        return quotes

    async def fetch_instruments(self) -> list[Any]:
        return await download_scrip_master(
            self._http, self._scrip_master_url, timeout=self._scrip_master_timeout
        )

    async def close(self) -> None:
        if self._closed:
            return
        self._closed = True
        await self._http.aclose()
        logger.info("Angel One gateway closed")
