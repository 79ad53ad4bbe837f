"""Abstract interface for upstream market-data gateways."""

from __future__ import annotations

from abc import ABC, abstractmethod
from typing import Any

from .models import Credential, Funds, Profile, Quote, SessionTokens


class MarketGateway(ABC):
    """Contract for broker gateways.

    Everything downstream (chain assembler, market service, schedulers) talks
    to the broker only through this interface, so the real broker and the
    simulator are interchangeable and tests can pass a double.

    Lifecycle:
        gateway = create_market_gateway(settings, ...)
        await gateway.login(Credential("A123", "pw"))
        quotes = await gateway.get_quotes({"NSE": ["26000"]})
        # ... app shutting down ...
        await gateway.logout()
        await gateway.close()
    """

    #: Upstream limit on instruments per quote call.
    max_tokens_per_quote: int = 50

    @property
    @abstractmethod
    def authenticated(self) -> bool:
        """True while a session is held."""

    @abstractmethod
    async def login(self, credential: Credential) -> SessionTokens:
        """Open a session. Raises ``AuthenticationError`` on rejection."""

    @abstractmethod
    async def logout(self) -> None:
        """Close the session. Local session state is cleared even if the call fails."""

    @abstractmethod
    async def get_profile(self) -> Profile:
        """Profile of the logged-in client."""

    @abstractmethod
    async def get_funds(self) -> Funds:
        """Funds and margins of the logged-in client."""

    @abstractmethod
    async def get_quotes(self, exchange_tokens: dict[str, list[str]]) -> list[Quote]:
        """Full-mode quotes for ``{exchange: [token, ...]}``.

        At most ``max_tokens_per_quote`` tokens in total per call; rows the
        upstream could not fetch are simply absent from the result.
        """

    @abstractmethod
    async def fetch_instruments(self) -> list[Any]:
        """Raw scrip master rows (JSON objects). Unauthenticated."""

    async def close(self) -> None:
        """Release network resources. Safe to call multiple times."""
