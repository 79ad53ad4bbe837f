"""Factory for creating market gateways."""

from __future__ import annotations

import logging

from ..config import Settings
from ..logging_config import mask
from .interface import MarketGateway
from .store import KeyValueStore

logger = logging.getLogger(__name__)


def create_market_gateway(
    settings: Settings, token_store: KeyValueStore | None = None
) -> MarketGateway:
    """Create the appropriate gateway for the configured credentials.

    - ANGEL_API_KEY set and non-empty → AngelOneGateway (real market data)
    - Otherwise → SimulatedGateway (GBM simulation, generated scrip master)

    ``token_store`` lets a real session survive a restart.
    """
    if not settings.simulated:
        from .angel_client import AngelOneGateway
        from .session import SessionManager, create_broker_http_client

        logger.info("Market gateway: Angel One SmartAPI (api key %s)", mask(settings.angel_api_key))
        http = create_broker_http_client(settings.base_url, settings.http_timeout)
        session = SessionManager(
            http,
            api_key=settings.angel_api_key,
            client_code=settings.angel_client_code,
            totp_secret=settings.totp_secret,
            token_store=token_store,
            token_ttl=settings.token_ttl,
            max_refresh_attempts=settings.max_refresh_attempts,
            timeout=settings.http_timeout,
        )
        return AngelOneGateway(
            session,
            http,
            scrip_master_url=settings.scrip_master_url,
            scrip_master_timeout=settings.scrip_master_timeout,
        )
    else:
        from .simulator import SimulatedGateway

        logger.info("Market gateway: simulator (ANGEL_API_KEY not set)")
        return SimulatedGateway(
            settings.underlying,
            spot_exchange=settings.spot_exchange,
            spot_token=settings.spot_token,
            strike_interval=settings.strike_interval,
            expiry_weekday=settings.expiry_weekday,
        )
