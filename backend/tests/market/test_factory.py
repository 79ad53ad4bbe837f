"""Tests for market gateway factory."""

import os
from unittest.mock import patch

import pytest

from optiondesk.config import Settings
from optiondesk.market.angel_client import AngelOneGateway
from optiondesk.market.factory import create_market_gateway
from optiondesk.market.simulator import SimulatedGateway
from optiondesk.market.store import KeyValueStore


@pytest.mark.asyncio
class TestFactory:
    """Tests for create_market_gateway factory."""

    async def test_creates_simulator_when_no_api_key(self):
        """Test that the simulator is used when ANGEL_API_KEY is not set."""
        with patch.dict(os.environ, {}, clear=True):
            gateway = create_market_gateway(Settings.from_env())

        assert isinstance(gateway, SimulatedGateway)

    async def test_creates_simulator_when_api_key_whitespace(self):
        """Test that a whitespace-only ANGEL_API_KEY counts as unset."""
        with patch.dict(os.environ, {"ANGEL_API_KEY": "   "}, clear=True):
            gateway = create_market_gateway(Settings.from_env())

        assert isinstance(gateway, SimulatedGateway)

    async def test_creates_angel_gateway_when_api_key_set(self, db):
        """Test that Angel One is used when ANGEL_API_KEY is set."""
        env = {"ANGEL_API_KEY": "test-key", "ANGEL_CLIENT_CODE": "A123"}
        with patch.dict(os.environ, env, clear=True):
            gateway = create_market_gateway(Settings.from_env(), KeyValueStore(db))

        assert isinstance(gateway, AngelOneGateway)
        assert gateway.session._api_key == "test-key"
        assert gateway.session._store is not None
        await gateway.close()

    async def test_simulator_follows_settings(self):
        """Test that the simulator quotes the configured spot token."""
        settings = Settings(underlying="BANKNIFTY", spot_token="26009", strike_interval=100)
        gateway = create_market_gateway(settings)

        quotes = await gateway.get_quotes({"NSE": ["26009"]})
        assert quotes[0].trading_symbol == "BANKNIFTY"


class TestSettings:
    """Environment parsing."""

    def test_defaults(self):
        settings = Settings.from_env({})
        assert settings.simulated
        assert settings.underlying == "NIFTY"
        assert settings.strike_interval == 50
        assert settings.strike_window == 10
        assert settings.token_ttl == 28 * 60 * 60
        assert settings.market_interval == 5.0
        assert settings.client_idle_timeout == 0.0

    def test_overrides(self):
        settings = Settings.from_env(
            {
                "ANGEL_API_KEY": " key ",
                "OPTIONDESK_UNDERLYING": "banknifty",
                "OPTIONDESK_STRIKE_INTERVAL": "100",
                "OPTIONDESK_MARKET_INTERVAL": "2.5",
                "PORT": "8080",
            }
        )
        assert not settings.simulated
        assert settings.angel_api_key == "key"
        assert settings.underlying == "BANKNIFTY"
        assert settings.strike_interval == 100
        assert settings.market_interval == 2.5
        assert settings.port == 8080

    def test_bad_number(self):
        with pytest.raises(ValueError, match="OPTIONDESK_STRIKE_WINDOW"):
            Settings.from_env({"OPTIONDESK_STRIKE_WINDOW": "ten"})
