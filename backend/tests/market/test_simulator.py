"""Tests for the simulated broker."""

from datetime import date

import pytest

from optiondesk.errors import AuthenticationError, InvalidTOTPError, ReloginRequiredError
from optiondesk.market.chain import ChainAssembler
from optiondesk.market.models import Credential
from optiondesk.market.resolver import TokenResolver, front_future
from optiondesk.market.scrip_master import ScripMasterCache, ScripMasterSnapshot
from optiondesk.market.seed_prices import SEED_PRICES
from optiondesk.market.simulator import GBMSimulator, SimulatedGateway, option_premium

TODAY = date(2025, 5, 19)  # a Monday


class TestGBMSimulator:
    """Unit tests for the GBM level simulator."""

    def test_initial_spot_matches_seed(self):
        sim = GBMSimulator("NIFTY", seed=1)
        assert sim.spot == SEED_PRICES["NIFTY"]
        assert sim.spot_change == 0.0

    def test_future_trades_at_premium(self):
        sim = GBMSimulator("NIFTY", days_to_future_expiry=30, seed=1)
        assert sim.future > sim.spot

    def test_levels_stay_positive(self):
        sim = GBMSimulator("NIFTY", seed=7)
        for _ in range(5_000):
            spot, future = sim.step()
            assert spot > 0
            assert future > 0

    def test_moves_are_small_per_step(self):
        sim = GBMSimulator("NIFTY", event_probability=0.0, seed=3)
        before = sim.spot
        spot, _ = sim.step()
        assert abs(spot / before - 1) < 0.01

    def test_seeded_runs_repeat(self):
        a = GBMSimulator("NIFTY", seed=42)
        b = GBMSimulator("NIFTY", seed=42)
        assert [a.step() for _ in range(10)] == [b.step() for _ in range(10)]

    def test_unknown_underlying_uses_defaults(self):
        sim = GBMSimulator("MIDCPNIFTY", seed=1)
        assert sim.spot > 0
        assert sim.sigma == 0.15


class TestOptionPremium:
    def test_on_tick_and_positive(self):
        for strike in range(24000, 26000, 50):
            for side in ("CE", "PE"):
                premium = option_premium(24944.0, strike, side, 0.13, 7 / 365)
                assert premium >= 0.05
                assert round(premium / 0.05, 6) == round(premium / 0.05)

    def test_calls_fall_and_puts_rise_with_strike(self):
        calls = [option_premium(24944.0, k, "CE", 0.13, 7 / 365) for k in range(24500, 25450, 50)]
        puts = [option_premium(24944.0, k, "PE", 0.13, 7 / 365) for k in range(24500, 25450, 50)]
        assert calls == sorted(calls, reverse=True)
        assert puts == sorted(puts)

    def test_deep_in_the_money_near_intrinsic(self):
        premium = option_premium(24944.0, 23000, "CE", 0.13, 7 / 365)
        assert premium == pytest.approx(1944.0, abs=1.0)


@pytest.mark.asyncio
class TestSimulatedGateway:
    """The gateway runs the real resolver and assembler unchanged."""

    async def test_scrip_master_in_broker_format(self):
        gateway = SimulatedGateway(today=TODAY, seed=1)
        rows = await gateway.fetch_instruments()
        snapshot = ScripMasterSnapshot.from_rows(rows)
        assert snapshot.skipped == 0
        assert snapshot.expiries("NFO", "OPTIDX", "NIFTY") == gateway.option_expiries
        assert gateway.option_expiries[0] == date(2025, 5, 22)

        future = front_future(snapshot, "NIFTY", TODAY)
        assert future is not None
        assert future.expiry == date(2025, 5, 29)
        assert future.symbol == "NIFTY29MAY25FUT"

    async def test_spot_quote(self):
        gateway = SimulatedGateway(today=TODAY, seed=1)
        quotes = await gateway.get_quotes({"NSE": ["26000"]})
        assert len(quotes) == 1
        assert quotes[0].symbol_token == "26000"
        assert quotes[0].ltp > 0

    async def test_unknown_tokens_absent(self):
        gateway = SimulatedGateway(today=TODAY, seed=1)
        assert await gateway.get_quotes({"NFO": ["999999"], "BSE": ["26000"]}) == []

    async def test_quote_limit(self):
        gateway = SimulatedGateway(today=TODAY, seed=1)
        with pytest.raises(ValueError):
            await gateway.get_quotes({"NFO": [str(i) for i in range(51)]})

    async def test_assembles_full_chain(self):
        gateway = SimulatedGateway(today=TODAY, seed=1)
        resolver = TokenResolver(ScripMasterCache(gateway.fetch_instruments), "NIFTY")
        chain = await ChainAssembler(gateway, resolver).assemble("2025-05-22")

        assert len(chain.rows) == 21
        assert chain.strikes[10] == chain.atm_strike
        assert all(row.ce.last_traded_price > 0 for row in chain.rows)
        assert all(row.pe.last_traded_price > 0 for row in chain.rows)
        assert all(row.ce.open_interest % 75 == 0 for row in chain.rows)

    async def test_login_validates_code_format(self):
        gateway = SimulatedGateway(today=TODAY, seed=1)
        with pytest.raises(InvalidTOTPError):
            await gateway.login(Credential("SIM1", "pw", "abc"))
        with pytest.raises(AuthenticationError):
            await gateway.login(Credential("SIM1", ""))
        assert not gateway.authenticated

    async def test_account_requires_login(self):
        gateway = SimulatedGateway(today=TODAY, seed=1)
        with pytest.raises(ReloginRequiredError):
            await gateway.get_profile()

        await gateway.login(Credential("SIM1", "pw", "123456"))
        profile = await gateway.get_profile()
        funds = await gateway.get_funds()
        assert profile.client_code == "SIM1"
        assert funds.available_cash > 0

        await gateway.logout()
        assert not gateway.authenticated
