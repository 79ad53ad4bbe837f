"""Tests for strike → token resolution."""

from datetime import date

import pytest
from fakes import EXPIRY, chain_rows, future_row, option_row, option_token

from optiondesk.errors import InvalidExpiryError
from optiondesk.market.resolver import (
    TokenResolver,
    build_token_map,
    expiry_tag,
    front_future,
    parse_iso_expiry,
    resolve_options,
)
from optiondesk.market.scrip_master import ScripMasterCache, ScripMasterSnapshot

STRIKES = [24900, 24950, 25000]


def _snapshot(rows=None) -> ScripMasterSnapshot:
    rows = chain_rows(STRIKES) if rows is None else rows
    return ScripMasterSnapshot.from_rows(rows)


class TestExpiryStrings:
    def test_expiry_tag(self):
        assert expiry_tag(date(2025, 5, 22)) == "22MAY25"
        assert expiry_tag(date(2026, 1, 6)) == "06JAN26"

    def test_parse_iso_expiry(self):
        assert parse_iso_expiry("2025-05-22") == EXPIRY

    @pytest.mark.parametrize("bad", ["22-05-2025", "22MAY2025", "", "2025-13-01"])
    def test_rejects_non_iso(self, bad):
        with pytest.raises(InvalidExpiryError):
            parse_iso_expiry(bad)

    def test_invalid_expiry_is_a_value_error(self):
        with pytest.raises(ValueError):
            parse_iso_expiry("tomorrow")


class TestBuildTokenMap:
    """The pure resolution function."""

    def test_maps_requested_strikes(self):
        token_map = build_token_map(_snapshot(), "NIFTY", "2025-05-22", [24950, 25000])
        assert token_map.ce == {
            24950: option_token(24950, "CE"),
            25000: option_token(25000, "CE"),
        }
        assert token_map.pe == {
            24950: option_token(24950, "PE"),
            25000: option_token(25000, "PE"),
        }

    def test_keys_are_subset_of_requested(self):
        requested = [24850, 24900, 25050]
        token_map = build_token_map(_snapshot(), "NIFTY", "2025-05-22", requested)
        assert set(token_map.ce) <= set(requested)
        assert set(token_map.pe) <= set(requested)
        assert set(token_map.ce) == {24900}

    def test_other_underlyings_and_expiries_ignored(self):
        rows = chain_rows([24950])
        rows += chain_rows([24950], name="FINNIFTY")
        rows += chain_rows([24950], expiry=date(2025, 5, 29))
        rows.append(future_row("52000", EXPIRY))
        options = resolve_options(_snapshot(rows), "NIFTY", "2025-05-22", [24950])
        assert [(o.strike, o.side) for o in options] == [(24950, "CE"), (24950, "PE")]
        assert all(o.symbol.startswith("NIFTY22MAY25") for o in options)

    def test_malformed_symbols_skipped(self):
        rows = [
            option_row(24950, "CE"),
            option_row(25000, "CE", symbol="NIFTY22MAY2525000XX"),
            # Expiry field says 22 May but the symbol carries another date
            option_row(25050, "CE", symbol="NIFTY29MAY2525050CE"),
            option_row(25100, "PE", symbol="NIFTY22MAY25PE"),
        ]
        token_map = build_token_map(
            _snapshot(rows), "NIFTY", "2025-05-22", [24950, 25000, 25050, 25100]
        )
        assert token_map.ce == {24950: option_token(24950, "CE")}
        assert token_map.pe == {}

    def test_result_does_not_depend_on_row_order(self):
        rows = chain_rows(STRIKES)
        forward = resolve_options(_snapshot(rows), "NIFTY", "2025-05-22", STRIKES)
        backward = resolve_options(_snapshot(rows[::-1]), "NIFTY", "2025-05-22", STRIKES)
        assert forward == backward
        assert [o.strike for o in forward] == [24900, 24900, 24950, 24950, 25000, 25000]

    def test_unknown_expiry_gives_empty_map(self):
        token_map = build_token_map(_snapshot(), "NIFTY", "2030-01-03", STRIKES)
        assert len(token_map) == 0


class TestFrontFuture:
    def test_nearest_unexpired_future(self):
        rows = [
            future_row("51000", date(2025, 4, 24)),
            future_row("52000", date(2025, 5, 29)),
            future_row("53000", date(2025, 6, 26)),
        ]
        record = front_future(_snapshot(rows), "NIFTY", date(2025, 5, 2))
        assert record is not None
        assert record.token == "52000"
        assert record.symbol == "NIFTY29MAY25FUT"

    def test_expiry_day_still_counts(self):
        rows = [future_row("52000", date(2025, 5, 29))]
        assert front_future(_snapshot(rows), "NIFTY", date(2025, 5, 29)).token == "52000"

    def test_none_when_nothing_listed(self):
        assert front_future(_snapshot(), "NIFTY", date(2025, 5, 2)) is None


@pytest.mark.asyncio
class TestTokenResolver:
    """The async wrapper over the scrip master cache."""

    async def test_resolve(self, gateway):
        gateway.rows = chain_rows(STRIKES)
        resolver = TokenResolver(ScripMasterCache(gateway.fetch_instruments), "NIFTY")
        token_map = await resolver.resolve("2025-05-22", [24950])
        assert token_map.ce == {24950: option_token(24950, "CE")}

    async def test_bad_expiry_fails_before_download(self, gateway):
        resolver = TokenResolver(ScripMasterCache(gateway.fetch_instruments), "NIFTY")
        with pytest.raises(InvalidExpiryError):
            await resolver.resolve("22/05/2025", [24950])
        assert gateway.fetch_calls == 0

    async def test_listed_expiries_from_today(self, gateway):
        gateway.rows = chain_rows([24950], expiry=date(2025, 5, 15)) + chain_rows(
            [24950], expiry=EXPIRY
        )
        resolver = TokenResolver(ScripMasterCache(gateway.fetch_instruments), "NIFTY")
        assert await resolver.expiries(date(2025, 5, 16)) == [EXPIRY]
