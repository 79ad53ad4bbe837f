"""Tests for the scrip master snapshot, cache and download."""

import asyncio
import threading
from datetime import date

import httpx
import pytest
from fakes import EXPIRY, chain_rows, future_row, option_row

from optiondesk.errors import BrokerDecodeError, BrokerNetworkError, ScripMasterUnavailableError
from optiondesk.market.scrip_master import (
    ScripMasterCache,
    ScripMasterSnapshot,
    download_scrip_master,
)


class TestScripMasterSnapshot:
    """Decoding and the lookup index."""

    def test_bad_rows_are_skipped_and_counted(self):
        rows = chain_rows([24950]) + [{"symbol": "no token"}, "not a row"]
        snapshot = ScripMasterSnapshot.from_rows(rows)
        assert len(snapshot) == 2
        assert snapshot.skipped == 2

    def test_lookup_by_underlying_and_expiry(self):
        other = date(2025, 5, 29)
        rows = chain_rows([24950, 25000]) + chain_rows([24950], expiry=other)
        rows += chain_rows([55000], name="BANKNIFTY")
        snapshot = ScripMasterSnapshot.from_rows(rows)

        found = snapshot.lookup("NFO", "OPTIDX", "NIFTY", EXPIRY)
        assert len(found) == 4
        assert all(rec.expiry == EXPIRY and rec.name == "NIFTY" for rec in found)
        assert snapshot.lookup("NFO", "OPTIDX", "NIFTY", date(2030, 1, 1)) == ()

    def test_expiries_sorted_distinct(self):
        rows = chain_rows([24950], expiry=date(2025, 6, 26)) + chain_rows([24950])
        rows.append(future_row("52000", date(2025, 5, 29)))
        snapshot = ScripMasterSnapshot.from_rows(rows)
        assert snapshot.expiries("NFO", "OPTIDX", "NIFTY") == [EXPIRY, date(2025, 6, 26)]
        assert snapshot.expiries("NFO", "FUTIDX", "NIFTY") == [date(2025, 5, 29)]


@pytest.mark.asyncio
class TestScripMasterCache:
    """Single-flight refresh, TTL and stale fallback."""

    async def test_concurrent_cold_callers_share_one_fetch(self):
        """Ten callers on a cold cache get the same snapshot from one download."""
        calls = 0
        release = asyncio.Event()

        async def fetch():
            nonlocal calls
            calls += 1
            await release.wait()
            return chain_rows([24950])

        cache = ScripMasterCache(fetch)
        tasks = [asyncio.create_task(cache.get_all()) for _ in range(10)]
        await asyncio.sleep(0)
        release.set()
        results = await asyncio.gather(*tasks)

        assert calls == 1
        assert all(result is results[0] for result in results)

    async def test_decode_runs_off_the_event_loop(self, monkeypatch):
        """Other coroutines keep running while a large download is decoded."""
        loop_ran = threading.Event()
        real_from_rows = ScripMasterSnapshot.from_rows

        def slow_from_rows(rows):
            # Only returns early if the loop is free to run the ticker below
            loop_ran.wait(timeout=2)
            return real_from_rows(rows)

        monkeypatch.setattr(ScripMasterSnapshot, "from_rows", slow_from_rows)

        async def fetch():
            return chain_rows([24950])

        async def ticker():
            await asyncio.sleep(0.01)
            loop_ran.set()

        cache = ScripMasterCache(fetch)
        snapshot, _ = await asyncio.gather(cache.get_all(), ticker())

        assert loop_ran.is_set()
        assert len(snapshot) == 2

    async def test_fresh_snapshot_is_reused(self, clock):
        calls = 0

        async def fetch():
            nonlocal calls
            calls += 1
            return chain_rows([24950])

        cache = ScripMasterCache(fetch, ttl=100, clock=clock)
        first = await cache.get_all()
        clock.advance(99)
        assert await cache.get_all() is first
        assert calls == 1

        clock.advance(1)
        second = await cache.get_all()
        assert calls == 2
        assert second is not first

    async def test_failed_refresh_serves_stale_snapshot(self, clock):
        outcomes = [chain_rows([24950]), BrokerNetworkError("scrip master", "timed out")]

        async def fetch():
            outcome = outcomes.pop(0)
            if isinstance(outcome, Exception):
                raise outcome
            return outcome

        cache = ScripMasterCache(fetch, ttl=10, clock=clock)
        first = await cache.get_all()
        clock.advance(10)
        assert await cache.get_all() is first
        assert not cache.is_fresh()

    async def test_failure_without_snapshot_raises(self):
        async def fetch():
            raise httpx.ConnectError("unreachable")

        cache = ScripMasterCache(fetch)
        with pytest.raises(ScripMasterUnavailableError):
            await cache.get_all()
        assert cache.snapshot is None

    async def test_next_call_retries_after_failure(self):
        outcomes = [BrokerDecodeError("scrip master", "garbage"), chain_rows([24950])]

        async def fetch():
            outcome = outcomes.pop(0)
            if isinstance(outcome, Exception):
                raise outcome
            return outcome

        cache = ScripMasterCache(fetch)
        with pytest.raises(ScripMasterUnavailableError):
            await cache.get_all()
        snapshot = await cache.get_all()
        assert len(snapshot) == 2

    async def test_invalidate_forces_refetch(self):
        calls = 0

        async def fetch():
            nonlocal calls
            calls += 1
            return chain_rows([24950])

        cache = ScripMasterCache(fetch)
        await cache.get_all()
        cache.invalidate()
        assert cache.snapshot is not None
        await cache.get_all()
        assert calls == 2


def _client(handler) -> httpx.AsyncClient:
    return httpx.AsyncClient(transport=httpx.MockTransport(handler))


@pytest.mark.asyncio
class TestDownloadScripMaster:
    """The unauthenticated JSON download."""

    URL = "https://example.test/OpenAPIScripMaster.json"

    async def test_returns_rows(self):
        rows = [option_row(24950, "CE")]
        async with _client(lambda request: httpx.Response(200, json=rows)) as http:
            assert await download_scrip_master(http, self.URL) == rows

    async def test_non_array_body(self):
        async with _client(lambda request: httpx.Response(200, json={"rows": []})) as http:
            with pytest.raises(BrokerDecodeError, match="JSON array"):
                await download_scrip_master(http, self.URL)

    async def test_non_json_body(self):
        async with _client(lambda request: httpx.Response(200, text="<html>")) as http:
            with pytest.raises(BrokerDecodeError):
                await download_scrip_master(http, self.URL)

    async def test_http_error_status(self):
        async with _client(lambda request: httpx.Response(503)) as http:
            with pytest.raises(BrokerNetworkError, match="503"):
                await download_scrip_master(http, self.URL)

    async def test_transport_error(self):
        def handler(request):
            raise httpx.ConnectError("connection refused")

        async with _client(handler) as http:
            with pytest.raises(BrokerNetworkError, match="connection refused"):
                await download_scrip_master(http, self.URL)
