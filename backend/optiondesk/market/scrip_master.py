"""Scrip master (instrument reference dataset) cache."""

from __future__ import annotations

import asyncio
import logging
import time
from collections import defaultdict
from collections.abc import Awaitable, Callable, Iterable, Iterator
from datetime import date
from typing import Any

import httpx

from ..errors import (
    BrokerDecodeError,
    BrokerNetworkError,
    OptionDeskError,
    ScripMasterUnavailableError,
)
from .models import InstrumentRecord

logger = logging.getLogger(__name__)

IndexKey = tuple[str, str, str, date | None]

DEFAULT_TTL = 24 * 60 * 60


class ScripMasterSnapshot:
    """Immutable set of instrument rows with a lookup index.

    The index is keyed by ``(exch_seg, instrument_type, name, expiry)`` so a
    resolution call touches only the rows of one underlying and expiry.
    """

    __slots__ = ("_records", "_index", "skipped")

    def __init__(self, records: Iterable[InstrumentRecord], skipped: int = 0) -> None:
        self._records: tuple[InstrumentRecord, ...] = tuple(records)
        index: dict[IndexKey, list[InstrumentRecord]] = defaultdict(list)
        for rec in self._records:
            index[(rec.exch_seg, rec.instrument_type, rec.name, rec.expiry)].append(rec)
        self._index: dict[IndexKey, tuple[InstrumentRecord, ...]] = {
            key: tuple(rows) for key, rows in index.items()
        }
        self.skipped = skipped

    @classmethod
    def from_rows(cls, rows: list[Any]) -> ScripMasterSnapshot:
        """Decode raw JSON rows. Rows that fail to decode are skipped."""
        records = []
        skipped = 0
        for row in rows:
            try:
                records.append(InstrumentRecord.from_payload(row))
            except BrokerDecodeError:
                skipped += 1
        return cls(records, skipped=skipped)

    @property
    def records(self) -> tuple[InstrumentRecord, ...]:
        return self._records

    def lookup(
        self, exch_seg: str, instrument_type: str, name: str, expiry: date | None
    ) -> tuple[InstrumentRecord, ...]:
        return self._index.get((exch_seg, instrument_type, name, expiry), ())

    def expiries(self, exch_seg: str, instrument_type: str, name: str) -> list[date]:
        """Distinct expiries listed for one underlying and instrument type, ascending."""
        return sorted(
            {
                key[3]
                for key in self._index
                if key[0] == exch_seg
                and key[1] == instrument_type
                and key[2] == name
                and key[3] is not None
            }
        )

    def __len__(self) -> int:
        return len(self._records)

    def __iter__(self) -> Iterator[InstrumentRecord]:
        return iter(self._records)


class ScripMasterCache:
    """Keeps one scrip master snapshot, refreshed at most once per TTL window.

    Concurrent ``get_all()`` calls during a miss share a single in-flight
    fetch task. If a refresh fails and an older snapshot exists, the stale
    snapshot is served and the failure logged.
    """

    def __init__(
        self,
        fetch: Callable[[], Awaitable[list[Any]]],
        ttl: float = DEFAULT_TTL,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self._fetch = fetch
        self._ttl = ttl
        self._clock = clock
        self._snapshot: ScripMasterSnapshot | None = None
        self._loaded_at: float | None = None
        self._inflight: asyncio.Task[ScripMasterSnapshot] | None = None

    @property
    def snapshot(self) -> ScripMasterSnapshot | None:
        """Last loaded snapshot, possibly past its TTL."""
        return self._snapshot

    @property
    def loaded_at(self) -> float | None:
        return self._loaded_at

    def is_fresh(self) -> bool:
        return (
            self._snapshot is not None
            and self._loaded_at is not None
            and self._clock() - self._loaded_at < self._ttl
        )

    def invalidate(self) -> None:
        """Force the next ``get_all()`` to refetch. The old snapshot stays as fallback."""
        self._loaded_at = None

    async def get_all(self) -> ScripMasterSnapshot:
        if self.is_fresh():
            return self._snapshot  # type: ignore[return-value]

        if self._inflight is None:
            self._inflight = asyncio.create_task(self._refresh(), name="scrip-master-refresh")
        # Shield so one cancelled caller doesn't cancel the download for the rest
        return await asyncio.shield(self._inflight)

    async def _refresh(self) -> ScripMasterSnapshot:
        try:
            logger.info("Downloading scrip master...")
            started = time.perf_counter()
            rows = await self._fetch()
            snapshot = await asyncio.to_thread(ScripMasterSnapshot.from_rows, rows)
            self._snapshot = snapshot
            self._loaded_at = self._clock()
            logger.info(
                "Scrip master loaded: %d rows (%d skipped) in %.1fs",
                len(snapshot),
                snapshot.skipped,
                time.perf_counter() - started,
            )
            return snapshot
        except (OptionDeskError, httpx.HTTPError, asyncio.TimeoutError) as e:
            if self._snapshot is not None:
                logger.warning("Scrip master refresh failed, serving stale snapshot: %s", e)
                return self._snapshot
            raise ScripMasterUnavailableError(f"scrip master download failed: {e}") from e
        finally:
            self._inflight = None


async def download_scrip_master(
    http: httpx.AsyncClient, url: str, timeout: float = 20.0
) -> list[Any]:
    """Fetch the full scrip master JSON array (unauthenticated)."""
    what = "scrip master"
    try:
        response = await http.get(url, timeout=timeout)
        response.raise_for_status()
        rows = response.json()
    except httpx.HTTPStatusError as e:
        raise BrokerNetworkError(what, f"HTTP {e.response.status_code}") from e
    except httpx.HTTPError as e:
        raise BrokerNetworkError(what, str(e) or type(e).__name__) from e
    except ValueError as e:
        raise BrokerDecodeError(what, "response is not JSON") from e
    if not isinstance(rows, list):
        raise BrokerDecodeError(what, f"expected a JSON array, got {type(rows).__name__}")
    return rows
