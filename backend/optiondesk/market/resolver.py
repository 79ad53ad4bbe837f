"""Strike → instrument token resolution against the scrip master."""

from __future__ import annotations

import logging
import re
from collections.abc import Iterable
from datetime import date

from ..errors import InvalidExpiryError
from .models import InstrumentRecord, ResolvedOption, TokenMap
from .scrip_master import ScripMasterCache, ScripMasterSnapshot

logger = logging.getLogger(__name__)

DERIVATIVES_SEGMENT = "NFO"
INDEX_OPTION = "OPTIDX"
INDEX_FUTURE = "FUTIDX"

_MONTHS = ("JAN", "FEB", "MAR", "APR", "MAY", "JUN", "JUL", "AUG", "SEP", "OCT", "NOV", "DEC")


def parse_iso_expiry(expiry: str) -> date:
    """``"2025-05-22"`` → ``date(2025, 5, 22)``."""
    try:
        return date.fromisoformat(expiry.strip())
    except (AttributeError, ValueError) as e:
        raise InvalidExpiryError(f"expiry must be YYYY-MM-DD, got {expiry!r}") from e


def expiry_tag(expiry: date) -> str:
    """Expiry as it appears inside option symbols: ``22MAY25``.

    Built by hand rather than with ``strftime("%b")`` so the locale can't
    change the month names.
    """
    return f"{expiry.day:02d}{_MONTHS[expiry.month - 1]}{expiry.year % 100:02d}"


def _symbol_pattern(underlying: str) -> re.Pattern[str]:
    return re.compile(rf"^{re.escape(underlying)}[0-9]{{2}}[A-Z]{{3}}[0-9]{{2}}(\d+)(CE|PE)$")


def resolve_options(
    snapshot: ScripMasterSnapshot,
    underlying: str,
    expiry: str,
    strikes: Iterable[int],
) -> list[ResolvedOption]:
    """Every listed CE/PE contract of ``underlying`` at ``expiry`` whose strike was requested.

    Pure: the result depends only on the snapshot and the arguments. Rows
    whose symbol doesn't follow ``<NAME><DDMMMYY><STRIKE><CE|PE>`` are skipped.
    """
    target = parse_iso_expiry(expiry)
    wanted = set(strikes)
    prefix = underlying + expiry_tag(target)
    pattern = _symbol_pattern(underlying)

    resolved = []
    for rec in snapshot.lookup(DERIVATIVES_SEGMENT, INDEX_OPTION, underlying, target):
        if not rec.symbol.startswith(prefix):
            continue
        match = pattern.match(rec.symbol)
        if match is None:
            continue
        strike = int(match.group(1))
        if strike not in wanted:
            continue
        resolved.append(
            ResolvedOption(
                token=rec.token,
                symbol=rec.symbol,
                strike=strike,
                side=match.group(2),
                expiry=target.isoformat(),
                lot_size=rec.lot_size,
                tick_size=rec.tick_size,
            )
        )
    # Snapshot order is download order; sort so output never depends on it
    resolved.sort(key=lambda r: (r.strike, r.side, r.token))
    return resolved


def token_map_from(options: Iterable[ResolvedOption]) -> TokenMap:
    token_map = TokenMap()
    for opt in options:
        side = token_map.ce if opt.side == "CE" else token_map.pe
        side.setdefault(opt.strike, opt.token)
    return token_map


def build_token_map(
    snapshot: ScripMasterSnapshot,
    underlying: str,
    expiry: str,
    strikes: Iterable[int],
) -> TokenMap:
    """Pure strike → token mapping for calls and puts."""
    return token_map_from(resolve_options(snapshot, underlying, expiry, strikes))


def front_future(
    snapshot: ScripMasterSnapshot, underlying: str, today: date
) -> InstrumentRecord | None:
    """Nearest index future of ``underlying`` expiring on or after ``today``."""
    for expiry in snapshot.expiries(DERIVATIVES_SEGMENT, INDEX_FUTURE, underlying):
        if expiry < today:
            continue
        rows = snapshot.lookup(DERIVATIVES_SEGMENT, INDEX_FUTURE, underlying, expiry)
        if rows:
            return min(rows, key=lambda r: r.token)
    return None


class TokenResolver:
    """Resolves strikes against whatever snapshot the scrip master cache holds."""

    def __init__(self, scrip_master: ScripMasterCache, underlying: str = "NIFTY") -> None:
        self._scrip_master = scrip_master
        self._underlying = underlying

    @property
    def underlying(self) -> str:
        return self._underlying

    async def resolve(self, expiry: str, strikes: Iterable[int]) -> TokenMap:
        return token_map_from(await self.resolve_options(expiry, strikes))

    async def resolve_options(self, expiry: str, strikes: Iterable[int]) -> list[ResolvedOption]:
        parse_iso_expiry(expiry)  # fail fast before touching the network
        snapshot = await self._scrip_master.get_all()
        options = resolve_options(snapshot, self._underlying, expiry, strikes)
        logger.debug("Resolved %d contracts for %s %s", len(options), self._underlying, expiry)
        return options

    async def front_future(self, today: date) -> InstrumentRecord | None:
        snapshot = await self._scrip_master.get_all()
        return front_future(snapshot, self._underlying, today)

    async def expiries(self, today: date) -> list[date]:
        """Listed option expiries of the underlying on or after ``today``."""
        snapshot = await self._scrip_master.get_all()
        listed = snapshot.expiries(DERIVATIVES_SEGMENT, INDEX_OPTION, self._underlying)
        return [d for d in listed if d >= today]
