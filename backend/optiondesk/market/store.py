"""SQLite-backed persistence: a durable key-value table and resolved instruments."""

from __future__ import annotations

import json
import logging
import sqlite3
import time
from collections.abc import Callable, Iterable
from pathlib import Path
from threading import Lock
from typing import Any

from .models import ResolvedOption, TokenMap

logger = logging.getLogger(__name__)

_SCHEMA = """
CREATE TABLE IF NOT EXISTS kv (
    key TEXT PRIMARY KEY,
    value TEXT NOT NULL,
    expires_at REAL
);

CREATE TABLE IF NOT EXISTS options (
    token TEXT PRIMARY KEY,
    symbol TEXT NOT NULL,
    strike REAL NOT NULL,
    opt_type TEXT NOT NULL,
    expiry TEXT NOT NULL,
    lot_size INTEGER NOT NULL,
    tick_size REAL NOT NULL,
    updated_at TIMESTAMP DEFAULT CURRENT_TIMESTAMP
);

CREATE INDEX IF NOT EXISTS idx_options_expiry ON options(expiry);
CREATE INDEX IF NOT EXISTS idx_options_strike ON options(strike);
CREATE INDEX IF NOT EXISTS idx_options_opt_type ON options(opt_type);
"""


def open_database(path: str | Path) -> sqlite3.Connection:
    """Open (and create if needed) the OptionDesk database.

    ``":memory:"`` gives a private in-memory database, handy for tests.
    """
    if str(path) != ":memory:":
        Path(path).parent.mkdir(parents=True, exist_ok=True)
    conn = sqlite3.connect(str(path), check_same_thread=False)
    conn.row_factory = sqlite3.Row
    conn.execute("PRAGMA journal_mode = WAL")
    conn.executescript(_SCHEMA)
    conn.commit()
    return conn


class KeyValueStore:
    """Durable JSON values with an optional wall-clock expiry.

    Holds the session token set so a restart can skip a fresh login.
    """

    def __init__(
        self, conn: sqlite3.Connection, clock: Callable[[], float] = time.time
    ) -> None:
        self._conn = conn
        self._lock = Lock()
        self._clock = clock

    def set(self, key: str, value: Any, ttl: float | None = None) -> None:
        expires_at = None if ttl is None else self._clock() + ttl
        with self._lock:
            self._conn.execute(
                "INSERT OR REPLACE INTO kv (key, value, expires_at) VALUES (?, ?, ?)",
                (key, json.dumps(value), expires_at),
            )
            self._conn.commit()

    def get(self, key: str) -> Any | None:
        with self._lock:
            row = self._conn.execute(
                "SELECT value, expires_at FROM kv WHERE key = ?", (key,)
            ).fetchone()
            if row is None:
                return None
            if row["expires_at"] is not None and self._clock() >= row["expires_at"]:
                self._conn.execute("DELETE FROM kv WHERE key = ?", (key,))
                self._conn.commit()
                return None
        return json.loads(row["value"])

    def delete(self, key: str) -> bool:
        with self._lock:
            cur = self._conn.execute("DELETE FROM kv WHERE key = ?", (key,))
            self._conn.commit()
            return cur.rowcount > 0


class InstrumentStore:
    """Already-resolved option contracts, indexed by expiry and strike."""

    def __init__(self, conn: sqlite3.Connection) -> None:
        self._conn = conn
        self._lock = Lock()

    def save_options(self, options: Iterable[ResolvedOption]) -> int:
        rows = [
            (o.token, o.symbol, o.strike, o.side, o.expiry, o.lot_size, o.tick_size)
            for o in options
        ]
        if not rows:
            return 0
        with self._lock:
            with self._conn:
                self._conn.executemany(
                    """
                    INSERT OR REPLACE INTO options
                        (token, symbol, strike, opt_type, expiry, lot_size, tick_size)
                    VALUES (?, ?, ?, ?, ?, ?, ?)
                    """,
                    rows,
                )
        logger.debug("Stored %d resolved options", len(rows))
        return len(rows)

    def options_by_expiry(self, expiry: str) -> list[ResolvedOption]:
        return self._select(
            "SELECT * FROM options WHERE expiry = ? ORDER BY strike, opt_type", (expiry,)
        )

    def options_in_strike_range(self, low: float, high: float) -> list[ResolvedOption]:
        return self._select(
            "SELECT * FROM options WHERE strike BETWEEN ? AND ? ORDER BY strike, opt_type",
            (low, high),
        )

    def option_by_token(self, token: str) -> ResolvedOption | None:
        found = self._select("SELECT * FROM options WHERE token = ?", (token,))
        return found[0] if found else None

    def expiries(self) -> list[str]:
        with self._lock:
            rows = self._conn.execute("SELECT DISTINCT expiry FROM options ORDER BY expiry").fetchall()
        return [row["expiry"] for row in rows]

    def token_map(self, expiry: str, strikes: Iterable[int]) -> TokenMap:
        """Strike → token from stored rows only. Keys limited to ``strikes``."""
        wanted = set(strikes)
        token_map = TokenMap()
        for opt in self.options_by_expiry(expiry):
            if opt.strike not in wanted:
                continue
            side = token_map.ce if opt.side == "CE" else token_map.pe
            side.setdefault(opt.strike, opt.token)
        return token_map

    def _select(self, sql: str, params: tuple) -> list[ResolvedOption]:
        with self._lock:
            rows = self._conn.execute(sql, params).fetchall()
        return [
            ResolvedOption(
                token=row["token"],
                symbol=row["symbol"],
                strike=int(row["strike"]),
                side=row["opt_type"],
                expiry=row["expiry"],
                lot_size=row["lot_size"],
                tick_size=row["tick_size"],
            )
            for row in rows
        ]
