"""Thread-safe in-memory key-value cache with per-entry expiry."""

from __future__ import annotations

import time
from collections.abc import Callable
from dataclasses import dataclass
from threading import Lock
from typing import Any

DEFAULT_TTL = 3600.0

_MISSING = object()


@dataclass(slots=True)
class _Entry:
    value: Any
    expires_at: float | None  # None = never expires


class TTLCache:
    """In-memory store where every value carries an expiry.

    Expired entries are purged lazily on access; ``purge_expired()`` is an
    optional sweep. A read past expiry reports absence, never a stale value.

    Writers: market service (logged-in client, latest snapshot, chains).
    Readers: WebSocket greeting, REST routes, health endpoint.
    """

    def __init__(
        self,
        default_ttl: float = DEFAULT_TTL,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self._entries: dict[str, _Entry] = {}
        self._lock = Lock()
        self._default_ttl = default_ttl
        self._clock = clock

    def set(self, key: str, value: Any, ttl: float | None = None) -> None:
        """Store ``value`` under ``key``.

        ``ttl=None`` uses the default TTL; ``ttl=0`` stores without expiry.
        """
        ttl = self._default_ttl if ttl is None else ttl
        if ttl < 0:
            raise ValueError(f"ttl must be >= 0, got {ttl}")
        expires_at = None if ttl == 0 else self._clock() + ttl
        with self._lock:
            self._entries[key] = _Entry(value=value, expires_at=expires_at)

    def get(self, key: str, default: Any = None) -> Any:
        """Return the value if present and unexpired, else ``default``."""
        with self._lock:
            entry = self._entries.get(key)
            if entry is None:
                return default
            if self._expired(entry, self._clock()):
                del self._entries[key]
                return default
            return entry.value

    def delete(self, key: str) -> bool:
        """Remove a key. Returns True if a live entry was removed."""
        with self._lock:
            entry = self._entries.pop(key, None)
            return entry is not None and not self._expired(entry, self._clock())

    def keys(self) -> list[str]:
        """Unexpired keys, in insertion order."""
        with self._lock:
            now = self._clock()
            return [k for k, e in self._entries.items() if not self._expired(e, now)]

    def purge_expired(self) -> int:
        """Drop every expired entry. Returns the number removed."""
        with self._lock:
            now = self._clock()
            dead = [k for k, e in self._entries.items() if self._expired(e, now)]
            for key in dead:
                del self._entries[key]
            return len(dead)

    def flush(self) -> None:
        with self._lock:
            self._entries.clear()

    @staticmethod
    def _expired(entry: _Entry, now: float) -> bool:
        return entry.expires_at is not None and now >= entry.expires_at

    def __len__(self) -> int:
        return len(self.keys())

    def __contains__(self, key: str) -> bool:
        return self.get(key, _MISSING) is not _MISSING

