"""In-process TTL cache for memoizing expensive read queries."""

from __future__ import annotations

import threading
import time
from dataclasses import dataclass
from typing import Any, Callable

DEFAULT_TTL_SECONDS = 60

# A key ending with this marks a namespace for bulk invalidation
PREFIX_MARKER = "_"

_MISSING = object()


@dataclass
class _Entry:
    value: Any
    expires_at: float


class TTLCache:
    """Unbounded key/value map with per-entry expiry.

    Expired entries are dropped lazily on ``get`` and in bulk by
    ``sweep``. There is no capacity limit, so keys should come from a
    small fixed set of query shapes.
    """

    def __init__(
        self,
        default_ttl: float = DEFAULT_TTL_SECONDS,
        *,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self.default_ttl = default_ttl
        self._clock = clock
        self._entries: dict[str, _Entry] = {}
        self._lock = threading.Lock()

    def get(self, key: str, default: Any = None) -> Any:
        """Return the live value for *key*, or *default* if absent or expired."""
        with self._lock:
            entry = self._entries.get(key)
            if entry is None:
                return default
            if self._clock() >= entry.expires_at:
                del self._entries[key]
                return default
            return entry.value

    def set(self, key: str, value: Any, ttl_seconds: float | None = None) -> None:
        ttl = self.default_ttl if ttl_seconds is None else ttl_seconds
        with self._lock:
            self._entries[key] = _Entry(value=value, expires_at=self._clock() + ttl)

    def get_or_set(
        self, key: str, factory: Callable[[], Any], ttl_seconds: float | None = None
    ) -> Any:
        """Return the cached value for *key*, computing and storing it on a miss.

        The factory runs outside the lock, so concurrent misses may each
        compute the value; the last write wins.
        """
        value = self.get(key, _MISSING)
        if value is _MISSING:
            value = factory()
            self.set(key, value, ttl_seconds)
        return value

    def invalidate(self, key: str) -> int:
        """Remove *key*, or every key under it if it ends with ``_``.

        Returns the number of entries removed.
        """
        with self._lock:
            if key.endswith(PREFIX_MARKER):
                doomed = [k for k in self._entries if k.startswith(key)]
            else:
                doomed = [key] if key in self._entries else []
            for k in doomed:
                del self._entries[k]
        return len(doomed)

    def clear(self) -> None:
        with self._lock:
            self._entries.clear()

    def sweep(self) -> int:
        """Drop every expired entry. Returns the number removed."""
        now = self._clock()
        with self._lock:
            expired = [k for k, e in self._entries.items() if now >= e.expires_at]
            for k in expired:
                del self._entries[k]
        return len(expired)

    def __contains__(self, key: object) -> bool:
        with self._lock:
            entry = self._entries.get(key)  # type: ignore[arg-type]
            return entry is not None and self._clock() < entry.expires_at

    def __len__(self) -> int:
        with self._lock:
            return len(self._entries)


cache = TTLCache()
