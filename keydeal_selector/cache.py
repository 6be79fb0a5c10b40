# keydeal_selector/cache.py
from __future__ import annotations

import threading
import time
from dataclasses import dataclass
from typing import Any, Callable, Dict, List, Optional

DEFAULT_TTL = 3600.0  # one hour


@dataclass
class _Entry:
    value: Any
    expires_at: float


class TTLCache:
    """
    In-memory key/value store with per-entry expiry.

    Expiry is checked lazily: an expired entry is dropped the first time it
    is read. Contents never survive a restart, so every cached value must be
    re-derivable by repeating the fetch that produced it.
    """

    def __init__(
        self,
        default_ttl: float = DEFAULT_TTL,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        if default_ttl <= 0:
            raise ValueError("default_ttl must be positive")
        self.default_ttl = float(default_ttl)
        self._clock = clock
        self._data: Dict[str, _Entry] = {}
        self._lock = threading.Lock()
        self._hits = 0
        self._misses = 0

    def get(self, key: str, default: Any = None) -> Any:
        now = self._clock()
        with self._lock:
            entry = self._data.get(key)
            if entry is None:
                self._misses += 1
                return default
            if now >= entry.expires_at:
                del self._data[key]
                self._misses += 1
                return default
            self._hits += 1
            return entry.value

    def __contains__(self, key: str) -> bool:
        sentinel = object()
        return self.get(key, sentinel) is not sentinel

    def set(self, key: str, value: Any, ttl: Optional[float] = None) -> None:
        if ttl is None or ttl <= 0:
            ttl = self.default_ttl
        expires_at = self._clock() + float(ttl)
        with self._lock:
            self._data[key] = _Entry(value=value, expires_at=expires_at)

    def delete(self, key: str) -> bool:
        with self._lock:
            return self._data.pop(key, None) is not None

    def flush_all(self) -> None:
        with self._lock:
            self._data.clear()
            self._hits = 0
            self._misses = 0

    def _purge_expired(self) -> None:
        now = self._clock()
        with self._lock:
            stale = [k for k, e in self._data.items() if now >= e.expires_at]
            for k in stale:
                del self._data[k]

    def keys(self) -> List[str]:
        self._purge_expired()
        with self._lock:
            return list(self._data.keys())

    def key_count(self) -> int:
        return len(self.keys())

    def stats(self) -> Dict[str, int]:
        keys = self.key_count()
        with self._lock:
            return {"hits": self._hits, "misses": self._misses, "keys": keys}
