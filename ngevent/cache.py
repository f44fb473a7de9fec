"""In-process TTL cache for public event responses."""

from __future__ import annotations

import threading
import time
from typing import Any, Callable

from .config import settings

_MISSING = object()


class ResponseCache:
    """Key/value store whose entries expire after ``ttl`` seconds.

    Expired entries are dropped lazily on read; there is no size bound.
    """

    def __init__(
        self, ttl: float | None = None, *, clock: Callable[[], float] = time.monotonic
    ) -> None:
        self.ttl = settings.events_cache_seconds if ttl is None else ttl
        self._clock = clock
        self._entries: dict[str, tuple[float, Any]] = {}
        self._lock = threading.Lock()

    @property
    def enabled(self) -> bool:
        return self.ttl > 0

    def get(self, key: str, default: Any = None) -> Any:
        with self._lock:
            entry = self._entries.get(key, _MISSING)
            if entry is _MISSING:
                return default
            expires_at, value = entry
            if expires_at <= self._clock():
                del self._entries[key]
                return default
            return value

    def set(self, key: str, value: Any) -> None:
        if not self.enabled:
            return
        with self._lock:
            self._entries[key] = (self._clock() + self.ttl, value)

    def invalidate(self, prefix: str = "") -> int:
        with self._lock:
            doomed = [key for key in self._entries if key.startswith(prefix)]
            for key in doomed:
                del self._entries[key]
            return len(doomed)

    def clear(self) -> None:
        with self._lock:
            self._entries.clear()

    def __len__(self) -> int:
        return len(self._entries)


def make_key(namespace: str, **params: Any) -> str:
    parts = [f"{name}={params[name]}" for name in sorted(params) if params[name] is not None]
    return f"{namespace}?{'&'.join(parts)}"


events_cache = ResponseCache()
