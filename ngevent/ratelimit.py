"""Rate limiting and lockout backed by a hosted key-value store.

The store is reached through its REST API (Upstash-compatible: each command is
POSTed as a JSON array and answered with ``{"result": ...}``). When no URL or
token is configured the limiter degrades to a no-op that always allows.

Sliding window
--------------
Requests are counted in fixed one-minute windows. The effective count is the
current window's count plus the previous window's count weighted by how much
of the previous window still overlaps the last 60 seconds.
"""

from __future__ import annotations

import logging
import math
import time
from dataclasses import dataclass
from typing import Any, Callable

import httpx

from .config import settings

WINDOW_SECONDS = 60


class RateLimitError(Exception):
    """Raised when the key-value store rejects a command."""

    def __init__(self, message: str, *, status_code: int | None = None, details: Any = None) -> None:
        super().__init__(message)
        self.status_code = status_code
        self.details = details


@dataclass
class LimitResult:
    success: bool
    limit: int
    remaining: int
    reset: float


@dataclass
class FailureResult:
    fails: int
    locked: bool


class RateLimiter:
    def __init__(
        self,
        url: str | None = None,
        token: str | None = None,
        *,
        timeout: float = 1.0,
        client: httpx.Client | None = None,
        clock: Callable[[], float] = time.time,
    ) -> None:
        url = settings.kv_rest_url if url is None else url
        token = settings.kv_rest_token if token is None else token
        self.url = (url or "").rstrip("/")
        self.token = token or ""
        self._client = client or httpx.Client(timeout=timeout)
        self._clock = clock
        self._logger = logging.getLogger(__name__)

    @property
    def configured(self) -> bool:
        return bool(self.url and self.token)

    def _command(self, *args: Any) -> Any:
        try:
            response = self._client.post(
                self.url,
                json=[str(arg) for arg in args],
                headers={"Authorization": f"Bearer {self.token}"},
            )
            response.raise_for_status()
        except httpx.HTTPStatusError as exc:
            raise RateLimitError(
                f"Key-value command {args[0]} failed: {exc.response.status_code}",
                status_code=exc.response.status_code,
                details=exc.response.text,
            ) from exc
        except httpx.HTTPError as exc:
            raise RateLimitError(f"Key-value command {args[0]} failed: {exc}") from exc
        data = response.json()
        if isinstance(data, dict) and data.get("error"):
            raise RateLimitError(str(data["error"]), details=data)
        return data.get("result") if isinstance(data, dict) else data

    def limit(self, key: str, max_per_minute: int = 5) -> LimitResult:
        now = self._clock()
        window = int(now // WINDOW_SECONDS)
        reset = (window + 1) * WINDOW_SECONDS
        if not self.configured:
            return LimitResult(True, max_per_minute, max_per_minute, now + WINDOW_SECONDS)

        current_key = f"ratelimit:{key}:{window}"
        previous_key = f"ratelimit:{key}:{window - 1}"
        try:
            current = int(self._command("INCR", current_key) or 0)
            if current == 1:
                self._command("PEXPIRE", current_key, WINDOW_SECONDS * 2 * 1000)
            previous = int(self._command("GET", previous_key) or 0)
        except RateLimitError as exc:
            self._logger.warning("Rate limiter unavailable, allowing %s: %s", key, exc)
            return LimitResult(True, max_per_minute, max_per_minute, reset)

        elapsed = (now % WINDOW_SECONDS) / WINDOW_SECONDS
        weighted = math.floor(previous * (1 - elapsed)) + current
        remaining = max(max_per_minute - weighted, 0)
        return LimitResult(weighted <= max_per_minute, max_per_minute, remaining, reset)

    def get_lock_seconds(self, key: str) -> int:
        if not self.configured:
            return 0
        try:
            ttl = self._command("TTL", key)
        except RateLimitError as exc:
            self._logger.warning("Could not read lock %s: %s", key, exc)
            return 0
        return max(int(ttl or 0), 0)

    def lock_for_seconds(self, key: str, seconds: int) -> None:
        if not self.configured:
            return
        self._command("SET", key, "1", "EX", seconds)

    def incr_fail_and_maybe_lock(
        self, base_key: str, max_fails: int, lock_seconds: int
    ) -> FailureResult:
        if not self.configured:
            return FailureResult(fails=1, locked=False)
        count_key = f"{base_key}:fails"
        try:
            fails = int(self._command("INCR", count_key) or 0)
            if fails == 1:
                self._command("EXPIRE", count_key, lock_seconds)
            if fails >= max_fails:
                self.lock_for_seconds(f"{base_key}:lock", lock_seconds)
                return FailureResult(fails=fails, locked=True)
        except RateLimitError as exc:
            self._logger.warning("Could not record failure for %s: %s", base_key, exc)
            return FailureResult(fails=1, locked=False)
        return FailureResult(fails=fails, locked=False)

    def reset_failures(self, base_key: str) -> None:
        if not self.configured:
            return
        try:
            self._command("DEL", f"{base_key}:fails", f"{base_key}:lock")
        except RateLimitError as exc:
            self._logger.warning("Could not reset failures for %s: %s", base_key, exc)
