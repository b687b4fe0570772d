"""
Toolgate Rate Limiter

Fixed-window call limits per (identifier, tool). Each window record holds
the call count and the epoch second the window ends; later hits keep
that boundary, so a window never slides forward.

Store key: ``mcp_rate_limit:{identifier}:{tool_name}``
"""

from __future__ import annotations

import logging
import math
import time
from collections.abc import Callable

from toolgate.core.models import RateLimitResult
from toolgate.exceptions import RateLimitExceededError
from toolgate.settings import RateLimitSettings, StoreSettings
from toolgate.storage.kv import KeyValueStore

logger = logging.getLogger(__name__)

KEY_PREFIX = "mcp_rate_limit"


class RateLimiter:
    """Per-identifier, per-tool fixed-window rate limiter."""

    def __init__(
        self,
        store: KeyValueStore,
        settings: RateLimitSettings | None = None,
        store_settings: StoreSettings | None = None,
        clock: Callable[[], float] = time.time,
    ):
        self._store = store
        self._settings = settings or RateLimitSettings()
        self._store_settings = store_settings or StoreSettings()
        self._clock = clock

    @staticmethod
    def _key(identifier: str, tool_name: str) -> str:
        return f"{KEY_PREFIX}:{identifier}:{tool_name}"

    def limit_for(self, tool_name: str) -> int:
        return self._settings.limit_for(tool_name)

    def _window(self, key: str) -> tuple[int, float | None]:
        """Current (count, window_expiry); (0, None) when no live window."""
        record = self._store.get(key)
        if not record:
            return 0, None
        expiry = float(record["window_expiry"])
        if expiry <= self._clock():
            return 0, None
        return int(record["count"]), expiry

    def _result(self, count: int, expiry: float | None, limit: int) -> RateLimitResult:
        now = self._clock()
        if expiry is None:
            expiry = now + self._settings.window_seconds
        limited = count >= limit
        return RateLimitResult(
            limited=limited,
            remaining=max(0, limit - count),
            retry_after=max(1, math.ceil(expiry - now)) if limited else 0,
            limit=limit,
            reset_at=math.ceil(expiry),
        )

    def check(self, identifier: str, tool_name: str) -> RateLimitResult:
        """Report whether the next call would be limited. Does not count a call."""
        limit = self.limit_for(tool_name)
        count, expiry = self._window(self._key(identifier, tool_name))
        return self._result(count, expiry, limit)

    def _hit_unlocked(self, key: str) -> tuple[int, float]:
        count, expiry = self._window(key)
        now = self._clock()
        if expiry is None:
            expiry = now + self._settings.window_seconds
            count = 0
        count += 1
        ttl = max(1, math.ceil(expiry - now))
        self._store.put(key, {"count": count, "window_expiry": expiry}, ttl=ttl)
        return count, expiry

    def _lock(self, key: str):
        return self._store.lock(
            key + ":lock",
            ttl=self._store_settings.lock_ttl,
            wait=self._store_settings.lock_wait,
        )

    def hit(self, identifier: str, tool_name: str) -> int:
        """Count one call. Returns the count in the current window."""
        key = self._key(identifier, tool_name)
        with self._lock(key):
            count, _ = self._hit_unlocked(key)
        return count

    def consume(self, identifier: str, tool_name: str) -> RateLimitResult:
        """Atomically check and count a call.

        Raises:
            RateLimitExceededError: The window is exhausted; the call is not counted.
        """
        key = self._key(identifier, tool_name)
        limit = self.limit_for(tool_name)
        with self._lock(key):
            count, expiry = self._window(key)
            if count >= limit:
                result = self._result(count, expiry, limit)
                logger.warning(
                    "Rate limit exceeded (%d/%d)",
                    count,
                    limit,
                    extra={"identifier": identifier, "tool_name": tool_name},
                )
                raise RateLimitExceededError(identifier, tool_name, result.retry_after, limit)
            count, expiry = self._hit_unlocked(key)
        return self._result(count, expiry, limit)

    def remaining(self, identifier: str, tool_name: str) -> int:
        return self.check(identifier, tool_name).remaining

    def reset(self, identifier: str, tool_name: str) -> None:
        self._store.forget(self._key(identifier, tool_name))

    def get_status(self, identifier: str, tool_name: str) -> dict:
        result = self.check(identifier, tool_name)
        return {
            "identifier": identifier,
            "tool_name": tool_name,
            "limit": result.limit,
            "remaining": result.remaining,
            "limited": result.limited,
            "reset_at": result.reset_at,
            "window_seconds": self._settings.window_seconds,
            "headers": result.headers(),
        }
