"""
Toolgate Key-Value Store

Shared TTL store used for circuit state, rate-limit windows, session
tool history and lookup caches. Two backends are provided:

- ``InMemoryStore``: process-local, thread-safe, injectable clock (tests, single process)
- ``RedisStore`` (``toolgate.storage.redis_store``): shared across workers

Locks are built on ``add`` (create-if-absent with TTL) so they auto-expire
if the holder crashes, and acquisition waits are bounded.
"""

from __future__ import annotations

import copy
import logging
import threading
import time
import uuid
from abc import ABC, abstractmethod
from collections.abc import Callable, Iterator
from contextlib import contextmanager
from typing import Any

from toolgate.exceptions import LockTimeoutError

logger = logging.getLogger(__name__)

DEFAULT_LOCK_TTL = 5
DEFAULT_LOCK_WAIT = 3.0
DEFAULT_RETRY_DELAY = 0.05


class KeyValueStore(ABC):
    """Abstract TTL key-value store.

    Values must be JSON-serializable. ``ttl`` arguments are in seconds;
    ``None`` means the key never expires.
    """

    @abstractmethod
    def get(self, key: str, default: Any = None) -> Any: ...

    @abstractmethod
    def put(self, key: str, value: Any, ttl: int | None = None) -> None: ...

    @abstractmethod
    def add(self, key: str, value: Any, ttl: int | None = None) -> bool:
        """Store ``value`` only if ``key`` is absent. Returns True if stored."""

    @abstractmethod
    def increment(self, key: str, amount: int = 1, ttl: int | None = None) -> int:
        """Add ``amount`` to an integer counter (missing counts as 0).

        When ``ttl`` is given the expiry is (re)set; otherwise an existing
        expiry is preserved.
        """

    @abstractmethod
    def forget(self, key: str) -> None: ...

    @abstractmethod
    def ttl(self, key: str) -> int | None:
        """Remaining seconds before ``key`` expires, or None if missing or persistent."""

    def has(self, key: str) -> bool:
        return self.get(key) is not None

    @contextmanager
    def lock(
        self,
        key: str,
        ttl: int = DEFAULT_LOCK_TTL,
        wait: float = DEFAULT_LOCK_WAIT,
        retry_delay: float = DEFAULT_RETRY_DELAY,
    ) -> Iterator[None]:
        """Hold an exclusive lock on ``key`` for the duration of the block.

        Raises:
            LockTimeoutError: If the lock is not acquired within ``wait`` seconds.
        """
        token = uuid.uuid4().hex
        start = time.monotonic()
        while not self.add(key, token, ttl):
            if time.monotonic() - start >= wait:
                raise LockTimeoutError(key, wait)
            time.sleep(retry_delay)
        try:
            yield
        finally:
            self._release(key, token)

    def _release(self, key: str, token: str) -> None:
        if self.get(key) == token:
            self.forget(key)
        else:
            logger.warning("Lock expired before release: %s", key)


class InMemoryStore(KeyValueStore):
    """Process-local store.

    Args:
        clock: Returns the current epoch time in seconds. Tests inject a
               fake clock to advance expiry deterministically.
    """

    def __init__(self, clock: Callable[[], float] = time.time) -> None:
        self._clock = clock
        self._data: dict[str, tuple[Any, float | None]] = {}
        self._mutex = threading.RLock()

    def _live(self, key: str) -> tuple[Any, float | None] | None:
        item = self._data.get(key)
        if item is None:
            return None
        _, expires_at = item
        if expires_at is not None and expires_at <= self._clock():
            del self._data[key]
            return None
        return item

    def _expiry(self, ttl: int | None) -> float | None:
        return None if ttl is None else self._clock() + ttl

    def get(self, key: str, default: Any = None) -> Any:
        with self._mutex:
            item = self._live(key)
            return default if item is None else copy.deepcopy(item[0])

    def put(self, key: str, value: Any, ttl: int | None = None) -> None:
        with self._mutex:
            self._data[key] = (copy.deepcopy(value), self._expiry(ttl))

    def add(self, key: str, value: Any, ttl: int | None = None) -> bool:
        with self._mutex:
            if self._live(key) is not None:
                return False
            self._data[key] = (copy.deepcopy(value), self._expiry(ttl))
            return True

    def increment(self, key: str, amount: int = 1, ttl: int | None = None) -> int:
        with self._mutex:
            item = self._live(key)
            current, expires_at = item if item is not None else (0, None)
            value = int(current) + amount
            if ttl is not None:
                expires_at = self._expiry(ttl)
            self._data[key] = (value, expires_at)
            return value

    def forget(self, key: str) -> None:
        with self._mutex:
            self._data.pop(key, None)

    def ttl(self, key: str) -> int | None:
        with self._mutex:
            item = self._live(key)
            if item is None or item[1] is None:
                return None
            return max(0, int(round(item[1] - self._clock())))

    def clear(self) -> None:
        with self._mutex:
            self._data.clear()

    def __len__(self) -> int:
        with self._mutex:
            return sum(1 for key in list(self._data) if self._live(key) is not None)
