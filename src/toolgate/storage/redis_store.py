"""
Redis-backed key-value store.

Shares circuit state, rate-limit windows and session history across
worker processes. Values are stored as JSON strings; counters are plain
integers so ``INCRBY`` works on them directly.

Requires the ``redis`` extra: ``pip install 'toolgate[redis]'``.
"""

from __future__ import annotations

import json
import logging
from typing import Any

import redis

from toolgate.storage.kv import KeyValueStore

logger = logging.getLogger(__name__)

# Delete the key only if it still holds our token.
_RELEASE_SCRIPT = """
if redis.call("get", KEYS[1]) == ARGV[1] then
    return redis.call("del", KEYS[1])
else
    return 0
end
"""


class RedisStore(KeyValueStore):
    """KeyValueStore over a synchronous ``redis.Redis`` client."""

    def __init__(self, client: redis.Redis, prefix: str = "toolgate:") -> None:
        self._client = client
        self._prefix = prefix

    @classmethod
    def from_url(cls, url: str, prefix: str = "toolgate:") -> RedisStore:
        client = redis.Redis.from_url(url, decode_responses=True, socket_connect_timeout=2.0)
        logger.info("Redis store configured: %s", url.split("@")[-1])
        return cls(client, prefix=prefix)

    def _key(self, key: str) -> str:
        return f"{self._prefix}{key}"

    def get(self, key: str, default: Any = None) -> Any:
        raw = self._client.get(self._key(key))
        if raw is None:
            return default
        return json.loads(raw)

    def put(self, key: str, value: Any, ttl: int | None = None) -> None:
        self._client.set(self._key(key), json.dumps(value, default=str), ex=ttl)

    def add(self, key: str, value: Any, ttl: int | None = None) -> bool:
        return bool(self._client.set(self._key(key), json.dumps(value, default=str), nx=True, ex=ttl))

    def increment(self, key: str, amount: int = 1, ttl: int | None = None) -> int:
        full_key = self._key(key)
        if ttl is None:
            return int(self._client.incrby(full_key, amount))
        pipe = self._client.pipeline()
        pipe.incrby(full_key, amount)
        pipe.expire(full_key, ttl)
        value, _ = pipe.execute()
        return int(value)

    def forget(self, key: str) -> None:
        self._client.delete(self._key(key))

    def ttl(self, key: str) -> int | None:
        remaining = self._client.ttl(self._key(key))
        # -2: missing, -1: no expiry
        if remaining is None or remaining < 0:
            return None
        return int(remaining)

    def _release(self, key: str, token: str) -> None:
        released = self._client.eval(_RELEASE_SCRIPT, 1, self._key(key), json.dumps(token))
        if not released:
            logger.warning("Redis lock stolen or expired: %s", key)

    def ping(self) -> bool:
        try:
            return bool(self._client.ping())
        except redis.RedisError as e:
            logger.warning("Redis ping failed: %s", e)
            return False
