"""Tests for the Redis-backed key-value store (client mocked)."""

import json
from unittest.mock import MagicMock

import redis

from toolgate.storage.redis_store import RedisStore


def _store():
    client = MagicMock()
    return RedisStore(client, prefix="tg:"), client


class TestRedisStore:
    def test_get_decodes_json(self):
        store, client = _store()
        client.get.return_value = json.dumps({"a": 1})
        assert store.get("k") == {"a": 1}
        client.get.assert_called_once_with("tg:k")

    def test_get_missing_returns_default(self):
        store, client = _store()
        client.get.return_value = None
        assert store.get("k", 3) == 3

    def test_put_with_ttl(self):
        store, client = _store()
        store.put("k", [1, 2], ttl=30)
        client.set.assert_called_once_with("tg:k", "[1, 2]", ex=30)

    def test_add_uses_nx(self):
        store, client = _store()
        client.set.return_value = None
        assert store.add("k", True, ttl=10) is False
        client.set.assert_called_once_with("tg:k", "true", nx=True, ex=10)

    def test_increment_without_ttl(self):
        store, client = _store()
        client.incrby.return_value = 4
        assert store.increment("c") == 4
        client.incrby.assert_called_once_with("tg:c", 1)

    def test_increment_with_ttl_uses_pipeline(self):
        store, client = _store()
        pipe = client.pipeline.return_value
        pipe.execute.return_value = [2, True]
        assert store.increment("c", ttl=60) == 2
        pipe.incrby.assert_called_once_with("tg:c", 1)
        pipe.expire.assert_called_once_with("tg:c", 60)

    def test_ttl_maps_negative_to_none(self):
        store, client = _store()
        client.ttl.return_value = -2
        assert store.ttl("k") is None
        client.ttl.return_value = -1
        assert store.ttl("k") is None
        client.ttl.return_value = 12
        assert store.ttl("k") == 12

    def test_forget(self):
        store, client = _store()
        store.forget("k")
        client.delete.assert_called_once_with("tg:k")

    def test_lock_releases_with_token_script(self):
        store, client = _store()
        client.set.return_value = True
        client.eval.return_value = 1
        with store.lock("l"):
            pass
        args = client.eval.call_args.args
        assert args[1] == 1
        assert args[2] == "tg:l"
        token = json.loads(args[3])
        assert client.set.call_args.args[1] == json.dumps(token)

    def test_ping_failure(self):
        store, client = _store()
        client.ping.side_effect = redis.ConnectionError("down")
        assert store.ping() is False
