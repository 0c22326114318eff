from unittest.mock import AsyncMock

import pytest
from redis.exceptions import ConnectionError as RedisConnectionError
from redis.exceptions import ResponseError

from portier_broker.storage.errors import StoreError
from portier_broker.storage.redis_cache import RedisStore


def _store(client):
    return RedisStore("redis://unused:6379/0", client=client)


async def test_put_sets_expiry_in_seconds():
    client = AsyncMock()
    await _store(client).put("session:n1", "{}", 900)
    client.set.assert_awaited_once_with("session:n1", "{}", ex=900)


async def test_put_without_ttl_is_persistent():
    client = AsyncMock()
    await _store(client).put("keys:RS256", "[]", None)
    client.set.assert_awaited_once_with("keys:RS256", "[]")


async def test_put_rejects_non_positive_ttl():
    with pytest.raises(ValueError):
        await _store(AsyncMock()).put("k", "v", 0)


async def test_take_uses_getdel():
    client = AsyncMock()
    client.getdel.return_value = "payload"
    assert await _store(client).take("session:n1") == "payload"
    client.getdel.assert_awaited_once_with("session:n1")
    client.eval.assert_not_awaited()


async def test_take_falls_back_to_lua_on_old_servers():
    client = AsyncMock()
    client.getdel.side_effect = ResponseError("ERR unknown command 'GETDEL'")
    client.eval.return_value = "payload"
    assert await _store(client).take("session:n1") == "payload"
    script, numkeys, key = client.eval.await_args.args
    assert "DEL" in script
    assert (numkeys, key) == (1, "session:n1")


async def test_take_does_not_mask_other_response_errors():
    client = AsyncMock()
    client.getdel.side_effect = ResponseError("WRONGTYPE Operation against a key")
    with pytest.raises(StoreError):
        await _store(client).take("session:n1")
    client.eval.assert_not_awaited()


async def test_increment_runs_atomic_script():
    client = AsyncMock()
    client.eval.return_value = 3
    assert await _store(client).increment_with_expiry("ratelimit:abc", 60) == 3
    script, numkeys, key, ttl = client.eval.await_args.args
    assert "INCR" in script and "EXPIRE" in script
    assert (numkeys, key, ttl) == (1, "ratelimit:abc", 60)


async def test_connection_failures_become_store_errors():
    client = AsyncMock()
    client.get.side_effect = RedisConnectionError("connection refused")
    client.set.side_effect = RedisConnectionError("connection refused")
    client.eval.side_effect = RedisConnectionError("connection refused")
    store = _store(client)
    with pytest.raises(StoreError):
        await store.get("k")
    with pytest.raises(StoreError):
        await store.put("k", "v", 10)
    with pytest.raises(StoreError):
        await store.increment_with_expiry("k", 10)


async def test_os_errors_become_store_errors():
    client = AsyncMock()
    client.getdel.side_effect = OSError("network unreachable")
    with pytest.raises(StoreError):
        await _store(client).take("k")


async def test_ping_failure_is_store_error():
    client = AsyncMock()
    client.ping.side_effect = RedisConnectionError("down")
    with pytest.raises(StoreError):
        await _store(client).ping()


async def test_increment_script_only_sets_expiry_for_new_keys():
    client = AsyncMock()
    client.eval.return_value = 1
    await _store(client).increment_with_expiry("ratelimit:abc", 60)
    script = client.eval.await_args.args[0]
    assert "count == 1 then" in script
    assert "TTL" not in script


def test_public_surface_is_the_store_protocol():
    public = {
        name
        for name in dir(RedisStore)
        if not name.startswith("_") and callable(getattr(RedisStore, name))
    }
    assert public == {"put", "get", "take", "increment_with_expiry", "delete", "ping", "close"}
