"""Behaviour every store backend must share."""

import asyncio
import os
import uuid

import pytest
from redis import Redis
from redis.exceptions import RedisError

from portier_broker.storage.memory import MemoryStore
from portier_broker.storage.redis_cache import RedisStore
from portier_broker.storage.sqlite import SqliteStore

TEST_REDIS_URL = os.getenv("TEST_REDIS_URL")


def _redis_reachable() -> bool:
    if not TEST_REDIS_URL:
        return False
    client = Redis.from_url(TEST_REDIS_URL, socket_connect_timeout=0.5)
    try:
        client.ping()
        return True
    except RedisError:
        return False
    finally:
        client.close()


@pytest.fixture(
    params=[
        "memory",
        "sqlite",
        pytest.param(
            "redis",
            marks=pytest.mark.skipif(not _redis_reachable(), reason="TEST_REDIS_URL not reachable"),
        ),
    ]
)
def backend(request, tmp_path, clock):
    """Yield (store, clock); clock is None where expiry is server-driven."""
    if request.param == "memory":
        return MemoryStore(clock=clock), clock
    if request.param == "sqlite":
        return SqliteStore(str(tmp_path / "broker.sqlite3"), clock=clock), clock
    return RedisStore(TEST_REDIS_URL), None


def _key(name: str) -> str:
    return f"test:{uuid.uuid4().hex}:{name}"


async def test_put_then_get_round_trips(backend):
    store, _ = backend
    key = _key("a")
    await store.put(key, "value", 60)
    assert await store.get(key) == "value"
    await store.close()


async def test_get_missing_returns_none(backend):
    store, _ = backend
    assert await store.get(_key("missing")) is None
    await store.close()


async def test_put_overwrites_value_and_expiry(backend):
    store, clock = backend
    key = _key("overwrite")
    await store.put(key, "first", 10)
    await store.put(key, "second", 100)
    if clock is not None:
        clock.advance(50)
    assert await store.get(key) == "second"
    await store.close()


async def test_entries_expire_after_ttl(backend):
    store, clock = backend
    if clock is None:
        pytest.skip("expiry is driven by the server clock")
    key = _key("ttl")
    await store.put(key, "value", 30)
    clock.advance(29)
    assert await store.get(key) == "value"
    clock.advance(2)
    assert await store.get(key) is None
    assert await store.take(key) is None


async def test_entries_without_ttl_do_not_expire(backend):
    store, clock = backend
    key = _key("forever")
    await store.put(key, "value", None)
    if clock is not None:
        clock.advance(10 * 365 * 86400)
    assert await store.get(key) == "value"
    await store.delete(key)
    await store.close()


async def test_take_returns_value_once(backend):
    store, _ = backend
    key = _key("take")
    await store.put(key, "payload", 60)
    assert await store.take(key) == "payload"
    assert await store.take(key) is None
    assert await store.get(key) is None
    await store.close()


async def test_concurrent_take_has_single_winner(backend):
    store, _ = backend
    key = _key("race")
    await store.put(key, "payload", 60)
    results = await asyncio.gather(*(store.take(key) for _ in range(20)))
    assert results.count("payload") == 1
    assert results.count(None) == 19
    await store.close()


async def test_increment_counts_from_one(backend):
    store, _ = backend
    key = _key("counter")
    assert [await store.increment_with_expiry(key, 60) for _ in range(3)] == [1, 2, 3]
    await store.delete(key)
    await store.close()


async def test_increment_window_is_anchored_at_first_increment(backend):
    store, clock = backend
    if clock is None:
        pytest.skip("expiry is driven by the server clock")
    key = _key("window")
    assert await store.increment_with_expiry(key, 60) == 1
    clock.advance(45)
    # Later increments must not extend the window
    assert await store.increment_with_expiry(key, 60) == 2
    clock.advance(16)
    assert await store.increment_with_expiry(key, 60) == 1


async def test_increment_keeps_existing_expiry(backend):
    store, clock = backend
    key = _key("persistent-counter")
    await store.put(key, "5", None)
    assert await store.increment_with_expiry(key, 1) == 6
    if clock is not None:
        clock.advance(10)
    else:
        await asyncio.sleep(1.5)
    assert await store.get(key) == "6"
    await store.delete(key)
    await store.close()


async def test_concurrent_increments_are_atomic(backend):
    store, _ = backend
    key = _key("atomic")
    counts = await asyncio.gather(*(store.increment_with_expiry(key, 60) for _ in range(25)))
    assert sorted(counts) == list(range(1, 26))
    await store.delete(key)
    await store.close()


async def test_delete_removes_key(backend):
    store, _ = backend
    key = _key("delete")
    await store.put(key, "value", 60)
    await store.delete(key)
    assert await store.get(key) is None
    await store.delete(key)
    await store.close()


async def test_ping_succeeds(backend):
    store, _ = backend
    await store.ping()
    await store.close()


async def test_memory_store_purges_keys_that_are_never_read_again(clock):
    store = MemoryStore(clock=clock, purge_interval=60)
    for index in range(1000):
        await store.increment_with_expiry(f"ratelimit:{index}", 60)
    clock.advance(3600)
    await store.put("session:n1", "{}", 900)
    assert len(store._entries) == 1
    assert await store.get("session:n1") == "{}"


async def test_memory_store_purge_is_rate_limited(clock):
    store = MemoryStore(clock=clock, purge_interval=60)
    await store.put("a", "1", 5)
    clock.advance(10)
    await store.put("b", "2", 5)
    # Expired but the interval has not elapsed since construction
    assert "a" in store._entries
    clock.advance(50)
    await store.put("c", "3", 5)
    assert "a" not in store._entries
    assert "b" not in store._entries
    assert store.purge_expired() == 0
