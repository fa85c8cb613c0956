"""Tests for debounce_buffer.store module."""

import asyncio
from unittest.mock import AsyncMock, MagicMock

import pytest
from redis.exceptions import WatchError

from debounce_buffer.errors import StoreUnavailable
from debounce_buffer.store import MAX_UPDATE_ATTEMPTS, InMemoryStore, RedisStore


@pytest.fixture
def store():
    return InMemoryStore()


# --- InMemoryStore ---


async def test_get_missing(store):
    assert await store.get("nope") is None


async def test_set_and_get(store):
    await store.set("k", "v", ttl=10)
    assert await store.get("k") == "v"
    assert 9 <= store.ttl("k") <= 10


async def test_set_replaces_whole_value(store):
    await store.set("k", "v1", ttl=10)
    await store.set("k", "v2", ttl=20)
    assert await store.get("k") == "v2"


async def test_ttl_expiry(store):
    await store.set("k", "v", ttl=1)
    store._values["k"] = ("v", 0.0)
    assert await store.get("k") is None


async def test_set_if_absent_single_winner(store):
    results = await asyncio.gather(*(store.set_if_absent("k", str(i), 10) for i in range(5)))
    assert results.count(True) == 1
    winner = results.index(True)
    assert await store.get("k") == str(winner)


async def test_update_creates_and_deletes(store):
    assert await store.update("k", lambda cur: ("1", 10)) == "1"
    assert await store.update("k", lambda cur: (str(int(cur) + 1), 10)) == "2"
    assert await store.update("k", lambda cur: None) is None
    assert await store.get("k") is None


async def test_concurrent_updates_lose_nothing(store):
    await store.set("counter", "0", ttl=10)

    async def bump():
        await store.update("counter", lambda cur: (str(int(cur) + 1), 10))

    await asyncio.gather(*(bump() for _ in range(50)))
    assert await store.get("counter") == "50"


async def test_delete_counts(store):
    await store.set("a", "1", 10)
    await store.append_log("log", {"x": "1"})
    assert await store.delete("a", "log", "missing") == 2
    assert await store.read_log("log") == []


async def test_log_append_and_trim(store):
    ids = [await store.append_log("log", {"n": str(i)}) for i in range(5)]
    assert len(set(ids)) == 5
    await store.trim_log("log", 3)
    entries = await store.read_log("log")
    assert [fields["n"] for _, fields in entries] == ["2", "3", "4"]


async def test_log_ids_monotonic(store):
    ids = [await store.append_log("log", {}) for _ in range(20)]
    parsed = [tuple(int(p) for p in i.split("-")) for i in ids]
    assert parsed == sorted(parsed)


async def test_read_log_since(store):
    await store.append_log("log", {"n": "old"})
    store._logs["log"][0] = ("1000-0", {"n": "old"})
    await store.append_log("log", {"n": "new"})
    entries = await store.read_log("log", since_ms=2000)
    assert [fields["n"] for _, fields in entries] == ["new"]


async def test_scan(store):
    await store.set("buffer:state:a", "1", 10)
    await store.set("buffer:state:b", "1", 10)
    await store.set("buffer:cancel:a", "1", 10)
    assert sorted(await store.scan("buffer:state:*")) == ["buffer:state:a", "buffer:state:b"]


# --- RedisStore ---


@pytest.fixture
def redis_client():
    client = MagicMock()
    client.get = AsyncMock(return_value=None)
    client.set = AsyncMock(return_value=True)
    client.delete = AsyncMock(return_value=1)
    client.xadd = AsyncMock(return_value="1-0")
    client.xtrim = AsyncMock(return_value=0)
    client.xrange = AsyncMock(return_value=[])
    client.aclose = AsyncMock()
    return client


def _pipeline(client, current, execute_side_effect=None):
    pipe = MagicMock()
    pipe.__aenter__ = AsyncMock(return_value=pipe)
    pipe.__aexit__ = AsyncMock(return_value=False)
    pipe.watch = AsyncMock()
    pipe.get = AsyncMock(return_value=current)
    pipe.execute = AsyncMock(side_effect=execute_side_effect, return_value=[True])
    client.pipeline = MagicMock(return_value=pipe)
    return pipe


async def test_redis_set_uses_ttl(redis_client):
    store = RedisStore(redis_client)
    await store.set("k", "v", 30)
    redis_client.set.assert_awaited_once_with("k", "v", ex=30)


async def test_redis_set_if_absent(redis_client):
    store = RedisStore(redis_client)
    assert await store.set_if_absent("k", "v", 30) is True
    redis_client.set.assert_awaited_once_with("k", "v", ex=30, nx=True)
    redis_client.set.return_value = None
    assert await store.set_if_absent("k", "v", 30) is False


async def test_redis_update_writes_in_transaction(redis_client):
    pipe = _pipeline(redis_client, current="old")
    store = RedisStore(redis_client)
    written = await store.update("k", lambda cur: (cur + "+new", 15))
    assert written == "old+new"
    redis_client.pipeline.assert_called_once_with(transaction=True)
    pipe.watch.assert_awaited_with("k")
    pipe.multi.assert_called_once()
    pipe.set.assert_called_once_with("k", "old+new", ex=15)
    pipe.execute.assert_awaited_once()


async def test_redis_update_delete(redis_client):
    pipe = _pipeline(redis_client, current="old")
    store = RedisStore(redis_client)
    assert await store.update("k", lambda cur: None) is None
    pipe.delete.assert_called_once_with("k")


async def test_redis_update_retries_on_conflict(redis_client):
    pipe = _pipeline(redis_client, current="x", execute_side_effect=[WatchError(), [True]])
    calls = []

    def fn(cur):
        calls.append(cur)
        return ("y", 5)

    store = RedisStore(redis_client)
    assert await store.update("k", fn) == "y"
    assert len(calls) == 2
    assert pipe.execute.await_count == 2


async def test_redis_update_gives_up(redis_client):
    _pipeline(redis_client, current="x", execute_side_effect=WatchError())
    store = RedisStore(redis_client)
    with pytest.raises(StoreUnavailable) as exc_info:
        await store.update("k", lambda cur: ("y", 5))
    assert exc_info.value.attempts == MAX_UPDATE_ATTEMPTS


async def test_redis_log_operations(redis_client):
    store = RedisStore(redis_client)
    assert await store.append_log("log", {"a": "1"}) == "1-0"
    await store.trim_log("log", 100)
    await store.read_log("log", since_ms=5000)
    redis_client.xadd.assert_awaited_once_with("log", {"a": "1"})
    redis_client.xtrim.assert_awaited_once_with("log", maxlen=100, approximate=True)
    redis_client.xrange.assert_awaited_once_with("log", min="5000", max="+")


async def test_redis_delete_no_keys(redis_client):
    store = RedisStore(redis_client)
    assert await store.delete() == 0
    redis_client.delete.assert_not_called()


async def test_redis_scan(redis_client):
    async def keys(match):
        for key in ["buffer:state:a", "buffer:state:b"]:
            yield key

    redis_client.scan_iter = keys
    store = RedisStore(redis_client)
    assert await store.scan("buffer:state:*") == ["buffer:state:a", "buffer:state:b"]


async def test_redis_close(redis_client):
    store = RedisStore(redis_client)
    await store.close()
    redis_client.aclose.assert_awaited_once()
