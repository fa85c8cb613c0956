"""Store adapters: the shared key-value/log store all invocations coordinate through."""

import abc
import asyncio
import fnmatch
import logging
import math
import time
from collections.abc import Callable

import redis.asyncio as aioredis
from redis.exceptions import WatchError

from debounce_buffer.errors import StoreUnavailable

logger = logging.getLogger(__name__)

# fn(current) -> (value, ttl_seconds) to write, or None to delete
Mutation = Callable[[str | None], tuple[str, int] | None]

LogEntry = tuple[str, dict[str, str]]

MAX_UPDATE_ATTEMPTS = 16


class BufferStore(abc.ABC):
    """Minimal contract the coordinator needs from the backing store."""

    @abc.abstractmethod
    async def get(self, key: str) -> str | None: ...

    @abc.abstractmethod
    async def set(self, key: str, value: str, ttl: int) -> None:
        """Replace the whole value and its expiry."""

    @abc.abstractmethod
    async def set_if_absent(self, key: str, value: str, ttl: int) -> bool:
        """Create the key only if it does not exist. True if this call created it."""

    @abc.abstractmethod
    async def update(self, key: str, fn: Mutation) -> str | None:
        """Atomically read, transform and write back a key.

        ``fn`` receives the current value (or None) and returns the new
        ``(value, ttl)`` or None to delete. It may run more than once when a
        concurrent writer wins, so it must not have side effects beyond its
        return value. Returns the value written, or None if deleted.
        """

    @abc.abstractmethod
    async def delete(self, *keys: str) -> int: ...

    @abc.abstractmethod
    async def append_log(self, key: str, fields: dict[str, str]) -> str: ...

    @abc.abstractmethod
    async def trim_log(self, key: str, max_length: int) -> None: ...

    @abc.abstractmethod
    async def read_log(self, key: str, since_ms: int | None = None) -> list[LogEntry]: ...

    @abc.abstractmethod
    async def scan(self, pattern: str) -> list[str]: ...

    async def close(self) -> None:
        pass


class RedisStore(BufferStore):
    """Redis-backed store using redis.asyncio."""

    def __init__(self, client: aioredis.Redis) -> None:
        self._client = client

    @classmethod
    def from_url(cls, url: str, **kwargs) -> "RedisStore":
        client = aioredis.from_url(url, encoding="utf-8", decode_responses=True, **kwargs)
        return cls(client)

    async def get(self, key: str) -> str | None:
        return await self._client.get(key)

    async def set(self, key: str, value: str, ttl: int) -> None:
        await self._client.set(key, value, ex=ttl)

    async def set_if_absent(self, key: str, value: str, ttl: int) -> bool:
        created = await self._client.set(key, value, ex=ttl, nx=True)
        return bool(created)

    async def update(self, key: str, fn: Mutation) -> str | None:
        async with self._client.pipeline(transaction=True) as pipe:
            for attempt in range(MAX_UPDATE_ATTEMPTS):
                try:
                    await pipe.watch(key)
                    current = await pipe.get(key)
                    result = fn(current)
                    pipe.multi()
                    if result is None:
                        pipe.delete(key)
                    else:
                        pipe.set(key, result[0], ex=result[1])
                    await pipe.execute()
                    return None if result is None else result[0]
                except WatchError:
                    logger.debug("Concurrent write on %s, retrying (attempt %d)", key, attempt + 1)
                    continue
        raise StoreUnavailable(
            f"Gave up updating {key} after {MAX_UPDATE_ATTEMPTS} conflicting writes",
            attempts=MAX_UPDATE_ATTEMPTS,
        )

    async def delete(self, *keys: str) -> int:
        if not keys:
            return 0
        return await self._client.delete(*keys)

    async def append_log(self, key: str, fields: dict[str, str]) -> str:
        return await self._client.xadd(key, fields)

    async def trim_log(self, key: str, max_length: int) -> None:
        await self._client.xtrim(key, maxlen=max_length, approximate=True)

    async def read_log(self, key: str, since_ms: int | None = None) -> list[LogEntry]:
        start = "-" if since_ms is None else str(since_ms)
        return await self._client.xrange(key, min=start, max="+")

    async def scan(self, pattern: str) -> list[str]:
        return [key async for key in self._client.scan_iter(match=pattern)]

    async def close(self) -> None:
        await self._client.aclose()


class InMemoryStore(BufferStore):
    """Single-process store with the same semantics as RedisStore."""

    def __init__(self) -> None:
        self._values: dict[str, tuple[str, float]] = {}
        self._logs: dict[str, list[LogEntry]] = {}
        self._last_log_id = (0, 0)
        self._lock = asyncio.Lock()

    def _live(self, key: str) -> str | None:
        item = self._values.get(key)
        if item is None:
            return None
        value, expires_at = item
        if time.time() >= expires_at:
            del self._values[key]
            return None
        return value

    def _put(self, key: str, value: str, ttl: int) -> None:
        self._values[key] = (value, time.time() + ttl)

    async def get(self, key: str) -> str | None:
        async with self._lock:
            return self._live(key)

    async def set(self, key: str, value: str, ttl: int) -> None:
        async with self._lock:
            self._put(key, value, ttl)

    async def set_if_absent(self, key: str, value: str, ttl: int) -> bool:
        async with self._lock:
            if self._live(key) is not None:
                return False
            self._put(key, value, ttl)
            return True

    async def update(self, key: str, fn: Mutation) -> str | None:
        async with self._lock:
            result = fn(self._live(key))
            if result is None:
                self._values.pop(key, None)
                return None
            self._put(key, result[0], result[1])
            return result[0]

    async def delete(self, *keys: str) -> int:
        async with self._lock:
            removed = 0
            for key in keys:
                if self._live(key) is not None:
                    del self._values[key]
                    removed += 1
                if self._logs.pop(key, None) is not None:
                    removed += 1
            return removed

    def ttl(self, key: str) -> int | None:
        """Remaining lifetime of a key in whole seconds, None if absent."""
        item = self._values.get(key)
        if item is None:
            return None
        return max(0, math.ceil(item[1] - time.time()))

    def _next_log_id(self) -> str:
        ms = int(time.time() * 1000)
        last_ms, last_seq = self._last_log_id
        if ms > last_ms:
            self._last_log_id = (ms, 0)
        else:
            self._last_log_id = (last_ms, last_seq + 1)
        return "%d-%d" % self._last_log_id

    async def append_log(self, key: str, fields: dict[str, str]) -> str:
        async with self._lock:
            entry_id = self._next_log_id()
            self._logs.setdefault(key, []).append((entry_id, dict(fields)))
            return entry_id

    async def trim_log(self, key: str, max_length: int) -> None:
        async with self._lock:
            entries = self._logs.get(key)
            if entries and len(entries) > max_length:
                del entries[: len(entries) - max_length]

    async def read_log(self, key: str, since_ms: int | None = None) -> list[LogEntry]:
        async with self._lock:
            entries = list(self._logs.get(key, []))
        if since_ms is None:
            return entries
        return [e for e in entries if int(e[0].split("-")[0]) >= since_ms]

    async def scan(self, pattern: str) -> list[str]:
        async with self._lock:
            keys = [k for k in list(self._values) if self._live(k) is not None]
            keys.extend(self._logs)
        return [k for k in keys if fnmatch.fnmatchcase(k, pattern)]
