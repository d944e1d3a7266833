"""Shared monetary counters for the cost breaker.

Redis in production. The in-memory store is for local development and tests
(single worker only, counters are not shared across processes).
"""

import logging
import time
from collections.abc import Callable

import redis.asyncio as aioredis
from redis.exceptions import RedisError

logger = logging.getLogger(__name__)


class CounterStoreError(Exception):
    """The counter store could not be reached."""


class RedisCounterStore:
    """Counters kept in Redis. Only atomic INCRBYFLOAT/EXPIRE are used."""

    name = "redis"

    def __init__(self, client: aioredis.Redis):
        self._client = client

    @classmethod
    def from_url(cls, url: str) -> "RedisCounterStore":
        client = aioredis.from_url(
            url,
            encoding="utf-8",
            decode_responses=True,
            socket_connect_timeout=2,
            socket_timeout=2,
        )
        logger.info("Cost counters in Redis: %s", url.split("@")[-1])
        return cls(client)

    async def increment(self, key: str, amount: float, ttl_seconds: int) -> float:
        try:
            async with self._client.pipeline(transaction=True) as pipe:
                pipe.incrbyfloat(key, amount)
                pipe.expire(key, ttl_seconds)
                total, _ = await pipe.execute()
        except RedisError as exc:
            raise CounterStoreError(str(exc)) from exc
        return float(total)

    async def get(self, key: str) -> float:
        return (await self.get_many([key]))[0]

    async def get_many(self, keys: list[str]) -> list[float]:
        try:
            values = await self._client.mget(keys)
        except RedisError as exc:
            raise CounterStoreError(str(exc)) from exc
        return [float(v) if v is not None else 0.0 for v in values]

    async def ping(self) -> bool:
        try:
            return bool(await self._client.ping())
        except RedisError:
            return False

    async def close(self) -> None:
        await self._client.aclose()


class MemoryCounterStore:
    """In-process counters with the same interface. Expiry is checked on read."""

    name = "memory"

    def __init__(self, clock: Callable[[], float] = time.monotonic):
        self._clock = clock
        self._values: dict[str, tuple[float, float]] = {}  # key -> (value, expires_at)

    def _live(self, key: str) -> float:
        entry = self._values.get(key)
        if entry is None:
            return 0.0
        value, expires_at = entry
        if self._clock() >= expires_at:
            del self._values[key]
            return 0.0
        return value

    async def increment(self, key: str, amount: float, ttl_seconds: int) -> float:
        total = self._live(key) + amount
        self._values[key] = (total, self._clock() + ttl_seconds)
        return total

    async def get(self, key: str) -> float:
        return self._live(key)

    async def get_many(self, keys: list[str]) -> list[float]:
        return [self._live(key) for key in keys]

    async def ping(self) -> bool:
        return True

    async def close(self) -> None:
        self._values.clear()


CounterStore = RedisCounterStore | MemoryCounterStore


def create_counter_store(redis_url: str) -> CounterStore:
    if redis_url:
        return RedisCounterStore.from_url(redis_url)
    logger.warning("No Redis URL configured, cost counters are in-process only")
    return MemoryCounterStore()
