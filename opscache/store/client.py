from __future__ import annotations

import asyncio
import logging
from typing import Any, AsyncIterator, Awaitable

from cachetools import TTLCache
from redis.asyncio import Redis, RedisError

from opscache.core.config import Settings
from opscache.core.errors import CorruptionError, StoreUnavailable

logger = logging.getLogger(__name__)


class MemoryPressureProbe:
    """
    Reads Redis memory usage and turns it into a 0-10 pressure level.

    Levels:
    - 0-4: Normal operation
    - 5-6: Moderate pressure
    - 7-8: High pressure
    - 9-10: Critical, evictions likely under the configured policy

    The INFO reading is memoised for ``refresh_interval`` seconds so that
    health polling does not turn into INFO spam.
    """

    def __init__(self, redis: Redis, refresh_interval: int = 5):
        self.redis = redis
        self._readings: TTLCache = TTLCache(maxsize=1, ttl=refresh_interval)

    async def check(self) -> dict:
        """Return the current memory reading, cached for the refresh interval."""
        cached = self._readings.get("memory")
        if cached is not None:
            return cached

        info = await self.redis.info("memory")
        used = info.get("used_memory", 0)
        maxm = info.get("maxmemory", 0)
        result = {
            "level": 0,
            "ratio": None,
            "policy": info.get("maxmemory_policy", "noeviction"),
            "used_mb": used / (1024 * 1024),
            "used_human": info.get("used_memory_human"),
        }

        if maxm:
            ratio = used / maxm
            result.update(
                level=int(min(ratio * 10, 10)),
                ratio=ratio,
                max_mb=maxm / (1024 * 1024),
            )
            if result["level"] >= 9:
                logger.warning(
                    "Redis memory critical: level=%s ratio=%.1f%% policy=%s",
                    result["level"],
                    ratio * 100,
                    result["policy"],
                )
            elif result["level"] >= 7:
                logger.info(
                    "Redis memory high: level=%s ratio=%.1f%%",
                    result["level"],
                    ratio * 100,
                )

        self._readings["memory"] = result
        return result


class StoreClient:
    """
    Thin async wrapper over the shared Redis store.

    Every round trip is bounded by ``timeout`` seconds and every failure
    (Redis error, timeout, socket error) surfaces as ``StoreUnavailable``.
    Callers decide whether to swallow it (read paths) or propagate it
    (invalidation paths).
    """

    def __init__(
        self,
        redis: Redis,
        timeout: float = 0.25,
        scan_count: int = 500,
        pressure_refresh_seconds: int = 5,
    ):
        self.redis = redis
        self.timeout = timeout
        self.scan_count = scan_count
        self._probe = MemoryPressureProbe(redis, pressure_refresh_seconds)

    @classmethod
    def from_settings(cls, settings: Settings) -> "StoreClient":
        redis = Redis.from_url(
            settings.redis_dsn,
            encoding="utf-8",
            decode_responses=True,
            max_connections=settings.redis_pool_size,
            socket_connect_timeout=settings.store_connect_timeout_seconds,
            socket_timeout=settings.store_timeout_seconds,
            socket_keepalive=True,
            health_check_interval=30,
        )
        return cls(
            redis,
            timeout=settings.store_timeout_seconds,
            scan_count=settings.scan_count,
            pressure_refresh_seconds=settings.pressure_refresh_seconds,
        )

    async def _call(
        self, operation: str, awaitable: Awaitable[Any], key: str | None = None
    ) -> Any:
        try:
            return await asyncio.wait_for(awaitable, timeout=self.timeout)
        except (RedisError, asyncio.TimeoutError, OSError) as e:
            raise StoreUnavailable(operation, e) from e
        except UnicodeDecodeError as e:
            raise CorruptionError(key or operation, f"reply is not valid UTF-8 ({e.reason})") from e

    async def get(self, key: str) -> str | None:
        """Raises ``CorruptionError`` when the stored bytes are not UTF-8."""
        return await self._call("GET", self.redis.get(key), key=key)

    async def get_many(self, keys: list[str]) -> list[str | None]:
        """
        MGET ``keys`` in chunks of ``scan_count``, one round trip per chunk.

        One undecodable value fails its whole chunk with ``CorruptionError``;
        callers fall back to single ``get`` calls to find it.
        """
        values: list[str | None] = []
        for start in range(0, len(keys), self.scan_count):
            chunk = keys[start : start + self.scan_count]
            values.extend(await self._call("MGET", self.redis.mget(chunk)))
        return values

    async def set(self, key: str, value: str, ex: int | None = None) -> None:
        await self._call("SET", self.redis.set(key, value, ex=ex))

    async def delete(self, *keys: str) -> int:
        """Delete keys, returning how many existed. Missing keys are a no-op."""
        if not keys:
            return 0
        return await self._call("DEL", self.redis.delete(*keys))

    async def ttl(self, key: str) -> int:
        return await self._call("TTL", self.redis.ttl(key))

    async def key_type(self, key: str) -> str:
        return await self._call("TYPE", self.redis.type(key))

    async def scan(self, match: str) -> AsyncIterator[list[str]]:
        """
        Yield batches of keys matching a glob pattern using the SCAN cursor.

        Each batch is one bounded round trip; the keyspace is never walked
        with KEYS.
        """
        cursor = 0
        while True:
            cursor, keys = await self._call(
                "SCAN", self.redis.scan(cursor, match=match, count=self.scan_count)
            )
            if keys:
                yield keys
            if cursor == 0:
                break

    async def members(self, key: str) -> set[str]:
        return await self._call("SMEMBERS", self.redis.smembers(key))

    async def write_batch(self, commands: list[tuple[str, tuple, dict]]) -> None:
        """Run ``(method, args, kwargs)`` commands in one non-transactional pipeline."""
        pipe = self.redis.pipeline(transaction=False)
        for method, args, kwargs in commands:
            getattr(pipe, method)(*args, **kwargs)
        await self._call("PIPELINE", pipe.execute())

    async def score(self, key: str, member: str) -> float | None:
        return await self._call("ZSCORE", self.redis.zscore(key, member))

    async def remove_members(self, key: str, *members: str) -> int:
        if not members:
            return 0
        return await self._call("ZREM", self.redis.zrem(key, *members))

    async def remove_scores_below(self, key: str, cutoff: float) -> int:
        return await self._call(
            "ZREMRANGEBYSCORE", self.redis.zremrangebyscore(key, "-inf", f"({cutoff}")
        )

    async def dbsize(self) -> int:
        return await self._call("DBSIZE", self.redis.dbsize())

    async def ping(self) -> bool:
        try:
            return bool(await self._call("PING", self.redis.ping()))
        except StoreUnavailable as e:
            logger.error("Store ping failed: %s", e)
            return False

    async def health(self) -> dict:
        """Ping, key count and memory pressure; never raises."""
        healthy = await self.ping()
        if not healthy:
            return {"healthy": False}

        result: dict[str, Any] = {"healthy": True}
        try:
            result["total_keys"] = await self.dbsize()
            result["memory"] = await self._call("INFO", self._probe.check())
        except StoreUnavailable as e:
            logger.warning("Store health details unavailable: %s", e)
            result["error"] = str(e)
        return result

    async def close(self) -> None:
        """Graceful shutdown of store connections."""
        try:
            await self.redis.aclose()
            logger.info("Redis connection closed")
        except (RedisError, OSError) as e:
            logger.error("Error closing Redis: %s", e)
