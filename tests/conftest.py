import asyncio
from unittest.mock import AsyncMock, MagicMock

import fakeredis
import pytest
import pytest_asyncio
from redis.exceptions import ConnectionError as RedisConnectionError

from opscache.cache.tagged import TaggedCache
from opscache.metrics.aggregator import MetricsAggregator
from opscache.store.client import StoreClient

# 2024-01-01T00:00:00Z, exactly on a 300s bucket boundary
BASE_TS = 1_704_067_200.0


class FrozenClock:
    """Manually advanced clock for bucket arithmetic."""

    def __init__(self, now: float = BASE_TS + 60):
        self.now = now

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


@pytest.fixture
def clock():
    return FrozenClock()


@pytest_asyncio.fixture
async def redis():
    client = fakeredis.FakeAsyncRedis(decode_responses=True)
    yield client
    await client.flushall()
    await client.aclose()


@pytest.fixture
def store(redis):
    return StoreClient(redis, timeout=1.0, scan_count=50)


@pytest.fixture
def aggregator(store, clock):
    return MetricsAggregator(store, clock=clock)


@pytest.fixture
def cache(store, clock):
    return TaggedCache(store, clock=clock)


def make_broken_redis() -> MagicMock:
    """A Redis stand-in whose every command fails as if the server were down."""
    down = RedisConnectionError("Connection refused")
    broken = MagicMock()
    for command in (
        "get",
        "mget",
        "set",
        "delete",
        "ttl",
        "type",
        "scan",
        "smembers",
        "zscore",
        "zrem",
        "zremrangebyscore",
        "dbsize",
        "ping",
        "info",
    ):
        setattr(broken, command, AsyncMock(side_effect=down))
    pipe = MagicMock()
    pipe.execute = AsyncMock(side_effect=down)
    broken.pipeline.return_value = pipe
    return broken


@pytest.fixture
def broken_store():
    return StoreClient(make_broken_redis(), timeout=1.0)


@pytest.fixture
def slow_store():
    async def hang(*args, **kwargs):
        await asyncio.sleep(5)

    slow = make_broken_redis()
    slow.get = AsyncMock(side_effect=hang)
    return StoreClient(slow, timeout=0.01)
