"""Explicit wiring of the store-backed services. Built once at process start."""

from dataclasses import dataclass

from opscache.cache.tagged import TaggedCache
from opscache.core.config import Settings
from opscache.jobs.retention import RetentionSweeper
from opscache.metrics.aggregator import MetricsAggregator
from opscache.store.client import StoreClient


@dataclass
class Services:
    store: StoreClient
    aggregator: MetricsAggregator
    cache: TaggedCache
    sweeper: RetentionSweeper

    async def close(self) -> None:
        await self.sweeper.stop()
        await self.store.close()


def build_services(settings: Settings, store: StoreClient | None = None) -> Services:
    store = store or StoreClient.from_settings(settings)
    aggregator = MetricsAggregator(
        store,
        bucket_width=settings.bucket_width_seconds,
        bucket_ttl=settings.bucket_ttl_seconds,
    )
    cache = TaggedCache(
        store,
        default_ttl=settings.default_cache_ttl_seconds,
        tag_index_ttl=settings.tag_index_ttl_seconds,
        version=settings.cache_version,
    )
    sweeper = RetentionSweeper.from_settings(settings, store, aggregator)
    return Services(store=store, aggregator=aggregator, cache=cache, sweeper=sweeper)
