import time
from functools import wraps
from typing import Callable, Iterable

from opscache.cache.tagged import TaggedCache
from opscache.metrics.aggregator import MetricsAggregator
from opscache.metrics.models import MetricFamily, Outcome


def cached(
    cache: TaggedCache,
    key_builder: Callable[..., str],
    ttl: int | None = None,
    tags_builder: Callable[..., Iterable[str]] | None = None,
):
    """
    Memoise an async function through ``TaggedCache.get_or_compute``.
    key_builder and tags_builder receive the same args/kwargs.
    Example:
      @cached(cache, lambda restaurant_id, day: f"dashboard_{restaurant_id}_{day}",
              ttl=ttl_for("dashboard"),
              tags_builder=lambda restaurant_id, day: [f"restaurant:{restaurant_id}"])
      async def dashboard(restaurant_id, day): ...
    """

    def decorator(fn: Callable):
        @wraps(fn)
        async def wrapper(*args, **kwargs):
            key = key_builder(*args, **kwargs)
            tags = list(tags_builder(*args, **kwargs)) if tags_builder else []

            # loader closure calls the wrapped function
            async def loader():
                value = await fn(*args, **kwargs)
                if hasattr(value, "model_dump"):
                    return value.model_dump(mode="json")
                return value

            return await cache.get_or_compute(key, ttl, tags, loader)

        return wrapper

    return decorator


def invalidates(
    cache: TaggedCache,
    key_builder: Callable[..., str] | None = None,
    tags_builder: Callable[..., Iterable[str]] | None = None,
):
    """Drop the affected key and tags before running a write."""

    def decorator(fn: Callable):
        @wraps(fn)
        async def wrapper(*args, **kwargs):
            if key_builder:
                await cache.delete(key_builder(*args, **kwargs))
            if tags_builder:
                await cache.invalidate_by_tag(*tags_builder(*args, **kwargs))
            return await fn(*args, **kwargs)

        return wrapper

    return decorator


def timed(
    aggregator: MetricsAggregator,
    family: MetricFamily | str,
    dimension: str | Callable[..., str],
):
    """Observe the wrapped coroutine's duration; an exception counts as a failure."""

    def decorator(fn: Callable):
        @wraps(fn)
        async def wrapper(*args, **kwargs):
            name = dimension(*args, **kwargs) if callable(dimension) else dimension
            started = time.perf_counter()
            outcome = Outcome.FAILURE
            try:
                result = await fn(*args, **kwargs)
                outcome = Outcome.SUCCESS
                return result
            finally:
                elapsed_ms = (time.perf_counter() - started) * 1000
                await aggregator.observe(family, name, elapsed_ms, outcome)

        return wrapper

    return decorator
