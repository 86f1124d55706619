from fastapi import APIRouter, Depends, Query, Request

from opscache.cache.tagged import TaggedCache
from opscache.core.config import SettingsDep
from opscache.jobs.retention import RetentionSweeper
from opscache.metrics.aggregator import MetricsAggregator
from opscache.metrics.models import AggregateSummary, TimeRange
from opscache.services import Services

router = APIRouter(prefix="/monitoring", tags=["monitoring"])


def get_services(request: Request) -> Services:
    return request.app.state.services


def get_aggregator(services: Services = Depends(get_services)) -> MetricsAggregator:
    return services.aggregator


def get_cache(services: Services = Depends(get_services)) -> TaggedCache:
    return services.cache


def get_sweeper(services: Services = Depends(get_services)) -> RetentionSweeper:
    return services.sweeper


@router.get("/performance")
async def performance_report(
    time_range: int = Query(default=3600, ge=1),
    aggregator: MetricsAggregator = Depends(get_aggregator),
):
    """Combined API, database, cache and job summaries"""
    return await aggregator.performance_report(time_range)


@router.get("/metrics/{family}", response_model=AggregateSummary)
async def family_metrics(
    family: str,
    time_range: int = Query(default=3600, ge=1),
    dimension: str | None = None,
    aggregator: MetricsAggregator = Depends(get_aggregator),
):
    window = TimeRange.last(time_range, aggregator.clock())
    return await aggregator.query(family, window, dimension=dimension)


@router.get("/metrics/{family}/dimensions", response_model=dict[str, AggregateSummary])
async def family_dimensions(
    family: str,
    time_range: int = Query(default=3600, ge=1),
    aggregator: MetricsAggregator = Depends(get_aggregator),
):
    window = TimeRange.last(time_range, aggregator.clock())
    return await aggregator.dimensions(family, window)


@router.get("/cache")
async def cache_stats(cache: TaggedCache = Depends(get_cache)):
    return await cache.stats()


@router.post("/cleanup")
async def cleanup_metrics(
    settings: SettingsDep,
    older_than: int | None = Query(default=None, ge=0),
    aggregator: MetricsAggregator = Depends(get_aggregator),
):
    """Delete metric buckets older than `older_than` seconds (default: the retention horizon)"""
    if older_than is None:
        older_than = settings.metrics_retention_seconds
    result = await aggregator.cleanup_older_than(older_than)
    return {"examined": result.examined, "deleted": result.deleted, "older_than": older_than}


@router.post("/sweep")
async def run_sweep(sweeper: RetentionSweeper = Depends(get_sweeper)):
    report = await sweeper.run_sweep()
    return report.to_dict()


@router.delete("/cache/scopes/{scope_type}/{scope_id}")
async def invalidate_scope(
    scope_type: str, scope_id: str, cache: TaggedCache = Depends(get_cache)
):
    deleted = await cache.invalidate_scope(scope_type, scope_id)
    return {"scope": f"{scope_type}:{scope_id}", "deleted": deleted}


@router.delete("/cache/tags/{tag:path}")
async def invalidate_tag(tag: str, cache: TaggedCache = Depends(get_cache)):
    deleted = await cache.invalidate_by_tag(tag)
    return {"tag": tag, "deleted": deleted}
