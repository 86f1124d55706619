"""Time-bucketed performance metrics kept in the shared store.

Observations land in 300-second buckets keyed
``{family}_metrics:{dimension}:{bucket_index}``. Each bucket holds one
``AggregateRecord`` that expires on its own after an hour.

The per-observation update is a plain read-modify-write (GET, merge, SET EX)
with no transaction. Two writers hitting the same bucket at the same moment
can lose one observation; counts are therefore approximate under
concurrency. Metrics favour availability over exactness, so this is kept
rather than replaced by WATCH/MULTI or server-side scripts.
"""

import logging
import math
import time
from datetime import datetime, timezone
from typing import AsyncIterator, Callable

from opscache.core.errors import (
    CorruptionError,
    OpsCacheError,
    StoreUnavailable,
    ValidationError,
)
from opscache.metrics.models import (
    AggregateRecord,
    AggregateSummary,
    CleanupResult,
    MetricFamily,
    Outcome,
    TimeRange,
    check_dimension,
    family_name,
)
from opscache.store.client import StoreClient

logger = logging.getLogger(__name__)

BUCKET_WIDTH_SECONDS = 300
BUCKET_TTL_SECONDS = 3600


def bucket_key(family: str, dimension: str, index: int) -> str:
    return f"{family}_metrics:{dimension}:{index}"


def family_pattern(family: str) -> str:
    return f"{family}_metrics:*"


def parse_bucket_key(family: str, key: str) -> tuple[str, int] | None:
    """Split a bucket key into ``(dimension, index)``; ``None`` if it is not one."""
    prefix = f"{family}_metrics:"
    if not key.startswith(prefix):
        return None
    dimension, sep, index = key[len(prefix):].rpartition(":")
    if not sep or not dimension:
        return None
    try:
        return dimension, int(index)
    except ValueError:
        return None


class MetricsAggregator:
    def __init__(
        self,
        store: StoreClient,
        bucket_width: int = BUCKET_WIDTH_SECONDS,
        bucket_ttl: int = BUCKET_TTL_SECONDS,
        clock: Callable[[], float] = time.time,
    ):
        self.store = store
        self.bucket_width = bucket_width
        self.bucket_ttl = bucket_ttl
        self.clock = clock

    def bucket_index(self, timestamp: float) -> int:
        return math.floor(timestamp / self.bucket_width)

    async def observe(
        self,
        family: MetricFamily | str,
        dimension: str,
        duration_ms: float,
        outcome: Outcome | str,
        at: float | None = None,
    ) -> None:
        """
        Record one observation into the bucket covering ``at`` (default now).

        Never raises: metrics must not break the request or job that emits
        them. Failures are logged and the observation is dropped.
        """
        try:
            name = family_name(family)
            check_dimension(dimension)
            outcome = Outcome(outcome)
            duration = float(duration_ms)
            if math.isnan(duration) or duration < 0:
                raise ValidationError(f"Invalid duration {duration_ms!r}")
        except (ValidationError, ValueError, TypeError) as e:
            logger.warning("Dropping malformed observation for %s: %s", family, e)
            return

        timestamp = self.clock() if at is None else at
        key = bucket_key(name, dimension, self.bucket_index(timestamp))
        observation = AggregateRecord.from_observation(duration, outcome)

        try:
            current = await self._read_bucket(key)
            merged = current.merge(observation) if current else observation
            await self.store.set(key, merged.to_json(), ex=self.bucket_ttl)
        except OpsCacheError as e:
            logger.error("Metric write failed for %s: %s", key, e)

    async def _read_bucket(self, key: str) -> AggregateRecord | None:
        try:
            raw = await self.store.get(key)
            if raw is None:
                return None
            return AggregateRecord.from_json(key, raw)
        except CorruptionError as e:
            # The next write replaces it.
            logger.warning("%s", e)
            return None

    async def query(
        self,
        family: MetricFamily | str,
        time_range: TimeRange,
        dimension: str | None = None,
    ) -> AggregateSummary:
        """
        Fold every bucket intersecting ``time_range`` into one summary.

        With a dimension and a range of at most ``scan_count`` buckets the
        keys are computed directly; otherwise the family's live keys are
        scanned and filtered by bucket index. Buckets are read with one MGET
        per batch. Missing buckets count as empty. Store failures degrade to
        whatever was read so far (possibly an empty summary).
        """
        name = family_name(family)
        if dimension is not None:
            check_dimension(dimension)

        total = AggregateRecord.empty()
        buckets = 0
        try:
            async for batch in self._bucket_batches(name, time_range, dimension):
                for _, record in await self._load_batch(batch):
                    total = total.merge(record)
                    buckets += 1
        except StoreUnavailable as e:
            logger.error("Metric query for %s degraded: %s", name, e)
        return AggregateSummary.from_record(total, buckets=buckets)

    async def dimensions(
        self, family: MetricFamily | str, time_range: TimeRange
    ) -> dict[str, AggregateSummary]:
        """Per-dimension summaries for a family over ``time_range``."""
        name = family_name(family)
        records: dict[str, AggregateRecord] = {}
        buckets: dict[str, int] = {}
        try:
            async for batch in self._bucket_batches(name, time_range, None):
                for key, record in await self._load_batch(batch):
                    dimension, _ = parse_bucket_key(name, key)
                    records[dimension] = records.get(
                        dimension, AggregateRecord.empty()
                    ).merge(record)
                    buckets[dimension] = buckets.get(dimension, 0) + 1
        except StoreUnavailable as e:
            logger.error("Dimension breakdown for %s degraded: %s", name, e)
        return {
            dimension: AggregateSummary.from_record(record, buckets=buckets[dimension])
            for dimension, record in sorted(records.items())
        }

    async def _bucket_batches(
        self, family: str, time_range: TimeRange, dimension: str | None
    ) -> AsyncIterator[list[str]]:
        indexes = time_range.bucket_indexes(self.bucket_width)
        if not indexes:
            return
        if dimension is not None and len(indexes) <= self.store.scan_count:
            yield [bucket_key(family, dimension, index) for index in indexes]
            return

        # Long ranges: walking the live keys is cheaper than one key per bucket.
        pattern = family_pattern(family) if dimension is None else f"{family}_metrics:{dimension}:*"
        async for batch in self.store.scan(pattern):
            keys = []
            for key in batch:
                parsed = parse_bucket_key(family, key)
                if not parsed or parsed[1] not in indexes:
                    continue
                if dimension is None or parsed[0] == dimension:
                    keys.append(key)
            if keys:
                yield keys

    async def _load_batch(self, keys: list[str]) -> list[tuple[str, AggregateRecord]]:
        """Read and parse a batch of buckets; corrupt ones are deleted and skipped."""
        try:
            raws = await self.store.get_many(keys)
        except CorruptionError as e:
            logger.warning("Batch read of %d buckets failed, reading one by one: %s", len(keys), e)
            raws = [await self._get_raw(key) for key in keys]

        loaded = []
        for key, raw in zip(keys, raws):
            if raw is None:
                continue
            try:
                loaded.append((key, AggregateRecord.from_json(key, raw)))
            except CorruptionError as e:
                await self._drop_corrupt(key, e)
        return loaded

    async def _get_raw(self, key: str) -> str | None:
        try:
            return await self.store.get(key)
        except CorruptionError as e:
            await self._drop_corrupt(key, e)
            return None

    async def _drop_corrupt(self, key: str, error: CorruptionError) -> None:
        logger.warning("Deleting %s", error)
        try:
            await self.store.delete(key)
        except StoreUnavailable as err:
            logger.warning("Could not delete corrupt bucket %s: %s", key, err)

    async def cleanup_older_than(
        self, age_seconds: float, family: MetricFamily | str | None = None
    ) -> CleanupResult:
        """
        Delete buckets that ended before ``now - age_seconds``.

        Writers only touch the current bucket, so a bucket older than the
        horizon is never in use. Safe to repeat. Store failures propagate.
        """
        if age_seconds < 0:
            raise ValidationError("Retention age must not be negative")
        families = [family_name(family)] if family else [f.value for f in MetricFamily]
        cutoff = self.bucket_index(self.clock() - age_seconds)

        examined = deleted = 0
        for name in families:
            async for batch in self.store.scan(family_pattern(name)):
                examined += len(batch)
                stale = []
                for key in batch:
                    parsed = parse_bucket_key(name, key)
                    if parsed and parsed[1] < cutoff:
                        stale.append(key)
                if stale:
                    deleted += await self.store.delete(*stale)

        if deleted:
            logger.info(
                "Removed %d metric buckets older than %ss (examined %d)",
                deleted,
                age_seconds,
                examined,
            )
        return CleanupResult(examined=examined, deleted=deleted)

    async def track_request(
        self, endpoint: str, duration_ms: float, status_code: int
    ) -> None:
        outcome = Outcome.SUCCESS if status_code < 400 else Outcome.FAILURE
        await self.observe(MetricFamily.API, endpoint, duration_ms, outcome)

    async def track_query(self, table: str | None, duration_ms: float, ok: bool = True) -> None:
        outcome = Outcome.SUCCESS if ok else Outcome.FAILURE
        await self.observe(MetricFamily.DB, table or "unknown", duration_ms, outcome)

    async def track_cache_operation(
        self, operation: str, hit: bool, duration_ms: float = 0.0
    ) -> None:
        outcome = Outcome.HIT if hit else Outcome.MISS
        await self.observe(MetricFamily.CACHE, operation, duration_ms, outcome)

    async def track_job(self, job_name: str, duration_ms: float, success: bool) -> None:
        outcome = Outcome.SUCCESS if success else Outcome.FAILURE
        await self.observe(MetricFamily.JOB, job_name, duration_ms, outcome)

    async def api_summary(self, seconds: float = 3600) -> dict:
        window = TimeRange.last(seconds, self.clock())
        summary = await self.query(MetricFamily.API, window)
        endpoints = await self.dimensions(MetricFamily.API, window)
        return {
            "total_requests": summary.count,
            "average_response_time": summary.avg_duration,
            "success_rate": summary.success_rate,
            "top_endpoints": _top(endpoints, key=lambda s: s.count),
        }

    async def database_summary(self, seconds: float = 3600) -> dict:
        window = TimeRange.last(seconds, self.clock())
        summary = await self.query(MetricFamily.DB, window)
        tables = await self.dimensions(MetricFamily.DB, window)
        return {
            "total_queries": summary.count,
            "average_query_time": summary.avg_duration,
            "slowest_tables": _top(tables, key=lambda s: s.avg_duration),
            "query_frequency": {name: s.count for name, s in tables.items()},
        }

    async def cache_summary(self, seconds: float = 3600) -> dict:
        window = TimeRange.last(seconds, self.clock())
        summary = await self.query(MetricFamily.CACHE, window)
        operations = await self.dimensions(MetricFamily.CACHE, window)
        return {
            "total_operations": summary.count,
            "hits": summary.success_count,
            "misses": summary.error_count,
            "hit_rate": summary.success_rate,
            "average_operation_time": summary.avg_duration,
            "operation_breakdown": {
                name: {"count": s.count, "hit_rate": s.success_rate}
                for name, s in operations.items()
            },
        }

    async def job_summary(self, seconds: float = 3600) -> dict:
        window = TimeRange.last(seconds, self.clock())
        summary = await self.query(MetricFamily.JOB, window)
        jobs = await self.dimensions(MetricFamily.JOB, window)
        return {
            "total_jobs": summary.count,
            "success_rate": summary.success_rate,
            "average_job_time": summary.avg_duration,
            "job_breakdown": {
                name: {"count": s.count, "errors": s.error_count} for name, s in jobs.items()
            },
        }

    async def performance_report(self, seconds: float = 3600) -> dict:
        return {
            "timestamp": datetime.fromtimestamp(self.clock(), tz=timezone.utc).isoformat(),
            "time_range": seconds,
            "api": await self.api_summary(seconds),
            "database": await self.database_summary(seconds),
            "cache": await self.cache_summary(seconds),
            "background_jobs": await self.job_summary(seconds),
            "system_health": await self.store.health(),
        }


def _top(summaries: dict[str, AggregateSummary], key, limit: int = 10) -> list[dict]:
    ranked = sorted(summaries.items(), key=lambda item: key(item[1]), reverse=True)
    return [
        {
            "name": name,
            "count": s.count,
            "avg_duration": s.avg_duration,
            "success_rate": s.success_rate,
        }
        for name, s in ranked[:limit]
    ]
