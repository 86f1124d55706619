"""Periodic retention sweep over the shared store.

The sweep is a maintenance job: it runs on its own timer, never inside
request handling, and each step is isolated so one failing step does not
stop the others.
"""

import asyncio
import logging
import time
from dataclasses import asdict, dataclass, field
from datetime import datetime, timezone
from typing import Awaitable, Callable

from opscache.cache.keys import TAG_INDEX_PREFIX, TAG_REFRESH_KEY
from opscache.cache.models import CacheEnvelope
from opscache.core.config import Settings
from opscache.core.errors import CorruptionError, OpsCacheError
from opscache.metrics.aggregator import MetricsAggregator
from opscache.store.client import StoreClient

logger = logging.getLogger(__name__)


@dataclass
class StepReport:
    name: str
    examined: int = 0
    deleted: int = 0
    duration_seconds: float = 0.0
    error: str | None = None

    @property
    def ok(self) -> bool:
        return self.error is None


@dataclass
class SweepReport:
    started_at: str
    steps: list[StepReport] = field(default_factory=list)

    @property
    def ok(self) -> bool:
        return all(step.ok for step in self.steps)

    @property
    def deleted(self) -> int:
        return sum(step.deleted for step in self.steps)

    def to_dict(self) -> dict:
        return {
            "started_at": self.started_at,
            "ok": self.ok,
            "deleted": self.deleted,
            "steps": [asdict(step) for step in self.steps],
        }


class RetentionSweeper:
    """
    Deletes what the store's own expiry does not catch.

    Steps, in order:
    1. ``metrics:{family}``: buckets older than the metrics horizon.
    2. ``tag_indexes``: tag sets not refreshed within the tag horizon.
    3. ``untimed_entries``: cache envelopes written without a TTL and older
       than the untimed-entry horizon. Keys that are not cache envelopes are
       left alone.
    """

    def __init__(
        self,
        store: StoreClient,
        aggregator: MetricsAggregator,
        families: list[str],
        metrics_retention_seconds: int = 7 * 86400,
        tag_retention_seconds: int = 86400,
        untimed_entry_max_age_seconds: int = 3600,
        untimed_scan_pattern: str = "*",
        interval_seconds: int = 3600,
        clock: Callable[[], float] = time.time,
    ):
        self.store = store
        self.aggregator = aggregator
        self.families = list(families)
        self.metrics_retention_seconds = metrics_retention_seconds
        self.tag_retention_seconds = tag_retention_seconds
        self.untimed_entry_max_age_seconds = untimed_entry_max_age_seconds
        self.untimed_scan_pattern = untimed_scan_pattern
        self.interval_seconds = interval_seconds
        self.clock = clock
        self._task: asyncio.Task | None = None

    @classmethod
    def from_settings(
        cls, settings: Settings, store: StoreClient, aggregator: MetricsAggregator
    ) -> "RetentionSweeper":
        return cls(
            store,
            aggregator,
            families=settings.metric_families,
            metrics_retention_seconds=settings.metrics_retention_seconds,
            tag_retention_seconds=settings.tag_retention_seconds,
            untimed_entry_max_age_seconds=settings.untimed_entry_max_age_seconds,
            untimed_scan_pattern=settings.untimed_scan_pattern,
            interval_seconds=settings.sweep_interval_seconds,
        )

    async def run_sweep(self) -> SweepReport:
        report = SweepReport(
            started_at=datetime.fromtimestamp(self.clock(), tz=timezone.utc).isoformat()
        )
        for family in self.families:
            report.steps.append(
                await self._run_step(f"metrics:{family}", self._sweep_metrics(family))
            )
        report.steps.append(await self._run_step("tag_indexes", self._sweep_tag_indexes()))
        report.steps.append(
            await self._run_step("untimed_entries", self._sweep_untimed_entries())
        )
        return report

    async def _run_step(
        self, name: str, work: Awaitable[tuple[int, int]]
    ) -> StepReport:
        step = StepReport(name=name)
        started = time.perf_counter()
        try:
            step.examined, step.deleted = await work
        except OpsCacheError as e:
            step.error = str(e)
            logger.error("Sweep step %s failed: %s", name, e)
        except Exception as e:
            step.error = f"{type(e).__name__}: {e}"
            logger.exception("Sweep step %s crashed", name)
        step.duration_seconds = time.perf_counter() - started
        logger.info(
            "Sweep step %s: examined=%d deleted=%d duration=%.3fs",
            name,
            step.examined,
            step.deleted,
            step.duration_seconds,
            extra={"sweep_step": asdict(step)},
        )
        return step

    async def _sweep_metrics(self, family: str) -> tuple[int, int]:
        result = await self.aggregator.cleanup_older_than(
            self.metrics_retention_seconds, family=family
        )
        return result.examined, result.deleted

    async def _sweep_tag_indexes(self) -> tuple[int, int]:
        cutoff = self.clock() - self.tag_retention_seconds
        examined = deleted = 0
        async for batch in self.store.scan(f"{TAG_INDEX_PREFIX}*"):
            for index_key in batch:
                examined += 1
                tag = index_key[len(TAG_INDEX_PREFIX):]
                refreshed = await self.store.score(TAG_REFRESH_KEY, tag)
                if refreshed is None:
                    # Unknown refresh time: only indexes that will never expire are stale.
                    stale = await self.store.ttl(index_key) == -1
                else:
                    stale = refreshed < cutoff
                if stale:
                    deleted += await self.store.delete(index_key)
                    await self.store.remove_members(TAG_REFRESH_KEY, tag)
        await self.store.remove_scores_below(TAG_REFRESH_KEY, cutoff)
        return examined, deleted

    async def _sweep_untimed_entries(self) -> tuple[int, int]:
        cutoff = self.clock() - self.untimed_entry_max_age_seconds
        examined = deleted = 0
        async for batch in self.store.scan(self.untimed_scan_pattern):
            for key in batch:
                if self._is_reserved(key):
                    continue
                examined += 1
                if await self.store.ttl(key) != -1:
                    continue
                if await self.store.key_type(key) != "string":
                    continue
                try:
                    raw = await self.store.get(key)
                    if raw is None:
                        continue
                    envelope = CacheEnvelope.from_json(key, raw)
                except CorruptionError:
                    continue
                if envelope.cached_at_timestamp < cutoff:
                    deleted += await self.store.delete(key)
        return examined, deleted

    def _is_reserved(self, key: str) -> bool:
        if key.startswith(TAG_INDEX_PREFIX) or key == TAG_REFRESH_KEY:
            return True
        return any(key.startswith(f"{family}_metrics:") for family in self.families)

    def start(self) -> asyncio.Task:
        """Run the sweep every ``interval_seconds`` on a background task."""
        if self._task is None or self._task.done():
            self._task = asyncio.create_task(self._loop(), name="retention-sweeper")
            logger.info("Retention sweeper started (every %ss)", self.interval_seconds)
        return self._task

    async def stop(self) -> None:
        if self._task is None:
            return
        self._task.cancel()
        try:
            await self._task
        except asyncio.CancelledError:
            pass
        self._task = None
        logger.info("Retention sweeper stopped")

    async def _loop(self) -> None:
        while True:
            await asyncio.sleep(self.interval_seconds)
            report = await self.run_sweep()
            if not report.ok:
                logger.warning("Retention sweep finished with failed steps")
