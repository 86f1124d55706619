"""Tests for the tag-indexed cache."""

import json
from dataclasses import dataclass

import pytest
from pydantic import BaseModel

from conftest import FrozenClock
from opscache.cache.keys import (
    TAG_REFRESH_KEY,
    escape_glob,
    report_key,
    tag_index_key,
    ttl_for,
)
from opscache.cache.models import CacheEnvelope, CacheWrite
from opscache.cache.tagged import TaggedCache, derive_scope_tags
from opscache.core.errors import StoreUnavailable, ValidationError


class TestKeys:
    def test_ttl_defaults(self):
        assert ttl_for("dashboard") == 600
        assert ttl_for("inventory_insights") == 1800
        assert ttl_for("user_permissions") == 3600
        assert ttl_for("something_else") == 120

    def test_key_formats(self):
        assert tag_index_key("restaurant:r1") == "cache_tags:restaurant:r1"
        assert report_key("dash", "r1", "2024-01-01") == "dash_r1_2024-01-01"

    def test_escape_glob(self):
        assert escape_glob("a*b?[c]") == r"a\*b\?\[c\]"


class TestSetAndGet:
    @pytest.mark.asyncio
    async def test_round_trip(self, cache):
        value = {"sales": 100, "items": ["a", "b"], "nested": {"x": 1.5}}
        await cache.set("dash_r1_2024-01-01", value, 600, ["restaurant:r1"])
        assert await cache.get("dash_r1_2024-01-01") == value

    @pytest.mark.asyncio
    async def test_envelope_shape_and_ttl(self, cache, redis):
        await cache.set("dash_r1_2024-01-01", {"sales": 100}, 600)

        stored = json.loads(await redis.get("dash_r1_2024-01-01"))
        assert stored["data"] == {"sales": 100}
        assert stored["version"] == "1.0"
        assert stored["cached_at"].startswith("2024-01-01T00:01:00")
        assert 0 < await redis.ttl("dash_r1_2024-01-01") <= 600

    @pytest.mark.asyncio
    async def test_default_ttl(self, cache, redis):
        await cache.set("api_response_x", [1, 2, 3])
        assert 0 < await redis.ttl("api_response_x") <= 120

    @pytest.mark.asyncio
    async def test_overwrite_replaces_whole_entry(self, cache):
        await cache.set("k", {"a": 1, "b": 2}, 60)
        await cache.set("k", {"a": 3}, 60)
        assert await cache.get("k") == {"a": 3}

    @pytest.mark.asyncio
    async def test_missing_key(self, cache):
        assert await cache.get("nope") is None
        assert await cache.get_with_metadata("nope") is None
        assert await cache.exists("nope") is False

    @pytest.mark.asyncio
    async def test_metadata(self, cache, clock):
        await cache.set("k", "v", 60)
        envelope = await cache.get_with_metadata("k")
        assert isinstance(envelope, CacheEnvelope)
        assert envelope.data == "v"
        assert envelope.cached_at_timestamp == clock()

    @pytest.mark.asyncio
    async def test_pydantic_values_are_dumped(self, cache):
        class Stats(BaseModel):
            restaurant_id: str
            revenue: float

        await cache.set("restaurant_stats_r1_today", Stats(restaurant_id="r1", revenue=9.5), 60)
        assert await cache.get("restaurant_stats_r1_today") == {
            "restaurant_id": "r1",
            "revenue": 9.5,
        }

    @pytest.mark.asyncio
    async def test_tags_registered_with_ttl(self, cache, redis, clock):
        await cache.set("k1", 1, 60, ["restaurant:r1", "user:u1"])
        await cache.set("k2", 2, 60, ["restaurant:r1"])

        assert await redis.smembers("cache_tags:restaurant:r1") == {"k1", "k2"}
        assert await redis.smembers("cache_tags:user:u1") == {"k1"}
        assert 0 < await redis.ttl("cache_tags:restaurant:r1") <= 86400
        assert await redis.zscore(TAG_REFRESH_KEY, "restaurant:r1") == clock()

    @pytest.mark.asyncio
    async def test_rejects_bad_input(self, cache):
        with pytest.raises(ValidationError):
            await cache.set("", 1)
        with pytest.raises(ValidationError):
            await cache.set("k", None)
        with pytest.raises(ValidationError):
            await cache.set("k", 1, tags=["bad tag"])
        with pytest.raises(ValidationError):
            await cache.set("cache_tags:sneaky", 1)

    @pytest.mark.asyncio
    async def test_corrupt_entry_self_heals(self, cache, redis):
        await redis.set("k", "{definitely not an envelope")

        assert await cache.get("k") is None
        assert not await redis.exists("k")

    @pytest.mark.asyncio
    async def test_envelope_missing_fields_is_corrupt(self, cache, redis):
        await redis.set("k", json.dumps({"data": 1}))
        assert await cache.get("k") is None
        assert not await redis.exists("k")

    @pytest.mark.asyncio
    async def test_undecodable_entry_self_heals(self, cache, redis):
        await redis.execute_command("SET", "k", b"\xff\xfe")

        assert await cache.get("k") is None
        assert not await redis.exists("k")
        assert await cache.get_or_compute("k", 60, [], lambda: "fresh") == "fresh"
        assert await cache.get("k") == "fresh"

    @pytest.mark.asyncio
    async def test_zero_ttl_rejected(self, cache, redis):
        with pytest.raises(ValidationError):
            await cache.set("k", 1, 0)
        with pytest.raises(ValidationError):
            await cache.set("k", 1, -5)
        assert not await redis.exists("k")


class TestBatchAndSmart:
    @pytest.mark.asyncio
    async def test_set_many(self, cache, redis):
        written = await cache.set_many(
            [
                CacheWrite("a", 1, 60, ["restaurant:r1"]),
                CacheWrite("b", 2, 60),
                CacheWrite("c", 3, tags=["restaurant:r1"]),
            ]
        )
        assert written == 3
        assert await cache.get("b") == 2
        assert await redis.smembers("cache_tags:restaurant:r1") == {"a", "c"}

    @pytest.mark.asyncio
    async def test_smart_set_adds_scope_tags(self, cache, redis):
        await cache.smart_set("activity", {"restaurant_id": "r9", "user_id": 4}, 60)
        assert await redis.smembers("cache_tags:restaurant:r9") == {"activity"}
        assert await redis.smembers("cache_tags:user:4") == {"activity"}

    def test_derive_scope_tags_from_attributes(self):
        @dataclass
        class Row:
            restaurant_id: str

        assert derive_scope_tags(Row("r2")) == ["restaurant:r2"]
        assert derive_scope_tags([1, 2]) == []


class TestGetOrCompute:
    @pytest.mark.asyncio
    async def test_sequential_calls_compute_once(self, cache):
        calls = []

        async def compute():
            calls.append(1)
            return {"total": 42}

        first = await cache.get_or_compute("report_r1_x", 300, ["restaurant:r1"], compute)
        second = await cache.get_or_compute("report_r1_x", 300, ["restaurant:r1"], compute)

        assert first == second == {"total": 42}
        assert len(calls) == 1

    @pytest.mark.asyncio
    async def test_sync_compute(self, cache):
        assert await cache.get_or_compute("k", 60, [], lambda: 7) == 7
        assert await cache.get("k") == 7

    @pytest.mark.asyncio
    async def test_none_is_not_cached(self, cache, redis):
        assert await cache.get_or_compute("k", 60, [], lambda: None) is None
        assert not await redis.exists("k")

    @pytest.mark.asyncio
    async def test_store_down_still_computes(self, broken_store):
        cache = TaggedCache(broken_store, clock=FrozenClock())
        assert await cache.get_or_compute("k", 60, ["user:1"], lambda: "fresh") == "fresh"

    @pytest.mark.asyncio
    async def test_compute_errors_propagate(self, cache):
        def explode():
            raise RuntimeError("db down")

        with pytest.raises(RuntimeError):
            await cache.get_or_compute("k", 60, [], explode)


class TestInvalidation:
    @pytest.mark.asyncio
    async def test_invalidate_by_tag(self, cache, redis):
        await cache.set("k1", 1, 60, ["restaurant:r1"])
        await cache.set("k2", 2, 60, ["restaurant:r1", "user:u1"])
        await cache.set("k3", 3, 60, ["restaurant:r2"])

        deleted = await cache.invalidate_by_tag("restaurant:r1")

        assert deleted == 2
        assert await cache.get("k1") is None
        assert await cache.get("k2") is None
        assert await cache.get("k3") == 3
        assert not await redis.exists("cache_tags:restaurant:r1")
        assert await redis.zscore(TAG_REFRESH_KEY, "restaurant:r1") is None

    @pytest.mark.asyncio
    async def test_invalidate_by_tag_is_idempotent(self, cache):
        await cache.set("k1", 1, 60, ["restaurant:r1"])
        assert await cache.invalidate_by_tag("restaurant:r1") == 1
        assert await cache.invalidate_by_tag("restaurant:r1") == 0

    @pytest.mark.asyncio
    async def test_stale_index_members_are_tolerated(self, cache, redis):
        await cache.set("k1", 1, 60, ["restaurant:r1"])
        await redis.delete("k1")
        await redis.sadd("cache_tags:restaurant:r1", "ghost")

        assert await cache.invalidate_by_tag("restaurant:r1") == 0
        assert not await redis.exists("cache_tags:restaurant:r1")

    @pytest.mark.asyncio
    async def test_invalidate_by_prefix(self, cache):
        await cache.set("dashboard_r1_2024-01-01", 1, 60)
        await cache.set("dashboard_r1_2024-01-02", 2, 60)
        await cache.set("dashboard_r10_2024-01-01", 3, 60)

        assert await cache.invalidate_by_prefix("dashboard_r1_") == 2
        assert await cache.get("dashboard_r10_2024-01-01") == 3

    @pytest.mark.asyncio
    async def test_prefix_glob_characters_are_literal(self, cache):
        await cache.set("odd*key", 1, 60)
        await cache.set("oddball", 2, 60)

        assert await cache.invalidate_by_prefix("odd*") == 1
        assert await cache.get("oddball") == 2

    @pytest.mark.asyncio
    async def test_invalidate_scope_documented_scenario(self, cache):
        await cache.set("dash_r1_2024-01-01", {"sales": 100}, 600, ["restaurant:r1"])
        await cache.invalidate_scope("restaurant", "r1")
        assert await cache.get("dash_r1_2024-01-01") is None

    @pytest.mark.asyncio
    async def test_invalidate_scope_clears_both_mechanisms(self, cache):
        await cache.set("sales_analytics_r1_week", 1, 60)
        await cache.set("custom_thing", 2, 60, ["restaurant:r1"])
        await cache.set("sales_analytics_r2_week", 3, 60)

        deleted = await cache.invalidate_restaurant("r1")

        assert deleted == 2
        assert await cache.get("sales_analytics_r1_week") is None
        assert await cache.get("custom_thing") is None
        assert await cache.get("sales_analytics_r2_week") == 3

    @pytest.mark.asyncio
    async def test_invalidate_user(self, cache):
        await cache.set("user_permissions_7", ["admin"], 3600)
        await cache.set("user_permissions_70", ["staff"], 3600)
        await cache.set("user_activity_7_today", [], 60)

        assert await cache.invalidate_user(7) == 2
        assert await cache.get("user_permissions_70") == ["staff"]

    @pytest.mark.asyncio
    async def test_unknown_scope_rejected(self, cache):
        with pytest.raises(ValidationError):
            await cache.invalidate_scope("franchise", "f1")

    @pytest.mark.asyncio
    async def test_invalidation_failures_propagate(self, broken_store):
        cache = TaggedCache(broken_store, clock=FrozenClock())
        with pytest.raises(StoreUnavailable):
            await cache.invalidate_by_tag("restaurant:r1")
        with pytest.raises(StoreUnavailable):
            await cache.invalidate_scope("restaurant", "r1")
        with pytest.raises(StoreUnavailable):
            await cache.set("k", 1, 60)


class TestDegradedReads:
    @pytest.mark.asyncio
    async def test_get_fails_open(self, broken_store):
        cache = TaggedCache(broken_store, clock=FrozenClock())
        assert await cache.get("k") is None
        assert await cache.exists("k") is False

    @pytest.mark.asyncio
    async def test_get_times_out_open(self, slow_store):
        cache = TaggedCache(slow_store, clock=FrozenClock())
        assert await cache.get("k") is None

    @pytest.mark.asyncio
    async def test_stats(self, cache):
        await cache.set("k", 1, 60)
        stats = await cache.stats()
        assert stats["healthy"] is True
        assert stats["total_keys"] >= 1
        assert await cache.healthy() is True

    @pytest.mark.asyncio
    async def test_stats_when_down(self, broken_store):
        cache = TaggedCache(broken_store, clock=FrozenClock())
        stats = await cache.stats()
        assert stats["healthy"] is False
        assert await cache.healthy() is False
