import inspect
import logging
import time
from typing import Any, Callable, Iterable, Mapping, Sequence

from opscache.cache.keys import (
    SCOPE_PREFIXES,
    TAG_INDEX_TTL_SECONDS,
    TAG_REFRESH_KEY,
    check_key,
    check_scope,
    check_tag,
    escape_glob,
    scope_tag,
    tag_index_key,
    ttl_for,
)
from opscache.cache.models import CacheEnvelope, CacheWrite
from opscache.core.errors import CorruptionError, StoreUnavailable, ValidationError
from opscache.store.client import StoreClient

logger = logging.getLogger(__name__)

Compute = Callable[[], Any]


class TaggedCache:
    """
    Envelope cache over the shared store with tag-based bulk invalidation.

    Features:
    - Full-replacement writes with a per-entry TTL
    - Tag indexes (``cache_tags:{tag}``) for dropping unrelated keys together
    - Prefix and scope invalidation following the key naming convention
    - Fail-open reads: store outages and corrupt entries read as absent
    - Invalidation failures are raised, never swallowed

    There is no in-process layer; every call goes to the store.
    """

    def __init__(
        self,
        store: StoreClient,
        default_ttl: int | None = None,
        tag_index_ttl: int = TAG_INDEX_TTL_SECONDS,
        version: str = "1.0",
        clock: Callable[[], float] = time.time,
    ):
        self.store = store
        self.default_ttl = default_ttl or ttl_for("api_response")
        self.tag_index_ttl = tag_index_ttl
        self.version = version
        self.clock = clock

    def _serialize(self, value: Any) -> str:
        if hasattr(value, "model_dump"):
            value = value.model_dump(mode="json")
        return CacheEnvelope.wrap(value, self.version, self.clock()).to_json()

    def _write_commands(
        self, key: str, value: Any, ttl: int | None, tags: Sequence[str]
    ) -> tuple[list, list]:
        check_key(key)
        if value is None:
            raise ValidationError(f"Refusing to cache None under {key!r}")
        tags = [check_tag(tag) for tag in tags]
        ttl = self.default_ttl if ttl is None else ttl
        if ttl <= 0:
            raise ValidationError(f"TTL for {key!r} must be positive")

        value_cmds = [("set", (key, self._serialize(value)), {"ex": ttl})]
        tag_cmds = []
        now = self.clock()
        for tag in tags:
            index_key = tag_index_key(tag)
            tag_cmds.append(("sadd", (index_key, key), {}))
            tag_cmds.append(("expire", (index_key, self.tag_index_ttl), {}))
            tag_cmds.append(("zadd", (TAG_REFRESH_KEY, {tag: now}), {}))
        return value_cmds, tag_cmds

    async def set(
        self,
        key: str,
        value: Any,
        ttl: int | None = None,
        tags: Iterable[str] = (),
    ) -> Any:
        """
        Store ``value`` under ``key`` for ``ttl`` seconds and register its tags.

        The value is written before the tags. If the process dies in between
        the entry is simply untagged until its TTL runs out.
        """
        value_cmds, tag_cmds = self._write_commands(key, value, ttl, list(tags))
        await self.store.write_batch(value_cmds)
        if tag_cmds:
            await self.store.write_batch(tag_cmds)
        logger.debug(
            "Cached %s (ttl=%s, tags=%d)", key, ttl or self.default_ttl, len(tag_cmds) // 3
        )
        return value

    async def set_many(self, entries: Iterable[CacheWrite]) -> int:
        """Batch form of ``set``: all values in one round trip, then all tags in another."""
        value_cmds, tag_cmds = [], []
        count = 0
        for entry in entries:
            values, tags = self._write_commands(entry.key, entry.value, entry.ttl, list(entry.tags))
            value_cmds.extend(values)
            tag_cmds.extend(tags)
            count += 1
        if value_cmds:
            await self.store.write_batch(value_cmds)
        if tag_cmds:
            await self.store.write_batch(tag_cmds)
        return count

    async def smart_set(
        self,
        key: str,
        value: Any,
        ttl: int | None = None,
        tags: Iterable[str] = (),
    ) -> Any:
        """``set`` plus scope tags derived from the value's restaurant/user id."""
        return await self.set(key, value, ttl, [*tags, *derive_scope_tags(value)])

    async def get_with_metadata(self, key: str) -> CacheEnvelope | None:
        """Return the stored envelope, or ``None`` when absent, unreadable or corrupt."""
        try:
            raw = await self.store.get(key)
            if raw is None:
                return None
            return CacheEnvelope.from_json(key, raw)
        except StoreUnavailable as e:
            logger.warning("Cache read for %s failed, treating as miss: %s", key, e)
            return None
        except CorruptionError as e:
            logger.warning("Dropping corrupt cache entry: %s", e)
            try:
                await self.store.delete(key)
            except StoreUnavailable as err:
                logger.warning("Could not delete corrupt entry %s: %s", key, err)
            return None

    async def get(self, key: str) -> Any | None:
        envelope = await self.get_with_metadata(key)
        return envelope.data if envelope is not None else None

    async def exists(self, key: str) -> bool:
        try:
            return await self.store.ttl(key) != -2
        except StoreUnavailable as e:
            logger.warning("Cache exists check for %s failed: %s", key, e)
            return False

    async def delete(self, key: str) -> bool:
        return await self.store.delete(key) > 0

    async def get_or_compute(
        self,
        key: str,
        ttl: int | None,
        tags: Iterable[str],
        compute: Compute,
    ) -> Any:
        """
        Return the cached value for ``key`` or compute, store and return it.

        No cross-caller locking: two callers missing at the same time both
        compute and the last write wins. ``None`` results are returned but
        not cached. A failed store write is logged and the computed value is
        still returned.
        """
        envelope = await self.get_with_metadata(key)
        if envelope is not None:
            return envelope.data

        value = compute()
        if inspect.isawaitable(value):
            value = await value
        if value is None:
            return None

        try:
            await self.set(key, value, ttl, tags)
        except StoreUnavailable as e:
            logger.error("Could not memoise %s: %s", key, e)
        return value

    async def invalidate_by_tag(self, *tags: str) -> int:
        """Delete every key registered under each tag, then the tag indexes."""
        deleted = 0
        for tag in tags:
            check_tag(tag)
            index_key = tag_index_key(tag)
            members = await self.store.members(index_key)
            removed = await self.store.delete(*members) if members else 0
            deleted += removed
            await self.store.delete(index_key)
            await self.store.remove_members(TAG_REFRESH_KEY, tag)
            logger.info("Invalidated tag %s (%d keys)", tag, removed)
        return deleted

    async def invalidate_by_pattern(self, pattern: str) -> int:
        """Delete every key matching a glob pattern, one SCAN batch at a time."""
        if not pattern:
            raise ValidationError("Invalidation pattern must not be empty")
        deleted = 0
        async for batch in self.store.scan(pattern):
            deleted += await self.store.delete(*batch)
        logger.info("Pattern invalidation %s removed %d keys", pattern, deleted)
        return deleted

    async def invalidate_by_prefix(self, prefix: str) -> int:
        check_key(prefix)
        return await self.invalidate_by_pattern(f"{escape_glob(prefix)}*")

    async def invalidate_scope(self, scope_type: str, scope_id) -> int:
        """
        Clear everything cached for one restaurant or user.

        Runs the scope's prefix invalidations and then the ``{type}:{id}``
        tag invalidation, so entries are removed whichever mechanism
        registered them.
        """
        scope_type, scope_id = check_scope(scope_type, scope_id)
        deleted = 0
        for template in SCOPE_PREFIXES[scope_type]:
            name = template.format(id=scope_id)
            if name.endswith("_"):
                deleted += await self.invalidate_by_prefix(name)
            else:
                deleted += await self.store.delete(name)
        deleted += await self.invalidate_by_tag(scope_tag(scope_type, scope_id))
        return deleted

    async def invalidate_restaurant(self, restaurant_id) -> int:
        return await self.invalidate_scope("restaurant", restaurant_id)

    async def invalidate_user(self, user_id) -> int:
        return await self.invalidate_scope("user", user_id)

    async def stats(self) -> dict:
        health = await self.store.health()
        memory = health.get("memory", {})
        return {
            "healthy": health["healthy"],
            "total_keys": health.get("total_keys"),
            "memory_usage": memory.get("used_human"),
            "pressure_level": memory.get("level"),
        }

    async def healthy(self) -> bool:
        return await self.store.ping()


def derive_scope_tags(value: Any) -> list[str]:
    """``restaurant:{id}`` / ``user:{id}`` tags from a value's scope ids, if any."""
    tags = []
    for attr, scope_type in (("restaurant_id", "restaurant"), ("user_id", "user")):
        if isinstance(value, Mapping):
            scope_id = value.get(attr)
        else:
            scope_id = getattr(value, attr, None)
        if scope_id is not None:
            tags.append(scope_tag(scope_type, scope_id))
    return tags
