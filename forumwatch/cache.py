"""
Tiered topic cache: durable store (permanent) + Redis (TTL, shared) + memory.

Reads never block on a refresh: Redis first, then the in-process copy (honoured
up to twice the TTL), then nothing. Writes go to all three tiers; the memory
tier is always written, whatever happened to the other two.

Redis is optional. Without REDIS_URL, or while Redis is unreachable, the cache
runs memory-only and only logs warnings.
"""

import json
from dataclasses import dataclass, field, replace
from datetime import datetime, timedelta
from typing import Any, Callable, Optional

from redis import asyncio as redis_asyncio

from forumwatch.collectors.base import Source, Topic
from forumwatch.db import Database, utc_now
from forumwatch.normalize import normalize_url
from forumwatch.utils.logging import get_logger

logger = get_logger(__name__)

# Memory entries stay readable for this many TTLs
MEMORY_STALENESS_FACTOR = 2

# Per-cycle metadata under {prefix}:meta:, shared by every process
_RUN_META_KEYS = ("last_refresh", "source_urls")


@dataclass
class CacheEntry:
    """Topic snapshot for one source in one tier."""
    source_url: str
    topics: list[Topic] = field(default_factory=list)
    fetched_at: Optional[datetime] = None
    error: Optional[str] = None

    @property
    def has_data(self) -> bool:
        return self.fetched_at is not None


def _create_redis_client(url: str):
    """Return an asyncio Redis client or None if the URL is absent or bad."""
    if not url:
        return None
    try:
        return redis_asyncio.from_url(url, decode_responses=True)
    except Exception as exc:
        logger.warning("redis_client_init_failed", error=str(exc))
        return None


class TieredCache:
    def __init__(
        self,
        db: Optional[Database] = None,
        redis_client: Any = None,
        ttl_seconds: int = 900,
        prefix: str = "forumwatch",
        clock: Callable[[], datetime] = utc_now,
    ):
        self.db = db
        self.redis = redis_client
        self.ttl_seconds = ttl_seconds
        self.prefix = prefix
        self._clock = clock
        self._memory: dict[str, CacheEntry] = {}

    @classmethod
    def from_settings(cls, settings, db: Optional[Database] = None) -> "TieredCache":
        return cls(
            db=db,
            redis_client=_create_redis_client(settings.redis_url),
            ttl_seconds=settings.cache_ttl_seconds,
            prefix=settings.cache_prefix,
        )

    @property
    def redis_configured(self) -> bool:
        return self.redis is not None

    def topics_key(self, source_url: str) -> str:
        return f"{self.prefix}:topics:{normalize_url(source_url)}"

    def meta_key(self, name: str) -> str:
        return f"{self.prefix}:meta:{name}"

    # ------------------------------------------------------------------ #
    # Read path
    # ------------------------------------------------------------------ #

    async def get(self, source_url: str) -> Optional[CacheEntry]:
        entry = await self._redis_get(source_url)
        if entry is not None:
            return entry
        return self._memory_get(source_url)

    async def _redis_get(self, source_url: str) -> Optional[CacheEntry]:
        if self.redis is None:
            return None
        try:
            raw = await self.redis.get(self.topics_key(source_url))
        except Exception as exc:
            logger.warning("redis_get_failed", source_url=source_url, error=str(exc))
            return None
        if not raw:
            return None
        try:
            payload = json.loads(raw)
            return CacheEntry(
                source_url=source_url,
                topics=[Topic.from_dict(item) for item in payload["topics"]],
                fetched_at=datetime.fromisoformat(payload["fetched_at"]),
            )
        except (ValueError, KeyError, TypeError) as exc:
            logger.warning("redis_entry_unreadable", source_url=source_url, error=str(exc))
            return None

    def _memory_get(self, source_url: str) -> Optional[CacheEntry]:
        entry = self._memory.get(normalize_url(source_url))
        if entry is None or not entry.has_data:
            return None
        max_age = timedelta(seconds=self.ttl_seconds * MEMORY_STALENESS_FACTOR)
        if self._clock() - entry.fetched_at > max_age:
            return None
        return entry

    # ------------------------------------------------------------------ #
    # Write path
    # ------------------------------------------------------------------ #

    async def put(self, source: Source, topics: list[Topic]) -> CacheEntry:
        """Write a successful fetch through every tier."""
        fetched_at = self._clock()
        entry = CacheEntry(source_url=source.url, topics=list(topics), fetched_at=fetched_at)

        self._persist(source, topics)
        await self._redis_put(entry)
        # Written whatever happened to the other two tiers
        self._memory[normalize_url(source.url)] = entry
        return entry

    def _persist(self, source: Source, topics: list[Topic]) -> None:
        if self.db is None:
            return
        try:
            self.db.upsert_topics(source.id, topics)
            self.db.mark_source_fetched(source.id)
        except Exception as exc:
            logger.error("db_persist_failed", source=source.name, error=str(exc))

    async def _redis_put(self, entry: CacheEntry) -> None:
        if self.redis is None:
            return
        payload = json.dumps({
            "topics": [topic.to_dict() for topic in entry.topics],
            "fetched_at": entry.fetched_at.isoformat(),
        })
        try:
            await self.redis.set(self.topics_key(entry.source_url), payload, ex=self.ttl_seconds)
        except Exception as exc:
            logger.warning("redis_set_failed", source_url=entry.source_url, error=str(exc))

    def record_error(self, source: Source, error: str) -> None:
        """
        Note a failed fetch. The cached topics and their fetch time are kept
        as they were; only the error slot changes.
        """
        key = normalize_url(source.url)
        existing = self._memory.get(key)
        if existing is None:
            self._memory[key] = CacheEntry(source_url=source.url, error=error)
        else:
            self._memory[key] = replace(existing, error=error)

    # ------------------------------------------------------------------ #
    # Run metadata
    # ------------------------------------------------------------------ #

    async def set_run_metadata(self, started_at: datetime, source_urls: list[str]) -> None:
        if self.redis is None:
            return
        try:
            await self.redis.set(self.meta_key("last_refresh"), started_at.isoformat())
            await self.redis.set(self.meta_key("source_urls"), json.dumps(source_urls))
        except Exception as exc:
            logger.warning("redis_meta_set_failed", error=str(exc))

    async def get_run_metadata(self) -> dict[str, Any]:
        """
        Start time and usable source URLs of the last cycle any process ran.
        Empty values without Redis or when nothing has been recorded.
        """
        metadata: dict[str, Any] = {"last_refresh": None, "source_urls": []}
        if self.redis is None:
            return metadata
        try:
            last_refresh = await self.redis.get(self.meta_key("last_refresh"))
            source_urls = await self.redis.get(self.meta_key("source_urls"))
        except Exception as exc:
            logger.warning("redis_meta_get_failed", error=str(exc))
            return metadata
        if last_refresh:
            try:
                metadata["last_refresh"] = datetime.fromisoformat(last_refresh)
            except ValueError:
                logger.warning("redis_meta_unreadable", key="last_refresh")
        if source_urls:
            try:
                metadata["source_urls"] = json.loads(source_urls)
            except ValueError:
                logger.warning("redis_meta_unreadable", key="source_urls")
        return metadata

    # ------------------------------------------------------------------ #
    # Maintenance
    # ------------------------------------------------------------------ #

    async def clear(self) -> int:
        """
        Drop every memory entry, every cached topic list in Redis and the run
        metadata. Other keys under the prefix (the refresh lease) are left alone.
        """
        cleared = len(self._memory)
        self._memory.clear()
        if self.redis is not None:
            try:
                keys = [key async for key in self.redis.scan_iter(match=f"{self.prefix}:topics:*")]
                keys.extend(self.meta_key(name) for name in _RUN_META_KEYS)
                await self.redis.delete(*keys)
                cleared = max(cleared, len(keys) - len(_RUN_META_KEYS))
            except Exception as exc:
                logger.warning("redis_clear_failed", error=str(exc))
        logger.info("cache_cleared", entries=cleared)
        return cleared

    def stats(self) -> dict[str, Any]:
        entries = list(self._memory.values())
        return {
            "size": sum(1 for e in entries if e.has_data),
            "successful": sum(1 for e in entries if e.has_data and e.error is None),
            "failed": sum(1 for e in entries if e.error is not None),
            "total_topics": sum(len(e.topics) for e in entries),
            "redis_configured": self.redis_configured,
            "db_configured": self.db is not None,
        }

    async def close(self) -> None:
        if self.redis is not None:
            try:
                await self.redis.aclose()
            except Exception as exc:
                logger.warning("redis_close_failed", error=str(exc))
