"""
The ingestion engine: one long-lived object per process.

Owns the durable store, the tiered cache, the collector, the refresh
coordinator and the backfill manager, and exposes the read and control
operations used by the HTTP layer, the scheduler and the digest generator.
"""

import asyncio
from typing import Any, Awaitable, Callable, Iterable, Optional

from forumwatch.backfill import BackfillJobManager
from forumwatch.cache import TieredCache
from forumwatch.collectors.base import BaseCollector, Source
from forumwatch.collectors.discourse import DiscourseCollector
from forumwatch.config import Settings, settings as default_settings
from forumwatch.db import Database
from forumwatch.lock import LeaseLock
from forumwatch.normalize import normalize_url
from forumwatch.refresh import RefreshCoordinator
from forumwatch.retry import RetryPolicy
from forumwatch.sources import SourceConfig, load_source_configs
from forumwatch.utils.logging import get_logger

logger = get_logger(__name__)

ALL_TIERS = (1, 2, 3)


def topic_url(base_url: str, slug: str, external_id: int) -> str:
    return f"{base_url.rstrip('/')}/t/{slug}/{external_id}"


class ForumWatchEngine:
    def __init__(
        self,
        config: Settings = default_settings,
        db: Optional[Database] = None,
        cache: Optional[TieredCache] = None,
        collector: Optional[BaseCollector] = None,
        lock: Optional[LeaseLock] = None,
        source_configs: Optional[list[SourceConfig]] = None,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ):
        self.settings = config
        self.db = db or Database(config.database_url)
        self.cache = cache or TieredCache.from_settings(config, self.db)
        self.collector = collector or DiscourseCollector(
            retry_policy=RetryPolicy.from_settings(config),
            timeout=config.fetch_timeout_seconds,
            user_agent=config.user_agent,
        )
        self.lock = lock or LeaseLock(
            self.cache.redis,
            key=self.cache.meta_key("refresh_lock"),
            ttl_seconds=config.refresh_lock_ttl_seconds,
        )
        self._source_configs = source_configs
        self.coordinator = RefreshCoordinator(
            db=self.db,
            cache=self.cache,
            collector=self.collector,
            lock=self.lock,
            batch_size=config.fetch_batch_size,
            batch_delay=config.fetch_batch_delay_seconds,
            sleep=sleep,
        )
        self.backfill = BackfillJobManager(
            db=self.db,
            collector=self.collector,
            pages_per_cycle=config.backfill_pages_per_cycle,
            page_delay=config.backfill_page_delay_seconds,
            sleep=sleep,
        )
        self.scheduler = None

    # ------------------------------------------------------------------ #
    # Lifecycle
    # ------------------------------------------------------------------ #

    def prepare(self) -> list[Source]:
        """Create the schema and seed the source list. Safe to call repeatedly."""
        self.db.init_schema()
        configs = self._source_configs
        if configs is None:
            configs = load_source_configs()
        return self.db.seed_sources(configs)

    def start(self, with_scheduler: bool = True) -> None:
        sources = self.prepare()
        if with_scheduler:
            from forumwatch.scheduler import create_scheduler

            self.scheduler = create_scheduler(self)
            self.scheduler.start()
        logger.info(
            "engine_started",
            sources=len(sources),
            redis=self.cache.redis_configured,
            scheduler=self.scheduler is not None,
        )

    async def stop(self) -> None:
        if self.scheduler is not None:
            self.scheduler.shutdown(wait=False)
            self.scheduler = None
        await self.cache.close()
        self.db.dispose()
        logger.info("engine_stopped")

    # ------------------------------------------------------------------ #
    # Read interface
    # ------------------------------------------------------------------ #

    async def get_cached_topics(self, source_urls: Iterable[str]) -> list[dict[str, Any]]:
        """
        Flattened topics for the given sources, straight from the cache.

        Best effort: sources with nothing cached contribute nothing, and
        nothing here raises.
        """
        try:
            names = {normalize_url(s.url): s.name for s in self.db.list_sources()}
        except Exception as exc:
            logger.warning("source_names_unavailable", error=str(exc))
            names = {}

        flattened: list[dict[str, Any]] = []
        for url in source_urls:
            try:
                entry = await self.cache.get(url)
            except Exception as exc:
                logger.warning("cache_read_failed", source_url=url, error=str(exc))
                continue
            if entry is None:
                continue
            base_url = url.rstrip("/")
            forum_name = names.get(normalize_url(url), base_url)
            for topic in entry.topics:
                flattened.append({
                    "title": topic.title,
                    "url": topic_url(base_url, topic.slug, topic.external_id),
                    "forum_name": forum_name,
                    "source_url": base_url,
                    "replies": topic.reply_count,
                    "views": topic.views,
                    "likes": topic.like_count,
                    "tags": list(topic.tags),
                    "created_at": topic.created_at.isoformat() if topic.created_at else None,
                    "bumped_at": topic.bumped_at.isoformat() if topic.bumped_at else None,
                    "pinned": topic.pinned,
                })
        return flattened

    async def get_cache_stats(self) -> dict[str, Any]:
        """
        Cache counters plus refresh state. ``last_refresh_start`` is the latest
        cycle start seen by this process or, via Redis, by any other process.
        """
        run = await self.cache.get_run_metadata()
        last_start = self.coordinator.last_refresh_start
        recorded = run["last_refresh"]
        if recorded is not None and (last_start is None or recorded > last_start):
            last_start = recorded
        last_result = self.coordinator.last_result
        return {
            **self.cache.stats(),
            "is_refreshing": self.coordinator.is_refreshing,
            "last_refresh_start": last_start.isoformat() if last_start else None,
            "cached_source_urls": run["source_urls"],
            "last_refresh": {
                "successes": last_result.successes,
                "failures": last_result.failures,
                "finished_at": last_result.finished_at.isoformat()
                if last_result.finished_at else None,
            } if last_result else None,
        }

    def get_db_stats(self) -> dict[str, Any]:
        return self.db.stats()

    # ------------------------------------------------------------------ #
    # Control interface
    # ------------------------------------------------------------------ #

    async def refresh_now(self, tiers: Iterable[int] = ALL_TIERS) -> dict[str, Any]:
        result = await self.coordinator.refresh(tiers)
        return result.to_dict()

    async def scheduled_refresh(self) -> None:
        """Interval job body: refresh the configured tiers."""
        await self.coordinator.refresh(self.settings.refresh_tiers)

    async def clear_cache(self) -> dict[str, Any]:
        cleared = await self.cache.clear()
        return {"cleared": cleared}

    async def start_backfill(self, source_id: int, run_first_cycle: bool = False) -> dict[str, Any]:
        """
        (Re)start the backfill for one source from page 0. With
        ``run_first_cycle`` the first batch of pages is fetched right away.
        """
        job = self.backfill.start_backfill(source_id)
        cycle = None
        if run_first_cycle:
            cycle = (await self.backfill.process_job(job)).to_dict()
            job = self.backfill.get_job(job.id)
        return {"job": job.to_dict(), "cycle": cycle}

    async def run_backfill_cycle(self) -> dict[str, Any]:
        result = await self.backfill.run_cycle()
        return result.to_dict()

    def init_backfill_for_all_sources(self) -> dict[str, Any]:
        return {"created": self.backfill.init_for_all_sources()}

    def pause_job(self, job_id: int) -> dict[str, Any]:
        return self.backfill.pause_job(job_id).to_dict()

    def resume_job(self, job_id: int) -> dict[str, Any]:
        return self.backfill.resume_job(job_id).to_dict()

    def retry_job(self, job_id: int) -> dict[str, Any]:
        return self.backfill.retry_job(job_id).to_dict()

    def get_backfill_status(self) -> dict[str, Any]:
        return self.backfill.status()
