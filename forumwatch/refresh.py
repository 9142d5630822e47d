"""
Scheduled refresh cycle.

At most one cycle runs at a time: a process-local flag rejects overlapping
cycles in this process, and a Redis lease rejects cycles while another process
holds it. The lease is renewed before every batch after the first; if it has
been lost the cycle stops fetching. A skipped cycle does nothing at all: no
fetches, no cache writes.
"""

import asyncio
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Awaitable, Callable, Iterable, Optional

from forumwatch.cache import TieredCache
from forumwatch.collectors.base import BaseCollector, FetchResult
from forumwatch.db import Database, utc_now
from forumwatch.lock import LeaseLock
from forumwatch.pipeline import fetch_in_batches
from forumwatch.utils.logging import get_logger

logger = get_logger(__name__)

SKIP_ALREADY_RUNNING = "already_running"
SKIP_LOCK_HELD = "lock_held"


@dataclass
class SourceOutcome:
    source_id: int
    name: str
    url: str
    ok: bool
    topic_count: int = 0
    error: Optional[str] = None
    error_kind: Optional[str] = None

    @classmethod
    def from_result(cls, result: FetchResult) -> "SourceOutcome":
        return cls(
            source_id=result.source.id,
            name=result.source.name,
            url=result.source.url,
            ok=result.ok,
            topic_count=len(result.topics),
            error=result.error,
            error_kind=result.error_kind,
        )


@dataclass
class RefreshResult:
    tiers: list[int]
    started_at: datetime
    finished_at: Optional[datetime] = None
    outcomes: list[SourceOutcome] = field(default_factory=list)
    skipped: Optional[str] = None
    lease_lost: bool = False

    @property
    def successes(self) -> int:
        return sum(1 for o in self.outcomes if o.ok)

    @property
    def failures(self) -> int:
        return sum(1 for o in self.outcomes if not o.ok)

    def to_dict(self) -> dict[str, Any]:
        return {
            "tiers": self.tiers,
            "started_at": self.started_at.isoformat(),
            "finished_at": self.finished_at.isoformat() if self.finished_at else None,
            "skipped": self.skipped,
            "lease_lost": self.lease_lost,
            "successes": self.successes,
            "failures": self.failures,
            "outcomes": [o.__dict__ for o in self.outcomes],
        }


class RefreshCoordinator:
    def __init__(
        self,
        db: Database,
        cache: TieredCache,
        collector: BaseCollector,
        lock: LeaseLock,
        batch_size: int = 3,
        batch_delay: float = 2.0,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ):
        self.db = db
        self.cache = cache
        self.collector = collector
        self.lock = lock
        self.batch_size = batch_size
        self.batch_delay = batch_delay
        self._sleep = sleep
        self._refreshing = False
        self.last_refresh_start: Optional[datetime] = None
        self.last_result: Optional[RefreshResult] = None

    @property
    def is_refreshing(self) -> bool:
        return self._refreshing

    async def _handle_result(self, result: FetchResult) -> None:
        if result.usable:
            await self.cache.put(result.source, result.topics)
            logger.info("refresh_source_cached", source=result.source.name,
                        count=len(result.topics))
        elif result.ok:
            # Nothing listed; keep whatever snapshot is already cached
            logger.info("refresh_source_empty", source=result.source.name)
        else:
            self.cache.record_error(result.source, result.error or "unknown error")

    async def refresh(self, tiers: Iterable[int]) -> RefreshResult:
        tiers = sorted(set(tiers))
        started_at = utc_now()

        if self._refreshing:
            logger.info("refresh_skipped", reason=SKIP_ALREADY_RUNNING, tiers=tiers)
            return RefreshResult(tiers=tiers, started_at=started_at,
                                 finished_at=started_at, skipped=SKIP_ALREADY_RUNNING)

        self._refreshing = True
        try:
            if not await self.lock.acquire():
                logger.info("refresh_skipped", reason=SKIP_LOCK_HELD, tiers=tiers)
                return RefreshResult(tiers=tiers, started_at=started_at,
                                     finished_at=started_at, skipped=SKIP_LOCK_HELD)
            try:
                return await self._run_cycle(tiers, started_at)
            finally:
                await self.lock.release()
        finally:
            self._refreshing = False

    async def _run_cycle(self, tiers: list[int], started_at: datetime) -> RefreshResult:
        self.last_refresh_start = started_at
        sources = self.db.list_sources(tiers)
        logger.info("refresh_started", tiers=tiers, sources=len(sources))

        results = await fetch_in_batches(
            self.collector,
            sources,
            batch_size=self.batch_size,
            batch_delay=self.batch_delay,
            on_result=self._handle_result,
            sleep=self._sleep,
            before_batch=self.lock.extend,
        )

        usable_urls = [r.source.url for r in results if r.usable]
        await self.cache.set_run_metadata(started_at, usable_urls)

        result = RefreshResult(
            tiers=tiers,
            started_at=started_at,
            finished_at=utc_now(),
            outcomes=[SourceOutcome.from_result(r) for r in results],
            lease_lost=not self.lock.held,
        )
        self.last_result = result
        logger.info("refresh_complete", tiers=tiers,
                    successes=result.successes, failures=result.failures)
        return result
