"""
Historical backfill: walk each source's full latest.json pagination over time.

One job row per source. Each call to ``run_cycle`` picks one job, fetches a few
pages for it and returns; something outside (the scheduler, an operator) has
to call again to continue. Progress is committed after every page.

    pending ──run──> running ──(empty page / last page)──> complete
       │                │
       │                └──(fetch or store error)──> failed ──retry──> pending
       └──pause──> paused <──pause── running
                     └──resume──> pending
"""

import asyncio
from dataclasses import dataclass
from datetime import datetime
from typing import Any, Awaitable, Callable, Optional

from sqlalchemy import case, select

from forumwatch.collectors.base import BaseCollector, Source
from forumwatch.db import BackfillJobRow, Database, SourceRow, as_utc, utc_now
from forumwatch.errors import InvalidTransitionError, JobNotFoundError, SourceNotFoundError
from forumwatch.utils.logging import get_logger

logger = get_logger(__name__)

PENDING = "pending"
RUNNING = "running"
COMPLETE = "complete"
FAILED = "failed"
PAUSED = "paused"

# action -> (allowed current states, target state)
_TRANSITIONS = {
    "pause": ({PENDING, RUNNING}, PAUSED),
    "resume": ({PAUSED}, PENDING),
    "retry": ({FAILED}, PENDING),
}

_STATUS_ORDER = {RUNNING: 1, PENDING: 2, FAILED: 3, PAUSED: 4, COMPLETE: 5}


@dataclass
class BackfillJob:
    id: int
    source_id: int
    status: str
    current_page: int
    topics_fetched: int
    total_pages: Optional[int]
    last_run_at: Optional[datetime]
    error: Optional[str]
    created_at: Optional[datetime]
    updated_at: Optional[datetime]
    source_url: str = ""
    source_name: str = ""
    source_tier: int = 1

    @classmethod
    def from_rows(cls, job: BackfillJobRow, source: SourceRow) -> "BackfillJob":
        return cls(
            id=job.id,
            source_id=job.source_id,
            status=job.status,
            current_page=job.current_page,
            topics_fetched=job.topics_fetched,
            total_pages=job.total_pages,
            last_run_at=as_utc(job.last_run_at),
            error=job.error,
            created_at=as_utc(job.created_at),
            updated_at=as_utc(job.updated_at),
            source_url=source.url,
            source_name=source.name,
            source_tier=source.tier,
        )

    @property
    def source(self) -> Source:
        return Source(id=self.source_id, url=self.source_url,
                      name=self.source_name, tier=self.source_tier)

    def to_dict(self) -> dict[str, Any]:
        data = dict(self.__dict__)
        for key in ("last_run_at", "created_at", "updated_at"):
            if data[key] is not None:
                data[key] = data[key].isoformat()
        return data


@dataclass
class BackfillCycleResult:
    job_processed: bool
    job_id: Optional[int] = None
    source_name: Optional[str] = None
    pages_processed: int = 0
    topics_fetched: int = 0
    complete: bool = False
    error: Optional[str] = None

    def to_dict(self) -> dict[str, Any]:
        return dict(self.__dict__)


class BackfillJobManager:
    def __init__(
        self,
        db: Database,
        collector: BaseCollector,
        pages_per_cycle: int = 3,
        page_delay: float = 5.0,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ):
        self.db = db
        self.collector = collector
        self.pages_per_cycle = max(1, pages_per_cycle)
        self.page_delay = page_delay
        self._sleep = sleep

    # ------------------------------------------------------------------ #
    # Queries
    # ------------------------------------------------------------------ #

    def _joined(self):
        return select(BackfillJobRow, SourceRow).join(
            SourceRow, BackfillJobRow.source_id == SourceRow.id
        )

    def get_job(self, job_id: int) -> BackfillJob:
        with self.db.session() as session:
            row = session.execute(
                self._joined().where(BackfillJobRow.id == job_id)
            ).one_or_none()
            if row is None:
                raise JobNotFoundError(f"Backfill job {job_id} not found")
            return BackfillJob.from_rows(*row)

    def next_job(self) -> Optional[BackfillJob]:
        """
        Oldest-updated running job first, so in-flight sources finish before
        new ones start; otherwise the oldest-created pending job.
        """
        with self.db.session() as session:
            row = session.execute(
                self._joined()
                .where(BackfillJobRow.status == RUNNING)
                .order_by(BackfillJobRow.updated_at.asc(), BackfillJobRow.id.asc())
                .limit(1)
            ).one_or_none()
            if row is None:
                row = session.execute(
                    self._joined()
                    .where(BackfillJobRow.status == PENDING)
                    .order_by(BackfillJobRow.created_at.asc(), BackfillJobRow.id.asc())
                    .limit(1)
                ).one_or_none()
            return BackfillJob.from_rows(*row) if row is not None else None

    def status(self) -> dict[str, Any]:
        order = case(_STATUS_ORDER, value=BackfillJobRow.status, else_=6)
        with self.db.session() as session:
            rows = session.execute(
                self._joined().order_by(order, BackfillJobRow.updated_at.desc())
            ).all()
            jobs = [BackfillJob.from_rows(*row) for row in rows]

        counts = {state: 0 for state in (PENDING, RUNNING, COMPLETE, FAILED, PAUSED)}
        for job in jobs:
            counts[job.status] = counts.get(job.status, 0) + 1
        return {**counts, "jobs": [job.to_dict() for job in jobs]}

    # ------------------------------------------------------------------ #
    # Creation
    # ------------------------------------------------------------------ #

    def start_backfill(self, source_id: int) -> BackfillJob:
        """Create the source's job, or reset an existing one to page 0."""
        if self.db.get_source(source_id) is None:
            raise SourceNotFoundError(f"Source {source_id} not found")

        now = utc_now()
        stmt = self.db.insert(BackfillJobRow).values(
            source_id=source_id,
            status=PENDING,
            current_page=0,
            topics_fetched=0,
            created_at=now,
            updated_at=now,
        )
        stmt = stmt.on_conflict_do_update(
            index_elements=[BackfillJobRow.source_id],
            set_={
                "status": PENDING,
                "current_page": 0,
                "topics_fetched": 0,
                "total_pages": None,
                "error": None,
                "updated_at": now,
            },
        )
        with self.db.session() as session:
            session.execute(stmt)
            job_id = session.scalar(
                select(BackfillJobRow.id).where(BackfillJobRow.source_id == source_id)
            )
        logger.info("backfill_job_started", source_id=source_id, job_id=job_id)
        return self.get_job(job_id)

    def init_for_all_sources(self) -> int:
        """Create a pending job for every source that has none. Returns how many were created."""
        created = 0
        with self.db.session() as session:
            missing = session.scalars(
                select(SourceRow.id)
                .where(SourceRow.id.not_in(select(BackfillJobRow.source_id)))
                .order_by(SourceRow.tier, SourceRow.id)
            ).all()
            for source_id in missing:
                now = utc_now()
                stmt = self.db.insert(BackfillJobRow).values(
                    source_id=source_id, status=PENDING, created_at=now, updated_at=now,
                ).on_conflict_do_nothing(index_elements=[BackfillJobRow.source_id])
                created += session.execute(stmt).rowcount or 0
        logger.info("backfill_jobs_initialised", created=created)
        return created

    # ------------------------------------------------------------------ #
    # Transitions
    # ------------------------------------------------------------------ #

    def _update(self, job_id: int, *, touch_run: bool = False, **fields) -> None:
        with self.db.session() as session:
            row = session.get(BackfillJobRow, job_id)
            if row is None:
                raise JobNotFoundError(f"Backfill job {job_id} not found")
            for name, value in fields.items():
                setattr(row, name, value)
            now = utc_now()
            row.updated_at = now
            if touch_run:
                row.last_run_at = now

    def _transition(self, job_id: int, action: str) -> BackfillJob:
        allowed, target = _TRANSITIONS[action]
        with self.db.session() as session:
            row = session.get(BackfillJobRow, job_id)
            if row is None:
                raise JobNotFoundError(f"Backfill job {job_id} not found")
            if row.status not in allowed:
                raise InvalidTransitionError(job_id, row.status, target)
            row.status = target
            if target == PENDING:
                row.error = None
            row.updated_at = utc_now()
        logger.info("backfill_job_transition", job_id=job_id, action=action, status=target)
        return self.get_job(job_id)

    def pause_job(self, job_id: int) -> BackfillJob:
        return self._transition(job_id, "pause")

    def resume_job(self, job_id: int) -> BackfillJob:
        return self._transition(job_id, "resume")

    def retry_job(self, job_id: int) -> BackfillJob:
        return self._transition(job_id, "retry")

    # ------------------------------------------------------------------ #
    # Work
    # ------------------------------------------------------------------ #

    async def run_cycle(self) -> BackfillCycleResult:
        """Process one unit of work for the next eligible job, if any."""
        job = self.next_job()
        if job is None:
            logger.info("backfill_idle")
            return BackfillCycleResult(job_processed=False)
        return await self.process_job(job)

    async def process_job(self, job: BackfillJob) -> BackfillCycleResult:
        source = job.source
        page = job.current_page
        fetched = job.topics_fetched
        pages_processed = 0

        self._update(job.id, touch_run=True, status=RUNNING, error=None)
        log = logger.bind(job_id=job.id, source=source.name)

        try:
            for i in range(self.pages_per_cycle):
                log.info("backfill_page_fetching", page=page)
                result = await self.collector.fetch_page_with_retry(source, page)

                if not result.topics:
                    self._update(job.id, touch_run=True, status=COMPLETE,
                                 current_page=page, topics_fetched=fetched, total_pages=page)
                    log.info("backfill_complete", topics=fetched, total_pages=page)
                    return self._result(job, pages_processed, fetched, complete=True)

                self.db.upsert_topics(source.id, result.topics)
                fetched += len(result.topics)
                stopped_at = page
                page += 1
                pages_processed += 1
                self._update(job.id, touch_run=True, current_page=page, topics_fetched=fetched)
                log.info("backfill_page_done", page=stopped_at,
                         count=len(result.topics), total=fetched)

                if not result.has_more:
                    self._update(job.id, touch_run=True, status=COMPLETE, total_pages=stopped_at)
                    log.info("backfill_complete", topics=fetched, total_pages=stopped_at)
                    return self._result(job, pages_processed, fetched, complete=True)

                if i < self.pages_per_cycle - 1 and self.page_delay > 0:
                    await self._sleep(self.page_delay)

        except Exception as exc:
            message = str(exc) or type(exc).__name__
            log.error("backfill_failed", page=page, error=message)
            try:
                self._update(job.id, touch_run=True, status=FAILED, error=message)
            except Exception as update_exc:
                log.error("backfill_fail_state_not_saved", error=str(update_exc))
            return self._result(job, pages_processed, fetched, error=message)

        log.info("backfill_cycle_done", pages=pages_processed, next_page=page)
        return self._result(job, pages_processed, fetched)

    def _result(
        self,
        job: BackfillJob,
        pages: int,
        fetched: int,
        complete: bool = False,
        error: Optional[str] = None,
    ) -> BackfillCycleResult:
        return BackfillCycleResult(
            job_processed=True,
            job_id=job.id,
            source_name=job.source_name,
            pages_processed=pages,
            topics_fetched=fetched - job.topics_fetched,
            complete=complete,
            error=error,
        )
