"""
APScheduler wiring.

The refresh cycle fires once immediately on start, then every cache TTL. The
backfill cycle is only scheduled when BACKFILL_INTERVAL_MINUTES is set; otherwise
it is driven from the /backfill routes.

CLI usage:
    python -m forumwatch.scheduler --run-now            # one refresh of all tiers
    python -m forumwatch.scheduler --backfill           # one backfill cycle

Add --verbose for debug logging.
"""

import asyncio
import sys
from datetime import datetime, timezone

from apscheduler.schedulers.asyncio import AsyncIOScheduler

from forumwatch.config import settings
from forumwatch.utils.logging import get_logger, setup_logging

logger = get_logger(__name__)

REFRESH_JOB_ID = "refresh_cache"
BACKFILL_JOB_ID = "backfill_cycle"


def create_scheduler(engine) -> AsyncIOScheduler:
    """Create and configure the APScheduler instance (not yet started)."""
    scheduler = AsyncIOScheduler()

    scheduler.add_job(
        engine.scheduled_refresh,
        "interval",
        seconds=engine.settings.cache_ttl_seconds,
        id=REFRESH_JOB_ID,
        next_run_time=datetime.now(timezone.utc),
        max_instances=1,
        coalesce=True,
    )

    if engine.settings.backfill_interval_minutes > 0:
        scheduler.add_job(
            engine.run_backfill_cycle,
            "interval",
            minutes=engine.settings.backfill_interval_minutes,
            id=BACKFILL_JOB_ID,
            max_instances=1,
            coalesce=True,
        )

    return scheduler


# --------------------------------------------------------------------------- #
# CLI entry point: python -m forumwatch.scheduler --run-now | --backfill
# --------------------------------------------------------------------------- #

async def _run_now() -> None:
    from forumwatch.service import ALL_TIERS, ForumWatchEngine

    setup_logging("debug" if "--verbose" in sys.argv else None)
    engine = ForumWatchEngine(settings)
    engine.prepare()
    try:
        result = await engine.refresh_now(ALL_TIERS)
        for outcome in result["outcomes"]:
            logger.info("run_now_result", **outcome)
    finally:
        await engine.stop()


async def _backfill_once() -> None:
    from forumwatch.service import ForumWatchEngine

    setup_logging("debug" if "--verbose" in sys.argv else None)
    engine = ForumWatchEngine(settings)
    engine.prepare()
    try:
        engine.init_backfill_for_all_sources()
        result = await engine.run_backfill_cycle()
        logger.info("backfill_once_result", **result)
    finally:
        await engine.stop()


if __name__ == "__main__":
    if "--run-now" in sys.argv:
        asyncio.run(_run_now())
    elif "--backfill" in sys.argv:
        asyncio.run(_backfill_once())
    else:
        print("Usage: python -m forumwatch.scheduler --run-now | --backfill")
        sys.exit(1)
