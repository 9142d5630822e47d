"""
Fetch → cache pipeline for a list of sources.

Sources are fetched in small concurrent batches with a pause between batches.
Each source runs independently; failures in one don't affect others.
"""

import asyncio
from typing import Awaitable, Callable, Optional, Sequence

from forumwatch.collectors.base import BaseCollector, FetchResult, Source
from forumwatch.utils.logging import get_logger

logger = get_logger(__name__)

ResultHandler = Callable[[FetchResult], Awaitable[None]]
BatchGate = Callable[[], Awaitable[bool]]


async def run_source(
    collector: BaseCollector,
    source: Source,
    on_result: Optional[ResultHandler] = None,
) -> FetchResult:
    """
    Fetch one source and hand the result to ``on_result`` as soon as it lands.

    Never raises: a crashing collector or handler is logged and turned into an
    error result for this source only.
    """
    try:
        result = await collector.fetch_latest(source)
    except Exception as exc:
        logger.error("pipeline_fetch_failed", source=source.name, error=str(exc))
        result = FetchResult(source=source, error=str(exc) or type(exc).__name__,
                             error_kind="unexpected")

    if on_result is not None:
        try:
            await on_result(result)
        except Exception as exc:
            logger.error("pipeline_handler_failed", source=source.name, error=str(exc))

    return result


async def fetch_in_batches(
    collector: BaseCollector,
    sources: Sequence[Source],
    batch_size: int = 3,
    batch_delay: float = 2.0,
    on_result: Optional[ResultHandler] = None,
    sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    before_batch: Optional[BatchGate] = None,
) -> list[FetchResult]:
    """
    Fetch every source, ``batch_size`` at a time, sleeping ``batch_delay`` between batches.

    ``before_batch`` is awaited before every batch after the first; if it
    returns False the remaining sources are not fetched.
    """
    batch_size = max(1, batch_size)
    results: list[FetchResult] = []

    for start in range(0, len(sources), batch_size):
        if start > 0 and before_batch is not None and not await before_batch():
            logger.warning("pipeline_stopped", fetched=start, skipped=len(sources) - start)
            break

        batch = sources[start:start + batch_size]
        batch_results = await asyncio.gather(
            *(run_source(collector, source, on_result) for source in batch)
        )
        results.extend(batch_results)

        if start + batch_size < len(sources) and batch_delay > 0:
            await sleep(batch_delay)

    logger.info(
        "pipeline_run_complete",
        sources=len(sources),
        ok=sum(1 for r in results if r.ok),
        failed=sum(1 for r in results if not r.ok),
    )
    return results
