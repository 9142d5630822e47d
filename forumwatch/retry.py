"""
Retry with exponential backoff for upstream page fetches.

One ``RetryPolicy`` instance is built per engine and handed to the collector,
so the refresh cycle and the backfill worker retry the same way.
"""

import asyncio
import random
from dataclasses import dataclass, field
from typing import Awaitable, Callable, Optional, TypeVar

from forumwatch.errors import (
    FetchError,
    MalformedPayloadError,
    NotJsonError,
    RateLimitedError,
    RedirectError,
    UpstreamError,
)
from forumwatch.utils.logging import get_logger

logger = get_logger(__name__)

T = TypeVar("T")

# Statuses that will not get better by asking again
_PERMANENT_STATUSES = {401, 403, 404, 410}


def is_retryable(exc: BaseException) -> bool:
    """
    Default classifier: transient transport failures, 429 and 5xx are retried;
    moved forums, non-JSON bodies, bad payloads and 4xx client errors are not.
    """
    if not isinstance(exc, FetchError):
        return False
    if isinstance(exc, (RedirectError, NotJsonError, MalformedPayloadError)):
        return False
    if isinstance(exc, RateLimitedError):
        return True
    if isinstance(exc, UpstreamError):
        if exc.status_code in _PERMANENT_STATUSES:
            return False
        return exc.status_code == 408 or exc.status_code >= 500
    return True


@dataclass
class RetryPolicy:
    """
    Attributes:
        max_attempts: Total tries including the first (1 = no retries)
        base_delay: Delay before the first retry, doubled on each attempt
        max_delay: Upper bound for any single delay
        jitter: Up to this many random seconds added to each delay
        classifier: Returns True if an exception is worth retrying
        sleep: Awaitable sleep, swapped out in tests
    """

    max_attempts: int = 3
    base_delay: float = 1.0
    max_delay: float = 10.0
    jitter: float = 1.0
    classifier: Callable[[BaseException], bool] = is_retryable
    sleep: Callable[[float], Awaitable[None]] = field(default=asyncio.sleep, repr=False)

    @classmethod
    def from_settings(cls, settings) -> "RetryPolicy":
        return cls(
            max_attempts=settings.retry_max_attempts,
            base_delay=settings.retry_base_delay_seconds,
            max_delay=settings.retry_max_delay_seconds,
            jitter=settings.retry_jitter_seconds,
        )

    def delay_for(self, attempt: int, exc: Optional[BaseException] = None) -> float:
        """Seconds to wait after failed attempt number ``attempt`` (0-based)."""
        if isinstance(exc, RateLimitedError) and exc.retry_after is not None:
            return min(max(exc.retry_after, 0.0), self.max_delay)
        delay = self.base_delay * (2 ** attempt)
        if self.jitter > 0:
            delay += random.uniform(0, self.jitter)
        return min(delay, self.max_delay)

    async def run(self, operation: Callable[[], Awaitable[T]], *, label: str = "") -> T:
        """
        Await ``operation()`` until it succeeds, the classifier rejects the
        error, or attempts run out. The last error is re-raised unchanged.
        """
        attempts = max(1, self.max_attempts)
        for attempt in range(attempts):
            try:
                return await operation()
            except Exception as exc:
                if attempt + 1 >= attempts or not self.classifier(exc):
                    raise
                delay = self.delay_for(attempt, exc)
                logger.info(
                    "fetch_retrying",
                    target=label,
                    attempt=attempt + 1,
                    delay=round(delay, 2),
                    error=str(exc),
                )
                await self.sleep(delay)
        raise RuntimeError("unreachable")  # pragma: no cover
