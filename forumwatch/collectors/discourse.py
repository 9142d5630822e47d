import httpx

from forumwatch.collectors.base import BaseCollector, FetchResult, PageResult, Source
from forumwatch.config import settings
from forumwatch.errors import (
    FetchError,
    MalformedPayloadError,
    NotJsonError,
    RateLimitedError,
    RedirectError,
    TransportError,
    UpstreamError,
)
from forumwatch.normalize import normalize_topics
from forumwatch.retry import RetryPolicy
from forumwatch.utils.logging import get_logger

logger = get_logger(__name__)

_LATEST_PATH = "/latest.json"


def _retry_after(value: str | None) -> float | None:
    if not value:
        return None
    try:
        return float(value)
    except ValueError:
        # HTTP-date form; the policy falls back to its own backoff
        return None


class DiscourseCollector(BaseCollector):
    """Fetches topic listings from a Discourse forum's public latest.json."""

    def __init__(
        self,
        retry_policy: RetryPolicy | None = None,
        timeout: float | None = None,
        user_agent: str | None = None,
    ):
        self.retry_policy = retry_policy or RetryPolicy.from_settings(settings)
        self.timeout = timeout if timeout is not None else settings.fetch_timeout_seconds
        self.user_agent = user_agent or settings.user_agent

    def latest_url(self, source: Source) -> str:
        return f"{source.base_url}{_LATEST_PATH}"

    async def fetch_page(self, source: Source, page: int = 0) -> PageResult:
        """
        Fetch one page of ``latest.json``.

        Raises:
            RateLimitedError: HTTP 429
            RedirectError: 3xx (redirects are not followed)
            UpstreamError: any other non-2xx
            NotJsonError: 2xx with a non-JSON content type
            MalformedPayloadError: JSON without a usable ``topic_list``
            TransportError: timeouts and connection failures
        """
        url = self.latest_url(source)
        params = {"page": page} if page > 0 else None
        headers = {"Accept": "application/json", "User-Agent": self.user_agent}

        try:
            async with httpx.AsyncClient(
                timeout=self.timeout, headers=headers, follow_redirects=False
            ) as client:
                response = await client.get(url, params=params)
        except httpx.HTTPError as exc:
            raise TransportError(f"{type(exc).__name__}: {exc}") from exc

        status = response.status_code
        if status == 429:
            raise RateLimitedError(_retry_after(response.headers.get("retry-after")))
        if 300 <= status < 400:
            raise RedirectError(status, response.headers.get("location"))
        if not 200 <= status < 300:
            raise UpstreamError(status)

        content_type = response.headers.get("content-type", "") or ""
        if "application/json" not in content_type:
            raise NotJsonError(content_type)

        try:
            data = response.json()
        except ValueError as exc:
            raise MalformedPayloadError(f"Undecodable JSON body: {exc}") from exc

        topic_list = data.get("topic_list") if isinstance(data, dict) else None
        if not isinstance(topic_list, dict):
            raise MalformedPayloadError("Response has no topic_list")
        raw_topics = topic_list.get("topics") or []
        if not isinstance(raw_topics, list):
            raise MalformedPayloadError("topic_list.topics is not a list")

        return PageResult(
            topics=normalize_topics(raw_topics),
            has_more=bool(topic_list.get("more_topics_url")),
        )

    async def fetch_page_with_retry(self, source: Source, page: int = 0) -> PageResult:
        return await self.retry_policy.run(
            lambda: self.fetch_page(source, page),
            label=f"{source.name}#{page}",
        )

    async def fetch_latest(self, source: Source) -> FetchResult:
        try:
            page = await self.fetch_page_with_retry(source, 0)
        except FetchError as exc:
            logger.warning(
                "discourse_fetch_failed",
                source=source.name,
                kind=exc.kind,
                error=str(exc),
            )
            return FetchResult(source=source, error=str(exc), error_kind=exc.kind)
        except Exception as exc:
            logger.error("discourse_fetch_crashed", source=source.name, error=str(exc))
            return FetchResult(source=source, error=str(exc) or type(exc).__name__,
                               error_kind="unexpected")

        logger.info("discourse_fetched", source=source.name, count=len(page.topics))
        return FetchResult(source=source, topics=page.topics)
