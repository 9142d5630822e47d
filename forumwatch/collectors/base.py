from abc import ABC, abstractmethod
from dataclasses import asdict, dataclass, field
from datetime import datetime, timezone
from typing import Any, Optional


@dataclass(frozen=True)
class Source:
    """A forum whose topic listings are ingested. Seeded from configuration."""
    id: int
    url: str             # base URL, e.g. "https://gov.optimism.io"
    name: str
    tier: int = 1        # 1 = refreshed every cycle, 3 = on demand only
    category: str = "general"
    logo_url: Optional[str] = None

    @property
    def base_url(self) -> str:
        return self.url.rstrip("/")


@dataclass
class Topic:
    """One discussion thread as listed on a source's latest page."""
    external_id: int     # the forum's own topic id
    title: str
    slug: str = ""
    category_id: Optional[int] = None
    tags: list[str] = field(default_factory=list)
    posts_count: int = 0
    views: int = 0
    reply_count: int = 0
    like_count: int = 0
    pinned: bool = False
    closed: bool = False
    archived: bool = False
    visible: bool = True
    created_at: Optional[datetime] = None
    bumped_at: Optional[datetime] = None
    image_url: Optional[str] = None

    def to_dict(self) -> dict[str, Any]:
        data = asdict(self)
        for key in ("created_at", "bumped_at"):
            if data[key] is not None:
                data[key] = data[key].isoformat()
        return data

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "Topic":
        values = dict(data)
        for key in ("created_at", "bumped_at"):
            if values.get(key):
                values[key] = datetime.fromisoformat(values[key])
        known = cls.__dataclass_fields__.keys()
        return cls(**{k: v for k, v in values.items() if k in known})


@dataclass
class PageResult:
    """One page of a topic listing."""
    topics: list[Topic]
    has_more: bool


@dataclass
class FetchResult:
    """
    Outcome of refreshing one source. Errors are data here, never exceptions.
    """
    source: Source
    topics: list[Topic] = field(default_factory=list)
    error: Optional[str] = None
    error_kind: Optional[str] = None
    fetched_at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))

    @property
    def ok(self) -> bool:
        return self.error is None

    @property
    def usable(self) -> bool:
        """Succeeded and returned something worth caching."""
        return self.ok and len(self.topics) > 0


class BaseCollector(ABC):
    """Abstract base for source collectors."""

    @abstractmethod
    async def fetch_page(self, source: Source, page: int = 0) -> PageResult:
        """Fetch one listing page. Raises FetchError subclasses on failure."""
        ...

    async def fetch_page_with_retry(self, source: Source, page: int = 0) -> PageResult:
        """fetch_page under the collector's retry policy. Default: no retries."""
        return await self.fetch_page(source, page)

    @abstractmethod
    async def fetch_latest(self, source: Source) -> FetchResult:
        """Fetch the first listing page. Never raises."""
        ...
