import os

os.environ.setdefault("APP_ENV", "test")

from fnmatch import fnmatch  # noqa: E402

import pytest  # noqa: E402

from forumwatch.collectors.base import (  # noqa: E402
    BaseCollector,
    FetchResult,
    PageResult,
    Source,
    Topic,
)
from forumwatch.db import Database  # noqa: E402
from forumwatch.errors import FetchError  # noqa: E402
from forumwatch.sources import SourceConfig  # noqa: E402


class FakeRedis:
    """In-memory stand-in for the redis.asyncio client calls the engine makes."""

    def __init__(self):
        self.store: dict[str, str] = {}
        self.ttls: dict[str, int] = {}
        self.fail = False
        self.closed = False

    def _check(self):
        if self.fail:
            raise ConnectionError("redis unavailable")

    async def get(self, key):
        self._check()
        return self.store.get(key)

    async def set(self, key, value, nx=False, ex=None):
        self._check()
        if nx and key in self.store:
            return None
        self.store[key] = value
        if ex is not None:
            self.ttls[key] = ex
        return True

    async def delete(self, *keys):
        self._check()
        removed = 0
        for key in keys:
            if self.store.pop(key, None) is not None:
                removed += 1
            self.ttls.pop(key, None)
        return removed

    async def scan_iter(self, match="*"):
        self._check()
        for key in list(self.store):
            if fnmatch(key, match):
                yield key

    async def eval(self, script, numkeys, key, token, *args):
        self._check()
        if self.store.get(key) != token:
            return 0
        if "pexpire" in script:
            self.ttls[key] = int(args[0]) / 1000
            return 1
        return await self.delete(key)

    async def aclose(self):
        self.closed = True


class FakeCollector(BaseCollector):
    """
    Serves canned pages per source URL.

    ``pages[url]`` is a list indexed by page number; each item is a PageResult
    or an exception to raise.
    """

    def __init__(self, pages=None):
        self.pages: dict[str, list] = pages or {}
        self.calls: list[tuple[str, int]] = []

    async def fetch_page(self, source: Source, page: int = 0) -> PageResult:
        self.calls.append((source.url, page))
        pages = self.pages.get(source.url, [])
        if page >= len(pages):
            return PageResult(topics=[], has_more=False)
        item = pages[page]
        if isinstance(item, BaseException):
            raise item
        return item

    async def fetch_latest(self, source: Source) -> FetchResult:
        try:
            page = await self.fetch_page(source, 0)
        except FetchError as exc:
            return FetchResult(source=source, error=str(exc), error_kind=exc.kind)
        return FetchResult(source=source, topics=page.topics)


def make_topic(external_id: int, **overrides) -> Topic:
    values = {
        "title": f"Topic {external_id}",
        "slug": f"topic-{external_id}",
        "posts_count": 3,
        "views": 10,
        "reply_count": 2,
    }
    values.update(overrides)
    return Topic(external_id=external_id, **values)


def make_page(ids, has_more: bool = True) -> PageResult:
    return PageResult(topics=[make_topic(i) for i in ids], has_more=has_more)


SOURCE_CONFIGS = [
    SourceConfig(name="Alpha", url="https://forum.alpha.org", tier=1),
    SourceConfig(name="Beta", url="https://forum.beta.org", tier=1),
    SourceConfig(name="Gamma", url="https://forum.gamma.org", tier=2),
    SourceConfig(name="Delta", url="https://forum.delta.org", tier=3),
]


@pytest.fixture
def fake_redis():
    return FakeRedis()


@pytest.fixture
def db(tmp_path):
    database = Database(f"sqlite:///{tmp_path / 'forumwatch.db'}")
    database.init_schema()
    yield database
    database.dispose()


@pytest.fixture
def sources(db):
    """The seeded sources, keyed by display name."""
    return {source.name: source for source in db.seed_sources(SOURCE_CONFIGS)}


@pytest.fixture
def collector():
    return FakeCollector()


@pytest.fixture
def topic_factory():
    return make_topic


@pytest.fixture
def page_factory():
    return make_page


@pytest.fixture
def no_sleep():
    """Records requested delays instead of sleeping."""
    delays: list[float] = []

    async def _sleep(seconds: float) -> None:
        delays.append(seconds)

    _sleep.delays = delays
    return _sleep
