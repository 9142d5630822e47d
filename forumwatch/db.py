"""
Durable store: sources, topics and backfill jobs.

SQLAlchemy ORM over SQLite (local/dev/tests) or PostgreSQL (production).
Topic writes from the refresh path and the backfill path both go through
``upsert_topics`` so the two converge on the same row per (source, external id).

Schema:

    sources        (id, url UNIQUE, name, category, tier, logo_url, is_active,
                    last_fetched_at, created_at, updated_at)
    topics         (id, source_id, external_id, title, slug, category_id, tags,
                    posts_count, views, reply_count, like_count,
                    pinned, closed, archived, visible,
                    created_at, bumped_at, first_seen_at, last_seen_at,
                    UNIQUE(source_id, external_id))
    backfill_jobs  (id, source_id UNIQUE, status, current_page, topics_fetched,
                    total_pages, last_run_at, error, created_at, updated_at)
"""

from contextlib import contextmanager
from datetime import datetime, timedelta, timezone
from typing import Iterable, Iterator, Optional

from sqlalchemy import (
    JSON,
    Boolean,
    CheckConstraint,
    DateTime,
    ForeignKey,
    Integer,
    String,
    Text,
    UniqueConstraint,
    create_engine,
    func,
    select,
)
from sqlalchemy.dialects import postgresql, sqlite
from sqlalchemy.orm import DeclarativeBase, Mapped, Session, mapped_column, sessionmaker

from forumwatch.collectors.base import Source, Topic
from forumwatch.sources import SourceConfig
from forumwatch.utils.logging import get_logger

logger = get_logger(__name__)

JOB_STATUSES = ("pending", "running", "complete", "failed", "paused")


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


def as_utc(value: Optional[datetime]) -> Optional[datetime]:
    """SQLite hands back naive datetimes; everything stored is UTC."""
    if value is None:
        return None
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value


class Base(DeclarativeBase):
    pass


class SourceRow(Base):
    __tablename__ = "sources"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    url: Mapped[str] = mapped_column(String, unique=True, nullable=False)
    name: Mapped[str] = mapped_column(String, nullable=False)
    category: Mapped[str] = mapped_column(String, nullable=False, default="general")
    tier: Mapped[int] = mapped_column(Integer, nullable=False, default=1, index=True)
    logo_url: Mapped[Optional[str]] = mapped_column(String, nullable=True)
    is_active: Mapped[bool] = mapped_column(Boolean, nullable=False, default=True)
    last_fetched_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True))
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=utc_now)
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=utc_now, onupdate=utc_now
    )

    def to_source(self) -> Source:
        return Source(
            id=self.id,
            url=self.url,
            name=self.name,
            tier=self.tier,
            category=self.category,
            logo_url=self.logo_url,
        )


class TopicRow(Base):
    __tablename__ = "topics"
    __table_args__ = (UniqueConstraint("source_id", "external_id", name="uq_topics_source_external"),)

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    source_id: Mapped[int] = mapped_column(
        ForeignKey("sources.id", ondelete="CASCADE"), nullable=False, index=True
    )
    external_id: Mapped[int] = mapped_column(Integer, nullable=False)
    title: Mapped[str] = mapped_column(Text, nullable=False)
    slug: Mapped[Optional[str]] = mapped_column(String)
    category_id: Mapped[Optional[int]] = mapped_column(Integer)
    tags: Mapped[list] = mapped_column(JSON, nullable=False, default=list)
    posts_count: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    views: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    reply_count: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    like_count: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    pinned: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    closed: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    archived: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    visible: Mapped[bool] = mapped_column(Boolean, nullable=False, default=True)
    created_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True))
    bumped_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), index=True)
    first_seen_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=utc_now)
    last_seen_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=utc_now)


class BackfillJobRow(Base):
    __tablename__ = "backfill_jobs"
    __table_args__ = (
        CheckConstraint(
            "status IN ('pending', 'running', 'complete', 'failed', 'paused')",
            name="ck_backfill_jobs_status",
        ),
    )

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    source_id: Mapped[int] = mapped_column(
        ForeignKey("sources.id", ondelete="CASCADE"), unique=True, nullable=False
    )
    status: Mapped[str] = mapped_column(String, nullable=False, default="pending", index=True)
    current_page: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    topics_fetched: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    total_pages: Mapped[Optional[int]] = mapped_column(Integer)
    last_run_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True))
    error: Mapped[Optional[str]] = mapped_column(Text)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=utc_now)
    updated_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=utc_now)


class Database:
    """Engine + session factory with the handful of queries the engine needs."""

    def __init__(self, url: str):
        self.url = url
        connect_args = {"check_same_thread": False} if url.startswith("sqlite") else {}
        self.engine = create_engine(url, connect_args=connect_args, future=True)
        self._session_factory = sessionmaker(bind=self.engine, expire_on_commit=False)

    @property
    def dialect(self) -> str:
        return self.engine.dialect.name

    def init_schema(self) -> None:
        Base.metadata.create_all(self.engine)
        logger.info("db_schema_ready", dialect=self.dialect)

    def dispose(self) -> None:
        self.engine.dispose()

    @contextmanager
    def session(self) -> Iterator[Session]:
        """Session that commits on success and rolls back on error."""
        session = self._session_factory()
        try:
            yield session
            session.commit()
        except Exception:
            session.rollback()
            raise
        finally:
            session.close()

    def insert(self, model):
        """Dialect-specific INSERT that supports ON CONFLICT."""
        if self.dialect == "postgresql":
            return postgresql.insert(model)
        if self.dialect == "sqlite":
            return sqlite.insert(model)
        raise NotImplementedError(f"Upserts are not supported on {self.dialect}")

    # ------------------------------------------------------------------ #
    # Sources
    # ------------------------------------------------------------------ #

    def seed_sources(self, configs: Iterable[SourceConfig]) -> list[Source]:
        """Insert or update each configured source by URL."""
        with self.session() as session:
            for config in configs:
                stmt = self.insert(SourceRow).values(
                    url=config.url,
                    name=config.name,
                    category=config.category,
                    tier=config.tier,
                    logo_url=config.logo_url,
                    is_active=True,
                    created_at=utc_now(),
                    updated_at=utc_now(),
                )
                stmt = stmt.on_conflict_do_update(
                    index_elements=[SourceRow.url],
                    set_={
                        "name": stmt.excluded.name,
                        "category": stmt.excluded.category,
                        "tier": stmt.excluded.tier,
                        "logo_url": stmt.excluded.logo_url,
                        "updated_at": stmt.excluded.updated_at,
                    },
                )
                session.execute(stmt)
        sources = self.list_sources()
        logger.info("sources_seeded", count=len(sources))
        return sources

    def list_sources(self, tiers: Optional[Iterable[int]] = None) -> list[Source]:
        """Active sources ordered by tier then name, optionally limited to ``tiers``."""
        query = select(SourceRow).where(SourceRow.is_active.is_(True))
        if tiers is not None:
            query = query.where(SourceRow.tier.in_(list(tiers)))
        query = query.order_by(SourceRow.tier, SourceRow.name)
        with self.session() as session:
            return [row.to_source() for row in session.scalars(query)]

    def get_source(self, source_id: int) -> Optional[Source]:
        with self.session() as session:
            row = session.get(SourceRow, source_id)
            return row.to_source() if row is not None else None

    def mark_source_fetched(self, source_id: int) -> None:
        with self.session() as session:
            row = session.get(SourceRow, source_id)
            if row is not None:
                row.last_fetched_at = utc_now()

    # ------------------------------------------------------------------ #
    # Topics
    # ------------------------------------------------------------------ #

    def upsert_topic(self, session: Session, source_id: int, topic: Topic) -> None:
        """
        Insert or refresh one topic inside an open session.

        ``created_at`` and ``first_seen_at`` are only ever set once; every other
        column takes the freshly fetched value.
        """
        now = utc_now()
        stmt = self.insert(TopicRow).values(
            source_id=source_id,
            external_id=topic.external_id,
            title=topic.title,
            slug=topic.slug or None,
            category_id=topic.category_id,
            tags=list(topic.tags),
            posts_count=topic.posts_count,
            views=topic.views,
            reply_count=topic.reply_count,
            like_count=topic.like_count,
            pinned=topic.pinned,
            closed=topic.closed,
            archived=topic.archived,
            visible=topic.visible,
            created_at=topic.created_at,
            bumped_at=topic.bumped_at,
            first_seen_at=now,
            last_seen_at=now,
        )
        excluded = stmt.excluded
        stmt = stmt.on_conflict_do_update(
            index_elements=[TopicRow.source_id, TopicRow.external_id],
            set_={
                "title": excluded.title,
                "slug": excluded.slug,
                "category_id": excluded.category_id,
                "tags": excluded.tags,
                "posts_count": excluded.posts_count,
                "views": excluded.views,
                "reply_count": excluded.reply_count,
                "like_count": excluded.like_count,
                "pinned": excluded.pinned,
                "closed": excluded.closed,
                "archived": excluded.archived,
                "visible": excluded.visible,
                "created_at": func.coalesce(TopicRow.__table__.c.created_at, excluded.created_at),
                "bumped_at": excluded.bumped_at,
                "last_seen_at": excluded.last_seen_at,
            },
        )
        session.execute(stmt)

    def upsert_topics(self, source_id: int, topics: Iterable[Topic]) -> int:
        count = 0
        with self.session() as session:
            for topic in topics:
                self.upsert_topic(session, source_id, topic)
                count += 1
        return count

    def get_topic(self, source_id: int, external_id: int) -> Optional[TopicRow]:
        with self.session() as session:
            return session.scalars(
                select(TopicRow).where(
                    TopicRow.source_id == source_id,
                    TopicRow.external_id == external_id,
                )
            ).one_or_none()

    def count_topics(self, source_id: Optional[int] = None) -> int:
        query = select(func.count(TopicRow.id))
        if source_id is not None:
            query = query.where(TopicRow.source_id == source_id)
        with self.session() as session:
            return session.scalar(query) or 0

    def stats(self) -> dict:
        since = utc_now() - timedelta(hours=24)
        with self.session() as session:
            sources = session.scalar(select(func.count(SourceRow.id))) or 0
            topics = session.scalar(select(func.count(TopicRow.id))) or 0
            recent = session.scalar(
                select(func.count(TopicRow.id)).where(TopicRow.first_seen_at >= since)
            ) or 0
        return {"sources": sources, "topics": topics, "new_topics_last_24h": recent}
