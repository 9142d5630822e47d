"""
Shape normalization for raw Discourse topic payloads.

Everything past this module sees flat string tag lists, integer counters and
timezone-aware datetimes. Nothing else branches on payload shape.
"""

from datetime import datetime, timezone
from typing import Any

from forumwatch.collectors.base import Topic


def normalize_url(url: str) -> str:
    """Cache key for a source: trailing slash stripped, lowercased."""
    return url.strip().rstrip("/").lower()


def normalize_tags(tags: Any) -> list[str]:
    """
    Flatten a Discourse tag list.

    Older instances send ``["governance"]``, newer ones send
    ``[{"id": 1, "name": "governance", "slug": "governance"}]``; some mix both.
    Empty and whitespace-only names are dropped.
    """
    if not isinstance(tags, list):
        return []
    names: list[str] = []
    for tag in tags:
        if isinstance(tag, str):
            name = tag
        elif isinstance(tag, dict):
            name = tag.get("name")
            if not isinstance(name, str):
                continue
        else:
            continue
        name = name.strip()
        if name:
            names.append(name)
    return names


def _int(value: Any, default: int = 0) -> int:
    if isinstance(value, bool):
        return int(value)
    if isinstance(value, int):
        return value
    if isinstance(value, float):
        return int(value)
    if isinstance(value, str):
        try:
            return int(value)
        except ValueError:
            return default
    return default


def derive_reply_count(raw: dict) -> int:
    """Use ``reply_count`` when the source sends it, else posts minus the opening post."""
    if raw.get("reply_count") is not None:
        return max(_int(raw["reply_count"]), 0)
    return max(_int(raw.get("posts_count")) - 1, 0)


def parse_timestamp(value: Any) -> datetime | None:
    if not isinstance(value, str) or not value:
        return None
    try:
        parsed = datetime.fromisoformat(value.replace("Z", "+00:00"))
    except ValueError:
        return None
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed


def normalize_topic(raw: dict) -> Topic | None:
    """Map one ``topic_list.topics[]`` item to a Topic, or None if it has no usable id."""
    if not isinstance(raw, dict):
        return None
    topic_id = raw.get("id")
    if isinstance(topic_id, bool) or not isinstance(topic_id, int):
        return None

    category_id = raw.get("category_id")
    return Topic(
        external_id=topic_id,
        title=str(raw.get("title") or raw.get("fancy_title") or ""),
        slug=str(raw.get("slug") or ""),
        category_id=category_id if isinstance(category_id, int) else None,
        tags=normalize_tags(raw.get("tags")),
        posts_count=_int(raw.get("posts_count")),
        views=_int(raw.get("views")),
        reply_count=derive_reply_count(raw),
        like_count=_int(raw.get("like_count")),
        pinned=bool(raw.get("pinned", False)),
        closed=bool(raw.get("closed", False)),
        archived=bool(raw.get("archived", False)),
        visible=bool(raw.get("visible", True)),
        created_at=parse_timestamp(raw.get("created_at")),
        bumped_at=parse_timestamp(raw.get("bumped_at")),
        image_url=raw.get("image_url") if isinstance(raw.get("image_url"), str) else None,
    )


def normalize_topics(raw_topics: list) -> list[Topic]:
    topics = []
    for raw in raw_topics:
        topic = normalize_topic(raw)
        if topic is not None:
            topics.append(topic)
    return topics
