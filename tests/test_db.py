import json
from datetime import datetime, timezone

import pytest

from forumwatch.sources import SourceConfig, builtin_sources, load_source_configs


def test_seed_sources_is_idempotent(db, sources):
    again = db.seed_sources([SourceConfig(name="Alpha Renamed", url="https://forum.alpha.org", tier=2)])
    by_url = {s.url: s for s in again}

    assert len(again) == len(sources)
    assert by_url["https://forum.alpha.org"].id == sources["Alpha"].id
    assert by_url["https://forum.alpha.org"].name == "Alpha Renamed"
    assert by_url["https://forum.alpha.org"].tier == 2


def test_list_sources_filters_by_tier(db, sources):
    tier_one = db.list_sources([1])
    assert {s.name for s in tier_one} == {"Alpha", "Beta"}
    assert [s.name for s in db.list_sources([1, 2])] == ["Alpha", "Beta", "Gamma"]
    assert len(db.list_sources()) == 4


def test_upsert_inserts_then_updates_counts(db, sources, topic_factory):
    source = sources["Alpha"]
    db.upsert_topics(source.id, [topic_factory(7, views=10, tags=["a"])])
    db.upsert_topics(source.id, [topic_factory(7, views=99, tags=["a", "b"], closed=True)])

    row = db.get_topic(source.id, 7)
    assert db.count_topics(source.id) == 1
    assert row.views == 99
    assert row.tags == ["a", "b"]
    assert row.closed is True


def test_upsert_preserves_created_and_first_seen(db, sources, topic_factory):
    source = sources["Alpha"]
    original = datetime(2023, 1, 1, 12, 0, tzinfo=timezone.utc)
    db.upsert_topics(source.id, [topic_factory(8, created_at=original)])
    first = db.get_topic(source.id, 8)

    db.upsert_topics(source.id, [topic_factory(8, created_at=datetime(2024, 6, 1, tzinfo=timezone.utc))])
    second = db.get_topic(source.id, 8)

    assert second.created_at.replace(tzinfo=None) == original.replace(tzinfo=None)
    assert second.first_seen_at == first.first_seen_at
    assert second.last_seen_at >= first.last_seen_at


def test_same_external_id_on_two_sources_is_two_rows(db, sources, topic_factory):
    db.upsert_topics(sources["Alpha"].id, [topic_factory(1)])
    db.upsert_topics(sources["Beta"].id, [topic_factory(1)])
    assert db.count_topics() == 2


def test_mark_source_fetched(db, sources):
    db.mark_source_fetched(sources["Beta"].id)
    from forumwatch.db import SourceRow

    with db.session() as session:
        assert session.get(SourceRow, sources["Beta"].id).last_fetched_at is not None
        assert session.get(SourceRow, sources["Alpha"].id).last_fetched_at is None


def test_stats(db, sources, topic_factory):
    db.upsert_topics(sources["Alpha"].id, [topic_factory(1), topic_factory(2)])
    assert db.stats() == {"sources": 4, "topics": 2, "new_topics_last_24h": 2}


def test_builtin_presets_are_valid():
    presets = builtin_sources()
    assert len(presets) > 10
    assert all(not p.url.endswith("/") for p in presets)
    assert len({p.url for p in presets}) == len(presets)


def test_load_source_configs_from_file(tmp_path):
    path = tmp_path / "sources.json"
    path.write_text(json.dumps([
        {"name": "One", "url": "https://one.example.org/", "tier": 2},
        {"name": "Two", "url": "https://two.example.org"},
    ]))
    configs = load_source_configs(str(path))

    assert [c.url for c in configs] == ["https://one.example.org", "https://two.example.org"]
    assert configs[1].tier == 1


def test_load_source_configs_rejects_bad_file(tmp_path):
    path = tmp_path / "sources.json"
    path.write_text(json.dumps({"name": "not a list"}))
    with pytest.raises(ValueError):
        load_source_configs(str(path))

    with pytest.raises(ValueError):
        load_source_configs(str(tmp_path / "missing.json"))
