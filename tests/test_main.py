"""
HTTP surface tests. The engine is built against a temp SQLite file and the
fake collector; the scheduler never starts under APP_ENV=test.
"""

import pytest
from fastapi.testclient import TestClient

from forumwatch.cache import TieredCache
from forumwatch.config import Settings
from forumwatch.db import Database
from forumwatch.service import ForumWatchEngine
from forumwatch.sources import SourceConfig


@pytest.fixture
def engine(tmp_path, collector, no_sleep):
    config = Settings(app_env="test", database_url=f"sqlite:///{tmp_path / 'api.db'}")
    db = Database(config.database_url)
    return ForumWatchEngine(
        config,
        db=db,
        cache=TieredCache(db=db),
        collector=collector,
        source_configs=[
            SourceConfig(name="Alpha", url="https://forum.alpha.org", tier=1),
            SourceConfig(name="Beta", url="https://forum.beta.org", tier=2),
        ],
        sleep=no_sleep,
    )


@pytest.fixture
def client(engine):
    from forumwatch.main import app

    app.state.engine = engine
    with TestClient(app) as test_client:
        yield test_client
    del app.state.engine


def _source_id(engine, name):
    return next(s.id for s in engine.db.list_sources() if s.name == name)


def test_health(client):
    response = client.get("/health")
    assert response.status_code == 200
    assert response.json()["status"] == "ok"
    assert response.json()["service"] == "forumwatch"


def test_admin_stats(client):
    response = client.get("/admin/stats")
    body = response.json()
    assert response.status_code == 200
    assert body["cache"]["size"] == 0
    assert body["cache"]["is_refreshing"] is False
    assert body["database"]["sources"] == 2


def test_admin_refresh_runs_in_background(client, engine, collector, page_factory):
    collector.pages["https://forum.alpha.org"] = [page_factory([1, 2])]

    response = client.post("/admin/refresh", json={"tiers": [1]})

    assert response.status_code == 202
    assert response.json() == {"status": "started", "tiers": [1]}
    # TestClient runs background tasks before returning
    assert engine.cache.stats()["size"] == 1
    assert [url for url, _ in collector.calls] == ["https://forum.alpha.org"]


def test_admin_refresh_defaults_to_all_tiers(client, collector):
    response = client.post("/admin/refresh")
    assert response.status_code == 202
    assert response.json()["tiers"] == [1, 2, 3]
    assert len(collector.calls) == 2


def test_admin_refresh_rejects_bad_tiers(client):
    response = client.post("/admin/refresh", json={"tiers": [4]})
    assert response.status_code == 422


def test_admin_cache_clear(client, engine, collector, page_factory):
    collector.pages["https://forum.alpha.org"] = [page_factory([1])]
    client.post("/admin/refresh", json={"tiers": [1]})

    response = client.post("/admin/cache/clear")

    assert response.status_code == 200
    assert response.json()["cleared"] == 1
    assert engine.cache.stats()["size"] == 0


def test_backfill_start_runs_first_cycle(client, engine, collector, page_factory):
    collector.pages["https://forum.alpha.org"] = [page_factory([1, 2, 3], has_more=False)]

    response = client.post("/backfill/start", json={"source_id": _source_id(engine, "Alpha")})

    body = response.json()
    assert response.status_code == 200
    assert body["cycle"]["topics_fetched"] == 3
    assert body["job"]["status"] == "complete"


def test_backfill_start_unknown_source(client):
    response = client.post("/backfill/start", json={"source_id": 999})
    assert response.status_code == 404


def test_backfill_init_and_status(client):
    assert client.post("/backfill/init-all").json() == {"created": 2}

    body = client.get("/backfill").json()
    assert body["pending"] == 2
    assert len(body["jobs"]) == 2


def test_backfill_run_cycle_when_idle(client):
    response = client.post("/backfill/run-cycle")
    assert response.status_code == 200
    assert response.json()["job_processed"] is False


def test_backfill_job_transitions(client):
    client.post("/backfill/init-all")
    job_id = client.get("/backfill").json()["jobs"][0]["id"]

    assert client.post(f"/backfill/jobs/{job_id}/pause").json()["status"] == "paused"
    assert client.post(f"/backfill/jobs/{job_id}/pause").status_code == 409
    assert client.post(f"/backfill/jobs/{job_id}/resume").json()["status"] == "pending"
    assert client.post(f"/backfill/jobs/{job_id}/retry").status_code == 409


def test_backfill_unknown_job(client):
    assert client.post("/backfill/jobs/4242/pause").status_code == 404
    assert client.post("/backfill/jobs/4242/retry").status_code == 404
