from contextlib import asynccontextmanager
from typing import Optional

from fastapi import BackgroundTasks, Depends, FastAPI, HTTPException, Request
from pydantic import BaseModel, Field

from forumwatch.config import settings
from forumwatch.errors import InvalidTransitionError, JobNotFoundError, SourceNotFoundError
from forumwatch.service import ALL_TIERS, ForumWatchEngine
from forumwatch.utils.logging import get_logger, setup_logging

setup_logging()
logger = get_logger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    engine: Optional[ForumWatchEngine] = getattr(app.state, "engine", None)
    if engine is None:
        engine = ForumWatchEngine(settings)
        app.state.engine = engine

    # Only run the scheduler in non-test environments
    if settings.app_env != "test":
        engine.start(with_scheduler=True)
    else:
        engine.prepare()

    yield

    await engine.stop()


app = FastAPI(
    title="forumwatch",
    description=(
        "Forum ingestion engine: caches Discourse topic listings for fast reads "
        "and backfills each forum's full topic history."
    ),
    version="1.0.0",
    lifespan=lifespan,
)


def get_engine(request: Request) -> ForumWatchEngine:
    return request.app.state.engine


class RefreshRequest(BaseModel):
    tiers: list[int] = Field(default_factory=lambda: list(ALL_TIERS))


class StartBackfillRequest(BaseModel):
    source_id: int


def _job_call(fn, job_id: int) -> dict:
    try:
        return fn(job_id)
    except JobNotFoundError as exc:
        raise HTTPException(status_code=404, detail=str(exc)) from exc
    except InvalidTransitionError as exc:
        raise HTTPException(status_code=409, detail=str(exc)) from exc


@app.get("/health", tags=["Health"], openapi_extra={"security": []})
async def health():
    return {
        "status": "ok",
        "service": "forumwatch",
        "environment": settings.app_env,
    }


# --------------------------------------------------------------------------- #
# Cache administration
# --------------------------------------------------------------------------- #

@app.get("/admin/stats", tags=["Admin"])
async def admin_stats(engine: ForumWatchEngine = Depends(get_engine)):
    return {"cache": await engine.get_cache_stats(), "database": engine.get_db_stats()}


@app.post("/admin/refresh", tags=["Admin"], status_code=202)
async def admin_refresh(
    background_tasks: BackgroundTasks,
    body: Optional[RefreshRequest] = None,
    engine: ForumWatchEngine = Depends(get_engine),
):
    tiers = (body or RefreshRequest()).tiers
    if not tiers or any(t not in ALL_TIERS for t in tiers):
        raise HTTPException(status_code=422, detail="tiers must be a non-empty subset of [1, 2, 3]")
    if engine.coordinator.is_refreshing:
        return {"status": "already_running", "tiers": tiers}
    background_tasks.add_task(engine.refresh_now, tiers)
    logger.info("admin_refresh_requested", tiers=tiers)
    return {"status": "started", "tiers": tiers}


@app.post("/admin/cache/clear", tags=["Admin"])
async def admin_clear_cache(engine: ForumWatchEngine = Depends(get_engine)):
    return await engine.clear_cache()


# --------------------------------------------------------------------------- #
# Backfill
# --------------------------------------------------------------------------- #

@app.get("/backfill", tags=["Backfill"])
async def backfill_status(engine: ForumWatchEngine = Depends(get_engine)):
    return engine.get_backfill_status()


@app.post("/backfill/start", tags=["Backfill"])
async def backfill_start(body: StartBackfillRequest, engine: ForumWatchEngine = Depends(get_engine)):
    try:
        return await engine.start_backfill(body.source_id, run_first_cycle=True)
    except SourceNotFoundError as exc:
        raise HTTPException(status_code=404, detail=str(exc)) from exc


@app.post("/backfill/run-cycle", tags=["Backfill"])
async def backfill_run_cycle(engine: ForumWatchEngine = Depends(get_engine)):
    return await engine.run_backfill_cycle()


@app.post("/backfill/init-all", tags=["Backfill"])
async def backfill_init_all(engine: ForumWatchEngine = Depends(get_engine)):
    return engine.init_backfill_for_all_sources()


@app.post("/backfill/jobs/{job_id}/pause", tags=["Backfill"])
async def backfill_pause(job_id: int, engine: ForumWatchEngine = Depends(get_engine)):
    return _job_call(engine.pause_job, job_id)


@app.post("/backfill/jobs/{job_id}/resume", tags=["Backfill"])
async def backfill_resume(job_id: int, engine: ForumWatchEngine = Depends(get_engine)):
    return _job_call(engine.resume_job, job_id)


@app.post("/backfill/jobs/{job_id}/retry", tags=["Backfill"])
async def backfill_retry(job_id: int, engine: ForumWatchEngine = Depends(get_engine)):
    return _job_call(engine.retry_job, job_id)
