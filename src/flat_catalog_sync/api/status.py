"""Status and control endpoints."""

from datetime import UTC, datetime
from typing import Any

from fastapi import APIRouter, HTTPException, Request
from pydantic import BaseModel

from .. import __version__
from ..database import get_db
from ..sync import SyncEngine

router = APIRouter(prefix="/api", tags=["status"])


class ServerStatus(BaseModel):
    """A configured file server."""

    id: str
    base_url: str
    priority: int
    enabled: bool


class CatalogStatus(BaseModel):
    """Document counts per collection."""

    connected: bool
    movies: int = 0
    tv_shows: int = 0
    seasons: int = 0
    episodes: int = 0


class OverallStatus(BaseModel):
    """Overall service status."""

    uptime_seconds: float
    version: str
    worker_running: bool
    sync_running: bool
    servers: list[ServerStatus]
    catalog: CatalogStatus
    last_run: dict[str, Any] | None = None


# Track service start time
_start_time: datetime | None = None


def get_start_time() -> datetime:
    """Get or initialize the service start time."""
    global _start_time
    if _start_time is None:
        _start_time = datetime.now(UTC)
    return _start_time


@router.get("/status", response_model=OverallStatus)
async def get_status(request: Request) -> OverallStatus:
    """Worker state, configured servers, catalog counts and the last run report."""
    engine: SyncEngine = request.app.state.engine
    engine_status = engine.get_status()

    db = await get_db()
    catalog = CatalogStatus(connected=db.connected)
    if db.connected:
        catalog.movies = await db.count("movies")
        catalog.tv_shows = await db.count("tv_shows")
        catalog.seasons = await db.count("seasons")
        catalog.episodes = await db.count("episodes")

    return OverallStatus(
        uptime_seconds=(datetime.now(UTC) - get_start_time()).total_seconds(),
        version=__version__,
        worker_running=engine_status["worker_running"],
        sync_running=engine_status["sync_running"],
        servers=[ServerStatus(**s) for s in engine_status["servers"]],
        catalog=catalog,
        last_run=engine_status["last_run"],
    )


@router.post("/sync", status_code=202)
async def trigger_sync(request: Request) -> dict[str, str]:
    """Start a sync run in the background."""
    engine: SyncEngine = request.app.state.engine
    if not engine.trigger_run():
        raise HTTPException(status_code=409, detail="A sync run is already in progress")
    return {"status": "started"}
