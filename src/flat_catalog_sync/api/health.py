"""Health check endpoints for Kubernetes/Docker."""

from fastapi import APIRouter, Request, Response

from ..database import get_db
from ..sync import SyncEngine

router = APIRouter(tags=["health"])


@router.get("/healthz")
async def healthz() -> Response:
    """Liveness probe. 200 whenever the process is serving requests."""
    return Response(content="ok", media_type="text/plain")


@router.get("/readyz")
async def readyz(request: Request) -> Response:
    """
    Readiness probe for Kubernetes.

    Checks:
    - Database is connected
    - Engine is initialized
    - Worker is running (when scheduled sync is enabled)
    """
    try:
        db = await get_db()
        if not db.connected:
            return Response(
                content="database not connected",
                status_code=503,
                media_type="text/plain",
            )

        engine: SyncEngine | None = getattr(request.app.state, "engine", None)
        if engine is None:
            return Response(
                content="engine not initialized",
                status_code=503,
                media_type="text/plain",
            )

        status = engine.get_status()
        if engine.config.sync.interval_seconds > 0 and not status.get("worker_running"):
            return Response(
                content="worker not running",
                status_code=503,
                media_type="text/plain",
            )

        return Response(content="ok", media_type="text/plain")

    except Exception as e:
        return Response(
            content=f"error: {e}",
            status_code=503,
            media_type="text/plain",
        )
