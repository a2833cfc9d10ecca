"""Main entry point for flat-catalog-sync."""

import logging
import os
import sys
from collections.abc import AsyncGenerator
from contextlib import asynccontextmanager
from pathlib import Path

import uvicorn
from fastapi import FastAPI

from . import __version__
from .api import health_router, status_router
from .config import get_config, load_config
from .database import close_db, get_db
from .invalidation import create_invalidator
from .notifications import LoggingNotificationSink
from .sync import SyncEngine


def setup_logging(level: str = "INFO") -> None:
    """Configure logging."""
    logging.basicConfig(
        level=getattr(logging, level.upper(), logging.INFO),
        format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
        handlers=[logging.StreamHandler(sys.stdout)],
    )
    # Silence noisy third-party loggers
    logging.getLogger("aiosqlite").setLevel(logging.WARNING)
    logging.getLogger("httpx").setLevel(logging.WARNING)
    logging.getLogger("httpcore").setLevel(logging.WARNING)


def init_config() -> None:
    """Load config from the CONFIG_PATH env var, /config/config.yaml, or ./config.yaml."""
    config_path = os.environ.get("CONFIG_PATH", "/config/config.yaml")

    # Allow local development with config.yaml in current directory
    if not Path(config_path).exists():
        local_config = Path("config.yaml")
        if local_config.exists():
            config_path = str(local_config)
        else:
            print(f"Error: Configuration file not found: {config_path}")
            print("Create a config.yaml file or set CONFIG_PATH environment variable")
            sys.exit(1)

    config = load_config(config_path)
    setup_logging(config.logging.level)

    logger = logging.getLogger(__name__)
    logger.info("Loaded configuration from %s", config_path)
    logger.info("Configured servers: %s", [f"{s.id} (priority {s.priority})" for s in config.enabled_servers()])


@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncGenerator[None, None]:
    """Application lifespan handler."""
    logger = logging.getLogger(__name__)
    logger.info("Starting flat-catalog-sync...")

    db = await get_db()
    logger.info("Database initialized")

    config = get_config()
    engine = SyncEngine(
        config,
        db=db,
        invalidator=create_invalidator(config.cache),
        notifiers=[LoggingNotificationSink()],
    )

    health = await engine.health_check_all()
    for server_id, is_healthy in health.items():
        logger.info("Server %s: %s", server_id, "reachable" if is_healthy else "unreachable")

    await engine.start_worker()

    # Store engine in app state for access by routers
    app.state.engine = engine

    yield

    logger.info("Shutting down flat-catalog-sync...")
    await engine.stop_worker()
    await engine.close()
    await close_db()


def create_app() -> FastAPI:
    """Create and configure the FastAPI application."""
    init_config()

    app = FastAPI(
        title="flat-catalog-sync",
        description="Reconciles multiple media file servers into a flat catalog",
        version=__version__,
        lifespan=lifespan,
    )

    app.include_router(health_router)  # /healthz, /readyz
    app.include_router(status_router)  # /api/status, /api/sync

    return app


def main() -> None:
    """Main entry point."""
    app = create_app()
    config = get_config()

    uvicorn.run(
        app,
        host=config.server.host,
        port=config.server.port,
        log_level=config.logging.level.lower(),
    )


if __name__ == "__main__":
    main()
