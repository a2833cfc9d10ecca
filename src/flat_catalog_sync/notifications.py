"""Consumers of sync results."""

import logging
from typing import Protocol

from .models import SyncPassResult

logger = logging.getLogger(__name__)


class NotificationSink(Protocol):
    """Receives the per-server results after a full run. Returns delivery counts."""

    async def process_sync_results(self, results: dict[str, SyncPassResult]) -> dict[str, int]: ...


class LoggingNotificationSink:
    """Logs new movies and episodes instead of delivering them anywhere."""

    async def process_sync_results(self, results: dict[str, SyncPassResult]) -> dict[str, int]:
        movies = sorted({t for r in results.values() for t in r.movies.created})
        episodes = sorted({t for r in results.values() for t in r.episodes.created})

        for title in movies:
            logger.info("New movie: %s", title)
        for label in episodes:
            logger.info("New episode: %s", label)

        return {"movies": len(movies), "episodes": len(episodes)}
