"""Per-server content hash storage."""

import logging

from ..database import Database
from ..models import ContentHash, MediaType

logger = logging.getLogger(__name__)


class HashStore:
    """Stored server-declared hashes keyed by (media type, title, season, episode, server).

    A None key part addresses a coarser level: the whole media type, a whole
    show, or a whole season. Each server's hashes are tracked independently.
    """

    def __init__(self, db: Database):
        self.db = db

    async def get(
        self,
        media_type: MediaType,
        server_id: str,
        title: str | None = None,
        season_number: int | None = None,
        episode_number: int | None = None,
    ) -> str | None:
        """Stored hash, or None on a miss (callers must then process)."""
        record = await self.db.get_content_hash(media_type, server_id, title, season_number, episode_number)
        return record.hash if record else None

    async def get_episode_hashes(
        self, media_type: MediaType, server_id: str, title: str, season_number: int
    ) -> dict[int, str]:
        """Stored episode-level hashes of one season for one server, keyed by episode number."""
        records = await self.db.get_content_hashes(media_type, server_id, title)
        return {
            r.episode_number: r.hash
            for r in records
            if r.season_number == season_number and r.episode_number is not None
        }

    async def store(
        self,
        media_type: MediaType,
        server_id: str,
        hash_value: str,
        title: str | None = None,
        season_number: int | None = None,
        episode_number: int | None = None,
    ) -> bool:
        """Upsert a hash. Returns False without writing when it is unchanged."""
        current = await self.get(media_type, server_id, title, season_number, episode_number)
        if current == hash_value:
            return False

        await self.db.upsert_content_hash(
            ContentHash(
                media_type=media_type,
                title=title,
                season_number=season_number,
                episode_number=episode_number,
                server_id=server_id,
                hash=hash_value,
            )
        )
        logger.debug(
            "[%s] Stored %s hash for %s season=%s episode=%s",
            server_id,
            media_type.value,
            title or "*",
            season_number,
            episode_number,
        )
        return True

    async def get_checkpoint(self, server_id: str, name: str) -> str | None:
        """Where an incremental feed of this server left off."""
        return await self.db.get_sync_checkpoint(server_id, name)

    async def set_checkpoint(self, server_id: str, name: str, value: str) -> None:
        await self.db.set_sync_checkpoint(server_id, name, value)
        logger.debug("[%s] %s checkpoint moved to %s", server_id, name, value)

    async def forget_title(self, media_type: MediaType, title: str) -> int:
        """Drop every server's hashes for a removed title."""
        return await self.db.delete_content_hashes(media_type, title)
