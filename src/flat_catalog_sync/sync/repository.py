"""Entity repositories with natural-key deduplication."""

import logging
from collections.abc import Awaitable, Callable
from typing import Any, Generic, TypeVar

from pydantic import BaseModel

from ..database import Database
from ..errors import CatalogSyncError, DuplicateKeyError
from ..models import Created, Episode, Found, Movie, Resolved, Season, TVShow

logger = logging.getLogger(__name__)

E = TypeVar("E", bound=BaseModel)


def normalize_title(title: str) -> str:
    """Canonical form of a natural-key title. Applied only at this boundary."""
    return title.strip()


class Repository(Generic[E]):
    """CRUD for one collection."""

    table: str
    model: type[E]

    def __init__(self, db: Database):
        self.db = db

    def _from_doc(self, doc: dict[str, Any] | None) -> E | None:
        return self.model.model_validate(doc) if doc is not None else None

    async def get_by_id(self, entity_id: str) -> E | None:
        return self._from_doc(await self.db.find_one(self.table, id=entity_id))

    async def all(self) -> list[E]:
        return [self.model.model_validate(doc) for doc in await self.db.find_many(self.table)]

    async def update(self, entity_id: str, fields: dict[str, Any]) -> E | None:
        """Apply a partial update. Returns the stored entity or None if it vanished."""
        return self._from_doc(await self.db.update(self.table, entity_id, fields))

    async def delete(self, entity_id: str) -> bool:
        return await self.db.delete(self.table, entity_id)

    async def _insert_or_repair(
        self,
        entity: E,
        lookup: Callable[[], Awaitable[E | None]],
        repair: dict[str, Any],
        label: str,
    ) -> Resolved[E]:
        """Insert, or on a unique violation resolve the existing record and repair its ids once."""
        try:
            await self.db.insert(self.table, entity.model_dump(mode="json"))
            logger.debug("Created %s %s", self.table, label)
            return Created(entity)
        except DuplicateKeyError as e:
            logger.info("Concurrent create of %s %s, resolving existing record: %s", self.table, label, e)

        existing = await lookup()
        if existing is None:
            raise CatalogSyncError(f"{self.table} {label}: duplicate key but no matching record")
        return Found(await self._repair(existing, repair, label))

    async def _repair(self, existing: E, repair: dict[str, Any], label: str) -> E:
        """Rewrite id fields on a record found by natural key."""
        stale = {k: v for k, v in repair.items() if getattr(existing, k) != v}
        if not stale:
            return existing

        logger.warning("Repairing %s %s ids: %s", self.table, label, sorted(stale))
        try:
            updated = await self.update(existing.id, stale)  # type: ignore[attr-defined]
        except DuplicateKeyError as e:
            raise CatalogSyncError(f"{self.table} {label}: id repair collided: {e}") from e
        if updated is None:
            raise CatalogSyncError(f"{self.table} {label}: record vanished during repair")
        return updated


class MovieRepository(Repository[Movie]):
    """Movies, keyed by original title."""

    table = "movies"
    model = Movie

    async def get_by_natural_key(self, original_title: str) -> Movie | None:
        return self._from_doc(await self.db.find_one(self.table, original_title=normalize_title(original_title)))

    async def create(self, original_title: str, server_id: str | None = None) -> Resolved[Movie]:
        """Return the existing movie for a title or insert a new one."""
        key = normalize_title(original_title)
        existing = await self.get_by_natural_key(key)
        if existing is not None:
            return Found(existing)

        movie = Movie(title=key, original_title=key, initial_discovery_server=server_id)
        return await self._insert_or_repair(movie, lambda: self.get_by_natural_key(key), {}, key)


class TVShowRepository(Repository[TVShow]):
    """TV shows, keyed by original title."""

    table = "tv_shows"
    model = TVShow

    async def get_by_natural_key(self, original_title: str) -> TVShow | None:
        return self._from_doc(await self.db.find_one(self.table, original_title=normalize_title(original_title)))

    async def create(self, original_title: str) -> Resolved[TVShow]:
        """Return the existing show for a title or insert a new one."""
        key = normalize_title(original_title)
        existing = await self.get_by_natural_key(key)
        if existing is not None:
            return Found(existing)

        show = TVShow(title=key, original_title=key)
        return await self._insert_or_repair(show, lambda: self.get_by_natural_key(key), {}, key)

    async def delete_cascade(self, show: TVShow) -> tuple[int, int]:
        """Delete a show with all of its seasons and episodes.

        Children are matched by show id and by show title so records with a
        stale id go too. Returns (seasons_deleted, episodes_deleted).
        """
        episodes = await self.db.delete_many("episodes", show_id=show.id)
        episodes += await self.db.delete_many("episodes", show_title=show.original_title)
        seasons = await self.db.delete_many("seasons", show_id=show.id)
        seasons += await self.db.delete_many("seasons", show_title=show.original_title)
        await self.delete(show.id)
        logger.info("Deleted show %s with %d seasons and %d episodes", show.original_title, seasons, episodes)
        return seasons, episodes


class SeasonRepository(Repository[Season]):
    """Seasons, keyed by (show_id, season_number) with (show_title, season_number) fallback."""

    table = "seasons"
    model = Season

    async def get_by_ids(self, show_id: str, season_number: int) -> Season | None:
        return self._from_doc(await self.db.find_one(self.table, show_id=show_id, season_number=season_number))

    async def get_by_natural_key(self, show_title: str, season_number: int) -> Season | None:
        return self._from_doc(
            await self.db.find_one(self.table, show_title=normalize_title(show_title), season_number=season_number)
        )

    async def get_for_show(self, show_id: str) -> list[Season]:
        return [Season.model_validate(doc) for doc in await self.db.find_many(self.table, show_id=show_id)]

    async def create(self, show: TVShow, season_number: int) -> Resolved[Season]:
        """Resolve a season by ids, then natural key (repairing ids), else insert."""
        label = f"{show.original_title} S{season_number}"
        repair = {"show_id": show.id, "show_title": show.original_title}

        existing = await self.get_by_ids(show.id, season_number)
        if existing is not None:
            return Found(existing)

        existing = await self.get_by_natural_key(show.original_title, season_number)
        if existing is not None:
            return Found(await self._repair(existing, repair, label))

        async def lookup() -> Season | None:
            found = await self.get_by_natural_key(show.original_title, season_number)
            return found or await self.get_by_ids(show.id, season_number)

        season = Season(
            show_id=show.id,
            show_title=show.original_title,
            season_number=season_number,
            title=f"Season {season_number}",
        )
        return await self._insert_or_repair(season, lookup, repair, label)

    async def upsert_by_natural_key_resolving_id(
        self, show: TVShow, season_number: int, fields: dict[str, Any]
    ) -> Season:
        """Resolve (or create) the season, then apply fields to it."""
        resolved = await self.create(show, season_number)
        season = resolved.entity  # type: ignore[union-attr]
        if not fields:
            return season
        updated = await self.update(season.id, fields)
        if updated is None:
            raise CatalogSyncError(f"seasons {show.original_title} S{season_number}: vanished during update")
        return updated


class EpisodeRepository(Repository[Episode]):
    """Episodes, keyed by (show_id, season_id, episode_number) with a title-based fallback."""

    table = "episodes"
    model = Episode

    async def get_by_ids(self, show_id: str, season_id: str, episode_number: int) -> Episode | None:
        return self._from_doc(
            await self.db.find_one(self.table, show_id=show_id, season_id=season_id, episode_number=episode_number)
        )

    async def get_by_natural_key(self, show_title: str, season_number: int, episode_number: int) -> Episode | None:
        return self._from_doc(
            await self.db.find_one(
                self.table,
                show_title=normalize_title(show_title),
                season_number=season_number,
                episode_number=episode_number,
            )
        )

    async def get_for_season(self, season_id: str) -> list[Episode]:
        return [Episode.model_validate(doc) for doc in await self.db.find_many(self.table, season_id=season_id)]

    async def create(self, show: TVShow, season: Season, episode_number: int) -> Resolved[Episode]:
        """Resolve an episode by ids, then natural key (repairing ids), else insert."""
        label = f"{show.original_title} S{season.season_number}E{episode_number}"
        repair = {
            "show_id": show.id,
            "season_id": season.id,
            "show_title": show.original_title,
            "season_number": season.season_number,
        }

        existing = await self.get_by_ids(show.id, season.id, episode_number)
        if existing is not None:
            return Found(existing)

        existing = await self.get_by_natural_key(show.original_title, season.season_number, episode_number)
        if existing is not None:
            return Found(await self._repair(existing, repair, label))

        async def lookup() -> Episode | None:
            found = await self.get_by_natural_key(show.original_title, season.season_number, episode_number)
            return found or await self.get_by_ids(show.id, season.id, episode_number)

        episode = Episode(
            show_id=show.id,
            season_id=season.id,
            show_title=show.original_title,
            season_number=season.season_number,
            episode_number=episode_number,
        )
        return await self._insert_or_repair(episode, lookup, repair, label)

    async def upsert_by_natural_key_resolving_id(
        self, show: TVShow, season: Season, episode_number: int, fields: dict[str, Any]
    ) -> Episode:
        """Resolve (or create) the episode, then apply fields to it."""
        resolved = await self.create(show, season, episode_number)
        episode = resolved.entity  # type: ignore[union-attr]
        if not fields:
            return episode
        updated = await self.update(episode.id, fields)
        if updated is None:
            raise CatalogSyncError(f"episodes {show.original_title} S{season.season_number}E{episode_number}: vanished")
        return updated
