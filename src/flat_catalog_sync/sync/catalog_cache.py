"""In-memory snapshot of the catalog for one sync run."""

import logging
from collections import defaultdict
from typing import TypeVar

from pydantic import BaseModel

from ..database import Database
from ..models import Episode, Movie, Season, TVShow
from .repository import normalize_title

logger = logging.getLogger(__name__)

E = TypeVar("E", bound=BaseModel)


def _copy(entity: E | None) -> E | None:
    return entity.model_copy(deep=True) if entity is not None else None


class CatalogCache:
    """Entity arena addressed by id, with natural-key and parent indices.

    Callers always receive copies; changes go back through `insert`, which
    replaces the stored entity and re-indexes it. Built once per run.
    """

    def __init__(self) -> None:
        self._movies: dict[str, Movie] = {}
        self._shows: dict[str, TVShow] = {}
        self._seasons: dict[str, Season] = {}
        self._episodes: dict[str, Episode] = {}

        self._movie_by_key: dict[str, str] = {}
        self._show_by_key: dict[str, str] = {}
        self._season_by_ids: dict[tuple[str, int], str] = {}
        self._season_by_key: dict[tuple[str, int], str] = {}
        self._episode_by_ids: dict[tuple[str, str, int], str] = {}
        self._episode_by_key: dict[tuple[str, int, int], str] = {}
        self._seasons_by_show: defaultdict[str, set[str]] = defaultdict(set)
        self._episodes_by_season: defaultdict[str, set[str]] = defaultdict(set)

    @classmethod
    async def build(cls, db: Database) -> "CatalogCache":
        """Load every collection with one bulk read each and index it."""
        cache = cls()
        for doc in await db.find_many("movies"):
            cache.insert(Movie.model_validate(doc))
        for doc in await db.find_many("tv_shows"):
            cache.insert(TVShow.model_validate(doc))
        for doc in await db.find_many("seasons"):
            cache.insert(Season.model_validate(doc))
        for doc in await db.find_many("episodes"):
            cache.insert(Episode.model_validate(doc))

        logger.info(
            "Catalog cache built: %d movies, %d shows, %d seasons, %d episodes",
            len(cache._movies),
            len(cache._shows),
            len(cache._seasons),
            len(cache._episodes),
        )
        return cache

    # ========== Lookups ==========

    def movie(self, original_title: str) -> Movie | None:
        movie_id = self._movie_by_key.get(normalize_title(original_title))
        return _copy(self._movies.get(movie_id)) if movie_id else None

    def show(self, original_title: str) -> TVShow | None:
        show_id = self._show_by_key.get(normalize_title(original_title))
        return _copy(self._shows.get(show_id)) if show_id else None

    def season(self, show: TVShow, season_number: int) -> Season | None:
        season_id = self._season_by_ids.get((show.id, season_number)) or self._season_by_key.get(
            (show.original_title, season_number)
        )
        return _copy(self._seasons.get(season_id)) if season_id else None

    def episode(self, show: TVShow, season: Season, episode_number: int) -> Episode | None:
        episode_id = self._episode_by_ids.get((show.id, season.id, episode_number)) or self._episode_by_key.get(
            (show.original_title, season.season_number, episode_number)
        )
        return _copy(self._episodes.get(episode_id)) if episode_id else None

    def movies(self) -> list[Movie]:
        return [m.model_copy(deep=True) for m in self._movies.values()]

    def shows(self) -> list[TVShow]:
        return [s.model_copy(deep=True) for s in self._shows.values()]

    def seasons_of(self, show_id: str) -> list[Season]:
        seasons = (self._seasons[i] for i in self._seasons_by_show.get(show_id, ()))
        return sorted((s.model_copy(deep=True) for s in seasons), key=lambda s: s.season_number)

    def episodes_of(self, season_id: str) -> list[Episode]:
        episodes = (self._episodes[i] for i in self._episodes_by_season.get(season_id, ()))
        return sorted((e.model_copy(deep=True) for e in episodes), key=lambda e: e.episode_number)

    # ========== Mutators ==========

    def insert(self, entity: Movie | TVShow | Season | Episode) -> None:
        """Store (or replace) an entity and refresh its indices."""
        entity = entity.model_copy(deep=True)
        self.remove(entity.id)

        if isinstance(entity, Movie):
            self._movies[entity.id] = entity
            self._movie_by_key[entity.original_title] = entity.id
        elif isinstance(entity, TVShow):
            self._shows[entity.id] = entity
            self._show_by_key[entity.original_title] = entity.id
        elif isinstance(entity, Season):
            self._seasons[entity.id] = entity
            self._season_by_ids[(entity.show_id, entity.season_number)] = entity.id
            self._season_by_key[(entity.show_title, entity.season_number)] = entity.id
            self.link_child_to_parent(entity)
        else:
            self._episodes[entity.id] = entity
            self._episode_by_ids[(entity.show_id, entity.season_id, entity.episode_number)] = entity.id
            self._episode_by_key[(entity.show_title, entity.season_number, entity.episode_number)] = entity.id
            self.link_child_to_parent(entity)

    def link_child_to_parent(self, child: Season | Episode) -> None:
        """Register a season under its show, or an episode under its season."""
        if isinstance(child, Season):
            self._seasons_by_show[child.show_id].add(child.id)
        else:
            self._episodes_by_season[child.season_id].add(child.id)

    def remove(self, entity_id: str) -> None:
        """Drop an entity and its index entries (children are left alone)."""
        if (movie := self._movies.pop(entity_id, None)) is not None:
            self._movie_by_key.pop(movie.original_title, None)
        elif (show := self._shows.pop(entity_id, None)) is not None:
            self._show_by_key.pop(show.original_title, None)
        elif (season := self._seasons.pop(entity_id, None)) is not None:
            self._drop_key(self._season_by_ids, (season.show_id, season.season_number), entity_id)
            self._drop_key(self._season_by_key, (season.show_title, season.season_number), entity_id)
            self._seasons_by_show[season.show_id].discard(entity_id)
        elif (episode := self._episodes.pop(entity_id, None)) is not None:
            self._drop_key(
                self._episode_by_ids, (episode.show_id, episode.season_id, episode.episode_number), entity_id
            )
            self._drop_key(
                self._episode_by_key, (episode.show_title, episode.season_number, episode.episode_number), entity_id
            )
            self._episodes_by_season[episode.season_id].discard(entity_id)

    def remove_show(self, show_id: str) -> None:
        """Drop a show with its seasons and episodes."""
        for season_id in list(self._seasons_by_show.get(show_id, ())):
            for episode_id in list(self._episodes_by_season.get(season_id, ())):
                self.remove(episode_id)
            self.remove(season_id)
        self.remove(show_id)

    @staticmethod
    def _drop_key(index: dict, key: tuple, entity_id: str) -> None:
        if index.get(key) == entity_id:
            del index[key]
