"""Availability reaper: remove catalog entities no server serves anymore."""

import logging
from collections.abc import Iterable, Mapping
from typing import Any

from ..invalidation import CacheInvalidator, patterns_for_movie, patterns_for_show
from ..models import MediaType, Movie, ReapResult, SyncError, TVShow
from .availability import FieldAvailabilityIndex
from .catalog_cache import CatalogCache
from .context import Repositories
from .field_paths import FieldKind, FieldPath, has_value, iter_episodes, iter_seasons, lookup
from .hash_store import HashStore
from .repository import normalize_title

logger = logging.getLogger(__name__)


def _nodes_by_title(
    servers_data: Mapping[str, Mapping[str, Any]], media_type: MediaType
) -> dict[str, dict[str, tuple[str, dict[str, Any]]]]:
    """Per server: normalized title -> (title as served, node)."""
    result = {}
    for server_id, tree in servers_data.items():
        nodes = (tree or {}).get(media_type.value) or {}
        result[server_id] = {normalize_title(k): (k, v) for k, v in nodes.items() if isinstance(v, dict)}
    return result


def episode_video_paths(show_node: dict[str, Any]) -> Iterable[FieldPath]:
    """Video URL paths of every episode in a show node that has one."""
    for season_number, season_node in iter_seasons(show_node):
        for _, file_name, _ in iter_episodes(season_node):
            path = FieldPath.episode(FieldKind.VIDEO_URL, season_number, file_name)
            if has_value(lookup(show_node, path.segments())):
                yield path


class AvailabilityReaper:
    """Deletes movies and shows (with their seasons and episodes) absent from every server.

    Must see every server's current data: an entity one server dropped may
    still be served by another. An entity found somewhere is always kept,
    even when no server holding it is ranked for its video.
    """

    def __init__(
        self,
        cache: CatalogCache,
        repos: Repositories,
        hash_store: HashStore,
        invalidator: CacheInvalidator,
    ):
        self.cache = cache
        self.repos = repos
        self.hash_store = hash_store
        self.invalidator = invalidator

    async def reap(
        self,
        servers_data: Mapping[str, Mapping[str, Any]],
        availability: FieldAvailabilityIndex,
    ) -> ReapResult:
        result = ReapResult()
        if not servers_data:
            logger.warning("No server data available, skipping availability check")
            return result

        movies = _nodes_by_title(servers_data, MediaType.MOVIES)
        for movie in self.cache.movies():
            try:
                await self._check_movie(movie, movies, availability, result)
            except Exception as e:
                logger.exception("Availability check of movie %s failed", movie.original_title)
                result.errors.append(SyncError(title=movie.original_title, error=str(e)))

        shows = _nodes_by_title(servers_data, MediaType.TV)
        for show in self.cache.shows():
            try:
                await self._check_show(show, shows, availability, result)
            except Exception as e:
                logger.exception("Availability check of show %s failed", show.original_title)
                result.errors.append(SyncError(show_title=show.original_title, error=str(e)))

        removed = result.removed
        if removed.movies or removed.tv_shows:
            logger.info(
                "Removed %d movies and %d shows (%d seasons, %d episodes)",
                removed.movies,
                removed.tv_shows,
                removed.tv_seasons,
                removed.tv_episodes,
            )
        return result

    async def _check_movie(
        self,
        movie: Movie,
        nodes: dict[str, dict[str, tuple[str, dict[str, Any]]]],
        availability: FieldAvailabilityIndex,
        result: ReapResult,
    ) -> None:
        key = normalize_title(movie.original_title)
        found = {sid: by_title[key][0] for sid, by_title in nodes.items() if key in by_title}

        if not found:
            logger.info("Movie %s is not on any server, removing", movie.original_title)
            await self.repos.movies.delete(movie.id)
            await self.hash_store.forget_title(MediaType.MOVIES, movie.original_title)
            self.cache.remove(movie.id)
            result.removed.movies += 1
            result.removed_titles.append(movie.original_title)
            await self._invalidate(patterns_for_movie(movie.original_title))
            return

        path = FieldPath.movie(FieldKind.VIDEO_URL)
        if not any(availability.is_highest_priority(title, path, sid) for sid, title in found.items()):
            logger.warning(
                "Movie %s is on %s but none is ranked for its video; keeping it",
                movie.original_title,
                sorted(found),
            )
            result.retained_without_authority.append(movie.original_title)

    async def _check_show(
        self,
        show: TVShow,
        nodes: dict[str, dict[str, tuple[str, dict[str, Any]]]],
        availability: FieldAvailabilityIndex,
        result: ReapResult,
    ) -> None:
        key = normalize_title(show.original_title)
        # server id -> (title as served, video paths)
        found: dict[str, tuple[str, list[FieldPath]]] = {}
        for server_id, by_title in nodes.items():
            if key not in by_title:
                continue
            title, node = by_title[key]
            paths = list(episode_video_paths(node))
            if paths:
                found[server_id] = (title, paths)
            else:
                logger.info("[%s] Show %s has no playable episodes", server_id, show.original_title)

        if not found:
            logger.info("Show %s has no playable episodes on any server, removing", show.original_title)
            seasons, episodes = await self.repos.shows.delete_cascade(show)
            await self.hash_store.forget_title(MediaType.TV, show.original_title)
            self.cache.remove_show(show.id)
            result.removed.tv_shows += 1
            result.removed.tv_seasons += seasons
            result.removed.tv_episodes += episodes
            result.removed_titles.append(show.original_title)
            await self._invalidate(patterns_for_show(show.original_title))
            return

        authoritative = any(
            availability.is_highest_priority(title, path, sid)
            for sid, (title, paths) in found.items()
            for path in paths
        )
        if not authoritative:
            logger.warning(
                "Show %s is on %s but none is ranked for its episodes; keeping it",
                show.original_title,
                sorted(found),
            )
            result.retained_without_authority.append(show.original_title)

    async def _invalidate(self, patterns: list[str]) -> None:
        try:
            await self.invalidator.invalidate(patterns)
        except Exception as e:
            logger.warning("Cache invalidation failed for %s: %s", patterns, e)
