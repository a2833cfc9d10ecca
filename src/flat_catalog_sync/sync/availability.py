"""Field availability index: which servers can supply a field, best first."""

import logging
from collections.abc import Collection, Iterable, Mapping
from enum import Enum
from typing import Any

from ..config import ServerConfig
from ..models import MediaType
from .field_paths import (
    VIDEO_INFO_KINDS,
    FieldKind,
    FieldPath,
    has_value,
    iter_episodes,
    iter_seasons,
    lookup,
)

logger = logging.getLogger(__name__)

_MOVIE_KINDS = (
    FieldKind.METADATA,
    FieldKind.VIDEO_URL,
    FieldKind.POSTER,
    FieldKind.BACKDROP,
    FieldKind.LOGO,
    FieldKind.POSTER_BLURHASH,
    FieldKind.BACKDROP_BLURHASH,
    FieldKind.LOGO_BLURHASH,
    FieldKind.CHAPTERS,
    *VIDEO_INFO_KINDS,
)

_SHOW_KINDS = (
    FieldKind.METADATA,
    FieldKind.POSTER,
    FieldKind.BACKDROP,
    FieldKind.LOGO,
    FieldKind.POSTER_BLURHASH,
    FieldKind.BACKDROP_BLURHASH,
    FieldKind.LOGO_BLURHASH,
)

_SEASON_KINDS = (FieldKind.SEASON_POSTER, FieldKind.SEASON_POSTER_BLURHASH)

_EPISODE_KINDS = (
    FieldKind.METADATA,
    FieldKind.VIDEO_URL,
    FieldKind.THUMBNAIL,
    FieldKind.THUMBNAIL_BLURHASH,
    FieldKind.CHAPTERS,
    *VIDEO_INFO_KINDS,
)


class PriorityDecision(str, Enum):
    """Outcome of field arbitration for one server."""

    AUTHORITATIVE = "authoritative"  # Highest ranked supplier, or no ranking exists
    GAP_FILL = "gap_fill"  # Lower ranked, but no higher ranked supplier can fill the field
    DENIED = "denied"

    @property
    def allowed(self) -> bool:
        return self is not PriorityDecision.DENIED


class FieldAvailabilityIndex:
    """Read-only view over ``{media_type: {title: {field_path: [server ids]}}}``.

    Server lists are ordered best first. Configured priorities (lower number
    wins) take precedence over list order when both are known.
    """

    def __init__(
        self,
        data: Mapping[str, Any] | None = None,
        priorities: Mapping[str, int] | None = None,
        active_servers: Collection[str] | None = None,
    ):
        self._data = data or {}
        self._priorities = dict(priorities or {})
        # Servers that reported data in the current run; None means all listed servers count
        self._active = set(active_servers) if active_servers is not None else None

    @classmethod
    def from_servers(
        cls,
        servers_data: Mapping[str, Mapping[str, Any]],
        servers: Iterable[ServerConfig],
    ) -> "FieldAvailabilityIndex":
        """Build an index from every server's raw tree."""
        servers = list(servers)
        data = build_field_availability(servers_data, servers)
        return cls(
            data,
            priorities={s.id: s.priority for s in servers},
            active_servers=list(servers_data),
        )

    @property
    def data(self) -> Mapping[str, Any]:
        return self._data

    def servers_for(self, title: str, path: FieldPath) -> list[str]:
        """Servers claiming to supply a field, as listed."""
        by_title = self._data.get(path.media_type.value) or {}
        return list((by_title.get(title) or {}).get(path.render()) or [])

    def _rank(self, server_id: str, listed: list[str]) -> tuple[float, int]:
        position = listed.index(server_id) if server_id in listed else len(listed)
        return (self._priorities.get(server_id, float("inf")), position)

    def decide(
        self,
        title: str,
        path: FieldPath,
        server_id: str,
        current_source: str | None = None,
        current_present: bool = False,
    ) -> PriorityDecision:
        """Decide whether a server may write a field.

        A server is authoritative when no listed supplier outranks it, or when
        the field has no ranking at all. A lower ranked server may still fill
        the field when every higher ranked supplier is absent from the current
        run, unless the catalog already holds a value from one of them.
        """
        listed = self.servers_for(title, path)
        if not listed:
            return PriorityDecision.AUTHORITATIVE

        own_rank = self._rank(server_id, listed)
        higher = [s for s in listed if s != server_id and self._rank(s, listed) < own_rank]
        if not higher:
            return PriorityDecision.AUTHORITATIVE

        if current_present and current_source in higher:
            return PriorityDecision.DENIED

        live_higher = [s for s in higher if self._active is None or s in self._active]
        if not live_higher:
            logger.debug("[%s] Filling %s for %s: higher ranked %s absent", server_id, path, title, higher)
            return PriorityDecision.GAP_FILL

        return PriorityDecision.DENIED

    def is_highest_priority(self, title: str, path: FieldPath, server_id: str) -> bool:
        """True if the server is top ranked for the field (or no ranking exists)."""
        return self.decide(title, path, server_id) is PriorityDecision.AUTHORITATIVE


def _present_paths(media_type: MediaType, node: dict[str, Any]) -> Iterable[FieldPath]:
    """Every FieldPath with a value in one movie or show node."""
    if media_type is MediaType.MOVIES:
        for kind in _MOVIE_KINDS:
            path = FieldPath.movie(kind)
            if has_value(lookup(node, path.segments())):
                yield path
        for language in (lookup(node, ("urls", "subtitles")) or {}):
            path = FieldPath.movie(FieldKind.CAPTION, language=language)
            if has_value(lookup(node, path.segments())):
                yield path
        return

    for kind in _SHOW_KINDS:
        path = FieldPath.show(kind)
        if has_value(lookup(node, path.segments())):
            yield path

    for season_number, season_node in iter_seasons(node):
        for kind in _SEASON_KINDS:
            path = FieldPath.season_field(kind, season_number)
            if has_value(lookup(node, path.segments())):
                yield path
        for _, file_name, episode_node in iter_episodes(season_node):
            for kind in _EPISODE_KINDS:
                path = FieldPath.episode(kind, season_number, file_name)
                if has_value(lookup(node, path.segments())):
                    yield path
            for language in (episode_node.get("subtitles") or {}):
                path = FieldPath.episode(FieldKind.CAPTION, season_number, file_name, language=language)
                if has_value(lookup(node, path.segments())):
                    yield path


def build_field_availability(
    servers_data: Mapping[str, Mapping[str, Any]],
    servers: Iterable[ServerConfig],
) -> dict[str, dict[str, dict[str, list[str]]]]:
    """Produce the availability structure from every server's raw tree.

    ``servers_data`` maps server id to ``{"movies": {...}, "tv": {...}}``.
    Server lists are ordered by configured priority, ties by config order.
    """
    order = {s.id: (s.priority, i) for i, s in enumerate(servers)}
    ranked_ids = sorted(servers_data, key=lambda sid: order.get(sid, (float("inf"), len(order))))

    result: dict[str, dict[str, dict[str, list[str]]]] = {m.value: {} for m in MediaType}
    for server_id in ranked_ids:
        tree = servers_data[server_id] or {}
        for media_type in MediaType:
            for title, node in (tree.get(media_type.value) or {}).items():
                if not isinstance(node, dict):
                    continue
                by_path = result[media_type.value].setdefault(title, {})
                for path in _present_paths(media_type, node):
                    by_path.setdefault(path.render(), []).append(server_id)

    logger.debug(
        "Built field availability: %d movies, %d shows",
        len(result[MediaType.MOVIES.value]),
        len(result[MediaType.TV.value]),
    )
    return result
