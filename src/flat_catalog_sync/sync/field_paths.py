"""Structured field paths used as arbitration keys.

A FieldPath names one syncable field of one entity inside a file server's
tree. `segments()` gives the key sequence into the raw tree and `render()`
the dotted string used by field availability data. Both the availability
producer and the synchronizers build paths through this module, so the two
sides cannot drift apart.
"""

import re
from collections.abc import Iterable
from dataclasses import dataclass
from enum import Enum
from typing import Any

from ..models import MediaType


class FieldKind(str, Enum):
    """Kinds of syncable fields."""

    METADATA = "metadata"
    VIDEO_URL = "video_url"
    POSTER = "poster"
    BACKDROP = "backdrop"
    LOGO = "logo"
    POSTER_BLURHASH = "poster_blurhash"
    BACKDROP_BLURHASH = "backdrop_blurhash"
    LOGO_BLURHASH = "logo_blurhash"
    SEASON_POSTER = "season_poster"
    SEASON_POSTER_BLURHASH = "season_poster_blurhash"
    THUMBNAIL = "thumbnail"
    THUMBNAIL_BLURHASH = "thumbnail_blurhash"
    CHAPTERS = "chapters"
    CAPTION = "caption"
    MEDIA_QUALITY = "media_quality"
    HDR = "hdr"
    DIMENSIONS = "dimensions"
    DURATION = "duration"
    SIZE = "size"


VIDEO_INFO_KINDS = (
    FieldKind.MEDIA_QUALITY,
    FieldKind.HDR,
    FieldKind.DIMENSIONS,
    FieldKind.DURATION,
    FieldKind.SIZE,
)

_MOVIE_SEGMENTS: dict[FieldKind, tuple[str, ...]] = {
    FieldKind.METADATA: ("urls", "metadata"),
    FieldKind.VIDEO_URL: ("urls", "mp4"),
    FieldKind.POSTER: ("urls", "poster"),
    FieldKind.BACKDROP: ("urls", "backdrop"),
    FieldKind.LOGO: ("urls", "logo"),
    FieldKind.POSTER_BLURHASH: ("urls", "posterBlurhash"),
    FieldKind.BACKDROP_BLURHASH: ("urls", "backdropBlurhash"),
    FieldKind.LOGO_BLURHASH: ("urls", "logoBlurhash"),
    FieldKind.CHAPTERS: ("urls", "chapters"),
    FieldKind.MEDIA_QUALITY: ("mediaQuality",),
    FieldKind.HDR: ("hdr",),
    FieldKind.DIMENSIONS: ("dimensions",),
    FieldKind.DURATION: ("length",),
    FieldKind.SIZE: ("additionalMetadata", "size"),
}

_SHOW_SEGMENTS: dict[FieldKind, tuple[str, ...]] = {
    FieldKind.METADATA: ("metadata",),
    FieldKind.POSTER: ("poster",),
    FieldKind.BACKDROP: ("backdrop",),
    FieldKind.LOGO: ("logo",),
    FieldKind.POSTER_BLURHASH: ("posterBlurhash",),
    FieldKind.BACKDROP_BLURHASH: ("backdropBlurhash",),
    FieldKind.LOGO_BLURHASH: ("logoBlurhash",),
}

_SEASON_SEGMENTS: dict[FieldKind, tuple[str, ...]] = {
    FieldKind.SEASON_POSTER: ("season_poster",),
    FieldKind.SEASON_POSTER_BLURHASH: ("seasonPosterBlurhash",),
}

_EPISODE_SEGMENTS: dict[FieldKind, tuple[str, ...]] = {
    FieldKind.METADATA: ("metadata",),
    FieldKind.VIDEO_URL: ("videoURL",),
    FieldKind.THUMBNAIL: ("thumbnail",),
    FieldKind.THUMBNAIL_BLURHASH: ("thumbnailBlurhash",),
    FieldKind.CHAPTERS: ("chapters",),
    FieldKind.MEDIA_QUALITY: ("mediaQuality",),
    FieldKind.HDR: ("hdr",),
    FieldKind.SIZE: ("additionalMetadata", "size"),
}

_SEASON_KEY = re.compile(r"Season (\d+)")
_EPISODE_FULL = re.compile(r"S(\d+)E(\d+)", re.IGNORECASE)
_EPISODE_SHORT = re.compile(r"E(\d+)", re.IGNORECASE)


def season_key(season_number: int) -> str:
    """Key of a season inside a show node."""
    return f"Season {season_number}"


def episode_key(season_number: int, episode_number: int) -> str:
    """Key of an episode in a season's hash data (S01E02)."""
    return f"S{season_number:02d}E{episode_number:02d}"


@dataclass(frozen=True)
class FieldPath:
    """One field of one entity, independent of its string form."""

    media_type: MediaType
    kind: FieldKind
    season: int | None = None
    episode_file: str | None = None
    language: str | None = None

    @classmethod
    def movie(cls, kind: FieldKind, language: str | None = None) -> "FieldPath":
        return cls(MediaType.MOVIES, kind, language=language)

    @classmethod
    def show(cls, kind: FieldKind) -> "FieldPath":
        return cls(MediaType.TV, kind)

    @classmethod
    def season_field(cls, kind: FieldKind, season: int) -> "FieldPath":
        return cls(MediaType.TV, kind, season=season)

    @classmethod
    def episode(
        cls, kind: FieldKind, season: int, episode_file: str, language: str | None = None
    ) -> "FieldPath":
        return cls(MediaType.TV, kind, season=season, episode_file=episode_file, language=language)

    def segments(self) -> tuple[str, ...]:
        """Key sequence locating this field in a movie or show node."""
        if self.kind is FieldKind.CAPTION:
            if not self.language:
                raise ValueError("Caption paths need a language")
            if self.media_type is MediaType.MOVIES:
                return ("urls", "subtitles", self.language, "url")
            return self._episode_base() + ("subtitles", self.language, "url")

        if self.media_type is MediaType.MOVIES:
            return self._lookup(_MOVIE_SEGMENTS)

        if self.episode_file is not None:
            season = season_key(self._season())
            if self.kind is FieldKind.DIMENSIONS:
                return ("seasons", season, "dimensions", self.episode_file)
            if self.kind is FieldKind.DURATION:
                return ("seasons", season, "lengths", self.episode_file)
            return self._episode_base() + self._lookup(_EPISODE_SEGMENTS)

        if self.season is not None:
            return ("seasons", season_key(self.season)) + self._lookup(_SEASON_SEGMENTS)

        return self._lookup(_SHOW_SEGMENTS)

    def render(self) -> str:
        """Dotted string form, e.g. ``seasons.Season 1.episodes.S01E02.mp4.chapters``."""
        return ".".join(self.segments())

    def __str__(self) -> str:
        return self.render()

    def _season(self) -> int:
        if self.season is None:
            raise ValueError(f"{self.kind.value} path needs a season number")
        return self.season

    def _episode_base(self) -> tuple[str, ...]:
        if self.episode_file is None:
            raise ValueError(f"{self.kind.value} path needs an episode file")
        return ("seasons", season_key(self._season()), "episodes", self.episode_file)

    def _lookup(self, table: dict[FieldKind, tuple[str, ...]]) -> tuple[str, ...]:
        try:
            return table[self.kind]
        except KeyError:
            raise ValueError(f"{self.kind.value} is not a field at this level") from None


def lookup(node: Any, segments: Iterable[str]) -> Any:
    """Follow keys into a raw tree node. Returns None when any step is missing."""
    for segment in segments:
        if not isinstance(node, dict):
            return None
        node = node.get(segment)
    return node


def has_value(value: Any) -> bool:
    """True for anything but None, empty strings and empty containers."""
    if value is None:
        return False
    if isinstance(value, str | dict | list):
        return bool(value)
    return True


def parse_season_number(key: str) -> int | None:
    """``"Season 3"`` -> 3."""
    match = _SEASON_KEY.search(key)
    return int(match.group(1)) if match else None


def episode_number_from_file(file_name: str) -> int | None:
    """``"S01E05 - Name.mp4"`` -> 5."""
    match = _EPISODE_FULL.search(file_name)
    if match:
        return int(match.group(2))
    match = _EPISODE_SHORT.search(file_name)
    return int(match.group(1)) if match else None


def find_episode_file(files: Iterable[str], season_number: int, episode_number: int) -> str | None:
    """Find the file key for an episode inside a season node."""
    fallback = None
    for file_name in files:
        match = _EPISODE_FULL.search(file_name)
        if match:
            if int(match.group(1)) == season_number and int(match.group(2)) == episode_number:
                return file_name
            continue
        if fallback is None and episode_number_from_file(file_name) == episode_number:
            fallback = file_name
    return fallback


def iter_seasons(show_node: dict[str, Any]) -> Iterable[tuple[int, dict[str, Any]]]:
    """Yield (season_number, season_node) for every parsable season key."""
    for key, node in (show_node.get("seasons") or {}).items():
        number = parse_season_number(key)
        if number is not None and isinstance(node, dict):
            yield number, node


def iter_episodes(season_node: dict[str, Any]) -> Iterable[tuple[int, str, dict[str, Any]]]:
    """Yield (episode_number, file_name, episode_node) for every parsable episode key."""
    for file_name, node in (season_node.get("episodes") or {}).items():
        number = episode_number_from_file(file_name)
        if number is not None and isinstance(node, dict):
            yield number, file_name, node
