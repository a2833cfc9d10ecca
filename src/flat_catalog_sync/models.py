"""Data models for flat-catalog-sync."""

import uuid
from dataclasses import dataclass
from datetime import UTC, datetime
from enum import Enum
from typing import Any, Generic, TypeVar

from pydantic import BaseModel, Field


class MediaType(str, Enum):
    """Top-level media trees served by a file server."""

    MOVIES = "movies"
    TV = "tv"


class SyncMode(str, Enum):
    """Sync strategy chosen for a server pass."""

    TRADITIONAL = "traditional"  # Re-check everything
    BASIC = "basic"  # Hash endpoint available, no blurhash change feed
    OPTIMIZED = "optimized"  # Hash endpoint and blurhash change feed


def _utcnow() -> datetime:
    return datetime.now(UTC)


def _new_id() -> str:
    return uuid.uuid4().hex


# ========== Catalog entities ==========


class CatalogEntity(BaseModel):
    """Fields shared by every stored catalog document."""

    id: str = Field(default_factory=_new_id)
    metadata: dict[str, Any] | None = None
    metadata_source: str | None = None
    # Nested dict of pinned paths, e.g. {"poster_url": True}
    locked_fields: dict[str, Any] = Field(default_factory=dict)
    # Blurhash references last resolved, keyed by field name
    blurhash_refs: dict[str, str] = Field(default_factory=dict)
    created_at: datetime = Field(default_factory=_utcnow)

    model_config = {"extra": "allow"}


class ArtworkFields(BaseModel):
    """Poster, backdrop and logo with their blurhashes."""

    poster_url: str | None = None
    poster_source: str | None = None
    backdrop_url: str | None = None
    backdrop_source: str | None = None
    logo_url: str | None = None
    logo_source: str | None = None
    poster_blurhash: str | None = None
    poster_blurhash_source: str | None = None
    backdrop_blurhash: str | None = None
    backdrop_blurhash_source: str | None = None
    logo_blurhash: str | None = None
    logo_blurhash_source: str | None = None


class VideoFields(BaseModel):
    """Playable media: URL, captions, chapters and quality descriptors."""

    video_url: str | None = None
    video_source: str | None = None
    normalized_video_id: str | None = None
    captions: dict[str, dict[str, Any]] = Field(default_factory=dict)
    caption_source: str | None = None
    chapter_url: str | None = None
    chapter_source: str | None = None
    media_quality: dict[str, Any] | None = None
    hdr: Any = None
    dimensions: Any = None
    duration: Any = None
    size: int | None = None
    media_last_modified: str | None = None
    video_info_source: str | None = None


class Movie(CatalogEntity, ArtworkFields, VideoFields):
    """A movie document."""

    title: str
    original_title: str
    initial_discovery_server: str | None = None


class TVShow(CatalogEntity, ArtworkFields):
    """A TV show document. Seasons reference it by id."""

    title: str
    original_title: str
    number_of_seasons: int | None = None
    status: str | None = None
    first_air_date: str | None = None
    last_air_date: str | None = None
    overview: str | None = None
    genres: list[Any] | None = None
    networks: list[Any] | None = None
    rating: float | None = None


class Season(CatalogEntity):
    """A season document, unique on (show_id, season_number)."""

    show_id: str
    show_title: str
    season_number: int
    title: str | None = None
    poster_url: str | None = None
    poster_source: str | None = None
    poster_blurhash: str | None = None
    poster_blurhash_source: str | None = None
    air_date: str | None = None
    overview: str | None = None
    episode_count: int | None = None
    rating: float | None = None


class Episode(CatalogEntity, VideoFields):
    """An episode document, unique on (show_id, season_id, episode_number)."""

    show_id: str
    season_id: str
    show_title: str
    season_number: int
    episode_number: int
    title: str | None = None
    thumbnail: str | None = None
    thumbnail_source: str | None = None
    thumbnail_blurhash: str | None = None
    thumbnail_blurhash_source: str | None = None


class ContentHash(BaseModel):
    """Server-declared content hash for one (entity level, server) pair."""

    media_type: MediaType
    title: str | None = None
    season_number: int | None = None
    episode_number: int | None = None
    server_id: str
    hash: str
    updated_at: datetime = Field(default_factory=_utcnow)


# ========== Resolution ==========

T = TypeVar("T")


@dataclass(frozen=True)
class Found(Generic[T]):
    """Entity already existed in the catalog."""

    entity: T


@dataclass(frozen=True)
class Created(Generic[T]):
    """Entity was inserted by this call."""

    entity: T


@dataclass(frozen=True)
class Synthesized(Generic[T]):
    """A minimal parent was created so a child could be attached."""

    entity: T


Resolved = Found[T] | Created[T] | Synthesized[T]


# ========== Sync outcomes ==========


class SyncDecision(BaseModel):
    """Outcome of running the field synchronizers for one entity."""

    entity_type: str
    entity_id: str
    label: str
    changed_fields: list[str] = Field(default_factory=list)
    authorized_to_stamp_hash: bool = False
    errors: dict[str, str] = Field(default_factory=dict)  # field -> message

    @property
    def changed(self) -> bool:
        return bool(self.changed_fields)


class SyncError(BaseModel):
    """A single per-entity failure recorded during a pass."""

    title: str | None = None
    show_title: str | None = None
    season_number: int | None = None
    episode_number: int | None = None
    field: str | None = None
    error: str


class PhaseResult(BaseModel):
    """Counts and errors for one entity type in one server pass."""

    created: list[str] = Field(default_factory=list)
    updated: list[str] = Field(default_factory=list)
    unchanged: int = 0
    skipped_by_hash: int = 0
    errors: list[SyncError] = Field(default_factory=list)


class SyncPassResult(BaseModel):
    """Result of sync_all for one server."""

    server_id: str
    strategy: SyncMode | None = None
    movies: PhaseResult = Field(default_factory=PhaseResult)
    tv_shows: PhaseResult = Field(default_factory=PhaseResult)
    seasons: PhaseResult = Field(default_factory=PhaseResult)
    episodes: PhaseResult = Field(default_factory=PhaseResult)
    performance: dict[str, float] = Field(default_factory=dict)  # milliseconds per phase
    error: str | None = None

    @property
    def error_count(self) -> int:
        return sum(len(p.errors) for p in (self.movies, self.tv_shows, self.seasons, self.episodes))


class RemovedCounts(BaseModel):
    """Entities deleted by the reaper."""

    movies: int = 0
    tv_shows: int = 0
    tv_seasons: int = 0
    tv_episodes: int = 0


class ReapResult(BaseModel):
    """Result of reap_unavailable."""

    removed: RemovedCounts = Field(default_factory=RemovedCounts)
    removed_titles: list[str] = Field(default_factory=list)
    retained_without_authority: list[str] = Field(default_factory=list)
    errors: list[SyncError] = Field(default_factory=list)


class SyncRunReport(BaseModel):
    """Everything a scheduled run did."""

    started_at: datetime = Field(default_factory=_utcnow)
    finished_at: datetime | None = None
    servers: dict[str, SyncPassResult] = Field(default_factory=dict)
    fetch_errors: dict[str, str] = Field(default_factory=dict)
    reaper: ReapResult | None = None
    notifications: dict[str, int] = Field(default_factory=dict)
    performance: dict[str, float] = Field(default_factory=dict)
