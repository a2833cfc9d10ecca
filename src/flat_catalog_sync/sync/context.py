"""Per-pass state shared by the orchestrators."""

import asyncio
import logging
from collections.abc import Awaitable, Callable, Iterable
from dataclasses import dataclass, field
from typing import Any, TypeVar

from ..config import ServerConfig, SyncConfig
from ..database import Database
from ..fileserver import FileServerClient
from ..models import (
    CatalogEntity,
    Created,
    Found,
    MediaType,
    PhaseResult,
    Season,
    SyncDecision,
    SyncMode,
    Synthesized,
    TVShow,
)
from .availability import FieldAvailabilityIndex, PriorityDecision
from .catalog_cache import CatalogCache
from .fields import FieldContext, FieldUpdate
from .hash_store import HashStore
from .repository import EpisodeRepository, MovieRepository, Repository, SeasonRepository, TVShowRepository

logger = logging.getLogger(__name__)

T = TypeVar("T")
E = TypeVar("E", bound=CatalogEntity)


class Repositories:
    """One repository per collection over a shared database."""

    def __init__(self, db: Database):
        self.movies = MovieRepository(db)
        self.shows = TVShowRepository(db)
        self.seasons = SeasonRepository(db)
        self.episodes = EpisodeRepository(db)


@dataclass
class HashStamp:
    """A server-declared hash waiting to be stored once its subtree succeeded."""

    media_type: MediaType
    title: str
    declared: str
    stored: str | None
    season_number: int | None = None
    episode_number: int | None = None
    authorized: bool = True


@dataclass
class EpisodeHashes:
    """One season's per-episode hashes, as declared by the server and as stored for it."""

    declared: dict[str, str] = field(default_factory=dict)  # keyed by S01E02
    stored: dict[int, str] = field(default_factory=dict)


@dataclass
class PassContext:
    """Everything one server pass shares across entity types."""

    server: ServerConfig
    sync_config: SyncConfig
    client: FileServerClient
    availability: FieldAvailabilityIndex
    cache: CatalogCache
    repos: Repositories
    hash_store: HashStore
    mode: SyncMode
    tree: dict[str, Any]
    # Server hash data per media type, keyed by title
    hashes: dict[MediaType, dict[str, dict[str, Any]]] = field(default_factory=dict)
    stamps: dict[tuple[str, int | None, int | None], HashStamp] = field(default_factory=dict)
    # (show title, season number) pairs whose metadata subtree is unchanged
    season_skips: set[tuple[str, int]] = field(default_factory=set)
    episode_hashes: dict[tuple[str, int], EpisodeHashes] = field(default_factory=dict)
    # Titles per media type named by the blurhash change feed; None checks every blurhash
    blurhash_changes: dict[MediaType, set[str]] | None = None

    @property
    def hash_based(self) -> bool:
        return self.mode is not SyncMode.TRADITIONAL

    def field_context(self, media_type: MediaType, title: str) -> FieldContext:
        changed = None if self.blurhash_changes is None else frozenset(self.blurhash_changes.get(media_type, ()))
        return FieldContext(self.server, self.client, self.availability, media_type, title, changed)

    def movies_tree(self) -> dict[str, Any]:
        return {k: v for k, v in (self.tree.get(MediaType.MOVIES.value) or {}).items() if isinstance(v, dict)}

    def tv_tree(self) -> dict[str, Any]:
        return {k: v for k, v in (self.tree.get(MediaType.TV.value) or {}).items() if isinstance(v, dict)}

    def title_hashes(self, media_type: MediaType, title: str) -> dict[str, Any]:
        return self.hashes.get(media_type, {}).get(title) or {}

    def invalidate_stamp(self, title: str, season_number: int | None = None) -> None:
        """An error below a title (or season) forbids stamping its hashes."""
        for key in ((title, None, None), (title, season_number, None)):
            stamp = self.stamps.get(key)
            if stamp is not None:
                stamp.authorized = False

    async def show_metadata(self, title: str, show_node: dict[str, Any]) -> dict[str, Any] | None:
        """The show's metadata payload (resolved once per pass by the client)."""
        reference = show_node.get("metadata")
        if not reference or not isinstance(reference, str):
            return None
        payload = await self.client.resolve_reference(reference, "metadata", MediaType.TV, title)
        return payload if isinstance(payload, dict) else None

    # ========== Parent resolution ==========

    async def resolve_show(self, title: str) -> Found[TVShow] | Synthesized[TVShow]:
        """Show from the cache, or a synthesized minimal record."""
        show = self.cache.show(title)
        if show is not None:
            return Found(show)
        resolved = await self.repos.shows.create(title)
        self.cache.insert(resolved.entity)
        if isinstance(resolved, Created):
            logger.info("[%s] Synthesized missing show %s", self.server.id, title)
            return Synthesized(resolved.entity)
        return Found(resolved.entity)

    async def resolve_season(self, show: TVShow, season_number: int) -> Found[Season] | Synthesized[Season]:
        """Season from the cache, or a synthesized minimal record."""
        season = self.cache.season(show, season_number)
        if season is not None:
            return Found(season)
        resolved = await self.repos.seasons.create(show, season_number)
        self.cache.insert(resolved.entity)
        if isinstance(resolved, Created):
            logger.info("[%s] Synthesized missing season %s S%d", self.server.id, show.original_title, season_number)
            return Synthesized(resolved.entity)
        return Found(resolved.entity)


async def run_bounded(
    items: Iterable[T],
    worker: Callable[[T], Awaitable[Any]],
    limit: int,
    delay: float = 0.0,
) -> list[Any]:
    """Run a worker over items with at most `limit` in flight.

    Exceptions are returned in place of results. `delay` is slept inside
    each slot to pace remote calls.
    """
    semaphore = asyncio.Semaphore(max(limit, 1))

    async def process_one(item: T) -> Any:
        async with semaphore:
            result = await worker(item)
            if delay:
                await asyncio.sleep(delay)
            return result

    return await asyncio.gather(*(process_one(item) for item in items), return_exceptions=True)


async def run_synchronizers(
    steps: dict[str, Awaitable[FieldUpdate | None]],
) -> tuple[list[FieldUpdate], dict[str, str]]:
    """Run synchronizers concurrently; one failing never stops the others."""
    names = list(steps)
    results = await asyncio.gather(*steps.values(), return_exceptions=True)

    updates: list[FieldUpdate] = []
    errors: dict[str, str] = {}
    for name, result in zip(names, results, strict=True):
        if isinstance(result, BaseException):
            if isinstance(result, asyncio.CancelledError):
                raise result
            errors[name] = str(result) or type(result).__name__
        elif result is not None:
            updates.append(result)
    return updates, errors


async def apply_updates(
    repo: Repository[E],
    cache: CatalogCache,
    entity: E,
    updates: list[FieldUpdate],
    entity_type: str,
    label: str,
    errors: dict[str, str],
    metadata_authoritative: bool,
) -> tuple[E, SyncDecision]:
    """Merge update fragments into a single write and describe the outcome.

    Hash stamping is authorized when the entity had no errors and either an
    authoritative field changed, or nothing changed and the server is top
    ranked for metadata (the catalog already reflects its data).
    """
    merged: dict[str, Any] = {}
    for update in updates:
        merged.update(update.changes)

    if merged:
        stored = await repo.update(entity.id, merged)
        if stored is None:
            raise LookupError(f"{entity_type} {label} disappeared before update")
        entity = stored
        cache.insert(entity)  # type: ignore[arg-type]

    authoritative_change = any(u.decision is PriorityDecision.AUTHORITATIVE for u in updates)
    decision = SyncDecision(
        entity_type=entity_type,
        entity_id=entity.id,
        label=label,
        changed_fields=[u.field for u in updates],
        errors=dict(errors),
        authorized_to_stamp_hash=not errors and (authoritative_change or (not updates and metadata_authoritative)),
    )
    return entity, decision


def record(result: PhaseResult, decision: SyncDecision, created: bool) -> None:
    """Fold one entity outcome into a phase result."""
    if created:
        result.created.append(decision.label)
    elif decision.changed:
        result.updated.append(decision.label)
    else:
        result.unchanged += 1

