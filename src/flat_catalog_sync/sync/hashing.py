"""Server hash loading, completeness checks and deferred hash stamping for hash-based passes."""

import logging
from collections.abc import Iterable
from datetime import UTC, datetime
from typing import Any

from ..errors import RemoteFetchError
from ..models import MediaType, Season, SyncMode, TVShow
from .context import EpisodeHashes, HashStamp, PassContext, run_bounded
from .field_paths import episode_key, has_value, iter_episodes, season_key

logger = logging.getLogger(__name__)

BLURHASH_CHECKPOINT = "blurhash_changes"


def _title_entry(data: dict[str, Any], title: str) -> dict[str, Any]:
    if "titles" in data:
        return (data.get("titles") or {}).get(title) or {}
    return data


async def load_hashes(ctx: PassContext, media_type: MediaType, titles: Iterable[str]) -> None:
    """Fetch server-declared hashes for a media type.

    Optimized servers answer one bulk call; if that fails (or the server is
    basic) hashes are fetched per title. Titles whose hashes cannot be
    fetched simply have none, which means they are fully processed.
    """
    if not ctx.hash_based:
        return

    if ctx.mode is SyncMode.OPTIMIZED:
        try:
            data = await ctx.client.fetch_hash_data(media_type)
            ctx.hashes[media_type] = dict(data.get("titles") or {})
            logger.debug("[%s] Loaded %d %s hashes", ctx.server.id, len(ctx.hashes[media_type]), media_type.value)
            return
        except RemoteFetchError as e:
            logger.warning("[%s] Bulk %s hash fetch failed, fetching per title: %s", ctx.server.id, media_type.value, e)

    async def fetch_one(title: str) -> tuple[str, dict[str, Any]]:
        data = await ctx.client.fetch_hash_data(media_type, title)
        return title, _title_entry(data, title)

    hashes: dict[str, dict[str, Any]] = {}
    failures = 0
    for outcome in await run_bounded(list(titles), fetch_one, ctx.sync_config.hash_concurrency):
        if isinstance(outcome, RemoteFetchError):
            failures += 1
            logger.debug("[%s] %s", ctx.server.id, outcome)
        elif isinstance(outcome, BaseException):
            raise outcome
        else:
            title, entry = outcome
            hashes[title] = entry
    if failures:
        logger.warning(
            "[%s] %d %s hash fetches failed; those titles are fully re-checked",
            ctx.server.id,
            failures,
            media_type.value,
        )
    ctx.hashes[media_type] = hashes


def declared_hash(ctx: PassContext, media_type: MediaType, title: str, season_number: int | None = None) -> str | None:
    """The server's hash for a title, or for one of its seasons."""
    entry = ctx.title_hashes(media_type, title)
    if season_number is not None:
        seasons = entry.get("seasons") or {}
        entry = seasons.get(str(season_number)) or seasons.get(season_key(season_number)) or {}
    value = entry.get("hash") if isinstance(entry, dict) else None
    return value if isinstance(value, str) and value else None


async def load_episode_hashes(ctx: PassContext, title: str, season_number: int) -> None:
    """Fetch a season's per-episode hashes along with the ones stored for this server.

    A failed fetch leaves the season without episode hashes, so every
    episode in it is fully processed.
    """
    try:
        data = await ctx.client.fetch_hash_data(MediaType.TV, title, season_number)
    except RemoteFetchError as e:
        logger.debug("[%s] No episode hashes for %s S%d: %s", ctx.server.id, title, season_number, e)
        return

    declared = {}
    for key, entry in (data.get("episodes") or {}).items():
        value = entry.get("hash") if isinstance(entry, dict) else None
        if isinstance(value, str) and value:
            declared[key.upper()] = value
    if not declared:
        return
    stored = await ctx.hash_store.get_episode_hashes(MediaType.TV, ctx.server.id, title, season_number)
    ctx.episode_hashes[(title, season_number)] = EpisodeHashes(declared=declared, stored=stored)


def lookup_episode_hash(
    ctx: PassContext, title: str, season_number: int, episode_number: int
) -> tuple[str | None, str | None]:
    """(declared, stored) hash of one episode; declared is None when the server gave none."""
    hashes = ctx.episode_hashes.get((title, season_number))
    if hashes is None:
        return None, None
    return hashes.declared.get(episode_key(season_number, episode_number)), hashes.stored.get(episode_number)


def season_is_complete(ctx: PassContext, season: Season, season_node: dict[str, Any]) -> bool:
    """Catalog holds season metadata and every playable episode the server lists, each with metadata."""
    if not has_value(season.metadata):
        return False
    stored = {e.episode_number: e for e in ctx.cache.episodes_of(season.id)}
    for number, _, node in iter_episodes(season_node):
        # Episodes without a video are never created
        if not has_value(node.get("videoURL")):
            continue
        episode = stored.get(number)
        if episode is None or not has_value(episode.metadata):
            return False
    return True


def show_is_complete(ctx: PassContext, show: TVShow, seasons: list[tuple[int, dict[str, Any]]]) -> bool:
    """Show metadata is stored and every season in the tree is complete."""
    if not has_value(show.metadata):
        return False
    for number, season_node in seasons:
        season = ctx.cache.season(show, number)
        if season is None or not season_is_complete(ctx, season, season_node):
            return False
    return True


async def load_blurhash_changes(ctx: PassContext) -> str | None:
    """Limit blurhash fetches to titles named by the server's change feed.

    Optimized mode only. Returns the checkpoint to store once the pass ends
    cleanly, or None when it must not move. Without a checkpoint (the first
    optimized pass) or when the feed fails, every blurhash is checked.
    """
    if ctx.mode is not SyncMode.OPTIMIZED:
        return None

    started = datetime.now(UTC).isoformat()
    since = await ctx.hash_store.get_checkpoint(ctx.server.id, BLURHASH_CHECKPOINT)
    if since is None:
        logger.info("[%s] No blurhash checkpoint yet, checking every blurhash", ctx.server.id)
        return started

    try:
        data = await ctx.client.fetch_blurhash_changes(since)
    except RemoteFetchError as e:
        logger.warning("[%s] Blurhash change feed failed, checking every blurhash: %s", ctx.server.id, e)
        return None

    changes: dict[MediaType, set[str]] = {MediaType.MOVIES: set(), MediaType.TV: set()}
    for change in data.get("changes") or []:
        if not isinstance(change, dict) or not isinstance(change.get("title"), str):
            continue
        try:
            media_type = MediaType(change.get("mediaType"))
        except ValueError:
            continue
        changes[media_type].add(change["title"].strip())
    ctx.blurhash_changes = changes
    logger.info(
        "[%s] Blurhash changes since %s: %d movies, %d shows",
        ctx.server.id,
        since,
        len(changes[MediaType.MOVIES]),
        len(changes[MediaType.TV]),
    )

    timestamp = data.get("timestamp")
    return timestamp if isinstance(timestamp, str) and timestamp else started


def add_stamp(
    ctx: PassContext,
    media_type: MediaType,
    title: str,
    declared: str | None,
    stored: str | None,
    authorized: bool,
    season_number: int | None = None,
    episode_number: int | None = None,
) -> None:
    """Queue a hash to be stored at the end of the pass."""
    if declared is None:
        return
    ctx.stamps[(title, season_number, episode_number)] = HashStamp(
        media_type=media_type,
        title=title,
        declared=declared,
        stored=stored,
        season_number=season_number,
        episode_number=episode_number,
        authorized=authorized,
    )


async def flush_stamps(ctx: PassContext) -> int:
    """Store every queued hash whose subtree finished cleanly. Returns the count written."""
    written = 0
    for stamp in ctx.stamps.values():
        if not stamp.authorized or stamp.declared == stamp.stored:
            continue
        if await ctx.hash_store.store(
            stamp.media_type,
            ctx.server.id,
            stamp.declared,
            title=stamp.title,
            season_number=stamp.season_number,
            episode_number=stamp.episode_number,
        ):
            written += 1
    ctx.stamps.clear()
    if written:
        logger.info("[%s] Stored %d content hashes", ctx.server.id, written)
    return written
