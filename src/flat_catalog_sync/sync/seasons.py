"""Season sync orchestration."""

import logging
from typing import Any

from ..models import Created, MediaType, PhaseResult, Season, SyncError, TVShow
from .context import PassContext, apply_updates, record, run_bounded, run_synchronizers
from .field_paths import FieldKind, FieldPath
from .fields import FieldContext, FieldUpdate, sync_blurhash, sync_season_metadata, sync_url
from .hashing import add_stamp, declared_hash, load_episode_hashes, season_is_complete
from .tv_shows import seasons_with_episodes

logger = logging.getLogger(__name__)


async def sync_seasons(ctx: PassContext) -> PhaseResult:
    """Sync every season in the server's tree. Requires the show phase to have run."""
    result = PhaseResult()

    async def process_show(item: tuple[str, dict[str, Any]]) -> None:
        title, node = item
        seasons = seasons_with_episodes(node)
        if not seasons:
            return
        try:
            show = (await ctx.resolve_show(title)).entity
        except Exception as e:
            logger.exception("[%s] Seasons of %s failed", ctx.server.id, title)
            ctx.invalidate_stamp(title)
            result.errors.append(SyncError(show_title=title, error=str(e)))
            return

        async def process_season(season_item: tuple[int, dict[str, Any]]) -> None:
            number, season_node = season_item
            try:
                await _sync_season(ctx, show, title, node, number, season_node, result)
            except Exception as e:
                logger.exception("[%s] Season %s S%d failed", ctx.server.id, title, number)
                ctx.invalidate_stamp(title, number)
                result.errors.append(SyncError(show_title=title, season_number=number, error=str(e)))

        await run_bounded(seasons, process_season, ctx.sync_config.entity_concurrency)

    await run_bounded(
        ctx.tv_tree().items(), process_show, ctx.sync_config.entity_concurrency, ctx.sync_config.batch_delay_seconds
    )
    logger.info(
        "[%s] Seasons: %d created, %d updated, %d unchanged, %d skipped by hash, %d errors",
        ctx.server.id,
        len(result.created),
        len(result.updated),
        result.unchanged,
        result.skipped_by_hash,
        len(result.errors),
    )
    return result


async def _sync_season(
    ctx: PassContext,
    show: TVShow,
    title: str,
    show_node: dict[str, Any],
    number: int,
    season_node: dict[str, Any],
    result: PhaseResult,
) -> None:
    season = ctx.cache.season(show, number)
    created = False
    if season is None:
        resolved = await ctx.repos.seasons.create(show, number)
        season = resolved.entity
        created = isinstance(resolved, Created)
        ctx.cache.insert(season)

    skip_metadata = (title, number) in ctx.season_skips
    declared = stored = None
    if skip_metadata:
        result.skipped_by_hash += 1
    elif ctx.hash_based:
        declared = declared_hash(ctx, MediaType.TV, title, number)
        stored = await ctx.hash_store.get(MediaType.TV, ctx.server.id, title, number)
        matches = declared is not None and declared == stored
        if matches and season_is_complete(ctx, season, season_node):
            skip_metadata = True
            ctx.season_skips.add((title, number))
            result.skipped_by_hash += 1
        else:
            if matches:
                logger.debug("[%s] %s S%d hash matches but catalog is incomplete", ctx.server.id, title, number)
            # Unchanged episodes can still skip their metadata one by one
            if ctx.title_hashes(MediaType.TV, title):
                await load_episode_hashes(ctx, title, number)

    fctx = ctx.field_context(MediaType.TV, title)
    steps = {}
    if not skip_metadata:
        steps["metadata"] = _season_metadata(ctx, fctx, season, title, show_node, number)
    steps["poster_url"] = sync_url(
        season,
        show_node,
        fctx,
        FieldPath.season_field(FieldKind.SEASON_POSTER, number),
        "poster_url",
        "poster_source",
    )
    steps["poster_blurhash"] = sync_blurhash(
        season,
        show_node,
        fctx,
        FieldPath.season_field(FieldKind.SEASON_POSTER_BLURHASH, number),
        "poster_blurhash",
        "poster_blurhash_source",
    )

    updates, errors = await run_synchronizers(steps)
    label = f"{title} S{number}"
    metadata_authoritative = ctx.availability.is_highest_priority(
        title, FieldPath.show(FieldKind.METADATA), ctx.server.id
    )
    _, decision = await apply_updates(
        ctx.repos.seasons, ctx.cache, season, updates, "season", label, errors, metadata_authoritative
    )
    record(result, decision, created)
    for name, message in errors.items():
        result.errors.append(SyncError(show_title=title, season_number=number, field=name, error=message))
    if errors:
        ctx.invalidate_stamp(title, number)

    add_stamp(ctx, MediaType.TV, title, declared, stored, decision.authorized_to_stamp_hash, season_number=number)


async def _season_metadata(
    ctx: PassContext,
    fctx: FieldContext,
    season: Season,
    title: str,
    show_node: dict[str, Any],
    number: int,
) -> FieldUpdate | None:
    show_metadata = await ctx.show_metadata(title, show_node)
    return await sync_season_metadata(season, number, show_metadata, fctx)
