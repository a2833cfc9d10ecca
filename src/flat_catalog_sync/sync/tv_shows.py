"""TV show sync orchestration (show-level fields only)."""

import logging
from typing import Any

from ..models import Created, MediaType, PhaseResult, SyncError
from .context import PassContext, apply_updates, record, run_bounded, run_synchronizers
from .field_paths import FieldKind, FieldPath, iter_seasons
from .fields import sync_blurhash, sync_metadata, sync_url
from .hashing import add_stamp, declared_hash, load_hashes, show_is_complete

logger = logging.getLogger(__name__)

_URL_FIELDS = (
    (FieldKind.POSTER, "poster_url", "poster_source"),
    (FieldKind.BACKDROP, "backdrop_url", "backdrop_source"),
    (FieldKind.LOGO, "logo_url", "logo_source"),
)

_BLURHASH_FIELDS = (
    (FieldKind.POSTER_BLURHASH, "poster_blurhash", "poster_blurhash_source"),
    (FieldKind.BACKDROP_BLURHASH, "backdrop_blurhash", "backdrop_blurhash_source"),
    (FieldKind.LOGO_BLURHASH, "logo_blurhash", "logo_blurhash_source"),
)


def seasons_with_episodes(show_node: dict[str, Any]) -> list[tuple[int, dict[str, Any]]]:
    """Seasons of a show node that list at least one episode."""
    return [(n, node) for n, node in iter_seasons(show_node) if node.get("episodes")]


async def sync_tv_shows(ctx: PassContext) -> PhaseResult:
    """Sync show-level fields for every show in the server's tree."""
    result = PhaseResult()
    tree = ctx.tv_tree()
    await load_hashes(ctx, MediaType.TV, tree)

    async def process_one(item: tuple[str, dict[str, Any]]) -> None:
        title, node = item
        try:
            await _sync_show(ctx, title, node, result)
        except Exception as e:
            logger.exception("[%s] Show %s failed", ctx.server.id, title)
            ctx.invalidate_stamp(title)
            result.errors.append(SyncError(show_title=title, error=str(e)))

    await run_bounded(
        tree.items(), process_one, ctx.sync_config.entity_concurrency, ctx.sync_config.batch_delay_seconds
    )
    logger.info(
        "[%s] Shows: %d created, %d updated, %d unchanged, %d errors",
        ctx.server.id,
        len(result.created),
        len(result.updated),
        result.unchanged,
        len(result.errors),
    )
    return result


async def _sync_show(ctx: PassContext, title: str, node: dict[str, Any], result: PhaseResult) -> None:
    seasons = seasons_with_episodes(node)
    show = ctx.cache.show(title)
    created = False
    if show is None:
        if not seasons:
            logger.debug("[%s] Skipping show %s without episodes", ctx.server.id, title)
            return
        resolved = await ctx.repos.shows.create(title)
        show = resolved.entity
        created = isinstance(resolved, Created)
        ctx.cache.insert(show)

    skip_metadata = False
    declared = stored = None
    if ctx.hash_based:
        declared = declared_hash(ctx, MediaType.TV, title)
        stored = await ctx.hash_store.get(MediaType.TV, ctx.server.id, title)
        if declared is not None and declared == stored:
            if show_is_complete(ctx, show, seasons):
                # Nothing below the show changed; seasons and episodes skip their metadata too
                skip_metadata = True
                ctx.season_skips.update((title, number) for number, _ in seasons)
                result.skipped_by_hash += 1
            else:
                logger.debug("[%s] %s hash matches but catalog is incomplete", ctx.server.id, title)

    fctx = ctx.field_context(MediaType.TV, title)
    steps = {}
    if not skip_metadata:
        steps["metadata"] = sync_metadata(show, node, fctx, FieldPath.show(FieldKind.METADATA))
    for kind, value_attr, source_attr in _URL_FIELDS:
        steps[value_attr] = sync_url(show, node, fctx, FieldPath.show(kind), value_attr, source_attr)
    for kind, value_attr, source_attr in _BLURHASH_FIELDS:
        steps[value_attr] = sync_blurhash(show, node, fctx, FieldPath.show(kind), value_attr, source_attr)

    updates, errors = await run_synchronizers(steps)
    metadata_authoritative = ctx.availability.is_highest_priority(
        title, FieldPath.show(FieldKind.METADATA), ctx.server.id
    )
    _, decision = await apply_updates(
        ctx.repos.shows, ctx.cache, show, updates, "tv_show", title, errors, metadata_authoritative
    )
    record(result, decision, created)
    for name, message in errors.items():
        result.errors.append(SyncError(show_title=title, field=name, error=message))

    # Stored after seasons and episodes finish; any error below the show revokes it
    add_stamp(ctx, MediaType.TV, title, declared, stored, decision.authorized_to_stamp_hash)
