"""Movie sync orchestration."""

import logging
from typing import Any

from ..models import Created, MediaType, Movie, PhaseResult, SyncDecision, SyncError
from .context import PassContext, apply_updates, record, run_bounded, run_synchronizers
from .field_paths import VIDEO_INFO_KINDS, FieldKind, FieldPath, has_value, lookup
from .fields import sync_blurhash, sync_captions, sync_metadata, sync_url, sync_video_info, sync_video_url
from .hashing import declared_hash, load_hashes

logger = logging.getLogger(__name__)

_URL_FIELDS = (
    (FieldKind.POSTER, "poster_url", "poster_source"),
    (FieldKind.BACKDROP, "backdrop_url", "backdrop_source"),
    (FieldKind.LOGO, "logo_url", "logo_source"),
    (FieldKind.CHAPTERS, "chapter_url", "chapter_source"),
)

_BLURHASH_FIELDS = (
    (FieldKind.POSTER_BLURHASH, "poster_blurhash", "poster_blurhash_source"),
    (FieldKind.BACKDROP_BLURHASH, "backdrop_blurhash", "backdrop_blurhash_source"),
    (FieldKind.LOGO_BLURHASH, "logo_blurhash", "logo_blurhash_source"),
)


async def sync_movies(ctx: PassContext) -> PhaseResult:
    """Sync every movie in the server's tree."""
    result = PhaseResult()
    tree = ctx.movies_tree()
    await load_hashes(ctx, MediaType.MOVIES, tree)

    async def process_one(item: tuple[str, dict[str, Any]]) -> None:
        title, node = item
        try:
            await _sync_movie(ctx, title, node, result)
        except Exception as e:
            logger.exception("[%s] Movie %s failed", ctx.server.id, title)
            result.errors.append(SyncError(title=title, error=str(e)))

    await run_bounded(
        tree.items(), process_one, ctx.sync_config.entity_concurrency, ctx.sync_config.batch_delay_seconds
    )
    logger.info(
        "[%s] Movies: %d created, %d updated, %d unchanged, %d errors",
        ctx.server.id,
        len(result.created),
        len(result.updated),
        result.unchanged,
        len(result.errors),
    )
    return result


async def _sync_movie(ctx: PassContext, title: str, node: dict[str, Any], result: PhaseResult) -> SyncDecision | None:
    movie = ctx.cache.movie(title)
    created = False
    if movie is None:
        if not has_value(lookup(node, FieldPath.movie(FieldKind.VIDEO_URL).segments())):
            logger.debug("[%s] Skipping movie %s without a video", ctx.server.id, title)
            return None
        resolved = await ctx.repos.movies.create(title, server_id=ctx.server.id)
        movie = resolved.entity
        created = isinstance(resolved, Created)
        ctx.cache.insert(movie)

    skip_metadata = False
    declared = stored = None
    if ctx.hash_based:
        declared = declared_hash(ctx, MediaType.MOVIES, title)
        stored = await ctx.hash_store.get(MediaType.MOVIES, ctx.server.id, title)
        skip_metadata = declared is not None and declared == stored and has_value(movie.metadata)
        if skip_metadata:
            result.skipped_by_hash += 1

    decision = await sync_movie_fields(ctx, movie, title, node, skip_metadata)
    record(result, decision, created)
    for name, message in decision.errors.items():
        result.errors.append(SyncError(title=title, field=name, error=message))

    if declared is not None and decision.authorized_to_stamp_hash:
        await ctx.hash_store.store(MediaType.MOVIES, ctx.server.id, declared, title=title)
    return decision


async def sync_movie_fields(
    ctx: PassContext,
    movie: Movie,
    title: str,
    node: dict[str, Any],
    skip_metadata: bool = False,
) -> SyncDecision:
    """Run every movie synchronizer and persist the merged update."""
    fctx = ctx.field_context(MediaType.MOVIES, title)
    steps = {}
    if not skip_metadata:
        steps["metadata"] = sync_metadata(movie, node, fctx, FieldPath.movie(FieldKind.METADATA))
    steps["video_url"] = sync_video_url(movie, node, fctx, FieldPath.movie(FieldKind.VIDEO_URL))
    for kind, value_attr, source_attr in _URL_FIELDS:
        steps[value_attr] = sync_url(movie, node, fctx, FieldPath.movie(kind), value_attr, source_attr)
    for kind, value_attr, source_attr in _BLURHASH_FIELDS:
        steps[value_attr] = sync_blurhash(movie, node, fctx, FieldPath.movie(kind), value_attr, source_attr)
    steps["captions"] = sync_captions(
        movie,
        lookup(node, ("urls", "subtitles")),
        fctx,
        lambda language: FieldPath.movie(FieldKind.CAPTION, language=language),
    )
    steps["video_info"] = sync_video_info(
        movie,
        {kind: lookup(node, FieldPath.movie(kind).segments()) for kind in VIDEO_INFO_KINDS},
        lookup(node, ("urls", "mediaLastModified")),
        fctx,
        FieldPath.movie,
    )

    updates, errors = await run_synchronizers(steps)
    metadata_authoritative = ctx.availability.is_highest_priority(
        title, FieldPath.movie(FieldKind.METADATA), ctx.server.id
    )
    _, decision = await apply_updates(
        ctx.repos.movies, ctx.cache, movie, updates, "movie", title, errors, metadata_authoritative
    )
    if decision.changed:
        logger.debug("[%s] Movie %s updated: %s", ctx.server.id, title, decision.changed_fields)
    return decision
