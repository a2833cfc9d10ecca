"""Episode sync orchestration."""

import logging
from dataclasses import dataclass
from typing import Any

from ..models import Created, Episode, MediaType, PhaseResult, Season, SyncError, TVShow
from .context import PassContext, apply_updates, record, run_bounded, run_synchronizers
from .field_paths import VIDEO_INFO_KINDS, FieldKind, FieldPath, has_value, iter_episodes, lookup
from .fields import (
    FieldContext,
    FieldUpdate,
    episode_metadata_from_season,
    season_metadata_from_show,
    sync_blurhash,
    sync_captions,
    sync_metadata,
    sync_url,
    sync_video_info,
    sync_video_url,
)
from .hashing import add_stamp, lookup_episode_hash
from .tv_shows import seasons_with_episodes

logger = logging.getLogger(__name__)


@dataclass
class EpisodeJob:
    """One episode of one server's tree, with its resolved parents."""

    title: str
    show: TVShow
    show_node: dict[str, Any]
    season: Season
    episode_number: int
    file_name: str
    node: dict[str, Any]

    @property
    def label(self) -> str:
        return f"{self.title} S{self.season.season_number:02d}E{self.episode_number:02d}"


async def sync_episodes(ctx: PassContext) -> PhaseResult:
    """Sync every episode in the server's tree.

    Parents are resolved per show first (a failure there skips only that
    show), then all episodes run under the episode concurrency cap.
    """
    result = PhaseResult()
    jobs: list[EpisodeJob] = []

    async def collect_show(item: tuple[str, dict[str, Any]]) -> None:
        title, node = item
        try:
            jobs.extend(await _collect_jobs(ctx, title, node))
        except Exception as e:
            logger.exception("[%s] Episodes of %s failed", ctx.server.id, title)
            ctx.invalidate_stamp(title)
            result.errors.append(SyncError(show_title=title, error=str(e)))

    await run_bounded(ctx.tv_tree().items(), collect_show, ctx.sync_config.entity_concurrency)

    async def process_one(job: EpisodeJob) -> None:
        try:
            await _sync_episode(ctx, job, result)
        except Exception as e:
            logger.exception("[%s] Episode %s failed", ctx.server.id, job.label)
            ctx.invalidate_stamp(job.title, job.season.season_number)
            result.errors.append(
                SyncError(
                    show_title=job.title,
                    season_number=job.season.season_number,
                    episode_number=job.episode_number,
                    error=str(e),
                )
            )

    limit = ctx.sync_config.hash_concurrency if ctx.hash_based else ctx.sync_config.episode_concurrency
    await run_bounded(jobs, process_one, limit, ctx.sync_config.batch_delay_seconds)
    logger.info(
        "[%s] Episodes: %d created, %d updated, %d unchanged, %d errors",
        ctx.server.id,
        len(result.created),
        len(result.updated),
        result.unchanged,
        len(result.errors),
    )
    return result


async def _collect_jobs(ctx: PassContext, title: str, node: dict[str, Any]) -> list[EpisodeJob]:
    seasons = seasons_with_episodes(node)
    if not seasons:
        return []

    show = (await ctx.resolve_show(title)).entity
    jobs = []
    for number, season_node in seasons:
        season = (await ctx.resolve_season(show, number)).entity
        for episode_number, file_name, episode_node in iter_episodes(season_node):
            jobs.append(EpisodeJob(title, show, node, season, episode_number, file_name, episode_node))
    return jobs


async def _sync_episode(ctx: PassContext, job: EpisodeJob, result: PhaseResult) -> None:
    season_number = job.season.season_number
    video_path = FieldPath.episode(FieldKind.VIDEO_URL, season_number, job.file_name)

    episode = ctx.cache.episode(job.show, job.season, job.episode_number)
    created = False
    if episode is None:
        if not has_value(lookup(job.show_node, video_path.segments())):
            logger.debug("[%s] Skipping %s without a video", ctx.server.id, job.label)
            return
        resolved = await ctx.repos.episodes.create(job.show, job.season, job.episode_number)
        episode = resolved.entity
        created = isinstance(resolved, Created)
        ctx.cache.insert(episode)

    fctx = ctx.field_context(MediaType.TV, job.title)

    def path(kind: FieldKind, language: str | None = None) -> FieldPath:
        return FieldPath.episode(kind, season_number, job.file_name, language=language)

    skip_metadata = (job.title, season_number) in ctx.season_skips
    declared = stored = None
    if not skip_metadata and ctx.hash_based:
        declared, stored = lookup_episode_hash(ctx, job.title, season_number, job.episode_number)
        if declared is not None and declared == stored and has_value(episode.metadata):
            skip_metadata = True
            result.skipped_by_hash += 1

    steps = {}
    if not skip_metadata:
        steps["metadata"] = _episode_metadata(ctx, fctx, episode, job)
    steps["video_url"] = sync_video_url(episode, job.show_node, fctx, video_path)
    steps["thumbnail"] = sync_url(
        episode, job.show_node, fctx, path(FieldKind.THUMBNAIL), "thumbnail", "thumbnail_source"
    )
    steps["thumbnail_blurhash"] = sync_blurhash(
        episode,
        job.show_node,
        fctx,
        path(FieldKind.THUMBNAIL_BLURHASH),
        "thumbnail_blurhash",
        "thumbnail_blurhash_source",
    )
    steps["chapters"] = sync_url(
        episode, job.show_node, fctx, path(FieldKind.CHAPTERS), "chapter_url", "chapter_source"
    )
    steps["captions"] = sync_captions(
        episode, job.node.get("subtitles"), fctx, lambda language: path(FieldKind.CAPTION, language)
    )
    steps["video_info"] = sync_video_info(
        episode,
        {kind: lookup(job.show_node, path(kind).segments()) for kind in VIDEO_INFO_KINDS},
        job.node.get("mediaLastModified"),
        fctx,
        path,
    )

    updates, errors = await run_synchronizers(steps)
    metadata_authoritative = ctx.availability.is_highest_priority(
        job.title, path(FieldKind.METADATA), ctx.server.id
    )
    _, decision = await apply_updates(
        ctx.repos.episodes, ctx.cache, episode, updates, "episode", job.label, errors, metadata_authoritative
    )
    record(result, decision, created)
    for name, message in errors.items():
        result.errors.append(
            SyncError(
                show_title=job.title,
                season_number=season_number,
                episode_number=job.episode_number,
                field=name,
                error=message,
            )
        )
    if errors:
        ctx.invalidate_stamp(job.title, season_number)

    add_stamp(
        ctx,
        MediaType.TV,
        job.title,
        declared,
        stored,
        decision.authorized_to_stamp_hash,
        season_number=season_number,
        episode_number=job.episode_number,
    )


async def _episode_metadata(
    ctx: PassContext, fctx: FieldContext, episode: Episode, job: EpisodeJob
) -> FieldUpdate | None:
    """Episode metadata by reference, falling back to the season metadata's entry."""
    path = FieldPath.episode(FieldKind.METADATA, job.season.season_number, job.file_name)
    if has_value(lookup(job.show_node, path.segments())):
        return await sync_metadata(episode, job.show_node, fctx, path, compare_last_updated=False)

    show_metadata = await ctx.show_metadata(job.title, job.show_node)
    season_entry = season_metadata_from_show(show_metadata, job.season.season_number)
    fallback = episode_metadata_from_season(season_entry, job.episode_number)
    # The fallback comes out of the show metadata, so it follows that field's ranking
    return await sync_metadata(
        episode,
        job.show_node,
        fctx,
        path,
        compare_last_updated=False,
        fallback=fallback,
        rank_path=FieldPath.show(FieldKind.METADATA),
    )
