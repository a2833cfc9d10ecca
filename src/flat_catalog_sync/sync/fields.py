"""Field synchronizers.

Each synchronizer looks at one field group of one entity against one
server's tree node and returns a `FieldUpdate` (or None for a no-op). The
shape is always the same: bail out when the server has no value, ask the
availability index whether this server may write, compute the candidate,
compare value and source, drop locked fields. Nothing here writes to the
store; orchestrators merge the updates into a single write per entity.
"""

import hashlib
import logging
from dataclasses import dataclass
from datetime import datetime
from typing import Any
from urllib.parse import unquote, urlparse

from ..config import ServerConfig
from ..fileserver import FileServerClient
from ..models import CatalogEntity, MediaType
from .availability import FieldAvailabilityIndex, PriorityDecision
from .field_paths import FieldKind, FieldPath, has_value, lookup

logger = logging.getLogger(__name__)

_DECISION_ORDER = {
    PriorityDecision.AUTHORITATIVE: 2,
    PriorityDecision.GAP_FILL: 1,
    PriorityDecision.DENIED: 0,
}


@dataclass
class FieldContext:
    """What a synchronizer needs to know about the server and the entity key."""

    server: ServerConfig
    client: FileServerClient
    availability: FieldAvailabilityIndex
    media_type: MediaType
    title: str  # Title as keyed in the server tree and availability data
    blurhash_changes: frozenset[str] | None = None

    def decide(self, path: FieldPath, current_source: str | None, current_value: Any) -> PriorityDecision:
        return self.availability.decide(
            self.title,
            path,
            self.server.id,
            current_source=current_source,
            current_present=has_value(current_value),
        )


@dataclass
class FieldUpdate:
    """A partial update produced by one synchronizer."""

    field: str
    changes: dict[str, Any]
    decision: PriorityDecision


# ========== Helpers ==========


def normalized_video_id(url: str) -> str:
    """Stable id for a video URL: decoded, host-free, lowercased, hashed."""
    decoded = unquote(unquote(url))
    path = urlparse(decoded).path or decoded
    return hashlib.sha256(path.lower().encode()).hexdigest()[:16]


def is_locked(entity: CatalogEntity, path: str) -> bool:
    """True if the dotted path or any parent of it is pinned."""
    node: Any = entity.locked_fields
    for part in path.split("."):
        if not isinstance(node, dict):
            return False
        node = node.get(part)
        if node is True:
            return True
    return False


def filter_locked_fields(entity: CatalogEntity, update: dict[str, Any]) -> dict[str, Any]:
    """Drop locked paths from an update.

    Nested dict values are split into dotted paths only where a nested lock
    exists, so unlocked siblings still update.
    """
    existing = entity.model_dump()
    result: dict[str, Any] = {}

    def walk(path: str, value: Any, current: Any, locks: Any) -> None:
        if locks is True:
            return
        if isinstance(locks, dict) and locks and isinstance(value, dict) and isinstance(current, dict):
            for key, sub_value in value.items():
                walk(f"{path}.{key}", sub_value, current.get(key), locks.get(key))
            return
        result[path] = value

    for key, value in update.items():
        walk(key, value, existing.get(key), entity.locked_fields.get(key))
    return result


def _finish(
    entity: CatalogEntity,
    name: str,
    primary: str,
    changes: dict[str, Any],
    decision: PriorityDecision,
) -> FieldUpdate | None:
    if is_locked(entity, primary):
        logger.debug("Skipping locked field %s on %s", primary, entity.id)
        return None
    filtered = filter_locked_fields(entity, changes)
    if not filtered:
        return None
    return FieldUpdate(field=name, changes=filtered, decision=decision)


def _timestamp(value: Any) -> datetime | None:
    if not isinstance(value, str):
        return None
    try:
        return datetime.fromisoformat(value.replace("Z", "+00:00"))
    except ValueError:
        return None


def _not_newer(new: dict[str, Any], old: dict[str, Any] | None) -> bool:
    """True when the new payload's last_updated is not after the stored one."""
    if not old:
        return False
    new_ts, old_ts = _timestamp(new.get("last_updated")), _timestamp(old.get("last_updated"))
    if new_ts is None or old_ts is None:
        return False
    try:
        return new_ts <= old_ts
    except TypeError:
        # Naive and aware timestamps; compare the raw strings instead
        return str(new.get("last_updated")) <= str(old.get("last_updated"))


def _without_last_updated(payload: dict[str, Any] | None) -> dict[str, Any]:
    return {k: v for k, v in (payload or {}).items() if k != "last_updated"}


def best_decision(decisions: list[PriorityDecision]) -> PriorityDecision:
    return max(decisions, key=_DECISION_ORDER.__getitem__, default=PriorityDecision.DENIED)


# ========== Metadata ==========


def project_show_metadata(payload: dict[str, Any]) -> dict[str, Any]:
    """Top-level show attributes derived from its metadata."""
    projected = {
        "title": payload.get("name"),
        "first_air_date": payload.get("first_air_date"),
        "last_air_date": payload.get("last_air_date"),
        "status": payload.get("status"),
        "number_of_seasons": payload.get("number_of_seasons"),
        "overview": payload.get("overview"),
        "genres": payload.get("genres"),
        "networks": payload.get("networks"),
        "rating": payload.get("vote_average"),
    }
    return {k: v for k, v in projected.items() if v is not None}


def project_episode_metadata(payload: dict[str, Any]) -> dict[str, Any]:
    return {"title": payload["name"]} if payload.get("name") else {}


def season_metadata_from_show(show_metadata: dict[str, Any] | None, season_number: int) -> dict[str, Any] | None:
    """The show metadata's entry for one season."""
    for entry in (show_metadata or {}).get("seasons") or []:
        if isinstance(entry, dict) and entry.get("season_number") == season_number:
            return entry
    return None


def episode_metadata_from_season(season_entry: dict[str, Any] | None, episode_number: int) -> dict[str, Any] | None:
    """The season metadata's entry for one episode."""
    for entry in (season_entry or {}).get("episodes") or []:
        if isinstance(entry, dict) and entry.get("episode_number") == episode_number:
            return entry
    return None


async def sync_metadata(
    entity: CatalogEntity,
    node: dict[str, Any],
    ctx: FieldContext,
    path: FieldPath,
    compare_last_updated: bool = True,
    fallback: dict[str, Any] | None = None,
    rank_path: FieldPath | None = None,
) -> FieldUpdate | None:
    """Metadata fetched by reference from the tree.

    With `compare_last_updated`, a payload from the same server that is not
    newer than the stored one is ignored. Otherwise equality ignores
    last_updated. `fallback` is used when the node carries no reference;
    `rank_path` arbitrates on another path (the payload it came from).
    """
    reference = lookup(node, path.segments())
    if not has_value(reference) and not fallback:
        return None

    decision = ctx.decide(rank_path or path, entity.metadata_source, entity.metadata)
    if not decision.allowed:
        return None

    if has_value(reference):
        payload = await ctx.client.resolve_reference(reference, "metadata", ctx.media_type, ctx.title)
    else:
        payload = fallback
    if not isinstance(payload, dict) or not payload:
        logger.warning("[%s] Empty metadata for %s", ctx.server.id, ctx.title)
        return None

    same_source = entity.metadata_source == ctx.server.id
    if compare_last_updated:
        if same_source and (payload == entity.metadata or _not_newer(payload, entity.metadata)):
            return None
    elif same_source and _without_last_updated(payload) == _without_last_updated(entity.metadata):
        return None

    changes: dict[str, Any] = {"metadata": payload, "metadata_source": ctx.server.id}
    if ctx.media_type is MediaType.TV and path.season is None:
        changes.update(project_show_metadata(payload))
    elif path.episode_file is not None:
        changes.update(project_episode_metadata(payload))
    return _finish(entity, "metadata", "metadata", changes, decision)


async def sync_season_metadata(
    season: CatalogEntity,
    season_number: int,
    show_metadata: dict[str, Any] | None,
    ctx: FieldContext,
) -> FieldUpdate | None:
    """Season metadata is the show metadata's season entry, minus its episodes."""
    entry = season_metadata_from_show(show_metadata, season_number)
    if not entry:
        return None

    # Seasons share the show's metadata ranking
    path = FieldPath.show(FieldKind.METADATA)
    decision = ctx.decide(path, season.metadata_source, season.metadata)
    if not decision.allowed:
        return None

    trimmed = {k: v for k, v in entry.items() if k != "episodes"}
    if trimmed == season.metadata and season.metadata_source == ctx.server.id:
        return None

    changes: dict[str, Any] = {"metadata": trimmed, "metadata_source": ctx.server.id}
    projected = {
        "title": entry.get("name"),
        "air_date": entry.get("air_date"),
        "overview": entry.get("overview"),
        "episode_count": entry.get("episode_count") or len(entry.get("episodes") or []) or None,
        "rating": entry.get("vote_average"),
    }
    changes.update({k: v for k, v in projected.items() if v is not None})
    return _finish(season, "metadata", "metadata", changes, decision)


# ========== URLs ==========


async def sync_url(
    entity: CatalogEntity,
    node: dict[str, Any],
    ctx: FieldContext,
    path: FieldPath,
    value_attr: str,
    source_attr: str,
) -> FieldUpdate | None:
    """Poster, backdrop, logo, thumbnail, season poster and chapters."""
    reference = lookup(node, path.segments())
    if not has_value(reference) or not isinstance(reference, str):
        return None

    current = getattr(entity, value_attr)
    current_source = getattr(entity, source_attr)
    decision = ctx.decide(path, current_source, current)
    if not decision.allowed:
        return None

    url = ctx.client.create_full_url(reference)
    if url == current and current_source == ctx.server.id:
        return None

    return _finish(entity, value_attr, value_attr, {value_attr: url, source_attr: ctx.server.id}, decision)


async def sync_video_url(
    entity: CatalogEntity,
    node: dict[str, Any],
    ctx: FieldContext,
    path: FieldPath,
) -> FieldUpdate | None:
    """Playable URL plus its normalized id for history matching."""
    reference = lookup(node, path.segments())
    if not has_value(reference) or not isinstance(reference, str):
        return None

    decision = ctx.decide(path, entity.video_source, entity.video_url)  # type: ignore[attr-defined]
    if not decision.allowed:
        return None

    url = ctx.client.create_full_url(reference)
    if url == entity.video_url and entity.video_source == ctx.server.id:  # type: ignore[attr-defined]
        return None

    changes = {
        "video_url": url,
        "video_source": ctx.server.id,
        "normalized_video_id": normalized_video_id(url),
    }
    return _finish(entity, "video_url", "video_url", changes, decision)


# ========== Blurhash ==========


async def sync_blurhash(
    entity: CatalogEntity,
    node: dict[str, Any],
    ctx: FieldContext,
    path: FieldPath,
    value_attr: str,
    source_attr: str,
) -> FieldUpdate | None:
    """The tree holds a reference; the blurhash itself is fetched and compared.

    With a change feed in the context, titles it does not name skip the
    fetch when this server already supplied the value for the same reference.
    """
    reference = lookup(node, path.segments())
    if not has_value(reference) or not isinstance(reference, str):
        return None

    current = getattr(entity, value_attr)
    current_source = getattr(entity, source_attr)
    decision = ctx.decide(path, current_source, current)
    if not decision.allowed:
        return None

    # Not in the change feed and already stored from this reference
    if (
        ctx.blurhash_changes is not None
        and ctx.title.strip() not in ctx.blurhash_changes
        and has_value(current)
        and current_source == ctx.server.id
        and entity.blurhash_refs.get(value_attr) == reference
    ):
        return None

    blurhash = await ctx.client.resolve_reference(reference, "blurhash", ctx.media_type, ctx.title)
    if not blurhash:
        return None

    if (
        blurhash == current
        and current_source == ctx.server.id
        and entity.blurhash_refs.get(value_attr) == reference
    ):
        return None

    changes = {
        value_attr: blurhash,
        source_attr: ctx.server.id,
        f"blurhash_refs.{value_attr}": reference,
    }
    return _finish(entity, value_attr, value_attr, changes, decision)


# ========== Captions ==========


def order_captions(captions: dict[str, dict[str, Any]]) -> dict[str, dict[str, Any]]:
    """English first, then alphabetical."""
    ordered = sorted(captions, key=lambda lang: (lang != "English", lang))
    return {lang: captions[lang] for lang in ordered}


async def sync_captions(
    entity: CatalogEntity,
    subtitles: dict[str, Any] | None,
    ctx: FieldContext,
    path_for: Any,
) -> FieldUpdate | None:
    """Per-language captions, each arbitrated on its own path.

    `path_for(language)` builds the FieldPath of one language. Languages this
    server supplied earlier but no longer lists are removed.
    """
    if is_locked(entity, "captions"):
        return None

    existing: dict[str, dict[str, Any]] = dict(entity.captions)  # type: ignore[attr-defined]
    subtitles = subtitles if isinstance(subtitles, dict) else {}
    merged = dict(existing)
    decisions: list[PriorityDecision] = []

    for language, data in subtitles.items():
        if not isinstance(data, dict) or not has_value(data.get("url")):
            continue
        if is_locked(entity, f"captions.{language}"):
            continue
        current = existing.get(language) or {}
        decision = ctx.decide(path_for(language), current.get("source_server_id"), current.get("url"))
        if not decision.allowed:
            continue
        decisions.append(decision)
        merged[language] = {
            "src_lang": data.get("srcLang"),
            "url": ctx.client.create_full_url(data["url"]),
            "last_modified": data.get("lastModified"),
            "source_server_id": ctx.server.id,
        }

    for language, caption in existing.items():
        if (
            caption.get("source_server_id") == ctx.server.id
            and language not in subtitles
            and not is_locked(entity, f"captions.{language}")
        ):
            del merged[language]
            decisions.append(PriorityDecision.AUTHORITATIVE)

    merged = order_captions(merged)
    caption_source = next(iter(merged.values()))["source_server_id"] if merged else None
    unchanged_source = caption_source == entity.caption_source  # type: ignore[attr-defined]
    if list(merged.items()) == list(existing.items()) and unchanged_source:
        return None

    return FieldUpdate(
        field="captions",
        changes={"captions": merged, "caption_source": caption_source},
        decision=best_decision(decisions) if decisions else PriorityDecision.GAP_FILL,
    )


# ========== Video info ==========


async def sync_video_info(
    entity: CatalogEntity,
    values: dict[FieldKind, Any],
    media_last_modified: Any,
    ctx: FieldContext,
    path_for: Any,
) -> FieldUpdate | None:
    """Quality descriptors, written together when the server may write any of them.

    `values` maps video-info kinds to the server's values; `path_for(kind)`
    builds their FieldPaths.
    """
    present = {kind: value for kind, value in values.items() if has_value(value) or value is False}
    if not present and not media_last_modified:
        return None

    current_source = entity.video_info_source  # type: ignore[attr-defined]
    decisions = [
        ctx.decide(path_for(kind), current_source, getattr(entity, _VIDEO_INFO_ATTRS[kind])) for kind in present
    ]
    decision = best_decision(decisions)
    if not decision.allowed:
        return None

    candidate = {_VIDEO_INFO_ATTRS[kind]: value for kind, value in present.items()}
    if media_last_modified:
        candidate["media_last_modified"] = str(media_last_modified)

    changes = {attr: value for attr, value in candidate.items() if getattr(entity, attr) != value}
    if not changes and current_source == ctx.server.id:
        return None
    changes["video_info_source"] = ctx.server.id
    return _finish(entity, "video_info", "video_info_source", changes, decision)


_VIDEO_INFO_ATTRS = {
    FieldKind.MEDIA_QUALITY: "media_quality",
    FieldKind.HDR: "hdr",
    FieldKind.DIMENSIONS: "dimensions",
    FieldKind.DURATION: "duration",
    FieldKind.SIZE: "size",
}
