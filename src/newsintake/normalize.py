from __future__ import annotations

import re
from dataclasses import dataclass
from typing import Union

from .feeds import FeedEntry
from .models import (
    ArticleItemMeta,
    ItemKind,
    RawItem,
    Source,
    VideoItemMeta,
    YouTubeSearchMeta,
)
from .urls import canonicalize_url
from .youtube import VideoRecord, watch_url

SKIP_MISSING_IDENTIFIER = "missing_identifier"

_DURATION_RE = re.compile(
    r"^P(?:(?P<days>\d+)D)?"
    r"(?:T(?:(?P<hours>\d+)H)?(?:(?P<minutes>\d+)M)?(?:(?P<seconds>\d+(?:\.\d+)?)S)?)?$"
)


@dataclass(frozen=True)
class Normalized:
    item: RawItem


@dataclass(frozen=True)
class Skipped:
    reason: str
    detail: str | None = None


NormalizeResult = Union[Normalized, Skipped]


def normalize_feed_entry(entry: FeedEntry, source: Source) -> NormalizeResult:
    link = canonicalize_url(entry.link) if entry.link else ""
    external_id = entry.guid or link
    if not external_id:
        return Skipped(reason=SKIP_MISSING_IDENTIFIER, detail=entry.title or None)
    url = link or canonicalize_url(external_id)
    return Normalized(
        RawItem(
            source_id=source.id,
            external_id=external_id,
            url=url,
            title=entry.title or None,
            published_at=entry.published or entry.updated,
            kind=ItemKind.ARTICLE,
            metadata=ArticleItemMeta(
                feed_url=source.url,
                guid=entry.guid,
                updated_at=entry.updated,
            ),
        )
    )


def normalize_video(video: VideoRecord, source: Source) -> RawItem:
    return RawItem(
        source_id=source.id,
        external_id=video.video_id,
        url=canonicalize_url(watch_url(video.video_id)),
        title=video.title or None,
        published_at=video.published_at,
        kind=ItemKind.YOUTUBE,
        metadata=VideoItemMeta(
            video_id=video.video_id,
            channel_id=video.channel_id,
            channel_title=video.channel_title,
            duration=video.duration,
            duration_seconds=parse_iso_duration(video.duration),
            view_count=video.view_count,
            like_count=video.like_count,
            comment_count=video.comment_count,
            thumbnail_url=video.thumbnail_url,
            tags=list(video.tags),
            category_id=video.category_id,
            default_language=video.default_language,
            default_audio_language=video.default_audio_language,
            source_ref=_source_ref(source),
        ),
    )


def parse_iso_duration(value: str | None) -> int | None:
    """Seconds in an ISO 8601 duration such as ``PT1H2M3S``; ``None`` if unparseable."""
    if not value:
        return None
    match = _DURATION_RE.match(value.strip())
    if not match or value.strip() in ("P", "PT"):
        return None
    parts = match.groupdict()
    total = (
        int(parts["days"] or 0) * 86400
        + int(parts["hours"] or 0) * 3600
        + int(parts["minutes"] or 0) * 60
        + float(parts["seconds"] or 0)
    )
    return int(total)


def _source_ref(source: Source) -> str | None:
    if source.url:
        return source.url
    if isinstance(source.metadata, YouTubeSearchMeta) and source.metadata.query:
        return f"search:{source.metadata.query}"
    return None
