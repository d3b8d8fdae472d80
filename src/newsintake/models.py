from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any, Union

from .utils import parse_date_value


class SourceKind(str, Enum):
    RSS = "rss"
    YOUTUBE_CHANNEL = "youtube_channel"
    YOUTUBE_SEARCH = "youtube_search"


class ItemKind(str, Enum):
    ARTICLE = "article"
    YOUTUBE = "youtube"
    PODCAST = "podcast"


class HealthStatus(str, Enum):
    OK = "ok"
    WARN = "warn"
    ERROR = "error"


SWEEP_KINDS: dict[str, tuple[SourceKind, ...]] = {
    "rss": (SourceKind.RSS,),
    "youtube": (SourceKind.YOUTUBE_CHANNEL, SourceKind.YOUTUBE_SEARCH),
}


@dataclass(frozen=True)
class FeedSourceMeta:
    published_after: datetime | None = None
    http_headers: dict[str, str] = field(default_factory=dict)


@dataclass(frozen=True)
class YouTubeChannelMeta:
    upload_playlist_id: str | None = None
    channel_id: str | None = None
    max_videos_per_run: int | None = None
    published_after: datetime | None = None


@dataclass(frozen=True)
class YouTubeSearchMeta:
    query: str | None = None
    max_results: int | None = None
    order: str = "relevance"
    duration: str = "any"
    published_after: datetime | None = None


SourceMeta = Union[FeedSourceMeta, YouTubeChannelMeta, YouTubeSearchMeta]


@dataclass(frozen=True)
class Source:
    id: str
    kind: SourceKind
    name: str
    url: str | None
    enabled: bool
    metadata: SourceMeta


@dataclass(frozen=True)
class ArticleItemMeta:
    feed_url: str | None = None
    guid: str | None = None
    updated_at: datetime | None = None


@dataclass(frozen=True)
class VideoItemMeta:
    video_id: str
    channel_id: str | None = None
    channel_title: str | None = None
    duration: str | None = None
    duration_seconds: int | None = None
    view_count: int | None = None
    like_count: int | None = None
    comment_count: int | None = None
    thumbnail_url: str | None = None
    tags: list[str] = field(default_factory=list)
    category_id: str | None = None
    default_language: str | None = None
    default_audio_language: str | None = None
    source_ref: str | None = None


ItemMeta = Union[ArticleItemMeta, VideoItemMeta]


@dataclass(frozen=True)
class RawItem:
    source_id: str
    external_id: str
    url: str
    title: str | None
    published_at: datetime | None
    kind: ItemKind
    metadata: ItemMeta

    def __post_init__(self) -> None:
        if not self.external_id:
            raise ValueError("RawItem.external_id must not be empty")


@dataclass(frozen=True)
class SourceHealth:
    source_id: str
    status: HealthStatus
    last_error: str | None
    last_run_at: str


@dataclass(frozen=True)
class Job:
    id: str
    job_type: str
    status: str
    payload: dict[str, object]
    result: dict[str, object] | None
    requested_at: str
    started_at: str | None
    finished_at: str | None
    locked_by: str | None
    locked_at: str | None
    error: str | None


def parse_source_metadata(kind: SourceKind, data: dict[str, Any] | None) -> SourceMeta:
    data = data or {}
    published_after = parse_date_value(data.get("published_after"))
    if kind == SourceKind.RSS:
        headers = data.get("http_headers") or {}
        if not isinstance(headers, dict):
            headers = {}
        return FeedSourceMeta(
            published_after=published_after,
            http_headers={str(k): str(v) for k, v in headers.items()},
        )
    if kind == SourceKind.YOUTUBE_CHANNEL:
        return YouTubeChannelMeta(
            upload_playlist_id=_str_or_none(data.get("upload_playlist_id")),
            channel_id=_str_or_none(data.get("channel_id")),
            max_videos_per_run=_int_or_none(data.get("max_videos_per_run")),
            published_after=published_after,
        )
    if kind == SourceKind.YOUTUBE_SEARCH:
        return YouTubeSearchMeta(
            query=_str_or_none(data.get("query")),
            max_results=_int_or_none(data.get("max_results")),
            order=str(data.get("order") or "relevance"),
            duration=str(data.get("duration") or "any"),
            published_after=published_after,
        )
    raise ValueError(f"unsupported source kind {kind}")


def _str_or_none(value: Any) -> str | None:
    if value is None:
        return None
    text = str(value).strip()
    return text or None


def _int_or_none(value: Any) -> int | None:
    if value is None or value == "":
        return None
    try:
        return int(value)
    except (TypeError, ValueError):
        return None
