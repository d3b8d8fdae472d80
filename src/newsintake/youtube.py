from __future__ import annotations

import json
import logging
import re
from dataclasses import dataclass, replace
from datetime import datetime
from typing import Any
from urllib.parse import urlencode, urlparse

from . import http
from .errors import ErrorKind, IngestError, kind_for_status
from .utils import isoformat_utc, log_event, parse_date_value

DEFAULT_API_BASE = "https://www.googleapis.com/youtube/v3"
MAX_PAGE_SIZE = 50

_QUOTA_REASONS = {"quotaExceeded", "dailyLimitExceeded"}
_RATE_REASONS = {"rateLimitExceeded", "userRateLimitExceeded"}
_NOT_FOUND_REASONS = {"playlistNotFound", "channelNotFound", "videoNotFound", "notFound"}
_CHANNEL_PATH_RE = re.compile(r"^/channel/(?P<id>UC[\w-]+)")
_HANDLE_PATH_RE = re.compile(r"^/@(?P<handle>[\w.\-]+)")
_THUMBNAIL_ORDER = ("maxres", "standard", "high", "medium", "default")


@dataclass(frozen=True)
class VideoRecord:
    video_id: str
    title: str | None = None
    description: str | None = None
    published_at: datetime | None = None
    channel_id: str | None = None
    channel_title: str | None = None
    thumbnail_url: str | None = None
    duration: str | None = None
    view_count: int | None = None
    like_count: int | None = None
    comment_count: int | None = None
    tags: tuple[str, ...] = ()
    category_id: str | None = None
    default_language: str | None = None
    default_audio_language: str | None = None


@dataclass(frozen=True)
class ChannelRecord:
    channel_id: str
    title: str | None
    uploads_playlist_id: str | None


@dataclass(frozen=True)
class ChannelRef:
    channel_id: str | None = None
    handle: str | None = None
    name: str | None = None


class YouTubeAPIError(IngestError):
    def __init__(
        self,
        message: str,
        kind: ErrorKind,
        *,
        http_status: int | None = None,
        reason: str | None = None,
    ) -> None:
        super().__init__(message, kind, http_status=http_status)
        self.reason = reason


def classify_api_error(status: int, reason: str | None) -> ErrorKind:
    if reason in _QUOTA_REASONS:
        return ErrorKind.QUOTA_EXHAUSTED
    if reason in _RATE_REASONS:
        return ErrorKind.RATE_LIMITED
    if reason in _NOT_FOUND_REASONS:
        return ErrorKind.NOT_FOUND
    return kind_for_status(status)


def watch_url(video_id: str) -> str:
    return f"https://www.youtube.com/watch?v={video_id}"


def uploads_playlist_for_channel(channel_id: str) -> str | None:
    """Every ``UC...`` channel has its uploads playlist at ``UU...``."""
    if channel_id and channel_id.startswith("UC") and len(channel_id) > 2:
        return "UU" + channel_id[2:]
    return None


def parse_channel_url(url: str | None) -> ChannelRef | None:
    if not url:
        return None
    parsed = urlparse(url.strip())
    host = (parsed.hostname or "").lower()
    if not host.endswith("youtube.com"):
        return None
    path = parsed.path or ""
    match = _CHANNEL_PATH_RE.match(path)
    if match:
        return ChannelRef(channel_id=match.group("id"))
    match = _HANDLE_PATH_RE.match(path)
    if match:
        return ChannelRef(handle=match.group("handle"))
    segments = [segment for segment in path.split("/") if segment]
    if len(segments) >= 2 and segments[0] in ("c", "user"):
        return ChannelRef(name=segments[1])
    return None


class YouTubeClient:
    """Minimal YouTube Data API v3 client over the shared HTTP transport.

    Each method performs exactly one request except ``get_video_details``,
    which issues one request per 50 ids. Quota is accounted by callers.
    """

    def __init__(
        self,
        api_key: str | None,
        *,
        api_base: str = DEFAULT_API_BASE,
        timeout: float = 15.0,
        user_agent: str | None = None,
        logger: logging.Logger | None = None,
    ) -> None:
        self.api_key = api_key
        self.api_base = api_base.rstrip("/")
        self.timeout = timeout
        self.user_agent = user_agent
        self.logger = logger or logging.getLogger("newsintake.youtube")

    def search_videos(
        self,
        query: str,
        *,
        max_results: int = 10,
        published_after: datetime | None = None,
        order: str = "relevance",
        duration: str = "any",
    ) -> list[VideoRecord]:
        params: dict[str, Any] = {
            "part": "snippet",
            "q": query,
            "type": "video",
            "maxResults": min(max_results, MAX_PAGE_SIZE),
            "order": order,
            "videoDuration": duration,
        }
        if published_after is not None:
            params["publishedAfter"] = _rfc3339(published_after)
        data = self._get("search", params)
        videos = []
        for item in data.get("items") or []:
            video_id = (item.get("id") or {}).get("videoId")
            if video_id:
                videos.append(_video_from_snippet(video_id, item.get("snippet") or {}))
        return videos

    def list_playlist_items(self, playlist_id: str, *, max_results: int = 10) -> list[VideoRecord]:
        data = self._get(
            "playlistItems",
            {
                "part": "snippet,contentDetails",
                "playlistId": playlist_id,
                "maxResults": min(max_results, MAX_PAGE_SIZE),
            },
        )
        videos = []
        for item in data.get("items") or []:
            details = item.get("contentDetails") or {}
            snippet = item.get("snippet") or {}
            video_id = details.get("videoId") or (snippet.get("resourceId") or {}).get("videoId")
            if not video_id:
                continue
            record = _video_from_snippet(video_id, snippet)
            published = parse_date_value(details.get("videoPublishedAt"))
            if published is not None:
                record = replace(record, published_at=published)
            videos.append(record)
        return videos

    def get_video_details(self, video_ids: list[str]) -> list[VideoRecord]:
        videos: list[VideoRecord] = []
        for start in range(0, len(video_ids), MAX_PAGE_SIZE):
            chunk = video_ids[start : start + MAX_PAGE_SIZE]
            data = self._get(
                "videos",
                {"part": "snippet,contentDetails,statistics", "id": ",".join(chunk)},
            )
            for item in data.get("items") or []:
                if item.get("id"):
                    videos.append(_video_from_details(item))
        return videos

    def find_channel_by_handle(self, handle: str) -> ChannelRecord | None:
        handle = handle if handle.startswith("@") else f"@{handle}"
        data = self._get(
            "channels", {"part": "snippet,contentDetails", "forHandle": handle}
        )
        items = data.get("items") or []
        return _channel_from_item(items[0]) if items else None

    def search_channels(self, query: str, *, max_results: int = 5) -> list[ChannelRecord]:
        data = self._get(
            "search",
            {
                "part": "snippet",
                "q": query,
                "type": "channel",
                "maxResults": min(max_results, MAX_PAGE_SIZE),
            },
        )
        channels = []
        for item in data.get("items") or []:
            channel_id = (item.get("id") or {}).get("channelId")
            if not channel_id:
                continue
            snippet = item.get("snippet") or {}
            channels.append(
                ChannelRecord(
                    channel_id=channel_id,
                    title=snippet.get("title"),
                    uploads_playlist_id=None,
                )
            )
        return channels

    def get_channel_uploads_playlist(self, channel_id: str) -> str | None:
        data = self._get("channels", {"part": "contentDetails", "id": channel_id})
        items = data.get("items") or []
        if not items:
            return None
        return _channel_from_item(items[0]).uploads_playlist_id

    def _get(self, resource: str, params: dict[str, Any]) -> dict[str, Any]:
        if not self.api_key:
            raise IngestError("YOUTUBE_API_KEY is not set", ErrorKind.CONFIG)
        query = urlencode({**params, "key": self.api_key})
        headers = {"Accept": "application/json"}
        if self.user_agent:
            headers["User-Agent"] = self.user_agent
        response = http.http_get(
            f"{self.api_base}/{resource}?{query}",
            headers=headers,
            timeout=self.timeout,
        )
        payload = _load_json(response.content)
        if response.status != 200:
            error = payload.get("error") if isinstance(payload, dict) else None
            message, reason = _error_details(error)
            kind = classify_api_error(response.status, reason)
            log_event(
                self.logger,
                logging.WARNING,
                "youtube_api_error",
                resource=resource,
                status=response.status,
                reason=reason,
                kind=kind.value,
            )
            raise YouTubeAPIError(
                f"YouTube API {resource} HTTP {response.status}: {message}",
                kind,
                http_status=response.status,
                reason=reason,
            )
        if not isinstance(payload, dict):
            raise IngestError(f"YouTube API {resource} returned invalid JSON", ErrorKind.PARSE)
        return payload


def _load_json(content: bytes) -> Any:
    if not content:
        return {}
    try:
        return json.loads(content.decode("utf-8", errors="replace"))
    except json.JSONDecodeError:
        return None


def _error_details(error: Any) -> tuple[str, str | None]:
    if not isinstance(error, dict):
        return "unknown error", None
    message = str(error.get("message") or "unknown error")
    reason = None
    for detail in error.get("errors") or []:
        if isinstance(detail, dict) and detail.get("reason"):
            reason = str(detail["reason"])
            break
    return message, reason


def _rfc3339(value: datetime) -> str:
    return isoformat_utc(value.replace(microsecond=0))


def _best_thumbnail(thumbnails: dict[str, Any] | None) -> str | None:
    thumbnails = thumbnails or {}
    for name in _THUMBNAIL_ORDER:
        url = (thumbnails.get(name) or {}).get("url")
        if url:
            return url
    return None


def _int_field(value: Any) -> int | None:
    if value is None:
        return None
    try:
        return int(value)
    except (TypeError, ValueError):
        return None


def _video_from_snippet(video_id: str, snippet: dict[str, Any]) -> VideoRecord:
    return VideoRecord(
        video_id=video_id,
        title=snippet.get("title"),
        description=snippet.get("description"),
        published_at=parse_date_value(snippet.get("publishedAt")),
        channel_id=snippet.get("videoOwnerChannelId") or snippet.get("channelId"),
        channel_title=snippet.get("videoOwnerChannelTitle") or snippet.get("channelTitle"),
        thumbnail_url=_best_thumbnail(snippet.get("thumbnails")),
    )


def _video_from_details(item: dict[str, Any]) -> VideoRecord:
    snippet = item.get("snippet") or {}
    statistics = item.get("statistics") or {}
    content = item.get("contentDetails") or {}
    record = _video_from_snippet(item["id"], snippet)
    return replace(
        record,
        duration=content.get("duration"),
        view_count=_int_field(statistics.get("viewCount")),
        like_count=_int_field(statistics.get("likeCount")),
        comment_count=_int_field(statistics.get("commentCount")),
        tags=tuple(str(tag) for tag in snippet.get("tags") or []),
        category_id=snippet.get("categoryId"),
        default_language=snippet.get("defaultLanguage"),
        default_audio_language=snippet.get("defaultAudioLanguage"),
    )


def _channel_from_item(item: dict[str, Any]) -> ChannelRecord:
    related = (item.get("contentDetails") or {}).get("relatedPlaylists") or {}
    channel_id = item.get("id") or ""
    return ChannelRecord(
        channel_id=channel_id,
        title=(item.get("snippet") or {}).get("title"),
        uploads_playlist_id=related.get("uploads") or uploads_playlist_for_channel(channel_id),
    )


def merge_details(base: list[VideoRecord], details: list[VideoRecord]) -> list[VideoRecord]:
    """Overlay detail records onto ``base`` keeping the order of ``base``."""
    by_id = {video.video_id: video for video in details}
    merged = []
    for video in base:
        detail = by_id.get(video.video_id)
        if detail is None:
            merged.append(video)
            continue
        merged.append(
            replace(
                detail,
                published_at=detail.published_at or video.published_at,
                thumbnail_url=detail.thumbnail_url or video.thumbnail_url,
            )
        )
    return merged
