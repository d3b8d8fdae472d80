from __future__ import annotations

from datetime import datetime, timedelta, timezone
from email.utils import format_datetime

from newsintake.errors import ErrorKind
from newsintake.http import HttpResponse
from newsintake.youtube import VideoRecord, YouTubeAPIError


def no_sleep(_seconds: float) -> None:
    return None


def rss_document(entries: list[dict[str, str]], title: str = "Example Feed") -> bytes:
    base = datetime(2024, 5, 1, 12, 0, tzinfo=timezone.utc)
    items = []
    for index, entry in enumerate(entries):
        parts = [f"<title>{entry.get('title', f'Entry {index}')}</title>"]
        if entry.get("link"):
            parts.append(f"<link>{entry['link']}</link>")
        if entry.get("guid"):
            parts.append(f'<guid isPermaLink="false">{entry["guid"]}</guid>')
        published = format_datetime(base - timedelta(hours=index))
        parts.append(f"<pubDate>{published}</pubDate>")
        items.append("<item>" + "".join(parts) + "</item>")
    return (
        '<?xml version="1.0" encoding="UTF-8"?>'
        '<rss version="2.0"><channel>'
        f"<title>{title}</title><link>https://example.com/</link>"
        "<description>test</description>"
        + "".join(items)
        + "</channel></rss>"
    ).encode("utf-8")


def numbered_entries(count: int, prefix: str = "item") -> list[dict[str, str]]:
    return [
        {
            "guid": f"{prefix}-{index}",
            "link": f"https://example.com/{prefix}/{index}?utm_source=rss",
            "title": f"{prefix.title()} {index}",
        }
        for index in range(count)
    ]


def fake_http(routes: dict[str, object], calls: list[str] | None = None):
    """Build an ``http_get`` replacement answering from ``routes``.

    A route value is a ``(status, body)`` pair, an ``HttpResponse`` or an
    exception instance to raise. Unknown URLs answer 404.
    """

    def _http_get(url, *, headers=None, timeout=15.0, max_bytes=None):
        if calls is not None:
            calls.append(url)
        answer = routes.get(url)
        if answer is None:
            return HttpResponse(status=404, content=b"", headers={}, url=url)
        if isinstance(answer, BaseException):
            raise answer
        if isinstance(answer, HttpResponse):
            return answer
        status, body = answer
        return HttpResponse(status=status, content=body, headers={}, url=url)

    return _http_get


class FakeClient:
    """In-memory stand-in for ``YouTubeClient`` that records every call."""

    def __init__(
        self,
        *,
        search=None,
        playlists=None,
        handles=None,
        channels=None,
        uploads=None,
        errors=None,
    ):
        self.search = search or []
        self.playlists = playlists or {}
        self.handles = handles or {}
        self.channels = channels or []
        self.uploads = uploads or {}
        self.errors = errors or {}
        self.calls = []

    def _call(self, name, *args, **kwargs):
        self.calls.append((name, args, kwargs))
        error = self.errors.get(name)
        if error is not None:
            raise error

    def search_videos(self, query, **kwargs):
        self._call("search_videos", query, **kwargs)
        return list(self.search)

    def list_playlist_items(self, playlist_id, *, max_results=10):
        self._call("list_playlist_items", playlist_id, max_results=max_results)
        if playlist_id not in self.playlists:
            raise YouTubeAPIError(
                "YouTube API playlistItems HTTP 404: not found",
                ErrorKind.NOT_FOUND,
                http_status=404,
                reason="playlistNotFound",
            )
        return list(self.playlists[playlist_id])

    def get_video_details(self, video_ids):
        self._call("get_video_details", list(video_ids))
        return [
            VideoRecord(video_id=video_id, title=f"{video_id} details", duration="PT10M")
            for video_id in video_ids
        ]

    def find_channel_by_handle(self, handle):
        self._call("find_channel_by_handle", handle)
        return self.handles.get(handle)

    def search_channels(self, query, *, max_results=5):
        self._call("search_channels", query)
        return list(self.channels)

    def get_channel_uploads_playlist(self, channel_id):
        self._call("get_channel_uploads_playlist", channel_id)
        return self.uploads.get(channel_id)

    def names(self):
        return [name for name, _, _ in self.calls]
