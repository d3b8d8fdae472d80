import json
from urllib.parse import parse_qs, urlsplit

import pytest

from newsintake.errors import ErrorKind, IngestError
from newsintake.http import HttpResponse
from newsintake.youtube import (
    YouTubeAPIError,
    YouTubeClient,
    classify_api_error,
    parse_channel_url,
    uploads_playlist_for_channel,
)

API = "https://yt.test/v3"


def _json(payload):
    return json.dumps(payload).encode("utf-8")


def _error(status, reason, message="failed"):
    body = {"error": {"code": status, "message": message, "errors": [{"reason": reason}]}}
    return status, _json(body)


class Recorder:
    def __init__(self, responses):
        self.responses = list(responses)
        self.urls = []

    def __call__(self, url, *, headers=None, timeout=15.0, max_bytes=None):
        self.urls.append(url)
        status, body = self.responses.pop(0)
        return HttpResponse(status=status, content=body, headers={}, url=url)


def test_search_videos_parses_items(monkeypatch):
    recorder = Recorder(
        [
            (
                200,
                _json(
                    {
                        "items": [
                            {
                                "id": {"videoId": "v1"},
                                "snippet": {
                                    "title": "First",
                                    "channelId": "UC1",
                                    "channelTitle": "Chan",
                                    "publishedAt": "2024-05-01T10:00:00Z",
                                    "thumbnails": {"high": {"url": "https://i.ytimg.com/v1.jpg"}},
                                },
                            },
                            {"id": {"channelId": "UC9"}, "snippet": {}},
                        ]
                    }
                ),
            )
        ]
    )
    monkeypatch.setattr("newsintake.http.http_get", recorder)
    client = YouTubeClient("secret", api_base=API)
    videos = client.search_videos("rust", max_results=5)

    assert [video.video_id for video in videos] == ["v1"]
    assert videos[0].channel_title == "Chan"
    assert videos[0].thumbnail_url == "https://i.ytimg.com/v1.jpg"
    assert videos[0].published_at.year == 2024
    query = parse_qs(urlsplit(recorder.urls[0]).query)
    assert query["q"] == ["rust"]
    assert query["key"] == ["secret"]
    assert query["maxResults"] == ["5"]


def test_quota_exceeded_is_classified(monkeypatch):
    monkeypatch.setattr("newsintake.http.http_get", Recorder([_error(403, "quotaExceeded")]))
    client = YouTubeClient("secret", api_base=API)
    with pytest.raises(YouTubeAPIError) as excinfo:
        client.list_playlist_items("UU1")
    assert excinfo.value.kind == ErrorKind.QUOTA_EXHAUSTED
    assert excinfo.value.http_status == 403
    assert excinfo.value.reason == "quotaExceeded"


def test_missing_playlist_is_not_found(monkeypatch):
    monkeypatch.setattr("newsintake.http.http_get", Recorder([_error(404, "playlistNotFound")]))
    client = YouTubeClient("secret", api_base=API)
    with pytest.raises(YouTubeAPIError) as excinfo:
        client.list_playlist_items("UUgone")
    assert excinfo.value.kind == ErrorKind.NOT_FOUND
    assert not excinfo.value.retryable


def test_missing_api_key_fails_without_request(monkeypatch):
    recorder = Recorder([])
    monkeypatch.setattr("newsintake.http.http_get", recorder)
    with pytest.raises(IngestError) as excinfo:
        YouTubeClient(None, api_base=API).search_videos("x")
    assert excinfo.value.kind == ErrorKind.CONFIG
    assert recorder.urls == []


def test_video_details_are_requested_in_chunks_of_fifty(monkeypatch):
    ids = [f"v{index}" for index in range(120)]

    def _page(chunk):
        return (
            200,
            _json(
                {
                    "items": [
                        {
                            "id": video_id,
                            "snippet": {"title": video_id, "tags": ["a"]},
                            "contentDetails": {"duration": "PT5M"},
                            "statistics": {"viewCount": "42"},
                        }
                        for video_id in chunk
                    ]
                }
            ),
        )

    recorder = Recorder([_page(ids[0:50]), _page(ids[50:100]), _page(ids[100:120])])
    monkeypatch.setattr("newsintake.http.http_get", recorder)
    videos = YouTubeClient("secret", api_base=API).get_video_details(ids)
    assert len(recorder.urls) == 3
    assert len(videos) == 120
    assert videos[0].duration == "PT5M"
    assert videos[0].view_count == 42
    assert videos[0].tags == ("a",)


def test_find_channel_by_handle(monkeypatch):
    recorder = Recorder(
        [
            (
                200,
                _json(
                    {
                        "items": [
                            {
                                "id": "UCabc",
                                "snippet": {"title": "Example"},
                                "contentDetails": {"relatedPlaylists": {"uploads": "UUabc"}},
                            }
                        ]
                    }
                ),
            )
        ]
    )
    monkeypatch.setattr("newsintake.http.http_get", recorder)
    channel = YouTubeClient("secret", api_base=API).find_channel_by_handle("example")
    assert channel.channel_id == "UCabc"
    assert channel.uploads_playlist_id == "UUabc"
    assert parse_qs(urlsplit(recorder.urls[0]).query)["forHandle"] == ["@example"]


def test_classify_api_error_falls_back_to_status():
    assert classify_api_error(403, "rateLimitExceeded") == ErrorKind.RATE_LIMITED
    assert classify_api_error(500, None) == ErrorKind.SERVER
    assert classify_api_error(429, None) == ErrorKind.RATE_LIMITED
    assert classify_api_error(400, "badRequest") == ErrorKind.HTTP


def test_channel_url_parsing():
    assert parse_channel_url("https://www.youtube.com/channel/UCabc_12").channel_id == "UCabc_12"
    assert parse_channel_url("https://youtube.com/@some.handle/videos").handle == "some.handle"
    assert parse_channel_url("https://www.youtube.com/c/LegacyName").name == "LegacyName"
    assert parse_channel_url("https://www.youtube.com/user/olduser").name == "olduser"
    assert parse_channel_url("https://vimeo.com/channel/UCabc") is None
    assert parse_channel_url(None) is None


def test_uploads_playlist_for_channel():
    assert uploads_playlist_for_channel("UCabc") == "UUabc"
    assert uploads_playlist_for_channel("HCabc") is None
