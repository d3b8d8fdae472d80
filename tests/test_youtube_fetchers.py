from datetime import datetime, timedelta, timezone

import pytest

from newsintake.errors import ErrorKind, IngestError
from newsintake.fetchers import YouTubeChannelFetcher, YouTubeSearchFetcher
from newsintake.models import Source, SourceKind, YouTubeChannelMeta, YouTubeSearchMeta
from newsintake.quota import QuotaTracker
from newsintake.retry import RetryPolicy
from newsintake.youtube import ChannelRecord, VideoRecord, YouTubeAPIError

from helpers import FakeClient, no_sleep

NOW = datetime(2024, 5, 10, 12, 0, tzinfo=timezone.utc)
RECENT = NOW - timedelta(days=1)
OLD = NOW - timedelta(days=40)


def _fetcher(cls, client, quota, config, persisted=None):
    def _persist(source_id, updates):
        if persisted is not None:
            persisted.append((source_id, updates))

    return cls(
        client,
        quota,
        config.youtube,
        retry=RetryPolicy(max_retries=1, sleep=no_sleep),
        persist_metadata=_persist,
        clock=lambda: NOW,
    )


def _search_source(query="rust async", **meta):
    return Source(
        id="talks",
        kind=SourceKind.YOUTUBE_SEARCH,
        name="Talks",
        url=None,
        enabled=True,
        metadata=YouTubeSearchMeta(query=query, **meta),
    )


def _channel_source(url=None, name="Channel", **meta):
    return Source(
        id="chan",
        kind=SourceKind.YOUTUBE_CHANNEL,
        name=name,
        url=url,
        enabled=True,
        metadata=YouTubeChannelMeta(**meta),
    )


def test_search_fetch_charges_search_and_details(config):
    client = FakeClient(
        search=[
            VideoRecord(video_id="v1", title="One", published_at=RECENT),
            VideoRecord(video_id="v2", title="Two", published_at=RECENT),
        ]
    )
    quota = QuotaTracker(10000, 500)
    batch = _fetcher(YouTubeSearchFetcher, client, quota, config).fetch(_search_source())

    assert [video.video_id for video in batch.records] == ["v1", "v2"]
    assert batch.records[0].duration == "PT10M"
    assert batch.records[0].published_at == RECENT
    assert batch.warnings == []
    assert quota.status().used == 101
    _, args, kwargs = client.calls[0]
    assert args == ("rust async",)
    assert kwargs["published_after"] == NOW - timedelta(days=config.youtube.default_lookback_days)
    assert kwargs["max_results"] == config.youtube.max_search_results


def test_search_without_query_is_config_error(config):
    fetcher = _fetcher(YouTubeSearchFetcher, FakeClient(), QuotaTracker(10000, 0), config)
    with pytest.raises(IngestError) as excinfo:
        fetcher.fetch(_search_source(query=None))
    assert excinfo.value.kind == ErrorKind.CONFIG


def test_search_refused_when_quota_insufficient(config):
    client = FakeClient(search=[VideoRecord(video_id="v1")])
    quota = QuotaTracker(150, 100)
    with pytest.raises(IngestError) as excinfo:
        _fetcher(YouTubeSearchFetcher, client, quota, config).fetch(_search_source())
    assert excinfo.value.kind == ErrorKind.QUOTA_EXHAUSTED
    assert client.calls == []
    status = quota.status()
    assert status.used == 0
    assert status.reserved == 0


def test_network_failure_releases_hold_without_charge(config):
    client = FakeClient(errors={"search_videos": IngestError("timed out", ErrorKind.TRANSIENT)})
    quota = QuotaTracker(10000, 0)
    with pytest.raises(IngestError):
        _fetcher(YouTubeSearchFetcher, client, quota, config).fetch(_search_source())
    status = quota.status()
    assert status.used == 0
    assert status.reserved == 0


def test_channel_with_cached_playlist_filters_old_uploads(config):
    client = FakeClient(
        playlists={
            "UUabc": [
                VideoRecord(video_id="new", published_at=RECENT),
                VideoRecord(video_id="old", published_at=OLD),
            ]
        }
    )
    quota = QuotaTracker(10000, 0)
    persisted = []
    batch = _fetcher(YouTubeChannelFetcher, client, quota, config, persisted).fetch(
        _channel_source(upload_playlist_id="UUabc")
    )

    assert [video.video_id for video in batch.records] == ["new"]
    assert client.names() == ["list_playlist_items", "get_video_details"]
    assert client.calls[1][1] == (["new"],)
    assert quota.status().used == 2
    assert persisted == []


def test_channel_published_after_hint_overrides_lookback(config):
    client = FakeClient(
        playlists={"UUabc": [VideoRecord(video_id="old", published_at=OLD)]}
    )
    batch = _fetcher(YouTubeChannelFetcher, client, QuotaTracker(10000, 0), config).fetch(
        _channel_source(upload_playlist_id="UUabc", published_after=OLD - timedelta(days=1))
    )
    assert [video.video_id for video in batch.records] == ["old"]


def test_stale_cached_playlist_is_resolved_and_persisted(config):
    client = FakeClient(playlists={"UUxyz": [VideoRecord(video_id="v1", published_at=RECENT)]})
    quota = QuotaTracker(10000, 0)
    persisted = []
    batch = _fetcher(YouTubeChannelFetcher, client, quota, config, persisted).fetch(
        _channel_source(
            url="https://www.youtube.com/channel/UCxyz", upload_playlist_id="UUstale"
        )
    )

    assert [video.video_id for video in batch.records] == ["v1"]
    assert persisted == [("chan", {"upload_playlist_id": "UUxyz", "channel_id": "UCxyz"})]
    assert any("UUstale" in warning for warning in batch.warnings)
    # the failed playlist call was answered by the API and is charged
    assert quota.status().used == 3


def test_channel_resolved_by_handle(config):
    client = FakeClient(
        handles={"example": ChannelRecord("UChandle", "Example", "UUhandle")},
        playlists={"UUhandle": [VideoRecord(video_id="v1", published_at=RECENT)]},
    )
    quota = QuotaTracker(10000, 0)
    persisted = []
    batch = _fetcher(YouTubeChannelFetcher, client, quota, config, persisted).fetch(
        _channel_source(url="https://www.youtube.com/@example")
    )

    assert len(batch.records) == 1
    assert client.names()[:2] == ["find_channel_by_handle", "list_playlist_items"]
    assert persisted == [("chan", {"upload_playlist_id": "UUhandle", "channel_id": "UChandle"})]
    assert quota.usage_breakdown()["channel_handle_lookup"] == {"count": 1, "units": 1}


def test_channel_resolved_by_search(config):
    client = FakeClient(
        channels=[ChannelRecord("UCfound", "Found", None)],
        uploads={"UCfound": "UUfound"},
        playlists={"UUfound": []},
    )
    persisted = []
    batch = _fetcher(
        YouTubeChannelFetcher, client, QuotaTracker(10000, 0), config, persisted
    ).fetch(_channel_source(url="https://www.youtube.com/c/Found"))

    assert batch.records == []
    assert client.names() == [
        "search_channels",
        "get_channel_uploads_playlist",
        "list_playlist_items",
    ]
    assert persisted[0][1]["upload_playlist_id"] == "UUfound"


def test_unresolvable_channel_fails(config):
    client = FakeClient()
    quota = QuotaTracker(10000, 0)
    with pytest.raises(IngestError) as excinfo:
        _fetcher(YouTubeChannelFetcher, client, quota, config).fetch(
            _channel_source(name="Mystery")
        )
    assert excinfo.value.kind == ErrorKind.UNRESOLVED
    assert quota.status().used == 100


def test_details_failure_becomes_warning(config):
    client = FakeClient(
        search=[VideoRecord(video_id="v1", title="One")],
        errors={
            "get_video_details": YouTubeAPIError(
                "YouTube API videos HTTP 500: backend", ErrorKind.SERVER, http_status=500
            )
        },
    )
    quota = QuotaTracker(10000, 0)
    batch = _fetcher(YouTubeSearchFetcher, client, quota, config).fetch(_search_source())

    assert [video.title for video in batch.records] == ["One"]
    assert len(batch.warnings) == 1
    assert "details unavailable" in batch.warnings[0]
    assert quota.status().used == 101


def test_details_quota_exhaustion_is_raised(config):
    client = FakeClient(search=[VideoRecord(video_id="v1")])
    quota = QuotaTracker(100, 0)
    with pytest.raises(IngestError) as excinfo:
        _fetcher(YouTubeSearchFetcher, client, quota, config).fetch(_search_source())
    assert excinfo.value.kind == ErrorKind.QUOTA_EXHAUSTED
    assert quota.status().used == 100
