from __future__ import annotations

import logging
from datetime import datetime, timedelta
from typing import Callable, TypeVar

from ..config import YouTubeConfig
from ..errors import ErrorKind, IngestError
from ..models import Source, SourceKind, YouTubeChannelMeta, YouTubeSearchMeta
from ..normalize import Normalized, NormalizeResult, normalize_video
from ..quota import (
    CHANNELS_LIST_COST,
    PLAYLIST_ITEMS_COST,
    SEARCH_COST,
    QuotaTracker,
    video_details_cost,
)
from ..retry import RetryPolicy
from ..utils import log_event, utc_now
from ..youtube import (
    VideoRecord,
    YouTubeClient,
    merge_details,
    parse_channel_url,
    uploads_playlist_for_channel,
)
from .base import FetchBatch, Fetcher

T = TypeVar("T")

PersistMetadata = Callable[[str, dict], None]


class _YouTubeFetcher(Fetcher):
    def __init__(
        self,
        client: YouTubeClient,
        quota: QuotaTracker,
        youtube_cfg: YouTubeConfig,
        *,
        retry: RetryPolicy | None = None,
        persist_metadata: PersistMetadata | None = None,
        clock: Callable[[], datetime] = utc_now,
        logger: logging.Logger | None = None,
    ) -> None:
        self.client = client
        self.quota = quota
        self.youtube_cfg = youtube_cfg
        self.retry = retry or RetryPolicy()
        self.persist_metadata = persist_metadata
        self.clock = clock
        self.logger = logger or logging.getLogger("newsintake.fetchers.youtube")

    def normalize(self, record: VideoRecord, source: Source) -> NormalizeResult:
        return Normalized(normalize_video(record, source))

    def _costed_call(self, operation: str, cost: int, call: Callable[[], T]) -> T:
        """Run ``call`` under the retry policy while holding ``cost`` quota units.

        A call that got an answer from the API is charged even when it failed;
        one that never reached it only drops the hold.
        """
        if not self.quota.reserve(cost, operation):
            status = self.quota.status()
            raise IngestError(
                f"insufficient quota for {operation}: need {cost}, "
                f"remaining {status.remaining}, buffer {status.buffer}",
                ErrorKind.QUOTA_EXHAUSTED,
            )
        try:
            result = self.retry.run(call, logger=self.logger, label=operation)
        except IngestError as exc:
            if exc.http_status is not None:
                self.quota.consume(cost, operation, reserved=cost)
            else:
                self.quota.release(cost, operation)
            raise
        except Exception:
            self.quota.release(cost, operation)
            raise
        self.quota.consume(cost, operation, reserved=cost)
        return result

    def _with_details(
        self, source: Source, videos: list[VideoRecord], warnings: list[str]
    ) -> list[VideoRecord]:
        if not videos:
            return videos
        ids = [video.video_id for video in videos]
        try:
            details = self._costed_call(
                "video_details",
                video_details_cost(len(ids)),
                lambda: self.client.get_video_details(ids),
            )
        except IngestError as exc:
            if exc.kind == ErrorKind.QUOTA_EXHAUSTED:
                raise
            log_event(
                self.logger,
                logging.WARNING,
                "youtube_details_unavailable",
                source_id=source.id,
                error=str(exc),
            )
            warnings.append(f"video details unavailable: {exc}")
            return videos
        return merge_details(videos, details)

    def _default_published_after(self) -> datetime:
        return self.clock() - timedelta(days=self.youtube_cfg.default_lookback_days)


class YouTubeSearchFetcher(_YouTubeFetcher):
    kind = SourceKind.YOUTUBE_SEARCH

    def fetch(self, source: Source) -> FetchBatch:
        meta = source.metadata
        if not isinstance(meta, YouTubeSearchMeta) or not meta.query:
            raise IngestError(
                f"youtube_search source {source.id} has no query", ErrorKind.CONFIG
            )
        max_results = meta.max_results or self.youtube_cfg.max_search_results
        published_after = meta.published_after or self._default_published_after()
        log_event(
            self.logger,
            logging.INFO,
            "youtube_search_start",
            source_id=source.id,
            query=meta.query,
            max_results=max_results,
            published_after=published_after.isoformat(),
        )
        videos = self._costed_call(
            "search_videos",
            SEARCH_COST,
            lambda: self.client.search_videos(
                meta.query,
                max_results=max_results,
                published_after=published_after,
                order=meta.order,
                duration=meta.duration,
            ),
        )
        warnings: list[str] = []
        videos = self._with_details(source, videos, warnings)
        return FetchBatch(records=videos, warnings=warnings)


class YouTubeChannelFetcher(_YouTubeFetcher):
    kind = SourceKind.YOUTUBE_CHANNEL

    def fetch(self, source: Source) -> FetchBatch:
        meta = source.metadata
        if not isinstance(meta, YouTubeChannelMeta):
            meta = YouTubeChannelMeta()
        max_videos = meta.max_videos_per_run or self.youtube_cfg.max_videos_per_run
        warnings: list[str] = []
        playlist_id = meta.upload_playlist_id
        videos: list[VideoRecord] | None = None
        if playlist_id:
            try:
                videos = self._list_uploads(playlist_id, max_videos)
            except IngestError as exc:
                if exc.kind != ErrorKind.NOT_FOUND:
                    raise
                log_event(
                    self.logger,
                    logging.WARNING,
                    "youtube_uploads_id_invalid",
                    source_id=source.id,
                    upload_playlist_id=playlist_id,
                    error=str(exc),
                )
                warnings.append(f"cached uploads playlist {playlist_id} not found")
        if videos is None:
            playlist_id, channel_id = self._resolve_uploads_playlist(source, meta)
            self._persist(source, playlist_id, channel_id)
            videos = self._list_uploads(playlist_id, max_videos)

        cutoff = meta.published_after or self._default_published_after()
        recent = [
            video
            for video in videos
            if video.published_at is None or video.published_at >= cutoff
        ]
        log_event(
            self.logger,
            logging.INFO,
            "youtube_channel_uploads",
            source_id=source.id,
            upload_playlist_id=playlist_id,
            listed=len(videos),
            recent=len(recent),
        )
        recent = self._with_details(source, recent, warnings)
        return FetchBatch(records=recent, warnings=warnings)

    def _list_uploads(self, playlist_id: str, max_videos: int) -> list[VideoRecord]:
        return self._costed_call(
            "playlist_items",
            PLAYLIST_ITEMS_COST,
            lambda: self.client.list_playlist_items(playlist_id, max_results=max_videos),
        )

    def _resolve_uploads_playlist(
        self, source: Source, meta: YouTubeChannelMeta
    ) -> tuple[str, str | None]:
        ref = parse_channel_url(source.url)
        channel_id = meta.channel_id or (ref.channel_id if ref else None)
        if channel_id:
            playlist_id = uploads_playlist_for_channel(channel_id)
            if playlist_id:
                return playlist_id, channel_id

        handle = ref.handle if ref else None
        if handle:
            channel = self._costed_call(
                "channel_handle_lookup",
                CHANNELS_LIST_COST,
                lambda: self.client.find_channel_by_handle(handle),
            )
            if channel and channel.uploads_playlist_id:
                return channel.uploads_playlist_id, channel.channel_id

        query = handle or (ref.name if ref else None) or source.name
        if query:
            channels = self._costed_call(
                "channel_search",
                SEARCH_COST,
                lambda: self.client.search_channels(query),
            )
            if channels:
                chosen = channels[0]
                playlist_id = self._costed_call(
                    "channel_details",
                    CHANNELS_LIST_COST,
                    lambda: self.client.get_channel_uploads_playlist(chosen.channel_id),
                )
                if playlist_id:
                    return playlist_id, chosen.channel_id

        raise IngestError(
            f"could not resolve uploads playlist for source {source.id}",
            ErrorKind.UNRESOLVED,
        )

    def _persist(self, source: Source, playlist_id: str, channel_id: str | None) -> None:
        log_event(
            self.logger,
            logging.INFO,
            "youtube_uploads_id_resolved",
            source_id=source.id,
            upload_playlist_id=playlist_id,
            channel_id=channel_id,
        )
        if self.persist_metadata is None:
            return
        updates: dict[str, object] = {"upload_playlist_id": playlist_id}
        if channel_id:
            updates["channel_id"] = channel_id
        self.persist_metadata(source.id, updates)
