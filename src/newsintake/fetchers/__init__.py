from __future__ import annotations

import logging
import time
from typing import Callable

from ..config import Config
from ..errors import ErrorKind, IngestError
from ..models import SourceKind
from ..quota import QuotaTracker, build_quota_tracker
from ..retry import RetryPolicy
from ..youtube import YouTubeClient
from .base import Collected, FetchBatch, Fetcher
from .feed import FeedFetcher
from .youtube import PersistMetadata, YouTubeChannelFetcher, YouTubeSearchFetcher

FETCHERS: dict[SourceKind, type[Fetcher]] = {
    SourceKind.RSS: FeedFetcher,
    SourceKind.YOUTUBE_CHANNEL: YouTubeChannelFetcher,
    SourceKind.YOUTUBE_SEARCH: YouTubeSearchFetcher,
}


def build_fetcher(
    kind: SourceKind,
    config: Config,
    *,
    quota: QuotaTracker | None = None,
    youtube_client: YouTubeClient | None = None,
    persist_metadata: PersistMetadata | None = None,
    logger: logging.Logger | None = None,
    sleep: Callable[[float], None] = time.sleep,
) -> Fetcher:
    kind = SourceKind(kind)
    if kind == SourceKind.RSS:
        return FeedFetcher(config.ingest.http, logger=logger, sleep=sleep)
    fetcher_cls = FETCHERS.get(kind)
    if fetcher_cls is None:
        raise IngestError(f"no fetcher for source kind {kind.value}", ErrorKind.CONFIG)
    client = youtube_client or YouTubeClient(
        config.youtube.api_key,
        api_base=config.youtube.api_base,
        timeout=config.youtube.timeout_seconds,
        user_agent=config.ingest.http.user_agent,
    )
    return fetcher_cls(
        client,
        quota or build_quota_tracker(config.youtube),
        config.youtube,
        retry=RetryPolicy.from_config(config.retry, sleep=sleep),
        persist_metadata=persist_metadata,
        logger=logger,
    )


__all__ = [
    "FETCHERS",
    "Collected",
    "FeedFetcher",
    "FetchBatch",
    "Fetcher",
    "YouTubeChannelFetcher",
    "YouTubeSearchFetcher",
    "build_fetcher",
]
