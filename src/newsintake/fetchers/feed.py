from __future__ import annotations

import logging
import time
from typing import Callable

from .. import http
from ..config import HttpConfig
from ..errors import ErrorKind, IngestError, kind_for_status
from ..feeds import FeedEntry, parse_feed
from ..models import FeedSourceMeta, Source, SourceKind
from ..normalize import NormalizeResult, normalize_feed_entry
from ..retry import with_retry
from ..utils import log_event
from .base import FetchBatch, Fetcher


class FeedFetcher(Fetcher):
    kind = SourceKind.RSS

    def __init__(
        self,
        http_cfg: HttpConfig,
        *,
        logger: logging.Logger | None = None,
        sleep: Callable[[float], None] = time.sleep,
    ) -> None:
        self.http_cfg = http_cfg
        self.logger = logger or logging.getLogger("newsintake.fetchers.feed")
        self.sleep = sleep

    def fetch(self, source: Source) -> FetchBatch:
        if not source.url:
            raise IngestError("feed source has no url", ErrorKind.CONFIG)
        headers = {"User-Agent": self.http_cfg.user_agent}
        if isinstance(source.metadata, FeedSourceMeta):
            headers.update(source.metadata.http_headers)

        def _get() -> bytes:
            response = http.http_get(
                source.url,
                headers=headers,
                timeout=self.http_cfg.timeout_seconds,
                max_bytes=self.http_cfg.max_bytes,
            )
            if response.status != 200:
                raise IngestError(
                    f"HTTP {response.status}",
                    kind_for_status(response.status),
                    http_status=response.status,
                )
            return response.content

        content = with_retry(
            _get,
            max_retries=self.http_cfg.max_retries,
            base_delay=self.http_cfg.backoff_seconds,
            sleep=self.sleep,
            logger=self.logger,
            label=f"feed:{source.id}",
        )
        parsed = parse_feed(content)
        warnings = []
        if parsed.bozo_error:
            log_event(
                self.logger,
                logging.WARNING,
                "feed_parse_warning",
                source_id=source.id,
                error=parsed.bozo_error,
            )
            warnings.append(f"feed parse warning: {parsed.bozo_error}")
        return FetchBatch(records=list(parsed.entries), warnings=warnings)

    def normalize(self, record: FeedEntry, source: Source) -> NormalizeResult:
        return normalize_feed_entry(record, source)
