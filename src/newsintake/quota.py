from __future__ import annotations

import logging
import math
import threading
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Callable, Protocol

from .storage import quota_add_usage, quota_get_usage
from .utils import isoformat_utc, log_event, normalize_datetime, utc_now

SEARCH_COST = 100
PLAYLIST_ITEMS_COST = 1
CHANNELS_LIST_COST = 1
VIDEOS_PER_DETAILS_CALL = 50


def video_details_cost(video_count: int) -> int:
    if video_count <= 0:
        return 0
    return math.ceil(video_count / VIDEOS_PER_DETAILS_CALL)


@dataclass(frozen=True)
class QuotaStatus:
    used: int
    remaining: int
    reserved: int
    limit: int
    buffer: int
    can_proceed: bool
    window_start: str
    reset_at: str


@dataclass(frozen=True)
class QuotaAllocation:
    channel_ingestion: int
    search_queries: int
    video_details: int
    reserve: int


class QuotaLedger(Protocol):
    def get(self, window_start: str) -> int: ...

    def add(self, window_start: str, units: int) -> int: ...


class MemoryQuotaLedger:
    """Per-process usage counter keyed by quota window."""

    def __init__(self) -> None:
        self._usage: dict[str, int] = {}

    def get(self, window_start: str) -> int:
        return self._usage.get(window_start, 0)

    def add(self, window_start: str, units: int) -> int:
        # Older windows are never read again.
        for key in [key for key in self._usage if key < window_start]:
            del self._usage[key]
        self._usage[window_start] = self._usage.get(window_start, 0) + units
        return self._usage[window_start]


class StoreQuotaLedger:
    """Usage counter in the ``quota_usage`` table, shared by every worker process."""

    def __init__(self, connect: Callable[[], object], api: str = "youtube") -> None:
        self._connect = connect
        self.api = api

    def get(self, window_start: str) -> int:
        conn = self._connect()
        try:
            return quota_get_usage(conn, self.api, window_start)
        finally:
            conn.close()

    def add(self, window_start: str, units: int) -> int:
        conn = self._connect()
        try:
            return quota_add_usage(conn, self.api, window_start, units)
        finally:
            conn.close()


class QuotaTracker:
    """Daily unit budget for a rate-limited API.

    Callers ``reserve`` the estimated cost before a request, then either
    ``consume`` the actual cost or ``release`` the hold. Usage is counted per
    window that starts at ``reset_hour`` UTC, so crossing the boundary starts
    from zero. All bookkeeping happens under one lock.
    """

    def __init__(
        self,
        limit: int,
        buffer: int,
        reset_hour: int = 0,
        *,
        ledger: QuotaLedger | None = None,
        clock: Callable[[], datetime] = utc_now,
        logger: logging.Logger | None = None,
        api: str = "youtube",
    ) -> None:
        if not 0 <= reset_hour <= 23:
            raise ValueError("reset_hour must be between 0 and 23")
        self.limit = int(limit)
        self.buffer = int(buffer)
        self.reset_hour = int(reset_hour)
        self.api = api
        self._ledger = ledger or MemoryQuotaLedger()
        self._clock = clock
        self._logger = logger or logging.getLogger("newsintake.quota")
        self._lock = threading.Lock()
        self._reserved = 0
        self._breakdown: dict[str, dict[str, dict[str, int]]] = {}

    def window_start(self, now: datetime | None = None) -> datetime:
        now = normalize_datetime(now or self._clock())
        boundary = now.replace(hour=self.reset_hour, minute=0, second=0, microsecond=0)
        if now < boundary:
            boundary -= timedelta(days=1)
        return boundary

    def reserve(self, cost: int, operation: str) -> bool:
        with self._lock:
            window = self._window_key()
            used = self._ledger.get(window)
            remaining = self.limit - used
            available = remaining - self._reserved - self.buffer
            if cost > available:
                log_event(
                    self._logger,
                    logging.WARNING,
                    "quota_reservation_failed",
                    api=self.api,
                    operation=operation,
                    requested=cost,
                    remaining=remaining,
                    reserved=self._reserved,
                    buffer=self.buffer,
                )
                return False
            self._reserved += cost
            log_event(
                self._logger,
                logging.DEBUG,
                "quota_reserved",
                api=self.api,
                operation=operation,
                units=cost,
                reserved=self._reserved,
            )
            return True

    def consume(self, cost: int, operation: str, *, reserved: int | None = None) -> None:
        """Charge ``cost`` units and drop a hold of ``reserved`` units if given."""
        with self._lock:
            if reserved:
                self._reserved = max(0, self._reserved - reserved)
            window = self._window_key()
            total = self._ledger.add(window, cost) if cost > 0 else self._ledger.get(window)
            ops = self._breakdown.setdefault(window, {})
            for key in [key for key in self._breakdown if key < window]:
                del self._breakdown[key]
            entry = ops.setdefault(operation, {"count": 0, "units": 0})
            entry["count"] += 1
            entry["units"] += cost
            log_event(
                self._logger,
                logging.INFO,
                "quota_consumed",
                api=self.api,
                operation=operation,
                units=cost,
                used=total,
                remaining=self.limit - total,
            )

    def release(self, cost: int, operation: str) -> None:
        with self._lock:
            self._reserved = max(0, self._reserved - cost)
            log_event(
                self._logger,
                logging.DEBUG,
                "quota_released",
                api=self.api,
                operation=operation,
                units=cost,
                reserved=self._reserved,
            )

    def status(self) -> QuotaStatus:
        with self._lock:
            start = self.window_start()
            used = self._ledger.get(isoformat_utc(start))
            remaining = self.limit - used
            return QuotaStatus(
                used=used,
                remaining=remaining,
                reserved=self._reserved,
                limit=self.limit,
                buffer=self.buffer,
                can_proceed=remaining > self.buffer,
                window_start=isoformat_utc(start),
                reset_at=isoformat_utc(start + timedelta(days=1)),
            )

    def usage_breakdown(self) -> dict[str, dict[str, int]]:
        with self._lock:
            ops = self._breakdown.get(self._window_key(), {})
            return {name: dict(entry) for name, entry in ops.items()}

    def allocation(self) -> QuotaAllocation:
        available = self.limit - self.buffer
        return QuotaAllocation(
            channel_ingestion=math.floor(available * 0.7),
            search_queries=math.floor(available * 0.2),
            video_details=math.floor(available * 0.05),
            reserve=self.buffer,
        )

    def _window_key(self) -> str:
        return isoformat_utc(self.window_start())


def build_quota_tracker(
    youtube_cfg,
    connect: Callable[[], object] | None = None,
    clock: Callable[[], datetime] = utc_now,
) -> QuotaTracker:
    ledger: QuotaLedger
    if youtube_cfg.shared_quota and connect is not None:
        ledger = StoreQuotaLedger(connect)
    else:
        ledger = MemoryQuotaLedger()
    return QuotaTracker(
        youtube_cfg.quota_limit,
        youtube_cfg.quota_buffer,
        youtube_cfg.quota_reset_hour,
        ledger=ledger,
        clock=clock,
    )
